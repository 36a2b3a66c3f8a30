"""
Shared utilities for the statement import service.

This package contains code shared by the service and its tooling:
- provider_settings: Configuration for the pluggable AI classification provider
- observability: Telemetry, logging, and privacy utilities
"""

from .provider_settings import (
    SUPPORTED_PROVIDERS,
    REQUIRED_OPENAI_ENV_VARS,
    BatchSettings,
    ProviderSettingsError,
    OpenAIConfig,
    ProviderSettings,
    load_batch_settings,
    load_provider_settings,
)

__all__ = [
    "SUPPORTED_PROVIDERS",
    "REQUIRED_OPENAI_ENV_VARS",
    "BatchSettings",
    "ProviderSettingsError",
    "OpenAIConfig",
    "ProviderSettings",
    "load_batch_settings",
    "load_provider_settings",
]
