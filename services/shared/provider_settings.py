from __future__ import annotations

"""
Environment-driven configuration for the AI classification provider.

Rows the rule classifier cannot settle are escalated to a chat model. The
provider choice, the outbound call tuning, and the batching of rows for those
calls all come from environment variables; the loaders here parse and validate
them so the FastAPI wiring and the tests read them the same way.
"""

import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

SUPPORTED_PROVIDERS = frozenset({"deterministic", "mock", "openai"})
REQUIRED_OPENAI_ENV_VARS = ("OPENAI_API_KEY", "OPENAI_MODEL", "OPENAI_API_BASE")

NumberT = TypeVar("NumberT", int, float)


class ProviderSettingsError(RuntimeError):
    """Raised when provider configuration cannot be constructed."""


@dataclass(frozen=True, slots=True)
class OpenAIConfig:
    api_key: str
    model: str
    api_base: str


@dataclass(frozen=True, slots=True)
class ProviderSettings:
    provider_name: str
    timeout_seconds: float
    temperature: float
    max_output_tokens: int
    openai: Optional[OpenAIConfig] = None


@dataclass(frozen=True, slots=True)
class BatchSettings:
    """Tuning knobs for the batched AI classification queue."""

    batch_size: int = 25
    concurrency: int = 2
    retries: int = 2
    backoff_seconds: float = 1.0
    timeout_seconds: float = 20.0


def load_provider_settings(
    *,
    provider_env: str,
    timeout_env: str,
    temperature_env: str,
    max_tokens_env: str,
    default_provider: str = "deterministic",
    default_timeout: float = 10.0,
    default_temperature: float = 0.2,
    default_max_tokens: int = 512,
) -> ProviderSettings:
    """
    Build ProviderSettings from the given env var names.

    Args:
        provider_env: Selects `deterministic`, `mock`, or `openai`.
        timeout_env: Outbound request timeout in seconds.
        temperature_env: Sampling temperature for the model.
        max_tokens_env: Cap on completion length.
        default_*: Used when the env var is unset or blank.

    `openai` additionally requires every variable in REQUIRED_OPENAI_ENV_VARS.
    """

    provider_name = _resolve_provider(os.getenv(provider_env, default_provider))

    return ProviderSettings(
        provider_name=provider_name,
        timeout_seconds=_env_number(timeout_env, default_timeout, float),
        temperature=_env_number(temperature_env, default_temperature, float),
        max_output_tokens=_env_number(max_tokens_env, default_max_tokens, int),
        openai=_openai_config_from_env(provider_env) if provider_name == "openai" else None,
    )


def load_batch_settings(
    *,
    batch_size_env: str,
    concurrency_env: str,
    retries_env: str,
    backoff_env: str,
    timeout_env: str,
    defaults: BatchSettings = BatchSettings(),
) -> BatchSettings:
    """
    Build BatchSettings from env vars, falling back to `defaults` per field.

    Batch size, concurrency, and timeout must be positive; retries and backoff
    may be zero.
    """

    settings = BatchSettings(
        batch_size=_env_number(batch_size_env, defaults.batch_size, int),
        concurrency=_env_number(concurrency_env, defaults.concurrency, int),
        retries=_env_number(retries_env, defaults.retries, int),
        backoff_seconds=_env_number(backoff_env, defaults.backoff_seconds, float),
        timeout_seconds=_env_number(timeout_env, defaults.timeout_seconds, float),
    )

    checks = (
        (batch_size_env, settings.batch_size, settings.batch_size >= 1, "must be at least 1"),
        (concurrency_env, settings.concurrency, settings.concurrency >= 1, "must be at least 1"),
        (retries_env, settings.retries, settings.retries >= 0, "must not be negative"),
        (backoff_env, settings.backoff_seconds, settings.backoff_seconds >= 0, "must not be negative"),
        (timeout_env, settings.timeout_seconds, settings.timeout_seconds > 0, "must be positive"),
    )
    for env_key, value, valid, rule in checks:
        if not valid:
            raise ProviderSettingsError(f"{env_key} {rule} (received {value})")
    return settings


def _resolve_provider(raw_value: Optional[str]) -> str:
    provider = (raw_value or "").strip().lower() or "deterministic"
    if provider not in SUPPORTED_PROVIDERS:
        supported = ", ".join(sorted(SUPPORTED_PROVIDERS))
        raise ProviderSettingsError(f"Unsupported provider '{provider}' (expected one of: {supported})")
    return provider


def _env_number(env_key: str, default: NumberT, cast: Callable[[str], NumberT]) -> NumberT:
    raw_value = os.getenv(env_key)
    if raw_value is None or not raw_value.strip():
        return default

    try:
        return cast(raw_value.strip())
    except ValueError as exc:
        kind = "an integer" if cast is int else "numeric"
        raise ProviderSettingsError(f"{env_key} must be {kind} (received '{raw_value}')") from exc


def _openai_config_from_env(provider_env: str) -> OpenAIConfig:
    values = {env_key: (os.getenv(env_key) or "").strip() for env_key in REQUIRED_OPENAI_ENV_VARS}
    missing = [env_key for env_key, value in values.items() if not value]
    if missing:
        raise ProviderSettingsError(f"{provider_env}=openai requires the following env vars: {', '.join(missing)}")

    return OpenAIConfig(
        api_key=values["OPENAI_API_KEY"],
        model=values["OPENAI_MODEL"],
        api_base=values["OPENAI_API_BASE"],
    )
