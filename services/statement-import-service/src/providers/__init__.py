"""Pluggable chat completion clients for AI transaction classification."""

from .openai_chat import OpenAIChatClient

__all__ = ["OpenAIChatClient"]
