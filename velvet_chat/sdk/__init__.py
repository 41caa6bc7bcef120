"""
SDK for velvet-chat.

Provides the provider implementations the request pipeline calls.
"""

from .openai_client import OpenAIChatProvider, generate_avatar, single_attempt_client

__all__ = ["OpenAIChatProvider", "generate_avatar", "single_attempt_client"]
