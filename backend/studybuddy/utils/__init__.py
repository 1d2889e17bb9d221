"""
Study Buddy Utilities Package

Contains:
- api_retry: Exponential backoff, retry and circuit breaker for provider calls
- openai_client: Lazy-initialized OpenAI client
- guest_store: Bounded in-memory store for guest sessions
"""

from studybuddy.utils.api_retry import (
    retry_with_backoff,
    RetryConfig,
    ProviderRetryHandler
)
from studybuddy.utils.openai_client import get_openai_client, reset_client
from studybuddy.utils.guest_store import GuestStore, get_guest_store

__all__ = [
    "retry_with_backoff",
    "RetryConfig",
    "ProviderRetryHandler",
    "get_openai_client",
    "reset_client",
    "GuestStore",
    "get_guest_store",
]
