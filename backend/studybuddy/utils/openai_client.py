"""
OpenAI client for the AI service.

The client is built on first use, so importing the app (or running tests
that mock the AI service) does not require OPENAI_API_KEY.
"""

import os
import threading
from typing import Optional

import httpx
from openai import OpenAI

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Hard ceiling per request; chat replies are additionally bounded by the caller
PROVIDER_TIMEOUT = httpx.Timeout(float(os.getenv("OPENAI_TIMEOUT", "60")), connect=10.0)

_client: Optional[OpenAI] = None
_client_lock = threading.Lock()


class MissingAPIKeyError(RuntimeError):
    pass


def get_openai_client() -> OpenAI:
    """
    Shared client, created on first call.

    Raises:
        MissingAPIKeyError: OPENAI_API_KEY is unset or blank
    """
    global _client
    if _client is not None:
        return _client

    with _client_lock:
        if _client is None:
            api_key = os.getenv("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise MissingAPIKeyError("OPENAI_API_KEY is not set; AI features are unavailable")
            _client = OpenAI(api_key=api_key, timeout=PROVIDER_TIMEOUT)
    return _client


def reset_client() -> None:
    """Forget the cached client so the next call re-reads the key."""
    global _client
    with _client_lock:
        _client = None
