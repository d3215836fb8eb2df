from __future__ import annotations
from typing import Optional

CANCELLED_MESSAGE = "Operation stopped by user."


class ProviderError(Exception):
    """Base class for provider-level failures."""

    def __init__(self, message: str = "", status_code: Optional[int] = None, status: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.status = status


class ProviderClientError(ProviderError):
    """
    Non-retryable: caller/config issue (bad credentials, unsupported input, etc.).
    The fix is change input/config, not retry.
    """


class UnauthorizedError(ProviderClientError):
    """Missing, invalid or expired API key."""

    def __init__(self, message: str = "Your API key is invalid or has expired. Please check your API key settings.",
                 status_code: Optional[int] = 401):
        super().__init__(message, status_code)


class ProviderTransientError(ProviderError):
    """
    Retryable: rate limits, overloads, network hiccups, 5xx, etc.
    Retrying with backoff is appropriate.
    """


class DaemonUnreachableError(ProviderTransientError):
    """The local model daemon refused the connection or could not be reached."""

    def __init__(self, base_url: str):
        super().__init__(f"Cannot connect to Ollama at {base_url}. Please ensure Ollama is running locally.")
        self.base_url = base_url


class ProviderFailedError(ProviderError):
    """Raised once every retry of a logical call has failed."""

    def __init__(self, message: str, *, provider: str, kind=None, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.provider = provider
        self.kind = kind


class UserCancelledError(ProviderError):
    """The caller set the cancellation token. Expected control flow, not a failure."""

    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message)
