from __future__ import annotations

from enum import StrEnum
from typing import Any

import httpx

NETWORK_ERROR_MARKERS = (
    "econnrefused",
    "enotfound",
    "etimedout",
    "econnreset",
    "network",
    "fetch failed",
)


class SearchErrorCode(StrEnum):
    RATE_LIMIT = "RATE_LIMIT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class SearchProviderError(Exception):
    """The provider answered with a non-success status."""

    def __init__(
        self,
        *,
        code: SearchErrorCode,
        message: str,
        status_code: int | None = None,
        retry_after_seconds: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        self.payload = payload


class SearchNetworkError(Exception):
    """The provider could not be reached."""


class CredentialNotFoundError(LookupError):
    def __init__(self, credential_id: int) -> None:
        super().__init__(f"Search credential {credential_id} not found.")
        self.credential_id = credential_id


class CredentialDecryptionError(ValueError):
    def __init__(self, credential_id: int, message: str = "Search credential is unusable.") -> None:
        super().__init__(message)
        self.credential_id = credential_id


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, (SearchNetworkError, httpx.TransportError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in NETWORK_ERROR_MARKERS)
