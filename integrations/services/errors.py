"""
Provider error types and the single classifier every refresh/send/probe path uses.

classify() is pure: it looks only at the exception in hand. Structured signals
(exception type, HTTP status, provider error code) are checked before message text.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from integrations.domain import ErrorClass

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.append(f"code={self.code}")
        if self.status_code:
            parts.append(f"status={self.status_code}")
        return " ".join(parts)


class DestinationRejected(ProviderError):
    """The provider accepted the credential but refused the target (unknown channel, bad recipient)."""


# provider codes and message fragments meaning the grant itself is dead
AUTH_INVALID_MARKERS = (
    "invalid_grant",
    "invalid_refresh_token",
    "token expired",
    "token_expired",
    "expired",
    "token_revoked",
    "revoked",
    "interaction_required",
    "consent_required",
    "login_required",
    "aadsts",                       # any Azure AD STS error code
    "invalidauthenticationtoken",   # Graph
    "invalid token",
    "invalid_token",
    "invalid_auth",                 # Slack
    "not_authed",
    "account_inactive",
    "unauthorized",
)

TRANSIENT_MARKERS = (
    "ratelimited",
    "rate_limited",
    "rate limit",
    "too many requests",
    "throttl",
    "timeout",
    "timed out",
    "temporarily",
    "service_unavailable",
    "service unavailable",
    "request_timeout",
    "internal_error",
    "fatal_error",
    "econnreset",
    "connection reset",
    "bad gateway",
    "gateway timeout",
)

# RFC 6749 / Azure AD error codes for a token endpoint outage; these arrive next to an AADSTS
# code on a 4xx, so they are matched before the auth vocabulary
TRANSIENT_OAUTH_CODES = ("temporarily_unavailable", "server_error")

TRANSIENT_STATUS = frozenset({408, 425, 429})

# exceptions that originate from a provider call rather than from the caller's own code
PROVIDER_ERRORS = (ProviderError, httpx.HTTPError, asyncio.TimeoutError, TimeoutError, ConnectionError)


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, ProviderError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _text_of(error: BaseException) -> str:
    parts = [str(error)]
    code = getattr(error, "code", None)
    if code:
        parts.append(str(code))
    return " ".join(parts).lower()


def classify(error: BaseException) -> ErrorClass:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, httpx.TransportError, ConnectionError)):
        return ErrorClass.TRANSIENT

    status = _status_of(error)
    if status is not None:
        if status >= 500 or status in TRANSIENT_STATUS:
            return ErrorClass.TRANSIENT
        if status == 401:
            return ErrorClass.AUTH_INVALID

    text = _text_of(error)
    if any(code in text for code in TRANSIENT_OAUTH_CODES):
        return ErrorClass.TRANSIENT
    if any(marker in text for marker in AUTH_INVALID_MARKERS):
        return ErrorClass.AUTH_INVALID
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return ErrorClass.TRANSIENT
    return ErrorClass.UNKNOWN


def describe(error: BaseException, limit: int = 200) -> str:
    text = str(error) or error.__class__.__name__
    return text[:limit]


def log_classified(kind: ErrorClass, error: BaseException, *, action: str, key: object) -> None:
    extra = {"credential": str(key), "action": action, "error_kind": kind.value}
    if kind is ErrorClass.TRANSIENT:
        logger.warning(f"{action} hit a transient provider error for {key}: {describe(error)}", extra=extra)
    elif kind is ErrorClass.AUTH_INVALID:
        logger.warning(f"{action} rejected credential for {key}; needs reconnect: {describe(error)}", extra=extra)
    else:
        logger.error(f"{action} failed with an unrecognised provider error for {key}: {describe(error)}",
                     extra={**extra, "error_type": error.__class__.__name__})
