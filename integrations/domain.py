"""
Typed records and outcome values shared by the credential services.

IntegrationCredential is immutable; every change produces a new record through one
of its helpers, so the refresh-token stickiness rule lives in exactly one place.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    AUTH_INVALID = "auth_invalid"
    UNKNOWN = "unknown"


class FailureReason(str, Enum):
    NOT_CONNECTED = "not_connected"
    TRANSIENT = "transient"
    NEEDS_RECONNECT = "needs_reconnect"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    UNRESOLVED = "unresolved"
    NOT_CONNECTED = "not_connected"
    TRANSIENT = "transient"
    NEEDS_RECONNECT = "needs_reconnect"
    FAILED = "failed"


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    NEEDS_ATTENTION = "needs_attention"
    NOT_CONNECTED = "not_connected"


class CredentialKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    provider: str
    scope_key: Optional[str] = None

    def __str__(self) -> str:
        suffix = f"/{self.scope_key}" if self.scope_key else ""
        return f"{self.provider}:{self.user_id}{suffix}"


class TokenGrant(BaseModel):
    """Normalized token endpoint response (authorization-code exchange or refresh)."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scopes: Optional[list[str]] = None
    account_identifier: Optional[str] = None


class IntegrationCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    provider: str
    scope_key: Optional[str] = None

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None  # None: token does not expire
    granted_scopes: frozenset[str] = frozenset()
    account_identifier: Optional[str] = None
    default_destination: Optional[str] = None
    # the scoped connection used when a caller names no scope
    is_default: bool = False

    healthy: bool = True
    last_error_message: Optional[str] = None
    last_error_kind: Optional[ErrorClass] = None
    last_error_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None

    version: int = 0
    # assigned when the row is first inserted; a disconnect + reconnect gets a new one
    connection_id: Optional[str] = None

    @property
    def key(self) -> CredentialKey:
        return CredentialKey(user_id=self.user_id, provider=self.provider, scope_key=self.scope_key)

    def needs_refresh(self, now: datetime, margin: timedelta) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) - now <= margin

    def with_grant(self, grant: TokenGrant, *, now: datetime, default_lifetime: timedelta) -> "IntegrationCredential":
        """Apply a successful refresh. The previous refresh token survives a response without one."""
        lifetime = timedelta(seconds=grant.expires_in) if grant.expires_in else default_lifetime
        return self.model_copy(update={
            "access_token": grant.access_token,
            "refresh_token": grant.refresh_token or self.refresh_token,
            "expires_at": now + lifetime,
            "granted_scopes": frozenset(grant.scopes) if grant.scopes else self.granted_scopes,
            "account_identifier": grant.account_identifier or self.account_identifier,
            "last_refreshed_at": now,
        })

    def flagged(self, message: str, kind: ErrorClass, now: datetime) -> "IntegrationCredential":
        return self.model_copy(update={
            "healthy": False,
            "last_error_message": message,
            "last_error_kind": kind,
            "last_error_at": now,
        })

    def cleared(self) -> "IntegrationCredential":
        return self.model_copy(update={
            "healthy": True,
            "last_error_message": None,
            "last_error_kind": None,
            "last_error_at": None,
        })


class RefreshOutcome(BaseModel):
    """Result of one refresh attempt; never persisted as its own entity.

    classification is None on success.
    """

    credential: Optional[IntegrationCredential] = None
    classification: Optional[ErrorClass] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.classification is None


class TokenResult(BaseModel):
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    connection_id: Optional[str] = None
    failure: Optional[FailureReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class ClientResult(BaseModel, Generic[T]):
    value: Optional[T] = None
    failure: Optional[FailureReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class DestinationSource(str, Enum):
    EXPLICIT = "explicit"
    SCOPED_OVERRIDE = "scoped_override"
    CATEGORY_PREFERENCE = "category_preference"
    USER_DEFAULT = "user_default"
    SYSTEM_DEFAULT = "system_default"
    CONNECTION_DEFAULT = "connection_default"


class Destination(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: str
    source: DestinationSource


class NotificationPayload(BaseModel):
    text: str
    subject: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    status: DeliveryStatus
    destination: Optional[Destination] = None
    scope_key: Optional[str] = None
    detail: Optional[str] = None
    error_code: Optional[str] = None
    used_system_client: bool = False

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class BroadcastResult(BaseModel):
    """Outcome of sending one notification through every connection a user has for a provider."""

    sent: int = 0
    errors: int = 0
    skipped: int = 0
    results: list[DeliveryResult] = Field(default_factory=list)


class ConnectionStatus(BaseModel):
    provider: str
    scope_key: Optional[str] = None
    state: ConnectionState
    connected: bool
    account_identifier: Optional[str] = None
    is_default: bool = False
    last_error: Optional[str] = None
    last_error_kind: Optional[ErrorClass] = None
    last_error_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
