"""
Connection health bookkeeping.

ConnectionHealthTracker is the only writer of `healthy`, `last_error_*` on a stored
credential. It persists refresh outcomes through CredentialStore.update, so every
decision is made against the record as it is at write time, not as it was when the
provider call started.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from integrations.domain import (
    CredentialKey,
    ErrorClass,
    IntegrationCredential,
    RefreshOutcome,
    as_utc,
    utcnow,
)
from integrations.services.credential_store import CorruptCredentialError, CredentialStore
from integrations.services.errors import classify, describe, log_classified

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[Any]]


def reconnect_message(display_name: str, kind: ErrorClass, detail: Optional[str] = None) -> str:
    if kind is ErrorClass.AUTH_INVALID:
        msg = f"Authentication token expired or was revoked. Please reconnect your {display_name} account."
    else:
        msg = f"Token refresh failed. Please reconnect your {display_name} account."
    return f"{msg} ({detail})" if detail else msg


def _superseded(snapshot: IntegrationCredential, current: IntegrationCredential) -> bool:
    """The stored row is a different connection than the one the snapshot was taken from."""
    return current.connection_id != snapshot.connection_id


def _refreshed_elsewhere(snapshot: IntegrationCredential, current: IntegrationCredential,
                         now: datetime, margin: timedelta) -> bool:
    """Someone else wrote a usable token after we took our snapshot."""
    return (
        current.version != snapshot.version
        and current.healthy
        and not current.needs_refresh(now, margin)
    )


class ConnectionHealthTracker:
    def __init__(self, store: CredentialStore, *, refresh_margin: timedelta = timedelta(minutes=30),
                 clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._margin = refresh_margin
        self._clock = clock

    def is_healthy(self, user_id: str, provider: str, scope_key: str | None = None) -> bool:
        try:
            cred = self._store.get(user_id, provider, scope_key)
        except CorruptCredentialError:
            return False
        return bool(cred and cred.healthy)

    def record(self, snapshot: IntegrationCredential, outcome: RefreshOutcome) -> Optional[IntegrationCredential]:
        """
        Persist a refresh outcome. Returns the record as stored afterwards (None if the
        credential was deleted meanwhile). Transient failures write nothing.
        """
        key = snapshot.key
        now = self._clock()

        if outcome.classification is ErrorClass.TRANSIENT:
            return snapshot

        if outcome.succeeded:
            fresh = outcome.credential
            if fresh is None:
                raise ValueError("successful refresh outcome without a credential")

            def apply_success(current: IntegrationCredential) -> Optional[IntegrationCredential]:
                if _superseded(snapshot, current):
                    logger.info(f"{key} was reconnected during refresh; discarding the old grant's tokens",
                                extra={"credential": str(key)})
                    return None
                if _refreshed_elsewhere(snapshot, current, now, self._margin):
                    logger.info(f"refresh for {key} lost the race; keeping the token already stored",
                                extra={"credential": str(key)})
                    return None
                return current.model_copy(update={
                    "access_token": fresh.access_token,
                    "refresh_token": fresh.refresh_token or current.refresh_token,
                    "expires_at": fresh.expires_at,
                    "granted_scopes": fresh.granted_scopes or current.granted_scopes,
                    "account_identifier": fresh.account_identifier or current.account_identifier,
                    "last_refreshed_at": fresh.last_refreshed_at,
                }).cleared()

            return self._store.update(key.user_id, key.provider, key.scope_key, apply_success)

        kind = outcome.classification or ErrorClass.UNKNOWN
        message = outcome.error or reconnect_message(key.provider, kind)

        def apply_failure(current: IntegrationCredential) -> Optional[IntegrationCredential]:
            if _superseded(snapshot, current) or current.refresh_token != snapshot.refresh_token:
                # the failure was against a grant that is no longer the stored one
                return None
            if _refreshed_elsewhere(snapshot, current, now, self._margin):
                # our refresh token was probably rotated out by the winning refresh
                return None
            return current.flagged(message, kind, now)

        return self._store.update(key.user_id, key.provider, key.scope_key, apply_failure)

    def flag(self, key: CredentialKey, message: str, kind: ErrorClass,
             connection_id: str | None = None) -> Optional[IntegrationCredential]:
        """
        Mark a connection as needing attention after a non-refresh call revealed a bad credential.
        With `connection_id`, a row re-created since the token was handed out is left alone.
        """
        now = self._clock()

        def apply(current: IntegrationCredential) -> Optional[IntegrationCredential]:
            if connection_id and current.connection_id != connection_id:
                return None
            return current.flagged(message, kind, now)

        return self._store.update(key.user_id, key.provider, key.scope_key, apply)

    def flag_unreadable(self, key: CredentialKey, message: str) -> bool:
        return self._store.flag_unreadable(key, message, self._clock())

    async def report_recovered(self, user_id: str, provider: str, scope_key: str | None, probe: Probe,
                               *, display_name: str | None = None,
                               connection_id: str | None = None) -> bool:
        """
        Clear a stale error flag, but only once `probe` (an authenticated provider call)
        has completed successfully. A failing probe is classified like any other
        provider error; transient failures leave the record as it was.
        """
        key = CredentialKey(user_id=user_id, provider=provider, scope_key=scope_key)
        started = self._clock()
        try:
            await probe()
        except Exception as e:
            kind = classify(e)
            log_classified(kind, e, action="health probe", key=key)
            if kind is not ErrorClass.TRANSIENT:
                self.flag(key, reconnect_message(display_name or provider, kind, describe(e)), kind, connection_id)
            return False

        def clear(current: IntegrationCredential) -> Optional[IntegrationCredential]:
            if current.healthy:
                return None
            if connection_id and current.connection_id != connection_id:
                return None
            if current.last_error_at and as_utc(current.last_error_at) > started:
                # a newer failure landed while we were probing; it wins
                return None
            return current.cleared()

        updated = self._store.update(user_id, provider, scope_key, clear)
        if updated is None:
            return False
        if updated.healthy:
            logger.info(f"connection {key} confirmed healthy", extra={"credential": str(key)})
        return updated.healthy
