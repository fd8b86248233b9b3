from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Mapping

from integrations.domain import (
    CredentialKey,
    ErrorClass,
    FailureReason,
    IntegrationCredential,
    RefreshOutcome,
    TokenResult,
    utcnow,
)
from integrations.providers.base import OAuthProvider
from integrations.services.credential_store import CorruptCredentialError, CredentialStore
from integrations.services.errors import classify, describe, log_classified
from integrations.services.health import ConnectionHealthTracker, reconnect_message

logger = logging.getLogger(__name__)

UNREADABLE_MESSAGE = "Stored credentials could not be read. Please reconnect your account."


class TokenRefresher:
    """
    Hands out access tokens that will stay valid for at least `refresh_margin`,
    refreshing through the provider when they would not. Never raises for expected
    failures: every outcome comes back as a TokenResult.
    """

    def __init__(
        self,
        store: CredentialStore,
        providers: Mapping[str, OAuthProvider],
        health: ConnectionHealthTracker,
        *,
        refresh_margin: timedelta = timedelta(minutes=30),
        default_lifetime: timedelta = timedelta(hours=1),
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._providers = providers
        self._health = health
        self._margin = refresh_margin
        self._default_lifetime = default_lifetime
        self._timeout = timeout
        self._clock = clock

    def display_name(self, provider: str) -> str:
        p = self._providers.get(provider)
        return p.display_name if p else provider

    async def ensure_fresh_token(self, user_id: str, provider: str, scope_key: str | None = None) -> TokenResult:
        key = CredentialKey(user_id=user_id, provider=provider, scope_key=scope_key)
        try:
            cred = self._store.get(user_id, provider, scope_key)
        except CorruptCredentialError:
            logger.exception(f"credential for {key} is corrupt; treating as needs-reconnect",
                             extra={"credential": str(key)})
            self._health.flag_unreadable(key, UNREADABLE_MESSAGE)
            return TokenResult(failure=FailureReason.NEEDS_RECONNECT, detail=UNREADABLE_MESSAGE)

        if cred is None:
            return TokenResult(failure=FailureReason.NOT_CONNECTED,
                               detail=f"no {self.display_name(provider)} connection on record")

        if not cred.healthy:
            # a flagged connection may have recovered on the provider side; carry on as usual
            logger.info(f"{key} is flagged ({cred.last_error_kind}); attempting normally",
                        extra={"credential": str(key)})

        now = self._clock()
        if not cred.needs_refresh(now, self._margin):
            return TokenResult(access_token=cred.access_token, expires_at=cred.expires_at,
                               connection_id=cred.connection_id)

        outcome = await self.refresh(cred)
        stored = self._health.record(cred, outcome)

        if stored is None:
            # disconnected while the refresh was in flight
            return TokenResult(failure=FailureReason.NOT_CONNECTED,
                               detail=f"{self.display_name(provider)} connection was removed")
        if outcome.succeeded:
            return TokenResult(access_token=stored.access_token, expires_at=stored.expires_at,
                               connection_id=stored.connection_id)
        if outcome.classification is ErrorClass.TRANSIENT:
            return TokenResult(failure=FailureReason.TRANSIENT, detail=outcome.error)
        if stored.healthy and not stored.needs_refresh(self._clock(), self._margin):
            # a concurrent refresh succeeded; our failure was against a superseded refresh token
            return TokenResult(access_token=stored.access_token, expires_at=stored.expires_at,
                               connection_id=stored.connection_id)
        return TokenResult(failure=FailureReason.NEEDS_RECONNECT, detail=outcome.error)

    async def refresh(self, cred: IntegrationCredential) -> RefreshOutcome:
        """One refresh attempt against the provider. Writes nothing."""
        provider = self._providers.get(cred.provider)
        if provider is None:
            return RefreshOutcome(classification=ErrorClass.UNKNOWN,
                                  error=f"no provider registered for '{cred.provider}'")
        if not cred.refresh_token:
            return RefreshOutcome(
                classification=ErrorClass.AUTH_INVALID,
                error=reconnect_message(provider.display_name, ErrorClass.AUTH_INVALID, "no refresh token on record"),
            )

        scopes = sorted(cred.granted_scopes) or list(provider.default_scopes)
        try:
            grant = await asyncio.wait_for(provider.refresh(cred.refresh_token, scopes), self._timeout)
        except Exception as e:
            kind = classify(e)
            log_classified(kind, e, action="token refresh", key=cred.key)
            if kind is ErrorClass.TRANSIENT:
                return RefreshOutcome(classification=kind, error=describe(e))
            return RefreshOutcome(classification=kind,
                                  error=reconnect_message(provider.display_name, kind, describe(e)))

        updated = cred.with_grant(grant, now=self._clock(), default_lifetime=self._default_lifetime)
        logger.info(f"refreshed {cred.key}, expires {updated.expires_at.isoformat()}",
                    extra={"credential": str(cred.key), "rotated_refresh_token": bool(grant.refresh_token)})
        return RefreshOutcome(credential=updated)
