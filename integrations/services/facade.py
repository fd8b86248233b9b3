"""
IntegrationFacade: the one entry point the rest of the application uses.

Callers get typed outcomes (TokenResult / ClientResult / DeliveryResult /
ConnectionStatus), never exceptions, for the expected failure modes:
not connected, transient provider trouble, needs reconnect, no destination.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from integrations.core.config import Settings, settings
from integrations.domain import (
    BroadcastResult,
    ClientResult,
    ConnectionState,
    ConnectionStatus,
    CredentialKey,
    DeliveryResult,
    DeliveryStatus,
    Destination,
    ErrorClass,
    FailureReason,
    IntegrationCredential,
    NotificationPayload,
    TokenGrant,
    TokenResult,
    utcnow,
)
from integrations.providers.base import OAuthProvider
from integrations.services.credential_store import CorruptCredentialError, CredentialStore
from integrations.services.destinations import DestinationResolver
from integrations.services.errors import PROVIDER_ERRORS, DestinationRejected, classify, describe, log_classified
from integrations.services.health import ConnectionHealthTracker, reconnect_message
from integrations.services.preferences import PreferenceStore
from integrations.services.refresher import UNREADABLE_MESSAGE, TokenRefresher

logger = logging.getLogger(__name__)

T = TypeVar("T")
ClientFn = Callable[[Any], Awaitable[T]]

_FAILURE_TO_DELIVERY = {
    FailureReason.NOT_CONNECTED: DeliveryStatus.NOT_CONNECTED,
    FailureReason.TRANSIENT: DeliveryStatus.TRANSIENT,
    FailureReason.NEEDS_RECONNECT: DeliveryStatus.NEEDS_RECONNECT,
}


class IntegrationFacade:
    def __init__(
        self,
        store: CredentialStore,
        preferences: PreferenceStore,
        providers: Mapping[str, OAuthProvider],
        *,
        refresh_margin: timedelta = timedelta(minutes=30),
        default_lifetime: timedelta = timedelta(hours=1),
        timeout: float = 15.0,
        system_tokens: Mapping[str, str] | None = None,
        system_destinations: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.preferences = preferences
        self.providers = dict(providers)
        self.timeout = timeout
        self.default_lifetime = default_lifetime
        self._clock = clock
        self._system_tokens = dict(system_tokens or {})
        self.health = ConnectionHealthTracker(store, refresh_margin=refresh_margin, clock=clock)
        self.refresher = TokenRefresher(
            store, self.providers, self.health,
            refresh_margin=refresh_margin,
            default_lifetime=default_lifetime,
            timeout=timeout,
            clock=clock,
        )
        self.resolver = DestinationResolver(preferences, store, system_destinations)

    def _provider(self, name: str) -> OAuthProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise ValueError(f"unknown provider '{name}'") from None

    # ---- lifecycle -----------------------------------------------------------

    def connect(
        self,
        user_id: str,
        provider: str,
        grant: TokenGrant,
        *,
        scope_key: str | None = None,
        account_identifier: str | None = None,
        default_destination: str | None = None,
        is_default: bool | None = None,
    ) -> IntegrationCredential:
        """
        Store the credential produced by a successful consent. Re-consent replaces tokens in place
        and keeps the default marker unless `is_default` says otherwise.
        """
        p = self._provider(provider)
        now = self._clock()
        if is_default is None:
            try:
                existing = self.store.get(user_id, provider, scope_key)
            except CorruptCredentialError:
                existing = None
            is_default = bool(existing and existing.is_default)
        lifetime = timedelta(seconds=grant.expires_in) if grant.expires_in else None
        cred = IntegrationCredential(
            user_id=user_id,
            provider=provider,
            scope_key=scope_key,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            # no expires_in with a refresh token: assume the default lifetime;
            # no refresh token at all: a non-expiring token (Slack bot tokens)
            expires_at=(now + lifetime) if lifetime else (
                now + self.default_lifetime if grant.refresh_token else None
            ),
            granted_scopes=frozenset(grant.scopes or p.default_scopes),
            account_identifier=account_identifier or grant.account_identifier,
            default_destination=default_destination,
            is_default=is_default and scope_key is not None,
            healthy=True,
            last_refreshed_at=now,
        )
        stored = self.store.upsert(cred)
        if stored.is_default:
            self.store.set_default(user_id, provider, scope_key)
            stored = self.store.get(user_id, provider, scope_key) or stored
        logger.info(f"stored {p.display_name} credential for {cred.key}",
                    extra={"credential": str(cred.key), "has_refresh_token": bool(stored.refresh_token)})
        return stored

    async def disconnect(self, user_id: str, provider: str, scope_key: str | None = None) -> bool:
        """Hard delete, immediately. Provider-side revocation afterwards is best effort."""
        key = CredentialKey(user_id=user_id, provider=provider, scope_key=scope_key)
        try:
            cred = self.store.get(user_id, provider, scope_key)
        except CorruptCredentialError:
            cred = None
        existed = self.store.delete(user_id, provider, scope_key)
        logger.info(f"disconnected {key}", extra={"credential": str(key), "existed": existed})

        p = self.providers.get(provider)
        if cred and p:
            token = cred.refresh_token or cred.access_token
            try:
                await asyncio.wait_for(p.revoke(token), self.timeout)
            except Exception as e:
                # local state is already gone; the provider will expire the grant eventually
                logger.warning(f"provider revoke failed for {key}: {describe(e)}",
                               extra={"credential": str(key)})
        return existed

    # ---- tokens & clients ----------------------------------------------------

    def _resolve_scope(self, user_id: str, provider: str, scope_key: str | None) -> str | None:
        """No scope named and no unscoped connection: use the user's default scoped connection."""
        if scope_key is not None:
            return scope_key
        try:
            if self.store.get(user_id, provider, None) is not None:
                return None
        except CorruptCredentialError:
            # the unscoped row exists; the refresher reports it
            return None
        return self.store.default_scope(user_id, provider)

    async def ensure_fresh_token(self, user_id: str, provider: str, scope_key: str | None = None) -> TokenResult:
        scope_key = self._resolve_scope(user_id, provider, scope_key)
        return await self.refresher.ensure_fresh_token(user_id, provider, scope_key)

    async def with_client(self, user_id: str, provider: str, scope_key: str | None, fn: ClientFn) -> ClientResult:
        """
        Run `fn(client)` with a provider client bound to a fresh user token.
        `fn` is not invoked when no usable token is available. Provider errors raised
        inside `fn` are classified and credential-level ones flag the connection;
        anything else is a bug in `fn` and propagates.
        """
        p = self._provider(provider)
        scope_key = self._resolve_scope(user_id, provider, scope_key)
        tok = await self.refresher.ensure_fresh_token(user_id, provider, scope_key)
        if not tok.ok:
            return ClientResult(failure=tok.failure, detail=tok.detail)
        key = CredentialKey(user_id=user_id, provider=provider, scope_key=scope_key)
        try:
            async with p.client(tok.access_token) as client:
                value = await asyncio.wait_for(fn(client), self.timeout)
        except PROVIDER_ERRORS as e:
            reason = self._after_call_error(key, p, e, action="provider call", connection_id=tok.connection_id)
            return ClientResult(failure=reason, detail=describe(e))
        except Exception:
            logger.exception(f"caller code failed inside {p.display_name} client for {key}",
                             extra={"credential": str(key)})
            raise
        return ClientResult(value=value)

    def _after_call_error(self, key: CredentialKey, p: OAuthProvider, error: Exception, *, action: str,
                          connection_id: str | None = None) -> FailureReason:
        kind = classify(error)
        log_classified(kind, error, action=action, key=key)
        if kind is ErrorClass.TRANSIENT:
            return FailureReason.TRANSIENT
        self.health.flag(key, reconnect_message(p.display_name, kind, describe(error)), kind, connection_id)
        return FailureReason.NEEDS_RECONNECT

    # ---- delivery ------------------------------------------------------------

    async def deliver(
        self,
        user_id: str,
        provider: str,
        category: str,
        payload: NotificationPayload,
        explicit_target: Optional[str] = None,
        scope_key: Optional[str] = None,
    ) -> DeliveryResult:
        p = self._provider(provider)
        scope_key = self._resolve_scope(user_id, provider, scope_key)
        destination = self.resolver.resolve(user_id, provider, category, explicit_target, scope_key)
        if destination is None:
            return DeliveryResult(status=DeliveryStatus.UNRESOLVED, scope_key=scope_key,
                                  detail=f"no {p.display_name} destination configured for {category}")

        async def send(client: Any) -> dict:
            return await p.send(client, destination.target, payload)

        tok = await self.refresher.ensure_fresh_token(user_id, provider, scope_key)
        if tok.failure is FailureReason.NOT_CONNECTED and provider in self._system_tokens:
            return await self._deliver_as_system(p, destination, send)
        if not tok.ok:
            return DeliveryResult(status=_FAILURE_TO_DELIVERY[tok.failure], destination=destination,
                                  scope_key=scope_key, detail=tok.detail)

        key = CredentialKey(user_id=user_id, provider=provider, scope_key=scope_key)
        try:
            async with p.client(tok.access_token) as client:
                await asyncio.wait_for(send(client), self.timeout)
        except DestinationRejected as e:
            logger.warning(f"{p.display_name} rejected destination {destination.target} for {key}: {e.code}",
                           extra={"credential": str(key), "error_code": e.code})
            return DeliveryResult(status=DeliveryStatus.FAILED, destination=destination, scope_key=scope_key,
                                  detail=describe(e), error_code=e.code)
        except Exception as e:
            reason = self._after_call_error(key, p, e, action="delivery", connection_id=tok.connection_id)
            return DeliveryResult(status=_FAILURE_TO_DELIVERY[reason], destination=destination, scope_key=scope_key,
                                  detail=describe(e), error_code=getattr(e, "code", None))
        return DeliveryResult(status=DeliveryStatus.DELIVERED, destination=destination, scope_key=scope_key)

    async def deliver_all(
        self,
        user_id: str,
        provider: str,
        category: str,
        payload: NotificationPayload,
    ) -> BroadcastResult:
        """
        Send one notification through every connection the user has for `provider`, one
        destination each. With no connections at all this is a single `deliver`, which
        falls back to the system client where one is configured. Connections are sent to
        one after another; one failing does not stop the rest.
        """
        p = self._provider(provider)
        scopes = [k.scope_key for k in self.store.list_keys(provider, user_id=user_id)] or [None]
        out = BroadcastResult()
        for scope_key in scopes:
            result = await self.deliver(user_id, provider, category, payload, scope_key=scope_key)
            out.results.append(result)
            if result.status is DeliveryStatus.DELIVERED:
                out.sent += 1
            elif result.status is DeliveryStatus.UNRESOLVED:
                out.skipped += 1
            else:
                out.errors += 1
        logger.info(f"{p.display_name} broadcast for {user_id}: {out.sent} sent, {out.errors} failed, "
                    f"{out.skipped} without destination",
                    extra={"provider": provider, "sent": out.sent, "errors": out.errors, "skipped": out.skipped})
        return out

    async def _deliver_as_system(self, p: OAuthProvider, destination: Destination,
                                 send: Callable[[Any], Awaitable[dict]]) -> DeliveryResult:
        logger.info(f"no personal {p.display_name} connection; sending with the system client",
                    extra={"provider": p.name})
        try:
            async with p.client(self._system_tokens[p.name]) as client:
                await asyncio.wait_for(send(client), self.timeout)
        except DestinationRejected as e:
            return DeliveryResult(status=DeliveryStatus.FAILED, destination=destination,
                                  detail=describe(e), error_code=e.code, used_system_client=True)
        except Exception as e:
            kind = classify(e)
            log_classified(kind, e, action="system delivery", key=f"{p.name}:system")
            status = DeliveryStatus.TRANSIENT if kind is ErrorClass.TRANSIENT else DeliveryStatus.FAILED
            return DeliveryResult(status=status, destination=destination, detail=describe(e),
                                  error_code=getattr(e, "code", None), used_system_client=True)
        return DeliveryResult(status=DeliveryStatus.DELIVERED, destination=destination, used_system_client=True)

    # ---- status --------------------------------------------------------------

    def is_healthy(self, user_id: str, provider: str, scope_key: str | None = None) -> bool:
        return self.health.is_healthy(user_id, provider, scope_key)

    def describe_status(self, user_id: str, provider: str, scope_key: str | None = None) -> ConnectionStatus:
        try:
            cred = self.store.get(user_id, provider, scope_key)
        except CorruptCredentialError:
            return ConnectionStatus(provider=provider, scope_key=scope_key, state=ConnectionState.NEEDS_ATTENTION,
                                    connected=False, last_error=UNREADABLE_MESSAGE,
                                    last_error_kind=ErrorClass.UNKNOWN)
        if cred is None:
            return ConnectionStatus(provider=provider, scope_key=scope_key,
                                    state=ConnectionState.NOT_CONNECTED, connected=False)
        return _status_of(cred)

    def list_connections(self, user_id: str, provider: str) -> list[ConnectionStatus]:
        return [_status_of(c) for c in self.store.list_by_user(user_id, provider)]

    async def verify_connection(self, user_id: str, provider: str, scope_key: str | None = None) -> ConnectionStatus:
        """Health check: fresh token, then an authenticated probe; only a passing probe clears a flag."""
        p = self._provider(provider)
        tok = await self.refresher.ensure_fresh_token(user_id, provider, scope_key)
        if tok.ok:
            async def probe() -> str:
                async with p.client(tok.access_token) as client:
                    return await asyncio.wait_for(p.probe(client), self.timeout)

            await self.health.report_recovered(user_id, provider, scope_key, probe, display_name=p.display_name,
                                               connection_id=tok.connection_id)
        return self.describe_status(user_id, provider, scope_key)


def _status_of(cred: IntegrationCredential) -> ConnectionStatus:
    return ConnectionStatus(
        provider=cred.provider,
        scope_key=cred.scope_key,
        state=ConnectionState.CONNECTED if cred.healthy else ConnectionState.NEEDS_ATTENTION,
        connected=cred.healthy,
        account_identifier=cred.account_identifier,
        is_default=cred.is_default,
        last_error=cred.last_error_message,
        last_error_kind=cred.last_error_kind,
        last_error_at=cred.last_error_at,
        expires_at=cred.expires_at,
        last_refreshed_at=cred.last_refreshed_at,
    )


def build_facade(cfg: Settings, session_factory=None) -> IntegrationFacade:
    from integrations.db.session import SessionLocal
    from integrations.providers.registry import build_providers
    from integrations.services.crypto import TokenCipher

    sessions = session_factory or SessionLocal
    store = CredentialStore(sessions, TokenCipher(cfg.ENCRYPTION_KEY))
    return IntegrationFacade(
        store,
        PreferenceStore(sessions),
        build_providers(cfg),
        refresh_margin=timedelta(seconds=cfg.REFRESH_MARGIN_SECONDS),
        default_lifetime=timedelta(seconds=cfg.DEFAULT_TOKEN_LIFETIME_SECONDS),
        timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
        system_tokens=cfg.system_tokens(),
        system_destinations=cfg.system_destinations(),
    )


@lru_cache(maxsize=1)
def get_facade() -> IntegrationFacade:
    return build_facade(settings)
