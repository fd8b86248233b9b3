from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from cryptography.fernet import Fernet

# settings are read at import time; pin them before anything from integrations loads
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("API_INTERNAL_KEY", "test-internal-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="integrations-logs-"))
os.environ.setdefault("SLACK_BOT_TOKEN", "")
os.environ.setdefault("SLACK_CHANNEL_ID", "")

from integrations.db.session import init_db, make_engine, make_session_factory  # noqa: E402
from integrations.domain import IntegrationCredential, NotificationPayload, TokenGrant  # noqa: E402
from integrations.providers.base import OAuthProvider  # noqa: E402
from integrations.services.credential_store import CredentialStore  # noqa: E402
from integrations.services.crypto import TokenCipher  # noqa: E402
from integrations.services.facade import IntegrationFacade  # noqa: E402
from integrations.services.preferences import PreferenceStore  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

RefreshBehaviour = Union[TokenGrant, BaseException, Callable[[int], Any]]


class Clock:
    """Settable clock handed to every service under test."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProvider(OAuthProvider):
    """In-memory provider that records every call the core makes."""

    name = "fake"
    display_name = "Fake"
    default_scopes = ["read", "send"]

    def __init__(self, refresh: Optional[RefreshBehaviour] = None):
        super().__init__("client-id", "client-secret", timeout=1.0)
        self.refresh_behaviour = refresh
        self.refresh_calls: List[Dict[str, Any]] = []
        self.send_calls: List[Dict[str, Any]] = []
        self.probe_calls: List[str] = []
        self.revoke_calls: List[str] = []
        self.send_error: Optional[BaseException] = None
        self.probe_error: Optional[BaseException] = None
        self.revoke_error: Optional[BaseException] = None
        self.refresh_delay = 0.0
        self.send_delay = 0.0

    async def refresh(self, refresh_token: str, scopes: Optional[List[str]] = None) -> TokenGrant:
        self.refresh_calls.append({"refresh_token": refresh_token, "scopes": scopes})
        call_no = len(self.refresh_calls)
        # yield so concurrent callers interleave around the network call
        await asyncio.sleep(self.refresh_delay)
        behaviour = self.refresh_behaviour
        if callable(behaviour) and not isinstance(behaviour, (TokenGrant, BaseException)):
            behaviour = behaviour(call_no)
        if isinstance(behaviour, BaseException):
            raise behaviour
        if behaviour is None:
            return TokenGrant(access_token=f"access-{call_no}", expires_in=3600)
        return behaviour

    async def probe(self, client) -> str:
        self.probe_calls.append(client.headers["Authorization"])
        if self.probe_error:
            raise self.probe_error
        return "owner@example.com"

    async def send(self, client, destination: str, payload: NotificationPayload) -> Dict[str, Any]:
        self.send_calls.append({
            "auth": client.headers["Authorization"],
            "destination": destination,
            "text": payload.text,
        })
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise self.send_error
        return {"destination": destination}

    async def revoke(self, token: str) -> bool:
        self.revoke_calls.append(token)
        if self.revoke_error:
            raise self.revoke_error
        return True


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(Fernet.generate_key().decode())


@pytest.fixture
def store(session_factory, cipher) -> CredentialStore:
    return CredentialStore(session_factory, cipher)


@pytest.fixture
def preferences(session_factory) -> PreferenceStore:
    return PreferenceStore(session_factory)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_facade(store, preferences, provider, clock):
    def build(**kwargs) -> IntegrationFacade:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("timeout", 0.5)
        return IntegrationFacade(store, preferences, {provider.name: provider}, **kwargs)

    return build


@pytest.fixture
def facade(make_facade) -> IntegrationFacade:
    return make_facade()


@pytest.fixture
def make_credential(clock):
    def build(**overrides) -> IntegrationCredential:
        fields = dict(
            user_id="u1",
            provider="fake",
            access_token="A1",
            refresh_token="R1",
            expires_at=clock() + timedelta(hours=1),
            granted_scopes=frozenset({"read", "send"}),
            account_identifier="owner@example.com",
            last_refreshed_at=clock(),
        )
        fields.update(overrides)
        return IntegrationCredential(**fields)

    return build
