from __future__ import annotations

import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest

from integrations.core.config import Settings
from integrations.domain import ErrorClass, NotificationPayload
from integrations.providers.google import GoogleProvider
from integrations.providers.microsoft import MicrosoftProvider
from integrations.providers.registry import build_providers
from integrations.providers.slack import SlackProvider
from integrations.services.errors import DestinationRejected, ProviderError, classify


class Recorder:
    """httpx.MockTransport handler that answers from a route table and keeps every request."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestMicrosoftProvider:
    @pytest.mark.asyncio
    async def test_refresh_sends_scopes_and_parses_grant(self):
        rec = Recorder({("POST", "/tenant-x/oauth2/v2.0/token"): (200, {
            "access_token": "A2", "expires_in": 3599, "scope": "User.Read Mail.Send",
        })})
        p = MicrosoftProvider("cid", "secret", tenant="tenant-x", transport=rec.transport)

        grant = await p.refresh("R1", ["User.Read", "Mail.Send"])

        assert grant.access_token == "A2"
        assert grant.refresh_token is None
        assert grant.expires_in == 3599
        assert grant.scopes == ["User.Read", "Mail.Send"]
        form = _form(rec.requests[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "R1"
        assert form["scope"] == "User.Read Mail.Send"

    @pytest.mark.asyncio
    async def test_refresh_invalid_grant_classified_auth(self):
        rec = Recorder({("POST", "/common/oauth2/v2.0/token"): (400, {
            "error": "invalid_grant",
            "error_description": "AADSTS700082: The refresh token has expired due to inactivity.",
        })})
        p = MicrosoftProvider("cid", "secret", transport=rec.transport)

        with pytest.raises(ProviderError) as exc:
            await p.refresh("R1")

        assert exc.value.code == "invalid_grant"
        assert classify(exc.value) is ErrorClass.AUTH_INVALID

    @pytest.mark.asyncio
    async def test_unconfigured_client_is_unknown(self):
        with pytest.raises(ProviderError) as exc:
            await MicrosoftProvider().refresh("R1")
        assert classify(exc.value) is ErrorClass.UNKNOWN

    @pytest.mark.asyncio
    async def test_send_mail(self):
        rec = Recorder({("POST", "/v1.0/me/sendMail"): (202, None)})
        p = MicrosoftProvider("cid", "secret", transport=rec.transport)

        async with p.client("A1") as client:
            out = await p.send(client, "boss@example.com", NotificationPayload(text="hi", subject="Reminder"))

        assert out == {"recipient": "boss@example.com"}
        req = rec.requests[0]
        assert req.headers["Authorization"] == "Bearer A1"
        message = json.loads(req.content)["message"]
        assert message["toRecipients"][0]["emailAddress"]["address"] == "boss@example.com"
        assert message["subject"] == "Reminder"

    @pytest.mark.asyncio
    async def test_bad_recipient_rejected(self):
        rec = Recorder({("POST", "/v1.0/me/sendMail"): (400, {
            "error": {"code": "ErrorInvalidRecipients", "message": "At least one recipient is not valid."},
        })})
        p = MicrosoftProvider("cid", "secret", transport=rec.transport)

        async with p.client("A1") as client:
            with pytest.raises(DestinationRejected):
                await p.send(client, "nope", NotificationPayload(text="hi"))

    @pytest.mark.asyncio
    async def test_probe_401_is_auth_invalid(self):
        rec = Recorder({("GET", "/v1.0/me"): (401, {
            "error": {"code": "InvalidAuthenticationToken", "message": "Access token has expired."},
        })})
        p = MicrosoftProvider("cid", "secret", transport=rec.transport)

        async with p.client("A1") as client:
            with pytest.raises(ProviderError) as exc:
                await p.probe(client)
        assert classify(exc.value) is ErrorClass.AUTH_INVALID


class TestSlackProvider:
    @pytest.mark.asyncio
    async def test_post_message(self):
        rec = Recorder({("POST", "/api/chat.postMessage"): (200, {"ok": True, "channel": "C1", "ts": "1.2"})})
        p = SlackProvider(transport=rec.transport)

        async with p.client("xoxb-1") as client:
            out = await p.send(client, "C1", NotificationPayload(text="standup in 5"))

        assert out == {"channel": "C1", "ts": "1.2"}
        assert json.loads(rec.requests[0].content) == {"channel": "C1", "text": "standup in 5"}

    @pytest.mark.asyncio
    async def test_channel_not_found_is_destination_problem(self):
        rec = Recorder({("POST", "/api/chat.postMessage"): (200, {"ok": False, "error": "channel_not_found"})})
        p = SlackProvider(transport=rec.transport)

        async with p.client("xoxb-1") as client:
            with pytest.raises(DestinationRejected) as exc:
                await p.send(client, "C404", NotificationPayload(text="x"))
        assert exc.value.code == "channel_not_found"

    @pytest.mark.asyncio
    async def test_invalid_auth_classified_auth(self):
        rec = Recorder({("POST", "/api/auth.test"): (200, {"ok": False, "error": "invalid_auth"})})
        p = SlackProvider(transport=rec.transport)

        async with p.client("xoxb-1") as client:
            with pytest.raises(ProviderError) as exc:
                await p.probe(client)
        assert not isinstance(exc.value, DestinationRejected)
        assert classify(exc.value) is ErrorClass.AUTH_INVALID

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        rec = Recorder({("POST", "/api/chat.postMessage"): (429, {"ok": False, "error": "ratelimited"})})
        p = SlackProvider(transport=rec.transport)

        async with p.client("xoxb-1") as client:
            with pytest.raises(ProviderError) as exc:
                await p.send(client, "C1", NotificationPayload(text="x"))
        assert classify(exc.value) is ErrorClass.TRANSIENT

    @pytest.mark.asyncio
    async def test_revoke_already_invalid_counts_as_done(self):
        rec = Recorder({("GET", "/api/auth.revoke"): (200, {"ok": False, "error": "invalid_auth"})})
        p = SlackProvider(transport=rec.transport)
        assert await p.revoke("xoxb-1") is True


class TestGoogleProvider:
    @pytest.mark.asyncio
    async def test_send_encodes_message(self):
        rec = Recorder({("POST", "/gmail/v1/users/me/messages/send"): (200, {"id": "m1"})})
        p = GoogleProvider(transport=rec.transport)

        async with p.client("ya29.A1") as client:
            out = await p.send(client, "boss@example.com", NotificationPayload(text="hello", subject="Due"))

        assert out == {"recipient": "boss@example.com", "id": "m1"}
        raw = json.loads(rec.requests[0].content)["raw"]
        decoded = base64.urlsafe_b64decode(raw).decode()
        assert "To: boss@example.com" in decoded
        assert "Subject: Due" in decoded

    @pytest.mark.asyncio
    async def test_revoke_accepts_already_revoked(self):
        rec = Recorder({("POST", "/revoke"): (400, {"error": "invalid_token"})})
        p = GoogleProvider(transport=rec.transport)
        assert await p.revoke("R1") is True
        assert _form(rec.requests[0]) == {"token": "R1"}

    @pytest.mark.asyncio
    async def test_refresh_server_error_is_transient(self):
        rec = Recorder({("POST", "/token"): (503, {"error": "backendError"})})
        p = GoogleProvider("cid", "secret", transport=rec.transport)

        with pytest.raises(ProviderError) as exc:
            await p.refresh("R1")
        assert classify(exc.value) is ErrorClass.TRANSIENT


def test_registry_builds_every_provider():
    providers = build_providers(Settings(MICROSOFT_TENANT="contoso", _env_file=None))
    assert set(providers) == {"microsoft", "slack", "google"}
    assert "contoso" in providers["microsoft"].token_url
    assert providers["slack"].configured is False
