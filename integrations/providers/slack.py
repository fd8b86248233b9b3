from __future__ import annotations
from typing import Any, Dict

import httpx

from integrations.domain import NotificationPayload
from integrations.providers.base import OAuthProvider
from integrations.services.errors import DestinationRejected, ProviderError

SLACK_SCOPES = [
    "chat:write",
    "channels:read",
    "channels:join",
    "chat:write.public",
    "incoming-webhook",
]

# Slack answers HTTP 200 with ok=false; these codes are about the channel, not the token
_CHANNEL_ERRORS = {"channel_not_found", "not_in_channel", "is_archived", "restricted_action", "msg_too_long"}


def _unwrap(resp: httpx.Response) -> Dict[str, Any]:
    if resp.status_code == 429:
        raise ProviderError("slack rate limit hit", status_code=429, code="ratelimited")
    if resp.status_code >= 400:
        raise ProviderError(f"slack http error: {resp.text[:200]}", status_code=resp.status_code)
    try:
        body = resp.json()
    except ValueError:
        raise ProviderError(f"slack returned non-JSON body: {resp.text[:200]}", status_code=resp.status_code)
    if not body.get("ok"):
        code = body.get("error") or "unknown_error"
        exc = DestinationRejected if code in _CHANNEL_ERRORS else ProviderError
        raise exc(f"slack api error: {code}", status_code=resp.status_code, code=code)
    return body


class SlackProvider(OAuthProvider):
    name = "slack"
    display_name = "Slack"
    token_url = "https://slack.com/api/oauth.v2.access"
    api_base_url = "https://slack.com/api/"
    default_scopes = SLACK_SCOPES

    async def probe(self, client: httpx.AsyncClient) -> str:
        body = _unwrap(await client.post("auth.test"))
        return body.get("team") or body.get("user") or ""

    async def send(self, client: httpx.AsyncClient, destination: str, payload: NotificationPayload) -> Dict[str, Any]:
        message: Dict[str, Any] = {"channel": destination, "text": payload.text}
        if payload.extra.get("blocks"):
            message["blocks"] = payload.extra["blocks"]
        body = _unwrap(await client.post("chat.postMessage", json=message))
        return {"channel": body.get("channel", destination), "ts": body.get("ts")}

    async def revoke(self, token: str) -> bool:
        async with self.client(token) as client:
            resp = await client.get("auth.revoke")
        try:
            return bool(_unwrap(resp).get("revoked"))
        except ProviderError as e:
            # already revoked counts as done
            return e.code in ("invalid_auth", "token_revoked")
