from __future__ import annotations
import base64
from email.message import EmailMessage
from typing import Any, Dict

import httpx

from integrations.domain import NotificationPayload
from integrations.providers.base import OAuthProvider, raise_for_api_error
from integrations.services.errors import DestinationRejected, ProviderError

GOOGLE_REVOKE_ENDPOINT = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v3/userinfo"

GMAIL_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/calendar.readonly",
]


class GoogleProvider(OAuthProvider):
    name = "google"
    display_name = "Google"
    token_url = "https://oauth2.googleapis.com/token"
    api_base_url = "https://gmail.googleapis.com/gmail/v1"
    default_scopes = GMAIL_SCOPES

    async def probe(self, client: httpx.AsyncClient) -> str:
        body = raise_for_api_error(await client.get(GOOGLE_USERINFO_ENDPOINT))
        return body.get("email") or ""

    async def send(self, client: httpx.AsyncClient, destination: str, payload: NotificationPayload) -> Dict[str, Any]:
        msg = EmailMessage()
        msg["To"] = destination
        msg["Subject"] = payload.subject or payload.text[:80]
        if payload.extra.get("html"):
            msg.set_content(payload.text, subtype="html")
        else:
            msg.set_content(payload.text)
        raw = base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")

        resp = await client.post("/users/me/messages/send", json={"raw": raw})
        try:
            body = raise_for_api_error(resp)
        except ProviderError as e:
            # Gmail reports a malformed recipient as a plain 400 "Invalid To header"
            if e.status_code == 400 and "invalid to header" in e.message.lower():
                raise DestinationRejected(e.message, status_code=400, code="invalid_recipient") from e
            raise
        return {"recipient": destination, "id": body.get("id")}

    async def revoke(self, token: str) -> bool:
        """True if Google says OK or the token was already revoked (200 or 400)."""
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        async with self._http() as http:
            r = await http.post(GOOGLE_REVOKE_ENDPOINT, data={"token": token}, headers=headers)
        return r.status_code in (200, 400)
