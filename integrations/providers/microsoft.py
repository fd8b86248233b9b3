from __future__ import annotations
from typing import Any, Dict, List

import httpx

from integrations.domain import NotificationPayload
from integrations.providers.base import OAuthProvider, raise_for_api_error
from integrations.services.errors import DestinationRejected, ProviderError

OUTLOOK_SCOPES = [
    "offline_access",
    "User.Read",
    "Mail.Read",
    "Mail.ReadWrite",
    "Mail.Send",
    "Calendars.Read",
    "Calendars.ReadWrite",
]

# Graph error codes that point at the recipient, not the credential
_RECIPIENT_ERRORS = {"ErrorInvalidRecipients", "ErrorRecipientNotFound", "ErrorInvalidEmailAddress"}


class MicrosoftProvider(OAuthProvider):
    name = "microsoft"
    display_name = "Microsoft"
    api_base_url = "https://graph.microsoft.com/v1.0"
    default_scopes = OUTLOOK_SCOPES

    def __init__(self, client_id: str = "", client_secret: str = "", *, tenant: str = "common", **kwargs):
        super().__init__(client_id, client_secret, **kwargs)
        self.token_url = f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

    def _refresh_form(self, refresh_token: str, scopes: List[str]) -> Dict[str, str]:
        form = super()._refresh_form(refresh_token, scopes)
        form["scope"] = " ".join(scopes)
        return form

    async def probe(self, client: httpx.AsyncClient) -> str:
        resp = await client.get("/me", params={"$select": "mail,userPrincipalName"})
        body = raise_for_api_error(resp)
        return body.get("mail") or body.get("userPrincipalName") or ""

    async def send(self, client: httpx.AsyncClient, destination: str, payload: NotificationPayload) -> Dict[str, Any]:
        message = {
            "subject": payload.subject or payload.text[:80],
            "body": {
                "contentType": "HTML" if payload.extra.get("html") else "Text",
                "content": payload.text,
            },
            "toRecipients": [{"emailAddress": {"address": destination}}],
        }
        resp = await client.post("/me/sendMail", json={"message": message, "saveToSentItems": True})
        try:
            raise_for_api_error(resp)
        except ProviderError as e:
            if e.code in _RECIPIENT_ERRORS:
                raise DestinationRejected(e.message, status_code=e.status_code, code=e.code) from e
            raise
        return {"recipient": destination}
