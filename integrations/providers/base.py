from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from integrations.domain import NotificationPayload, TokenGrant
from integrations.services.errors import ProviderError


class OAuthProvider(ABC):
    """
    Provider-specific half of the integration layer: token endpoint, client
    construction and the handful of API calls the core needs (probe, send, revoke).
    Everything else about the provider's API belongs to whoever calls with_client().
    """

    name: str = ""
    display_name: str = ""
    token_url: str = ""
    api_base_url: str = ""
    default_scopes: List[str] = []

    def __init__(self, client_id: str = "", client_secret: str = "", *,
                 timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        # tests pass an httpx.MockTransport here
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _http(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, **kwargs)

    def client(self, access_token: str) -> httpx.AsyncClient:
        """An API client bound to `access_token`; use as an async context manager."""
        return self._http(
            base_url=self.api_base_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def _ensure_client_config(self) -> None:
        if not self.configured:
            raise ProviderError(f"{self.display_name} OAuth client credentials are not configured",
                                code="client_not_configured")

    def _refresh_form(self, refresh_token: str, scopes: List[str]) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    async def refresh(self, refresh_token: str, scopes: Optional[List[str]] = None) -> TokenGrant:
        self._ensure_client_config()
        if not refresh_token:
            raise ValueError("refresh_token required")
        form = self._refresh_form(refresh_token, list(scopes or self.default_scopes))
        async with self._http() as http:
            resp = await http.post(self.token_url, data=form)
        return self._parse_grant(resp)

    def _parse_grant(self, resp: httpx.Response) -> TokenGrant:
        try:
            j = resp.json()
        except ValueError:
            raise ProviderError(f"token endpoint returned non-JSON body: {resp.text[:200]}",
                                status_code=resp.status_code)
        if resp.status_code != 200 or "error" in j:
            code = j.get("error") if isinstance(j.get("error"), str) else None
            detail = j.get("error_description") or code or resp.text[:200]
            raise ProviderError(f"token refresh failed: {detail}", status_code=resp.status_code, code=code)
        if not j.get("access_token"):
            raise ProviderError("token endpoint response has no access_token", status_code=resp.status_code)
        scope = j.get("scope")
        return TokenGrant(
            access_token=j["access_token"],
            refresh_token=j.get("refresh_token") or None,
            expires_in=int(j["expires_in"]) if j.get("expires_in") else None,
            scopes=scope.replace(",", " ").split() if isinstance(scope, str) else None,
        )

    @abstractmethod
    async def probe(self, client: httpx.AsyncClient) -> str:
        """Cheap authenticated call. Returns the account identifier, raises ProviderError on failure."""

    @abstractmethod
    async def send(self, client: httpx.AsyncClient, destination: str, payload: NotificationPayload) -> Dict[str, Any]:
        ...

    async def revoke(self, token: str) -> bool:
        return False


def raise_for_api_error(resp: httpx.Response) -> Dict[str, Any]:
    """Common handling for JSON APIs that signal errors with HTTP status codes."""
    if resp.status_code < 400 and not resp.content:
        return {}
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code >= 400:
        err = body.get("error") if isinstance(body, dict) else None
        if isinstance(err, dict):
            code, message = err.get("code"), err.get("message") or err.get("status")
        else:
            code, message = err, body.get("error_description") if isinstance(body, dict) else None
        raise ProviderError(f"api error: {message or resp.text[:200]}", status_code=resp.status_code, code=code)
    return body if isinstance(body, dict) else {"data": body}
