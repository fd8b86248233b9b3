from __future__ import annotations
import ipaddress
import logging
import secrets
from typing import Iterable, Optional

from fastapi import Header, HTTPException, Request

from integrations.core.config import settings

logger = logging.getLogger(__name__)


def ip_allowed(client_ip: str, allowed: Iterable[str]) -> bool:
    """Exact host or CIDR match. An empty allow-list disables the check."""
    entries = [("127.0.0.1" if e.strip().lower() == "localhost" else e.strip()) for e in allowed]
    entries = [e for e in entries if e]
    if not entries:
        return True
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return client_ip in entries
    for entry in entries:
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            if client_ip == entry:
                return True
    return False


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


async def require_internal(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
):
    expected = settings.API_INTERNAL_KEY
    if not expected or not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="missing or invalid X-API-Key")

    ip = client_ip(request)
    if not ip_allowed(ip, settings.INTERNAL_ALLOWED_IPS or []):
        logger.warning(f"internal call refused from {ip}", extra={"client_ip": ip})
        raise HTTPException(status_code=403, detail="ip_not_allowed")
