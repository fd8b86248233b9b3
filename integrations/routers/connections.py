from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field

from integrations.domain import ConnectionStatus, FailureReason, TokenGrant, TokenResult
from integrations.security.internal import require_internal
from integrations.services.facade import IntegrationFacade, get_facade

router = APIRouter(prefix="/connections", tags=["connections"], dependencies=[Depends(require_internal)])

FAILURE_STATUS = {
    FailureReason.NOT_CONNECTED: 404,
    FailureReason.NEEDS_RECONNECT: 409,
    FailureReason.TRANSIENT: 503,
}


def raise_for_failure(failure: Optional[FailureReason], detail: Optional[str]) -> None:
    if failure is not None:
        raise HTTPException(status_code=FAILURE_STATUS[failure], detail=detail or failure.value)


def known_provider(
    provider: str = Path(..., min_length=1),
    facade: IntegrationFacade = Depends(get_facade),
) -> str:
    if provider not in facade.providers:
        raise HTTPException(status_code=404, detail=f"unknown provider '{provider}'")
    return provider


class ConnectReq(BaseModel):
    user_id: str = Field(..., min_length=1)
    scope_key: Optional[str] = None
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(None, gt=0)
    scopes: Optional[List[str]] = None
    account_identifier: Optional[str] = None
    default_destination: Optional[str] = None
    is_default: Optional[bool] = None


class UserScopeReq(BaseModel):
    user_id: str = Field(..., min_length=1)
    scope_key: Optional[str] = None


class TokenResp(BaseModel):
    access_token: str
    expires_at: Optional[datetime] = None


@router.put("/{provider}", response_model=ConnectionStatus, summary="Store the credential from a completed consent")
def connect(
    body: ConnectReq,
    provider: str = Depends(known_provider),
    facade: IntegrationFacade = Depends(get_facade),
):
    grant = TokenGrant(
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_in=body.expires_in,
        scopes=body.scopes,
    )
    facade.connect(
        body.user_id, provider, grant,
        scope_key=body.scope_key,
        account_identifier=body.account_identifier,
        default_destination=body.default_destination,
        is_default=body.is_default,
    )
    return facade.describe_status(body.user_id, provider, body.scope_key)


@router.get("/{provider}/status", response_model=ConnectionStatus)
def status(
    provider: str = Depends(known_provider),
    user_id: str = Query(..., min_length=1),
    scope_key: Optional[str] = Query(None),
    facade: IntegrationFacade = Depends(get_facade),
):
    return facade.describe_status(user_id, provider, scope_key)


@router.get("/{provider}", response_model=List[ConnectionStatus], summary="Every connection of a provider for a user")
def list_connections(
    provider: str = Depends(known_provider),
    user_id: str = Query(..., min_length=1),
    facade: IntegrationFacade = Depends(get_facade),
):
    return facade.list_connections(user_id, provider)


@router.get("/{provider}/token", response_model=TokenResp, summary="Fresh access token for a connection")
async def token(
    provider: str = Depends(known_provider),
    user_id: str = Query(..., min_length=1),
    scope_key: Optional[str] = Query(None),
    facade: IntegrationFacade = Depends(get_facade),
):
    res: TokenResult = await facade.ensure_fresh_token(user_id, provider, scope_key)
    raise_for_failure(res.failure, res.detail)
    return TokenResp(access_token=res.access_token, expires_at=res.expires_at)


@router.post("/{provider}/verify", response_model=ConnectionStatus)
async def verify(
    body: UserScopeReq,
    provider: str = Depends(known_provider),
    facade: IntegrationFacade = Depends(get_facade),
):
    return await facade.verify_connection(body.user_id, provider, body.scope_key)


@router.post("/{provider}/disconnect")
async def disconnect(
    body: UserScopeReq,
    provider: str = Depends(known_provider),
    facade: IntegrationFacade = Depends(get_facade),
):
    existed = await facade.disconnect(body.user_id, provider, body.scope_key)
    return {"disconnected": True, "existed": existed}
