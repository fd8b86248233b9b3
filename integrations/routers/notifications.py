from __future__ import annotations
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from integrations.domain import BroadcastResult, DeliveryStatus, NotificationPayload
from integrations.security.internal import require_internal
from integrations.services.facade import IntegrationFacade, get_facade
from integrations.services.preferences import DEFAULT_CATEGORY, DestinationPreferences

router = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=[Depends(require_internal)])

DELIVERY_HTTP_STATUS = {
    DeliveryStatus.DELIVERED: 200,
    DeliveryStatus.UNRESOLVED: 422,
    DeliveryStatus.NOT_CONNECTED: 404,
    DeliveryStatus.NEEDS_RECONNECT: 409,
    DeliveryStatus.TRANSIENT: 503,
    DeliveryStatus.FAILED: 502,
}


class DeliverReq(BaseModel):
    user_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    subject: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)
    explicit_target: Optional[str] = None
    scope_key: Optional[str] = None


class PreferenceReq(BaseModel):
    user_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    category: str = Field(DEFAULT_CATEGORY, min_length=1)
    destination: str = Field(..., min_length=1)
    scope_key: Optional[str] = None


def _check_provider(facade: IntegrationFacade, provider: str) -> None:
    if provider not in facade.providers:
        raise HTTPException(status_code=404, detail=f"unknown provider '{provider}'")


@router.post("/deliver", summary="Resolve a destination and send one notification")
async def deliver(body: DeliverReq, facade: IntegrationFacade = Depends(get_facade)):
    _check_provider(facade, body.provider)
    result = await facade.deliver(
        body.user_id,
        body.provider,
        body.category,
        NotificationPayload(text=body.text, subject=body.subject, extra=body.extra),
        explicit_target=body.explicit_target,
        scope_key=body.scope_key,
    )
    return JSONResponse(status_code=DELIVERY_HTTP_STATUS[result.status], content=result.model_dump(mode="json"))


@router.get("/preferences", response_model=DestinationPreferences)
def get_preferences(
    user_id: str = Query(..., min_length=1),
    provider: str = Query(..., min_length=1),
    facade: IntegrationFacade = Depends(get_facade),
):
    _check_provider(facade, provider)
    return facade.preferences.get_preferences(user_id, provider)


@router.put("/preferences", response_model=DestinationPreferences)
def set_preference(body: PreferenceReq, facade: IntegrationFacade = Depends(get_facade)):
    _check_provider(facade, body.provider)
    facade.preferences.set_destination(body.user_id, body.provider, body.category,
                                       body.destination, scope_key=body.scope_key)
    return facade.preferences.get_preferences(body.user_id, body.provider)


@router.delete("/preferences")
def clear_preference(
    user_id: str = Query(..., min_length=1),
    provider: str = Query(..., min_length=1),
    category: str = Query(DEFAULT_CATEGORY, min_length=1),
    scope_key: Optional[str] = Query(None),
    facade: IntegrationFacade = Depends(get_facade),
):
    _check_provider(facade, provider)
    removed = facade.preferences.clear_destination(user_id, provider, category, scope_key)
    return {"removed": removed}


class BroadcastReq(BaseModel):
    user_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    subject: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


@router.post("/broadcast", response_model=BroadcastResult,
             summary="Send one notification through every connection the user has")
async def broadcast(body: BroadcastReq, facade: IntegrationFacade = Depends(get_facade)):
    _check_provider(facade, body.provider)
    return await facade.deliver_all(
        body.user_id,
        body.provider,
        body.category,
        NotificationPayload(text=body.text, subject=body.subject, extra=body.extra),
    )
