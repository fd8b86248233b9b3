from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query

from integrations.core.config import settings
from integrations.security.internal import require_internal
from integrations.services.facade import IntegrationFacade, get_facade
from integrations.services.sweeper import sweep_connections

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_internal)])


@router.get("/ping")
def ping():
    return {"ok": True}


@router.post("/sweep", summary="Verify every stored connection once")
async def sweep(
    provider: Optional[str] = Query(None),
    facade: IntegrationFacade = Depends(get_facade),
):
    counts = await sweep_connections(facade, facade.store, provider=provider,
                                     concurrency=settings.HEALTH_SWEEP_CONCURRENCY)
    return {"provider": provider, "counts": counts}
