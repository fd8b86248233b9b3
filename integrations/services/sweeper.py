from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Dict, Optional

from integrations.domain import ConnectionState, CredentialKey
from integrations.services.credential_store import CredentialStore
from integrations.services.facade import IntegrationFacade

logger = logging.getLogger(__name__)


async def sweep_connections(
    facade: IntegrationFacade,
    store: CredentialStore,
    provider: Optional[str] = None,
    concurrency: int = 5,
) -> Dict[str, int]:
    """
    Verify every stored connection (optionally one provider's) and return how many
    ended up in each ConnectionState. One pass, no retries; meant for a scheduler tick.
    """
    keys = [k for k in store.list_keys(provider) if k.provider in facade.providers]
    gate = asyncio.Semaphore(max(1, concurrency))
    counts: Counter = Counter({s.value: 0 for s in ConnectionState})

    async def one(key: CredentialKey) -> None:
        async with gate:
            try:
                status = await facade.verify_connection(key.user_id, key.provider, key.scope_key)
            except Exception:
                # one bad record must not stop the sweep
                logger.exception(f"health check crashed for {key}", extra={"credential": str(key)})
                counts["errors"] += 1
                return
        counts[status.state.value] += 1

    await asyncio.gather(*(one(k) for k in keys))
    logger.info(f"swept {len(keys)} connection(s)", extra={"provider": provider or "*", **counts})
    return dict(counts)
