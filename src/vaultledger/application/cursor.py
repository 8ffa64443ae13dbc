from __future__ import annotations

import logging
from typing import Iterable

from ..adapters.client_pool import ChainClientPool
from ..domain.models import BlockRange, VaultConfig
from ..domain.value_types import Chain
from ..ports.storage import StateStore

log = logging.getLogger(__name__)

# blocks to stay behind the head; slower finality gets more room
DEFAULT_SAFETY_MARGINS: dict[str, int] = {"ethereum": 10, "avalanche": 30}
FALLBACK_SAFETY_MARGIN = 20


def default_margin(chain: str) -> int:
    return DEFAULT_SAFETY_MARGINS.get(chain, FALLBACK_SAFETY_MARGIN)


class BlockCursor:
    """
    Durable per-chain watermark.

    advance_once() proposes the next range; commit() persists it and must only be
    called after every vault of the chain processed that range.
    """

    def __init__(self, store: StateStore, pool: ChainClientPool, vaults: Iterable[VaultConfig],
                 max_range: int = 2_000) -> None:
        self.store = store
        self.pool = pool
        self.max_range = max_range
        self.margins: dict[Chain, int] = {}
        for v in vaults:
            self.margins[v.chain] = max(self.margins.get(v.chain, 0), v.safety_margin)

    def margin(self, chain: Chain) -> int:
        return self.margins.get(chain, default_margin(chain))

    async def safe_head(self, chain: Chain) -> int:
        latest = await self.pool.execute(chain, lambda c: c.latest_block())
        return max(latest - self.margin(chain), 0)

    def last_processed(self, chain: Chain) -> int | None:
        return self.store.get_cursor(chain)

    async def advance_once(self, chain: Chain) -> BlockRange | None:
        safe = await self.safe_head(chain)
        last = self.store.get_cursor(chain)
        if last is None:
            last = self.store.advance_cursor(chain, safe)
            log.info("cursor for %s initialised at block %d", chain, last)
            return None
        if last >= safe:
            return None
        return BlockRange(last + 1, min(safe, last + self.max_range))

    def commit(self, chain: Chain, to_block: int) -> int:
        cur = self.store.advance_cursor(chain, to_block)
        if cur != to_block:
            log.debug("cursor for %s stays at %d (commit %d is behind)", chain, cur, to_block)
        return cur
