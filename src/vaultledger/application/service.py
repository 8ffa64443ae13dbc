from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Literal

from ..adapters.client_pool import ChainClientPool, ClientFactory
from ..adapters.manifest_jsonl import JSONLScanJournal
from ..adapters.rpc_httpx import HttpxRPC
from ..adapters.sql_store import SqlStateStore
from ..adapters.vault_state import VaultStateReader
from ..config import Settings, vault_by_id
from ..domain.errors import DuplicateKeyError, FinalityError, ScoringUnavailableError, ValidationError
from ..domain.models import PendingOriginMarker, VaultConfig
from ..domain.value_types import Chain, RecordKind, norm_address, norm_hash
from ..ports.storage import ScanJournal, StateStore
from .attribution import AttributionResolver
from .cursor import BlockCursor
from .indexing import EventIndexer
from .planning import validate_range
from .scanner import EventScanner
from .snapshots import SnapshotEngine
from .utils import utc_today

log = logging.getLogger(__name__)

RatingsRunner = Callable[[], Awaitable[list[dict]]]
MarkOutcome = Literal["updated", "marker_created", "marker_exists"]


class IndexerService:
    """Polling loop, daily snapshot loop and the operator entry points built on them."""

    def __init__(
        self,
        vaults: list[VaultConfig],
        store: StateStore,
        pool: ChainClientPool,
        scanner: EventScanner,
        indexer: EventIndexer,
        cursor: BlockCursor,
        snapshots: SnapshotEngine,
        *,
        poll_interval: float = 30,
        marker_ttl: int = 3_600,
        ratings_runner: RatingsRunner | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.vaults = vaults
        self.store = store
        self.pool = pool
        self.scanner = scanner
        self.indexer = indexer
        self.cursor = cursor
        self.snapshots = snapshots
        self.poll_interval = poll_interval
        self.marker_ttl = marker_ttl
        self.ratings_runner = ratings_runner
        self._clock = clock
        self.last_tick: float | None = None
        # store writes run in a worker thread, one at a time
        self._write_lock = asyncio.Lock()

    def vaults_on(self, chain: Chain) -> list[VaultConfig]:
        return [v for v in self.vaults if v.chain == chain]

    def select_vaults(self, vault_id: str | None) -> list[VaultConfig]:
        return [vault_by_id(self.vaults, vault_id)] if vault_id else list(self.vaults)

    # ── indexing ──────────────────────────────────────────────────────────────

    async def index_range(self, vault: VaultConfig, from_block: int, to_block: int) -> dict[str, int]:
        result = await self.scanner.scan(vault, from_block, to_block)
        async with self._write_lock:
            stats = await asyncio.to_thread(self.indexer.apply, vault, result)
        stats["logs"] = result.logs
        return stats

    async def chain_pass(self, chain: Chain) -> dict | None:
        """Index the chain's next range for all its vaults; the cursor moves only if every vault succeeded."""
        rng = await self.cursor.advance_once(chain)
        if rng is None:
            return None
        vaults = self.vaults_on(chain)
        results = await asyncio.gather(*(self.index_range(v, rng.start, rng.end) for v in vaults),
                                       return_exceptions=True)
        failed = [(v, r) for v, r in zip(vaults, results) if isinstance(r, BaseException)]
        for v, err in failed:
            if isinstance(err, FinalityError):
                log.info("%s: blocks %d-%d not final yet, retrying next tick (%s)", v.id, rng.start, rng.end, err)
            else:
                log.error("%s: pass %d-%d failed: %s: %s", v.id, rng.start, rng.end, type(err).__name__, err)
        if failed:
            return {"chain": chain, "from": rng.start, "to": rng.end, "committed": False}
        cur = self.cursor.commit(chain, rng.end)
        return {"chain": chain, "from": rng.start, "to": rng.end, "committed": True, "cursor": cur,
                "vaults": {v.id: r for v, r in zip(vaults, results)}}

    async def tick(self) -> list[dict]:
        async with self._write_lock:
            expired = await asyncio.to_thread(self.store.expire_markers, self._clock())
        if expired:
            log.info("expired %d origin markers", expired)
        chains = list(dict.fromkeys(v.chain for v in self.vaults))
        results = await asyncio.gather(*(self.chain_pass(c) for c in chains), return_exceptions=True)
        out: list[dict] = []
        for chain, r in zip(chains, results):
            if isinstance(r, BaseException):
                log.error("%s: tick failed: %s: %s", chain, type(r).__name__, r)
            elif r is not None:
                out.append(r)
        self.last_tick = self._clock()
        return out

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        log.info("indexing %d vaults every %ss", len(self.vaults), self.poll_interval)
        while not stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def snapshot_all(self, date) -> list:
        out = []
        for v in self.vaults:
            try:
                out.append(await self.snapshots.compute_daily_snapshot(v, date))
            except Exception as e:
                log.error("%s: snapshot for %s failed: %s: %s", v.id, date, type(e).__name__, e)
        return out

    async def daily_loop(self, stop: asyncio.Event | None = None, check_every: float = 60,
                         today: Callable = utc_today) -> None:
        stop = stop or asyncio.Event()
        current = today()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=check_every)
            except asyncio.TimeoutError:
                pass
            now = today()
            if now != current:
                closed = now - timedelta(days=1)
                log.info("UTC day rolled over; snapshotting %s", closed)
                await self.snapshot_all(closed)
                current = now

    # ── operator entry points ─────────────────────────────────────────────────

    async def backfill(self, from_block: int, to_block: int, vault_id: str | None = None) -> dict[str, dict]:
        validate_range(from_block, to_block)
        out: dict[str, dict] = {}
        for v in self.select_vaults(vault_id):
            out[v.id] = await self.index_range(v, from_block, to_block)
        return out

    async def backfill_block(self, block: int, vault_id: str | None = None) -> dict[str, dict]:
        return await self.backfill(block, block, vault_id)

    async def inspect_tx(self, tx_hash: str, vault_id: str | None = None) -> dict | None:
        """Decode a transaction's vault and router logs without touching the store. None if no chain knows it."""
        tx = norm_hash(tx_hash)
        vaults = self.select_vaults(vault_id)
        for chain in dict.fromkeys(v.chain for v in vaults):
            receipt = await self.pool.execute(chain, lambda c: c.transaction_receipt(tx))
            if receipt is None:
                continue
            out = {"txHash": tx, "chain": chain, "blockNumber": receipt.block_number, "status": receipt.status,
                   "from": receipt.sender, "to": receipt.to, "totalLogs": len(receipt.logs), "vaults": {}}
            for v in vaults:
                if v.chain != chain:
                    continue
                emitters = {a for a, _ in self.scanner.emitters(v)}
                logs = [lg for lg in receipt.logs if lg.address in emitters]
                events, failures = self.scanner.decode(v, logs)
                out["vaults"][v.id] = {"logs": len(logs), "events": [_event_row(e) for e in events],
                                       "failures": [asdict(f) for f in failures]}
            return out
        return None

    async def inspect_range(self, from_block: int, to_block: int, vault_id: str | None = None) -> dict[str, dict]:
        """Scan and decode a range per vault; nothing is applied."""
        validate_range(from_block, to_block)
        out: dict[str, dict] = {}
        for v in self.select_vaults(vault_id):
            result = await self.scanner.scan(v, from_block, to_block)
            out[v.id] = {"logs": result.logs, "events": [_event_row(e) for e in result.events],
                         "failures": [asdict(f) for f in result.failures]}
        return out

    def mark_product(self, kind: RecordKind, tx_hash: str, user: str | None = None,
                     chain: str | None = None) -> MarkOutcome | None:
        """Flag a client-reported tx as product-originated; a marker waits for it when not indexed yet."""
        tx = norm_hash(tx_hash)
        if self.store.mark_source_product(kind, tx, chain):
            return "updated"
        if not user:
            return None
        now = int(self._clock())
        try:
            self.store.add_marker(PendingOriginMarker(tx, kind, norm_address(user), chain, now, now + self.marker_ttl))
        except DuplicateKeyError:
            return "marker_exists"
        return "marker_created"

    async def run_ratings(self) -> list[dict]:
        if self.ratings_runner is None:
            raise ScoringUnavailableError("no vault scoring runner configured")
        results = await self.ratings_runner()
        self.store.save_vault_ratings(results)
        return results

    def status(self) -> dict:
        cursors = self.store.cursors()
        return {
            "status": "ok",
            "last_tick": self.last_tick,
            "chains": {c: {"last_processed_block": cursors.get(c), "endpoints": self.pool.endpoints(c)}
                       for c in self.pool.chains},
            "vaults": [v.id for v in self.vaults],
        }

    async def aclose(self) -> None:
        await self.pool.aclose()


def _event_row(ev) -> dict:
    """Flatten a decoded event for JSON; uint256 fields become strings."""
    row = {"event": type(ev).__name__}
    for k, val in asdict(ev).items():
        if k == "meta":
            row.update({"variant": val["variant"], "decoder": val["decoder"], "emitter": val["emitter"],
                        "blockNumber": val["block_number"], "logIndex": val["log_index"]})
        else:
            row[k] = str(val) if isinstance(val, int) else val
    return row


@dataclass(slots=True)
class Wiring:
    """Everything build_service() constructs, for callers that need the parts."""
    service: IndexerService
    store: SqlStateStore
    pool: ChainClientPool
    reader: VaultStateReader


def build_service(settings: Settings, *, vaults: list[VaultConfig] | None = None,
                  client_factory: ClientFactory = HttpxRPC, ratings_runner: RatingsRunner | None = None,
                  journal: ScanJournal | None = None) -> Wiring:
    vaults = vaults if vaults is not None else settings.vaults()
    if not vaults:
        raise ValidationError("no vaults configured")
    store = SqlStateStore.from_url(settings.db_url)
    pool = ChainClientPool(vaults, client_factory)
    if journal is None and settings.journal_path:
        journal = JSONLScanJournal(settings.journal_path)
    reader = VaultStateReader(pool)
    service = IndexerService(
        vaults, store, pool,
        EventScanner(pool, step=settings.log_step, journal=journal),
        EventIndexer(store, AttributionResolver(vaults)),
        BlockCursor(store, pool, vaults, max_range=settings.max_range),
        SnapshotEngine(store, reader),
        poll_interval=settings.poll_interval, marker_ttl=settings.marker_ttl,
        ratings_runner=ratings_runner,
    )
    return Wiring(service, store, pool, reader)
