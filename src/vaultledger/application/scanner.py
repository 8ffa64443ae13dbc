from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, replace
from typing import Sequence

from ..adapters.client_pool import ChainClientPool
from ..domain.decoding import (
    ROUTER_FAMILIES, VAULT_FAMILIES, EventFamily, decode_log, families_by_topic0,
)
from ..domain.errors import DecodeError, FinalityError, RangeTooLargeError, RateLimitError, RpcError
from ..domain.models import BlockRange, DecodeFailure, DecodedEvent, EventLog, ScanRecord, ScanResult, VaultConfig
from ..domain.value_types import Address, Topic0
from ..ports.storage import ScanJournal
from .planning import plan_chunks, split_range, validate_range

log = logging.getLogger(__name__)


class EventScanner:
    """
    Fetches and decodes router and vault logs for one vault over a block range.

    Chunks that the provider rejects as too large are halved until they fit.
    Logs no decoder accepts become DecodeFailure entries instead of aborting the scan.
    """

    def __init__(self, pool: ChainClientPool, *, step: int = 2_000, concurrency: int = 2,
                 journal: ScanJournal | None = None) -> None:
        self.pool = pool
        self.step = step
        self.concurrency = concurrency
        self.journal = journal

    @staticmethod
    def emitters(vault: VaultConfig) -> list[tuple[Address, Sequence[EventFamily]]]:
        out: list[tuple[Address, Sequence[EventFamily]]] = []
        if vault.router:
            out.append((vault.router, ROUTER_FAMILIES))
        out.append((vault.address, VAULT_FAMILIES))
        return out

    async def _get_logs(self, vault: VaultConfig, address: Address, topic0s: Sequence[Topic0],
                        fb: int, tb: int) -> list[EventLog]:
        try:
            return await self.pool.execute(vault, lambda c: c.get_logs(address, topic0s, fb, tb))
        except (RangeTooLargeError, RateLimitError, FinalityError):
            raise
        except RpcError as e:
            # some providers reject OR-ed topic filters; retry one signature at a time
            log.warning("%s: combined getLogs for %s [%d,%d] failed (%s); querying per topic",
                        vault.id, address, fb, tb, e)
            out: list[EventLog] = []
            for t0 in topic0s:
                out.extend(await self.pool.execute(vault, lambda c, t0=t0: c.get_logs(address, [t0], fb, tb)))
            return out

    async def _fetch_range(self, vault: VaultConfig, r: BlockRange) -> list[EventLog]:
        logs: list[EventLog] = []
        for address, families in self.emitters(vault):
            topic0s = [t for fam in families for t in fam.topic0s]
            logs.extend(await self._get_logs(vault, address, topic0s, r.start, r.end))
        return logs

    async def _fetch_chunk(self, vault: VaultConfig, chunk: BlockRange) -> list[EventLog]:
        out: list[EventLog] = []
        stack: list[BlockRange] = [chunk]
        while stack:
            r = stack.pop()
            try:
                out.extend(await self._fetch_range(vault, r))
            except RangeTooLargeError as e:
                if r.span() <= 1:
                    raise
                left, right = split_range(r)
                log.info("%s: range [%d,%d] too large (%s); splitting", vault.id, r.start, r.end, e)
                stack.append(right); stack.append(left)
        return out

    async def _with_timestamps(self, vault: VaultConfig, logs: list[EventLog]) -> list[EventLog]:
        cache: dict[int, int] = {l.block_number: l.block_timestamp for l in logs if l.block_timestamp is not None}
        for b in sorted({l.block_number for l in logs} - set(cache)):
            cache[b] = await self.pool.execute(vault, lambda c, b=b: c.block_timestamp(b))
        return [l if l.block_timestamp is not None else replace(l, block_timestamp=cache[l.block_number])
                for l in logs]

    def decode(self, vault: VaultConfig, logs: Sequence[EventLog]) -> tuple[list[DecodedEvent], list[DecodeFailure]]:
        router_map = families_by_topic0(ROUTER_FAMILIES)
        vault_map = families_by_topic0(VAULT_FAMILIES)
        events: list[DecodedEvent] = []
        failures: list[DecodeFailure] = []
        for lg in logs:
            fams = router_map if vault.router and lg.address == vault.router else vault_map
            fam = fams.get(lg.topic0) if lg.topic0 else None
            try:
                if fam is None:
                    raise DecodeError(f"no event family for topic0 {lg.topic0}")
                events.append(decode_log(lg, fam, vault.chain))
            except DecodeError as e:
                log.warning("%s: skipping log %s#%d at block %d: %s",
                            vault.id, lg.tx_hash, lg.log_index, lg.block_number, e)
                failures.append(DecodeFailure(vault.chain, lg.address, lg.tx_hash, lg.log_index,
                                              lg.block_number, lg.topic0, str(e)))
        return events, failures

    async def scan(self, vault: VaultConfig, from_block: int, to_block: int) -> ScanResult:
        rng = validate_range(from_block, to_block)
        chunks = plan_chunks(rng.start, rng.end, self.step)
        sem = asyncio.Semaphore(self.concurrency)

        async def run_chunk(c: BlockRange) -> list[EventLog]:
            async with sem:
                return await self._fetch_chunk(vault, c)

        try:
            batches = await asyncio.gather(*(run_chunk(c) for c in chunks))
            unique: dict[tuple[str, int], EventLog] = {}
            for batch in batches:
                for lg in batch:
                    unique.setdefault((lg.tx_hash, lg.log_index), lg)
            logs = await self._with_timestamps(vault, list(unique.values()))
        except RpcError as e:
            await self._journal(vault, rng, "failed", error=f"{type(e).__name__}: {e}")
            raise

        logs.sort(key=lambda l: (l.block_number, l.log_index))
        events, failures = self.decode(vault, logs)
        log.info("%s: scanned [%d,%d] logs=%d decoded=%d failures=%d",
                 vault.id, rng.start, rng.end, len(logs), len(events), len(failures))
        await self._journal(vault, rng, "done", logs=len(logs), decoded=len(events), failures=failures)
        return ScanResult(tuple(events), tuple(failures), len(logs))

    async def _journal(self, vault: VaultConfig, rng: BlockRange, status, *, error: str | None = None,
                       logs: int = 0, decoded: int = 0, failures: Sequence[DecodeFailure] = ()) -> None:
        if self.journal is None:
            return
        await self.journal.append(ScanRecord(
            vault_id=vault.id, chain=vault.chain, from_block=rng.start, to_block=rng.end, status=status,
            error=error, logs=logs, decoded=decoded, failures=[asdict(f) for f in failures],
            updated_at=time.time(),
        ))
