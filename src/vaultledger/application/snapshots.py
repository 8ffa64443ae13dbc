from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import date as Date, timedelta
from decimal import Decimal, localcontext
from typing import Callable, Iterable, Sequence

from ..domain.models import DailySnapshot, VaultConfig, VaultState, WithdrawalRecord
from ..domain.value_types import Address, norm_address
from ..ports.rpc import VaultStateSource
from ..ports.storage import StateStore
from .utils import day_bounds, days, parse_day, utc_today

log = logging.getLogger(__name__)

DEPOSIT_STATUSES = ("executed", "settled")
# withdrawn rows are still outflows; dropping them would inflate AUM after claims
WITHDRAWAL_STATUSES = ("pending", "settled", "withdrawn")
USER_DEPOSIT_STATUSES = ("requested", "executed", "settled")


def share_price(state: VaultState) -> str | None:
    if state.total_supply <= 0:
        return None
    with localcontext() as ctx:
        ctx.prec = 40
        return str(Decimal(state.total_assets) / Decimal(state.total_supply))


def withdrawal_value(records: Iterable[WithdrawalRecord], state: VaultState) -> int:
    """Assets when known, else shares converted at the given vault state."""
    total = 0
    for w in records:
        if w.assets is not None:
            total += int(w.assets)
        elif w.shares is not None:
            total += state.convert_to_assets(int(w.shares))
    return total


class SnapshotEngine:
    """
    Daily AUM aggregation over product-attributed flows.

    Carry-forward adds the day's net flow to the previous snapshot; without a
    previous snapshot the whole history is summed. Both are floored at zero.
    reconcile() replaces the flow estimate of past days with the on-chain value
    of product users' shares.
    """

    def __init__(self, store: StateStore, chain_state: VaultStateSource,
                 today: Callable[[], Date] = utc_today) -> None:
        self.store = store
        self.chain_state = chain_state
        self._today = today

    def _deposits(self, vault: VaultConfig, start_ts: int | None, end_ts: int) -> int:
        rows = self.store.product_deposits(vault.id, vault.chain, start_ts, end_ts, DEPOSIT_STATUSES)
        return sum(int(r.amount or 0) for r in rows)

    def _withdrawals(self, vault: VaultConfig, start_ts: int | None, end_ts: int, state: VaultState) -> int:
        rows = self.store.product_withdrawals(vault.id, vault.chain, start_ts, end_ts, WITHDRAWAL_STATUSES)
        return withdrawal_value(rows, state)

    async def compute_daily_snapshot(self, vault: VaultConfig, date: str | Date, *,
                                     force_recompute: bool = False) -> DailySnapshot:
        d = parse_day(date)
        start, end = day_bounds(d)
        state = await self.chain_state.state(vault)
        deposits = self._deposits(vault, start, end)
        withdrawals = self._withdrawals(vault, start, end, state)

        prev = None if force_recompute else self.store.get_snapshot(
            (d - timedelta(days=1)).isoformat(), vault.id, vault.chain)
        if prev is not None:
            aum = max(0, int(prev.total_assets) + deposits - withdrawals)
            method = "carry_forward"
        else:
            aum = max(0, self._deposits(vault, None, end) - self._withdrawals(vault, None, end, state))
            method = "recompute"

        snap = DailySnapshot(
            date=d.isoformat(), vault_id=vault.id, chain=vault.chain, vault_address=vault.address,
            total_deposits=str(deposits), total_withdrawals=str(withdrawals), total_assets=str(aum),
            total_supply=str(state.total_supply), share_price=share_price(state), method=method,
            updated_ts=int(time.time()),
        )
        self.store.put_snapshot(snap)
        log.info("%s snapshot %s: aum=%d deposits=%d withdrawals=%d (%s)",
                 vault.id, snap.date, aum, deposits, withdrawals, method)
        return snap

    async def recompute_range(self, vault: VaultConfig, start: str | Date, end: str | Date) -> list[DailySnapshot]:
        """Rebuild [start, end] in date order; the first day is summed from history."""
        out: list[DailySnapshot] = []
        for i, d in enumerate(days(start, end)):
            out.append(await self.compute_daily_snapshot(vault, d, force_recompute=(i == 0)))
        return out

    async def reconcile(self, vault: VaultConfig) -> list[DailySnapshot]:
        today = self._today().isoformat()
        out: list[DailySnapshot] = []
        for day in self.store.snapshot_dates(vault.id, vault.chain):
            if day >= today:
                continue
            snap = self.store.get_snapshot(day, vault.id, vault.chain)
            if snap is None:
                continue
            _, end = day_bounds(day)
            block = await self.chain_state.block_at_timestamp(vault.chain, end - 1)
            state = await self.chain_state.state(vault, block)
            shares = 0
            for user in self.store.product_users(vault.id, vault.chain, end):
                shares += await self.chain_state.balance_of(vault, user, block)
            value = state.convert_to_assets(shares)
            flow = snap.flow_total_assets if snap.method == "reconciled" else snap.total_assets
            new = replace(snap, total_assets=str(value), total_supply=str(state.total_supply),
                          share_price=share_price(state), method="reconciled", flow_total_assets=flow,
                          updated_ts=int(time.time()))
            self.store.put_snapshot(new)
            if flow is not None and int(flow) != value:
                log.info("%s %s reconciled: flow estimate %s -> on-chain %d", vault.id, day, flow, value)
            out.append(new)
        return out

    def combined(self, date: str | Date) -> dict:
        d = parse_day(date).isoformat()
        snaps = self.store.snapshots_on(d)
        return {
            "date": d,
            "vaults": [s.vault_id for s in snaps],
            "total_deposits": str(sum(int(s.total_deposits) for s in snaps)),
            "total_withdrawals": str(sum(int(s.total_withdrawals) for s in snaps)),
            "total_assets": str(sum(int(s.total_assets) for s in snaps)),
        }

    def combined_history(self, limit: int = 30) -> list[dict]:
        dates = sorted({s.date for s in self.store.list_snapshots(limit=limit * 64)}, reverse=True)[:limit]
        return [self.combined(d) for d in dates]

    async def user_aum(self, vault: VaultConfig, user: str) -> dict:
        """Product net flow of one user, capped at the value of the shares they hold now."""
        u: Address = norm_address(user)
        state = await self.chain_state.state(vault)
        deps = self.store.user_records("deposit", vault.id, vault.chain, u, USER_DEPOSIT_STATUSES)
        wds = self.store.user_records("withdrawal", vault.id, vault.chain, u, WITHDRAWAL_STATUSES)
        deposited = sum(int(r.amount or 0) for r in deps)
        withdrawn = withdrawal_value(wds, state)
        balance = state.convert_to_assets(await self.chain_state.balance_of(vault, u))
        flow = deposited - withdrawn
        aum = max(0, min(flow, balance))
        return {
            "vault_id": vault.id, "chain": vault.chain, "user": u,
            "total_deposits": str(deposited), "total_withdrawals": str(withdrawn),
            "flow_aum": str(flow), "vault_balance": str(balance), "aum": str(aum),
            "has_direct_withdrawals": balance < flow,
            "direct_withdrawal_amount": str(max(0, flow - balance)),
        }


def snapshot_rows(snaps: Sequence[DailySnapshot]) -> list[dict]:
    return [
        {"date": s.date, "vault_id": s.vault_id, "chain": s.chain, "vault_address": s.vault_address,
         "total_deposits": s.total_deposits, "total_withdrawals": s.total_withdrawals,
         "total_assets": s.total_assets, "total_supply": s.total_supply, "share_price": s.share_price,
         "method": s.method, "flow_total_assets": s.flow_total_assets}
        for s in snaps
    ]
