# vaultledger/ports/storage.py
from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from ..domain.models import (
    DailySnapshot, DepositIntent, DepositRecord, PendingOriginMarker, ScanRecord, WithdrawalRecord,
)
from ..domain.value_types import Address, Chain, RecordKind, TxHash


class StateStore(Protocol):
    """Idempotent persistence for intents, deposits, withdrawals, markers, cursors and snapshots."""

    # upserts: identity fields on insert, merged mutable fields on every match
    def upsert_intent(self, key: dict, insert_fields: dict, update_fields: dict) -> bool: ...
    def upsert_deposit(self, key: dict, insert_fields: dict, update_fields: dict) -> bool: ...
    def upsert_withdrawal(self, key: dict, insert_fields: dict, update_fields: dict) -> bool: ...

    # settlement updates (matched on user/epoch, not on the identity key)
    def settle_deposits(self, vault_id: str, chain: Chain, user: Address, epoch_id: int,
                        shares: int, ts: int | None, settled_by: str) -> int: ...
    def settle_withdrawals(self, vault_id: str, chain: Chain, user: Address, epoch_id: int,
                           assets: int, ts: int | None, settled_by: str) -> int: ...
    def mark_withdrawn(self, vault_id: str, chain: Chain, owner: Address, assets: int,
                       ts: int | None, withdrawn_by: str) -> int: ...
    def mark_source_product(self, kind: RecordKind, tx_hash: TxHash, chain: Chain | None = None) -> int: ...

    # attribution lookups
    def find_record_by_tx(self, kind: RecordKind, tx_hash: TxHash, chain: Chain,
                          vault_id: str) -> DepositRecord | WithdrawalRecord | None: ...
    def find_open_record(self, kind: RecordKind, vault_id: str, chain: Chain,
                         users: Sequence[Address]) -> DepositRecord | WithdrawalRecord | None: ...
    def find_open_intent(self, vault_id: str, chain: Chain, users: Sequence[Address]) -> DepositIntent | None: ...
    def get_intent(self, intent_hash: str, chain: Chain, vault_id: str) -> DepositIntent | None: ...

    # pending origin markers
    def add_marker(self, marker: PendingOriginMarker) -> None: ...
    def get_marker(self, tx_hash: TxHash, now: float) -> PendingOriginMarker | None: ...
    def consume_marker(self, tx_hash: TxHash) -> bool: ...
    def expire_markers(self, now: float) -> int: ...

    # cursors
    def get_cursor(self, chain: Chain) -> int | None: ...
    def advance_cursor(self, chain: Chain, block: int) -> int: ...
    def cursors(self) -> dict[str, int]: ...

    # aggregation inputs
    def product_deposits(self, vault_id: str, chain: Chain, start_ts: int | None, end_ts: int,
                         statuses: Sequence[str]) -> list[DepositRecord]: ...
    def product_withdrawals(self, vault_id: str, chain: Chain, start_ts: int | None, end_ts: int,
                            statuses: Sequence[str]) -> list[WithdrawalRecord]: ...
    def product_users(self, vault_id: str, chain: Chain, until_ts: int) -> list[Address]: ...

    # snapshots
    def put_snapshot(self, snap: DailySnapshot) -> None: ...
    def get_snapshot(self, date: str, vault_id: str, chain: Chain) -> DailySnapshot | None: ...
    def list_snapshots(self, vault_id: str | None = None, chain: Chain | None = None,
                       limit: int = 30) -> list[DailySnapshot]: ...
    def snapshot_dates(self, vault_id: str, chain: Chain) -> list[str]: ...
    def snapshots_on(self, date: str) -> list[DailySnapshot]: ...

    # read side (API, per-user AUM)
    def list_deposits(self, *, user: str | None = None, vault_id: str | None = None,
                      chain: str | None = None, limit: int = 100) -> list[DepositRecord]: ...
    def list_withdrawals(self, *, user: str | None = None, vault_id: str | None = None,
                         chain: str | None = None, limit: int = 100) -> list[WithdrawalRecord]: ...
    def list_intents(self, *, user: str | None = None, vault_id: str | None = None,
                     chain: str | None = None, limit: int = 100) -> list[DepositIntent]: ...
    def user_records(self, kind: RecordKind, vault_id: str, chain: Chain, user: Address,
                     statuses: Sequence[str], *, product_only: bool = True) -> list: ...

    # ratings delivered by the scoring module
    def save_vault_ratings(self, results: Iterable[dict]) -> int: ...
    def list_vault_ratings(self, vault_id: str | None = None) -> list[dict]: ...


class ScanJournal(Protocol):
    """Port for appending scan-pass status records (e.g., JSONL journal)."""

    async def append(self, rec: ScanRecord) -> None:
        """Append a journal record atomically (callers handle ordering/locking)."""


class SnapshotSink(Protocol):
    """Port for exporting snapshots to a columnar file."""

    def write(self, snapshots: Iterable[DailySnapshot]) -> str:
        """Persist the snapshots and return the written path."""
