from __future__ import annotations
from dataclasses import dataclass, field
from typing import Union

from .value_types import (
    Address, Chain, DepositStatus, IntentStatus, RecordKind, SettlementMode,
    SnapshotMethod, Source, Status, Topic0, TxHash, WithdrawalStatus,
)


# ──────────────────────────────
# Static configuration
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class AssetConfig:
    address: Address
    symbol: str
    decimals: int


@dataclass(slots=True, frozen=True)
class VaultConfig:
    id: str
    name: str
    chain: Chain
    chain_id: int
    address: Address
    asset: AssetConfig
    router: Address | None
    rpc_urls: tuple[str, ...]
    safety_margin: int
    settlement: SettlementMode = "sync"


@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int
    def span(self) -> int: return self.end - self.start + 1


# ──────────────────────────────
# Raw and decoded logs
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class EventLog:
    address: Address
    topics: tuple[str, ...]            # lowercased, 0x-prefixed
    data_hex: str
    block_number: int
    tx_hash: TxHash
    log_index: int
    block_timestamp: int | None = None

    @property
    def topic0(self) -> Topic0 | None:
        return Topic0(self.topics[0]) if self.topics else None


@dataclass(slots=True, frozen=True)
class TxReceipt:
    tx_hash: TxHash
    block_number: int
    status: int | None                 # 1 success, 0 reverted
    sender: Address | None
    to: Address | None
    logs: tuple[EventLog, ...] = ()


@dataclass(slots=True, frozen=True)
class LogMeta:
    chain: Chain
    emitter: Address
    tx_hash: TxHash
    block_number: int
    log_index: int
    block_timestamp: int | None
    variant: str                       # ABI event name that decoded the log
    decoder: str = "typed"             # "typed" | "raw"


@dataclass(slots=True, frozen=True)
class IntentCreated:
    meta: LogMeta
    intent_hash: str
    user: Address
    vault: Address
    asset: Address
    amount: int
    nonce: int
    deadline: int


@dataclass(slots=True, frozen=True)
class DepositExecuted:
    meta: LogMeta
    intent_hash: str
    user: Address
    vault: Address
    amount: int


@dataclass(slots=True, frozen=True)
class DepositRequestSubmitted:
    meta: LogMeta
    intent_hash: str
    user: Address
    vault: Address
    amount: int
    request_id: int


@dataclass(slots=True, frozen=True)
class FeeCollected:
    meta: LogMeta
    intent_hash: str
    asset: Address
    fee_amount: int


@dataclass(slots=True, frozen=True)
class IntentCancelled:
    meta: LogMeta
    intent_hash: str
    user: Address


@dataclass(slots=True, frozen=True)
class DepositRequested:
    """ERC-7540 DepositRequest or the legacy DepositRequested(user, epochId, amount)."""
    meta: LogMeta
    controller: Address
    owner: Address
    request_id: int
    sender: Address | None
    assets: int


@dataclass(slots=True, frozen=True)
class Deposited:
    meta: LogMeta
    sender: Address
    owner: Address
    assets: int
    shares: int


@dataclass(slots=True, frozen=True)
class DepositSettled:
    meta: LogMeta
    user: Address
    epoch_id: int
    shares: int


@dataclass(slots=True, frozen=True)
class RedeemRequested:
    """ERC-7540 RedeemRequest or the legacy RedeemRequested(user, epochId, shares)."""
    meta: LogMeta
    controller: Address
    owner: Address
    request_id: int
    sender: Address | None
    shares: int


@dataclass(slots=True, frozen=True)
class RedeemSettled:
    meta: LogMeta
    owner: Address
    request_id: int
    receiver: Address | None
    assets: int


@dataclass(slots=True, frozen=True)
class Withdrawn:
    meta: LogMeta
    sender: Address
    receiver: Address
    owner: Address
    assets: int
    shares: int


RouterEvent = Union[IntentCreated, DepositExecuted, DepositRequestSubmitted, FeeCollected, IntentCancelled]
VaultEvent = Union[DepositRequested, Deposited, DepositSettled, RedeemRequested, RedeemSettled, Withdrawn]
DecodedEvent = Union[RouterEvent, VaultEvent]


@dataclass(slots=True, frozen=True)
class DecodeFailure:
    chain: Chain
    address: Address
    tx_hash: TxHash
    log_index: int
    block_number: int
    topic0: str | None
    reason: str


@dataclass(slots=True, frozen=True)
class ScanResult:
    events: tuple[DecodedEvent, ...] = ()
    failures: tuple[DecodeFailure, ...] = ()
    logs: int = 0                      # raw logs returned by the RPC


# ──────────────────────────────
# Persisted records
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class DepositIntent:
    intent_hash: str
    chain: Chain
    vault_id: str
    user_address: Address
    vault_address: Address
    asset_address: Address
    amount: str                        # big ints as strings
    nonce: str
    deadline: int
    status: IntentStatus
    fee_amount: str | None = None
    tx_hash: TxHash | None = None
    block_number: int | None = None
    created_ts: int | None = None
    executed_ts: int | None = None
    cancelled_ts: int | None = None


@dataclass(slots=True, frozen=True)
class DepositRecord:
    tx_hash: TxHash
    chain: Chain
    vault_id: str
    user_address: Address
    vault_address: Address
    asset_address: Address | None
    amount: str | None
    status: DepositStatus
    source: Source
    requested_amount: str | None = None
    shares: str | None = None
    epoch_id: int | None = None
    intent_hash: str | None = None
    block_number: int | None = None
    created_ts: int | None = None
    executed_ts: int | None = None
    settled_ts: int | None = None


@dataclass(slots=True, frozen=True)
class WithdrawalRecord:
    tx_hash: TxHash
    chain: Chain
    vault_id: str
    user_address: Address
    vault_address: Address
    shares: str | None
    status: WithdrawalStatus
    source: Source
    assets: str | None = None
    epoch_id: int | None = None
    block_number: int | None = None
    created_ts: int | None = None
    settled_ts: int | None = None
    withdrawn_ts: int | None = None


@dataclass(slots=True, frozen=True)
class PendingOriginMarker:
    tx_hash: TxHash
    kind: RecordKind
    user_address: Address | None
    chain: Chain | None
    created_ts: int
    expires_ts: int


@dataclass(slots=True, frozen=True)
class DailySnapshot:
    date: str                          # YYYY-MM-DD (UTC)
    vault_id: str
    chain: Chain
    vault_address: Address
    total_deposits: str
    total_withdrawals: str
    total_assets: str
    total_supply: str
    share_price: str | None
    method: SnapshotMethod
    flow_total_assets: str | None = None
    updated_ts: int | None = None


@dataclass(slots=True, frozen=True)
class VaultState:
    total_assets: int
    total_supply: int
    block: int | None = None

    def convert_to_assets(self, shares: int) -> int:
        if self.total_supply <= 0:
            return 0
        return shares * self.total_assets // self.total_supply


@dataclass(slots=True, frozen=True)
class ScanRecord:
    vault_id: str
    chain: Chain
    from_block: int
    to_block: int
    status: Status = "started"
    error: str | None = None
    logs: int = 0
    decoded: int = 0
    failures: list[dict] = field(default_factory=list)
    updated_at: float = 0.0
