from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase
Topic0  = NewType("Topic0", str)    # 66-char 0x-hash
TxHash  = NewType("TxHash", str)    # 66-char 0x-hash, lowercase
Chain   = NewType("Chain", str)     # "ethereum", "avalanche", ...

Status = Literal["started", "done", "failed", "skipped"]
Source = Literal["product", "external"]
RecordKind = Literal["deposit", "withdrawal"]
SettlementMode = Literal["sync", "async"]
SnapshotMethod = Literal["carry_forward", "recompute", "reconciled"]

IntentStatus = Literal["pending", "executed", "cancelled"]
DepositStatus = Literal["pending", "requested", "executed", "settled"]
WithdrawalStatus = Literal["pending", "settled", "withdrawn"]

# Forward-only ordering; an update never replaces a status of equal or higher rank.
INTENT_STATUS_RANK: dict[str, int] = {"pending": 0, "executed": 1, "cancelled": 1}
DEPOSIT_STATUS_RANK: dict[str, int] = {"pending": 0, "requested": 1, "executed": 2, "settled": 3}
WITHDRAWAL_STATUS_RANK: dict[str, int] = {"pending": 0, "settled": 1, "withdrawn": 2}

PRODUCT: Source = "product"
EXTERNAL: Source = "external"


def norm_address(x: str) -> Address:
    s = str(x).strip().lower()
    return Address(s if s.startswith("0x") else "0x" + s)


def norm_hash(x: str | bytes) -> TxHash:
    s = x.hex() if isinstance(x, (bytes, bytearray)) else str(x)
    s = s.strip().lower()
    return TxHash(s if s.startswith("0x") else "0x" + s)
