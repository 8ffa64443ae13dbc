# vaultledger/ports/rpc.py
from __future__ import annotations

from typing import Protocol, Sequence
from ..domain.models import EventLog, TxReceipt, VaultConfig, VaultState
from ..domain.value_types import Address, Chain, Topic0, TxHash


class RPCClient(Protocol):
    """Port defining the contract for one Ethereum JSON-RPC endpoint."""

    endpoint: str

    async def get_logs(
        self,
        address: Address,
        topic0s: Sequence[Topic0],
        from_block: int,
        to_block: int,
    ) -> list[EventLog]:
        """Return normalized, typed logs for [from_block, to_block] inclusive."""

    async def latest_block(self) -> int:
        """Return the latest block number as an integer."""

    async def block_timestamp(self, block_number: int) -> int:
        """Return the unix timestamp of a block."""

    async def transaction_receipt(self, tx_hash: TxHash) -> TxReceipt | None:
        """Return the receipt with its logs, or None when the node does not know the tx."""

    async def eth_call(self, to: Address, data: bytes, block: int | None = None) -> bytes:
        """Execute a read-only call at `block` (latest when None) and return the raw result."""

    async def aclose(self) -> None:
        """Release connections."""


class VaultStateSource(Protocol):
    """Port for on-chain vault reads used by aggregation (ERC-4626 views and block lookups)."""

    async def state(self, vault: VaultConfig, block: int | None = None) -> VaultState: ...
    async def balance_of(self, vault: VaultConfig, user: Address, block: int | None = None) -> int: ...
    async def block_at_timestamp(self, chain: Chain, ts: int) -> int: ...
