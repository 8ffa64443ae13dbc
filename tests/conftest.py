from __future__ import annotations

from typing import Callable, Sequence

import pytest
from eth_abi import encode as abi_encode

from vaultledger.adapters.client_pool import ChainClientPool
from vaultledger.adapters.sql_store import SqlStateStore
from vaultledger.domain.decoding import DEPOSIT_4626, DEPOSIT_EXECUTED, INTENT_CREATED, EventAbi
from vaultledger.domain.errors import RangeTooLargeError
from vaultledger.domain.models import AssetConfig, EventLog, TxReceipt, VaultConfig
from vaultledger.domain.value_types import Address, Chain, TxHash

BASE_TS = 1_704_067_200            # 2024-01-01T00:00:00Z
BLOCK_S = 12

USER = Address("0x" + "11" * 20)
OTHER = Address("0x" + "22" * 20)
ROUTER = Address("0x" + "a0" * 20)
ASYNC_ROUTER = Address("0x" + "b0" * 20)
VAULT_ADDR = Address("0x" + "a1" * 20)
ASYNC_VAULT_ADDR = Address("0x" + "b1" * 20)
ASSET = Address("0x" + "c0" * 20)


def tx(n: int) -> TxHash:
    return TxHash("0x" + f"{n:064x}")


def intent_hash(n: int) -> str:
    return "0x" + f"{0xabc000 + n:064x}"


def block_ts(block: int) -> int:
    return BASE_TS + block * BLOCK_S


def _topic(typ: str, value) -> str:
    if typ == "bytes32":
        value = bytes.fromhex(value[2:]) if isinstance(value, str) else value
    return "0x" + abi_encode([typ], [value]).hex()


def make_log(abi: EventAbi, args: dict, *, address: str, block: int, tx_hash: str,
             log_index: int = 0, with_ts: bool = True) -> EventLog:
    """Encode a log exactly as a node would return it for `abi`."""
    topics = [abi.topic0] + [_topic(p.type, args[p.name]) for p in abi.indexed]
    data_types = [p.type for p in abi.data_params]
    data_vals = [bytes.fromhex(args[p.name][2:]) if p.type == "bytes32" else args[p.name]
                 for p in abi.data_params]
    data = abi_encode(data_types, data_vals) if data_types else b""
    return EventLog(
        address=Address(address.lower()), topics=tuple(topics), data_hex="0x" + data.hex(),
        block_number=block, tx_hash=TxHash(tx_hash), log_index=log_index,
        block_timestamp=block_ts(block) if with_ts else None,
    )


class FakeRPC:
    """In-memory RPCClient: serves canned logs, a fixed head and scripted failures."""

    def __init__(self, endpoint: str = "http://fake", head: int = 1_000) -> None:
        self.endpoint = endpoint
        self.head = head
        self.logs: list[EventLog] = []
        self.receipts: dict[str, TxReceipt] = {}
        self.fail_next: list[Exception] = []      # raised one per call, in order
        self.max_span: int | None = None          # larger getLogs spans raise RangeTooLargeError
        self.calls: list[tuple] = []
        self.eth_call_handler: Callable[[str, bytes, int | None], bytes] | None = None
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def get_logs(self, address: Address, topic0s: Sequence[str], from_block: int, to_block: int) -> list[EventLog]:
        self.calls.append(("get_logs", address, tuple(topic0s), from_block, to_block))
        self._maybe_fail()
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            raise RangeTooLargeError("block range is too wide", endpoint=self.endpoint)
        wanted = {t.lower() for t in topic0s}
        return [l for l in self.logs
                if l.address == address.lower() and l.topic0 in wanted and from_block <= l.block_number <= to_block]

    async def latest_block(self) -> int:
        self.calls.append(("latest_block",))
        self._maybe_fail()
        return self.head

    async def block_timestamp(self, block_number: int) -> int:
        self.calls.append(("block_timestamp", block_number))
        return block_ts(block_number)

    async def transaction_receipt(self, tx_hash: TxHash) -> TxReceipt | None:
        self.calls.append(("transaction_receipt", tx_hash))
        self._maybe_fail()
        return self.receipts.get(tx_hash)

    async def eth_call(self, to: Address, data: bytes, block: int | None = None) -> bytes:
        self.calls.append(("eth_call", to, data, block))
        self._maybe_fail()
        if self.eth_call_handler is None:
            return abi_encode(["uint256"], [0])
        return self.eth_call_handler(to, data, block)

    async def aclose(self) -> None:
        self.closed = True


def make_vault(**kw) -> VaultConfig:
    base = dict(
        id="test-avalanche-usdc", name="Test Avalanche USDC", chain=Chain("avalanche"), chain_id=43114,
        address=VAULT_ADDR, asset=AssetConfig(ASSET, "USDC", 6), router=ROUTER,
        rpc_urls=("http://rpc-a",), safety_margin=30, settlement="sync",
    )
    base.update(kw)
    return VaultConfig(**base)


@pytest.fixture
def vault() -> VaultConfig:
    return make_vault()


@pytest.fixture
def async_vault() -> VaultConfig:
    return make_vault(id="test-ethereum-usdc", name="Test Ethereum USDC", chain=Chain("ethereum"), chain_id=1,
                      address=ASYNC_VAULT_ADDR, router=ASYNC_ROUTER, rpc_urls=("http://eth-a", "http://eth-b"),
                      safety_margin=10, settlement="async")


@pytest.fixture
def store(tmp_path) -> SqlStateStore:
    s = SqlStateStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield s
    s.close()


@pytest.fixture
def fakes() -> dict[str, FakeRPC]:
    return {}


@pytest.fixture
def factory(fakes):
    def make(url: str) -> FakeRPC:
        return fakes.setdefault(url, FakeRPC(url))
    return make


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def pool_for(factory):
    def build(*vaults: VaultConfig, **kw) -> ChainClientPool:
        kw.setdefault("sleep", _no_sleep)
        return ChainClientPool(list(vaults), factory, **kw)
    return build


def scenario_a_logs(block: int = 100, *, with_ts: bool = True) -> list[EventLog]:
    """Router intent, then Deposit and DepositExecuted in one tx."""
    h = intent_hash(1)
    return [
        make_log(INTENT_CREATED, {"intentHash": h, "user": USER, "vault": VAULT_ADDR, "asset": ASSET,
                                  "amount": 1000, "nonce": 1, "deadline": 2_000_000_000},
                 address=ROUTER, block=block - 5, tx_hash=tx(1), with_ts=with_ts),
        make_log(DEPOSIT_4626, {"sender": ROUTER, "owner": USER, "assets": 1000, "shares": 990},
                 address=VAULT_ADDR, block=block, tx_hash=tx(2), log_index=0, with_ts=with_ts),
        make_log(DEPOSIT_EXECUTED, {"intentHash": h, "user": USER, "vault": VAULT_ADDR, "amount": 1000},
                 address=ROUTER, block=block, tx_hash=tx(2), log_index=1, with_ts=with_ts),
    ]
