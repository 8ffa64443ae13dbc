from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Sequence

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .errors import DecodeError
from .models import (
    DecodedEvent, DepositExecuted, DepositRequested, DepositRequestSubmitted, DepositSettled,
    Deposited, EventLog, FeeCollected, IntentCancelled, IntentCreated, LogMeta, RedeemRequested,
    RedeemSettled, Withdrawn,
)
from .value_types import Chain, Topic0, norm_address

Emitter = Literal["router", "vault"]
Mode = Literal["typed", "raw"]

_STATIC_TYPES = ("address", "uint256", "bytes32")


@dataclass(slots=True, frozen=True)
class Param:
    name: str
    type: str
    indexed: bool = False


@dataclass(slots=True, frozen=True)
class EventAbi:
    name: str
    params: tuple[Param, ...]
    build: Callable[[LogMeta, dict], DecodedEvent]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic0(self) -> Topic0:
        return Topic0("0x" + keccak(text=self.signature).hex())

    @property
    def indexed(self) -> tuple[Param, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def data_params(self) -> tuple[Param, ...]:
        return tuple(p for p in self.params if not p.indexed)


@dataclass(slots=True, frozen=True)
class EventFamily:
    """One semantic event and the ABI variants vault implementations emit for it."""
    name: str
    emitter: Emitter
    variants: tuple[EventAbi, ...]
    variable: bool = False             # enables the raw-topic fallback

    @property
    def topic0s(self) -> tuple[Topic0, ...]:
        return tuple(v.topic0 for v in self.variants)


# --------- 32B word slicing (fast, no eth_abi) --------------------------------

def _hex_bytes(s: str) -> bytes:
    h = s[2:] if s[:2].lower() == "0x" else s
    if len(h) % 2: h = "0" + h
    return bytes.fromhex(h) if h else b""

def _word(b: bytes, i: int) -> bytes:
    return b[i*32:(i+1)*32]

def _u256(w: bytes) -> int:
    return int.from_bytes(w, "big")

def _addr_from_word(w: bytes) -> str:
    if any(w[:12]):
        raise DecodeError("address word has non-zero padding")
    return norm_address("0x" + w[-20:].hex())

def _from_word(typ: str, w: bytes):
    if len(w) != 32:
        raise DecodeError(f"short word ({len(w)} bytes) for {typ}")
    if typ == "address": return _addr_from_word(w)
    if typ == "uint256": return _u256(w)
    if typ == "bytes32": return "0x" + w.hex()
    raise DecodeError(f"unsupported static type {typ}")


def _norm_value(typ: str, v):
    if typ == "address": return norm_address(v)
    if typ == "bytes32": return "0x" + bytes(v).hex()
    return int(v)


# --------- strategies ---------------------------------------------------------

def decode_typed(abi: EventAbi, log: EventLog) -> dict:
    """Strict ABI decode: exact topic count and exact data length."""
    if log.topic0 != abi.topic0:
        raise DecodeError(f"topic0 does not match {abi.signature}")
    idx, data_params = abi.indexed, abi.data_params
    if len(log.topics) != 1 + len(idx):
        raise DecodeError(f"{abi.name}: expected {1 + len(idx)} topics, got {len(log.topics)}")
    try:
        data = _hex_bytes(log.data_hex)
    except ValueError as e:
        raise DecodeError(f"{abi.name}: data is not hex ({e})") from e
    if len(data) != 32 * len(data_params):
        raise DecodeError(f"{abi.name}: expected {32 * len(data_params)} data bytes, got {len(data)}")
    args: dict = {}
    try:
        for p, t in zip(idx, log.topics[1:]):
            args[p.name] = _norm_value(p.type, abi_decode([p.type], _hex_bytes(t))[0])
        values = abi_decode([p.type for p in data_params], data) if data_params else ()
    except (DecodingError, ValueError) as e:
        raise DecodeError(f"{abi.name}: {e}") from e
    for p, v in zip(data_params, values):
        args[p.name] = _norm_value(p.type, v)
    return args


def decode_raw(abi: EventAbi, log: EventLog) -> dict:
    """Manual topic/word decode. Trailing data words are tolerated; missing ones are not."""
    if log.topic0 != abi.topic0:
        raise DecodeError(f"topic0 does not match {abi.signature}")
    idx, data_params = abi.indexed, abi.data_params
    if len(log.topics) != 1 + len(idx):
        raise DecodeError(f"{abi.name}: expected {1 + len(idx)} topics, got {len(log.topics)}")
    try:
        data = _hex_bytes(log.data_hex)
        topic_words = [_hex_bytes(t) for t in log.topics[1:]]
    except ValueError as e:
        raise DecodeError(f"{abi.name}: malformed hex ({e})") from e
    if len(data) < 32 * len(data_params):
        raise DecodeError(f"{abi.name}: data too short ({len(data)} < {32 * len(data_params)} bytes)")
    args: dict = {}
    for p, w in zip(idx, topic_words):
        args[p.name] = _from_word(p.type, w)
    for i, p in enumerate(data_params):
        args[p.name] = _from_word(p.type, _word(data, i))
    return args


@dataclass(slots=True, frozen=True)
class DecoderStrategy:
    abi: EventAbi
    mode: Mode

    def decode(self, log: EventLog, chain: Chain) -> DecodedEvent:
        args = decode_typed(self.abi, log) if self.mode == "typed" else decode_raw(self.abi, log)
        meta = LogMeta(
            chain=chain, emitter=log.address, tx_hash=log.tx_hash, block_number=log.block_number,
            log_index=log.log_index, block_timestamp=log.block_timestamp,
            variant=self.abi.name, decoder=self.mode,
        )
        return self.abi.build(meta, args)


def strategies_for(family: EventFamily) -> list[DecoderStrategy]:
    out = [DecoderStrategy(v, "typed") for v in family.variants]
    if family.variable:
        out += [DecoderStrategy(v, "raw") for v in family.variants]
    return out


def decode_log(log: EventLog, family: EventFamily, chain: Chain) -> DecodedEvent:
    """Run the family's strategies in order; the first structurally valid result wins."""
    reasons: list[str] = []
    for strat in strategies_for(family):
        if log.topic0 != strat.abi.topic0:
            continue
        try:
            return strat.decode(log, chain)
        except DecodeError as e:
            reasons.append(f"{strat.mode}:{e}")
    if not reasons:
        reasons.append(f"unknown topic0 {log.topic0} for {family.name}")
    raise DecodeError("; ".join(reasons))


# --------- ABI registry -------------------------------------------------------

def _p(name: str, typ: str, indexed: bool = False) -> Param:
    assert typ in _STATIC_TYPES
    return Param(name, typ, indexed)


INTENT_CREATED = EventAbi(
    "DepositIntentCreated",
    (_p("intentHash", "bytes32", True), _p("user", "address", True), _p("vault", "address", True),
     _p("asset", "address"), _p("amount", "uint256"), _p("nonce", "uint256"), _p("deadline", "uint256")),
    lambda m, a: IntentCreated(m, a["intentHash"], a["user"], a["vault"], a["asset"],
                               a["amount"], a["nonce"], a["deadline"]),
)
DEPOSIT_EXECUTED = EventAbi(
    "DepositExecuted",
    (_p("intentHash", "bytes32", True), _p("user", "address", True), _p("vault", "address", True),
     _p("amount", "uint256")),
    lambda m, a: DepositExecuted(m, a["intentHash"], a["user"], a["vault"], a["amount"]),
)
DEPOSIT_REQUEST_SUBMITTED = EventAbi(
    "DepositRequestSubmitted",
    (_p("intentHash", "bytes32", True), _p("user", "address", True), _p("vault", "address", True),
     _p("amount", "uint256"), _p("requestId", "uint256")),
    lambda m, a: DepositRequestSubmitted(m, a["intentHash"], a["user"], a["vault"], a["amount"], a["requestId"]),
)
FEE_COLLECTED = EventAbi(
    "FeeCollected",
    (_p("intentHash", "bytes32", True), _p("asset", "address", True), _p("feeAmount", "uint256")),
    lambda m, a: FeeCollected(m, a["intentHash"], a["asset"], a["feeAmount"]),
)
INTENT_CANCELLED = EventAbi(
    "DepositIntentCancelled",
    (_p("intentHash", "bytes32", True), _p("user", "address", True)),
    lambda m, a: IntentCancelled(m, a["intentHash"], a["user"]),
)

DEPOSIT_REQUEST_7540 = EventAbi(
    "DepositRequest",
    (_p("controller", "address", True), _p("owner", "address", True), _p("requestId", "uint256", True),
     _p("sender", "address"), _p("assets", "uint256")),
    lambda m, a: DepositRequested(m, a["controller"], a["owner"], a["requestId"], a["sender"], a["assets"]),
)
DEPOSIT_REQUESTED_LEGACY = EventAbi(
    "DepositRequested",
    (_p("user", "address", True), _p("epochId", "uint256", True), _p("amount", "uint256")),
    lambda m, a: DepositRequested(m, a["user"], a["user"], a["epochId"], None, a["amount"]),
)
DEPOSIT_4626 = EventAbi(
    "Deposit",
    (_p("sender", "address", True), _p("owner", "address", True), _p("assets", "uint256"), _p("shares", "uint256")),
    lambda m, a: Deposited(m, a["sender"], a["owner"], a["assets"], a["shares"]),
)
DEPOSIT_SETTLED = EventAbi(
    "DepositSettled",
    (_p("user", "address", True), _p("epochId", "uint256", True), _p("shares", "uint256")),
    lambda m, a: DepositSettled(m, a["user"], a["epochId"], a["shares"]),
)
REDEEM_REQUEST_7540 = EventAbi(
    "RedeemRequest",
    (_p("controller", "address", True), _p("owner", "address", True), _p("requestId", "uint256", True),
     _p("sender", "address"), _p("shares", "uint256")),
    lambda m, a: RedeemRequested(m, a["controller"], a["owner"], a["requestId"], a["sender"], a["shares"]),
)
REDEEM_REQUESTED_LEGACY = EventAbi(
    "RedeemRequested",
    (_p("user", "address", True), _p("epochId", "uint256", True), _p("shares", "uint256")),
    lambda m, a: RedeemRequested(m, a["user"], a["user"], a["epochId"], None, a["shares"]),
)
REDEEM_SETTLED_7540 = EventAbi(
    "RedeemSettled",
    (_p("controller", "address", True), _p("owner", "address", True), _p("requestId", "uint256", True),
     _p("receiver", "address"), _p("assets", "uint256")),
    lambda m, a: RedeemSettled(m, a["owner"], a["requestId"], a["receiver"], a["assets"]),
)
REDEEM_SETTLED_LEGACY = EventAbi(
    "RedeemSettled",
    (_p("user", "address", True), _p("epochId", "uint256", True), _p("assets", "uint256")),
    lambda m, a: RedeemSettled(m, a["user"], a["epochId"], None, a["assets"]),
)
WITHDRAW_4626 = EventAbi(
    "Withdraw",
    (_p("sender", "address", True), _p("receiver", "address", True), _p("owner", "address", True),
     _p("assets", "uint256"), _p("shares", "uint256")),
    lambda m, a: Withdrawn(m, a["sender"], a["receiver"], a["owner"], a["assets"], a["shares"]),
)


ROUTER_FAMILIES: tuple[EventFamily, ...] = (
    EventFamily("intent_created", "router", (INTENT_CREATED,)),
    EventFamily("deposit_executed", "router", (DEPOSIT_EXECUTED,)),
    EventFamily("deposit_request_submitted", "router", (DEPOSIT_REQUEST_SUBMITTED,)),
    EventFamily("fee_collected", "router", (FEE_COLLECTED,)),
    EventFamily("intent_cancelled", "router", (INTENT_CANCELLED,)),
)

VAULT_FAMILIES: tuple[EventFamily, ...] = (
    EventFamily("deposit_request", "vault", (DEPOSIT_REQUEST_7540, DEPOSIT_REQUESTED_LEGACY), variable=True),
    EventFamily("deposit", "vault", (DEPOSIT_4626,)),
    EventFamily("deposit_settled", "vault", (DEPOSIT_SETTLED,)),
    EventFamily("redeem_request", "vault", (REDEEM_REQUEST_7540, REDEEM_REQUESTED_LEGACY), variable=True),
    EventFamily("redeem_settled", "vault", (REDEEM_SETTLED_7540, REDEEM_SETTLED_LEGACY), variable=True),
    EventFamily("withdraw", "vault", (WITHDRAW_4626,)),
)


def families_by_topic0(families: Sequence[EventFamily]) -> dict[Topic0, EventFamily]:
    out: dict[Topic0, EventFamily] = {}
    for fam in families:
        for t0 in fam.topic0s:
            out[t0] = fam
    return out
