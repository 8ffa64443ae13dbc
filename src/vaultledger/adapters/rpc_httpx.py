from __future__ import annotations
import email.utils, time, httpx
from typing import Any, Sequence

from ..domain.errors import (
    FinalityError, RangeTooLargeError, RateLimitError, RpcConnectivityError, RpcError,
)
from ..domain.models import EventLog, TxReceipt
from ..domain.value_types import Address, Topic0, TxHash, norm_address, norm_hash
from ..ports.rpc import RPCClient

_RANGE_MARKERS = ("block range", "query returned more than", "range is too large", "too many results")
_RATE_MARKERS = ("rate limit", "too many requests", "request rate exceeded", "limit exceeded", "capacity exceeded")
_RATE_CODES = (-32005, 429)
_FINALITY_MARKERS = ("after last accepted block", "requested from block", "not yet finalized")


def _to_hex_block(n: int) -> str: return hex(int(n))
def _is_topic_hash(x: str) -> bool: return isinstance(x, str) and x.startswith("0x") and len(x)==66

def _build_topics_param(topic0s: Sequence[Topic0]) -> list[list[str]]:
    t0s = [str(t).strip().lower() for t in topic0s]
    if not t0s or not all(_is_topic_hash(x) for x in t0s):
        raise ValueError(f"Invalid topic0(s): {t0s}")
    return [t0s]


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Retry-After is either delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, dt.timestamp() - (time.time() if now is None else now))


def classify_rpc_message(message: str, *, code: int | None = None, endpoint: str | None = None) -> RpcError:
    """Map a provider error message to the error taxonomy. Range markers win over rate markers."""
    m = (message or "").lower()
    if any(k in m for k in _RANGE_MARKERS):
        return RangeTooLargeError(message, code=code, endpoint=endpoint)
    if code in _RATE_CODES or any(k in m for k in _RATE_MARKERS):
        return RateLimitError(message, code=code, endpoint=endpoint)
    if any(k in m for k in _FINALITY_MARKERS):
        return FinalityError(message, code=code, endpoint=endpoint)
    return RpcError(message, code=code, endpoint=endpoint)


def _log_from_json(rl: dict) -> EventLog:
    return EventLog(
        address=norm_address(rl["address"]),
        topics=tuple(str(t).lower() for t in rl.get("topics", [])),
        data_hex=rl.get("data") or "0x",
        block_number=int(rl["blockNumber"], 16),
        tx_hash=TxHash(norm_hash(rl["transactionHash"])),
        log_index=int(rl["logIndex"], 16),
        block_timestamp=int(rl["blockTimestamp"], 16) if rl.get("blockTimestamp") else None,
    )


class HttpxRPC(RPCClient):
    """JSON-RPC client for one endpoint. Retries are the pool's job; every failure is classified and raised."""

    def __init__(self, rpc_url: str, timeout_s: float = 20, max_conn: int = 64,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.endpoint = rpc_url
        self.client = httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max_conn//2),
            transport=transport,
        )

    async def _call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc":"2.0","id":1,"method":method,"params":params}
        try:
            r = await self.client.post(self.endpoint, json=payload)
        except httpx.TransportError as e:
            raise RpcConnectivityError(f"{method}: {type(e).__name__}: {e}", endpoint=self.endpoint) from e

        retry_after = parse_retry_after(r.headers.get("Retry-After"))
        if r.status_code == 429 or (retry_after is not None and not r.is_success):
            raise RateLimitError(f"{method}: HTTP {r.status_code}", retry_after=retry_after,
                                 code=r.status_code, endpoint=self.endpoint)
        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            body = r.text[:200]
            if not r.is_success:
                err = classify_rpc_message(f"{method}: HTTP {r.status_code} {body}",
                                           code=r.status_code, endpoint=self.endpoint)
            else:
                err = RpcError(f"{method}: non-JSON response {body!r}", endpoint=self.endpoint)
            raise err

        if "error" in data and data["error"]:
            e = data["error"]
            msg = e.get("message") if isinstance(e, dict) else str(e)
            code = e.get("code") if isinstance(e, dict) else None
            raise classify_rpc_message(f"{method}: {msg}", code=code, endpoint=self.endpoint)
        if not r.is_success:
            raise classify_rpc_message(f"{method}: HTTP {r.status_code}", code=r.status_code, endpoint=self.endpoint)
        return data.get("result")

    async def latest_block(self) -> int:
        return int(await self._call("eth_blockNumber", []), 16)

    async def block_timestamp(self, block_number: int) -> int:
        blk = await self._call("eth_getBlockByNumber", [_to_hex_block(block_number), False])
        if not blk:
            raise FinalityError(f"block {block_number} not available yet", endpoint=self.endpoint)
        return int(blk["timestamp"], 16)

    async def get_logs(self, address: Address, topic0s: Sequence[Topic0], from_block: int, to_block: int) -> list[EventLog]:
        res = await self._call("eth_getLogs", [{
            "address": str(address),
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": _build_topics_param(topic0s),
        }])
        return [_log_from_json(rl) for rl in (res or [])]

    async def transaction_receipt(self, tx_hash: TxHash) -> TxReceipt | None:
        rc = await self._call("eth_getTransactionReceipt", [str(tx_hash)])
        if not rc:
            return None
        return TxReceipt(
            tx_hash=TxHash(norm_hash(rc["transactionHash"])),
            block_number=int(rc["blockNumber"], 16),
            status=int(rc["status"], 16) if rc.get("status") else None,
            sender=norm_address(rc["from"]) if rc.get("from") else None,
            to=norm_address(rc["to"]) if rc.get("to") else None,
            logs=tuple(_log_from_json(rl) for rl in rc.get("logs") or []),
        )

    async def eth_call(self, to: Address, data: bytes, block: int | None = None) -> bytes:
        tag = "latest" if block is None else _to_hex_block(block)
        res = await self._call("eth_call", [{"to": str(to), "data": "0x" + data.hex()}, tag])
        h = (res or "0x")[2:]
        return bytes.fromhex(h) if h else b""

    async def aclose(self) -> None:
        await self.client.aclose()
