from __future__ import annotations

import logging

from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector

from ..domain.errors import RpcError
from ..domain.models import VaultConfig, VaultState
from ..domain.value_types import Address, Chain
from .client_pool import ChainClientPool

log = logging.getLogger(__name__)

_TOTAL_ASSETS = function_signature_to_4byte_selector("totalAssets()")
_TOTAL_SUPPLY = function_signature_to_4byte_selector("totalSupply()")
_BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")


def _uint(raw: bytes, what: str) -> int:
    try:
        return int(abi_decode(["uint256"], raw)[0])
    except (DecodingError, ValueError) as e:
        raise RpcError(f"{what}: undecodable eth_call result 0x{raw.hex()}") from e


class VaultStateReader:
    """ERC-4626 view calls and block-time lookups, routed through the client pool."""

    def __init__(self, pool: ChainClientPool) -> None:
        self.pool = pool

    async def _call_uint(self, vault: VaultConfig, data: bytes, block: int | None, what: str) -> int:
        raw = await self.pool.execute(vault, lambda c: c.eth_call(vault.address, data, block))
        return _uint(raw, what)

    async def state(self, vault: VaultConfig, block: int | None = None) -> VaultState:
        ta = await self._call_uint(vault, _TOTAL_ASSETS, block, "totalAssets")
        ts = await self._call_uint(vault, _TOTAL_SUPPLY, block, "totalSupply")
        return VaultState(total_assets=ta, total_supply=ts, block=block)

    async def balance_of(self, vault: VaultConfig, user: Address, block: int | None = None) -> int:
        data = _BALANCE_OF + abi_encode(["address"], [user])
        return await self._call_uint(vault, data, block, "balanceOf")

    async def latest_block(self, chain: Chain) -> int:
        return await self.pool.execute(chain, lambda c: c.latest_block())

    async def block_timestamp(self, chain: Chain, block: int) -> int:
        return await self.pool.execute(chain, lambda c: c.block_timestamp(block))

    async def block_at_timestamp(self, chain: Chain, ts: int) -> int:
        """Last block whose timestamp is <= ts (binary search; block 0 when ts predates the chain)."""
        lo, hi = 0, await self.latest_block(chain)
        if await self.block_timestamp(chain, hi) <= ts:
            return hi
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if await self.block_timestamp(chain, mid) <= ts:
                lo = mid
            else:
                hi = mid - 1
        log.debug("block at ts=%d on %s is %d", ts, chain, lo)
        return lo
