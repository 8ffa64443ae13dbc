from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, TypeVar

from ..domain.errors import RateLimitError, RpcConnectivityError
from ..domain.models import VaultConfig
from ..domain.value_types import Chain
from ..ports.rpc import RPCClient
from .rpc_httpx import HttpxRPC

log = logging.getLogger(__name__)

T = TypeVar("T")
ClientFactory = Callable[[str], RPCClient]


@dataclass(slots=True)
class _ChainEndpoints:
    clients: list[RPCClient]
    current: int = 0
    cooldown_until: dict[int, float] = field(default_factory=dict)


class ChainClientPool:
    """
    Ranked RPC endpoints per chain with rate-limit rotation.

    - Endpoints are the union of the vaults' rpc_urls, in config order.
    - A rate-limited endpoint cools down for Retry-After (default 120s) and the pool
      moves to the next endpoint not cooling down. When all are cooling it sleeps
      until the earliest one is free; rate-limit retries never give up.
    - Connectivity errors rotate with a bounded number of retries.
    """

    def __init__(
        self,
        vaults: Iterable[VaultConfig],
        client_factory: ClientFactory = HttpxRPC,
        *,
        connect_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._chains: dict[Chain, _ChainEndpoints] = {}
        urls: dict[Chain, list[str]] = {}
        for v in vaults:
            seen = urls.setdefault(v.chain, [])
            seen.extend(u for u in v.rpc_urls if u not in seen)
        for chain, chain_urls in urls.items():
            if not chain_urls:
                raise RpcConnectivityError(f"no RPC endpoint configured for {chain}")
            self._chains[chain] = _ChainEndpoints([client_factory(u) for u in chain_urls])
        self.connect_retries = connect_retries
        self._sleep = sleep
        self._clock = clock

    @property
    def chains(self) -> list[Chain]:
        return list(self._chains)

    def _entry(self, chain: Chain) -> _ChainEndpoints:
        try:
            return self._chains[chain]
        except KeyError:
            raise RpcConnectivityError(f"unknown chain {chain!r}") from None

    def get_client(self, chain: Chain) -> RPCClient:
        e = self._entry(chain)
        return e.clients[e.current]

    def endpoints(self, chain: Chain) -> list[str]:
        return [c.endpoint for c in self._entry(chain).clients]

    async def connect(self) -> None:
        """Probe every chain in rank order; a chain with no reachable endpoint is fatal."""
        for chain, e in self._chains.items():
            errors: list[str] = []
            for i, c in enumerate(e.clients):
                try:
                    head = await c.latest_block()
                except RateLimitError:
                    # throttled but alive
                    e.current = i
                    break
                except RpcConnectivityError as err:
                    errors.append(f"{c.endpoint}: {err}")
                    continue
                e.current = i
                log.info("chain %s connected via %s (head=%d)", chain, c.endpoint, head)
                break
            else:
                raise RpcConnectivityError(f"no reachable RPC endpoint for {chain}: " + "; ".join(errors))

    def _rotate(self, e: _ChainEndpoints, now: float) -> bool:
        """Advance to the next endpoint not cooling down. False when every endpoint is cooling."""
        n = len(e.clients)
        for step in range(1, n + 1):
            j = (e.current + step) % n
            if e.cooldown_until.get(j, 0.0) <= now:
                e.current = j
                return True
        return False

    async def execute(self, vault_or_chain: VaultConfig | Chain, operation: Callable[[RPCClient], Awaitable[T]]) -> T:
        chain = vault_or_chain.chain if isinstance(vault_or_chain, VaultConfig) else vault_or_chain
        e = self._entry(chain)
        conn_failures = 0
        while True:
            idx = e.current
            client = e.clients[idx]
            try:
                return await operation(client)
            except RateLimitError as err:
                now = self._clock()
                e.cooldown_until[idx] = now + err.cooldown_s
                log.warning("rate limited on %s (%s); cooling down %.0fs", client.endpoint, chain, err.cooldown_s)
                if e.current != idx and e.cooldown_until.get(e.current, 0.0) <= now:
                    # a concurrent caller already moved off this endpoint
                    continue
                if not self._rotate(e, now):
                    earliest = min(range(len(e.clients)), key=lambda j: e.cooldown_until.get(j, 0.0))
                    wait = max(0.0, e.cooldown_until[earliest] - now)
                    log.warning("all %d endpoints of %s cooling down; sleeping %.1fs", len(e.clients), chain, wait)
                    await self._sleep(wait)
                    e.current = earliest
            except RpcConnectivityError as err:
                conn_failures += 1
                if conn_failures > self.connect_retries:
                    raise
                log.warning("endpoint %s unreachable (%s), attempt %d/%d",
                            client.endpoint, err, conn_failures, self.connect_retries)
                if e.current == idx:
                    self._rotate(e, self._clock())
                await self._sleep(0.8 * conn_failures)

    async def aclose(self) -> None:
        for e in self._chains.values():
            for c in e.clients:
                await c.aclose()
