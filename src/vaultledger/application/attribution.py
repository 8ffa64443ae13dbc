from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from ..domain.models import (
    DecodedEvent, Deposited, DepositRequested, RedeemRequested, VaultConfig, Withdrawn,
)
from ..domain.value_types import EXTERNAL, PRODUCT, Address, Chain, RecordKind, Source, TxHash
from ..ports.storage import StateStore

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AttributionQuery:
    """What the rules need to know about one deposit or withdrawal event."""
    kind: RecordKind
    vault: VaultConfig
    tx_hash: TxHash
    user: Address
    users: tuple[Address, ...]         # every address that may own the record
    origins: tuple[Address, ...]       # addresses that may have initiated the call
    now: float


@dataclass(slots=True, frozen=True)
class Attribution:
    source: Source
    rule: str
    user: Address
    intent_hash: str | None = None
    consume_marker: bool = False


Rule = Callable[[AttributionQuery, StateStore], "Attribution | None"]


def _uniq(xs: Iterable[Address | None]) -> tuple[Address, ...]:
    out: list[Address] = []
    for x in xs:
        if x and x not in out:
            out.append(x)
    return tuple(out)


def query_for(event: DecodedEvent, vault: VaultConfig, now: float) -> AttributionQuery | None:
    """Project a vault event onto the attribution inputs; None for events that are not attributed."""
    router = vault.router
    if isinstance(event, DepositRequested):
        kind: RecordKind = "deposit"
        owners = _uniq([event.controller, event.owner])
        origins = _uniq([event.sender, event.owner, event.controller])
    elif isinstance(event, Deposited):
        kind = "deposit"
        owners = _uniq([event.owner])
        origins = _uniq([event.sender])
    elif isinstance(event, RedeemRequested):
        kind = "withdrawal"
        owners = _uniq([event.owner, event.controller])
        origins = _uniq([event.sender, event.owner, event.controller])
    elif isinstance(event, Withdrawn):
        kind = "withdrawal"
        owners = _uniq([event.owner])
        origins = _uniq([event.sender])
    else:
        return None
    # the router may appear as controller/owner when it acts for the user
    users = tuple(u for u in owners if u != router) or owners
    return AttributionQuery(kind, vault, event.meta.tx_hash, users[0], users, origins, now)


# ──────────────────────────────
# Rules, in priority order
# ──────────────────────────────

def rule_router_sender(q: AttributionQuery, store: StateStore) -> Attribution | None:
    if q.vault.router and q.vault.router in q.origins:
        return Attribution(PRODUCT, "router_sender", q.user)
    return None


def rule_existing_record(q: AttributionQuery, store: StateStore) -> Attribution | None:
    candidates = (
        store.find_record_by_tx(q.kind, q.tx_hash, q.vault.chain, q.vault.id),
        store.find_open_record(q.kind, q.vault.id, q.vault.chain, q.users),
    )
    for rec in candidates:
        if rec is None:
            continue
        intent_hash = getattr(rec, "intent_hash", None)
        if rec.source == PRODUCT or intent_hash:
            return Attribution(PRODUCT, "existing_record", rec.user_address or q.user, intent_hash)
    return None


def rule_open_intent(q: AttributionQuery, store: StateStore) -> Attribution | None:
    if q.kind != "deposit":
        return None
    intent = store.find_open_intent(q.vault.id, q.vault.chain, q.users)
    if intent is None:
        return None
    return Attribution(PRODUCT, "open_intent", intent.user_address, intent.intent_hash)


def rule_origin_marker(q: AttributionQuery, store: StateStore) -> Attribution | None:
    marker = store.get_marker(q.tx_hash, q.now)
    if marker is None or marker.kind != q.kind:
        return None
    if marker.chain and marker.chain != q.vault.chain:
        return None
    return Attribution(PRODUCT, "origin_marker", q.user, consume_marker=True)


def rule_external(q: AttributionQuery, store: StateStore) -> Attribution:
    return Attribution(EXTERNAL, "external", q.user)


DEFAULT_RULES: tuple[Rule, ...] = (
    rule_router_sender, rule_existing_record, rule_open_intent, rule_origin_marker, rule_external,
)


class AttributionResolver:
    """Runs the rule chain; the first rule returning an Attribution wins."""

    def __init__(self, vaults: Iterable[VaultConfig], rules: Sequence[Rule] = DEFAULT_RULES,
                 clock: Callable[[], float] = time.time) -> None:
        self._vaults: dict[tuple[Chain, Address], VaultConfig] = {(v.chain, v.address): v for v in vaults}
        self.rules = tuple(rules)
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def vault_for(self, event: DecodedEvent) -> VaultConfig | None:
        return self._vaults.get((event.meta.chain, event.meta.emitter))

    def resolve(self, q: AttributionQuery, store: StateStore) -> Attribution:
        for rule in self.rules:
            res = rule(q, store)
            if res is None:
                continue
            if res.consume_marker:
                store.consume_marker(q.tx_hash)
            log.debug("%s %s %s -> %s (%s)", q.vault.id, q.kind, q.tx_hash, res.source, res.rule)
            return res
        return Attribution(EXTERNAL, "external", q.user)

    def attribute(self, event: DecodedEvent, store: StateStore) -> Attribution | None:
        vault = self.vault_for(event)
        if vault is None:
            return None
        q = query_for(event, vault, self._clock())
        return self.resolve(q, store) if q is not None else None
