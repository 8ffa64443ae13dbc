from __future__ import annotations

import logging
from collections import Counter

from ..domain.errors import DuplicateKeyError
from ..domain.models import (
    DecodedEvent, Deposited, DepositExecuted, DepositRequested, DepositRequestSubmitted, DepositSettled,
    FeeCollected, IntentCancelled, IntentCreated, LogMeta, RedeemRequested, RedeemSettled, ScanResult,
    VaultConfig, Withdrawn,
)
from ..domain.value_types import PRODUCT
from ..ports.storage import StateStore
from .attribution import AttributionResolver, query_for

log = logging.getLogger(__name__)


def _event_id(m: LogMeta) -> str:
    return f"{m.tx_hash}:{m.log_index}"


class EventIndexer:
    """
    Applies a scan result to the store in (block, log_index) order.

    Every write is an upsert keyed on record identity, so applying the same
    result twice leaves the store unchanged.
    """

    def __init__(self, store: StateStore, resolver: AttributionResolver) -> None:
        self.store = store
        self.resolver = resolver

    def apply(self, vault: VaultConfig, result: ScanResult) -> dict[str, int]:
        stats: Counter[str] = Counter()
        deferred: list[DecodedEvent] = []
        for ev in result.events:
            try:
                if isinstance(ev, (FeeCollected, IntentCancelled)):
                    # no vault field: applied once the batch's intents are known
                    deferred.append(ev)
                    continue
                self._apply_one(vault, ev, stats)
            except DuplicateKeyError as e:
                log.debug("%s: duplicate ignored (%s)", vault.id, e)
                stats["duplicates"] += 1
        for ev in deferred:
            self._apply_intent_update(vault, ev, stats)
        stats["decode_failures"] += len(result.failures)
        return dict(stats)

    # ── router ────────────────────────────────────────────────────────────────

    def _intent_key(self, vault: VaultConfig, intent_hash: str) -> dict:
        return {"intent_hash": intent_hash, "chain": vault.chain, "vault_id": vault.id}

    def _apply_one(self, vault: VaultConfig, ev: DecodedEvent, stats: Counter) -> None:
        m = ev.meta
        if isinstance(ev, IntentCreated):
            if ev.vault != vault.address:
                return
            created = self.store.upsert_intent(
                self._intent_key(vault, ev.intent_hash),
                {"user_address": ev.user, "vault_address": ev.vault, "asset_address": ev.asset,
                 "amount": str(ev.amount), "nonce": str(ev.nonce), "deadline": ev.deadline,
                 "tx_hash": m.tx_hash, "block_number": m.block_number, "created_ts": m.block_timestamp},
                {"status": "pending"},
            )
            stats["intents_created" if created else "intents_seen"] += 1

        elif isinstance(ev, (DepositExecuted, DepositRequestSubmitted)):
            if ev.vault != vault.address:
                return
            requested = isinstance(ev, DepositRequestSubmitted)
            self.store.upsert_intent(
                self._intent_key(vault, ev.intent_hash),
                {"user_address": ev.user, "vault_address": ev.vault, "asset_address": vault.asset.address,
                 "amount": str(ev.amount), "tx_hash": m.tx_hash, "block_number": m.block_number,
                 "created_ts": m.block_timestamp},
                {"status": "executed", "executed_ts": m.block_timestamp},
            )
            update = {"status": "requested" if requested else "executed", "source": PRODUCT,
                      "intent_hash": ev.intent_hash}
            if requested:
                update |= {"epoch_id": ev.request_id, "requested_amount": str(ev.amount)}
            else:
                update["executed_ts"] = m.block_timestamp
            self._upsert_deposit(vault, m, ev.user, ev.amount, update, stats)

        elif isinstance(ev, (DepositRequested, Deposited)):
            att = self._attribute(vault, ev)
            requested = isinstance(ev, DepositRequested)
            update = {"status": "requested" if requested else "executed", "source": att.source,
                      "intent_hash": att.intent_hash}
            if requested:
                update |= {"epoch_id": ev.request_id, "requested_amount": str(ev.assets)}
            else:
                update |= {"shares": str(ev.shares), "executed_ts": m.block_timestamp}
            self._upsert_deposit(vault, m, att.user, ev.assets, update, stats)
            stats[f"attributed_{att.source}"] += 1

        elif isinstance(ev, DepositSettled):
            n = self.store.settle_deposits(vault.id, vault.chain, ev.user, ev.epoch_id, ev.shares,
                                           m.block_timestamp, _event_id(m))
            stats["deposits_settled"] += n

        elif isinstance(ev, RedeemRequested):
            att = self._attribute(vault, ev)
            created = self.store.upsert_withdrawal(
                {"tx_hash": m.tx_hash, "chain": vault.chain},
                {"vault_id": vault.id, "user_address": att.user, "vault_address": vault.address,
                 "block_number": m.block_number, "created_ts": m.block_timestamp},
                {"shares": str(ev.shares), "status": "pending", "source": att.source, "epoch_id": ev.request_id},
            )
            stats["withdrawals_created" if created else "withdrawals_seen"] += 1
            stats[f"attributed_{att.source}"] += 1

        elif isinstance(ev, RedeemSettled):
            n = self.store.settle_withdrawals(vault.id, vault.chain, ev.owner, ev.request_id, ev.assets,
                                              m.block_timestamp, _event_id(m))
            stats["withdrawals_settled"] += n

        elif isinstance(ev, Withdrawn):
            if vault.settlement == "async":
                # claim of an already settled redemption
                stats["withdrawals_claimed"] += self.store.mark_withdrawn(
                    vault.id, vault.chain, ev.owner, ev.assets, m.block_timestamp, _event_id(m))
                return
            att = self._attribute(vault, ev)
            created = self.store.upsert_withdrawal(
                {"tx_hash": m.tx_hash, "chain": vault.chain},
                {"vault_id": vault.id, "user_address": att.user, "vault_address": vault.address,
                 "block_number": m.block_number, "created_ts": m.block_timestamp},
                {"shares": str(ev.shares), "assets": str(ev.assets), "status": "withdrawn",
                 "source": att.source, "withdrawn_ts": m.block_timestamp},
            )
            stats["withdrawals_created" if created else "withdrawals_seen"] += 1
            stats[f"attributed_{att.source}"] += 1

    def _attribute(self, vault: VaultConfig, ev: DecodedEvent):
        q = query_for(ev, vault, self.resolver.now())
        return self.resolver.resolve(q, self.store)

    def _upsert_deposit(self, vault: VaultConfig, m: LogMeta, user: str, amount: int,
                        update: dict, stats: Counter) -> None:
        created = self.store.upsert_deposit(
            {"tx_hash": m.tx_hash, "chain": vault.chain, "vault_id": vault.id},
            {"user_address": user, "vault_address": vault.address, "asset_address": vault.asset.address,
             "amount": str(amount), "block_number": m.block_number, "created_ts": m.block_timestamp},
            update,
        )
        stats["deposits_created" if created else "deposits_seen"] += 1

    def _apply_intent_update(self, vault: VaultConfig, ev: FeeCollected | IntentCancelled, stats: Counter) -> None:
        m = ev.meta
        if self.store.get_intent(ev.intent_hash, vault.chain, vault.id) is None:
            return
        key = self._intent_key(vault, ev.intent_hash)
        if isinstance(ev, FeeCollected):
            self.store.upsert_intent(key, {"status": "pending"}, {"fee_amount": str(ev.fee_amount)})
            stats["fees"] += 1
        else:
            self.store.upsert_intent(key, {"status": "pending"},
                                     {"status": "cancelled", "cancelled_ts": m.block_timestamp})
            stats["intents_cancelled"] += 1
