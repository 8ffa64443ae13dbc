"""SqlStateStore merge rules, settlement matching, markers and cursors."""
import pytest

from vaultledger.domain.errors import DuplicateKeyError
from vaultledger.domain.models import DailySnapshot, PendingOriginMarker

from .conftest import ASSET, OTHER, USER, VAULT_ADDR, intent_hash, tx

VID, CHAIN = "test-avalanche-usdc", "avalanche"


def put_deposit(store, n, *, status="executed", source="external", user=USER, ts=1_000, **update):
    return store.upsert_deposit(
        {"tx_hash": tx(n), "chain": CHAIN, "vault_id": VID},
        {"user_address": user, "vault_address": VAULT_ADDR, "asset_address": ASSET,
         "amount": "1000", "block_number": n, "created_ts": ts},
        {"status": status, "source": source, **update},
    )


def put_withdrawal(store, n, *, status="pending", source="product", user=USER, epoch=1, ts=1_000, **update):
    return store.upsert_withdrawal(
        {"tx_hash": tx(n), "chain": CHAIN},
        {"vault_id": VID, "user_address": user, "vault_address": VAULT_ADDR, "block_number": n, "created_ts": ts},
        {"shares": "500", "status": status, "source": source, "epoch_id": epoch, **update},
    )


def only_deposit(store):
    (rec,) = store.list_deposits()
    return rec


class TestUpsert:
    def test_created_flag(self, store):
        assert put_deposit(store, 1) is True
        assert put_deposit(store, 1) is False
        assert len(store.list_deposits()) == 1

    def test_status_only_moves_forward(self, store):
        put_deposit(store, 1, status="settled")
        put_deposit(store, 1, status="executed")
        assert only_deposit(store).status == "settled"

    def test_product_source_is_sticky(self, store):
        put_deposit(store, 1, source="product")
        put_deposit(store, 1, source="external")
        assert only_deposit(store).source == "product"

    def test_external_upgrades_to_product(self, store):
        put_deposit(store, 1, source="external")
        put_deposit(store, 1, source="product")
        assert only_deposit(store).source == "product"

    def test_null_never_erases_known_value(self, store):
        put_deposit(store, 1, intent_hash=intent_hash(1), shares="990")
        put_deposit(store, 1, intent_hash=None, shares=None)
        rec = only_deposit(store)
        assert rec.intent_hash == intent_hash(1) and rec.shares == "990"

    def test_insert_fields_are_not_overwritten(self, store):
        put_deposit(store, 1, user=USER)
        put_deposit(store, 1, user=OTHER)
        assert only_deposit(store).user_address == USER

    def test_same_tx_different_vaults_are_separate(self, store):
        put_deposit(store, 1)
        store.upsert_deposit({"tx_hash": tx(1), "chain": CHAIN, "vault_id": "other-vault"},
                             {"user_address": USER, "vault_address": OTHER, "amount": "5", "created_ts": 1},
                             {"status": "executed", "source": "external"})
        assert len(store.list_deposits()) == 2

    def test_intent_cancel_is_terminal(self, store):
        key = {"intent_hash": intent_hash(1), "chain": CHAIN, "vault_id": VID}
        store.upsert_intent(key, {"user_address": USER, "amount": "1", "nonce": "0", "deadline": 9}, {"status": "pending"})
        store.upsert_intent(key, {}, {"status": "cancelled"})
        store.upsert_intent(key, {}, {"status": "pending"})
        assert store.get_intent(intent_hash(1), CHAIN, VID).status == "cancelled"


class TestSettlement:
    def test_settle_deposit_once_per_event(self, store):
        put_deposit(store, 1, status="requested", epoch_id=7)
        assert store.settle_deposits(VID, CHAIN, USER, 7, 980, 2_000, "0xsettle:0") == 1
        assert store.settle_deposits(VID, CHAIN, USER, 7, 980, 2_000, "0xsettle:0") == 0
        rec = only_deposit(store)
        assert (rec.status, rec.shares, rec.settled_ts) == ("settled", "980", 2_000)

    def test_epoch_fallback_only_when_unambiguous(self, store):
        put_deposit(store, 1, status="requested", epoch_id=7, user=OTHER)
        assert store.settle_deposits(VID, CHAIN, USER, 7, 1, 2_000, "0xa:0") == 1
        put_deposit(store, 2, status="requested", epoch_id=8, user=OTHER)
        put_deposit(store, 3, status="requested", epoch_id=8, user=OTHER)
        assert store.settle_deposits(VID, CHAIN, USER, 8, 1, 2_000, "0xb:0") == 0

    def test_withdrawal_settle_then_withdraw(self, store):
        put_withdrawal(store, 1, epoch=3)
        assert store.settle_withdrawals(VID, CHAIN, USER, 3, 1_200, 2_000, "0xs:1") == 1
        assert store.mark_withdrawn(VID, CHAIN, USER, 1_200, 3_000, "0xw:0") == 1
        assert store.mark_withdrawn(VID, CHAIN, USER, 1_200, 3_000, "0xw:0") == 0
        (w,) = store.list_withdrawals()
        assert (w.status, w.assets, w.withdrawn_ts) == ("withdrawn", "1200", 3_000)

    def test_mark_source_product(self, store):
        put_deposit(store, 1)
        assert store.mark_source_product("deposit", tx(1), CHAIN) == 1
        assert only_deposit(store).source == "product"
        assert store.mark_source_product("deposit", tx(99)) == 0


class TestLookups:
    def test_open_intent_latest_first(self, store):
        for n, ts in ((1, 10), (2, 20)):
            store.upsert_intent({"intent_hash": intent_hash(n), "chain": CHAIN, "vault_id": VID},
                                {"user_address": USER, "amount": "1", "nonce": str(n), "deadline": 9,
                                 "created_ts": ts}, {"status": "pending"})
        assert store.find_open_intent(VID, CHAIN, [USER]).intent_hash == intent_hash(2)
        assert store.find_open_intent(VID, CHAIN, [OTHER]) is None

    def test_find_record_by_tx_and_open_record(self, store):
        put_withdrawal(store, 5)
        assert store.find_record_by_tx("withdrawal", tx(5), CHAIN, VID).shares == "500"
        assert store.find_open_record("withdrawal", VID, CHAIN, [OTHER, USER]).tx_hash == tx(5)
        assert store.find_open_record("deposit", VID, CHAIN, [USER]) is None


class TestMarkers:
    def marker(self, n=1, expires=2_000):
        return PendingOriginMarker(tx(n), "deposit", USER, CHAIN, 1_000, expires)

    def test_duplicate_marker(self, store):
        store.add_marker(self.marker())
        with pytest.raises(DuplicateKeyError):
            store.add_marker(self.marker())

    def test_expired_marker_invisible_and_swept(self, store):
        store.add_marker(self.marker(1, expires=1_500))
        store.add_marker(self.marker(2, expires=5_000))
        assert store.get_marker(tx(1), 1_400) is not None
        assert store.get_marker(tx(1), 1_500) is None
        assert store.expire_markers(1_500) == 1
        assert store.consume_marker(tx(2)) is True
        assert store.consume_marker(tx(2)) is False


class TestCursorAndSnapshots:
    def test_cursor_never_moves_back(self, store):
        assert store.get_cursor(CHAIN) is None
        assert store.advance_cursor(CHAIN, 100) == 100
        assert store.advance_cursor(CHAIN, 90) == 100
        assert store.advance_cursor(CHAIN, 1_000) == 1_000
        assert store.cursors() == {CHAIN: 1_000}

    def test_snapshot_upsert_replaces(self, store):
        snap = DailySnapshot("2024-01-02", VID, CHAIN, VAULT_ADDR, "10", "0", "10", "10", "1", "recompute")
        store.put_snapshot(snap)
        store.put_snapshot(DailySnapshot("2024-01-02", VID, CHAIN, VAULT_ADDR, "10", "0", "12", "10", "1.2",
                                         "reconciled", flow_total_assets="10"))
        (got,) = store.list_snapshots(VID)
        assert (got.total_assets, got.method, got.flow_total_assets) == ("12", "reconciled", "10")
        assert store.snapshot_dates(VID, CHAIN) == ["2024-01-02"]

    def test_product_aggregation_window(self, store):
        put_deposit(store, 1, source="product", ts=100)
        put_deposit(store, 2, source="product", ts=200)
        put_deposit(store, 3, source="external", ts=150)
        got = store.product_deposits(VID, CHAIN, 100, 200, ("executed",))
        assert [d.tx_hash for d in got] == [tx(1)]
        assert store.product_users(VID, CHAIN, 300) == [USER]


class TestRatings:
    def test_save_and_list(self, store):
        assert store.save_vault_ratings([{"vault_id": VID, "chain": CHAIN, "score": 7.5, "grade": "B"}]) == 1
        store.save_vault_ratings([{"vault_id": VID, "chain": CHAIN, "score": 8.0, "grade": "A"}])
        (r,) = store.list_vault_ratings()
        assert r["score"] == 8.0 and r["grade"] == "A"
        assert len(store.rating_history(VID)) == 2
