"""IndexerService wiring: chain passes, cursor commits and operator entry points."""
import asyncio
import threading
from datetime import date

import pytest

from vaultledger.application.service import build_service
from vaultledger.config import Settings
from vaultledger.domain.errors import FinalityError, ScoringUnavailableError, ValidationError

from .conftest import OTHER, USER, make_vault, scenario_a_logs, tx


@pytest.fixture
def settings(tmp_path):
    return Settings(db_url=f"sqlite:///{tmp_path / 'svc.db'}", max_range=100)


@pytest.fixture
def wiring(settings, vault, factory):
    w = build_service(settings, vaults=[vault], client_factory=factory)
    yield w
    w.store.close()


class TestChainPass:
    async def test_first_pass_only_initialises_cursor(self, wiring):
        assert await wiring.service.chain_pass("avalanche") is None
        assert wiring.store.get_cursor("avalanche") == 970

    async def test_pass_indexes_and_commits(self, wiring, fakes):
        svc, store = wiring.service, wiring.store
        store.advance_cursor("avalanche", 900)
        fakes["http://rpc-a"].logs = scenario_a_logs(block=950)
        out = await svc.chain_pass("avalanche")
        assert out["committed"] and (out["from"], out["to"]) == (901, 970)
        assert out["vaults"]["test-avalanche-usdc"]["deposits_created"] == 1
        assert store.get_cursor("avalanche") == 970
        (dep,) = store.list_deposits()
        assert dep.status == "executed" and dep.source == "product"

    async def test_finality_error_leaves_cursor(self, wiring, fakes):
        wiring.store.advance_cursor("avalanche", 900)

        async def not_final(*args):
            raise FinalityError("requested to block 970 after last accepted block 960")

        fakes["http://rpc-a"].get_logs = not_final
        out = await wiring.service.chain_pass("avalanche")
        assert out == {"chain": "avalanche", "from": 901, "to": 970, "committed": False}
        assert wiring.store.get_cursor("avalanche") == 900

    async def test_one_failing_vault_blocks_the_commit(self, settings, factory, fakes):
        v1 = make_vault()
        v2 = make_vault(id="second", address="0x" + "d1" * 20, router=None)
        w = build_service(settings, vaults=[v1, v2], client_factory=factory)
        w.store.advance_cursor("avalanche", 900)
        fake = fakes["http://rpc-a"]
        original = fake.get_logs

        async def flaky(address, topic0s, fb, tb):
            if address == v2.address:
                raise FinalityError("after last accepted block")
            return await original(address, topic0s, fb, tb)

        fake.get_logs = flaky
        out = await w.service.chain_pass("avalanche")
        assert out["committed"] is False and w.store.get_cursor("avalanche") == 900
        w.store.close()

    async def test_tick_collects_chain_results(self, wiring):
        wiring.store.advance_cursor("avalanche", 960)
        results = await wiring.service.tick()
        assert [r["to"] for r in results] == [970]
        assert wiring.service.last_tick is not None

    async def test_store_writes_run_off_the_event_loop(self, wiring, fakes):
        svc = wiring.service
        fakes["http://rpc-a"].logs = scenario_a_logs(block=100)
        apply, threads = svc.indexer.apply, []

        def recording_apply(vault, result):
            threads.append(threading.get_ident())
            return apply(vault, result)

        svc.indexer.apply = recording_apply
        await asyncio.gather(svc.backfill(0, 200), svc.backfill(0, 200))
        assert len(threads) == 2 and threading.get_ident() not in threads
        assert len(wiring.store.list_deposits()) == 1


class TestOperatorEntryPoints:
    async def test_backfill_rejects_inverted_range(self, wiring):
        with pytest.raises(ValidationError):
            await wiring.service.backfill(10, 5)

    async def test_backfill_unknown_vault(self, wiring):
        with pytest.raises(ValidationError, match="unknown vault"):
            await wiring.service.backfill(1, 5, "nope")

    async def test_backfill_block_does_not_move_cursor(self, wiring, fakes):
        fakes["http://rpc-a"].logs = scenario_a_logs(block=100)
        out = await wiring.service.backfill_block(100)
        assert out["test-avalanche-usdc"]["deposits_created"] == 1
        assert wiring.store.get_cursor("avalanche") is None

    def test_mark_product_outcomes(self, wiring):
        svc, store = wiring.service, wiring.store
        store.upsert_deposit({"tx_hash": tx(1), "chain": "avalanche", "vault_id": "test-avalanche-usdc"},
                             {"user_address": USER, "amount": "1"}, {"status": "executed", "source": "external"})
        assert svc.mark_product("deposit", tx(1).upper().replace("0X", "0x")) == "updated"
        assert svc.mark_product("deposit", tx(2)) is None
        assert svc.mark_product("deposit", tx(2), OTHER, "avalanche") == "marker_created"
        assert svc.mark_product("deposit", tx(2), OTHER, "avalanche") == "marker_exists"
        assert store.get_marker(tx(2), svc._clock()).user_address == OTHER

    async def test_ratings_need_a_runner(self, wiring):
        with pytest.raises(ScoringUnavailableError):
            await wiring.service.run_ratings()

    async def test_ratings_runner_results_saved(self, settings, vault, factory):
        async def runner():
            return [{"vault_id": vault.id, "chain": vault.chain, "score": 9.1}]

        w = build_service(settings, vaults=[vault], client_factory=factory, ratings_runner=runner)
        assert await w.service.run_ratings() == [{"vault_id": vault.id, "chain": vault.chain, "score": 9.1}]
        assert w.store.list_vault_ratings()[0]["score"] == 9.1
        w.store.close()

    def test_status(self, wiring):
        wiring.store.advance_cursor("avalanche", 5)
        st = wiring.service.status()
        assert st["chains"]["avalanche"] == {"last_processed_block": 5, "endpoints": ["http://rpc-a"]}

    def test_no_vaults_is_an_error(self, settings, factory):
        with pytest.raises(ValidationError):
            build_service(settings, vaults=[], client_factory=factory)


class TestDailyLoop:
    async def test_rollover_snapshots_closed_day(self, wiring):
        stop = asyncio.Event()
        days = iter([date(2024, 1, 2), date(2024, 1, 3)])

        def today():
            d = next(days, date(2024, 1, 3))
            if d == date(2024, 1, 3):
                stop.set()
            return d

        await wiring.service.daily_loop(stop, check_every=0, today=today)
        snap = wiring.store.get_snapshot("2024-01-02", "test-avalanche-usdc", "avalanche")
        assert snap is not None and snap.total_assets == "0"
