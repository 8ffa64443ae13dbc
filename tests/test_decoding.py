"""Typed and raw-topic decoding of router and vault events."""
from dataclasses import replace

import pytest

from vaultledger.domain.decoding import (
    DEPOSIT_4626, DEPOSIT_REQUESTED_LEGACY, INTENT_CREATED, REDEEM_REQUEST_7540, ROUTER_FAMILIES,
    VAULT_FAMILIES, decode_log, families_by_topic0, strategies_for,
)
from vaultledger.domain.errors import DecodeError
from vaultledger.domain.models import Deposited, DepositRequested, IntentCreated, RedeemRequested

from .conftest import ASSET, OTHER, ROUTER, USER, VAULT_ADDR, intent_hash, make_log, tx

FAMILIES = families_by_topic0(VAULT_FAMILIES)


def _family(abi):
    return FAMILIES.get(abi.topic0) or families_by_topic0(ROUTER_FAMILIES)[abi.topic0]


class TestSignatures:
    def test_redeem_request_topic0_matches_erc7540(self):
        assert REDEEM_REQUEST_7540.topic0 == "0x1fdc681a13d8c5da54e301c7ce6542dcde4581e4725043fdab2db12ddc574506"

    def test_signature_lists_all_params(self):
        assert INTENT_CREATED.signature == \
            "DepositIntentCreated(bytes32,address,address,address,uint256,uint256,uint256)"

    def test_topic0s_are_unique_per_family_map(self):
        topics = [t for fam in VAULT_FAMILIES for t in fam.topic0s]
        assert len(topics) == len(set(topics))

    def test_raw_strategies_only_for_variable_families(self):
        deposit = next(f for f in VAULT_FAMILIES if f.name == "deposit")
        redeem = next(f for f in VAULT_FAMILIES if f.name == "redeem_request")
        assert [s.mode for s in strategies_for(deposit)] == ["typed"]
        assert [s.mode for s in strategies_for(redeem)] == ["typed", "typed", "raw", "raw"]


class TestTypedDecoding:
    def test_intent_created(self):
        h = intent_hash(1)
        lg = make_log(INTENT_CREATED, {"intentHash": h, "user": USER, "vault": VAULT_ADDR, "asset": ASSET,
                                       "amount": 1000, "nonce": 7, "deadline": 1_900_000_000},
                      address=ROUTER, block=10, tx_hash=tx(1), log_index=3)
        ev = decode_log(lg, _family(INTENT_CREATED), "avalanche")
        assert isinstance(ev, IntentCreated)
        assert (ev.intent_hash, ev.user, ev.vault, ev.asset) == (h, USER, VAULT_ADDR, ASSET)
        assert (ev.amount, ev.nonce, ev.deadline) == (1000, 7, 1_900_000_000)
        assert ev.meta.log_index == 3 and ev.meta.decoder == "typed"
        assert ev.meta.variant == "DepositIntentCreated"

    def test_deposit_4626(self):
        lg = make_log(DEPOSIT_4626, {"sender": ROUTER, "owner": USER, "assets": 500, "shares": 490},
                      address=VAULT_ADDR, block=11, tx_hash=tx(2))
        ev = decode_log(lg, _family(DEPOSIT_4626), "avalanche")
        assert isinstance(ev, Deposited)
        assert (ev.sender, ev.owner, ev.assets, ev.shares) == (ROUTER, USER, 500, 490)

    def test_legacy_deposit_requested_maps_user_to_controller_and_owner(self):
        lg = make_log(DEPOSIT_REQUESTED_LEGACY, {"user": USER, "epochId": 4, "amount": 250},
                      address=VAULT_ADDR, block=12, tx_hash=tx(3))
        ev = decode_log(lg, _family(DEPOSIT_REQUESTED_LEGACY), "ethereum")
        assert isinstance(ev, DepositRequested)
        assert ev.controller == ev.owner == USER
        assert ev.sender is None and ev.request_id == 4 and ev.assets == 250


class TestRawFallback:
    def test_trailing_data_word_falls_back_to_raw(self):
        lg = make_log(REDEEM_REQUEST_7540, {"controller": USER, "owner": USER, "requestId": 9,
                                            "sender": OTHER, "shares": 12_345},
                      address=VAULT_ADDR, block=20, tx_hash=tx(4))
        lg = replace(lg, data_hex=lg.data_hex + "00" * 31 + "01")
        ev = decode_log(lg, _family(REDEEM_REQUEST_7540), "ethereum")
        assert isinstance(ev, RedeemRequested)
        assert ev.meta.decoder == "raw"
        assert ev.shares == 12_345 and ev.sender == OTHER and ev.request_id == 9

    def test_short_data_rejected_by_every_strategy(self):
        lg = make_log(REDEEM_REQUEST_7540, {"controller": USER, "owner": USER, "requestId": 9,
                                            "sender": OTHER, "shares": 1},
                      address=VAULT_ADDR, block=20, tx_hash=tx(5))
        lg = replace(lg, data_hex=lg.data_hex[:66])
        with pytest.raises(DecodeError, match="raw:"):
            decode_log(lg, _family(REDEEM_REQUEST_7540), "ethereum")

    def test_wrong_topic_count_rejected(self):
        lg = make_log(REDEEM_REQUEST_7540, {"controller": USER, "owner": USER, "requestId": 9,
                                            "sender": OTHER, "shares": 1},
                      address=VAULT_ADDR, block=20, tx_hash=tx(6))
        lg = replace(lg, topics=lg.topics[:3])
        with pytest.raises(DecodeError, match="topics"):
            decode_log(lg, _family(REDEEM_REQUEST_7540), "ethereum")

    def test_dirty_address_padding_rejected_by_raw(self):
        lg = make_log(REDEEM_REQUEST_7540, {"controller": USER, "owner": USER, "requestId": 9,
                                            "sender": OTHER, "shares": 1},
                      address=VAULT_ADDR, block=20, tx_hash=tx(7))
        bad_owner = "0x" + "ff" * 12 + USER[2:]
        lg = replace(lg, topics=(lg.topics[0], lg.topics[1], bad_owner, lg.topics[3]),
                     data_hex=lg.data_hex + "00" * 32)
        with pytest.raises(DecodeError, match="padding"):
            decode_log(lg, _family(REDEEM_REQUEST_7540), "ethereum")

    def test_fixed_family_has_no_raw_fallback(self):
        lg = make_log(DEPOSIT_4626, {"sender": ROUTER, "owner": USER, "assets": 500, "shares": 490},
                      address=VAULT_ADDR, block=11, tx_hash=tx(8))
        lg = replace(lg, data_hex=lg.data_hex + "00" * 32)
        with pytest.raises(DecodeError):
            decode_log(lg, _family(DEPOSIT_4626), "avalanche")
