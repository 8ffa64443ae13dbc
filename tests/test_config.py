import json

import pytest

from vaultledger.config import Settings, default_vaults, load_vaults, vault_by_id
from vaultledger.domain.errors import ValidationError

RAW = {
    "id": "x-eth", "chain": "ethereum", "chainId": 1, "address": "0xABCDEF0000000000000000000000000000000001",
    "asset": {"address": "0x00000000000000000000000000000000000000AA", "symbol": "USDC", "decimals": 6},
    "depositRouter": "0x00000000000000000000000000000000000000BB",
    "rpcUrls": ["http://a", "http://b"], "hasSettlement": True,
}


class TestSettings:
    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VAULTLEDGER_DB_URL", "sqlite:///x.db")
        monkeypatch.setenv("VAULTLEDGER_POLL_INTERVAL", "5")
        monkeypatch.setenv("VAULTLEDGER_CORS_ORIGINS", "http://a, http://b")
        s = Settings.from_env(str(tmp_path / "missing.env"))
        assert (s.db_url, s.poll_interval, s.cors_origins) == ("sqlite:///x.db", 5, ["http://a", "http://b"])
        assert s.max_range == 2_000

    def test_bad_integer(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VAULTLEDGER_MAX_RANGE", "lots")
        with pytest.raises(ValidationError, match="VAULTLEDGER_MAX_RANGE"):
            Settings.from_env(str(tmp_path / "missing.env"))


class TestVaultRegistry:
    def test_load_camel_case_file(self, tmp_path):
        p = tmp_path / "vaults.json"
        p.write_text(json.dumps({"vaults": [RAW]}))
        (v,) = load_vaults(str(p))
        assert v.address == "0xabcdef0000000000000000000000000000000001"
        assert v.router == "0x00000000000000000000000000000000000000bb"
        assert v.settlement == "async" and v.rpc_urls == ("http://a", "http://b") and v.safety_margin == 10

    def test_duplicate_ids_rejected(self, tmp_path):
        p = tmp_path / "vaults.json"
        p.write_text(json.dumps([RAW, RAW]))
        with pytest.raises(ValidationError, match="duplicate"):
            load_vaults(str(p))

    def test_missing_field(self, tmp_path):
        p = tmp_path / "vaults.json"
        p.write_text(json.dumps([{k: v for k, v in RAW.items() if k != "address"}]))
        with pytest.raises(ValidationError, match="address"):
            load_vaults(str(p))

    def test_default_registry_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ETHEREUM_RPC_URL", "http://my-node")
        monkeypatch.setenv("AVALANCHE_SAFETY_MARGIN", "50")
        avax, eth = default_vaults()
        assert avax.safety_margin == 50 and avax.settlement == "sync"
        assert eth.rpc_urls[0] == "http://my-node" and eth.settlement == "async"
        assert vault_by_id([avax, eth], eth.id) is eth
        with pytest.raises(ValidationError):
            vault_by_id([avax, eth], "missing")
