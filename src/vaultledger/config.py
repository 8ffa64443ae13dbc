"""Runtime settings and the vault registry.

Values come from the environment after ``.env`` is loaded. Vaults are read from
``VAULTLEDGER_VAULTS_FILE`` (JSON list) when set, otherwise the built-in
registry is used with the per-vault environment overrides below.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .application.cursor import default_margin
from .domain.errors import ValidationError
from .domain.models import AssetConfig, VaultConfig
from .domain.value_types import Chain, norm_address


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from e


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = (os.getenv(name) or "").strip()
    return [x.strip() for x in raw.split(",") if x.strip()] if raw else default


@dataclass
class Settings:
    db_url: str = "sqlite:///vaultledger.db"
    poll_interval: int = 30
    max_range: int = 2_000
    log_step: int = 2_000
    marker_ttl: int = 3_600
    journal_path: str | None = None
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    vaults_file: str | None = None

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "Settings":
        load_dotenv(env_file)
        return cls(
            db_url=os.getenv("VAULTLEDGER_DB_URL", cls.db_url),
            poll_interval=_env_int("VAULTLEDGER_POLL_INTERVAL", cls.poll_interval),
            max_range=_env_int("VAULTLEDGER_MAX_RANGE", cls.max_range),
            log_step=_env_int("VAULTLEDGER_LOG_STEP", cls.log_step),
            marker_ttl=_env_int("VAULTLEDGER_MARKER_TTL", cls.marker_ttl),
            journal_path=os.getenv("VAULTLEDGER_JOURNAL") or None,
            log_level=os.getenv("VAULTLEDGER_LOG_LEVEL", cls.log_level).upper(),
            api_host=os.getenv("VAULTLEDGER_API_HOST", cls.api_host),
            api_port=_env_int("VAULTLEDGER_API_PORT", cls.api_port),
            cors_origins=_env_list("VAULTLEDGER_CORS_ORIGINS", ["*"]),
            vaults_file=os.getenv("VAULTLEDGER_VAULTS_FILE") or None,
        )

    def vaults(self) -> list[VaultConfig]:
        return load_vaults(self.vaults_file)


# ──────────────────────────────
# Vault registry
# ──────────────────────────────

def _vault(raw: dict) -> VaultConfig:
    try:
        chain = Chain(raw["chain"])
        asset = raw["asset"]
        rpc_urls = tuple(u for u in raw.get("rpc_urls", raw.get("rpcUrls", [])) if u)
        if not rpc_urls:
            raise ValidationError(f"vault {raw['id']} has no rpc_urls")
        router = raw.get("router", raw.get("depositRouter"))
        return VaultConfig(
            id=raw["id"],
            name=raw.get("name", raw["id"]),
            chain=chain,
            chain_id=int(raw.get("chain_id", raw.get("chainId", 0))),
            address=norm_address(raw["address"]),
            asset=AssetConfig(norm_address(asset["address"]), asset.get("symbol", ""), int(asset.get("decimals", 18))),
            router=norm_address(router) if router else None,
            rpc_urls=rpc_urls,
            safety_margin=int(raw.get("safety_margin", raw.get("safetyMargin", default_margin(chain)))),
            settlement="async" if raw.get("settlement") == "async" or raw.get("hasSettlement") else "sync",
        )
    except KeyError as e:
        raise ValidationError(f"vault config is missing {e}") from e


def default_vaults() -> list[VaultConfig]:
    eth_rpc = os.getenv("ETHEREUM_RPC_URL")
    eth_urls = ([eth_rpc] if eth_rpc else []) + [
        "https://1rpc.io/eth",
        "https://rpc.ankr.com/eth",
        "https://eth-mainnet.public.blastapi.io",
    ] + ([] if eth_rpc else ["https://eth.llamarpc.com"])
    return [_vault(v) for v in (
        {
            "id": "turtle-avalanche-usdc",
            "name": "Turtle Avalanche USDC",
            "address": os.getenv("LAGOON_VAULT_ADDRESS", "0x3048925b3ea5a8c12eecccb8810f5f7544db54af"),
            "chain": "avalanche",
            "chain_id": 43114,
            "asset": {"address": "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E", "symbol": "USDC", "decimals": 6},
            "router": os.getenv("DEPOSIT_ROUTER_ADDRESS", "0x5A1E1cCe3c0f823255a688697A90885245b0043F"),
            "rpc_urls": [os.getenv("AVALANCHE_RPC_URL", "https://api.avax.network/ext/bc/C/rpc")],
            "safety_margin": _env_int("AVALANCHE_SAFETY_MARGIN", default_margin("avalanche")),
            "settlement": "sync",
        },
        {
            "id": "9summits-ethereum-usdc",
            "name": "9Summits Flagship USDC",
            "address": "0x03d1ec0d01b659b89a87eabb56e4af5cb6e14bfc",
            "chain": "ethereum",
            "chain_id": 1,
            "asset": {"address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "symbol": "USDC", "decimals": 6},
            "router": os.getenv("ETHEREUM_DEPOSIT_ROUTER_ADDRESS", "0xC75e95201bC574299a3C849181469B5B3B20cc97"),
            "rpc_urls": eth_urls,
            "safety_margin": _env_int("ETHEREUM_SAFETY_MARGIN", default_margin("ethereum")),
            "settlement": "async",
        },
    )]


def load_vaults(path: str | None = None) -> list[VaultConfig]:
    if not path:
        return default_vaults()
    with open(Path(path), encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("vaults", [])
    vaults = [_vault(v) for v in data]
    ids = [v.id for v in vaults]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"duplicate vault ids in {path}")
    return vaults


def vault_by_id(vaults: list[VaultConfig], vault_id: str) -> VaultConfig:
    for v in vaults:
        if v.id == vault_id:
            return v
    raise ValidationError(f"unknown vault {vault_id!r}")
