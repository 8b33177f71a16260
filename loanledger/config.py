"""Environment driven settings for the reconciliation service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_ABI_PATH = str(Path(__file__).resolve().parent / "abi" / "LendingPool.json")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    db_path: str = "./data/ledger.db"
    db_timeout: float = 10.0
    rpc_url: Optional[str] = None
    contract_address: Optional[str] = None
    abi_path: str = DEFAULT_ABI_PATH
    rpc_timeout: int = 15
    poll_interval: float = 5.0
    lookback_blocks: int = 100
    max_block_range: int = 1000
    confirmations: int = 0
    start_block: Optional[int] = None
    usdc_decimals: int = 6
    btc_decimals: int = 8
    price_decimals: int = 8
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        start_block = os.getenv("START_BLOCK")
        return cls(
            db_path=os.getenv("LEDGER_DB_PATH", cls.db_path),
            db_timeout=_env_float("DB_TIMEOUT", cls.db_timeout),
            rpc_url=os.getenv("RPC_URL") or None,
            contract_address=os.getenv("LENDING_POOL_ADDRESS") or None,
            abi_path=os.getenv("LENDING_POOL_ABI", DEFAULT_ABI_PATH),
            rpc_timeout=_env_int("RPC_TIMEOUT", cls.rpc_timeout),
            poll_interval=_env_float("POLL_INTERVAL", cls.poll_interval),
            lookback_blocks=_env_int("LOOKBACK_BLOCKS", cls.lookback_blocks),
            max_block_range=_env_int("MAX_BLOCK_RANGE", cls.max_block_range),
            confirmations=_env_int("CONFIRMATIONS", cls.confirmations),
            start_block=int(start_block) if start_block and start_block.strip() else None,
            usdc_decimals=_env_int("USDC_DECIMALS", cls.usdc_decimals),
            btc_decimals=_env_int("BTC_DECIMALS", cls.btc_decimals),
            price_decimals=_env_int("PRICE_DECIMALS", cls.price_decimals),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


__all__ = ["Settings", "DEFAULT_ABI_PATH"]
