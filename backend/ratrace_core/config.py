from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .errors import ConfigurationError


class SettlementRole(str, Enum):
    """Who the contract lets submit final results."""

    OPEN = "open"
    ORACLE = "oracle"


class SettlementMethod(str, Enum):
    FINISH_RACE = "finishRace"
    RECORD_RACE_RESULTS = "recordRaceResults"


def _env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class Settings:
    """Process configuration read from the environment."""

    webhook_secret: str = ""
    webhook_max_age_minutes: int = 5
    rpc_url: str = ""
    oracle_private_key: str = ""
    race_manager_address: str = ""
    settlement_role: SettlementRole = SettlementRole.ORACLE
    settlement_method: SettlementMethod = SettlementMethod.FINISH_RACE
    settlement_delay_seconds: int = 0
    rpc_timeout_seconds: int = 10
    rpc_max_attempts: int = 3
    receipt_timeout_seconds: int = 60
    settlement_claim_ttl_seconds: int = 300
    reconcile_token: str = ""
    log_level: str = "INFO"
    data_dir: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir_raw = _env("RATRACE_DATA_DIR")
        return cls(
            webhook_secret=_env("WEBHOOK_SECRET"),
            webhook_max_age_minutes=_env_int("WEBHOOK_MAX_AGE_MINUTES", 5),
            rpc_url=_env("RPC_URL"),
            oracle_private_key=_env("ORACLE_PRIVATE_KEY", "PRIVATE_KEY"),
            race_manager_address=_env("RACE_MANAGER_ADDRESS", "NEXT_PUBLIC_RACE_MANAGER_ADDRESS"),
            settlement_role=SettlementRole(_env("SETTLEMENT_ROLE", default="oracle").lower()),
            settlement_method=SettlementMethod(_env("SETTLEMENT_METHOD", default="finishRace")),
            settlement_delay_seconds=_env_int("SETTLEMENT_DELAY_SECONDS", 0),
            rpc_timeout_seconds=_env_int("RPC_TIMEOUT_SECONDS", 10),
            rpc_max_attempts=_env_int("RPC_MAX_ATTEMPTS", 3),
            receipt_timeout_seconds=_env_int("RECEIPT_TIMEOUT_SECONDS", 60),
            settlement_claim_ttl_seconds=_env_int("SETTLEMENT_CLAIM_TTL_SECONDS", 300),
            reconcile_token=_env("RECONCILE_TOKEN"),
            log_level=_env("LOG_LEVEL", default="INFO").upper(),
            data_dir=Path(data_dir_raw) if data_dir_raw else None,
        )

    def missing(self, require_chain: bool = True) -> List[str]:
        missing: List[str] = []
        if not self.webhook_secret:
            missing.append("WEBHOOK_SECRET")
        if require_chain:
            if not self.rpc_url:
                missing.append("RPC_URL")
            if not self.oracle_private_key:
                missing.append("ORACLE_PRIVATE_KEY")
            if not self.race_manager_address:
                missing.append("RACE_MANAGER_ADDRESS")
        return missing

    def validate(self, require_chain: bool = True) -> "Settings":
        missing = self.missing(require_chain=require_chain)
        if missing:
            raise ConfigurationError(missing)
        if self.webhook_max_age_minutes <= 0:
            raise ValueError("WEBHOOK_MAX_AGE_MINUTES must be positive")
        if self.rpc_max_attempts < 1:
            raise ValueError("RPC_MAX_ATTEMPTS must be at least 1")
        return self

    @property
    def webhook_secret_bytes(self) -> bytes:
        return self.webhook_secret.encode("utf-8")
