from pathlib import Path

import pytest

from ratrace_core.config import SettlementMethod, SettlementRole, Settings
from ratrace_core.errors import ConfigurationError

ENV_NAMES = (
    "WEBHOOK_SECRET",
    "WEBHOOK_MAX_AGE_MINUTES",
    "RPC_URL",
    "ORACLE_PRIVATE_KEY",
    "PRIVATE_KEY",
    "RACE_MANAGER_ADDRESS",
    "NEXT_PUBLIC_RACE_MANAGER_ADDRESS",
    "SETTLEMENT_ROLE",
    "SETTLEMENT_METHOD",
    "SETTLEMENT_DELAY_SECONDS",
    "RATRACE_DATA_DIR",
    "LOG_LEVEL",
    "RECONCILE_TOKEN",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    yield


def test_defaults_when_environment_is_empty() -> None:
    settings = Settings.from_env()

    assert settings.webhook_max_age_minutes == 5
    assert settings.settlement_role == SettlementRole.ORACLE
    assert settings.settlement_method == SettlementMethod.FINISH_RACE
    assert settings.settlement_delay_seconds == 0
    assert settings.data_dir is None
    assert settings.reconcile_token == ""


def test_missing_secrets_are_fatal() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        Settings.from_env().validate()

    assert excinfo.value.missing == ["WEBHOOK_SECRET", "RPC_URL", "ORACLE_PRIVATE_KEY", "RACE_MANAGER_ADDRESS"]
    assert Settings(webhook_secret="s").missing(require_chain=False) == []


def test_reads_fallback_names_and_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WEBHOOK_SECRET", "whsec")
    monkeypatch.setenv("RPC_URL", "http://node")
    monkeypatch.setenv("PRIVATE_KEY", "0xkey")
    monkeypatch.setenv("NEXT_PUBLIC_RACE_MANAGER_ADDRESS", "0xcontract")
    monkeypatch.setenv("SETTLEMENT_ROLE", "OPEN")
    monkeypatch.setenv("SETTLEMENT_METHOD", "recordRaceResults")
    monkeypatch.setenv("SETTLEMENT_DELAY_SECONDS", "30")
    monkeypatch.setenv("RATRACE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("RECONCILE_TOKEN", " ops-token ")

    settings = Settings.from_env().validate()

    assert settings.oracle_private_key == "0xkey"
    assert settings.race_manager_address == "0xcontract"
    assert settings.settlement_role == SettlementRole.OPEN
    assert settings.settlement_method == SettlementMethod.RECORD_RACE_RESULTS
    assert settings.settlement_delay_seconds == 30
    assert settings.data_dir == tmp_path
    assert settings.log_level == "DEBUG"
    assert settings.webhook_secret_bytes == b"whsec"
    assert settings.reconcile_token == "ops-token"


def test_rejects_non_positive_max_age() -> None:
    settings = Settings(
        webhook_secret="s",
        rpc_url="http://node",
        oracle_private_key="0xkey",
        race_manager_address="0xcontract",
        webhook_max_age_minutes=0,
    )

    with pytest.raises(ValueError, match="WEBHOOK_MAX_AGE_MINUTES"):
        settings.validate()
