import datetime as dt
from typing import Any, Dict, List, Optional, Sequence

import pytest

from ratrace_core import RaceStore, SettlementDriver, SettlementRole, Settings
from ratrace_core.errors import SettlementError
from ratrace_core.events import parse_event
from ratrace_core.simulation import BLOODLINES

NOW = dt.datetime(2024, 6, 1, 12, 0, tzinfo=dt.timezone.utc)
ENTRY_FEE = 10**18
ORACLE = "0x" + "0" * 39 + "a"
CREATOR = "0x" + "1" * 40
ENTRY_TOKEN = "0x" + "2" * 40
WEBHOOK_SECRET = "whsec_test"


def racer_address(index: int) -> str:
    return f"0x{index:040x}"


class FakeContract:
    """Records submissions instead of talking to a node."""

    def __init__(self) -> None:
        self.sender_address = ORACLE
        self.oracle: Optional[str] = ORACLE
        self.fail: Optional[str] = None
        self.receipt: Optional[bool] = True
        self.submissions: List[tuple[str, List[str]]] = []

    def oracle_address(self) -> Optional[str]:
        return self.oracle

    def submit_settlement(self, race_id: str, positions: Sequence[str]) -> str:
        if self.fail:
            raise SettlementError(self.fail)
        self.submissions.append((race_id, list(positions)))
        return f"0x{len(self.submissions):064x}"

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[bool]:
        return self.receipt

    def receipt_status(self, tx_hash: str) -> Optional[bool]:
        return self.receipt


class EventFactory:
    def payload(self, name: str, parameters: Dict[str, Any], tx: str = "0x01") -> Dict[str, Any]:
        return {"event_name": name, "transaction_hash": tx, "block_number": 1, "parameters": parameters}

    def created(self, race_id: str = "1", entry_fee: int = ENTRY_FEE):
        return parse_event(
            self.payload(
                "RaceCreated",
                {
                    "raceId": race_id,
                    "creator": CREATOR,
                    "trackId": 1,
                    "entryToken": ENTRY_TOKEN,
                    "entryFee": str(entry_fee),
                },
            )
        )

    def entered(self, race_id: str, index: int, token_id: Optional[str] = None):
        return parse_event(
            self.payload(
                "RacerEntered",
                {"raceId": race_id, "racer": racer_address(index), "ratTokenId": token_id or str(index)},
            )
        )

    def started(self, race_id: str = "1", tx: str = "0x5a"):
        return parse_event(self.payload("RaceStarted", {"raceId": race_id, "startedBy": CREATOR}, tx=tx))

    def finished(self, race_id: str, winners: Sequence[str], prizes: Sequence[int] = ()):
        return parse_event(
            self.payload(
                "RaceFinished",
                {"raceId": race_id, "winningRatTokenIds": list(winners), "prizes": list(prizes)},
                tx="0xf1",
            )
        )

    def cancelled(self, race_id: str = "1"):
        return parse_event(self.payload("RaceCancelled", {"raceId": race_id, "cancelledBy": CREATOR}, tx="0xcc"))


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY", "SUPABASE_SCHEMA"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings(
        webhook_secret=WEBHOOK_SECRET,
        rpc_url="http://localhost:8545",
        oracle_private_key="0x" + "11" * 32,
        race_manager_address=ENTRY_TOKEN,
        settlement_role=SettlementRole.ORACLE,
    )


@pytest.fixture
def race_store(tmp_path) -> RaceStore:
    store = RaceStore(data_dir=tmp_path)
    bloodlines = list(BLOODLINES)
    for index in range(1, 9):
        store.upsert_rat(
            {
                "token_id": str(index),
                "owner": racer_address(index),
                "name": f"Rat {index}",
                "stats": {
                    "stamina": 60 + index * 4,
                    "agility": 90 - index * 3,
                    "speed": 70 + index,
                    "bloodline": bloodlines[index % len(bloodlines)],
                },
            }
        )
    return store


@pytest.fixture
def contract() -> FakeContract:
    return FakeContract()


@pytest.fixture
def driver(race_store: RaceStore, settings: Settings, contract: FakeContract) -> SettlementDriver:
    return SettlementDriver(store=race_store, settings=settings, contract=contract, clock=lambda: NOW)


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


@pytest.fixture
def full_race(driver: SettlementDriver, events: EventFactory):
    driver.handle(events.created("1"))
    for index in range(1, 7):
        driver.handle(events.entered("1", index))
    return driver.store.find_race("1")
