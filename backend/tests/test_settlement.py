import datetime as dt

import pytest

from conftest import ENTRY_FEE, NOW, racer_address
from ratrace_core import RaceStatus, RatStats, SettlementDriver, SettlementRole, simulate
from ratrace_core.errors import (
    ConfigurationError,
    EventValidationError,
    RaceNotFoundError,
    RaceStateError,
    RatAlreadyRacingError,
    StoreError,
)
from ratrace_core.simulation import simulation_seed


def test_race_created_is_mirrored_once(driver: SettlementDriver, events) -> None:
    first = driver.handle(events.created("1"))
    second = driver.handle(events.created("1"))

    assert first.action == "created"
    assert second.action == "duplicate"
    race = driver.store.find_race("1")
    assert race.status == RaceStatus.ACTIVE
    assert race.entry_fee == ENTRY_FEE
    assert race.prize_pool == 0


def test_entries_fill_the_race(full_race) -> None:
    assert full_race.status == RaceStatus.FULL
    assert full_race.prize_pool == 6 * ENTRY_FEE
    assert full_race.token_ids() == ["1", "2", "3", "4", "5", "6"]


def test_duplicate_entry_is_ignored(driver: SettlementDriver, events) -> None:
    driver.handle(events.created("1"))
    driver.handle(events.entered("1", 1))

    outcome = driver.handle(events.entered("1", 1))

    assert outcome.action == "duplicate"
    race = driver.store.find_race("1")
    assert len(race.participants) == 1
    assert race.prize_pool == ENTRY_FEE


def test_entry_rules(driver: SettlementDriver, events, full_race) -> None:
    with pytest.raises(RaceStateError, match="not accepting entries"):
        driver.handle(events.entered("1", 7))
    assert driver.store.current_race_of("7") is None

    with pytest.raises(RaceNotFoundError):
        driver.handle(events.entered("99", 7))

    driver.handle(events.created("2"))
    with pytest.raises(RatAlreadyRacingError):
        driver.handle(events.entered("2", 7, token_id="1"))
    driver.handle(events.entered("2", 8))
    with pytest.raises(EventValidationError, match="already has a rat"):
        driver.handle(events.entered("2", 8, token_id="7"))


def test_start_requires_six_participants(driver: SettlementDriver, events) -> None:
    driver.handle(events.created("1"))
    driver.handle(events.entered("1", 1))

    with pytest.raises(EventValidationError, match="6 are required"):
        driver.handle(events.started("1"))
    assert driver.store.find_race("1").simulation_results is None


def test_race_started_simulates_settles_and_finishes(driver: SettlementDriver, events, contract, full_race) -> None:
    outcome = driver.handle(events.started("1"))

    assert outcome.action == "finished"
    race = driver.store.find_race("1")
    assert race.status == RaceStatus.FINISHED
    positions = race.simulation_results["positions"]
    assert sorted(positions) == ["1", "2", "3", "4", "5", "6"]
    assert contract.submissions == [("1", positions)]
    assert race.settlement_tx == f"0x{1:064x}"
    assert race.completed_at is not None
    assert race.finish_error is None
    assert "Midday Heat" in race.simulation_results["analysis"]["timeOfDayModifier"]

    by_token = {participant.rat_token_id: participant for participant in race.participants}
    for index, token_id in enumerate(positions, start=1):
        assert by_token[token_id].finish_position == index
    assert sum(int(row["prize"]) for row in race.prizes) == 6 * ENTRY_FEE * 9 // 10

    winner = driver.store.get_rats([positions[0]])[positions[0]]
    assert winner["wins"] == 1 and winner["xp"] == 100
    last = driver.store.get_rats([positions[-1]])[positions[-1]]
    assert last["losses"] == 1
    for token_id in positions:
        assert driver.store.current_race_of(token_id) is None

    winner_wallet = driver.store.get_wallet(racer_address(int(positions[0])))
    assert winner_wallet["total_wins"] == 1 and winner_wallet["race_history"] == ["1"]


def test_redelivered_race_started_does_not_resimulate_or_resubmit(
    driver: SettlementDriver, events, contract, full_race
) -> None:
    contract.receipt = None

    first = driver.handle(events.started("1"))
    stored = driver.store.find_race("1")
    second = driver.handle(events.started("1"))

    assert first.action == "pending"
    assert second.action == "noop"
    assert len(contract.submissions) == 1
    race = driver.store.find_race("1")
    assert race.status == RaceStatus.STARTED
    assert race.simulation_results == stored.simulation_results


def test_simulation_is_reproducible_from_start_transaction(
    driver: SettlementDriver, events, contract, full_race
) -> None:
    contract.receipt = None
    driver.handle(events.started("1", tx="0xabc"))
    results = driver.store.find_race("1").simulation_results

    assert results["seed"] == simulation_seed("1", "0xabc")
    assert contract.submissions[0][1] == results["positions"]

    rats = [RatStats.from_record(row) for row in driver.store.get_rats(full_race.token_ids()).values()]
    replay = simulate("1", sorted(rats, key=lambda rat: int(rat.token_id)), NOW, seed=results["seed"])
    assert replay.positions == results["positions"]


def test_failed_submission_is_recorded_and_retried_by_reconcile(
    driver: SettlementDriver, events, contract, full_race
) -> None:
    contract.fail = "execution reverted: caller is not the oracle"

    outcome = driver.handle(events.started("1"))

    assert outcome.action == "failed"
    race = driver.store.find_race("1")
    assert race.status == RaceStatus.STARTED
    assert race.simulation_results is not None
    assert race.settlement_tx is None
    assert race.settlement_claimed_at is None
    assert "caller is not the oracle" in race.finish_error.message

    contract.fail = None
    summary = driver.reconcile(now=NOW)

    assert summary["finished"] == 1 and summary["errors"] == []
    race = driver.store.find_race("1")
    assert race.status == RaceStatus.FINISHED
    assert race.finish_error is None


def test_oracle_role_requires_matching_account(driver: SettlementDriver, events, contract, full_race) -> None:
    contract.oracle = "0x" + "f" * 40

    outcome = driver.handle(events.started("1"))

    assert outcome.action == "failed"
    assert contract.submissions == []
    assert "not the contract oracle" in driver.store.find_race("1").finish_error.message


def test_open_role_skips_oracle_check(driver: SettlementDriver, events, contract, full_race) -> None:
    contract.oracle = "0x" + "f" * 40
    driver.settings.settlement_role = SettlementRole.OPEN

    outcome = driver.handle(events.started("1"))

    assert outcome.action == "finished"
    assert len(contract.submissions) == 1


def test_reverted_transaction_clears_hash_for_retry(driver: SettlementDriver, events, contract, full_race) -> None:
    contract.receipt = False

    outcome = driver.handle(events.started("1"))

    assert outcome.action == "failed"
    race = driver.store.find_race("1")
    assert race.settlement_tx is None
    assert "reverted" in race.finish_error.message


def test_delayed_settlement_waits_for_the_sweep(driver: SettlementDriver, events, contract, full_race) -> None:
    driver.settings.settlement_delay_seconds = 60

    outcome = driver.handle(events.started("1"))

    assert outcome.action == "scheduled"
    assert contract.submissions == []
    race = driver.store.find_race("1")
    assert race.settlement_due_at == "2024-06-01T12:01:00Z"
    assert race.simulation_results is not None

    early = driver.reconcile(now=NOW + dt.timedelta(seconds=30))
    assert early["checked"] == 1 and early["finished"] == 0
    assert contract.submissions == []

    due = driver.reconcile(now=NOW + dt.timedelta(seconds=120))
    assert due["finished"] == 1
    assert driver.store.find_race("1").status == RaceStatus.FINISHED


def test_reconcile_confirms_pending_transaction(driver: SettlementDriver, events, contract, full_race) -> None:
    contract.receipt = None
    driver.handle(events.started("1"))

    pending = driver.reconcile(now=NOW)
    assert pending["pending"] == 1

    contract.receipt = True
    confirmed = driver.reconcile(now=NOW)
    assert confirmed["finished"] == 1
    assert len(contract.submissions) == 1


def test_reconcile_requires_a_contract(race_store, settings) -> None:
    driver = SettlementDriver(store=race_store, settings=settings, contract=None)

    with pytest.raises(ConfigurationError):
        driver.reconcile()


def test_race_finished_event_applies_stats_once(driver: SettlementDriver, events, contract, full_race) -> None:
    contract.receipt = None
    driver.handle(events.started("1"))
    positions = driver.store.find_race("1").simulation_results["positions"]

    first = driver.handle(events.finished("1", positions[:3], prizes=[270, 162, 108]))
    again = driver.handle(events.finished("1", positions[:3], prizes=[270, 162, 108]))

    assert first.action == "finished"
    assert again.action == "noop"
    race = driver.store.find_race("1")
    assert race.on_chain_winners == positions[:3]
    assert [row["prize"] for row in race.prizes[:3]] == ["270", "162", "108"]
    assert race.settlement_tx == f"0x{1:064x}"
    winner = driver.store.get_rats([positions[0]])[positions[0]]
    assert winner["wins"] == 1

    # The pending receipt confirming later must not count the race again.
    contract.receipt = True
    driver.reconcile(now=NOW)
    assert driver.store.get_rats([positions[0]])[positions[0]]["wins"] == 1


def test_race_finished_rejects_unknown_winners(driver: SettlementDriver, events, contract, full_race) -> None:
    contract.receipt = None
    driver.handle(events.started("1"))

    with pytest.raises(EventValidationError, match="not entered"):
        driver.handle(events.finished("1", ["42"]))


def test_cancelled_race_refunds_and_releases_rats(driver: SettlementDriver, events) -> None:
    driver.handle(events.created("1"))
    driver.handle(events.entered("1", 1))
    driver.handle(events.entered("1", 2))

    outcome = driver.handle(events.cancelled("1"))

    assert outcome.action == "cancelled"
    race = driver.store.find_race("1")
    assert race.status == RaceStatus.CANCELLED
    assert race.prize_pool == 0
    assert [refund["ratTokenId"] for refund in race.refunds] == ["1", "2"]
    assert all(refund["amount"] == str(ENTRY_FEE) for refund in race.refunds)
    assert driver.store.current_race_of("1") is None
    assert driver.store.current_race_of("2") is None

    assert driver.handle(events.cancelled("1")).action == "noop"
    with pytest.raises(RaceStateError):
        driver.handle(events.entered("1", 3))
    with pytest.raises(RaceStateError):
        driver.handle(events.started("1"))


def test_started_race_cannot_be_cancelled(driver: SettlementDriver, events, contract, full_race) -> None:
    contract.receipt = None
    driver.handle(events.started("1"))

    with pytest.raises(RaceStateError, match="cannot be cancelled"):
        driver.handle(events.cancelled("1"))


def test_missing_rat_stats_block_simulation(driver: SettlementDriver, events, contract) -> None:
    driver.handle(events.created("1"))
    for index in range(1, 6):
        driver.handle(events.entered("1", index))
    driver.handle(events.entered("1", 9, token_id="900"))

    with pytest.raises(RaceStateError, match="Missing stats"):
        driver.handle(events.started("1"))
    assert contract.submissions == []


def test_rat_stats_outside_range_block_simulation(driver: SettlementDriver, events, contract, full_race) -> None:
    driver.store.upsert_rat({"token_id": "6", "stats": {"stamina": 0, "agility": 70, "speed": 70, "bloodline": "Alley Cat"}})

    with pytest.raises(RaceStateError, match="outside 50-100"):
        driver.handle(events.started("1"))
    assert contract.submissions == []


def test_redelivered_start_leaves_failed_settlement_to_reconcile(
    driver: SettlementDriver, events, contract, full_race
) -> None:
    contract.fail = "rpc down"
    assert driver.handle(events.started("1")).action == "failed"

    contract.fail = None
    redelivered = driver.handle(events.started("1"))

    assert redelivered.action == "noop"
    assert contract.submissions == []
    assert driver.store.find_race("1").finish_error.message == "rpc down"

    assert driver.reconcile(now=NOW)["finished"] == 1
    assert len(contract.submissions) == 1


def _interrupt_second_rat_write(monkeypatch: pytest.MonkeyPatch, store) -> None:
    original = store.record_rat_result
    calls = []

    def flaky(token_id, race_id, position):
        calls.append(token_id)
        if len(calls) == 2:
            raise StoreError("connection reset")
        return original(token_id, race_id, position)

    monkeypatch.setattr(store, "record_rat_result", flaky)


def _assert_counted_once(store, token_ids) -> None:
    for record in store.get_rats(token_ids).values():
        assert record["race_history"] == ["1"]
        assert record["wins"] + record["placed"] + record["losses"] == 1


def test_interrupted_results_are_finished_by_redelivery(
    driver: SettlementDriver, events, contract, full_race, monkeypatch: pytest.MonkeyPatch
) -> None:
    _interrupt_second_rat_write(monkeypatch, driver.store)

    with pytest.raises(StoreError):
        driver.handle(events.started("1"))
    race = driver.store.find_race("1")
    assert race.status == RaceStatus.FINISHED
    assert race.stats_applied is False

    positions = race.simulation_results["positions"]
    outcome = driver.handle(events.finished("1", positions[:3]))

    assert outcome.action == "noop"
    assert outcome.race.stats_applied is True
    _assert_counted_once(driver.store, full_race.token_ids())
    assert driver.store.get_wallet(racer_address(1))["total_races"] == 1
    assert driver.store.current_race_of("1") is None


def test_reconcile_finishes_interrupted_results(
    driver: SettlementDriver, events, contract, full_race, monkeypatch: pytest.MonkeyPatch
) -> None:
    _interrupt_second_rat_write(monkeypatch, driver.store)
    with pytest.raises(StoreError):
        driver.handle(events.started("1"))

    summary = driver.reconcile(now=NOW)

    assert summary["checked"] == 0
    assert summary["stats_recovered"] == 1
    assert driver.store.find_race("1").stats_applied is True
    _assert_counted_once(driver.store, full_race.token_ids())

    assert driver.reconcile(now=NOW)["stats_recovered"] == 0


def test_failed_entry_write_releases_the_rat(
    driver: SettlementDriver, events, monkeypatch: pytest.MonkeyPatch
) -> None:
    driver.handle(events.created("1"))

    def unavailable(*args, **kwargs):
        raise StoreError("Supabase unavailable writing races")

    monkeypatch.setattr(driver.store, "update_race_if", unavailable)

    with pytest.raises(StoreError):
        driver.handle(events.entered("1", 1))
    assert driver.store.current_race_of("1") is None


def test_entry_that_keeps_losing_conflicts_releases_the_rat(
    driver: SettlementDriver, events, monkeypatch: pytest.MonkeyPatch
) -> None:
    driver.handle(events.created("1"))
    monkeypatch.setattr(driver.store, "update_race_if", lambda *args, **kwargs: None)

    with pytest.raises(RaceStateError, match="kept changing"):
        driver.handle(events.entered("1", 1))
    assert driver.store.current_race_of("1") is None
    assert driver.store.find_race("1").participants == []
