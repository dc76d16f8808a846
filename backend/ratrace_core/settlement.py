"""Race lifecycle driver.

Each webhook delivery is handled independently: the driver reads the race
from the store, decides what the event means for the current status, and
writes the result back with a conditional update. A delivery that loses a
concurrent write re-reads and re-decides, so duplicate and concurrent
deliveries of the same event converge on one outcome.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .chain import RaceContract
from .config import SettlementRole, Settings
from .errors import (
    ConfigurationError,
    EventValidationError,
    RaceNotFoundError,
    RaceError,
    RaceStateError,
    RatAlreadyRacingError,
    SettlementError,
    StoreError,
)
from .events import (
    ContractEvent,
    RaceCancelledEvent,
    RaceCreatedEvent,
    RacerEnteredEvent,
    RaceFinishedEvent,
    RaceStartedEvent,
)
from .models import MAX_PARTICIPANTS, Participant, Race, RaceStatus, RatStats, can_transition
from .prizes import compute_prize_split, prize_table
from .simulation import simulate, simulation_seed
from .store import RaceStore

logger = logging.getLogger(__name__)

CONFLICT_ATTEMPTS = 5


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _iso(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Optional[str]) -> Optional[dt.datetime]:
    if not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


@dataclass
class Outcome:
    action: str
    race: Optional[Race] = None
    message: str = ""


class SettlementDriver:
    def __init__(
        self,
        store: RaceStore,
        settings: Settings,
        contract: Optional[RaceContract] = None,
        clock: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.contract = contract
        self.clock = clock

    # ------------------------------------------------------------------
    # Dispatch

    def handle(self, event: ContractEvent) -> Outcome:
        if isinstance(event, RaceCreatedEvent):
            return self.on_race_created(event)
        if isinstance(event, RacerEnteredEvent):
            return self.on_racer_entered(event)
        if isinstance(event, RaceStartedEvent):
            return self.on_race_started(event)
        if isinstance(event, RaceFinishedEvent):
            return self.on_race_finished(event)
        if isinstance(event, RaceCancelledEvent):
            return self.on_race_cancelled(event)
        raise EventValidationError(f"Unsupported event {type(event).__name__}")

    # ------------------------------------------------------------------
    # Lifecycle events

    def on_race_created(self, event: RaceCreatedEvent) -> Outcome:
        params = event.parameters
        race = Race(
            race_id=params.race_id,
            track_id=params.track_id,
            entry_token=params.entry_token,
            entry_fee=params.entry_fee,
            creator=params.creator,
            status=RaceStatus.ACTIVE,
            created_tx=event.transaction_hash or None,
            created_at=_iso(self.clock()),
        )
        stored, created = self.store.create_race(race)
        if not created:
            logger.info("Race %s already mirrored; ignoring duplicate creation", params.race_id)
            return Outcome("duplicate", stored, "Race already exists")
        logger.info("Race %s created by %s (fee %s)", stored.race_id, stored.creator, stored.entry_fee)
        return Outcome("created", stored)

    def on_racer_entered(self, event: RacerEnteredEvent) -> Outcome:
        params = event.parameters
        race_id, token_id, racer = params.race_id, params.rat_token_id, params.racer

        claimed = False
        try:
            for _ in range(CONFLICT_ATTEMPTS):
                race = self._require_race(race_id)

                existing = race.participant_for_token(token_id)
                if existing is not None:
                    if existing.racer_address.lower() != racer.lower():
                        raise EventValidationError(
                            f"Rat {token_id} is already entered in race {race_id} by {existing.racer_address}"
                        )
                    return Outcome("duplicate", race, "Entry already recorded")
                if race.participant_for_racer(racer) is not None:
                    raise EventValidationError(f"Racer {racer} already has a rat in race {race_id}")

                if race.status != RaceStatus.ACTIVE or race.is_full:
                    self.store.release_rat(token_id, race_id)
                    raise RaceStateError(f"Race {race_id} is not accepting entries (status {race.status.value})")

                if not self.store.claim_rat(token_id, race_id):
                    holder = self.store.current_race_of(token_id) or "unknown"
                    raise RatAlreadyRacingError(token_id, holder)
                claimed = True

                participants = race.participants + [
                    Participant(racer_address=racer, rat_token_id=token_id, entered_at=_iso(self.clock()))
                ]
                changes: Dict[str, Any] = {
                    "participants": [participant.to_record() for participant in participants],
                    "prize_pool": str(race.prize_pool + race.entry_fee),
                }
                if len(participants) == MAX_PARTICIPANTS:
                    changes["status"] = RaceStatus.FULL

                updated = self.store.update_race_if(race, changes, expected_statuses=[RaceStatus.ACTIVE])
                if updated is not None:
                    logger.info(
                        "Rat %s entered race %s (%s/%s)",
                        token_id,
                        race_id,
                        len(updated.participants),
                        MAX_PARTICIPANTS,
                    )
                    return Outcome("entered", updated)

            raise RaceStateError(f"Race {race_id} kept changing while recording entry of rat {token_id}")
        except RaceError:
            if claimed:
                self._release_unless_entered(race_id, token_id)
            raise

    def on_race_started(self, event: RaceStartedEvent) -> Outcome:
        params = event.parameters
        race = self._require_race(params.race_id)

        if race.status == RaceStatus.FINISHED:
            return Outcome("noop", self._complete_finished(race), "Race already finished")
        if race.status == RaceStatus.CANCELLED:
            raise RaceStateError(f"Race {race.race_id} was cancelled and cannot start")
        if len(race.participants) != MAX_PARTICIPANTS:
            raise EventValidationError(
                f"Race {race.race_id} has {len(race.participants)} participants; {MAX_PARTICIPANTS} are required to start"
            )
        if race.status not in (RaceStatus.FULL, RaceStatus.STARTED):
            raise RaceStateError(f"Race {race.race_id} cannot start from status {race.status.value}")

        if race.status == RaceStatus.FULL:
            race = self._mark_started(race, event)

        race = self._ensure_simulation(race)

        if race.settlement_tx:
            return Outcome("noop", race, "Settlement already submitted")
        if race.finish_error is not None:
            return Outcome("noop", race, "Settlement failed; awaiting reconciliation")
        if self._settlement_deferred(race):
            logger.info("Race %s settlement scheduled for %s", race.race_id, race.settlement_due_at)
            return Outcome("scheduled", race, f"Settlement due at {race.settlement_due_at}")
        return self.settle(race.race_id)

    def on_race_finished(self, event: RaceFinishedEvent) -> Outcome:
        params = event.parameters
        race = self._require_race(params.race_id)

        if race.status == RaceStatus.FINISHED:
            return Outcome("noop", self._complete_finished(race), "Race already finished")
        if race.status != RaceStatus.STARTED:
            raise RaceStateError(f"Race {race.race_id} cannot finish from status {race.status.value}")

        entered = set(race.token_ids())
        unknown = [token_id for token_id in params.winning_rat_token_ids if token_id not in entered]
        if unknown:
            raise EventValidationError(f"Winning rats {unknown} are not entered in race {race.race_id}")

        return self._finalize(
            race,
            tx_hash=race.settlement_tx or event.transaction_hash or None,
            on_chain_winners=params.winning_rat_token_ids,
            on_chain_prizes=params.prizes,
        )

    def on_race_cancelled(self, event: RaceCancelledEvent) -> Outcome:
        params = event.parameters

        for _ in range(CONFLICT_ATTEMPTS):
            race = self._require_race(params.race_id)
            if race.status == RaceStatus.CANCELLED:
                self._release_rats(race)
                return Outcome("noop", race, "Race already cancelled")
            if not can_transition(race.status, RaceStatus.CANCELLED):
                raise RaceStateError(f"Race {race.race_id} cannot be cancelled from status {race.status.value}")

            refunds = [
                {
                    "racer": participant.racer_address,
                    "ratTokenId": participant.rat_token_id,
                    "amount": str(race.entry_fee),
                }
                for participant in race.participants
            ]
            updated = self.store.update_race_if(
                race,
                {
                    "status": RaceStatus.CANCELLED,
                    "prize_pool": "0",
                    "refunds": refunds,
                    "cancelled_by": params.cancelled_by,
                    "cancelled_at": _iso(self.clock()),
                },
                expected_statuses=[RaceStatus.ACTIVE, RaceStatus.FULL],
            )
            if updated is not None:
                self._release_rats(updated)
                logger.info("Race %s cancelled; refunded %s entrants", updated.race_id, len(refunds))
                return Outcome("cancelled", updated)

        raise RaceStateError(f"Race {params.race_id} kept changing while cancelling")

    # ------------------------------------------------------------------
    # Settlement

    def settle(self, race_id: str) -> Outcome:
        """Submit the on-chain settlement for a started race at most once."""

        race = self._require_race(race_id)
        if race.status != RaceStatus.STARTED:
            return Outcome("noop", race, f"Race is {race.status.value}")
        if race.settlement_tx:
            return Outcome("noop", race, "Settlement already submitted")
        if not race.simulation_results:
            raise RaceStateError(f"Race {race_id} has no simulation results to settle")
        if self.contract is None:
            raise ConfigurationError(["RPC_URL", "ORACLE_PRIVATE_KEY", "RACE_MANAGER_ADDRESS"])

        positions = [str(token_id) for token_id in race.simulation_results.get("positions") or []]
        if sorted(positions) != sorted(race.token_ids()) or len(positions) != MAX_PARTICIPANTS:
            return self._record_failure(race, "Simulated positions are not a permutation of the entered rats")

        try:
            self._authorize_settlement()
        except SettlementError as exc:
            return self._record_failure(race, str(exc))

        claimed = self._claim_settlement(race)
        if claimed is None:
            return Outcome("pending", self.store.find_race(race_id), "Settlement already in progress")

        try:
            tx_hash = self.contract.submit_settlement(race_id, positions)
        except SettlementError as exc:
            logger.error("Settlement of race %s failed: %s", race_id, exc)
            return self._record_failure(claimed, str(exc), release_claim=True)

        race = self._record_submission(race_id, tx_hash)
        confirmed = self.contract.wait_for_receipt(tx_hash, timeout=self.settings.receipt_timeout_seconds)
        return self._apply_receipt(race, tx_hash, confirmed)

    def reconcile(self, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        """Drive every started race that is due one step forward.

        Picks up deferred settlements, settlements that failed earlier and
        submitted transactions whose confirmation was not yet observed. It
        also finishes counting results of finished races that were
        interrupted part-way.
        """

        if self.contract is None:
            raise ConfigurationError(["RPC_URL", "ORACLE_PRIVATE_KEY", "RACE_MANAGER_ADDRESS"])

        current = now or self.clock()
        summary: Dict[str, Any] = {
            "checked": 0,
            "finished": 0,
            "failed": 0,
            "pending": 0,
            "stats_recovered": 0,
            "errors": [],
        }

        for race in self.store.list_races([RaceStatus.STARTED], newest_first=False):
            summary["checked"] += 1
            try:
                outcome = self._reconcile_race(race, current)
            except RaceError as exc:
                logger.warning("Reconciliation of race %s failed: %s", race.race_id, exc)
                summary["errors"].append(f"{race.race_id}: {exc}")
                continue

            if outcome.action in ("finished", "failed", "pending"):
                summary[outcome.action] += 1

        for race in self.store.list_races([RaceStatus.FINISHED], newest_first=False, stats_pending=True):
            try:
                self._complete_finished(race)
            except RaceError as exc:
                logger.warning("Counting results of race %s failed: %s", race.race_id, exc)
                summary["errors"].append(f"{race.race_id}: {exc}")
                continue
            summary["stats_recovered"] += 1
        return summary

    def _reconcile_race(self, race: Race, now: dt.datetime) -> Outcome:
        assert self.contract is not None
        if race.settlement_tx:
            confirmed = self.contract.receipt_status(race.settlement_tx)
            return self._apply_receipt(race, race.settlement_tx, confirmed)

        race = self._ensure_simulation(race)
        due_at = _parse_iso(race.settlement_due_at)
        if due_at is not None and due_at > now:
            return Outcome("noop", race, "Settlement not yet due")
        return self.settle(race.race_id)

    def _authorize_settlement(self) -> None:
        if self.settings.settlement_role != SettlementRole.ORACLE:
            return
        assert self.contract is not None
        oracle = self.contract.oracle_address()
        if oracle is None:
            logger.warning("Contract exposes no oracle address; submitting as %s", self.contract.sender_address)
            return
        if oracle.lower() != self.contract.sender_address.lower():
            raise SettlementError(
                f"Account {self.contract.sender_address} is not the contract oracle {oracle}"
            )

    def _claim_settlement(self, race: Race) -> Optional[Race]:
        now = self.clock()
        claimed_at = _parse_iso(race.settlement_claimed_at)
        if claimed_at is not None:
            age = (now - claimed_at).total_seconds()
            if age < self.settings.settlement_claim_ttl_seconds:
                return None
            logger.warning("Taking over stale settlement claim on race %s (%.0fs old)", race.race_id, age)

        return self.store.update_race_if(
            race,
            {"settlement_claimed_at": _iso(now)},
            expected_statuses=[RaceStatus.STARTED],
            require_null=["settlement_tx"],
        )

    def _record_submission(self, race_id: str, tx_hash: str) -> Race:
        for _ in range(CONFLICT_ATTEMPTS):
            race = self._require_race(race_id)
            if race.settlement_tx == tx_hash or race.status == RaceStatus.FINISHED:
                return race
            updated = self.store.update_race_if(
                race,
                {"settlement_tx": tx_hash, "finish_error": None, "settlement_claimed_at": None},
            )
            if updated is not None:
                return updated
        raise RaceStateError(f"Could not record settlement transaction {tx_hash} for race {race_id}")

    def _record_failure(self, race: Race, message: str, release_claim: bool = False) -> Outcome:
        changes: Dict[str, Any] = {"finish_error": {"at": _iso(self.clock()), "message": message}}
        if release_claim:
            changes["settlement_claimed_at"] = None

        for _ in range(CONFLICT_ATTEMPTS):
            updated = self.store.update_race_if(race, changes, expected_statuses=[RaceStatus.STARTED])
            if updated is not None:
                return Outcome("failed", updated, message)
            refreshed = self.store.find_race(race.race_id)
            if refreshed is None or refreshed.status != RaceStatus.STARTED:
                return Outcome("failed", refreshed, message)
            race = refreshed
        raise RaceStateError(f"Could not record settlement failure for race {race.race_id}: {message}")

    def _apply_receipt(self, race: Race, tx_hash: str, confirmed: Optional[bool]) -> Outcome:
        if confirmed is None:
            return Outcome("pending", race, f"Awaiting confirmation of {tx_hash}")
        if confirmed:
            return self._finalize(self._require_race(race.race_id), tx_hash=tx_hash)

        # Reverted: clear the hash so a later sweep can submit a fresh transaction.
        message = f"Settlement transaction {tx_hash} reverted"
        logger.error("Race %s: %s", race.race_id, message)
        for _ in range(CONFLICT_ATTEMPTS):
            current = self._require_race(race.race_id)
            if current.status != RaceStatus.STARTED or current.settlement_tx != tx_hash:
                return Outcome("noop", current, "Settlement state changed")
            updated = self.store.update_race_if(
                current,
                {"settlement_tx": None, "finish_error": {"at": _iso(self.clock()), "message": message}},
                expected_statuses=[RaceStatus.STARTED],
            )
            if updated is not None:
                return Outcome("failed", updated, message)
        raise RaceStateError(f"Could not record revert for race {race.race_id}")

    # ------------------------------------------------------------------
    # Internals

    def _require_race(self, race_id: str) -> Race:
        race = self.store.find_race(race_id)
        if race is None:
            raise RaceNotFoundError(race_id)
        return race

    def _mark_started(self, race: Race, event: RaceStartedEvent) -> Race:
        started_at = _parse_iso(event.timestamp) or self.clock()
        for _ in range(CONFLICT_ATTEMPTS):
            if race.status == RaceStatus.STARTED:
                return race
            if not can_transition(race.status, RaceStatus.STARTED):
                raise RaceStateError(f"Race {race.race_id} cannot start from status {race.status.value}")
            updated = self.store.update_race_if(
                race,
                {
                    "status": RaceStatus.STARTED,
                    "started_at": _iso(started_at),
                    "start_tx": event.transaction_hash or None,
                    "started_by": event.parameters.started_by,
                },
                expected_statuses=[RaceStatus.FULL],
            )
            if updated is not None:
                logger.info("Race %s started", race.race_id)
                return updated
            race = self._require_race(race.race_id)
        raise RaceStateError(f"Race {race.race_id} kept changing while starting")

    def _ensure_simulation(self, race: Race) -> Race:
        """Compute and persist results once; later calls return the stored ones."""

        for _ in range(CONFLICT_ATTEMPTS):
            if race.simulation_results:
                return race

            rats = self._load_rat_stats(race)
            start_time = _parse_iso(race.started_at) or self.clock()
            seed = simulation_seed(race.race_id, race.start_tx or race.started_at or "")
            result = simulate(race.race_id, rats, start_time, seed=seed)

            results = result.to_dict()
            results["simulatedAt"] = _iso(self.clock())
            changes: Dict[str, Any] = {"simulation_results": results}
            if self.settings.settlement_delay_seconds > 0:
                due = self.clock() + dt.timedelta(seconds=self.settings.settlement_delay_seconds)
                changes["settlement_due_at"] = _iso(due)

            updated = self.store.update_race_if(
                race,
                changes,
                expected_statuses=[RaceStatus.STARTED],
                require_null=["simulation_results"],
            )
            if updated is not None:
                logger.info("Race %s simulated; winner %s", race.race_id, result.positions[0])
                return updated
            race = self._require_race(race.race_id)
            if race.status != RaceStatus.STARTED and not race.simulation_results:
                raise RaceStateError(f"Race {race.race_id} left Started before it was simulated")
        raise RaceStateError(f"Race {race.race_id} kept changing while storing simulation results")

    def _load_rat_stats(self, race: Race) -> List[RatStats]:
        token_ids = race.token_ids()
        records = self.store.get_rats(token_ids)
        missing = [
            token_id
            for token_id in token_ids
            if not (records.get(token_id, {}).get("stats") or records.get(token_id, {}).get("bloodline"))
        ]
        if missing:
            raise RaceStateError(f"Missing stats for rats {missing} in race {race.race_id}")

        stats: List[RatStats] = []
        for participant in race.participants:
            record = dict(records[participant.rat_token_id])
            record["owner"] = record.get("owner") or participant.racer_address
            try:
                stats.append(RatStats.from_record(record))
            except ValueError as exc:
                raise RaceStateError(f"Invalid stats in race {race.race_id}: {exc}") from exc
        return stats

    def _settlement_deferred(self, race: Race) -> bool:
        due_at = _parse_iso(race.settlement_due_at)
        return due_at is not None and due_at > self.clock()

    def _finish_order(self, race: Race, on_chain_winners: Sequence[str]) -> List[str]:
        simulated = [str(token_id) for token_id in (race.simulation_results or {}).get("positions") or []]
        if simulated and on_chain_winners and simulated[: len(on_chain_winners)] != list(on_chain_winners):
            logger.warning(
                "Race %s on-chain winners %s differ from simulated order %s; using on-chain order",
                race.race_id,
                list(on_chain_winners),
                simulated,
            )
        order = list(on_chain_winners)
        for token_id in simulated + race.token_ids():
            if token_id not in order:
                order.append(token_id)
        return order

    def _finalize(
        self,
        race: Race,
        tx_hash: Optional[str],
        on_chain_winners: Sequence[str] = (),
        on_chain_prizes: Sequence[int] = (),
    ) -> Outcome:
        for _ in range(CONFLICT_ATTEMPTS):
            if race.status == RaceStatus.FINISHED:
                return Outcome("noop", self._complete_finished(race), "Race already finished")
            if not can_transition(race.status, RaceStatus.FINISHED):
                raise RaceStateError(f"Race {race.race_id} cannot finish from status {race.status.value}")

            order = self._finish_order(race, on_chain_winners)
            positions = {token_id: index for index, token_id in enumerate(order, start=1)}
            participants = [
                Participant(
                    racer_address=participant.racer_address,
                    rat_token_id=participant.rat_token_id,
                    entered_at=participant.entered_at,
                    finish_position=positions.get(participant.rat_token_id),
                )
                for participant in race.participants
            ]

            prizes = prize_table(compute_prize_split(race.entry_fee, len(race.participants)), order, participants)
            for row, amount in zip(prizes, on_chain_prizes):
                row["prize"] = str(amount)

            updated = self.store.update_race_if(
                race,
                {
                    "status": RaceStatus.FINISHED,
                    "participants": [participant.to_record() for participant in participants],
                    "settlement_tx": tx_hash,
                    "settlement_claimed_at": None,
                    "finish_error": None,
                    "on_chain_winners": list(on_chain_winners) or order[:3],
                    "prizes": prizes,
                    "completed_at": _iso(self.clock()),
                },
                expected_statuses=[RaceStatus.STARTED],
            )
            if updated is not None:
                updated = self._complete_finished(updated)
                logger.info("Race %s finished; winner %s", updated.race_id, order[0] if order else "?")
                return Outcome("finished", updated)
            race = self._require_race(race.race_id)

        raise RaceStateError(f"Race {race.race_id} kept changing while finishing")

    def _complete_finished(self, race: Race) -> Race:
        race = self._apply_results(race)
        self._release_rats(race)
        return race

    def _apply_results(self, race: Race) -> Race:
        """Count a finished race towards rat and wallet records exactly once.

        The per-rat and per-wallet writes skip race ids they have already
        counted, so a pass that stopped part-way is finished by whichever
        delivery or sweep sees the race next. ``stats_applied`` is only set
        once every participant has been counted.
        """

        if race.stats_applied:
            return race
        for participant in race.participants:
            position = participant.finish_position or MAX_PARTICIPANTS
            self.store.record_rat_result(participant.rat_token_id, race.race_id, position)
            self.store.record_wallet_result(participant.racer_address, race.race_id, won=position == 1)

        for _ in range(CONFLICT_ATTEMPTS):
            updated = self.store.update_race_if(race, {"stats_applied": True}, expected_statuses=[RaceStatus.FINISHED])
            if updated is not None:
                logger.info("Race %s results counted for %s rats", race.race_id, len(race.participants))
                return updated
            race = self._require_race(race.race_id)
            if race.stats_applied:
                return race
        raise RaceStateError(f"Race {race.race_id} kept changing while marking results applied")

    def _release_rats(self, race: Race) -> None:
        for participant in race.participants:
            self.store.release_rat(participant.rat_token_id, race.race_id)

    def _release_unless_entered(self, race_id: str, token_id: str) -> None:
        # The failed update may still have landed, so keep the lock of a recorded entrant.
        try:
            race = self.store.find_race(race_id)
            if race is not None and race.participant_for_token(token_id) is not None:
                return
            self.store.release_rat(token_id, race_id)
        except StoreError as exc:
            logger.error("Could not release rat %s from race %s: %s", token_id, race_id, exc)
