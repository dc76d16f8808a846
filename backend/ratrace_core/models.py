from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

MAX_PARTICIPANTS = 6
STAT_MIN = 50
STAT_MAX = 100


class RaceStatus(str, Enum):
    ACTIVE = "Active"
    FULL = "Full"
    STARTED = "Started"
    FINISHED = "Finished"
    CANCELLED = "Cancelled"


# Forward-only lifecycle; Cancelled branches off before the start.
ALLOWED_TRANSITIONS: Dict[RaceStatus, tuple[RaceStatus, ...]] = {
    RaceStatus.ACTIVE: (RaceStatus.FULL, RaceStatus.CANCELLED),
    RaceStatus.FULL: (RaceStatus.STARTED, RaceStatus.CANCELLED),
    RaceStatus.STARTED: (RaceStatus.FINISHED,),
    RaceStatus.FINISHED: (),
    RaceStatus.CANCELLED: (),
}


def can_transition(current: RaceStatus, target: RaceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _stat_value(stats: Dict[str, Any], name: str, token_id: str) -> int:
    raw = stats.get(name)
    if raw is None or raw == "":
        raise ValueError(f"Rat {token_id} has no {name} stat")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Rat {token_id} has a non-numeric {name} stat: {raw!r}") from exc
    if not STAT_MIN <= value <= STAT_MAX:
        raise ValueError(f"Rat {token_id} {name} {value} is outside {STAT_MIN}-{STAT_MAX}")
    return value


@dataclass(frozen=True)
class RatStats:
    """Snapshot of a rat's racing attributes taken at race start."""

    token_id: str
    owner: str
    stamina: int
    agility: int
    speed: int
    bloodline: str
    name: str = ""

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "RatStats":
        stats = row.get("stats") if isinstance(row.get("stats"), dict) else row
        token_id = str(row.get("token_id"))
        return cls(
            token_id=token_id,
            owner=str(row.get("owner") or ""),
            stamina=_stat_value(stats, "stamina", token_id),
            agility=_stat_value(stats, "agility", token_id),
            speed=_stat_value(stats, "speed", token_id),
            bloodline=str(stats.get("bloodline") or ""),
            name=str(row.get("name") or ""),
        )


@dataclass
class Participant:
    racer_address: str
    rat_token_id: str
    entered_at: str = ""
    finish_position: Optional[int] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "racer_address": self.racer_address,
            "rat_token_id": self.rat_token_id,
            "entered_at": self.entered_at,
            "finish_position": self.finish_position,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Participant":
        position = row.get("finish_position")
        return cls(
            racer_address=str(row.get("racer_address") or ""),
            rat_token_id=str(row.get("rat_token_id")),
            entered_at=str(row.get("entered_at") or ""),
            finish_position=int(position) if position is not None else None,
        )


@dataclass
class FinishError:
    at: str
    message: str


@dataclass
class Race:
    """The race aggregate as mirrored in the store."""

    race_id: str
    track_id: int = 1
    entry_token: str = ""
    entry_fee: int = 0
    creator: str = ""
    status: RaceStatus = RaceStatus.ACTIVE
    participants: List[Participant] = field(default_factory=list)
    prize_pool: int = 0
    simulation_results: Optional[Dict[str, Any]] = None
    settlement_tx: Optional[str] = None
    finish_error: Optional[FinishError] = None
    settlement_due_at: Optional[str] = None
    settlement_claimed_at: Optional[str] = None
    created_tx: Optional[str] = None
    start_tx: Optional[str] = None
    started_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    on_chain_winners: List[str] = field(default_factory=list)
    prizes: List[Dict[str, Any]] = field(default_factory=list)
    refunds: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    stats_applied: bool = False
    version: int = 0

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= MAX_PARTICIPANTS

    def token_ids(self) -> List[str]:
        return [participant.rat_token_id for participant in self.participants]

    def participant_for_token(self, token_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.rat_token_id == str(token_id):
                return participant
        return None

    def participant_for_racer(self, address: str) -> Optional[Participant]:
        lowered = address.lower()
        for participant in self.participants:
            if participant.racer_address.lower() == lowered:
                return participant
        return None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["status"] = self.status.value
        record["entry_fee"] = str(self.entry_fee)
        record["prize_pool"] = str(self.prize_pool)
        record["participants"] = [participant.to_record() for participant in self.participants]
        record["finish_error"] = asdict(self.finish_error) if self.finish_error else None
        return record

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Race":
        error_raw = row.get("finish_error")
        finish_error = None
        if isinstance(error_raw, dict) and error_raw.get("message"):
            finish_error = FinishError(at=str(error_raw.get("at") or ""), message=str(error_raw["message"]))

        participants_raw = row.get("participants") or []
        return cls(
            race_id=str(row.get("race_id")),
            track_id=int(row.get("track_id") or 1),
            entry_token=str(row.get("entry_token") or ""),
            entry_fee=int(row.get("entry_fee") or 0),
            creator=str(row.get("creator") or ""),
            status=RaceStatus(row.get("status") or RaceStatus.ACTIVE.value),
            participants=[Participant.from_record(item) for item in participants_raw if isinstance(item, dict)],
            prize_pool=int(row.get("prize_pool") or 0),
            simulation_results=row.get("simulation_results") or None,
            settlement_tx=row.get("settlement_tx") or None,
            finish_error=finish_error,
            settlement_due_at=row.get("settlement_due_at"),
            settlement_claimed_at=row.get("settlement_claimed_at"),
            created_tx=row.get("created_tx"),
            start_tx=row.get("start_tx"),
            started_by=row.get("started_by"),
            cancelled_by=row.get("cancelled_by"),
            on_chain_winners=[str(item) for item in row.get("on_chain_winners") or []],
            prizes=list(row.get("prizes") or []),
            refunds=list(row.get("refunds") or []),
            created_at=row.get("created_at"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            cancelled_at=row.get("cancelled_at"),
            stats_applied=bool(row.get("stats_applied")),
            version=int(row.get("version") or 0),
        )
