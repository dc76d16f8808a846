from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .models import MAX_PARTICIPANTS, Participant

CREATOR_FEE_PERCENT = 10
PRIZE_PERCENTS = (50, 30, 20)


@dataclass(frozen=True)
class PrizeSplit:
    """Distribution of a prize pool in token base units."""

    total_pool: int
    creator_fee: int
    prizes: tuple[int, ...]

    def prize_for_position(self, position: int) -> int:
        if 1 <= position <= len(self.prizes):
            return self.prizes[position - 1]
        return 0


def compute_prize_split(entry_fee: int, entrants: int = MAX_PARTICIPANTS) -> PrizeSplit:
    if entry_fee < 0:
        raise ValueError("entry_fee must not be negative")
    if entrants < 0 or entrants > MAX_PARTICIPANTS:
        raise ValueError(f"entrants must be between 0 and {MAX_PARTICIPANTS}")

    total = entry_fee * entrants
    creator_fee = total * CREATOR_FEE_PERCENT // 100
    remaining = total - creator_fee
    first = remaining * PRIZE_PERCENTS[0] // 100
    second = remaining * PRIZE_PERCENTS[1] // 100
    # Third place takes the integer remainder so nothing is left unassigned.
    third = remaining - first - second
    prizes = (first, second, third) + (0,) * (MAX_PARTICIPANTS - 3)
    return PrizeSplit(total_pool=total, creator_fee=creator_fee, prizes=prizes)


def prize_table(split: PrizeSplit, positions: Sequence[str], participants: Sequence[Participant]) -> List[Dict[str, Any]]:
    by_token = {participant.rat_token_id: participant for participant in participants}
    rows: List[Dict[str, Any]] = []
    for index, token_id in enumerate(positions, start=1):
        participant = by_token.get(str(token_id))
        rows.append(
            {
                "position": index,
                "ratTokenId": str(token_id),
                "racer": participant.racer_address if participant else "",
                "prize": str(split.prize_for_position(index)),
            }
        )
    return rows
