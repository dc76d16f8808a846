"""Race outcome simulation.

Six rats run five 100-unit segments. Each segment speed starts from a
weighted stat score scaled by the bloodline multiplier, then passes through
the bloodline perk, an agility-bounded random variance, stamina-driven
fatigue, the time-of-day window and counter-matchup multipliers. Segment
time is length / speed; the finishing order is ascending total time.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from .models import MAX_PARTICIPANTS, RatStats

logger = logging.getLogger(__name__)

SEGMENTS = 5
SEGMENT_LENGTH = 100.0
DEFAULT_VARIANCE = 0.05

# Canonical stat weighting.
AGILITY_WEIGHT = 0.4
STAMINA_WEIGHT = 0.3
SPEED_WEIGHT = 0.3

FATIGUE_SCALE = 0.15
MIDDAY_HEAT_FATIGUE = 0.10

# Floor that keeps segment times finite for zero-stat rats.
MIN_SPEED = 1e-3


@dataclass
class PerkContext:
    hour: int
    avg_opponent_speed: float
    rng: np.random.Generator


@dataclass
class PerkEffect:
    speed: float
    variance: float = DEFAULT_VARIANCE
    fatigue_resistance: float = 0.0


PerkFn = Callable[[int, float, RatStats, PerkContext], PerkEffect]


def _speed_demon(segment: int, base: float, rat: RatStats, ctx: PerkContext) -> PerkEffect:
    # Explosive start: faster and tighter over the first two segments.
    if segment <= 1:
        return PerkEffect(speed=base * 1.10, variance=0.025)
    return PerkEffect(speed=base)


def _underground_elite(segment: int, base: float, rat: RatStats, ctx: PerkContext) -> PerkEffect:
    if segment >= 3:
        return PerkEffect(speed=base * (1 + (segment - 2) * 0.05), variance=0.04)
    return PerkEffect(speed=base)


def _street_runner(segment: int, base: float, rat: RatStats, ctx: PerkContext) -> PerkEffect:
    bonus = 1.08 if ctx.avg_opponent_speed < 0.85 else 1.0
    return PerkEffect(speed=base * bonus)


def _is_rush_hour(hour: int) -> bool:
    return 7 <= hour <= 9 or 17 <= hour <= 19


def _city_slicker(segment: int, base: float, rat: RatStats, ctx: PerkContext) -> PerkEffect:
    if _is_rush_hour(ctx.hour):
        return PerkEffect(speed=base * 1.12, variance=0.03)
    return PerkEffect(speed=base, variance=0.06)


def _alley_cat(segment: int, base: float, rat: RatStats, ctx: PerkContext) -> PerkEffect:
    return PerkEffect(speed=base, variance=0.03, fatigue_resistance=0.5)


def _sewer_dweller(segment: int, base: float, rat: RatStats, ctx: PerkContext) -> PerkEffect:
    lucky = ctx.rng.random() > 0.85
    return PerkEffect(speed=base * (1.20 if lucky else 0.95), variance=0.12)


@dataclass(frozen=True)
class Bloodline:
    name: str
    multiplier: float
    perk: PerkFn
    counters: Dict[str, float] = field(default_factory=dict)
    description: str = ""
    strong_against: tuple[str, ...] = ()
    weak_against: tuple[str, ...] = ()
    playstyle: str = ""


BLOODLINES: Dict[str, Bloodline] = {
    bloodline.name: bloodline
    for bloodline in (
        Bloodline(
            name="Speed Demon",
            multiplier=1.15,
            perk=_speed_demon,
            counters={"Underground Elite": 0.95, "Alley Cat": 1.05},
            description="Explosive early game, dominates short bursts",
            strong_against=("Alley Cat", "Sewer Dweller"),
            weak_against=("Underground Elite", "Street Runner"),
            playstyle="Explosive early game, dominate before fatigue sets in",
        ),
        Bloodline(
            name="Underground Elite",
            multiplier=1.08,
            perk=_underground_elite,
            counters={"Speed Demon": 1.05, "Sewer Dweller": 0.97},
            description="Clutch performer, dominates final stretch",
            strong_against=("Speed Demon", "City Slicker"),
            weak_against=("Sewer Dweller", "Alley Cat"),
            playstyle="Late game powerhouse, gets stronger as race progresses",
        ),
        Bloodline(
            name="Street Runner",
            multiplier=1.10,
            perk=_street_runner,
            counters={"City Slicker": 1.03, "Speed Demon": 0.95},
            description="Versatile all-rounder, adapts to competition",
            strong_against=("City Slicker", "Speed Demon"),
            weak_against=("Underground Elite", "Alley Cat"),
            playstyle="Adaptive all-rounder, counters weaker competition",
        ),
        Bloodline(
            name="City Slicker",
            multiplier=1.06,
            perk=_city_slicker,
            counters={"Street Runner": 0.97, "Alley Cat": 1.04},
            description="Peak performance during rush hours",
            strong_against=("Alley Cat", "Street Runner"),
            weak_against=("Speed Demon", "Underground Elite"),
            playstyle="Time specialist, dominates during rush hours",
        ),
        Bloodline(
            name="Alley Cat",
            multiplier=1.05,
            perk=_alley_cat,
            counters={"Speed Demon": 0.95, "City Slicker": 0.96},
            description="Steady and reliable, rarely disappoints",
            strong_against=("Speed Demon", "City Slicker"),
            weak_against=("Street Runner", "Underground Elite"),
            playstyle="Consistent performer, reliable in any situation",
        ),
        Bloodline(
            name="Sewer Dweller",
            multiplier=1.02,
            perk=_sewer_dweller,
            counters={"Underground Elite": 1.03, "Street Runner": 1.02},
            description="Chaotic wildcard, unpredictable outcomes",
            strong_against=("Underground Elite", "Street Runner"),
            weak_against=("Speed Demon", "City Slicker"),
            playstyle="Chaotic wildcard, high risk high reward",
        ),
    )
}


@dataclass(frozen=True)
class TimeOfDayWindow:
    name: str
    description: str
    start_hour: int
    end_hour: int

    def adjust(self, rat: RatStats, segment: int) -> float:
        """Multiplier this window applies to one rat's segment speed."""

        fatigue_index = segment / SEGMENTS
        if self.name == "Midday Heat":
            return 1 - fatigue_index * MIDDAY_HEAT_FATIGUE
        if self.name == "Dead of Night" and rat.stamina > 80:
            return 1.05
        if self.name == "Night Racing" and rat.bloodline == "Underground Elite":
            return 1.08
        return 1.0

    @property
    def label(self) -> str:
        return f"{self.name}: {self.description}"


TIME_OF_DAY_WINDOWS: tuple[TimeOfDayWindow, ...] = (
    TimeOfDayWindow("Dead of Night", "Stamina rats perform better, speed rats tire faster", 0, 6),
    TimeOfDayWindow("Morning Rush", "City Slicker bloodline gets +12% speed", 6, 10),
    TimeOfDayWindow("Midday Heat", "All rats experience 10% more fatigue", 10, 16),
    TimeOfDayWindow("Evening Rush", "City Slicker bloodline gets +12% speed, agility matters more", 16, 20),
    TimeOfDayWindow("Night Racing", "Underground Elite rats gain +8% speed, variance reduced", 20, 24),
)


def time_of_day_window(start_time: dt.datetime) -> TimeOfDayWindow:
    hour = start_time.hour
    for window in TIME_OF_DAY_WINDOWS:
        if window.start_hour <= hour < window.end_hour:
            return window
    return TIME_OF_DAY_WINDOWS[-1]


@dataclass
class Composition:
    bloodline_distribution: Dict[str, int]
    avg_stamina: float
    avg_agility: float
    avg_speed: float
    insights: List[str]

    def avg_stats(self) -> Dict[str, float]:
        return {"stamina": self.avg_stamina, "agility": self.avg_agility, "speed": self.avg_speed}


def analyze_composition(rats: Sequence[RatStats]) -> Composition:
    distribution: Dict[str, int] = {}
    for rat in rats:
        distribution[rat.bloodline] = distribution.get(rat.bloodline, 0) + 1

    count = len(rats) or 1
    avg_stamina = sum(rat.stamina for rat in rats) / count
    avg_agility = sum(rat.agility for rat in rats) / count
    avg_speed = sum(rat.speed for rat in rats) / count

    insights: List[str] = []
    for bloodline, bloodline_count in distribution.items():
        if bloodline_count >= 3:
            insights.append(
                f"{bloodline} dominates this race ({bloodline_count}/{len(rats)}) - counter-picks may perform well"
            )

    if avg_stamina > 80:
        insights.append("High-stamina race - late-game bloodlines have advantage")
    elif avg_stamina < 65:
        insights.append("Low-stamina race - early burst strategies favored")
    if avg_speed > 85:
        insights.append("High-speed competition - consistency and agility matter more")
    if avg_agility > 85:
        insights.append("High-agility field - variance control is key")

    return Composition(distribution, avg_stamina, avg_agility, avg_speed, insights)


def base_score(rat: RatStats, bloodline: Optional[Bloodline]) -> float:
    stat_score = (rat.stamina * STAMINA_WEIGHT + rat.agility * AGILITY_WEIGHT + rat.speed * SPEED_WEIGHT) / 100
    return stat_score * (bloodline.multiplier if bloodline else 1.0)


@dataclass
class RatOutcome:
    rat: RatStats
    segment_speeds: List[float]
    segment_times: List[float]

    @property
    def finish_time(self) -> float:
        return sum(self.segment_times)


@dataclass
class SimulationResult:
    race_id: str
    positions: List[str]
    segment_speeds: Dict[str, List[float]]
    segment_times: Dict[str, List[float]]
    finish_times: Dict[str, float]
    winners: Dict[str, Dict[str, Any]]
    analysis: Dict[str, Any]
    seed: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positions": list(self.positions),
            "segmentSpeeds": {key: list(value) for key, value in self.segment_speeds.items()},
            "segmentTimes": {key: list(value) for key, value in self.segment_times.items()},
            "finishTimes": dict(self.finish_times),
            "winners": self.winners,
            "analysis": self.analysis,
            "seed": self.seed,
        }


def simulation_seed(race_id: str, entropy: str) -> str:
    """Stable seed material for a race.

    ``entropy`` should be a value fixed only once the start transaction is
    mined (its hash), so the outcome is reproducible but not predictable
    before the race starts.
    """

    return hashlib.sha256(f"{race_id}:{entropy}".encode("utf-8")).hexdigest()


def rng_for_seed(seed: str) -> np.random.Generator:
    return np.random.default_rng(int(seed, 16))


class RaceSimulator:
    """Runs one race. Pass ``rng`` to control the random draws."""

    def __init__(self, rng: np.random.Generator | None = None) -> None:
        self.rng = rng if rng is not None else np.random.default_rng()

    def simulate(
        self,
        race_id: str,
        rats: Sequence[RatStats],
        start_time: dt.datetime,
        seed: Optional[str] = None,
    ) -> SimulationResult:
        if len(rats) != MAX_PARTICIPANTS:
            raise ValueError(f"A race needs exactly {MAX_PARTICIPANTS} rats, got {len(rats)}")
        token_ids = [rat.token_id for rat in rats]
        if len(set(token_ids)) != len(token_ids):
            raise ValueError("Duplicate rat token ids in race")

        composition = analyze_composition(rats)
        window = time_of_day_window(start_time)
        warnings: List[str] = []

        logger.info(
            "Simulating race %s at hour %s (%s), bloodlines=%s",
            race_id,
            start_time.hour,
            window.name,
            composition.bloodline_distribution,
        )

        ctx = PerkContext(
            hour=start_time.hour,
            avg_opponent_speed=composition.avg_speed / 100,
            rng=self.rng,
        )

        outcomes: List[RatOutcome] = []
        for rat in rats:
            bloodline = BLOODLINES.get(rat.bloodline)
            if bloodline is None:
                message = f"Unknown bloodline '{rat.bloodline}' for rat {rat.token_id}; using neutral profile"
                logger.warning(message)
                warnings.append(message)
            outcomes.append(self._run_rat(rat, bloodline, rats, window, ctx))

        # Stable sort keeps input order on exact ties.
        ordered = sorted(outcomes, key=lambda outcome: outcome.finish_time)
        positions = [outcome.rat.token_id for outcome in ordered]

        logger.info(
            "Race %s finishing order: %s",
            race_id,
            ", ".join(f"{outcome.rat.token_id} ({outcome.finish_time:.2f})" for outcome in ordered),
        )

        return SimulationResult(
            race_id=race_id,
            positions=positions,
            segment_speeds={outcome.rat.token_id: outcome.segment_speeds for outcome in outcomes},
            segment_times={outcome.rat.token_id: outcome.segment_times for outcome in outcomes},
            finish_times={outcome.rat.token_id: outcome.finish_time for outcome in outcomes},
            winners=_winners(ordered),
            analysis={
                "bloodlineDistribution": composition.bloodline_distribution,
                "avgStats": composition.avg_stats(),
                "timeOfDayModifier": window.label,
                "competitiveInsights": composition.insights,
                "warnings": warnings,
            },
            seed=seed,
        )

    def _run_rat(
        self,
        rat: RatStats,
        bloodline: Optional[Bloodline],
        field_rats: Sequence[RatStats],
        window: TimeOfDayWindow,
        ctx: PerkContext,
    ) -> RatOutcome:
        base = base_score(rat, bloodline)
        speeds: List[float] = []
        times: List[float] = []

        for segment in range(SEGMENTS):
            if bloodline is not None:
                effect = bloodline.perk(segment, base, rat, ctx)
            else:
                effect = PerkEffect(speed=base)

            speed = effect.speed

            max_variance = effect.variance * (1 - rat.agility / 200)
            speed *= 1 + self.rng.uniform(-max_variance, max_variance)

            fatigue_index = segment / SEGMENTS
            fatigue_impact = (1 - rat.stamina / 100) * (1 - effect.fatigue_resistance)
            speed *= 1 - fatigue_index * fatigue_impact * FATIGUE_SCALE

            speed *= window.adjust(rat, segment)

            if bloodline is not None:
                for opponent in field_rats:
                    if opponent.token_id == rat.token_id:
                        continue
                    speed *= bloodline.counters.get(opponent.bloodline, 1.0)

            speed = max(float(speed), MIN_SPEED)
            speeds.append(speed)
            times.append(float(SEGMENT_LENGTH / speed))

        return RatOutcome(rat=rat, segment_speeds=speeds, segment_times=times)


def _winners(ordered: Sequence[RatOutcome]) -> Dict[str, Dict[str, Any]]:
    winners: Dict[str, Dict[str, Any]] = {}
    for label, outcome in zip(("first", "second", "third"), ordered):
        winners[label] = {
            "tokenId": outcome.rat.token_id,
            "owner": outcome.rat.owner,
            "name": outcome.rat.name,
            "time": outcome.finish_time,
        }
    return winners


def simulate(
    race_id: str,
    rats: Sequence[RatStats],
    start_time: dt.datetime,
    seed: Optional[str] = None,
) -> SimulationResult:
    """Simulate a race; a seed makes the outcome reproducible."""

    rng = rng_for_seed(seed) if seed else None
    return RaceSimulator(rng=rng).simulate(race_id, rats, start_time, seed=seed)


def bloodline_matchups() -> Dict[str, Dict[str, Any]]:
    return {
        name: {
            "multiplier": bloodline.multiplier,
            "description": bloodline.description,
            "strongAgainst": list(bloodline.strong_against),
            "weakAgainst": list(bloodline.weak_against),
            "playstyle": bloodline.playstyle,
        }
        for name, bloodline in BLOODLINES.items()
    }


@dataclass
class Recommendation:
    recommended: RatStats
    reasoning: List[str]
    win_probability: float


def recommend_rat(
    user_rats: Sequence[RatStats],
    opponent_rats: Sequence[RatStats],
    race_time: dt.datetime,
) -> Recommendation:
    """Pick the best of a user's rats for a field of opponents."""

    if not user_rats:
        raise ValueError("At least one rat is required for a recommendation")

    composition = analyze_composition([*opponent_rats, *user_rats])
    window = time_of_day_window(race_time)

    scored: List[tuple[float, RatStats, List[str]]] = []
    for rat in user_rats:
        bloodline = BLOODLINES.get(rat.bloodline)
        reasons: List[str] = []
        score = (rat.stamina + rat.agility + rat.speed) / 3
        if bloodline:
            score += (bloodline.multiplier - 1) * 100

        favorable = 0
        for opponent in opponent_rats:
            modifier = bloodline.counters.get(opponent.bloodline) if bloodline else None
            if modifier is None:
                continue
            if modifier > 1.0:
                favorable += 1
                score += 10
            elif modifier < 1.0:
                score -= 5
        if favorable:
            reasons.append(f"Strong against {favorable} opponent(s)")

        if "Rush" in window.name and rat.bloodline == "City Slicker":
            score += 15
            reasons.append("Rush hour bonus (+12% speed)")
        if window.name == "Night Racing" and rat.bloodline == "Underground Elite":
            score += 12
            reasons.append("Night racing bonus (+8% speed)")
        if composition.avg_stamina > 80 and rat.stamina > 85:
            score += 8
            reasons.append("High stamina suits this field")
        if composition.avg_speed > 85 and rat.agility > 85:
            score += 8
            reasons.append("High agility for variance control")

        scored.append((score, rat, reasons))

    scored.sort(key=lambda item: item[0], reverse=True)
    best_score, best_rat, best_reasons = scored[0]
    total = sum(item[0] for item in scored)
    probability = min(0.95, max(0.05, best_score / total)) if total > 0 else 0.05
    return Recommendation(recommended=best_rat, reasoning=best_reasons, win_probability=round(probability * 100, 1))
