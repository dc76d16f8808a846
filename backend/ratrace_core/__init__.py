"""Race lifecycle, simulation and settlement used by the API."""

from .config import SettlementMethod, SettlementRole, Settings
from .models import Participant, Race, RaceStatus, RatStats
from .settlement import Outcome, SettlementDriver
from .simulation import RaceSimulator, SimulationResult, simulate
from .store import RaceStore

__all__ = [
    "Outcome",
    "Participant",
    "Race",
    "RaceSimulator",
    "RaceStatus",
    "RaceStore",
    "RatStats",
    "SettlementDriver",
    "SettlementMethod",
    "SettlementRole",
    "Settings",
    "SimulationResult",
    "simulate",
]
