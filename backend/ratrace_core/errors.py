from __future__ import annotations


class RaceError(Exception):
    """Base class for settlement pipeline failures."""


class WebhookAuthError(RaceError):
    """Signature missing, malformed, mismatched or outside the replay window."""


class EventValidationError(RaceError, ValueError):
    """An event addressed to us is malformed or not actionable."""


class RaceNotFoundError(RaceError, LookupError):
    def __init__(self, race_id: str) -> None:
        super().__init__(f"Race not found: {race_id}")
        self.race_id = race_id


class RaceStateError(RaceError):
    """Requested transition is not allowed from the race's current status."""


class RatAlreadyRacingError(RaceStateError):
    def __init__(self, token_id: str, current_race_id: str) -> None:
        super().__init__(f"Rat {token_id} is already racing in race {current_race_id}")
        self.token_id = token_id
        self.current_race_id = current_race_id


class ConfigurationError(RaceError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__("Missing required configuration: " + ", ".join(missing))
        self.missing = list(missing)


class SettlementError(RaceError):
    """On-chain settlement could not be submitted or was reverted."""


class StoreError(RaceError, RuntimeError):
    """The race store could not be reached or returned an unexpected payload."""
