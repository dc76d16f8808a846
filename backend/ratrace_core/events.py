"""Inbound contract events.

Deliveries arrive either in the canonical envelope::

    {"event_name": "RaceStarted", "transaction_hash": "0x..", "parameters": {...}}

or in the older shape::

    {"event": {"name": "RaceStarted", "args": {...}}, "transaction": {"hash": "0x..", "blockNumber": ".."}}

Both are translated to the canonical dict at the boundary and validated
into one of the typed events below.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from web3 import Web3

from .errors import EventValidationError

logger = logging.getLogger(__name__)

RACE_CREATED = "RaceCreated"
RACER_ENTERED = "RacerEntered"
RACE_STARTED = "RaceStarted"
RACE_FINISHED = "RaceFinished"
RACE_CANCELLED = "RaceCancelled"

KNOWN_EVENTS = (RACE_CREATED, RACER_ENTERED, RACE_STARTED, RACE_FINISHED, RACE_CANCELLED)


def _checksum(value: str) -> str:
    try:
        return Web3.to_checksum_address(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid address {value!r}") from exc


def _uint_string(value: Any) -> str:
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"expected an unsigned integer, got {value!r}")
    return str(int(text))


class _Parameters(BaseModel):
    race_id: str = Field(alias="raceId")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("race_id", mode="before")
    @classmethod
    def _race_id(cls, value: Any) -> str:
        return _uint_string(value)


class RaceCreatedParameters(_Parameters):
    creator: str
    track_id: int = Field(alias="trackId", ge=1)
    entry_token: str = Field(alias="entryToken")
    entry_fee: int = Field(alias="entryFee", gt=0)

    @field_validator("creator", "entry_token")
    @classmethod
    def _address(cls, value: str) -> str:
        return _checksum(value)


class RacerEnteredParameters(_Parameters):
    racer: str
    rat_token_id: str = Field(alias="ratTokenId")

    @field_validator("racer")
    @classmethod
    def _address(cls, value: str) -> str:
        return _checksum(value)

    @field_validator("rat_token_id", mode="before")
    @classmethod
    def _token(cls, value: Any) -> str:
        return _uint_string(value)


class RaceStartedParameters(_Parameters):
    started_by: Optional[str] = Field(default=None, alias="startedBy")

    @field_validator("started_by")
    @classmethod
    def _address(cls, value: Optional[str]) -> Optional[str]:
        return _checksum(value) if value else None


class RaceFinishedParameters(_Parameters):
    winning_rat_token_ids: List[str] = Field(default_factory=list, alias="winningRatTokenIds")
    winners: List[str] = Field(default_factory=list)
    prizes: List[int] = Field(default_factory=list)

    @field_validator("winning_rat_token_ids", mode="before")
    @classmethod
    def _tokens(cls, value: Any) -> List[str]:
        return [_uint_string(item) for item in value or []]

    @field_validator("winners")
    @classmethod
    def _addresses(cls, value: List[str]) -> List[str]:
        return [_checksum(item) for item in value]


class RaceCancelledParameters(_Parameters):
    cancelled_by: Optional[str] = Field(default=None, alias="cancelledBy")

    @field_validator("cancelled_by")
    @classmethod
    def _address(cls, value: Optional[str]) -> Optional[str]:
        return _checksum(value) if value else None


class _Envelope(BaseModel):
    transaction_hash: str = ""
    block_number: Optional[int] = None
    contract_address: Optional[str] = None
    network: Optional[str] = None
    timestamp: Optional[str] = None
    transaction_from: Optional[str] = None


class RaceCreatedEvent(_Envelope):
    event_name: Literal["RaceCreated"]
    parameters: RaceCreatedParameters


class RacerEnteredEvent(_Envelope):
    event_name: Literal["RacerEntered"]
    parameters: RacerEnteredParameters


class RaceStartedEvent(_Envelope):
    event_name: Literal["RaceStarted"]
    parameters: RaceStartedParameters


class RaceFinishedEvent(_Envelope):
    event_name: Literal["RaceFinished"]
    parameters: RaceFinishedParameters


class RaceCancelledEvent(_Envelope):
    event_name: Literal["RaceCancelled"]
    parameters: RaceCancelledParameters


ContractEvent = Annotated[
    Union[RaceCreatedEvent, RacerEnteredEvent, RaceStartedEvent, RaceFinishedEvent, RaceCancelledEvent],
    Field(discriminator="event_name"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(ContractEvent)


def decode_payload(raw_body: bytes) -> Dict[str, Any]:
    """Decode a verified body into the canonical envelope dict."""

    try:
        data = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise EventValidationError("Body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise EventValidationError("Event payload must be a JSON object")
    return normalize_payload(data)


def normalize_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    if "event_name" in data:
        return data

    legacy_event = data.get("event")
    if not isinstance(legacy_event, dict):
        raise EventValidationError("Event payload has neither 'event_name' nor 'event'")

    transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else {}
    network = data.get("network")
    block_raw = transaction.get("blockNumber")
    try:
        block_number = int(block_raw) if block_raw not in (None, "") else None
    except (TypeError, ValueError):
        block_number = None

    return {
        "event_name": legacy_event.get("name") or "",
        "transaction_hash": transaction.get("hash") or "",
        "block_number": block_number,
        "network": str(network.get("chainId")) if isinstance(network, dict) and network.get("chainId") else None,
        "parameters": legacy_event.get("args") or {},
    }


def event_name_of(payload: Dict[str, Any]) -> str:
    return str(payload.get("event_name") or "")


def parse_event(payload: Dict[str, Any], expected: Optional[str] = None) -> Optional[ContractEvent]:
    """Validate a canonical payload.

    Returns None when the event is not one this service handles (or not the
    ``expected`` one), so shared endpoints can skip it. Raises
    EventValidationError when a handled event is malformed.
    """

    name = event_name_of(payload)
    if name not in KNOWN_EVENTS or (expected and name != expected):
        logger.info("Skipping event %r (expected %s)", name, expected or "any lifecycle event")
        return None

    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise EventValidationError(f"Malformed {name} event: {errors}") from exc
