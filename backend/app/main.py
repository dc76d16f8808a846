from __future__ import annotations

import datetime as dt
import hmac
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from ratrace_core import RaceStatus, RaceStore, RatStats, SettlementDriver, Settings
from ratrace_core.chain import RaceContract, Web3RaceContract
from ratrace_core.errors import (
    ConfigurationError,
    EventValidationError,
    RaceError,
    RaceNotFoundError,
    RaceStateError,
    SettlementError,
    StoreError,
    WebhookAuthError,
)
from ratrace_core.events import (
    RACE_CANCELLED,
    RACE_CREATED,
    RACE_FINISHED,
    RACE_STARTED,
    RACER_ENTERED,
    decode_payload,
    event_name_of,
    parse_event,
)
from ratrace_core.models import Race
from ratrace_core.signature import SIGNATURE_HEADER, require_valid_signature
from ratrace_core.simulation import bloodline_matchups, recommend_rat

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings.validate()
    except ConfigurationError:
        logger.critical("Refusing to start: missing configuration %s", ", ".join(settings.missing()))
        raise
    logger.info(
        "Settlement service ready (role=%s, method=%s, delay=%ss, store=%s)",
        settings.settlement_role.value,
        settings.settlement_method.value,
        settings.settlement_delay_seconds,
        "supabase" if store().uses_supabase else "local",
    )
    yield


app = FastAPI(title="Rat Race Settlement API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ParticipantModel(BaseModel):
    racer_address: str = Field(alias="racerAddress")
    rat_token_id: str = Field(alias="ratTokenId")
    entered_at: str = Field(default="", alias="enteredAt")
    finish_position: Optional[int] = Field(default=None, alias="finishPosition")

    model_config = ConfigDict(populate_by_name=True)


class FinishErrorModel(BaseModel):
    at: str
    message: str


class RaceModel(BaseModel):
    race_id: str = Field(alias="raceId")
    track_id: int = Field(alias="trackId")
    entry_token: str = Field(alias="entryToken")
    entry_fee: str = Field(alias="entryFee")
    creator: str
    status: str
    participants: List[ParticipantModel]
    prize_pool: str = Field(alias="prizePool")
    simulation_results: Optional[Dict[str, Any]] = Field(default=None, alias="simulationResults")
    settlement_tx: Optional[str] = Field(default=None, alias="settlementTx")
    finish_error: Optional[FinishErrorModel] = Field(default=None, alias="finishError")
    settlement_due_at: Optional[str] = Field(default=None, alias="settlementDueAt")
    prizes: List[Dict[str, Any]] = Field(default_factory=list)
    refunds: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    cancelled_at: Optional[str] = Field(default=None, alias="cancelledAt")
    stats_applied: bool = Field(default=False, alias="statsApplied")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_race(cls, race: Race) -> "RaceModel":
        return cls(
            race_id=race.race_id,
            track_id=race.track_id,
            entry_token=race.entry_token,
            entry_fee=str(race.entry_fee),
            creator=race.creator,
            status=race.status.value,
            participants=[
                ParticipantModel(
                    racer_address=participant.racer_address,
                    rat_token_id=participant.rat_token_id,
                    entered_at=participant.entered_at,
                    finish_position=participant.finish_position,
                )
                for participant in race.participants
            ],
            prize_pool=str(race.prize_pool),
            simulation_results=race.simulation_results,
            settlement_tx=race.settlement_tx,
            finish_error=(
                FinishErrorModel(at=race.finish_error.at, message=race.finish_error.message)
                if race.finish_error
                else None
            ),
            settlement_due_at=race.settlement_due_at,
            prizes=race.prizes,
            refunds=race.refunds,
            created_at=race.created_at,
            started_at=race.started_at,
            completed_at=race.completed_at,
            cancelled_at=race.cancelled_at,
            stats_applied=race.stats_applied,
        )


class RaceListResponse(BaseModel):
    active: List[RaceModel]
    completed: List[RaceModel]


class WebhookResponse(BaseModel):
    success: bool = True
    skipped: bool = False
    event: str = ""
    action: Optional[str] = None
    race_id: Optional[str] = Field(default=None, alias="raceId")
    status: Optional[str] = None
    message: str = ""

    model_config = ConfigDict(populate_by_name=True)


class ReconcileResponse(BaseModel):
    checked: int
    finished: int
    failed: int
    pending: int
    stats_recovered: int = 0
    errors: List[str]


class RatStatsPayload(BaseModel):
    token_id: str = Field(alias="tokenId")
    owner: str = ""
    stamina: int = Field(ge=50, le=100)
    agility: int = Field(ge=50, le=100)
    speed: int = Field(ge=50, le=100)
    bloodline: str
    name: str = ""

    model_config = ConfigDict(populate_by_name=True)

    def to_stats(self) -> RatStats:
        return RatStats(
            token_id=self.token_id,
            owner=self.owner,
            stamina=self.stamina,
            agility=self.agility,
            speed=self.speed,
            bloodline=self.bloodline,
            name=self.name,
        )


class RecommendationRequest(BaseModel):
    user_rats: List[RatStatsPayload] = Field(alias="userRats", min_length=1)
    opponent_rats: List[RatStatsPayload] = Field(default_factory=list, alias="opponentRats")
    race_time: Optional[dt.datetime] = Field(default=None, alias="raceTime")

    model_config = ConfigDict(populate_by_name=True)


class RecommendationResponse(BaseModel):
    token_id: str = Field(alias="tokenId")
    bloodline: str
    reasoning: List[str]
    win_probability: float = Field(alias="winProbability")

    model_config = ConfigDict(populate_by_name=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def store() -> RaceStore:
    return RaceStore(data_dir=get_settings().data_dir)


@lru_cache(maxsize=1)
def chain_client() -> Web3RaceContract:
    return Web3RaceContract.from_settings(get_settings())


def get_store() -> RaceStore:
    return store()


def get_contract(settings: Settings = Depends(get_settings)) -> Optional[RaceContract]:
    if settings.missing(require_chain=True):
        return None
    return chain_client()


def get_driver(
    settings: Settings = Depends(get_settings),
    race_store: RaceStore = Depends(get_store),
    contract: Optional[RaceContract] = Depends(get_contract),
) -> SettlementDriver:
    return SettlementDriver(store=race_store, settings=settings, contract=contract)


def require_operator(
    authorization: str = Header(default=""),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.reconcile_token:
        raise HTTPException(status_code=503, detail="RECONCILE_TOKEN is not configured")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization token is required")

    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token.encode("utf-8"), settings.reconcile_token.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid authentication token")


def _http_error(exc: RaceError) -> HTTPException:
    if isinstance(exc, WebhookAuthError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, EventValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RaceNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RaceStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (StoreError, SettlementError)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


async def _process_webhook(
    request: Request,
    settings: Settings,
    driver: SettlementDriver,
    expected: Optional[str] = None,
) -> WebhookResponse:
    raw_body = await request.body()
    try:
        require_valid_signature(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            settings.webhook_secret_bytes,
            request.headers,
            max_age_minutes=settings.webhook_max_age_minutes,
        )
        payload = decode_payload(raw_body)
        event = parse_event(payload, expected=expected)
        if event is None:
            name = event_name_of(payload)
            return WebhookResponse(skipped=True, event=name, message=f"Event {name or 'unknown'} not handled here")
        outcome = await run_in_threadpool(driver.handle, event)
    except RaceError as exc:
        if not isinstance(exc, (WebhookAuthError, EventValidationError)):
            logger.warning("Webhook %s failed: %s", expected or "contract", exc)
        raise _http_error(exc) from exc

    return WebhookResponse(
        event=event.event_name,
        action=outcome.action,
        race_id=outcome.race.race_id if outcome.race else None,
        status=outcome.race.status.value if outcome.race else None,
        message=outcome.message,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/webhooks/contract", response_model=WebhookResponse)
async def contract_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    driver: SettlementDriver = Depends(get_driver),
):
    return await _process_webhook(request, settings, driver)


@app.post("/api/race-created", response_model=WebhookResponse)
async def race_created_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    driver: SettlementDriver = Depends(get_driver),
):
    return await _process_webhook(request, settings, driver, expected=RACE_CREATED)


@app.post("/api/racer-entered", response_model=WebhookResponse)
async def racer_entered_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    driver: SettlementDriver = Depends(get_driver),
):
    return await _process_webhook(request, settings, driver, expected=RACER_ENTERED)


@app.post("/api/race-started", response_model=WebhookResponse)
async def race_started_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    driver: SettlementDriver = Depends(get_driver),
):
    return await _process_webhook(request, settings, driver, expected=RACE_STARTED)


@app.post("/api/race-finished", response_model=WebhookResponse)
async def race_finished_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    driver: SettlementDriver = Depends(get_driver),
):
    return await _process_webhook(request, settings, driver, expected=RACE_FINISHED)


@app.post("/api/race-cancelled", response_model=WebhookResponse)
async def race_cancelled_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    driver: SettlementDriver = Depends(get_driver),
):
    return await _process_webhook(request, settings, driver, expected=RACE_CANCELLED)


@app.get("/races", response_model=RaceListResponse)
def list_races(
    completedLimit: int = Query(default=20, alias="completedLimit", ge=0, le=100),
    race_store: RaceStore = Depends(get_store),
):
    try:
        active = race_store.list_races([RaceStatus.ACTIVE, RaceStatus.FULL, RaceStatus.STARTED])
        completed = race_store.list_races([RaceStatus.FINISHED], limit=completedLimit)
    except StoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceListResponse(
        active=[RaceModel.from_race(race) for race in active],
        completed=[RaceModel.from_race(race) for race in completed],
    )


@app.get("/races/{race_id}", response_model=RaceModel)
def get_race(race_id: str, race_store: RaceStore = Depends(get_store)):
    try:
        race = race_store.find_race(race_id)
    except StoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if race is None:
        raise HTTPException(status_code=404, detail=f"Race {race_id} not found")
    return RaceModel.from_race(race)


@app.get("/bloodlines")
def bloodlines() -> dict:
    return {"bloodlines": bloodline_matchups()}


@app.post("/recommendations", response_model=RecommendationResponse)
def recommendations(payload: RecommendationRequest):
    race_time = payload.race_time or dt.datetime.now(dt.timezone.utc)
    try:
        result = recommend_rat(
            [rat.to_stats() for rat in payload.user_rats],
            [rat.to_stats() for rat in payload.opponent_rats],
            race_time,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RecommendationResponse(
        token_id=result.recommended.token_id,
        bloodline=result.recommended.bloodline,
        reasoning=result.reasoning,
        win_probability=result.win_probability,
    )


@app.post(
    "/settlements/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_operator)],
)
def reconcile_settlements(driver: SettlementDriver = Depends(get_driver)):
    try:
        summary = driver.reconcile()
    except RaceError as exc:
        raise _http_error(exc) from exc
    return ReconcileResponse(**summary)
