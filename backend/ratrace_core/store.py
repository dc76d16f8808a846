from __future__ import annotations

import datetime as dt
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from .errors import StoreError
from .models import Race, RaceStatus

logger = logging.getLogger(__name__)

READ_ATTEMPTS = 3
READ_BACKOFF_SECONDS = 0.5
STATS_WRITE_ATTEMPTS = 5

RAT_COUNTERS = ("wins", "placed", "losses", "xp")
WALLET_COUNTERS = ("total_races", "total_wins")


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _unchanged_filters(row: Dict[str, Any], fields: Sequence[str]) -> Dict[str, str]:
    """PostgREST filters matching only a row whose ``fields`` still hold the read values."""

    return {name: "is.null" if row.get(name) is None else f"eq.{row.get(name)}" for name in fields}


def _rat_result_update(rat: Dict[str, Any], race_id: str, position: int) -> Optional[Dict[str, Any]]:
    history = [str(item) for item in rat.get("race_history") or []]
    if race_id in history:
        return None

    wins = int(rat.get("wins") or 0)
    placed = int(rat.get("placed") or 0)
    losses = int(rat.get("losses") or 0)
    xp = int(rat.get("xp") or 0)
    if position == 1:
        wins += 1
        xp += 100
    elif position in (2, 3):
        placed += 1
        xp += 50
    else:
        losses += 1
        xp += 10

    return {
        "wins": wins,
        "placed": placed,
        "losses": losses,
        "xp": xp,
        "level": wins // 10 + placed // 20 + 1,
        "race_history": history + [race_id],
    }


def _new_wallet(address: str) -> Dict[str, Any]:
    return {
        "address": address,
        "total_races": 0,
        "total_wins": 0,
        "race_history": [],
        "created_at": utc_now_iso(),
    }


def _wallet_result_update(wallet: Dict[str, Any], race_id: str, won: bool) -> Optional[Dict[str, Any]]:
    history = [str(item) for item in wallet.get("race_history") or []]
    if race_id in history:
        return None
    return {
        "total_races": int(wallet.get("total_races") or 0) + 1,
        "total_wins": int(wallet.get("total_wins") or 0) + (1 if won else 0),
        "race_history": history + [race_id],
    }


class RaceStore:
    """Durable race, rat and wallet records in Supabase, or local JSON files.

    Every mutation that participates in the race lifecycle is conditional:
    it names the race id, the version that was read and (optionally) the
    statuses it expects, and returns None when another writer got there
    first.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or (Path(__file__).parent.parent / "data")

        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.supabase_races_table = os.getenv("SUPABASE_RACES_TABLE", "races")
        self.supabase_rats_table = os.getenv("SUPABASE_RATS_TABLE", "rats")
        self.supabase_wallets_table = os.getenv("SUPABASE_WALLETS_TABLE", "wallets")
        self.timeout = 10.0

        self.local_races_path = self.data_dir / "races_local.json"
        self.local_rats_path = self.data_dir / "rats_local.json"
        self.local_wallets_path = self.data_dir / "wallets_local.json"
        self._lock = threading.RLock()

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Races

    def find_race(self, race_id: str) -> Optional[Race]:
        if not self.uses_supabase:
            row = self._read_json_file(self.local_races_path, {}).get(str(race_id))
            return Race.from_record(row) if isinstance(row, dict) else None

        rows = self._get_rows(
            self.supabase_races_table,
            {"select": "*", "race_id": f"eq.{race_id}", "limit": 1},
        )
        return Race.from_record(rows[0]) if rows else None

    def create_race(self, race: Race) -> tuple[Race, bool]:
        """Insert a race unless one with the same id exists.

        Returns the stored race and whether this call created it.
        """

        record = race.to_record()
        record["created_at"] = record.get("created_at") or utc_now_iso()

        if not self.uses_supabase:
            with self._lock:
                races = self._read_json_file(self.local_races_path, {})
                existing = races.get(race.race_id)
                if isinstance(existing, dict):
                    return Race.from_record(existing), False
                races[race.race_id] = record
                self._write_json_file(self.local_races_path, races)
            return Race.from_record(record), True

        rows = self._write_rows(
            "POST",
            self.supabase_races_table,
            {"on_conflict": "race_id", "select": "*"},
            record,
            prefer="resolution=ignore-duplicates,return=representation",
        )
        if rows:
            return Race.from_record(rows[0]), True
        existing_race = self.find_race(race.race_id)
        if existing_race is None:
            raise StoreError(f"Race {race.race_id} was neither created nor found")
        return existing_race, False

    def upsert_race(self, race: Race) -> Race:
        record = race.to_record()
        if not self.uses_supabase:
            with self._lock:
                races = self._read_json_file(self.local_races_path, {})
                races[race.race_id] = record
                self._write_json_file(self.local_races_path, races)
            return Race.from_record(record)

        rows = self._write_rows(
            "POST",
            self.supabase_races_table,
            {"on_conflict": "race_id", "select": "*"},
            record,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not rows:
            raise StoreError(f"Unexpected response when upserting race {race.race_id}")
        return Race.from_record(rows[0])

    def update_race_if(
        self,
        race: Race,
        changes: Dict[str, Any],
        expected_statuses: Sequence[RaceStatus] | None = None,
        require_null: Iterable[str] = (),
    ) -> Optional[Race]:
        """Apply ``changes`` only if the stored race still matches ``race``.

        The precondition is the version that was read, plus the expected
        statuses and any fields that must still be null. On success the
        version is bumped and the new race is returned; otherwise None.
        """

        require_null = tuple(require_null)
        payload = dict(changes)
        if isinstance(payload.get("status"), RaceStatus):
            payload["status"] = payload["status"].value
        payload["version"] = race.version + 1

        if not self.uses_supabase:
            with self._lock:
                races = self._read_json_file(self.local_races_path, {})
                current = races.get(race.race_id)
                if not isinstance(current, dict):
                    return None
                if int(current.get("version") or 0) != race.version:
                    return None
                if expected_statuses and current.get("status") not in {status.value for status in expected_statuses}:
                    return None
                if any(current.get(field) not in (None, "") for field in require_null):
                    return None
                current.update(payload)
                races[race.race_id] = current
                self._write_json_file(self.local_races_path, races)
            return Race.from_record(current)

        params: Dict[str, Any] = {
            "race_id": f"eq.{race.race_id}",
            "version": f"eq.{race.version}",
            "select": "*",
        }
        if expected_statuses:
            params["status"] = "in.(" + ",".join(status.value for status in expected_statuses) + ")"
        for field in require_null:
            params[field] = "is.null"

        rows = self._write_rows("PATCH", self.supabase_races_table, params, payload, prefer="return=representation")
        return Race.from_record(rows[0]) if rows else None

    def list_races(
        self,
        statuses: Sequence[RaceStatus] | None = None,
        limit: int | None = None,
        newest_first: bool = True,
        stats_pending: bool = False,
    ) -> List[Race]:
        if not self.uses_supabase:
            rows = [row for row in self._read_json_file(self.local_races_path, {}).values() if isinstance(row, dict)]
            if statuses:
                wanted = {status.value for status in statuses}
                rows = [row for row in rows if row.get("status") in wanted]
            if stats_pending:
                rows = [row for row in rows if not row.get("stats_applied")]
            rows.sort(key=lambda row: str(row.get("created_at") or ""), reverse=newest_first)
            if limit is not None:
                rows = rows[:limit]
            return [Race.from_record(row) for row in rows]

        params: Dict[str, Any] = {
            "select": "*",
            "order": "created_at.desc" if newest_first else "created_at.asc",
        }
        if statuses:
            params["status"] = "in.(" + ",".join(status.value for status in statuses) + ")"
        if stats_pending:
            params["stats_applied"] = "not.is.true"
        if limit is not None:
            params["limit"] = limit
        return [Race.from_record(row) for row in self._get_rows(self.supabase_races_table, params)]

    # ------------------------------------------------------------------
    # Rats

    def get_rats(self, token_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        wanted = [str(token_id) for token_id in token_ids]
        if not wanted:
            return {}

        if not self.uses_supabase:
            rats = self._read_json_file(self.local_rats_path, {})
            return {token_id: rats[token_id] for token_id in wanted if isinstance(rats.get(token_id), dict)}

        rows = self._get_rows(
            self.supabase_rats_table,
            {"select": "*", "token_id": "in.(" + ",".join(wanted) + ")"},
        )
        return {str(row.get("token_id")): row for row in rows}

    def upsert_rat(self, record: Dict[str, Any]) -> Dict[str, Any]:
        token_id = str(record.get("token_id") or "").strip()
        if not token_id:
            raise ValueError("Rat record requires token_id")
        row = {
            "wins": 0,
            "placed": 0,
            "losses": 0,
            "xp": 0,
            "level": 1,
            "current_race_id": None,
            **record,
            "token_id": token_id,
        }

        if not self.uses_supabase:
            with self._lock:
                rats = self._read_json_file(self.local_rats_path, {})
                merged = {**rats.get(token_id, {}), **row}
                rats[token_id] = merged
                self._write_json_file(self.local_rats_path, rats)
            return merged

        rows = self._write_rows(
            "POST",
            self.supabase_rats_table,
            {"on_conflict": "token_id", "select": "*"},
            row,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return rows[0] if rows else row

    def claim_rat(self, token_id: str, race_id: str) -> bool:
        """Atomically mark a rat as racing in ``race_id``.

        Succeeds when the rat is free or already held by the same race.
        """

        token_id = str(token_id)
        if not self.uses_supabase:
            with self._lock:
                rats = self._read_json_file(self.local_rats_path, {})
                rat = rats.get(token_id)
                if not isinstance(rat, dict):
                    rat = {"token_id": token_id, "wins": 0, "placed": 0, "losses": 0, "xp": 0, "level": 1}
                holder = rat.get("current_race_id")
                if holder not in (None, "", race_id):
                    return False
                rat["current_race_id"] = race_id
                rats[token_id] = rat
                self._write_json_file(self.local_rats_path, rats)
            return True

        rows = self._write_rows(
            "PATCH",
            self.supabase_rats_table,
            {
                "token_id": f"eq.{token_id}",
                "or": f"(current_race_id.is.null,current_race_id.eq.{race_id})",
                "select": "token_id",
            },
            {"current_race_id": race_id},
            prefer="return=representation",
        )
        if rows:
            return True

        if self.get_rats([token_id]):
            return False

        # Unknown rat: create its record already holding the lock.
        created = self._write_rows(
            "POST",
            self.supabase_rats_table,
            {"on_conflict": "token_id", "select": "token_id"},
            {"token_id": token_id, "current_race_id": race_id},
            prefer="resolution=ignore-duplicates,return=representation",
        )
        if created:
            return True
        return self.claim_rat(token_id, race_id)

    def release_rat(self, token_id: str, race_id: str) -> bool:
        """Clear the racing flag if it is still held by ``race_id``."""

        token_id = str(token_id)
        if not self.uses_supabase:
            with self._lock:
                rats = self._read_json_file(self.local_rats_path, {})
                rat = rats.get(token_id)
                if not isinstance(rat, dict) or rat.get("current_race_id") != race_id:
                    return False
                rat["current_race_id"] = None
                self._write_json_file(self.local_rats_path, rats)
            return True

        rows = self._write_rows(
            "PATCH",
            self.supabase_rats_table,
            {"token_id": f"eq.{token_id}", "current_race_id": f"eq.{race_id}", "select": "token_id"},
            {"current_race_id": None},
            prefer="return=representation",
        )
        return bool(rows)

    def current_race_of(self, token_id: str) -> Optional[str]:
        rat = self.get_rats([token_id]).get(str(token_id))
        if not rat:
            return None
        return rat.get("current_race_id") or None

    def record_rat_result(self, token_id: str, race_id: str, position: int) -> Optional[Dict[str, Any]]:
        """Count one finish towards a rat's record, once per race id.

        Supabase writes only land if the counters still hold the values that
        were read; a writer that loses re-reads and tries again.
        """

        token_id, race_id = str(token_id), str(race_id)
        if not self.uses_supabase:
            with self._lock:
                rats = self._read_json_file(self.local_rats_path, {})
                rat = rats.get(token_id)
                if not isinstance(rat, dict):
                    logger.warning("Rat %s not found for stats update", token_id)
                    return None
                update = _rat_result_update(rat, race_id, position)
                if update is None:
                    return rat
                rat.update(update)
                self._write_json_file(self.local_rats_path, rats)
            return rat

        for _ in range(STATS_WRITE_ATTEMPTS):
            rat = self.get_rats([token_id]).get(token_id)
            if rat is None:
                logger.warning("Rat %s not found for stats update", token_id)
                return None
            update = _rat_result_update(rat, race_id, position)
            if update is None:
                return rat

            rows = self._write_rows(
                "PATCH",
                self.supabase_rats_table,
                {"token_id": f"eq.{token_id}", "select": "*", **_unchanged_filters(rat, RAT_COUNTERS)},
                update,
                prefer="return=representation",
            )
            if rows:
                return rows[0]
            logger.info("Rat %s changed while recording race %s; retrying", token_id, race_id)
        raise StoreError(f"Rat {token_id} kept changing while recording race {race_id}")

    # ------------------------------------------------------------------
    # Wallets

    def get_wallet(self, address: str) -> Optional[Dict[str, Any]]:
        if not self.uses_supabase:
            wallet = self._read_json_file(self.local_wallets_path, {}).get(address)
            return wallet if isinstance(wallet, dict) else None

        rows = self._get_rows(self.supabase_wallets_table, {"select": "*", "address": f"eq.{address}", "limit": 1})
        return rows[0] if rows else None

    def record_wallet_result(self, address: str, race_id: str, won: bool) -> Dict[str, Any]:
        """Count a race towards a wallet once per race id."""

        race_id = str(race_id)
        if not self.uses_supabase:
            with self._lock:
                wallets = self._read_json_file(self.local_wallets_path, {})
                wallet = wallets.get(address)
                if not isinstance(wallet, dict):
                    wallet = _new_wallet(address)
                update = _wallet_result_update(wallet, race_id, won)
                if update is None:
                    return wallet
                wallets[address] = {**wallet, **update}
                self._write_json_file(self.local_wallets_path, wallets)
            return wallets[address]

        for _ in range(STATS_WRITE_ATTEMPTS):
            wallet = self.get_wallet(address)
            if wallet is None:
                fresh = _new_wallet(address)
                created = self._write_rows(
                    "POST",
                    self.supabase_wallets_table,
                    {"on_conflict": "address", "select": "*"},
                    {**fresh, **(_wallet_result_update(fresh, race_id, won) or {})},
                    prefer="resolution=ignore-duplicates,return=representation",
                )
                if created:
                    return created[0]
                continue

            update = _wallet_result_update(wallet, race_id, won)
            if update is None:
                return wallet
            rows = self._write_rows(
                "PATCH",
                self.supabase_wallets_table,
                {"address": f"eq.{address}", "select": "*", **_unchanged_filters(wallet, WALLET_COUNTERS)},
                update,
                prefer="return=representation",
            )
            if rows:
                return rows[0]
            logger.info("Wallet %s changed while recording race %s; retrying", address, race_id)
        raise StoreError(f"Wallet {address} kept changing while recording race {race_id}")

    # ------------------------------------------------------------------
    # Supabase helpers

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _get_rows(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(include_content_profile=False)

        for attempt in range(1, READ_ATTEMPTS + 1):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.get(endpoint, params=params, headers=headers)
                    response.raise_for_status()
                    rows = response.json()
                break
            except httpx.HTTPStatusError as exc:
                detail = self._extract_supabase_detail(exc.response)
                raise StoreError(f"Supabase query on {table} failed: {detail or exc}") from exc
            except httpx.TransportError as exc:
                if attempt == READ_ATTEMPTS:
                    raise StoreError(f"Supabase unavailable reading {table}: {exc}") from exc
                delay = READ_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning("Supabase read of %s failed (%s); retrying in %.1fs", table, exc, delay)
                time.sleep(delay)

        if not isinstance(rows, list):
            raise StoreError(f"Unexpected payload from Supabase {table} endpoint")
        return [row for row in rows if isinstance(row, dict)]

    def _write_rows(
        self,
        method: str,
        table: str,
        params: Dict[str, Any],
        payload: Any,
        prefer: str,
    ) -> List[Dict[str, Any]]:
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(prefer)
        headers["Content-Type"] = "application/json"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, endpoint, params=params, json=payload, headers=headers)
                response.raise_for_status()
                rows = response.json() if response.content else []
        except httpx.HTTPStatusError as exc:
            detail = self._extract_supabase_detail(exc.response)
            raise StoreError(f"Supabase {method} on {table} failed: {detail or exc}") from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"Supabase unavailable writing {table}: {exc}") from exc

        if isinstance(rows, dict):
            return [rows]
        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, dict)]
        return []

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ------------------------------------------------------------------
    # Local fallback

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            # Defaulting here would let the next write replace every stored record.
            raise StoreError(f"Local data store {path} is unreadable: {exc}") from exc

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreError(f"Failed to write local data store {path}") from exc
