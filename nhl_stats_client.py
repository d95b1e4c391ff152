# nhl_stats_client.py
# Cached access to the NHL stats API (api-web.nhle.com): player landing stats,
# per-season game logs, head-to-head records and first puck drop per date.

import enum
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, List, NamedTuple, Optional

import requests
from requests.exceptions import RequestException, Timeout

from errors import UpstreamError, UpstreamPayloadError, UpstreamStatusError, UpstreamTimeout
from season_utils import is_valid_season_id, parse_date_key
from stats_normalizer import (
    PLAYOFFS,
    REGULAR_SEASON,
    GameLogEntry,
    HeadToHeadRecord,
    PlayerSeasonStats,
    build_stats_from_landing,
    first_start_time_from_schedule,
    head_to_head_from_schedule,
    parse_game_log,
)
from ttl_cache import MISSING, TtlCache

NHL_API_BASE = os.getenv("NHL_API_BASE", "https://api-web.nhle.com/v1")
NHL_CACHE_TTL_SECONDS = float(os.getenv("NHL_CACHE_TTL_SECONDS", "3600"))  # 1 hour
NHL_HTTP_TIMEOUT_SECONDS = float(os.getenv("NHL_HTTP_TIMEOUT_SECONDS", "10"))
NHL_CACHE_MAX_ENTRIES = int(os.getenv("NHL_CACHE_MAX_ENTRIES", "0")) or None

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Accept": "application/json",
}

logger = logging.getLogger("nhl_stats")


class LookupReason(enum.Enum):
    OK = "ok"
    INVALID_INPUT = "invalid_input"
    UNAVAILABLE = "unavailable"


class Lookup(NamedTuple):
    """A lookup value plus why it is (or is not) there."""

    value: Any
    reason: LookupReason

    @property
    def ok(self) -> bool:
        return self.reason is LookupReason.OK


def _invalid() -> Lookup:
    return Lookup(None, LookupReason.INVALID_INPUT)


def _unavailable() -> Lookup:
    return Lookup(None, LookupReason.UNAVAILABLE)


@dataclass(frozen=True)
class GoalsForDate:
    goals: int
    played: bool
    game_type_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {"goals": self.goals, "played": self.played, "gameTypeId": self.game_type_id}


NO_GAME = GoalsForDate(goals=0, played=False, game_type_id=None)


def normalize_player_id(player_id) -> Optional[int]:
    """Integer player id, or None for anything that is not a finite number."""
    if player_id is None or isinstance(player_id, bool):
        return None
    try:
        num = float(player_id)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(num):
        return None
    return int(num)


class NhlStatsClient:
    """
    Process-wide, time-bounded cache over four NHL API query shapes.

    Every public getter returns None instead of raising when the upstream is down or
    the input is invalid; the matching lookup_* method carries the reason.
    """

    def __init__(
        self,
        base_url: str = NHL_API_BASE,
        ttl_seconds: float = NHL_CACHE_TTL_SECONDS,
        timeout_seconds: float = NHL_HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = NHL_CACHE_MAX_ENTRIES,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        if session is None:
            session = requests.Session()
            session.headers.update(REQUEST_HEADERS)
        self.session = session
        self.stats_cache = TtlCache(ttl_seconds, clock=clock, max_entries=max_entries)
        self.game_log_cache = TtlCache(ttl_seconds, clock=clock, max_entries=max_entries)
        self.record_cache = TtlCache(ttl_seconds, clock=clock, max_entries=max_entries)
        self.puck_drop_cache = TtlCache(ttl_seconds, clock=clock, max_entries=max_entries)

    def clear(self) -> None:
        for cache in (self.stats_cache, self.game_log_cache, self.record_cache, self.puck_drop_cache):
            cache.clear()

    # ---------- HTTP ----------

    def _fetch_json(self, path: str):
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except Timeout as e:
            raise UpstreamTimeout(url, self.timeout_seconds) from e
        except RequestException as e:
            raise UpstreamError(f"Upstream request failed: {e}") from e
        if not 200 <= response.status_code < 300:
            raise UpstreamStatusError(response.status_code, response.text)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Upstream returned invalid JSON: {url}") from e

    def _cached(self, cache: TtlCache, key, path: str, parse: Callable, label: str) -> Lookup:
        cached = cache.get(key)
        if cached is not MISSING:
            return Lookup(cached, LookupReason.OK)
        try:
            value = self._parse(parse, self._fetch_json(path), label)
        except UpstreamError as e:
            logger.warning("%s lookup failed for %s: %s", label, key, e)
            return _unavailable()
        cache.set(key, value)
        return Lookup(value, LookupReason.OK)

    @staticmethod
    def _parse(parse: Callable, payload, label: str):
        # any normalizer failure counts as a malformed payload
        try:
            return parse(payload)
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamPayloadError(f"{label} payload could not be read: {e!r}") from e

    # ---------- Player season stats ----------

    def lookup_player_stats(self, player_id) -> Lookup:
        normalized = normalize_player_id(player_id)
        if normalized is None:
            return _invalid()
        return self._cached(
            self.stats_cache,
            normalized,
            f"player/{normalized}/landing",
            build_stats_from_landing,
            "Player stats",
        )

    def get_player_stats(self, player_id) -> Optional[PlayerSeasonStats]:
        return self.lookup_player_stats(player_id).value

    # ---------- Game logs ----------

    def lookup_game_log(self, player_id, season_id, game_type: int = REGULAR_SEASON) -> Lookup:
        normalized = normalize_player_id(player_id)
        if normalized is None or not is_valid_season_id(season_id):
            return _invalid()
        season = str(season_id)
        return self._cached(
            self.game_log_cache,
            (normalized, season, game_type),
            f"player/{normalized}/game-log/{season}/{game_type}",
            parse_game_log,
            "Game log",
        )

    def get_game_log(self, player_id, season_id, game_type: int = REGULAR_SEASON) -> Optional[List[GameLogEntry]]:
        return self.lookup_game_log(player_id, season_id, game_type).value

    def lookup_player_goals_for_date(self, player_id, date_key, season_id) -> Lookup:
        """
        Goals scored by a player on date_key.

        Searches the regular-season log first, then playoffs. A date missing from every
        log that could be fetched is a confirmed "no game"; if no log could be fetched
        at all the result is unavailable.
        """
        if normalize_player_id(player_id) is None or parse_date_key(date_key) is None:
            return _invalid()
        if not is_valid_season_id(season_id):
            return _invalid()

        fetched_any = False
        for game_type in (REGULAR_SEASON, PLAYOFFS):
            log = self.lookup_game_log(player_id, season_id, game_type)
            if not log.ok:
                continue
            fetched_any = True
            for entry in log.value:
                if entry.date == date_key:
                    return Lookup(GoalsForDate(entry.goals, True, game_type), LookupReason.OK)

        if not fetched_any:
            return _unavailable()
        return Lookup(NO_GAME, LookupReason.OK)

    def get_player_goals_for_date(self, player_id, date_key, season_id) -> Optional[GoalsForDate]:
        return self.lookup_player_goals_for_date(player_id, date_key, season_id).value

    # ---------- Head-to-head ----------

    def lookup_team_record_vs_opponent(self, team_code, opponent_code, season_id) -> Lookup:
        if not isinstance(team_code, str) or not isinstance(opponent_code, str):
            return _invalid()
        team = team_code.strip().upper()
        opponent = opponent_code.strip().upper()
        if not team or not opponent or not is_valid_season_id(season_id):
            return _invalid()
        season = str(season_id)
        return self._cached(
            self.record_cache,
            (team, opponent, season),
            f"club-schedule-season/{team}/{season}",
            lambda payload: head_to_head_from_schedule(payload, team, opponent),
            "Head-to-head",
        )

    def get_team_record_vs_opponent(self, team_code, opponent_code, season_id) -> Optional[HeadToHeadRecord]:
        return self.lookup_team_record_vs_opponent(team_code, opponent_code, season_id).value

    # ---------- First puck drop ----------

    def lookup_first_game_start_time(self, date_key) -> Lookup:
        if parse_date_key(date_key) is None:
            return _invalid()
        return self._cached(
            self.puck_drop_cache,
            date_key,
            f"schedule/{date_key}",
            lambda payload: first_start_time_from_schedule(payload, date_key),
            "Schedule",
        )

    def get_first_game_start_time(self, date_key) -> Optional[str]:
        return self.lookup_first_game_start_time(date_key).value
