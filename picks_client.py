# picks_client.py
# Daily pick lists (player groups) from the Hockey Challenge Helper API.

import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional

import requests
from requests.exceptions import RequestException, Timeout

from errors import UpstreamError, UpstreamStatusError, UpstreamTimeout

HCH_API_BASE = os.getenv("HCH_API_BASE", "https://api.hockeychallengehelper.com/api")
HCH_CACHE_TTL_SECONDS = float(os.getenv("HCH_CACHE_TTL_SECONDS", "300"))  # 5 minutes
HCH_HTTP_TIMEOUT_SECONDS = float(os.getenv("HCH_HTTP_TIMEOUT_SECONDS", "10"))

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Origin": "https://hockeychallengehelper.com",
    "Referer": "https://hockeychallengehelper.com/",
    "Accept": "application/json",
}

logger = logging.getLogger("picks_client")


class PicksClient:
    """Fetches /picks and keeps the whole payload for a short TTL."""

    def __init__(
        self,
        base_url: str = HCH_API_BASE,
        ttl_seconds: float = HCH_CACHE_TTL_SECONDS,
        timeout_seconds: float = HCH_HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        if session is None:
            session = requests.Session()
            session.headers.update(REQUEST_HEADERS)
        self.session = session
        self._clock = clock
        self._cached = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def get_picks(self, force_refresh: bool = False) -> dict:
        """
        Return the picks payload (playerLists, dateTimeAvailable, season, seasonType).

        Raises UpstreamError if the provider is unreachable; there is no stale fallback.
        """
        now = self._clock()
        with self._lock:
            if not force_refresh and self._cached is not None and now - self._cached_at < self.ttl_seconds:
                return self._cached

        url = f"{self.base_url}/picks"
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
        except Timeout as e:
            raise UpstreamTimeout(url, self.timeout_seconds) from e
        except RequestException as e:
            logger.warning("Picks fetch failed: %s", e)
            raise UpstreamError(f"Upstream request failed: {e}") from e
        if not 200 <= response.status_code < 300:
            logger.warning("Picks fetch failed (status=%s)", response.status_code)
            raise UpstreamStatusError(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError("Picks provider returned invalid JSON.") from e
        if not isinstance(data, dict):
            raise UpstreamError("Picks provider returned an unexpected payload.")

        with self._lock:
            self._cached = data
            self._cached_at = now
        return data


def player_full_name(player: dict) -> str:
    full_name = player.get("fullName")
    if full_name:
        return full_name
    return f"{player.get('firstName') or ''} {player.get('lastName') or ''}".strip()


def _as_text(value) -> Optional[str]:
    return None if value is None else str(value)


def build_player_map(player_lists) -> Dict[int, dict]:
    """Players from every list keyed by nhlPlayerId."""
    players = {}
    for player_list in player_lists or []:
        for player in (player_list or {}).get("players") or []:
            if player and player.get("nhlPlayerId"):
                players[player["nhlPlayerId"]] = player
    return players


def build_option_groups(payload: dict) -> List[dict]:
    """Shape playerLists into the groups the pick screen renders."""
    groups = []
    for player_list in payload.get("playerLists") or []:
        groups.append(
            {
                "id": player_list.get("id"),
                "label": f"Group {player_list.get('id')}",
                "players": [
                    {
                        "id": player.get("nhlPlayerId"),
                        "fullName": player_full_name(player),
                        "teamCode": player.get("team"),
                        "opponentTeam": player.get("opponentTeam"),
                        "position": player.get("position"),
                        "line": player.get("line"),
                        "ppLine": player.get("ppLine"),
                        "isUnavailable": player.get("unavailable"),
                    }
                    for player in player_list.get("players") or []
                ],
            }
        )
    return groups


def player_line_columns(player: dict) -> dict:
    """line / pp_line stored as text, None when the provider leaves them out."""
    return {
        "line": _as_text(player.get("line")),
        "pp_line": _as_text(player.get("ppLine")),
    }
