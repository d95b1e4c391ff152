"""FastAPI backend for HockeyPikk daily boards.

Endpoints:
- GET  /api/health
- GET  /api/boards/today[?date=YYYY-MM-DD]
  The user's board for the date (created with its default groups on first visit) and picks.
- GET  /api/history?limit=10
  The signed-in user's recent boards with their picks. Outcomes ("did my pick score")
  are resolved lazily from NHL game logs and saved back to the pick rows.
- GET  /api/picks/meta[?date=YYYY-MM-DD]
  Pick window info plus the lock time (first puck drop of the day).
- GET  /api/picks/options
- POST /api/picks
  Save selections for a board, snapshotting each player's season + last-5 stats.
"""

import logging
import os
from datetime import datetime
from typing import Any, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors import UpstreamError
from nhl_stats_client import NhlStatsClient, normalize_player_id
from picks_client import (
    PicksClient,
    build_option_groups,
    build_player_map,
    player_full_name,
    player_line_columns,
)
from reconciliation import BoardReconciler, sort_picks_by_group
from season_utils import get_season_id_for_date, get_today_date_key, parse_date_key
from stats_normalizer import stats_to_pick_columns, to_number
from supabase_store import StoreResult, SupabaseStore, format_schema_error, store_from_env
from teams import get_team_name

app = FastAPI(title="HockeyPikk API", version="0.1.0")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger("hockeypikk_api")

CORS_ORIGIN = os.getenv("CORS_ORIGIN", "http://localhost:5173")
SOURCE_TIME_ZONE = "America/Edmonton"  # picks provider publishes wall-clock times here
DISPLAY_TIME_ZONE = os.getenv("DISPLAY_TIME_ZONE", "America/New_York")
MAX_HISTORY_LIMIT = 50
DEFAULT_HISTORY_LIMIT = 10

BOARD_COLUMNS = "id, board_date, status, lock_at, created_at"
STATS_COLUMNS = (
    "season_games_played, season_goals, season_assists, season_points, season_shots, "
    "season_pp_points, season_shooting_pct, season_avg_toi, season_faceoff_pct, "
    "last5_games, last5_goals, last5_points, last5_shots"
)
PICK_COLUMNS = (
    "id, player_name, team_code, team_name, opponent_team_code, opponent_team_name, "
    f"position, line, pp_line, {STATS_COLUMNS}, is_locked, board_group_id, nhl_player_id, "
    "board_groups (label, sort_order)"
)
HISTORY_PICK_COLUMNS = f"{PICK_COLUMNS}, board_id, game_goals, game_played, game_updated_at"
BOARD_WITH_GROUPS_COLUMNS = f"{BOARD_COLUMNS}, created_by, board_groups (id, label, sort_order)"
DEFAULT_GROUP_LABELS = ["Group 1", "Group 2", "Group 3"]
UNIQUE_VIOLATION = "23505"  # Postgres unique_violation

app.add_middleware(
    CORSMiddleware,
    allow_origins=[CORS_ORIGIN],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.stats_client = NhlStatsClient()
app.state.picks_client = PicksClient()
app.state.store = store_from_env()


# ---------- Dependencies ----------

def get_stats_client(request: Request) -> NhlStatsClient:
    return request.app.state.stats_client


def get_picks_client(request: Request) -> PicksClient:
    return request.app.state.picks_client


def require_store(request: Request) -> SupabaseStore:
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=500, detail="Supabase is not configured.")
    return store


def _extract_authorization_token(header_val: Optional[str]) -> Optional[str]:
    if not header_val:
        return None
    parts = header_val.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def require_user(
    authorization: Optional[str] = Header(None),
    store: SupabaseStore = Depends(require_store),
) -> dict:
    """Resolve the bearer token to a Supabase user or raise 401."""
    token = _extract_authorization_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing auth token.")
    result = store.get_user(token)
    if result.error is not None or not result.data:
        raise HTTPException(status_code=401, detail="Invalid auth token.")
    return result.data


def get_reconciler(
    store: SupabaseStore = Depends(require_store),
    stats_client: NhlStatsClient = Depends(get_stats_client),
) -> BoardReconciler:
    return BoardReconciler(stats_client, store=store)


# ---------- Helpers ----------

def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _format_time_label(value: datetime, zone_name: str = DISPLAY_TIME_ZONE) -> Optional[str]:
    zone = _zone(zone_name)
    if zone is None:
        return None
    local = value.astimezone(zone)
    return local.strftime("%I:%M %p").lstrip("0")


def _lock_time_label(lock_time: Optional[str]) -> Optional[str]:
    """Lock time (UTC ISO) as a display label, e.g. '7:00 PM'."""
    if not lock_time:
        return None
    try:
        parsed = datetime.fromisoformat(lock_time.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return _format_time_label(parsed)


def _available_time_label(value: Optional[str]) -> Optional[str]:
    """dateTimeAvailable is wall-clock time in the provider's zone with no offset."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        try:
            parsed = datetime.strptime(value[:16], "%Y-%m-%dT%H:%M")
        except ValueError:
            return None
    source_zone = _zone(SOURCE_TIME_ZONE)
    if source_zone is None:
        return None
    return _format_time_label(parsed.replace(tzinfo=source_zone))


def _first_row(result) -> Optional[dict]:
    rows = result.data or []
    return rows[0] if rows else None


def _history_limit(raw: Optional[str]) -> int:
    """?limit= as an int in 1..MAX_HISTORY_LIMIT; non-numeric falls back to the default."""
    value = to_number(raw)
    if value is None:
        return DEFAULT_HISTORY_LIMIT
    return int(min(max(value, 1), MAX_HISTORY_LIMIT))


def _with_sorted_groups(board: Optional[dict]) -> Optional[dict]:
    if board is None:
        return None
    groups = board.get("board_groups") or []
    ordered = sorted(groups, key=lambda g: (g.get("sort_order") is None, g.get("sort_order") or 0))
    return {**board, "board_groups": ordered}


def _fetch_board(store: SupabaseStore, filters) -> StoreResult:
    result = store.select("boards", BOARD_WITH_GROUPS_COLUMNS, filters=filters, limit=1)
    if result.error is not None:
        return result
    return StoreResult(_with_sorted_groups(_first_row(result)))


def _fetch_board_for_date(store: SupabaseStore, user_id, date_key: str) -> StoreResult:
    return _fetch_board(store, [("created_by", "eq", user_id), ("board_date", "eq", date_key)])


def _create_board_with_groups(store: SupabaseStore, user_id, date_key: str) -> StoreResult:
    """Insert a draft board plus the default groups, then read it back with its groups."""
    created = store.insert(
        "boards",
        {"board_date": date_key, "created_by": user_id, "status": "draft"},
        returning="id, board_date, status, lock_at, created_by",
    )
    if created.error is not None:
        return created
    board = _first_row(created)
    if board is None:
        return StoreResult(None)

    groups = [
        {"board_id": board["id"], "label": label, "sort_order": index}
        for index, label in enumerate(DEFAULT_GROUP_LABELS)
    ]
    groups_result = store.insert("board_groups", groups, returning="id")
    if groups_result.error is not None:
        return StoreResult(board, groups_result.error)

    reread = _fetch_board(store, [("id", "eq", board["id"])])
    if reread.error is not None:
        return StoreResult(board, reread.error)
    return reread


# ---------- Request models ----------

class Selection(BaseModel):
    boardGroupId: Any = None
    playerId: Any = None


class SavePicksPayload(BaseModel):
    boardId: Any = None
    selections: Optional[List[Selection]] = None


# ---------- Routes ----------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info("REQUEST %s %s", request.method, request.url.path)
    response = await call_next(request)
    logger.info("RESPONSE %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/boards/today")
def board_for_date(
    date_param: Optional[str] = Query(None, alias="date", description="YYYY-MM-DD, defaults to today."),
    user: dict = Depends(require_user),
    store: SupabaseStore = Depends(require_store),
):
    user_id = user["id"]
    date_key = date_param if parse_date_key(date_param) else get_today_date_key()

    found = _fetch_board_for_date(store, user_id, date_key)
    if found.error is not None:
        raise HTTPException(status_code=500, detail=format_schema_error(found.error))
    board = found.data

    if board is None:
        created = _create_board_with_groups(store, user_id, date_key)
        if created.error is None:
            board = created.data
        elif created.error.code == UNIQUE_VIOLATION:
            # a concurrent request created it first
            logger.info("Board for %s on %s already exists; re-reading", user_id, date_key)
            retry = _fetch_board_for_date(store, user_id, date_key)
            if retry.error is not None:
                raise HTTPException(status_code=500, detail=format_schema_error(retry.error))
            board = retry.data
        else:
            raise HTTPException(status_code=500, detail=format_schema_error(created.error))

    if board is None:
        raise HTTPException(status_code=500, detail="Unable to load today's board.")

    picks_result = store.select(
        "picks",
        PICK_COLUMNS,
        filters=[("board_id", "eq", board["id"]), ("user_id", "eq", user_id)],
    )
    if picks_result.error is not None:
        raise HTTPException(status_code=500, detail=format_schema_error(picks_result.error))

    return {"board": board, "picks": sort_picks_by_group(picks_result.data)}


@app.get("/api/history")
def history(
    limit_param: Optional[str] = Query(None, alias="limit", description="Boards to return (clamped to 1-50)."),
    user: dict = Depends(require_user),
    store: SupabaseStore = Depends(require_store),
    reconciler: BoardReconciler = Depends(get_reconciler),
):
    limit = _history_limit(limit_param)
    user_id = user["id"]

    boards_result = store.select(
        "boards",
        BOARD_COLUMNS,
        filters=[("created_by", "eq", user_id)],
        order="board_date.desc",
        limit=limit,
    )
    if boards_result.error is not None:
        raise HTTPException(status_code=500, detail=format_schema_error(boards_result.error))
    boards = boards_result.data or []
    if not boards:
        return {"boards": []}

    picks_result = store.select(
        "picks",
        HISTORY_PICK_COLUMNS,
        filters=[
            ("board_id", "in", [board["id"] for board in boards]),
            ("user_id", "eq", user_id),
        ],
    )
    if picks_result.error is not None:
        raise HTTPException(status_code=500, detail=format_schema_error(picks_result.error))

    result = reconciler.reconcile(boards, picks_result.data or [], today_key=get_today_date_key())
    if not result.ok:
        # outcomes are retried on the next read; still return what we computed
        return JSONResponse(
            status_code=500,
            content={"detail": result.write_errors[0].message, "boards": result.boards},
        )
    return {"boards": result.boards}


@app.get("/api/picks/meta")
def picks_meta(
    date_param: Optional[str] = Query(None, alias="date", description="YYYY-MM-DD, defaults to today."),
    picks_client: PicksClient = Depends(get_picks_client),
    stats_client: NhlStatsClient = Depends(get_stats_client),
):
    try:
        data = picks_client.get_picks()
    except UpstreamError as e:
        raise HTTPException(status_code=502, detail=str(e))

    date_key = (date_param or "").strip() or get_today_date_key()
    lock_time = stats_client.get_first_game_start_time(date_key)
    date_time_available = data.get("dateTimeAvailable") or None
    return {
        "dateTimeAvailable": date_time_available,
        "season": data.get("season") or None,
        "seasonType": data.get("seasonType") or None,
        "lockTime": lock_time,
        "lockTimeLabel": _lock_time_label(lock_time) or _available_time_label(date_time_available),
    }


@app.get("/api/picks/options")
def picks_options(
    user: dict = Depends(require_user),
    picks_client: PicksClient = Depends(get_picks_client),
):
    try:
        data = picks_client.get_picks()
    except UpstreamError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "dateTimeAvailable": data.get("dateTimeAvailable") or None,
        "season": data.get("season") or None,
        "seasonType": data.get("seasonType") or None,
        "groups": build_option_groups(data),
    }


@app.post("/api/picks")
def save_picks(
    payload: SavePicksPayload,
    user: dict = Depends(require_user),
    store: SupabaseStore = Depends(require_store),
    picks_client: PicksClient = Depends(get_picks_client),
    stats_client: NhlStatsClient = Depends(get_stats_client),
):
    if payload.boardId is None or payload.selections is None:
        raise HTTPException(status_code=400, detail="boardId and selections are required.")
    user_id = user["id"]
    board_id = payload.boardId

    board_result = store.select(
        "boards",
        "id, status, board_date",
        filters=[("id", "eq", board_id), ("created_by", "eq", user_id)],
        limit=1,
    )
    if board_result.error is not None:
        raise HTTPException(status_code=500, detail=format_schema_error(board_result.error))
    board = _first_row(board_result)
    if board is None:
        raise HTTPException(status_code=404, detail="Board not found.")
    if board.get("status") == "locked":
        raise HTTPException(status_code=400, detail="Board is locked.")

    groups_result = store.select("board_groups", "id, label, sort_order", filters=[("board_id", "eq", board_id)])
    if groups_result.error is not None:
        raise HTTPException(status_code=500, detail=format_schema_error(groups_result.error))
    group_ids = {group["id"] for group in groups_result.data or []}

    try:
        pick_data = picks_client.get_picks()
    except UpstreamError as e:
        raise HTTPException(status_code=502, detail=str(e))
    player_map = build_player_map(pick_data.get("playerLists"))

    rows = []
    for selection in payload.selections:
        if selection.boardGroupId not in group_ids:
            continue
        player_id = normalize_player_id(selection.playerId)
        player = player_map.get(player_id) if player_id is not None else None
        if not player:
            continue
        team_code = player.get("team") or ""
        opponent_code = player.get("opponentTeam") or None
        stats = stats_client.get_player_stats(player["nhlPlayerId"])
        rows.append(
            {
                "board_id": board_id,
                "board_group_id": selection.boardGroupId,
                "user_id": user_id,
                "nhl_player_id": player["nhlPlayerId"],
                "player_name": player_full_name(player),
                "team_code": team_code,
                "team_name": get_team_name(team_code),
                "opponent_team_code": opponent_code,
                "opponent_team_name": get_team_name(opponent_code) if opponent_code else None,
                "position": player.get("position") or None,
                **player_line_columns(player),
                "game_goals": None,
                "game_played": None,
                "game_updated_at": None,
                "is_locked": False,
                **stats_to_pick_columns(stats),
            }
        )

    if not rows:
        raise HTTPException(status_code=400, detail="No valid picks selected.")

    saved_result = store.upsert("picks", rows, on_conflict="board_group_id,user_id", returning=PICK_COLUMNS)
    if saved_result.error is not None:
        raise HTTPException(status_code=500, detail=format_schema_error(saved_result.error))

    season_id = get_season_id_for_date(board.get("board_date"))
    picks = []
    for pick in saved_result.data or []:
        record = None
        if season_id and pick.get("team_code") and pick.get("opponent_team_code"):
            record = stats_client.get_team_record_vs_opponent(
                pick["team_code"], pick["opponent_team_code"], season_id
            )
        picks.append({**pick, "opponent_record": record.as_dict() if record is not None else None})
    return {"picks": picks}
