# reconciliation.py
# Fills in "did my pick score" outcomes for historical boards and writes newly
# resolved outcomes back to the pick rows so later requests skip the NHL API.

import enum
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from season_utils import get_season_id_for_date, get_today_date_key, parse_date_key
from supabase_store import format_schema_error

HISTORY_MAX_WORKERS = int(os.getenv("HISTORY_MAX_WORKERS", "8"))
PICKS_TABLE = "picks"

logger = logging.getLogger("reconciliation")


class BoardTiming(enum.Enum):
    PAST = "past"
    TODAY = "today"
    FUTURE = "future"
    INVALID = "invalid"


def classify_board_date(board_date, today_key: str) -> BoardTiming:
    board_day = parse_date_key(board_date)
    today = parse_date_key(today_key)
    if board_day is None or today is None:
        return BoardTiming.INVALID
    if board_day < today:
        return BoardTiming.PAST
    if board_day == today:
        return BoardTiming.TODAY
    return BoardTiming.FUTURE


@dataclass(frozen=True)
class OutcomeUpdate:
    pick_id: Any
    game_goals: int
    game_played: bool
    game_updated_at: str

    def as_row(self) -> dict:
        return {
            "game_goals": self.game_goals,
            "game_played": self.game_played,
            "game_updated_at": self.game_updated_at,
        }


@dataclass(frozen=True)
class PersistError:
    pick_id: Any
    message: str


@dataclass
class ReconciliationResult:
    boards: List[dict]
    updates: List[OutcomeUpdate] = field(default_factory=list)
    write_errors: List[PersistError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.write_errors


@dataclass(frozen=True)
class _BoardContext:
    board_date: Optional[str]
    timing: BoardTiming
    season_id: Optional[str]

    @property
    def can_resolve(self) -> bool:
        return self.timing in (BoardTiming.PAST, BoardTiming.TODAY) and self.season_id is not None


def _is_unresolved(pick: dict) -> bool:
    return pick.get("game_played") is None and pick.get("game_goals") is None


def _group_sort_key(pick: dict):
    group = pick.get("board_groups")
    if isinstance(group, list):
        group = group[0] if group else None
    order = group.get("sort_order") if isinstance(group, dict) else None
    return (order is None, order if order is not None else 0)


def sort_picks_by_group(picks: List[dict]) -> List[dict]:
    """Picks ordered by their board group's sort_order; picks without one go last."""
    return sorted(picks or [], key=_group_sort_key)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BoardReconciler:
    """
    Annotates a user's historical boards with pick outcomes and head-to-head records.

    Outcome states per pick: unresolved (None, None) -> played (goals, True) or
    no game (0, False). Both resolved states are terminal; a pick that already has
    an outcome is never looked up again. "No game" is only recorded once the board
    date is in the past, since today's game may not have started yet.
    """

    def __init__(
        self,
        stats_client,
        store=None,
        max_workers: int = HISTORY_MAX_WORKERS,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.stats_client = stats_client
        self.store = store
        self.max_workers = max(1, max_workers)
        self._now = now

    def reconcile(self, boards: List[dict], picks: List[dict], today_key: Optional[str] = None) -> ReconciliationResult:
        """annotate() then persist(); write failures are reported, not raised."""
        result = self.annotate(boards, picks, today_key=today_key)
        result.write_errors = self.persist(result.updates)
        return result

    def annotate(self, boards: List[dict], picks: List[dict], today_key: Optional[str] = None) -> ReconciliationResult:
        today_key = today_key or get_today_date_key()

        picks_by_board: Dict[Any, List[dict]] = {}
        for pick in picks or []:
            picks_by_board.setdefault(pick.get("board_id"), []).append(pick)

        contexts = []
        jobs: List[Tuple[int, _BoardContext, dict]] = []
        for index, board in enumerate(boards or []):
            board_date = board.get("board_date")
            ctx = _BoardContext(
                board_date=board_date,
                timing=classify_board_date(board_date, today_key),
                season_id=get_season_id_for_date(board_date),
            )
            contexts.append(ctx)
            for pick in sort_picks_by_group(picks_by_board.get(board.get("id"))):
                jobs.append((index, ctx, pick))

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            resolved = list(pool.map(lambda job: self._resolve_pick(job[1], job[2]), jobs))

        annotated = []
        for board, ctx in zip(boards or [], contexts):
            annotated.append({**board, "canResolveResults": ctx.can_resolve, "picks": []})
        updates = []
        for (index, _ctx, _pick), (pick_out, update) in zip(jobs, resolved):
            annotated[index]["picks"].append(pick_out)
            if update is not None:
                updates.append(update)

        return ReconciliationResult(boards=annotated, updates=updates)

    def _resolve_pick(self, ctx: _BoardContext, pick: dict) -> Tuple[dict, Optional[OutcomeUpdate]]:
        out = dict(pick)
        update = None

        if ctx.can_resolve and _is_unresolved(pick):
            outcome = self.stats_client.get_player_goals_for_date(
                pick.get("nhl_player_id"), ctx.board_date, ctx.season_id
            )
            resolved = None
            if outcome is None:
                pass  # data unavailable: try again next request
            elif outcome.played:
                resolved = (outcome.goals, True)
            elif ctx.timing is BoardTiming.PAST:
                resolved = (0, False)

            if resolved is not None:
                updated_at = self._now().isoformat()
                out["game_goals"], out["game_played"] = resolved
                out["game_updated_at"] = updated_at
                if pick.get("id") is not None:
                    update = OutcomeUpdate(pick["id"], resolved[0], resolved[1], updated_at)

        out["opponent_record"] = self._opponent_record(ctx, pick)
        return out, update

    def _opponent_record(self, ctx: _BoardContext, pick: dict) -> Optional[dict]:
        team_code = pick.get("team_code")
        opponent_code = pick.get("opponent_team_code")
        if not team_code or not opponent_code or not ctx.season_id:
            return None
        record = self.stats_client.get_team_record_vs_opponent(team_code, opponent_code, ctx.season_id)
        return record.as_dict() if record is not None else None

    def persist(self, updates: List[OutcomeUpdate]) -> List[PersistError]:
        """Write each resolved outcome to its pick row, concurrently."""
        if not updates:
            return []
        if self.store is None:
            logger.info("No store configured; %d resolved outcome(s) not persisted", len(updates))
            return []

        def write(update: OutcomeUpdate) -> Optional[PersistError]:
            result = self.store.update(PICKS_TABLE, update.as_row(), [("id", "eq", update.pick_id)])
            if result.error is not None:
                return PersistError(update.pick_id, format_schema_error(result.error))
            return None

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            errors = [err for err in pool.map(write, updates) if err is not None]

        for err in errors:
            logger.error("Failed to persist outcome for pick %s: %s", err.pick_id, err.message)
        return errors
