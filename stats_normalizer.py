# stats_normalizer.py
# Schemas for the NHL stats API payloads we read, and the functions that flatten
# them into the records the app stores (season stats, game logs, head-to-head, lock time).

import math
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from errors import UpstreamPayloadError

REGULAR_SEASON = 2
PLAYOFFS = 3
NHL_LEAGUE_ABBREV = "NHL"
FINAL_GAME_STATES = {"FINAL", "OFF"}
OVERTIME_PERIOD_TYPES = {"OT", "SO"}


# ---------- Coercion ----------

def to_number(value) -> Optional[float]:
    """float(value) if it is a finite number, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return num if math.isfinite(num) else None


def to_int(value) -> Optional[int]:
    num = to_number(value)
    if num is None:
        return None
    return int(num)


def _dict_or_none(value):
    return value if isinstance(value, dict) else None


def _dict_rows(value):
    if not isinstance(value, list):
        return []
    return [row for row in value if isinstance(row, dict)]


# ---------- Upstream schemas ----------

class UpstreamModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SubSeasonStats(UpstreamModel):
    gamesPlayed: Any = None
    goals: Any = None
    assists: Any = None
    points: Any = None
    shots: Any = None
    powerPlayPoints: Any = None
    shootingPctg: Any = None


class RegularSeasonBlock(UpstreamModel):
    subSeason: Optional[SubSeasonStats] = None

    @field_validator("subSeason", mode="before")
    @classmethod
    def _sub_season(cls, value):
        return _dict_or_none(value)


class FeaturedStats(UpstreamModel):
    season: Any = None
    regularSeason: Optional[RegularSeasonBlock] = None

    @field_validator("regularSeason", mode="before")
    @classmethod
    def _regular_season(cls, value):
        return _dict_or_none(value)


class SeasonTotalsRow(UpstreamModel):
    leagueAbbrev: Any = None
    gameTypeId: Any = None
    season: Any = None
    avgToi: Any = None
    faceoffWinningPctg: Any = None


class RecentGame(UpstreamModel):
    goals: Any = None
    points: Any = None
    shots: Any = None


class PlayerLanding(UpstreamModel):
    featuredStats: Optional[FeaturedStats] = None
    seasonTotals: List[SeasonTotalsRow] = []
    last5Games: List[RecentGame] = []

    @field_validator("featuredStats", mode="before")
    @classmethod
    def _featured(cls, value):
        return _dict_or_none(value)

    @field_validator("seasonTotals", "last5Games", mode="before")
    @classmethod
    def _rows(cls, value):
        return _dict_rows(value)


class GameLogRow(UpstreamModel):
    gameDate: Any = None
    goals: Any = None


class GameLogPayload(UpstreamModel):
    gameLog: List[GameLogRow] = []

    @field_validator("gameLog", mode="before")
    @classmethod
    def _rows(cls, value):
        return _dict_rows(value)


class TeamSide(UpstreamModel):
    abbrev: Any = None
    score: Any = None


class GameOutcome(UpstreamModel):
    lastPeriodType: Any = None


class ScheduleGame(UpstreamModel):
    id: Any = None
    gameDate: Any = None
    gameType: Any = None
    gameState: Any = None
    startTimeUTC: Any = None
    homeTeam: Optional[TeamSide] = None
    awayTeam: Optional[TeamSide] = None
    gameOutcome: Optional[GameOutcome] = None

    @field_validator("homeTeam", "awayTeam", "gameOutcome", mode="before")
    @classmethod
    def _nested(cls, value):
        return _dict_or_none(value)


class ClubSchedulePayload(UpstreamModel):
    games: List[ScheduleGame] = []

    @field_validator("games", mode="before")
    @classmethod
    def _rows(cls, value):
        return _dict_rows(value)


class ScheduleDay(UpstreamModel):
    date: Any = None
    games: List[ScheduleGame] = []

    @field_validator("games", mode="before")
    @classmethod
    def _rows(cls, value):
        return _dict_rows(value)


class DaySchedulePayload(UpstreamModel):
    gameWeek: List[ScheduleDay] = []

    @field_validator("gameWeek", mode="before")
    @classmethod
    def _rows(cls, value):
        return _dict_rows(value)


def validate_payload(model, payload):
    """Validate raw JSON against a schema; shape errors become UpstreamPayloadError."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise UpstreamPayloadError(
            f"Unexpected {model.__name__} payload ({e.error_count()} error(s))"
        ) from e


# ---------- Records ----------

@dataclass(frozen=True)
class PlayerSeasonStats:
    season_games_played: Optional[int] = None
    season_goals: Optional[int] = None
    season_assists: Optional[int] = None
    season_points: Optional[int] = None
    season_shots: Optional[int] = None
    season_pp_points: Optional[int] = None
    season_shooting_pct: Optional[float] = None
    season_avg_toi: Optional[str] = None
    season_faceoff_pct: Optional[float] = None
    last5_games: Optional[int] = None
    last5_goals: Optional[int] = None
    last5_points: Optional[int] = None
    last5_shots: Optional[int] = None

    def as_pick_columns(self) -> dict:
        return asdict(self)


def stats_to_pick_columns(stats: Optional[PlayerSeasonStats]) -> dict:
    """Pick row columns for a stats snapshot; all None when stats are unavailable."""
    if stats is None:
        return {f.name: None for f in fields(PlayerSeasonStats)}
    return stats.as_pick_columns()


@dataclass(frozen=True)
class GameLogEntry:
    date: str
    goals: int


@dataclass(frozen=True)
class HeadToHeadRecord:
    wins: int = 0
    losses: int = 0
    ot_losses: int = 0

    @property
    def games(self) -> int:
        return self.wins + self.losses + self.ot_losses

    def as_dict(self) -> dict:
        return {"wins": self.wins, "losses": self.losses, "otLosses": self.ot_losses}


# ---------- Normalizers ----------

def _season_totals_row(rows: List[SeasonTotalsRow], season_id) -> Optional[SeasonTotalsRow]:
    season = to_int(season_id)
    if season is None:
        return None
    for row in rows:
        if (
            row.leagueAbbrev == NHL_LEAGUE_ABBREV
            and to_int(row.gameTypeId) == REGULAR_SEASON
            and to_int(row.season) == season
        ):
            return row
    return None


def build_stats_from_landing(payload) -> PlayerSeasonStats:
    """
    Flatten a /player/{id}/landing payload into PlayerSeasonStats.

    Season totals (avg TOI, faceoff %) come from the NHL regular-season row of the
    featured season; last-5 totals are summed over however many games are listed.
    """
    landing = validate_payload(PlayerLanding, payload)

    featured = landing.featuredStats
    season_id = featured.season if featured else None
    regular = featured.regularSeason if featured else None
    sub = (regular.subSeason if regular else None) or SubSeasonStats()
    totals = _season_totals_row(landing.seasonTotals, season_id)

    last5 = landing.last5Games
    last5_goals = sum(to_int(g.goals) or 0 for g in last5)
    last5_points = sum(to_int(g.points) or 0 for g in last5)
    last5_shots = sum(to_int(g.shots) or 0 for g in last5)

    avg_toi = None
    if totals is not None and totals.avgToi:
        avg_toi = str(totals.avgToi)

    return PlayerSeasonStats(
        season_games_played=to_int(sub.gamesPlayed),
        season_goals=to_int(sub.goals),
        season_assists=to_int(sub.assists),
        season_points=to_int(sub.points),
        season_shots=to_int(sub.shots),
        season_pp_points=to_int(sub.powerPlayPoints),
        season_shooting_pct=to_number(sub.shootingPctg),
        season_avg_toi=avg_toi,
        season_faceoff_pct=to_number(totals.faceoffWinningPctg) if totals else None,
        last5_games=len(last5),
        last5_goals=last5_goals,
        last5_points=last5_points,
        last5_shots=last5_shots,
    )


def parse_game_log(payload) -> List[GameLogEntry]:
    log = validate_payload(GameLogPayload, payload)
    entries = []
    for row in log.gameLog:
        if not isinstance(row.gameDate, str) or not row.gameDate:
            continue
        entries.append(GameLogEntry(date=row.gameDate[:10], goals=to_int(row.goals) or 0))
    return entries


def _abbrev(side: Optional[TeamSide]) -> str:
    if side is None or not isinstance(side.abbrev, str):
        return ""
    return side.abbrev.upper()


def head_to_head_from_schedule(payload, team_code: str, opponent_code: str) -> HeadToHeadRecord:
    """
    Count a team's finished regular-season results against one opponent.

    Losses decided in OT or a shootout count as OT losses.
    """
    schedule = validate_payload(ClubSchedulePayload, payload)
    team = (team_code or "").upper()
    opponent = (opponent_code or "").upper()

    seen = set()
    wins = losses = ot_losses = 0
    for game in schedule.games:
        if to_int(game.gameType) != REGULAR_SEASON:
            continue
        if str(game.gameState or "").upper() not in FINAL_GAME_STATES:
            continue

        home, away = _abbrev(game.homeTeam), _abbrev(game.awayTeam)
        if home == team and away == opponent:
            ours, theirs = game.homeTeam, game.awayTeam
        elif away == team and home == opponent:
            ours, theirs = game.awayTeam, game.homeTeam
        else:
            continue

        our_score, their_score = to_int(ours.score), to_int(theirs.score)
        if our_score is None or their_score is None:
            continue

        if isinstance(game.id, (int, str)):
            key = game.id
        else:
            key = (str(game.gameDate), home, away)
        if key in seen:
            continue
        seen.add(key)

        if our_score > their_score:
            wins += 1
            continue
        period_type = game.gameOutcome.lastPeriodType if game.gameOutcome else None
        if str(period_type or "").upper() in OVERTIME_PERIOD_TYPES:
            ot_losses += 1
        else:
            losses += 1

    return HeadToHeadRecord(wins=wins, losses=losses, ot_losses=ot_losses)


def _parse_utc(value) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def first_start_time_from_schedule(payload, date_key: str) -> Optional[str]:
    """Earliest regular-season/playoff start time (UTC ISO string) on date_key."""
    schedule = validate_payload(DaySchedulePayload, payload)
    earliest = None
    earliest_raw = None
    for day in schedule.gameWeek:
        if day.date != date_key:
            continue
        for game in day.games:
            if to_int(game.gameType) not in (REGULAR_SEASON, PLAYOFFS):
                continue
            start = _parse_utc(game.startTimeUTC)
            if start is None or start.tzinfo is None:
                continue
            if earliest is None or start < earliest:
                earliest = start
                earliest_raw = game.startTimeUTC
    return earliest_raw
