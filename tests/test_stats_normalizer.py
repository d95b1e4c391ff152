import pytest

from errors import UpstreamPayloadError
from stats_normalizer import (
    HeadToHeadRecord,
    build_stats_from_landing,
    first_start_time_from_schedule,
    head_to_head_from_schedule,
    parse_game_log,
    stats_to_pick_columns,
    to_int,
    to_number,
)


def landing_payload(**overrides):
    payload = {
        "featuredStats": {
            "season": 20232024,
            "regularSeason": {
                "subSeason": {
                    "gamesPlayed": 41,
                    "goals": 24,
                    "assists": 30,
                    "points": 54,
                    "shots": 150,
                    "powerPlayPoints": 20,
                    "shootingPctg": 0.16,
                }
            },
        },
        "seasonTotals": [
            {"leagueAbbrev": "OHL", "gameTypeId": 2, "season": 20232024, "avgToi": "99:99"},
            {"leagueAbbrev": "NHL", "gameTypeId": 3, "season": 20232024, "avgToi": "25:00"},
            {"leagueAbbrev": "NHL", "gameTypeId": 2, "season": 20222023, "avgToi": "20:00"},
            {
                "leagueAbbrev": "NHL",
                "gameTypeId": 2,
                "season": 20232024,
                "avgToi": "21:14",
                "faceoffWinningPctg": 0.523,
            },
        ],
        "last5Games": [
            {"goals": 1, "points": 2, "shots": 4},
            {"goals": 0, "points": 1, "shots": 3},
            {"goals": 2, "points": 2, "shots": 5},
        ],
    }
    payload.update(overrides)
    return payload


def test_landing_with_short_last5_list():
    stats = build_stats_from_landing(landing_payload())
    assert stats.season_games_played == 41
    assert stats.season_goals == 24
    assert stats.season_shooting_pct == pytest.approx(0.16)
    assert stats.last5_games == 3
    assert stats.last5_goals == 3
    assert stats.last5_points == 5
    assert stats.last5_shots == 12


def test_season_totals_row_matches_nhl_regular_season_of_featured_season():
    stats = build_stats_from_landing(landing_payload())
    assert stats.season_avg_toi == "21:14"
    assert stats.season_faceoff_pct == pytest.approx(0.523)


def test_missing_featured_season_nulls_season_totals():
    payload = landing_payload()
    del payload["featuredStats"]["season"]
    stats = build_stats_from_landing(payload)
    assert stats.season_avg_toi is None
    assert stats.season_faceoff_pct is None
    assert stats.season_goals == 24


def test_empty_landing_is_all_nulls_with_zero_last5():
    stats = build_stats_from_landing({})
    assert stats.season_goals is None
    assert stats.season_avg_toi is None
    assert stats.last5_games == 0
    assert stats.last5_goals == 0


def test_malformed_fields_coerce_to_none():
    payload = landing_payload(last5Games="not-a-list", seasonTotals=None)
    payload["featuredStats"]["regularSeason"]["subSeason"].update(
        {"goals": "abc", "shots": float("nan"), "shootingPctg": float("inf"), "points": "54"}
    )
    stats = build_stats_from_landing(payload)
    assert stats.season_goals is None
    assert stats.season_shots is None
    assert stats.season_shooting_pct is None
    assert stats.season_points == 54
    assert stats.last5_games == 0
    assert stats.season_avg_toi is None


def test_non_object_landing_is_a_payload_error():
    with pytest.raises(UpstreamPayloadError):
        build_stats_from_landing(["nope"])


def test_coercion_helpers():
    assert to_number("1.5") == 1.5
    assert to_number(None) is None
    assert to_number(True) is None
    assert to_number("NaN") is None
    assert to_int(3.9) == 3
    assert to_int(-3.9) == -3
    assert to_int("x") is None
    assert to_int(float("inf")) is None


def test_pick_columns_for_missing_stats():
    columns = stats_to_pick_columns(None)
    assert columns["season_goals"] is None
    assert columns["last5_shots"] is None
    assert len(columns) == 13


def test_parse_game_log():
    entries = parse_game_log(
        {
            "gameLog": [
                {"gameDate": "2024-01-08", "goals": 2},
                {"gameDate": "2024-01-10"},
                {"goals": 1},
            ]
        }
    )
    assert [(e.date, e.goals) for e in entries] == [("2024-01-08", 2), ("2024-01-10", 0)]


def game(game_id, home, away, home_score, away_score, period="REG", game_type=2, state="OFF"):
    return {
        "id": game_id,
        "gameType": game_type,
        "gameState": state,
        "homeTeam": {"abbrev": home, "score": home_score},
        "awayTeam": {"abbrev": away, "score": away_score},
        "gameOutcome": {"lastPeriodType": period},
    }


def club_schedule():
    return {
        "games": [
            game(1, "TOR", "BOS", 4, 1),  # win
            game(2, "BOS", "TOR", 3, 2, period="OT"),  # OT loss
            game(3, "BOS", "TOR", 2, 1, period="SO"),  # SO loss
            game(4, "TOR", "BOS", 0, 3),  # regulation loss
            game(4, "TOR", "BOS", 0, 3),  # duplicate row
            game(5, "TOR", "BOS", 5, 0, game_type=1),  # preseason
            game(6, "TOR", "BOS", 2, 1, game_type=3),  # playoffs
            game(7, "TOR", "BOS", None, None, state="FUT"),  # not played yet
            game(8, "TOR", "MTL", 3, 2),  # other opponent
            game(9, "BOS", "TOR", 1, 6, state="FINAL"),  # win
        ]
    }


def test_head_to_head_classification():
    record = head_to_head_from_schedule(club_schedule(), "tor", "bos")
    assert record == HeadToHeadRecord(wins=2, losses=1, ot_losses=2)
    assert record.as_dict() == {"wins": 2, "losses": 1, "otLosses": 2}


def test_head_to_head_counts_each_finished_regular_season_game_once():
    record = head_to_head_from_schedule(club_schedule(), "TOR", "BOS")
    # games 1, 2, 3, 4 and 9
    assert record.games == 5


def test_head_to_head_without_games():
    assert head_to_head_from_schedule({"games": []}, "TOR", "BOS") == HeadToHeadRecord()


def test_first_start_time_picks_earliest_on_that_date():
    payload = {
        "gameWeek": [
            {
                "date": "2024-01-08",
                "games": [
                    {"gameType": 2, "startTimeUTC": "2024-01-09T00:30:00Z"},
                    {"gameType": 2, "startTimeUTC": "2024-01-09T00:00:00Z"},
                    {"gameType": 1, "startTimeUTC": "2024-01-08T17:00:00Z"},
                    {"gameType": 2, "startTimeUTC": "not-a-time"},
                ],
            },
            {"date": "2024-01-09", "games": [{"gameType": 2, "startTimeUTC": "2024-01-08T01:00:00Z"}]},
        ]
    }
    assert first_start_time_from_schedule(payload, "2024-01-08") == "2024-01-09T00:00:00Z"


def test_first_start_time_includes_playoffs_and_handles_empty_days():
    payload = {"gameWeek": [{"date": "2024-05-01", "games": [{"gameType": 3, "startTimeUTC": "2024-05-01T23:00:00Z"}]}]}
    assert first_start_time_from_schedule(payload, "2024-05-01") == "2024-05-01T23:00:00Z"
    assert first_start_time_from_schedule(payload, "2024-05-02") is None


def test_huge_integers_coerce_to_none():
    assert to_number(10**400) is None
    assert to_int(-(10**400)) is None
    payload = landing_payload()
    payload["featuredStats"]["regularSeason"]["subSeason"]["goals"] = 10**400
    payload["last5Games"] = [{"goals": 10**400, "points": 1, "shots": 2}]
    stats = build_stats_from_landing(payload)
    assert stats.season_goals is None
    assert stats.last5_goals == 0
    assert stats.last5_points == 1


def test_head_to_head_with_unhashable_game_ids():
    first = game({"x": 1}, "TOR", "BOS", 3, 1)
    first["gameDate"] = "2024-01-08"
    second = game([2], "BOS", "TOR", 2, 1)
    second["gameDate"] = "2024-01-10"
    record = head_to_head_from_schedule({"games": [first, second, dict(first)]}, "TOR", "BOS")
    assert record == HeadToHeadRecord(wins=1, losses=1, ot_losses=0)
