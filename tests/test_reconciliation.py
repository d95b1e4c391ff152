from datetime import datetime, timezone

from fakes import FakeResponse, FakeSession, FakeStatsClient, FakeStore
from nhl_stats_client import NO_GAME, GoalsForDate, NhlStatsClient
from reconciliation import BoardReconciler, BoardTiming, classify_board_date
from stats_normalizer import HeadToHeadRecord
from supabase_store import StoreError

TODAY = "2024-01-09"
FIXED_NOW = datetime(2024, 1, 9, 18, 0, tzinfo=timezone.utc)


def make_pick(pick_id, board_id, player_id, sort_order=0, **fields):
    pick = {
        "id": pick_id,
        "board_id": board_id,
        "nhl_player_id": player_id,
        "team_code": "TOR",
        "opponent_team_code": "BOS",
        "game_goals": None,
        "game_played": None,
        "board_groups": {"label": f"Group {sort_order + 1}", "sort_order": sort_order},
    }
    pick.update(fields)
    return pick


def make_reconciler(stats, store=None):
    return BoardReconciler(stats, store=store, max_workers=4, now=lambda: FIXED_NOW)


def test_classify_board_date():
    assert classify_board_date("2024-01-08", TODAY) is BoardTiming.PAST
    assert classify_board_date("2024-01-09", TODAY) is BoardTiming.TODAY
    assert classify_board_date("2024-01-10", TODAY) is BoardTiming.FUTURE
    assert classify_board_date("bad", TODAY) is BoardTiming.INVALID


def test_played_game_is_recorded_and_queued_for_update():
    stats = FakeStatsClient(goals={(8478402, "2024-01-08"): GoalsForDate(2, True, 2)})
    boards = [{"id": "b1", "board_date": "2024-01-08"}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "b1", 8478402)], today_key=TODAY)

    pick = result.boards[0]["picks"][0]
    assert pick["game_goals"] == 2
    assert pick["game_played"] is True
    assert result.boards[0]["canResolveResults"] is True
    assert [(u.pick_id, u.game_goals, u.game_played) for u in result.updates] == [("p1", 2, True)]
    assert stats.goal_calls == [(8478402, "2024-01-08", "20232024")]


def test_no_game_yesterday_is_confirmed():
    stats = FakeStatsClient(goals={(1, "2024-01-08"): NO_GAME})
    boards = [{"id": "b1", "board_date": "2024-01-08"}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    pick = result.boards[0]["picks"][0]
    assert (pick["game_goals"], pick["game_played"]) == (0, False)
    assert len(result.updates) == 1


def test_no_game_today_stays_unresolved():
    stats = FakeStatsClient(goals={(1, TODAY): NO_GAME})
    boards = [{"id": "b1", "board_date": TODAY}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    pick = result.boards[0]["picks"][0]
    assert pick["game_goals"] is None and pick["game_played"] is None
    assert result.updates == []
    assert result.boards[0]["canResolveResults"] is True


def test_game_played_today_is_recorded():
    stats = FakeStatsClient(goals={(1, TODAY): GoalsForDate(1, True, 2)})
    boards = [{"id": "b1", "board_date": TODAY}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    assert result.boards[0]["picks"][0]["game_played"] is True
    assert len(result.updates) == 1


def test_unavailable_data_is_left_for_next_pass():
    stats = FakeStatsClient(goals={})
    boards = [{"id": "b1", "board_date": "2024-01-02"}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    pick = result.boards[0]["picks"][0]
    assert pick["game_goals"] is None and pick["game_played"] is None
    assert result.updates == []


def test_resolved_outcomes_are_terminal():
    # upstream now says 3 goals, but the stored outcome wins
    stats = FakeStatsClient(goals={(1, "2024-01-08"): GoalsForDate(3, True, 2)})
    boards = [{"id": "b1", "board_date": "2024-01-08"}]
    picks = [
        make_pick("p1", "b1", 1, game_goals=1, game_played=True),
        make_pick("p2", "b1", 1, sort_order=1, game_goals=0, game_played=False),
    ]
    result = make_reconciler(stats).annotate(boards, picks, today_key=TODAY)
    out = result.boards[0]["picks"]
    assert (out[0]["game_goals"], out[0]["game_played"]) == (1, True)
    assert (out[1]["game_goals"], out[1]["game_played"]) == (0, False)
    assert stats.goal_calls == []
    assert result.updates == []


def test_future_boards_pass_through():
    stats = FakeStatsClient(records={("TOR", "BOS"): HeadToHeadRecord(1, 0, 0)})
    boards = [{"id": "b1", "board_date": "2024-01-10"}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    board = result.boards[0]
    assert board["canResolveResults"] is False
    assert board["picks"][0]["game_played"] is None
    assert board["picks"][0]["opponent_record"] == {"wins": 1, "losses": 0, "otLosses": 0}
    assert stats.goal_calls == []


def test_invalid_board_date_is_unresolvable():
    stats = FakeStatsClient()
    boards = [{"id": "b1", "board_date": None}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    assert result.boards[0]["canResolveResults"] is False
    assert result.boards[0]["picks"][0]["opponent_record"] is None
    assert stats.goal_calls == [] and stats.record_calls == []


def test_head_to_head_attached_every_pass_even_when_resolved():
    stats = FakeStatsClient(records={("TOR", "BOS"): HeadToHeadRecord(2, 1, 1)})
    boards = [{"id": "b1", "board_date": "2024-01-08"}]
    picks = [
        make_pick("p1", "b1", 1, game_goals=1, game_played=True),
        make_pick("p2", "b1", 2, sort_order=1, opponent_team_code=None),
    ]
    reconciler = make_reconciler(stats)
    for _ in range(2):
        result = reconciler.annotate(boards, picks, today_key=TODAY)
        out = result.boards[0]["picks"]
        assert out[0]["opponent_record"] == {"wins": 2, "losses": 1, "otLosses": 1}
        assert out[1]["opponent_record"] is None
    assert stats.record_calls == [("TOR", "BOS", "20232024")] * 2


def test_picks_grouped_by_board_and_ordered_by_group():
    stats = FakeStatsClient()
    boards = [{"id": "b2", "board_date": "2024-01-10"}, {"id": "b1", "board_date": "2024-01-11"}]
    picks = [
        make_pick("p3", "b1", 3, sort_order=2),
        make_pick("p1", "b1", 1, sort_order=0),
        make_pick("p2", "b2", 2, sort_order=1),
        make_pick("p4", "b1", 4, sort_order=1),
    ]
    result = make_reconciler(stats).annotate(boards, picks, today_key=TODAY)
    assert [b["id"] for b in result.boards] == ["b2", "b1"]
    assert [p["id"] for p in result.boards[0]["picks"]] == ["p2"]
    assert [p["id"] for p in result.boards[1]["picks"]] == ["p1", "p4", "p3"]


def test_reconcile_persists_updates():
    stats = FakeStatsClient(goals={(1, "2024-01-08"): GoalsForDate(2, True, 2), (2, "2024-01-08"): NO_GAME})
    store = FakeStore()
    boards = [{"id": "b1", "board_date": "2024-01-08"}]
    picks = [make_pick("p1", "b1", 1), make_pick("p2", "b1", 2, sort_order=1)]
    result = make_reconciler(stats, store).reconcile(boards, picks, today_key=TODAY)

    assert result.ok
    written = sorted((filters[0][2], values["game_goals"], values["game_played"]) for _t, values, filters in store.updates)
    assert written == [("p1", 2, True), ("p2", 0, False)]
    assert all(table == "picks" for table, _v, _f in store.updates)
    assert store.updates[0][1]["game_updated_at"] == FIXED_NOW.isoformat()


def test_write_failure_is_reported_but_results_are_kept():
    stats = FakeStatsClient(goals={(1, "2024-01-08"): GoalsForDate(2, True, 2)})
    store = FakeStore()
    store.update_error = StoreError("connection refused")
    boards = [{"id": "b1", "board_date": "2024-01-08"}]
    result = make_reconciler(stats, store).reconcile(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    assert not result.ok
    assert result.write_errors[0].pick_id == "p1"
    assert result.boards[0]["picks"][0]["game_goals"] == 2


def test_reconcile_without_store_skips_persistence():
    stats = FakeStatsClient(goals={(1, "2024-01-08"): GoalsForDate(2, True, 2)})
    boards = [{"id": "b1", "board_date": "2024-01-08"}]
    result = make_reconciler(stats).reconcile(boards, [make_pick("p1", "b1", 1)], today_key=TODAY)
    assert result.ok
    assert len(result.updates) == 1


def test_missing_from_fetched_logs_resolves_only_past_boards(clock):
    game_log = FakeResponse({"gameLog": [{"gameDate": "2024-01-06", "goals": 1}]})
    session = FakeSession(
        {
            "/player/8478402/game-log/20232024/2": game_log,
            "/player/8478402/game-log/20232024/3": FakeResponse({"gameLog": []}),
        }
    )
    stats = NhlStatsClient(base_url="https://nhl.test/v1", session=session, clock=clock)
    boards = [
        {"id": "today", "board_date": TODAY},
        {"id": "yesterday", "board_date": "2024-01-08"},
    ]
    picks = [
        make_pick("p-today", "today", 8478402),
        make_pick("p-yesterday", "yesterday", 8478402),
    ]
    # one worker so both boards share the first fetch of each log
    result = BoardReconciler(stats, max_workers=1, now=lambda: FIXED_NOW).annotate(boards, picks, today_key=TODAY)

    today_pick = result.boards[0]["picks"][0]
    assert today_pick["game_goals"] is None and today_pick["game_played"] is None
    yesterday_pick = result.boards[1]["picks"][0]
    assert (yesterday_pick["game_goals"], yesterday_pick["game_played"]) == (0, False)
    assert [(u.pick_id, u.game_goals, u.game_played) for u in result.updates] == [("p-yesterday", 0, False)]

    assert session.count("/player/8478402/game-log/20232024/2") == 1
    assert session.count("/player/8478402/game-log/20232024/3") == 1


def test_unreachable_logs_leave_every_board_unresolved(clock):
    session = FakeSession({})
    stats = NhlStatsClient(base_url="https://nhl.test/v1", session=session, clock=clock)
    boards = [{"id": "yesterday", "board_date": "2024-01-08"}]
    result = make_reconciler(stats).annotate(boards, [make_pick("p1", "yesterday", 8478402)], today_key=TODAY)
    assert result.boards[0]["picks"][0]["game_played"] is None
    assert result.updates == []
