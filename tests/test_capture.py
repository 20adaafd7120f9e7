import pytest

from tagger.capture import CaptureEngine
from tagger.exceptions import InvalidActionError
from tagger.models import Score
from tagger.persistence import PersistenceAdapter
from tagger.storage import MemoryStore
from tagger.video import ManualClockVideo


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def make_set(store):
    match = store.create("matches", {"best_of": 5, "player_a_name": "A", "player_b_name": "B"})
    return store.create("sets", {"match_id": match["id"], "set_number": 1})["id"]


def create_engine(first_server="player_a", score=Score(), video=None, persist=False):
    persistence = None
    store = None
    if persist:
        store = MemoryStore()
        persistence = PersistenceAdapter(store, make_set(store))

    engine = CaptureEngine(
        first_server=first_server,
        starting_score=score,
        video=video,
        persistence=persistence,
    )
    return engine, store


def play_rally(engine, times, end_condition, end_t=None):
    for t in times:
        engine.record_shot(t)
    return engine.end_rally(end_condition, end_t if end_t is not None else times[-1] + 0.5)


# ---------------------------------------------------------
# Worked scenarios
# ---------------------------------------------------------

def test_winner_after_two_shots():
    engine, _ = create_engine()

    engine.record_shot(1.0)
    engine.record_shot(2.0)
    rally = engine.end_rally("winner", 2.5)

    assert [s.index for s in rally.shots] == [1, 2]
    assert rally.shots[0].is_serve and rally.shots[1].is_receive
    # shot 2 is struck by the receiver
    assert rally.winner == rally.shots[1].striker == "player_b"
    assert rally.score_after == Score(0, 1)
    assert not rally.is_error


def test_in_net_fault_after_one_shot():
    engine, _ = create_engine()

    engine.record_shot(1.0)
    rally = engine.end_rally("in_net", 1.8)

    assert len(rally.shots) == 1
    assert rally.is_error
    assert rally.winner == rally.receiver == "player_b"
    assert rally.score_after == Score(0, 1)


def test_deuce_switches_to_single_serves():
    engine, _ = create_engine(score=Score(9, 10))
    assert engine.current_server() == "player_b"

    play_rally(engine, [1.0], "in_net")      # 10-10
    assert engine.current_server() == "player_a"

    play_rally(engine, [5.0], "winner")      # 11-10
    assert engine.current_server() == "player_b"

    play_rally(engine, [9.0], "winner")      # 11-11
    assert engine.current_server() == "player_a"

    assert [r.server for r in engine.rallies] == ["player_b", "player_a", "player_b"]


def test_two_serves_before_deuce():
    engine, _ = create_engine()

    servers = []
    for i in range(4):
        servers.append(engine.current_server())
        play_rally(engine, [i * 10 + 1.0], "winner")

    assert servers == ["player_a", "player_a", "player_b", "player_b"]


def test_upcoming_server_hint():
    engine, _ = create_engine()
    assert (engine.serves_left(), engine.upcoming_server()) == (2, "player_a")

    play_rally(engine, [1.0], "winner")
    assert (engine.serves_left(), engine.upcoming_server()) == (1, "player_b")

    # a let does not move the turn
    play_rally(engine, [11.0, 12.0], "let")
    assert engine.upcoming_server() == "player_b"


def test_upcoming_server_at_deuce():
    engine, _ = create_engine(score=Score(10, 10))

    assert engine.serves_left() == 1
    assert engine.upcoming_server() != engine.current_server()


# ---------------------------------------------------------
# Rally close
# ---------------------------------------------------------

def test_roles_and_shot_end_times():
    engine, _ = create_engine()

    rally = play_rally(engine, [1.0, 2.0, 3.0, 4.0], "long", end_t=4.6)

    assert [s.role for s in rally.shots] == ["serve", "receive", "regular", "error"]
    assert [s.timestamp_end for s in rally.shots] == [2.0, 3.0, 4.0, 4.6]
    assert [s.is_last_shot for s in rally.shots] == [False, False, False, True]


def test_service_fault_keeps_serve_role():
    engine, _ = create_engine()

    rally = play_rally(engine, [1.0], "long")

    assert rally.shots[0].role == "serve"
    assert rally.point_end_type == "serviceFault"


def test_let_scores_nothing():
    engine, _ = create_engine()

    rally = play_rally(engine, [1.0, 2.0], "let")

    assert rally.score_after == rally.score_before == Score()
    assert engine.current_server() == "player_a"


def test_rally_indices_are_contiguous():
    engine, _ = create_engine()

    for i in range(3):
        play_rally(engine, [i * 10 + 1.0, i * 10 + 2.0], "winner")

    assert [r.index for r in engine.rallies] == [1, 2, 3]


def test_forced_error_needs_two_shots():
    engine, _ = create_engine()
    engine.record_shot(1.0)

    assert not engine.can_end_rally("forced_error")
    with pytest.raises(InvalidActionError):
        engine.end_rally("forced_error", 1.5)

    # state untouched
    assert len(engine.current_shots) == 1
    assert engine.state == "after_serve"


def test_end_rally_needs_a_shot():
    engine, _ = create_engine()

    assert not engine.can_end_rally("winner")
    with pytest.raises(InvalidActionError):
        engine.end_rally("winner", 1.0)


def test_unknown_end_condition():
    engine, _ = create_engine()
    engine.record_shot(1.0)

    with pytest.raises(ValueError):
        engine.end_rally("edge", 1.5)


def test_duplicate_press_is_ignored():
    engine, _ = create_engine()

    engine.record_shot(1.0)
    assert engine.record_shot(1.005) is None
    assert len(engine.current_shots) == 1


def test_shot_timestamps_cannot_go_backwards():
    engine, _ = create_engine()
    engine.record_shot(2.0)

    with pytest.raises(InvalidActionError):
        engine.record_shot(1.0)


def test_record_control_disabled_behind_last_shot():
    engine, _ = create_engine()
    engine.record_shot(5.0)

    assert not engine.can_record_shot(4.0)
    assert engine.can_record_shot(5.5)
    with pytest.raises(InvalidActionError):
        engine.record_shot(4.0)
    assert len(engine.current_shots) == 1


def test_stepping_back_into_open_rally_disables_record():
    video = ManualClockVideo()
    engine, _ = create_engine(video=video)
    engine.record_shot(1.0)
    engine.record_shot(2.0)

    engine.step_back()

    # loop starts just before shot 2
    assert video.get_current_time() == pytest.approx(1.7)
    assert not engine.can_record_shot()
    with pytest.raises(InvalidActionError):
        engine.record_shot()
    assert engine.is_navigating

    video.seek(3.0)
    assert engine.can_record_shot()
    assert engine.record_shot().index == 3
    assert not engine.is_navigating


def test_set_end_detected():
    engine, _ = create_engine(score=Score(10, 3))

    play_rally(engine, [1.0], "winner")

    assert engine.score == Score(11, 3)
    assert engine.set_end_detected


# ---------------------------------------------------------
# Undo
# ---------------------------------------------------------

def test_undo_rally_end_restores_buffer_and_score():
    engine, _ = create_engine()
    play_rally(engine, [1.0, 2.0], "winner")

    engine.record_shot(5.0)
    engine.record_shot(6.0)
    engine.record_shot(7.0)
    score_before = engine.score
    buffered = [s.timestamp for s in engine.current_shots]

    engine.end_rally("in_net", 7.5)
    engine.undo()

    assert engine.score == score_before
    assert [s.timestamp for s in engine.current_shots] == buffered
    assert all(s.role is None and not s.is_last_shot for s in engine.current_shots)
    assert engine.state == "after_serve"
    assert len(engine.rallies) == 1


def test_undo_only_shot_returns_to_before_serve():
    engine, _ = create_engine()
    engine.record_shot(1.0)

    entry = engine.undo()

    assert entry.kind == "shot"
    assert engine.current_shots == []
    assert engine.state == "before_serve"


def test_undo_with_empty_history():
    engine, _ = create_engine()

    assert not engine.can_undo()
    with pytest.raises(InvalidActionError):
        engine.undo()


def test_undo_rally_issues_compensating_delete():
    engine, store = create_engine(persist=True)
    set_id = engine.persistence.set_id

    play_rally(engine, [1.0, 2.0], "winner")
    assert len(store.get_by_parent_id("rallies", set_id)) == 1

    engine.undo()

    assert store.get_by_parent_id("rallies", set_id) == []
    assert store.get_by_id("sets", set_id)["phase1_last_rally"] == 0


def test_undo_seeks_to_previous_entry():
    video = ManualClockVideo()
    engine, _ = create_engine(video=video)

    engine.record_shot(1.0)
    engine.record_shot(2.0)
    engine.undo()

    assert engine.is_navigating
    assert not video.is_playing
    assert video.get_current_time() == 1.0
    assert video.speed == 0.5


def test_undo_everything_returns_to_live():
    video = ManualClockVideo()
    engine, _ = create_engine(video=video)

    engine.record_shot(1.0)
    engine.undo()

    assert not engine.is_navigating
    assert video.speed == 1.0
    assert not video.constraint.enabled


# ---------------------------------------------------------
# Navigation
# ---------------------------------------------------------

def test_step_back_loops_between_entries():
    video = ManualClockVideo()
    engine, _ = create_engine(video=video)
    play_rally(engine, [1.0, 2.0], "winner", end_t=2.5)

    entry = engine.step_back()
    assert entry.kind == "rally_end"
    assert video.constraint.start_time == pytest.approx(2.2)
    assert video.constraint.end_time == pytest.approx(4.5)

    entry = engine.step_back()
    assert entry.timestamp == 2.0
    assert video.constraint.start_time == pytest.approx(1.7)
    assert video.constraint.end_time == pytest.approx(2.5)
    assert video.is_playing


def test_step_back_clamps_at_zero():
    video = ManualClockVideo()
    engine, _ = create_engine(video=video)
    engine.record_shot(0.1)

    engine.step_back()

    assert video.constraint.start_time == 0.0
    assert not engine.can_step_back()


def test_step_forward_past_end_returns_to_live():
    video = ManualClockVideo()
    engine, _ = create_engine(video=video)
    play_rally(engine, [1.0, 2.0], "winner")
    assert video.speed == 2.0

    engine.step_back()
    engine.step_back()
    engine.step_forward()
    assert engine.is_navigating

    assert engine.step_forward() is None
    assert not engine.is_navigating
    assert not video.constraint.enabled
    assert video.is_playing
    assert video.speed == 2.0


def test_step_forward_when_live():
    engine, _ = create_engine()

    assert not engine.can_step_forward()
    with pytest.raises(InvalidActionError):
        engine.step_forward()


def test_record_while_navigating_returns_to_live():
    video = ManualClockVideo()
    engine, _ = create_engine(video=video)
    play_rally(engine, [1.0, 2.0], "winner")

    engine.step_back()
    video.seek(10.0)
    shot = engine.record_shot()

    assert shot.timestamp == 10.0
    assert not engine.is_navigating
    assert video.speed == 0.5


# ---------------------------------------------------------
# Persistence + finish
# ---------------------------------------------------------

def test_closed_rally_is_mirrored_to_store():
    engine, store = create_engine(persist=True)
    set_id = engine.persistence.set_id

    play_rally(engine, [1.0, 2.0, 3.0], "forced_error")

    (rally,) = store.get_by_parent_id("rallies", set_id)
    shots = sorted(store.get_by_parent_id("shots", rally["id"]), key=lambda s: s["shot_index"])

    assert rally["rally_index"] == 1
    assert rally["winner"] == "player_b"
    assert rally["is_error"] is True
    assert [s["role"] for s in shots] == ["serve", "receive", "error"]
    # forced/unforced is only known after the error shot is annotated
    assert shots[-1]["rally_end_role"] is None
    assert store.get_by_id("sets", set_id)["tagging_phase"] == "phase1_in_progress"


def test_finish_refuses_open_rally():
    engine, _ = create_engine()
    engine.record_shot(1.0)

    with pytest.raises(InvalidActionError):
        engine.finish()


def test_finish_writes_final_score():
    engine, store = create_engine(persist=True, score=Score(10, 2))
    set_id = engine.persistence.set_id

    play_rally(engine, [1.0, 2.0], "in_net")   # receiver wins -> player_a
    rallies = engine.finish()

    record = store.get_by_id("sets", set_id)
    assert len(rallies) == 1
    assert record["score_final_a"] == 11
    assert record["winner"] == "player_a"
    assert record["tagging_phase"] == "phase1_complete"
    assert record["phase1_total_rallies"] == 1


def test_history_rebuilt_from_resumed_rallies():
    first, _ = create_engine()
    play_rally(first, [1.0, 2.0], "winner")
    play_rally(first, [5.0], "long")

    resumed = CaptureEngine("player_a", rallies=first.rallies)

    assert len(resumed.history) == 5
    assert resumed.score == first.score

    resumed.undo()
    assert resumed.state == "after_serve"
    assert len(resumed.rallies) == 1
