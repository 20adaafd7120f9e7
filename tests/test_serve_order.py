import pytest

from tagger.models import Score
from tagger.serve_order import (
    first_server_from_next,
    is_set_won,
    resolve_server,
    resolve_striker,
    serves_remaining,
    set_first_server,
    set_winner,
    validate_server_sequence,
    validate_set_score,
    will_service_change,
)


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

class FakeRally:
    def __init__(self, index, server, winner, is_scoring=True):
        self.index = index
        self.server = server
        self.winner = winner
        self.is_scoring = is_scoring


def server_at(a, b, first="player_a"):
    return resolve_server(first, a, b).server


# ---------------------------------------------------------
# Two serves each
# ---------------------------------------------------------

@pytest.mark.parametrize("a, b, expected", [
    (0, 0, "player_a"),
    (1, 0, "player_a"),
    (1, 1, "player_b"),
    (2, 1, "player_b"),
    (2, 2, "player_a"),
    (5, 3, "player_a"),
    (9, 0, "player_a"),
    (9, 1, "player_b"),
    (10, 9, "player_b"),
])
def test_two_serves_per_turn(a, b, expected):
    assert server_at(a, b) == expected


def test_receiver_is_other_side():
    result = resolve_server("player_b", 0, 0)

    assert result.server == "player_b"
    assert result.receiver == "player_a"


# ---------------------------------------------------------
# Deuce
# ---------------------------------------------------------

@pytest.mark.parametrize("a, b, expected", [
    (10, 10, "player_a"),
    (11, 10, "player_b"),
    (11, 11, "player_a"),
    (12, 11, "player_b"),
    (12, 12, "player_a"),
    (13, 12, "player_b"),
])
def test_deuce_alternates_every_point(a, b, expected):
    assert server_at(a, b) == expected


def test_deuce_switch_happens_at_ten_all():
    # 9-10 still uses two-serve turns, 10-10 starts single serves
    assert serves_remaining(9, 10) == 1
    assert serves_remaining(10, 10) == 1
    assert serves_remaining(11, 10) == 1
    assert serves_remaining(4, 4) == 2


def test_will_service_change():
    assert will_service_change(0, 1)
    assert not will_service_change(0, 0)
    assert will_service_change(10, 10)


# ---------------------------------------------------------
# Striker
# ---------------------------------------------------------

@pytest.mark.parametrize("shot_index, expected", [
    (1, "player_b"),
    (2, "player_a"),
    (3, "player_b"),
    (4, "player_a"),
])
def test_striker_alternates_from_server(shot_index, expected):
    assert resolve_striker("player_b", shot_index) == expected


def test_striker_rejects_zero_index():
    with pytest.raises(ValueError):
        resolve_striker("player_a", 0)


def test_invalid_side_rejected():
    with pytest.raises(ValueError):
        resolve_server("player_c", 0, 0)


# ---------------------------------------------------------
# Set start / mid-set setup
# ---------------------------------------------------------

def test_set_first_server_alternates_by_set():
    assert set_first_server("player_a", 1) == "player_a"
    assert set_first_server("player_a", 2) == "player_b"
    assert set_first_server("player_a", 3) == "player_a"


@pytest.mark.parametrize("a, b", [(0, 0), (3, 2), (7, 7), (10, 10), (11, 10), (14, 13)])
def test_first_server_from_next_round_trips(a, b):
    for next_server in ("player_a", "player_b"):
        first = first_server_from_next(next_server, a, b)
        assert resolve_server(first, a, b).server == next_server


# ---------------------------------------------------------
# Sequence validation
# ---------------------------------------------------------

def test_validate_server_sequence_clean():
    rallies = [
        FakeRally(1, "player_a", "player_a"),
        FakeRally(2, "player_a", "player_b"),
        FakeRally(3, "player_b", "player_b"),
    ]

    assert validate_server_sequence("player_a", rallies) == []


def test_validate_server_sequence_reports_mismatch():
    rallies = [
        FakeRally(1, "player_a", "player_a"),
        FakeRally(2, "player_b", "player_b"),
    ]

    mismatches = validate_server_sequence("player_a", rallies)

    assert len(mismatches) == 1
    assert mismatches[0].rally_index == 2
    assert mismatches[0].expected == "player_a"


def test_let_does_not_move_service():
    rallies = [
        FakeRally(1, "player_a", "player_a", is_scoring=False),
        FakeRally(2, "player_a", "player_a"),
        FakeRally(3, "player_a", "player_b"),
        FakeRally(4, "player_b", "player_b"),
    ]

    assert validate_server_sequence("player_a", rallies, Score()) == []


# ---------------------------------------------------------
# Set rules
# ---------------------------------------------------------

@pytest.mark.parametrize("a, b, won", [
    (11, 9, True),
    (11, 10, False),
    (12, 10, True),
    (10, 0, False),
    (3, 11, True),
])
def test_is_set_won(a, b, won):
    assert is_set_won(a, b) is won


def test_set_winner_tie_is_none():
    assert set_winner(11, 5) == "player_a"
    assert set_winner(9, 11) == "player_b"
    assert set_winner(4, 4) is None


def test_validate_set_score():
    assert validate_set_score(0, 0) == []
    assert validate_set_score(11, 3) == []
    assert validate_set_score(-1, 0)
    assert validate_set_score(31, 0)
