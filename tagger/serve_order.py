"""
Service order and set rules for table tennis.

Pure functions only. Nothing here keeps state: the current server is always
re-derived from the first server of the set and the running score.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from tagger.config import (
    DEUCE_AT,
    MAX_PLAUSIBLE_SCORE,
    POINTS_TO_WIN_SET,
    SERVES_PER_TURN,
    WIN_BY,
)
from tagger.models import Score, ServerResult, other_side, SIDES


# =========================================================
# SERVER
# =========================================================

def _is_deuce(score_a: int, score_b: int) -> bool:
    return score_a >= DEUCE_AT and score_b >= DEUCE_AT


def _service_rotations(total_points: int, deuce: bool) -> int:
    """
    Number of service changes that happened before the next point.

    Two serves each until deuce, then one each. At 10-10 both formulas
    agree (20 points -> 10 changes), so the switch is seamless.
    """
    if deuce:
        before_deuce = (2 * DEUCE_AT) // SERVES_PER_TURN
        return before_deuce + (total_points - 2 * DEUCE_AT)
    return total_points // SERVES_PER_TURN


def _validate_side(side: str):
    if side not in SIDES:
        raise ValueError(f"Invalid side: {side}")


def resolve_server(first_server: str, score_a: int, score_b: int) -> ServerResult:
    _validate_side(first_server)
    if score_a < 0 or score_b < 0:
        raise ValueError("scores must be non-negative")

    rotations = _service_rotations(score_a + score_b, _is_deuce(score_a, score_b))
    server = first_server if rotations % 2 == 0 else other_side(first_server)

    return ServerResult(server=server, receiver=other_side(server))


def resolve_striker(server: str, shot_index: int) -> str:
    """
    Server strikes the odd shots (1 = serve), receiver the even ones.
    """
    _validate_side(server)
    if shot_index < 1:
        raise ValueError("shot_index is 1-based")

    return server if shot_index % 2 == 1 else other_side(server)


def serves_remaining(score_a: int, score_b: int) -> int:
    if _is_deuce(score_a, score_b):
        return 1
    return SERVES_PER_TURN - ((score_a + score_b) % SERVES_PER_TURN)


def will_service_change(score_a: int, score_b: int) -> bool:
    """True when the server changes after the point about to be played."""
    return serves_remaining(score_a, score_b) == 1


def set_first_server(match_first_server: str, set_number: int) -> str:
    """Odd sets start with the match's first server, even sets with the other player."""
    _validate_side(match_first_server)
    if set_number < 1:
        raise ValueError("set_number is 1-based")

    return match_first_server if set_number % 2 == 1 else other_side(match_first_server)


def first_server_from_next(next_server: str, score_a: int, score_b: int) -> str:
    """
    Recover who served first in a set from who serves the next point.

    Used when tagging starts mid-set and the operator only knows the
    current score and the upcoming server.
    """
    if resolve_server(next_server, score_a, score_b).server == next_server:
        return next_server
    return other_side(next_server)


@dataclass(frozen=True)
class ServerMismatch:
    rally_index: int
    expected: str
    actual: str
    score: Score


def validate_server_sequence(
    first_server: str,
    rallies: Sequence,
    starting_score: Score = Score(),
) -> List[ServerMismatch]:
    """
    Check recorded servers against the service rule.

    `rallies` only needs `index`, `server`, `winner` and `is_scoring`.
    """
    mismatches: List[ServerMismatch] = []
    score = starting_score

    for rally in rallies:
        expected = resolve_server(first_server, score.player_a, score.player_b).server

        if rally.server != expected:
            mismatches.append(
                ServerMismatch(
                    rally_index=rally.index,
                    expected=expected,
                    actual=rally.server,
                    score=score,
                )
            )

        if rally.is_scoring and rally.winner:
            score = score.credit(rally.winner)

    return mismatches


# =========================================================
# SET RULES
# =========================================================

def is_set_won(score_a: int, score_b: int) -> bool:
    return (score_a >= POINTS_TO_WIN_SET or score_b >= POINTS_TO_WIN_SET) and abs(score_a - score_b) >= WIN_BY


def set_winner(score_a: int, score_b: int) -> Optional[str]:
    """Higher final score wins the set; a tie has no winner."""
    if score_a > score_b:
        return "player_a"
    if score_b > score_a:
        return "player_b"
    return None


def validate_set_score(score_a: int, score_b: int) -> List[str]:
    """
    Return list of problems (empty == valid).
    Completed scores are accepted: a finished set can still be tagged.
    """
    problems: List[str] = []

    if score_a < 0 or score_b < 0:
        problems.append("scores cannot be negative")

    if score_a > MAX_PLAUSIBLE_SCORE or score_b > MAX_PLAUSIBLE_SCORE:
        problems.append(f"scores seem unreasonably high (>{MAX_PLAUSIBLE_SCORE})")

    return problems
