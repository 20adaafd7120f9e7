from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from tagger.models import Rally, Score, ScoreSnapshot, derive_winner
from tagger.serve_order import ServerMismatch, is_set_won, resolve_server, validate_server_sequence

logger = logging.getLogger(__name__)


@dataclass
class Replay:
    snapshots: List[ScoreSnapshot] = field(default_factory=list)
    final_score: Score = Score()
    mismatches: List[ServerMismatch] = field(default_factory=list)


def replay_rallies(first_server: str, starting_score: Score, rallies: Sequence[Rally]) -> Replay:
    """
    Replays a set from its starting score.
    Winners are re-derived from each rally's last striker and end condition,
    so stored scores are never trusted.
    Does NOT mutate the rallies.
    """

    score = starting_score
    snapshots: List[ScoreSnapshot] = []

    for rally in sorted(rallies, key=lambda r: r.index):

        server = resolve_server(first_server, score.player_a, score.player_b).server
        winner = derive_winner(rally.last_shot.striker, rally.end_condition)

        score_after = score.credit(winner) if rally.is_scoring else score

        snapshots.append(
            ScoreSnapshot(
                rally_index=rally.index,
                timestamp=rally.end_timestamp,
                server=server,
                winner=winner if rally.is_scoring else None,
                is_scoring=rally.is_scoring,
                score_before=score,
                score_after=score_after,
                set_finished=is_set_won(score_after.player_a, score_after.player_b),
            )
        )

        score = score_after

    mismatches = validate_server_sequence(first_server, sorted(rallies, key=lambda r: r.index), starting_score)
    for m in mismatches:
        logger.warning(
            f"Rally {m.rally_index}: recorded server {m.actual}, expected {m.expected} "
            f"at {m.score.player_a}-{m.score.player_b}"
        )

    return Replay(snapshots=snapshots, final_score=score, mismatches=mismatches)
