"""
Phase 1: timestamp capture.

The operator presses one button per ball contact and one button when the
rally ends. Everything else (server, striker, winner, score) is derived
from the set's first server and the rallies closed so far.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from tagger.config import TaggingConfig
from tagger.exceptions import InvalidActionError
from tagger.models import END_CONDITIONS, Rally, Score, Shot, derive_winner, other_side, resolve_role
from tagger.serve_order import (
    is_set_won,
    resolve_server,
    resolve_striker,
    serves_remaining,
    set_winner,
    will_service_change,
)
from tagger.video import ConstrainedPlayback, DISABLED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    kind: str  # "shot" | "rally_end"
    timestamp: float
    rally_index: int
    shot_index: Optional[int] = None


class CaptureEngine:
    """
    Phase 1 state machine.

    Responsibilities:
    - Buffer shots of the open rally
    - Close rallies (roles, winner, score) and mirror them to persistence
    - Keep an action history for undo and seek-based navigation
    """

    def __init__(
        self,
        first_server: str,
        starting_score: Score = Score(),
        video=None,
        persistence=None,
        config: Optional[TaggingConfig] = None,
        rallies: Optional[List[Rally]] = None,
    ):
        # validates first_server and the score
        resolve_server(first_server, starting_score.player_a, starting_score.player_b)

        self.first_server = first_server
        self.starting_score = starting_score
        self.video = video
        self.persistence = persistence
        self.config = config or TaggingConfig()

        self.rallies: List[Rally] = list(rallies or [])
        self.current_shots: List[Shot] = []
        self.state = "before_serve"

        self.history: List[HistoryEntry] = self._history_from(self.rallies)
        self.cursor: Optional[int] = None
        self.speed_mode = "normal"
        self._speed_before_navigation: Optional[str] = None

        self.set_end_detected = is_set_won(self.score.player_a, self.score.player_b)

    # =========================================================
    # READ-ONLY VIEWS
    # =========================================================

    @property
    def score(self) -> Score:
        if self.rallies:
            return self.rallies[-1].score_after
        return self.starting_score

    @property
    def is_navigating(self) -> bool:
        return self.cursor is not None

    @property
    def next_rally_index(self) -> int:
        return self.rallies[-1].index + 1 if self.rallies else 1

    def current_server(self) -> str:
        score = self.score
        return resolve_server(self.first_server, score.player_a, score.player_b).server

    def current_striker(self) -> str:
        """Who strikes the next recorded shot."""
        return resolve_striker(self.current_server(), len(self.current_shots) + 1)

    def serves_left(self) -> int:
        """Serves left in the current server's turn, the next point included."""
        score = self.score
        return serves_remaining(score.player_a, score.player_b)

    def upcoming_server(self) -> str:
        """Who serves after the next scoring point."""
        score = self.score
        server = self.current_server()
        return other_side(server) if will_service_change(score.player_a, score.player_b) else server

    # =========================================================
    # CONTROL ENABLEMENT
    # =========================================================

    def can_record_shot(self, timestamp: Optional[float] = None) -> bool:
        """
        False while the sampled time is behind the open rally's last shot,
        e.g. after stepping back into it.
        """
        if not self.current_shots:
            return True
        if timestamp is None:
            if self.video is None:
                return True
            timestamp = self.video.get_current_time()
        return timestamp >= self.current_shots[-1].timestamp - self.config.duplicate_tag_tolerance

    def can_end_rally(self, end_condition: str) -> bool:
        if end_condition not in END_CONDITIONS:
            return False
        if self.state != "after_serve":
            return False
        if end_condition == "forced_error" and len(self.current_shots) < 2:
            return False
        return True

    def can_undo(self) -> bool:
        return bool(self.history)

    def can_step_back(self) -> bool:
        if not self.history:
            return False
        return self.cursor is None or self.cursor > 0

    def can_step_forward(self) -> bool:
        return self.is_navigating

    # =========================================================
    # ACTIONS
    # =========================================================

    def record_shot(self, timestamp: Optional[float] = None) -> Optional[Shot]:
        """
        Append the next shot of the open rally.

        A press within the duplicate tolerance of the previous shot is
        treated as a double tap and ignored (returns None).
        """
        t = self._sample(timestamp)

        if self.current_shots:
            last = self.current_shots[-1]
            if abs(t - last.timestamp) <= self.config.duplicate_tag_tolerance:
                logger.debug(f"Ignored duplicate shot press at {t:.3f}s")
                return None
            if not self.can_record_shot(t):
                raise InvalidActionError(f"Shot at {t:.3f}s is before the last shot of the rally")

        if self.is_navigating:
            self.resume_live()

        shot = Shot(
            index=len(self.current_shots) + 1,
            timestamp=t,
            striker=self.current_striker(),
        )

        self.current_shots.append(shot)
        self.state = "after_serve"
        self.history.append(
            HistoryEntry(kind="shot", timestamp=t, rally_index=self.next_rally_index, shot_index=shot.index)
        )

        self._set_speed("tag")
        return shot

    def end_rally(self, end_condition: str, timestamp: Optional[float] = None) -> Rally:
        if end_condition not in END_CONDITIONS:
            raise ValueError(f"Invalid end condition: {end_condition}")

        if not self.can_end_rally(end_condition):
            if self.state != "after_serve":
                raise InvalidActionError("No rally in progress")
            raise InvalidActionError("forced_error needs at least 2 shots")

        if self.is_navigating:
            self.resume_live()

        last = self.current_shots[-1]
        end_t = max(self._sample(timestamp), last.timestamp)

        score_before = self.score
        server = resolve_server(self.first_server, score_before.player_a, score_before.player_b)

        rally = Rally(
            index=self.next_rally_index,
            server=server.server,
            receiver=server.receiver,
            shots=self.current_shots,
            end_condition=end_condition,
            end_timestamp=end_t,
            winner=derive_winner(last.striker, end_condition),
            score_before=score_before,
            score_after=score_before,
        )

        if rally.is_scoring:
            rally.score_after = score_before.credit(rally.winner)

        self._close_shots(rally)

        self.rallies.append(rally)
        self.current_shots = []
        self.state = "before_serve"
        self.history.append(HistoryEntry(kind="rally_end", timestamp=end_t, rally_index=rally.index))

        logger.info(
            f"Rally {rally.index} closed: {end_condition}, winner={rally.winner}, "
            f"score {rally.score_after.player_a}-{rally.score_after.player_b}"
        )

        self._persist_rally(rally)
        self._set_speed("ff")

        self.set_end_detected = is_set_won(rally.score_after.player_a, rally.score_after.player_b)
        if self.set_end_detected:
            logger.info(f"Set end detected at {rally.score_after.player_a}-{rally.score_after.player_b}")

        return rally

    def undo(self) -> HistoryEntry:
        """
        Revert the latest shot or rally end.

        Undoing a rally end reopens it with its shots and issues a
        compensating delete to persistence.
        """
        if not self.can_undo():
            raise InvalidActionError("Nothing to undo")

        entry = self.history.pop()

        if entry.kind == "rally_end":
            rally = self.rallies.pop()
            self._reopen_shots(rally)
            self.current_shots = rally.shots
            self.state = "after_serve"
            self.set_end_detected = is_set_won(self.score.player_a, self.score.player_b)

            logger.info(f"Undo rally {rally.index}")

            if self.persistence is not None:
                self.persistence.delete_rally(rally.index)
                self.persistence.advance_progress("phase1_in_progress", last_rally_index=rally.index - 1)
        else:
            self.current_shots.pop()
            if not self.current_shots:
                self.state = "before_serve"

        if self.history:
            self._enter_navigation()
            self.cursor = len(self.history) - 1
            self._set_speed("tag")
            if self.video is not None:
                self.video.set_constrained_playback(DISABLED)
                self.video.pause()
                self.video.seek(self.history[-1].timestamp)
        else:
            self._speed_before_navigation = "normal"
            self.resume_live()

        return entry

    # =========================================================
    # NAVIGATION
    # =========================================================

    def step_back(self) -> HistoryEntry:
        if not self.can_step_back():
            raise InvalidActionError("Cannot step back")

        if self.cursor is None:
            self._enter_navigation()
            self.cursor = len(self.history) - 1
        else:
            self.cursor -= 1

        self._show_entry(self.cursor)
        return self.history[self.cursor]

    def step_forward(self) -> Optional[HistoryEntry]:
        """Move the cursor forward; past the last entry returns to live (None)."""
        if not self.can_step_forward():
            raise InvalidActionError("Not navigating")

        if self.cursor < len(self.history) - 1:
            self.cursor += 1
            self._show_entry(self.cursor)
            return self.history[self.cursor]

        self.resume_live()
        return None

    def resume_live(self):
        self.cursor = None
        mode = self._speed_before_navigation or self.speed_mode
        self._speed_before_navigation = None

        if self.video is not None:
            self.video.set_constrained_playback(DISABLED)
            self.video.play()
        self._set_speed(mode)

    # =========================================================
    # PHASE END
    # =========================================================

    def finish(self) -> List[Rally]:
        """
        Close Phase 1: final set score and progress marker.
        """
        if self.current_shots:
            raise InvalidActionError("Close or undo the open rally before finishing")

        score = self.score
        total = len(self.rallies)
        last_index = self.rallies[-1].index if self.rallies else 0

        if self.persistence is not None:
            self.persistence.update_set(
                score_final_a=score.player_a,
                score_final_b=score.player_b,
                winner=set_winner(score.player_a, score.player_b),
            )
            self.persistence.advance_progress("phase1_complete", last_rally_index=last_index, total_rallies=total)

        logger.info(f"Phase 1 finished: {total} rallies, final {score.player_a}-{score.player_b}")
        return list(self.rallies)

    # =========================================================
    # INTERNALS
    # =========================================================

    def _sample(self, timestamp: Optional[float]) -> float:
        if timestamp is not None:
            return float(timestamp)
        if self.video is None:
            raise ValueError("timestamp is required without a video")
        return self.video.get_current_time()

    def _set_speed(self, mode: str):
        self.speed_mode = mode
        if self.video is not None:
            self.video.set_playback_speed(self.config.speed_for(mode))

    def _enter_navigation(self):
        if self._speed_before_navigation is None:
            self._speed_before_navigation = self.speed_mode

    def _show_entry(self, i: int):
        t = self.history[i].timestamp
        next_t = self.history[i + 1].timestamp if i + 1 < len(self.history) else None

        start = max(0.0, t - self.config.navigation_lead_seconds)
        end = next_t if next_t is not None else t + self.config.navigation_tail_seconds
        end = max(end, start)

        if self.video is not None:
            self.video.set_constrained_playback(
                ConstrainedPlayback(enabled=True, start_time=start, end_time=end, loop_on_end=True)
            )
            self.video.seek(start)
            self.video.play()

    def _persist_rally(self, rally: Rally):
        if self.persistence is None:
            return

        rally.record_id = self.persistence.commit_rally(rally)
        for shot in rally.shots:
            shot.record_id = self.persistence.commit_shot(rally.index, shot)

        self.persistence.advance_progress("phase1_in_progress", last_rally_index=rally.index)

    @staticmethod
    def _close_shots(rally: Rally):
        shots = rally.shots
        for i, shot in enumerate(shots):
            shot.is_last_shot = i == len(shots) - 1
            shot.role = resolve_role(shot.index, shot.is_last_shot, rally.is_error)
            shot.timestamp_end = shots[i + 1].timestamp if not shot.is_last_shot else rally.end_timestamp

    @staticmethod
    def _reopen_shots(rally: Rally):
        for shot in rally.shots:
            shot.is_last_shot = False
            shot.role = None
            shot.timestamp_end = None
            shot.record_id = None

    @staticmethod
    def _history_from(rallies: List[Rally]) -> List[HistoryEntry]:
        history = []
        for rally in rallies:
            for shot in rally.shots:
                history.append(
                    HistoryEntry(kind="shot", timestamp=shot.timestamp, rally_index=rally.index, shot_index=shot.index)
                )
            history.append(HistoryEntry(kind="rally_end", timestamp=rally.end_timestamp, rally_index=rally.index))
        return history
