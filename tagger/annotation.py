"""
Phase 2: per-shot annotation.

Walks every shot of every rally in ordinal order and asks the question
sequence of the shot's role. Answers collect in a draft and land on the
shot (and in the store) only when the shot's last question is answered.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from tagger.config import TaggingConfig
from tagger.exceptions import InvalidActionError
from tagger.models import Rally, Shot
from tagger.persistence import utc_now
from tagger.questions import (
    DirectionLayout,
    Question,
    annotation_to_columns,
    is_answered,
    parse_answer,
    question_for,
    sequence_for,
    suggested_origin,
)
from tagger.video import ConstrainedPlayback

logger = logging.getLogger(__name__)


class AnnotationEngine:
    """
    Phase 2 state machine over (current_index, current_step).

    `frontier` is the first shot not yet finished; reviewing earlier shots
    never moves it back.
    """

    def __init__(
        self,
        rallies: List[Rally],
        persistence=None,
        video=None,
        config: Optional[TaggingConfig] = None,
        on_complete: Optional[Callable[[List[Shot]], Any]] = None,
        start_index: int = 0,
        layout: Optional[DirectionLayout] = None,
    ):
        self.rallies = list(rallies)
        self.persistence = persistence
        self.video = video
        self.config = config or TaggingConfig()
        self.on_complete = on_complete
        self.layout = layout or DirectionLayout()

        self._entries: List[Tuple[Rally, Shot]] = [
            (rally, shot)
            for rally in sorted(self.rallies, key=lambda r: r.index)
            for shot in sorted(rally.shots, key=lambda s: s.index)
        ]

        for _, shot in self._entries:
            if shot.role is None:
                raise ValueError(f"Shot {shot.index} has no role; rallies must be closed")

        if start_index < 0:
            raise ValueError("start_index must be non-negative")

        self.frontier = min(start_index, len(self._entries))
        self.current_index = self.frontier
        self.current_step = 0
        self._draft: Dict[str, Any] = {}
        self.is_complete = False

        self._preview()

    # =========================================================
    # VIEWS
    # =========================================================

    @property
    def shots(self) -> List[Shot]:
        return [shot for _, shot in self._entries]

    @property
    def total_shots(self) -> int:
        return len(self._entries)

    @property
    def current_rally(self) -> Optional[Rally]:
        if self.current_index >= len(self._entries):
            return None
        return self._entries[self.current_index][0]

    @property
    def current_shot(self) -> Optional[Shot]:
        if self.current_index >= len(self._entries):
            return None
        return self._entries[self.current_index][1]

    @property
    def is_reviewing(self) -> bool:
        return self.current_index < self.frontier

    @property
    def draft(self) -> Dict[str, Any]:
        return dict(self._draft)

    def current_question(self) -> Optional[Question]:
        shot = self.current_shot
        if shot is None:
            return None
        step = sequence_for(shot.role)[self.current_step]
        return question_for(shot.role, step)

    def suggested_origin(self) -> Optional[str]:
        """Origin side implied by the previous shot of the same rally."""
        if self.current_index == 0 or self.current_shot is None:
            return None

        rally, shot = self._entries[self.current_index]
        prev_rally, prev = self._entries[self.current_index - 1]
        if prev_rally is not rally:
            return None
        return suggested_origin(prev.direction)

    # =========================================================
    # ANSWERS
    # =========================================================

    def answer(self, value: Any) -> Optional[Question]:
        """
        Answer the current question. Returns the next question, or None
        once every shot is finished.
        """
        question = self.current_question()
        if question is None:
            raise InvalidActionError("Annotation is complete")

        fields = parse_answer(question.step, value)
        self._draft.update(fields)

        if self.current_step + 1 < len(sequence_for(self.current_shot.role)):
            self.current_step += 1
            return self.current_question()

        self._finish_shot()
        return self.current_question()

    def press(self, button: str) -> Optional[Question]:
        """Direction button press, mirrored for the striker's layout."""
        question = self.current_question()
        if question is None:
            raise InvalidActionError("Annotation is complete")
        if question.step != "direction":
            raise InvalidActionError(f"Direction buttons are not active for {question.step}")

        return self.answer(self.layout.to_logical(self.current_shot.striker, button))

    def set_rotation(self, side: str, rotated: bool):
        self.layout.set_rotation(side, rotated)

    # =========================================================
    # REVIEW NAVIGATION
    # =========================================================

    def go_to_shot(self, index: int):
        """Jump to any finished shot, or to the frontier."""
        if index < 0 or index > self.frontier or index >= len(self._entries):
            raise InvalidActionError(f"Shot {index} is not reachable (frontier={self.frontier})")

        self.current_index = index
        self.current_step = 0
        self._draft = {}
        self._preview()

    def step_back(self):
        if self.current_index == 0:
            raise InvalidActionError("Already at the first shot")
        self.go_to_shot(self.current_index - 1)

    def step_forward(self):
        if self.current_index >= self.frontier:
            raise InvalidActionError("Cannot move past the frontier")
        self.go_to_shot(self.current_index + 1)

    def return_to_frontier(self):
        if self.frontier >= len(self._entries):
            raise InvalidActionError("Every shot is already annotated")
        self.go_to_shot(self.frontier)

    def finish(self):
        """
        Enter the terminal state when no unanswered shot is left (a resumed
        set whose marker is already at the end, or a set without shots).
        """
        if self.frontier < len(self._entries):
            raise InvalidActionError(f"{len(self._entries) - self.frontier} shot(s) still unanswered")
        self._complete()

    # =========================================================
    # PERSISTENCE
    # =========================================================

    def save_all(self) -> int:
        """Re-send every answered shot. Returns how many were sent."""
        if self.persistence is None:
            return 0

        sent = 0
        for rally, shot in self._entries:
            if is_answered(shot):
                self._flush_shot(rally, shot)
                sent += 1
        self.persistence.flush()
        return sent

    # =========================================================
    # INTERNALS
    # =========================================================

    def _finish_shot(self):
        rally, shot = self._entries[self.current_index]

        shot.merge_annotation(self._draft)
        self._draft = {}
        self._flush_shot(rally, shot)

        if shot.is_last_shot and self.persistence is not None:
            # point end type is only known once the error shot is answered
            self.persistence.update_rally(rally)

        logger.debug(f"Shot {self.current_index + 1}/{len(self._entries)} annotated ({shot.role})")

        reviewing = self.is_reviewing
        if not reviewing:
            self.frontier = self.current_index + 1
            if self.persistence is not None:
                self.persistence.advance_progress(
                    "phase2_in_progress",
                    last_shot_index=self.frontier,
                    total_shots=len(self._entries),
                )

        if self.frontier >= len(self._entries):
            self._complete()
            return

        self.current_index = self.current_index + 1 if reviewing else self.frontier
        self.current_step = 0
        self._preview()

    def _flush_shot(self, rally: Rally, shot: Shot):
        if self.persistence is None:
            return
        fields = annotation_to_columns(shot, rally)
        fields["is_tagged"] = is_answered(shot)
        self.persistence.update_shot(rally.index, shot.index, fields)

    def _complete(self):
        if self.is_complete:
            self.current_index = len(self._entries)
            return

        self.is_complete = True
        self.current_index = len(self._entries)
        self.current_step = 0

        if self.persistence is not None:
            self.persistence.advance_progress(
                "phase2_complete",
                last_shot_index=len(self._entries),
                total_shots=len(self._entries),
                is_tagged=True,
                tagging_completed_at=utc_now(),
            )

        logger.info(f"Phase 2 complete: {len(self._entries)} shots annotated")

        if self.on_complete is not None:
            self.on_complete(self.shots)

    def _preview(self):
        shot = self.current_shot
        if self.video is None or shot is None:
            return

        buffer = self.config.preview_buffer_seconds
        start = max(0.0, shot.timestamp - buffer)

        self.video.set_constrained_playback(
            ConstrainedPlayback(enabled=True, start_time=start, end_time=shot.timestamp + buffer, loop_on_end=True)
        )
        self.video.set_playback_speed(self.config.review_speed)
        self.video.seek(start)
        self.video.play()
