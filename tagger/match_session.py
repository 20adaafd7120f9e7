from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple

from tagger.annotation import AnnotationEngine
from tagger.capture import CaptureEngine
from tagger.config import DEFAULT_BEST_OF, TaggingConfig
from tagger.exceptions import InvalidActionError, ResumeError, SessionSetupError, StoreError
from tagger.finalize import MatchResult, finalize_match
from tagger.models import Rally, Score, SetProgress, Shot, SIDES
from tagger.persistence import PersistenceAdapter, SaveStatus, utc_now
from tagger.questions import DirectionLayout
from tagger.resume import ResumePlan, find_set, plan_resume
from tagger.serve_order import first_server_from_next, set_first_server, validate_set_score

logger = logging.getLogger(__name__)

SESSION_PHASES = ("setup", "phase1", "phase2", "complete")


def create_match(
    store,
    player_a_name: str,
    player_b_name: str,
    best_of: int = DEFAULT_BEST_OF,
    first_server: Optional[str] = None,
    detail_level: str = "full",
) -> str:
    if best_of <= 0 or best_of % 2 == 0:
        raise SessionSetupError("best_of must be a positive odd number")
    if first_server is not None and first_server not in SIDES:
        raise SessionSetupError(f"Invalid first server: {first_server}")

    record = store.create(
        "matches",
        {
            "best_of": best_of,
            "player_a_name": player_a_name,
            "player_b_name": player_b_name,
            "first_server": first_server,
            "sets_final_a": 0,
            "sets_final_b": 0,
            "winner": None,
            "detail_level": detail_level,
        },
    )
    return record["id"]


class TaggingSession:
    """
    One operator session on one set.

    Responsibilities:
    - Start, resume or redo the set's tagging
    - Own the Phase 1 and Phase 2 machines and the persistence adapter
    - Hand Phase 1 rallies to Phase 2, finalize the match at the end
    """

    def __init__(
        self,
        store,
        match_id: str,
        set_number: int,
        video=None,
        config: Optional[TaggingConfig] = None,
        on_phase1_complete: Optional[Callable[[List[Rally]], Any]] = None,
        on_complete: Optional[Callable[[List[Shot]], Any]] = None,
    ):
        if set_number < 1:
            raise SessionSetupError("set_number is 1-based")

        self.match = store.get_by_id("matches", match_id)
        if self.match is None:
            raise SessionSetupError(f"Match {match_id} not found")

        self.store = store
        self.match_id = match_id
        self.set_number = set_number
        self.video = video
        self.config = config or TaggingConfig()
        self.on_phase1_complete = on_phase1_complete
        self.on_complete = on_complete

        self.phase = "setup"
        self.set_id: Optional[str] = None
        self.persistence: Optional[PersistenceAdapter] = None
        self.capture: Optional[CaptureEngine] = None
        self.annotation: Optional[AnnotationEngine] = None
        self.layout = DirectionLayout()
        self.match_result: Optional[MatchResult] = None

    # ---------------------------------------------------------
    # Views
    # ---------------------------------------------------------

    @property
    def rallies(self) -> List[Rally]:
        if self.annotation is not None:
            return self.annotation.rallies
        if self.capture is not None:
            return self.capture.rallies
        return []

    @property
    def save_status(self) -> Optional[SaveStatus]:
        return self.persistence.status if self.persistence is not None else None

    def suggested_first_server(self) -> Optional[str]:
        """Preselection for the setup screen from the match's first server."""
        match_first = self.match.get("first_server")
        if match_first is None:
            return None
        return set_first_server(match_first, self.set_number)

    # ---------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------

    def open(self, redo: Optional[str] = None) -> str:
        """
        Start, resume or redo. Returns the session phase entered.
        A set that cannot be read or resumed falls back to setup.
        """
        try:
            record = find_set(self.store, self.match_id, self.set_number)

            if record is None:
                self.phase = "setup"
                return self.phase

            self.set_id = record["id"]

            if redo == "phase2_only" and record.get("tagging_phase") in ("not_started", "phase1_in_progress"):
                raise InvalidActionError("Phase 1 is not finished; nothing to redo in phase 2")

            if redo is not None:
                self.store.delete_tagging_data(self.set_id, redo)
                logger.info(f"Redo ({redo}) for set {self.set_number}")

            if (self.store.get_by_id("sets", self.set_id) or {}).get("tagging_phase", "not_started") == "not_started":
                self.phase = "setup"
                return self.phase

            plan = plan_resume(self.store, self.set_id)
        except (ResumeError, StoreError) as e:
            logger.error(f"Resume failed for set {self.set_number}, starting fresh: {e}")
            self.phase = "setup"
            return self.phase

        self._enter(plan)
        return self.phase

    def start(
        self,
        first_server: Optional[str] = None,
        next_server: Optional[str] = None,
        starting_score: Tuple[int, int] = (0, 0),
    ) -> CaptureEngine:
        """
        Fresh Phase 1. At 0-0 either server argument names who serves
        first; mid-set, `next_server` is who serves the next point.
        """
        if self.phase != "setup":
            raise InvalidActionError(f"Session already in {self.phase}")

        score_a, score_b = starting_score
        problems = validate_set_score(score_a, score_b)
        if problems:
            raise SessionSetupError("; ".join(problems))

        for side in (first_server, next_server):
            if side is not None and side not in SIDES:
                raise SessionSetupError(f"Invalid server: {side}")

        if next_server is not None:
            first = first_server_from_next(next_server, score_a, score_b)
            if first_server is not None and first_server != first:
                raise SessionSetupError(
                    f"{next_server} cannot serve at {score_a}-{score_b} if {first_server} served first"
                )
        elif first_server is not None:
            first = first_server
        else:
            raise SessionSetupError("No server chosen")

        set_fields = {
            "first_server": first,
            "setup_score_a": score_a,
            "setup_score_b": score_b,
            "tagging_started_at": utc_now(),
            "is_tagged": False,
        }

        if self.set_id is None:
            # open() may have fallen back without reading the store
            record = find_set(self.store, self.match_id, self.set_number)
            if record is not None:
                self.set_id = record["id"]

        if self.set_id is None:
            record = self.store.create(
                "sets",
                dict(set_fields, match_id=self.match_id, set_number=self.set_number, **SetProgress().to_fields()),
            )
            self.set_id = record["id"]
        else:
            # fresh start over whatever a failed resume left behind
            self.store.delete_tagging_data(self.set_id, "all")
            self.store.update("sets", self.set_id, set_fields)

        self.persistence = PersistenceAdapter(self.store, self.set_id, auto_flush=self.config.auto_flush)
        self.persistence.advance_progress("phase1_in_progress", last_rally_index=0)

        self.capture = CaptureEngine(
            first_server=first,
            starting_score=Score(score_a, score_b),
            video=self.video,
            persistence=self.persistence,
            config=self.config,
        )
        self.phase = "phase1"

        logger.info(f"Set {self.set_number} started at {score_a}-{score_b}, first server {first}")
        return self.capture

    def finish_phase1(self) -> AnnotationEngine:
        if self.phase != "phase1":
            raise InvalidActionError(f"Not in phase 1 (phase={self.phase})")

        rallies = self.capture.finish()

        if self.on_phase1_complete is not None:
            self.on_phase1_complete(rallies)

        return self._start_phase2(rallies, 0)

    def save(self) -> int:
        """Manual save: re-queue anything missing from the store and flush."""
        if self.persistence is None:
            return 0

        queued = self.persistence.bulk_save(self.rallies)
        if self.annotation is not None:
            self.annotation.save_all()
        return queued

    # ---------------------------------------------------------
    # Internals
    # ---------------------------------------------------------

    def _enter(self, plan: ResumePlan):
        self.persistence = PersistenceAdapter(
            self.store, self.set_id, progress=plan.progress, auto_flush=self.config.auto_flush
        )
        self.persistence.track(plan.rallies)

        if plan.phase == "phase1":
            self.capture = CaptureEngine(
                first_server=plan.first_server,
                starting_score=plan.starting_score,
                video=self.video,
                persistence=self.persistence,
                config=self.config,
                rallies=plan.rallies,
            )
            self.phase = "phase1"
        elif plan.phase == "phase2":
            self._start_phase2(plan.rallies, plan.shot_index)
        else:
            self.annotation = AnnotationEngine(
                plan.rallies, config=self.config, start_index=plan.shot_index, layout=self.layout
            )
            self.phase = "complete"

    def _start_phase2(self, rallies: List[Rally], start_index: int) -> AnnotationEngine:
        self.annotation = AnnotationEngine(
            rallies,
            persistence=self.persistence,
            video=self.video,
            config=self.config,
            on_complete=self._on_annotation_complete,
            start_index=start_index,
            layout=self.layout,
        )
        self.phase = "phase2"

        logger.info(f"Phase 2 for set {self.set_number}: {self.annotation.total_shots} shots from shot {start_index}")

        if self.annotation.frontier >= self.annotation.total_shots:
            self.annotation.finish()

        return self.annotation

    def _on_annotation_complete(self, shots: List[Shot]):
        self.phase = "complete"

        try:
            self.match_result = finalize_match(self.store, self.match_id)
        except StoreError as e:
            logger.warning(f"Match finalization failed, will be recomputed next time: {e}")

        if self.on_complete is not None:
            self.on_complete(shots)
