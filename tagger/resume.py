"""
Rebuild an interrupted session from the store.

The set's progress marker decides which phase to re-enter; scores are
recomputed by replaying the stored rallies.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from tagger.exceptions import ResumeError, StoreError
from tagger.models import Rally, Score, SetProgress, Shot
from tagger.questions import columns_to_annotation
from tagger.timeline import replay_rallies

logger = logging.getLogger(__name__)

# progress phase -> phase to re-enter
REENTRY = {
    "not_started": "phase1",
    "phase1_in_progress": "phase1",
    "phase1_complete": "phase2",
    "phase2_in_progress": "phase2",
    "phase2_complete": "complete",
}


@dataclass
class ResumePlan:
    phase: str
    progress: SetProgress
    first_server: Optional[str]
    starting_score: Score
    rallies: List[Rally] = field(default_factory=list)
    score: Score = Score()
    shot_index: int = 0


@dataclass(frozen=True)
class Resumability:
    action: str  # "start" | "resume"
    phase: str = "not_started"
    set_id: Optional[str] = None
    redo_scopes: Tuple[str, ...] = ()


# ---------------------------------------------------------
# Loading
# ---------------------------------------------------------

def _shot_from_record(record: Dict[str, Any]) -> Shot:
    shot = Shot(
        index=int(record["shot_index"]),
        timestamp=float(record["timestamp_start"]),
        striker=record["striker"],
        timestamp_end=record.get("timestamp_end"),
        is_last_shot=bool(record.get("is_last_shot")),
        role=record.get("role"),
        record_id=record.get("id"),
    )
    # annotations are merged all-or-nothing, so untagged shots carry none
    if record.get("is_tagged"):
        shot.merge_annotation(columns_to_annotation(record))
    return shot


def _rally_from_record(record: Dict[str, Any], shots: List[Shot]) -> Rally:
    return Rally(
        index=int(record["rally_index"]),
        server=record["server"],
        receiver=record["receiver"],
        shots=shots,
        end_condition=record["end_condition"],
        end_timestamp=float(record["timestamp_end"]),
        winner=record["winner"],
        score_before=Score(int(record["score_before_a"]), int(record["score_before_b"])),
        score_after=Score(int(record["score_after_a"]), int(record["score_after_b"])),
        record_id=record.get("id"),
    )


def load_rallies(store, set_id: str) -> List[Rally]:
    """All rallies of a set ordered by ordinal, with their shots."""
    rallies = []

    for record in sorted(store.get_by_parent_id("rallies", set_id), key=lambda r: r["rally_index"]):
        shot_records = sorted(store.get_by_parent_id("shots", record["id"]), key=lambda s: s["shot_index"])
        if not shot_records:
            logger.warning(f"Rally {record['rally_index']} of set {set_id} has no shots; skipped")
            continue
        rallies.append(_rally_from_record(record, [_shot_from_record(s) for s in shot_records]))

    return rallies


def find_set(store, match_id: str, set_number: int) -> Optional[Dict[str, Any]]:
    for record in store.get_by_parent_id("sets", match_id):
        if record.get("set_number") == set_number:
            return record
    return None


# ---------------------------------------------------------
# Planning
# ---------------------------------------------------------

def plan_resume(store, set_id: str) -> ResumePlan:
    try:
        set_record = store.get_by_id("sets", set_id)
        if set_record is None:
            raise ResumeError(f"Set {set_id} not found")

        progress = SetProgress.from_fields(set_record)
        rallies = load_rallies(store, set_id)
    except (StoreError, ValueError, KeyError, TypeError) as e:
        raise ResumeError(f"Cannot read set {set_id}: {e}") from e

    phase = REENTRY[progress.phase]
    first_server = set_record.get("first_server")
    starting_score = Score(int(set_record.get("setup_score_a") or 0), int(set_record.get("setup_score_b") or 0))

    if phase != "phase1" or rallies:
        if first_server is None:
            raise ResumeError(f"Set {set_id} has rallies but no first server")

    if progress.last_rally_index > len(rallies):
        raise ResumeError(
            f"Progress marker says rally {progress.last_rally_index} but only {len(rallies)} stored"
        )
    if progress.last_rally_index < len(rallies):
        logger.warning(f"Set {set_id}: progress marker behind stored rallies, trusting stored rallies")

    total_shots = sum(len(r.shots) for r in rallies)
    if progress.last_shot_index > total_shots:
        raise ResumeError(f"Phase 2 marker {progress.last_shot_index} exceeds {total_shots} shots")

    score = starting_score
    if first_server is not None:
        score = replay_rallies(first_server, starting_score, rallies).final_score

    logger.info(f"Resuming set {set_id} in {phase} ({len(rallies)} rallies, shot marker {progress.last_shot_index})")

    return ResumePlan(
        phase=phase,
        progress=progress,
        first_server=first_server,
        starting_score=starting_score,
        rallies=rallies,
        score=score,
        shot_index=progress.last_shot_index,
    )


def resumability(store, match_id: str, set_number: int) -> Resumability:
    """What a set screen should offer: a fresh start, or resume plus redo."""
    record = find_set(store, match_id, set_number)
    if record is None:
        return Resumability(action="start")

    phase = record.get("tagging_phase") or "not_started"
    if phase == "not_started":
        return Resumability(action="start", set_id=record["id"])

    scopes = ("all",) if phase == "phase1_in_progress" else ("all", "phase2_only")
    return Resumability(action="resume", phase=phase, set_id=record["id"], redo_scopes=scopes)
