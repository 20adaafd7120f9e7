from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Literal


Side = Literal["player_a", "player_b"]
SIDES = ("player_a", "player_b")

EndCondition = Literal["winner", "in_net", "long", "forced_error", "let"]
END_CONDITIONS = ("winner", "in_net", "long", "forced_error", "let")
FAULT_CONDITIONS = ("in_net", "long", "forced_error")

ShotRole = Literal["serve", "receive", "regular", "error"]
SHOT_ROLES = ("serve", "receive", "regular", "error")

TaggingPhase = Literal[
    "not_started",
    "phase1_in_progress",
    "phase1_complete",
    "phase2_in_progress",
    "phase2_complete",
]
TAGGING_PHASES = (
    "not_started",
    "phase1_in_progress",
    "phase1_complete",
    "phase2_in_progress",
    "phase2_complete",
)

ANNOTATION_FIELDS = (
    "direction",
    "depth",
    "spin",
    "stroke",
    "intent",
    "quality",
    "fault_placement",
    "error_type",
)

# Persisted shot columns written by Phase 2
PHASE2_SHOT_COLUMNS = (
    "shot_origin",
    "shot_target",
    "shot_length",
    "serve_spin",
    "wing",
    "intent",
    "shot_quality",
    "error_placement",
    "error_type",
    "rally_end_role",
)


def other_side(side: str) -> str:
    if side not in SIDES:
        raise ValueError(f"Invalid side: {side}")
    return "player_b" if side == "player_a" else "player_a"


def is_fault(end_condition: str) -> bool:
    return end_condition in FAULT_CONDITIONS


def derive_winner(last_striker: str, end_condition: str) -> str:
    """
    The side that struck the last shot wins, unless that shot was a fault.
    """
    if end_condition not in END_CONDITIONS:
        raise ValueError(f"Invalid end condition: {end_condition}")

    if is_fault(end_condition):
        return other_side(last_striker)
    return last_striker


def resolve_role(shot_index: int, is_last_shot: bool, rally_is_error: bool) -> str:
    """
    Single structural role of a shot.

    Serve wins over everything (a service fault is annotated as a serve),
    error wins over receive.
    """
    if shot_index == 1:
        return "serve"
    if is_last_shot and rally_is_error:
        return "error"
    if shot_index == 2:
        return "receive"
    return "regular"


def shot_label(shot_index: int) -> str:
    if shot_index == 1:
        return "serve"
    if shot_index == 2:
        return "receive"
    if shot_index == 3:
        return "third_ball"
    return "rally_shot"


@dataclass(frozen=True)
class Score:
    player_a: int = 0
    player_b: int = 0

    def credit(self, side: str) -> "Score":
        if side == "player_a":
            return Score(self.player_a + 1, self.player_b)
        if side == "player_b":
            return Score(self.player_a, self.player_b + 1)
        raise ValueError(f"Invalid side: {side}")

    def of(self, side: str) -> int:
        if side == "player_a":
            return self.player_a
        if side == "player_b":
            return self.player_b
        raise ValueError(f"Invalid side: {side}")

    @property
    def total(self) -> int:
        return self.player_a + self.player_b


@dataclass(frozen=True)
class ServerResult:
    server: str
    receiver: str


@dataclass
class Shot:
    index: int
    timestamp: float
    striker: str
    timestamp_end: Optional[float] = None
    is_last_shot: bool = False
    role: Optional[str] = None

    # Phase 2 annotation
    direction: Optional[str] = None
    depth: Optional[str] = None
    spin: Optional[str] = None
    stroke: Optional[str] = None
    intent: Optional[str] = None
    quality: Optional[str] = None
    fault_placement: Optional[str] = None
    error_type: Optional[str] = None

    record_id: Optional[str] = None

    @property
    def is_serve(self) -> bool:
        return self.index == 1

    @property
    def is_receive(self) -> bool:
        return self.index == 2

    @property
    def label(self) -> str:
        return shot_label(self.index)

    def annotation(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in ANNOTATION_FIELDS}

    def merge_annotation(self, fields: Dict[str, Any]):
        for name, value in fields.items():
            if name not in ANNOTATION_FIELDS:
                raise ValueError(f"Not an annotation field: {name}")
            setattr(self, name, value)

    def clear_annotation(self):
        for name in ANNOTATION_FIELDS:
            setattr(self, name, None)


@dataclass
class Rally:
    index: int
    server: str
    receiver: str
    shots: List[Shot]
    end_condition: str
    end_timestamp: float
    winner: str
    score_before: Score
    score_after: Score
    record_id: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return is_fault(self.end_condition)

    @property
    def is_scoring(self) -> bool:
        return self.end_condition != "let"

    @property
    def last_shot(self) -> Shot:
        return self.shots[-1]

    @property
    def timestamp_start(self) -> float:
        return self.shots[0].timestamp

    @property
    def error_placement(self) -> Optional[str]:
        if not self.is_error:
            return None
        if self.last_shot.fault_placement:
            return self.last_shot.fault_placement
        return "in_net" if self.end_condition == "in_net" else "long"

    @property
    def point_end_type(self) -> Optional[str]:
        if not self.is_scoring:
            return "let"
        if not self.is_error:
            return "winnerShot"

        last = self.last_shot
        if last.index == 1:
            return "serviceFault"
        if last.index == 2:
            return "receiveError"
        if last.error_type == "forced":
            return "forcedError"
        if last.error_type == "unforced":
            return "unforcedError"
        # Rally errors on shot 3+ stay open until Phase 2 answers them
        return None


@dataclass
class SetProgress:
    phase: str = "not_started"
    last_rally_index: int = 0
    last_shot_index: int = 0
    total_rallies: Optional[int] = None
    total_shots: Optional[int] = None

    def __post_init__(self):
        if self.phase not in TAGGING_PHASES:
            raise ValueError(f"Invalid tagging phase: {self.phase}")
        if self.last_rally_index < 0 or self.last_shot_index < 0:
            raise ValueError("progress markers must be non-negative")

    def to_fields(self) -> Dict[str, Any]:
        return {
            "tagging_phase": self.phase,
            "phase1_last_rally": self.last_rally_index,
            "phase1_total_rallies": self.total_rallies,
            "phase2_last_shot_index": self.last_shot_index,
            "phase2_total_shots": self.total_shots,
        }

    @staticmethod
    def from_fields(d: Dict[str, Any]) -> "SetProgress":
        return SetProgress(
            phase=str(d.get("tagging_phase") or "not_started"),
            last_rally_index=int(d.get("phase1_last_rally") or 0),
            last_shot_index=int(d.get("phase2_last_shot_index") or 0),
            total_rallies=(int(d["phase1_total_rallies"]) if d.get("phase1_total_rallies") is not None else None),
            total_shots=(int(d["phase2_total_shots"]) if d.get("phase2_total_shots") is not None else None),
        )


# --- REPLAY / TIMELINE TYPES ---

@dataclass(frozen=True)
class ScoreSnapshot:
    rally_index: int
    timestamp: float
    server: str
    winner: Optional[str]
    is_scoring: bool
    score_before: Score
    score_after: Score
    set_finished: bool
