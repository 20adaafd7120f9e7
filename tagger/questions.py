"""
Phase 2 question catalogue.

Everything that depends on a shot's role is dispatched from one table
(QUESTION_SEQUENCES) plus the role-aware column mapping below: which
questions are asked, in which order, and how answers land in persisted
shot columns.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from tagger.models import Rally, Shot, SIDES


POSITIONS = ("left", "mid", "right")
DIRECTIONS = tuple(f"{origin}_{target}" for origin in POSITIONS for target in POSITIONS)
DEPTHS = ("short", "halflong", "deep")
SPINS = ("underspin", "nospin", "topspin")
STROKES = ("forehand", "backhand")
QUALITIES = ("average", "high")
INTENTS = ("defensive", "neutral", "aggressive")
FAULT_PLACEMENTS = ("in_net", "long")
ERROR_TYPES = ("forced", "unforced")

DEFAULT_QUALITY = "average"

QUESTION_SEQUENCES: Dict[str, Tuple[str, ...]] = {
    "serve": ("direction", "depth", "spin"),
    "error": ("direction", "stroke", "intent", "fault_placement", "error_type"),
    "receive": ("stroke_quality", "direction", "intent"),
    "regular": ("stroke_quality", "direction", "intent"),
}

STEP_CHOICES: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "direction": {"direction": DIRECTIONS},
    "depth": {"depth": DEPTHS},
    "spin": {"spin": SPINS},
    "stroke": {"stroke": STROKES},
    "stroke_quality": {"stroke": STROKES, "quality": QUALITIES},
    "intent": {"intent": INTENTS},
    "fault_placement": {"fault_placement": FAULT_PLACEMENTS},
    "error_type": {"error_type": ERROR_TYPES},
}

QUESTION_LABELS = {
    "direction": "Shot Direction",
    "depth": "Serve Depth",
    "spin": "Spin Type",
    "stroke": "Stroke Type",
    "stroke_quality": "Stroke & Quality",
    "intent": "Shot Intent",
    "fault_placement": "Fault Placement",
    "error_type": "Error Type",
}

# UI value -> persisted value
DEPTH_TO_COLUMN = {"short": "short", "halflong": "half_long", "deep": "long"}
SPIN_TO_COLUMN = {"underspin": "under", "nospin": "no_spin", "topspin": "top"}
STROKE_TO_COLUMN = {"forehand": "FH", "backhand": "BH"}
PLACEMENT_TO_RESULT = {"in_net": "in_net", "long": "missed_long"}


def _reverse(mapping: Dict[str, str]) -> Dict[str, str]:
    return {v: k for k, v in mapping.items()}


COLUMN_TO_DEPTH = _reverse(DEPTH_TO_COLUMN)
COLUMN_TO_SPIN = _reverse(SPIN_TO_COLUMN)
COLUMN_TO_STROKE = _reverse(STROKE_TO_COLUMN)


@dataclass(frozen=True)
class Question:
    step: str
    label: str
    choices: Dict[str, Tuple[str, ...]]

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(self.choices)


def sequence_for(role: str) -> Tuple[str, ...]:
    if role not in QUESTION_SEQUENCES:
        raise ValueError(f"Invalid shot role: {role}")
    return QUESTION_SEQUENCES[role]


def question_for(role: str, step: str) -> Question:
    if step not in sequence_for(role):
        raise ValueError(f"{step} is not asked for {role} shots")

    label = QUESTION_LABELS[step]
    if role == "serve" and step == "direction":
        label = "Serve Direction"

    return Question(step=step, label=label, choices=STEP_CHOICES[step])


def parse_answer(step: str, value: Any) -> Dict[str, str]:
    """
    Normalize an answer into annotation fields.

    stroke_quality takes a single stroke (quality defaults to average),
    a (stroke, quality) pair, or a dict with both keys.
    """
    if step not in STEP_CHOICES:
        raise ValueError(f"Unknown question step: {step}")

    choices = STEP_CHOICES[step]

    if step == "stroke_quality":
        if isinstance(value, dict):
            fields = {"stroke": value.get("stroke"), "quality": value.get("quality", DEFAULT_QUALITY)}
        elif isinstance(value, (tuple, list)) and len(value) == 2:
            fields = {"stroke": value[0], "quality": value[1]}
        else:
            fields = {"stroke": value, "quality": DEFAULT_QUALITY}
    else:
        (name,) = choices
        fields = {name: value}

    for name, answer in fields.items():
        if answer not in choices[name]:
            raise ValueError(f"Invalid {name}: {answer}")

    return fields


# =========================================================
# DIRECTION HELPERS
# =========================================================

def split_direction(direction: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not direction:
        return None, None

    parts = direction.split("_")
    if len(parts) != 2 or parts[0] not in POSITIONS or parts[1] not in POSITIONS:
        raise ValueError(f"Invalid direction: {direction}")

    return parts[0], parts[1]


def join_direction(origin: Optional[str], target: Optional[str]) -> Optional[str]:
    if not origin or not target:
        return None
    return f"{origin}_{target}"


_MIRROR = {"left": "right", "mid": "mid", "right": "left"}


def mirror_direction(direction: str) -> str:
    origin, target = split_direction(direction)
    return f"{_MIRROR[origin]}_{_MIRROR[target]}"


def suggested_origin(previous_direction: Optional[str]) -> Optional[str]:
    """
    Where the next shot starts: a ball landing on one side of the table is
    struck from the opposite side of the receiver's own perspective.
    """
    if not previous_direction:
        return None
    _, target = split_direction(previous_direction)
    return _MIRROR[target]


class DirectionLayout:
    """
    Per-player mirroring of the direction buttons.

    Rotation only changes which physical button maps to which logical
    direction; stored values are always logical.
    """

    def __init__(self, rotations: Optional[Dict[str, bool]] = None):
        self._rotations = {side: False for side in SIDES}
        for side, rotated in (rotations or {}).items():
            self.set_rotation(side, rotated)

    def set_rotation(self, side: str, rotated: bool):
        if side not in SIDES:
            raise ValueError(f"Invalid side: {side}")
        self._rotations[side] = bool(rotated)

    def is_rotated(self, side: str) -> bool:
        return self._rotations[side]

    def to_logical(self, side: str, button: str) -> str:
        if button not in DIRECTIONS:
            raise ValueError(f"Invalid direction button: {button}")
        return mirror_direction(button) if self.is_rotated(side) else button

    def buttons(self, side: str) -> List[Tuple[str, str]]:
        """(physical button, logical direction) pairs in display order."""
        return [(button, self.to_logical(side, button)) for button in DIRECTIONS]


# =========================================================
# PERSISTED COLUMNS
# =========================================================

def derive_rally_end_role(shot: Shot, rally: Rally) -> Optional[str]:
    """
    none            shot did not end the rally (or the rally was a let)
    winner          rally-ending shot stayed in play
    unforced_error  service fault, or an error answered as unforced
    forced_error    an error answered as forced
    None            error on shot 2+ still waiting for its classification
    """
    if not shot.is_last_shot or not rally.is_scoring:
        return "none"

    if not rally.is_error:
        return "winner"

    if shot.index == 1:
        return "unforced_error"
    if shot.error_type == "forced":
        return "forced_error"
    if shot.error_type == "unforced":
        return "unforced_error"
    return None


def shot_result(shot: Shot, rally: Rally) -> str:
    if not (shot.is_last_shot and rally.is_error):
        return "in_play"
    return PLACEMENT_TO_RESULT[rally.error_placement]


def annotation_to_columns(shot: Shot, rally: Rally) -> Dict[str, Any]:
    """Full persisted Phase 2 field set for a shot, dispatched on its role."""
    origin, target = split_direction(shot.direction)

    columns: Dict[str, Any] = {
        "shot_origin": origin,
        "shot_target": target,
        "shot_length": None,
        "serve_spin": None,
        "wing": None,
        "intent": None,
        "shot_quality": None,
        "error_placement": None,
        "error_type": None,
        "shot_result": shot_result(shot, rally),
        "rally_end_role": derive_rally_end_role(shot, rally),
    }

    role = shot.role
    if role == "serve":
        columns["shot_length"] = DEPTH_TO_COLUMN.get(shot.depth)
        columns["serve_spin"] = SPIN_TO_COLUMN.get(shot.spin)
        if shot.is_last_shot and rally.is_error:
            columns["error_placement"] = rally.error_placement
            columns["error_type"] = "unforced"
    elif role == "error":
        columns["wing"] = STROKE_TO_COLUMN.get(shot.stroke)
        columns["intent"] = shot.intent
        columns["error_placement"] = rally.error_placement
        columns["error_type"] = shot.error_type
    else:
        columns["wing"] = STROKE_TO_COLUMN.get(shot.stroke)
        columns["shot_quality"] = shot.quality
        columns["intent"] = shot.intent

    return columns


def columns_to_annotation(record: Dict[str, Any]) -> Dict[str, Any]:
    """Reverse of annotation_to_columns, used when resuming Phase 2."""
    fault_placement = None
    if record.get("role") == "error":
        fault_placement = record.get("error_placement")

    return {
        "direction": join_direction(record.get("shot_origin"), record.get("shot_target")),
        "depth": COLUMN_TO_DEPTH.get(record.get("shot_length")),
        "spin": COLUMN_TO_SPIN.get(record.get("serve_spin")),
        "stroke": COLUMN_TO_STROKE.get(record.get("wing")),
        "intent": record.get("intent"),
        "quality": record.get("shot_quality"),
        "fault_placement": fault_placement,
        "error_type": record.get("error_type") if record.get("role") == "error" else None,
    }


def is_answered(shot: Shot) -> bool:
    """Every field asked for the shot's role has a value."""
    if shot.role is None:
        return False

    for step in sequence_for(shot.role):
        for name in STEP_CHOICES[step]:
            if getattr(shot, name) is None:
                return False
    return True
