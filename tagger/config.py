from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

PROJECT_ROOT = Path(__file__).resolve().parent.parent
MATCHES_DIR = PROJECT_ROOT / "matches"
DEFAULT_STORE_PATH = MATCHES_DIR / "tagging_store.json"

SCHEMA_VERSION = 1
DEFAULT_BEST_OF = 5

POINTS_TO_WIN_SET = 11
WIN_BY = 2
DEUCE_AT = 10
SERVES_PER_TURN = 2
MAX_PLAUSIBLE_SCORE = 30


@dataclass
class TaggingConfig:
    """Session tunables shared by both tagging phases."""

    speed_presets: Dict[str, float] = field(
        default_factory=lambda: {"normal": 1.0, "tag": 0.5, "ff": 2.0}
    )
    review_speed: float = 0.5
    navigation_lead_seconds: float = 0.3
    navigation_tail_seconds: float = 2.0
    preview_buffer_seconds: float = 0.3
    duplicate_tag_tolerance: float = 0.01
    auto_flush: bool = True

    def __post_init__(self) -> None:
        for mode in ("normal", "tag", "ff"):
            if mode not in self.speed_presets:
                raise ValueError(f"speed preset missing: {mode}")
            if self.speed_presets[mode] <= 0:
                raise ValueError(f"speed preset must be positive: {mode}")

    def speed_for(self, mode: str) -> float:
        return self.speed_presets[mode]
