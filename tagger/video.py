# tagger/video.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConstrainedPlayback:
    """Loop (or stop) playback inside [start_time, end_time]."""

    enabled: bool = False
    start_time: float = 0.0
    end_time: float = 0.0
    loop_on_end: bool = True

    def __post_init__(self):
        if self.enabled and self.end_time < self.start_time:
            raise ValueError("end_time must be >= start_time")

    def clamp(self, t: float) -> float:
        if not self.enabled:
            return t
        return max(self.start_time, min(self.end_time, t))


DISABLED = ConstrainedPlayback()


class VideoController:
    """
    Playback surface used by both tagging phases.

    `seek` returns only once the frame at the new time is available, so a
    caller reading `get_current_time()` right after a seek sees the target.
    """

    def __init__(self, duration: float, fps: float = 30.0):
        if duration < 0:
            raise ValueError("duration must be non-negative")
        if fps <= 0:
            raise ValueError("fps must be positive")

        self.duration = float(duration)
        self.fps = float(fps)
        self.speed = 1.0
        self.is_playing = False
        self.constraint: ConstrainedPlayback = DISABLED
        self._time = 0.0

    # ---------------------------------------------------------
    # Core API
    # ---------------------------------------------------------

    def seek(self, t: float):
        self._time = max(0.0, min(self.duration, float(t)))
        self._on_seek(self._time)

    def play(self):
        self.is_playing = True

    def pause(self):
        self.is_playing = False

    def step_frame(self, direction: int, ignore_bounds: bool = False):
        """Move one frame forward (+1) or back (-1); pauses playback."""
        if direction not in (-1, 1):
            raise ValueError("direction must be -1 or 1")

        self.pause()
        target = self._time + direction / self.fps
        if not ignore_bounds:
            target = self.constraint.clamp(target)
        self.seek(target)

    def get_current_time(self) -> float:
        return self._time

    def set_playback_speed(self, speed: float):
        if speed <= 0:
            raise ValueError("speed must be positive")
        self.speed = float(speed)

    def set_constrained_playback(self, constraint: ConstrainedPlayback):
        self.constraint = constraint

    # ---------------------------------------------------------
    # Hooks
    # ---------------------------------------------------------

    def _on_seek(self, t: float):
        pass


class ManualClockVideo(VideoController):
    """
    Headless clock. Time only moves through `advance`, which makes the
    tagging machines fully deterministic under test and in the replay CLI.
    """

    def __init__(self, duration: float = 3600.0, fps: float = 30.0):
        super().__init__(duration=duration, fps=fps)

    def advance(self, wall_seconds: float) -> float:
        if wall_seconds < 0:
            raise ValueError("wall_seconds must be non-negative")
        if not self.is_playing:
            return self._time

        t = self._time + wall_seconds * self.speed
        c = self.constraint

        if c.enabled and t > c.end_time:
            span = c.end_time - c.start_time
            if c.loop_on_end and span > 0:
                t = c.start_time + (t - c.start_time) % span
            else:
                t = c.end_time
                self.pause()

        if t >= self.duration:
            t = self.duration
            self.pause()

        self._time = t
        return self._time


class OpenCVVideo(VideoController):
    """
    Video file reader backed by cv2.VideoCapture.

    Playback itself is driven by the UI; this class owns the decoder
    position and exposes the frame at the current time.
    """

    def __init__(self, video_path: str):
        cap = cv2.VideoCapture(video_path)
        if not cap.isOpened():
            raise RuntimeError(f"Cannot open video: {video_path}")

        fps = cap.get(cv2.CAP_PROP_FPS)
        if not fps or fps <= 0:
            fps = 30.0  # fallback

        frames = cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0
        super().__init__(duration=frames / fps, fps=fps)

        self.video_path = video_path
        self._cap = cap
        self._frame: Optional[np.ndarray] = None

        logger.info(f"Opened {video_path}: {self.duration:.1f}s @ {fps:.2f} fps")

    def _on_seek(self, t: float):
        self._cap.set(cv2.CAP_PROP_POS_MSEC, t * 1000.0)
        ret, frame = self._cap.read()
        if not ret:
            logger.warning(f"No frame at {t:.3f}s in {self.video_path}")
            self._frame = None
            return
        self._frame = frame

    def current_frame(self) -> Optional[np.ndarray]:
        if self._frame is None:
            self._on_seek(self._time)
        return self._frame

    def release(self):
        self._cap.release()
