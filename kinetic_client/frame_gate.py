"""
Frame Quality Gate - Validates camera frames before encoding.

A broken frame is not worth an upload: it costs rate-limit budget and can
only confuse gesture inference. Frames rejected here turn into a skipped
capture tick.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class FrameValidationResult:
    """Result of frame validation."""
    valid: bool
    reason: str
    frame: Optional[np.ndarray] = None


class FrameGate:
    """
    Frame quality gate for camera reads.

    Validates:
    - cap.read() success
    - Frame not empty/None
    - Frame has shape (H, W, 3)
    - Shape consistency across frames
    - Frame is not uniformly black (covered lens, dead sensor)
    """

    def __init__(self, allow_shape_change: bool = True):
        """
        Initialize FrameGate.

        Args:
            allow_shape_change: If False, a frame whose shape differs from the
                last valid frame is rejected.
        """
        self.allow_shape_change = allow_shape_change

        self._last_valid_shape: Optional[Tuple[int, int, int]] = None
        self._consecutive_invalid: int = 0
        self._total_invalid_count: int = 0
        self._total_valid_count: int = 0

    def validate(self, ok: bool, frame: Optional[np.ndarray]) -> FrameValidationResult:
        """
        Validate a frame from cap.read().

        Args:
            ok: The boolean return value from cap.read()
            frame: The frame array from cap.read()

        Returns:
            FrameValidationResult with valid flag, reason, and frame if valid.
        """
        if not ok:
            return self._invalid("read_failed")

        if frame is None:
            return self._invalid("frame_none")

        if frame.size == 0:
            return self._invalid("empty_frame")

        if len(frame.shape) != 3:
            return self._invalid("invalid_dims")

        if frame.shape[2] != 3:
            return self._invalid("invalid_channels")

        if not self.allow_shape_change and self._last_valid_shape is not None:
            if frame.shape != self._last_valid_shape:
                logger.warning(
                    f"Frame shape changed from {self._last_valid_shape} to {frame.shape}"
                )
                return self._invalid("shape_changed")

        if self._is_blank(frame):
            return self._invalid("blank_frame")

        self._mark_valid(frame.shape)
        return FrameValidationResult(True, "ok", frame)

    def _is_blank(self, frame: np.ndarray) -> bool:
        """
        Cheap check for an all-black frame.

        Samples five pixels rather than scanning the whole image.
        """
        h, w = frame.shape[:2]
        try:
            samples = [
                frame[h // 4, w // 4],
                frame[h // 4, 3 * w // 4],
                frame[h // 2, w // 2],
                frame[3 * h // 4, w // 4],
                frame[3 * h // 4, 3 * w // 4],
            ]
            if all(np.array_equal(s, samples[0]) for s in samples):
                if np.mean(samples[0]) < 5:  # Nearly black
                    return True
        except (IndexError, ValueError):
            return True

        return False

    def _invalid(self, reason: str) -> FrameValidationResult:
        self._total_invalid_count += 1
        self._consecutive_invalid += 1
        return FrameValidationResult(False, reason)

    def _mark_valid(self, shape: Tuple[int, int, int]) -> None:
        self._total_valid_count += 1
        self._consecutive_invalid = 0
        self._last_valid_shape = shape

    def reset(self) -> None:
        """Reset all tracking state."""
        self._last_valid_shape = None
        self._consecutive_invalid = 0

    def get_stats(self) -> dict:
        """Get validation statistics."""
        total = self._total_valid_count + self._total_invalid_count
        return {
            "total_frames": total,
            "valid_frames": self._total_valid_count,
            "invalid_frames": self._total_invalid_count,
            "valid_rate": self._total_valid_count / total if total > 0 else 0.0,
            "consecutive_invalid": self._consecutive_invalid,
            "last_valid_shape": self._last_valid_shape,
        }
