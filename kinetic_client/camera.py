"""
Capture device backed by OpenCV.

Frames are read at a fixed 320x240. The size bounds upload payload and
encode latency, not display quality.
"""

import asyncio
import logging
import threading
from typing import Optional

import cv2
import numpy as np

from .errors import AcquisitionError, DeviceError
from .frame_gate import FrameGate

logger = logging.getLogger(__name__)

FRAME_WIDTH = 320
FRAME_HEIGHT = 240


class CameraSource:
    """
    Live video source for the capture loop.

    open() must succeed before get_frame() is used. Reads are serialized
    because overlapping capture ticks may call get_frame() concurrently.
    """

    def __init__(self, camera_index: int = 0, frame_gate: Optional[FrameGate] = None):
        """
        Initialize the camera source.

        Args:
            camera_index: OpenCV camera device index
            frame_gate: Validator applied to every read
        """
        self.camera_index = camera_index
        # A fixed device: a mid-stream shape change means a broken read
        self.frame_gate = frame_gate or FrameGate(allow_shape_change=False)
        self.cap: Optional[cv2.VideoCapture] = None
        self._read_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self.cap is not None and self.cap.isOpened()

    def open(self) -> None:
        """
        Open the camera device.

        Raises:
            AcquisitionError: if the device is missing or access is denied
        """
        if self.is_open:
            return

        logger.info(f"Opening camera index: {self.camera_index}")
        self.cap = cv2.VideoCapture(self.camera_index)

        if not self.cap.isOpened():
            self.cap.release()
            self.cap = None
            logger.error("Failed to open camera source")
            raise AcquisitionError("camera unavailable or permission denied")

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
        self.frame_gate.reset()

        width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = self.cap.get(cv2.CAP_PROP_FPS)
        logger.info(f"Camera opened: {width}x{height} @ {fps:.1f} fps")

    async def get_frame(self) -> np.ndarray:
        """
        Grab the current frame as a 320x240 BGR array.

        Raises:
            DeviceError: if the camera is closed or the read is invalid
        """
        return await asyncio.to_thread(self._read)

    def _read(self) -> np.ndarray:
        with self._read_lock:
            if self.cap is None:
                raise DeviceError("camera not open")
            ok, frame = self.cap.read()

        result = self.frame_gate.validate(ok, frame)
        if not result.valid:
            raise DeviceError(f"invalid frame: {result.reason}")

        frame = result.frame
        if frame.shape[1] != FRAME_WIDTH or frame.shape[0] != FRAME_HEIGHT:
            frame = cv2.resize(frame, (FRAME_WIDTH, FRAME_HEIGHT), interpolation=cv2.INTER_AREA)
        return frame

    def close(self) -> None:
        """Release the camera device."""
        with self._read_lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
                logger.info("Camera released")
