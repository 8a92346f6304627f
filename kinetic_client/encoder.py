"""
JPEG encoder for outbound frames.

Both steps may fail independently and both raise EncodeError, which the
capture loop absorbs as a skipped tick.
"""

import asyncio
import base64
import binascii

import cv2
import numpy as np

from .errors import EncodeError


class JpegEncoder:
    """Lossy frame compression plus base64 conversion for the text transport."""

    mime_type = "image/jpeg"

    async def encode(self, frame: np.ndarray, quality: float) -> bytes:
        """
        Compress a BGR frame to JPEG.

        Args:
            frame: BGR image
            quality: Quality factor in (0, 1]
        """
        return await asyncio.to_thread(self._encode, frame, quality)

    def _encode(self, frame: np.ndarray, quality: float) -> bytes:
        if not 0.0 < quality <= 1.0:
            raise EncodeError(f"quality out of range: {quality}")
        params = [int(cv2.IMWRITE_JPEG_QUALITY), int(round(quality * 100))]
        try:
            ok, buf = cv2.imencode(".jpg", frame, params)
        except cv2.error as e:
            raise EncodeError(f"jpeg encode failed: {e}") from e
        if not ok or buf is None or buf.size == 0:
            raise EncodeError("jpeg encode failed")
        return buf.tobytes()

    async def to_portable_text(self, data: bytes) -> str:
        """Convert compressed bytes to base64 ASCII."""
        if not data:
            raise EncodeError("empty payload")
        try:
            return await asyncio.to_thread(self._b64, data)
        except (TypeError, binascii.Error) as e:
            raise EncodeError(f"base64 conversion failed: {e}") from e

    @staticmethod
    def _b64(data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")
