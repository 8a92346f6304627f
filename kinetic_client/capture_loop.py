"""
Capture Loop - fixed-cadence frame capture and submission.

Every tick spawns an independent task that captures, encodes and submits
one frame. Ticks are paced by the wall clock, never by how long the
previous frame took, so submissions from neighbouring ticks may overlap
and complete out of order.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

import numpy as np

from .errors import DeviceError, EncodeError
from .message import EncodedFrame

logger = logging.getLogger(__name__)

# 2 fps keeps the inference service within its rate limits while still
# catching discrete gesture changes.
FRAME_INTERVAL_S = 0.5
JPEG_QUALITY = 0.6


class FrameSource(Protocol):
    async def get_frame(self) -> np.ndarray: ...


class FrameEncoder(Protocol):
    mime_type: str

    async def encode(self, frame: np.ndarray, quality: float) -> bytes: ...

    async def to_portable_text(self, data: bytes) -> str: ...


class CaptureLoop:
    """
    Periodic encode-and-submit scheduler.

    A failure in one tick (capture, encode, conversion or submit) only
    skips that tick. The loop stops only through stop().
    """

    def __init__(
        self,
        frame_source: FrameSource,
        encoder: FrameEncoder,
        submit: Callable[[EncodedFrame], Awaitable[Any]],
        interval: float = FRAME_INTERVAL_S,
        quality: float = JPEG_QUALITY,
    ):
        """
        Initialize the capture loop.

        Args:
            frame_source: Capture device collaborator
            encoder: Image encoder collaborator
            submit: Coroutine receiving each encoded frame, normally
                SessionClient.send_frame
            interval: Tick period in seconds
            quality: JPEG quality factor in (0, 1]
        """
        self.frame_source = frame_source
        self.encoder = encoder
        self.submit = submit
        self.interval = interval
        self.quality = quality

        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

        self._ticks = 0
        self._submitted = 0
        self._dropped = 0
        self._skipped = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start ticking. Must be called from the event loop."""
        if self._running:
            return
        self._running = True
        self._timer_task = asyncio.create_task(self._run())
        logger.info(f"Capture loop started ({1.0 / self.interval:.1f} fps, quality {self.quality})")

    async def stop(self) -> None:
        """Stop ticking and cancel in-flight submissions."""
        if not self._running:
            return
        self._running = False

        tasks = list(self._inflight)
        if self._timer_task:
            tasks.append(self._timer_task)
            self._timer_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

        logger.info("Capture loop stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval

        while self._running:
            delay = next_tick - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            if not self._running:
                break

            self._spawn_tick()

            next_tick += self.interval
            now = loop.time()
            if next_tick <= now:
                # Fell behind (e.g. a suspended laptop): drop missed ticks
                missed = int((now - next_tick) // self.interval) + 1
                next_tick += missed * self.interval
                logger.debug(f"Capture loop skipped {missed} late tick(s)")

    def _spawn_tick(self) -> None:
        self._ticks += 1
        task = asyncio.create_task(self._process_tick(self._ticks))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _process_tick(self, tick: int) -> None:
        """Capture, encode and submit a single frame."""
        captured_at = time.monotonic()
        try:
            raw = await self.frame_source.get_frame()
            jpeg = await self.encoder.encode(raw, self.quality)
            text = await self.encoder.to_portable_text(jpeg)
        except (DeviceError, EncodeError) as e:
            self._skipped += 1
            logger.debug(f"Tick {tick} skipped: {e.reason}")
            return
        except Exception as e:
            self._skipped += 1
            logger.warning(f"Tick {tick} skipped: unexpected error: {e}")
            return

        frame = EncodedFrame(data=text, captured_at=captured_at, mime_type=self.encoder.mime_type)
        try:
            sent = await self.submit(frame)
        except Exception as e:
            self._skipped += 1
            logger.warning(f"Tick {tick} submit failed: {e}")
            return

        if sent is False:
            # Session not active; the frame was dropped, not sent
            self._dropped += 1
            return
        self._submitted += 1

    def get_stats(self) -> dict:
        """Get capture statistics."""
        return {
            "running": self._running,
            "ticks": self._ticks,
            "submitted": self._submitted,
            "dropped": self._dropped,
            "skipped": self._skipped,
            "inflight": len(self._inflight),
        }
