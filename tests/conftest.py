from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import numpy as np
import pytest

from kinetic_client.errors import DeviceError, EncodeError
from kinetic_client.frame_gate import FrameGate


class FakeHandle:
    def __init__(self, number: int) -> None:
        self.number = number
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False


class FakeTransport:
    """In-memory transport: tests push inbound messages and inspect sends."""

    def __init__(self) -> None:
        self.open_error: Optional[BaseException] = None
        self.open_gate: Optional[asyncio.Event] = None
        self.send_error: Optional[BaseException] = None
        self.opened: List[str] = []
        self.handles: List[FakeHandle] = []
        self.sent: List[Dict[str, Any]] = []
        self.closed: List[FakeHandle] = []

    async def open(self, session_id: str) -> FakeHandle:
        self.opened.append(session_id)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_error is not None:
            raise self.open_error
        handle = FakeHandle(len(self.handles) + 1)
        self.handles.append(handle)
        return handle

    async def send(self, handle: FakeHandle, payload: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(json.loads(payload))

    async def receive(self, handle: FakeHandle) -> AsyncIterator[str]:
        while True:
            item = await handle.inbox.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self, handle: FakeHandle) -> None:
        handle.closed = True
        self.closed.append(handle)

    def push(self, message: Any) -> None:
        """Deliver a message (dict, raw str, None for EOF, or an exception)."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self.handles[-1].inbox.put_nowait(message)


class Recorder:
    """Collects session callbacks."""

    def __init__(self) -> None:
        self.connected = 0
        self.updates: List[Dict[str, Any]] = []
        self.errors: List[str] = []

    async def on_connected(self) -> None:
        self.connected += 1

    async def on_state_update(self, fields: Dict[str, Any]) -> None:
        self.updates.append(fields)

    async def on_error(self, reason: str) -> None:
        self.errors.append(reason)


class FakeCamera:
    """Frame source with scripted per-tick failures."""

    def __init__(self, fail_on: Optional[set] = None) -> None:
        self.fail_on = fail_on or set()
        self.calls = 0
        self.opened = False
        self.open_error: Optional[BaseException] = None
        self.frame_gate = FrameGate()

    def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def close(self) -> None:
        self.opened = False

    async def get_frame(self) -> np.ndarray:
        self.calls += 1
        if self.calls in self.fail_on:
            raise DeviceError(f"read failed on call {self.calls}")
        frame = np.full((240, 320, 3), 128, dtype=np.uint8)
        frame[0, 0, 0] = self.calls % 256
        return frame


class FakeEncoder:
    mime_type = "image/jpeg"

    def __init__(self, fail_on: Optional[set] = None) -> None:
        self.fail_on = fail_on or set()
        self.calls = 0
        self.qualities: List[float] = []

    async def encode(self, frame: np.ndarray, quality: float) -> bytes:
        self.calls += 1
        self.qualities.append(quality)
        if self.calls in self.fail_on:
            raise EncodeError(f"encode failed on call {self.calls}")
        return bytes([int(frame[0, 0, 0])]) * 4

    async def to_portable_text(self, data: bytes) -> str:
        return data.hex()


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def fake_camera() -> FakeCamera:
    return FakeCamera()


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def until() -> Callable[..., Any]:
    return wait_until
