from __future__ import annotations

import base64

import cv2
import numpy as np
import pytest

from kinetic_client.camera import FRAME_HEIGHT, FRAME_WIDTH, CameraSource
from kinetic_client.encoder import JpegEncoder
from kinetic_client.errors import AcquisitionError, DeviceError, EncodeError
from kinetic_client.frame_gate import FrameGate


def _frame(h: int = FRAME_HEIGHT, w: int = FRAME_WIDTH) -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.integers(0, 255, size=(h, w, 3), dtype=np.uint8)


@pytest.mark.parametrize(
    "ok, frame, reason",
    [
        (False, None, "read_failed"),
        (True, None, "frame_none"),
        (True, np.zeros((0, 0, 3), dtype=np.uint8), "empty_frame"),
        (True, np.zeros((240, 320), dtype=np.uint8), "invalid_dims"),
        (True, np.zeros((240, 320, 4), dtype=np.uint8), "invalid_channels"),
        (True, np.zeros((240, 320, 3), dtype=np.uint8), "blank_frame"),
    ],
)
def test_frame_gate_rejects(ok, frame, reason) -> None:
    result = FrameGate().validate(ok, frame)
    assert result.valid is False
    assert result.reason == reason


def test_frame_gate_accepts_and_tracks_shape() -> None:
    gate = FrameGate(allow_shape_change=False)
    assert gate.validate(True, _frame()).valid is True

    changed = gate.validate(True, _frame(480, 640))
    assert changed.valid is False
    assert changed.reason == "shape_changed"
    assert gate.get_stats()["consecutive_invalid"] == 1

    assert gate.validate(True, _frame()).valid is True
    stats = gate.get_stats()
    assert stats["valid_frames"] == 2
    assert stats["invalid_frames"] == 1
    assert stats["consecutive_invalid"] == 0


@pytest.mark.asyncio
async def test_encoder_produces_jpeg_base64() -> None:
    encoder = JpegEncoder()
    jpeg = await encoder.encode(_frame(), 0.6)
    assert jpeg[:2] == b"\xff\xd8"

    text = await encoder.to_portable_text(jpeg)
    assert base64.b64decode(text) == jpeg

    decoded = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == (FRAME_HEIGHT, FRAME_WIDTH, 3)


@pytest.mark.asyncio
async def test_lower_quality_gives_smaller_payload() -> None:
    encoder = JpegEncoder()
    frame = _frame()
    assert len(await encoder.encode(frame, 0.3)) < len(await encoder.encode(frame, 0.95))


@pytest.mark.asyncio
async def test_encoder_failures_raise_encode_error() -> None:
    encoder = JpegEncoder()
    with pytest.raises(EncodeError):
        await encoder.encode(_frame(), 1.5)
    with pytest.raises(EncodeError):
        await encoder.encode(np.zeros((0, 0, 3), dtype=np.uint8), 0.6)
    with pytest.raises(EncodeError):
        await encoder.to_portable_text(b"")


class _FakeCapture:
    def __init__(self, frames) -> None:
        self.frames = list(frames)
        self.released = False

    def isOpened(self) -> bool:
        return True

    def read(self):
        if not self.frames:
            return False, None
        return True, self.frames.pop(0)

    def release(self) -> None:
        self.released = True


@pytest.mark.asyncio
async def test_camera_resizes_and_rejects_bad_reads() -> None:
    camera = CameraSource()
    camera.cap = _FakeCapture([_frame(480, 640)])

    frame = await camera.get_frame()
    assert frame.shape == (FRAME_HEIGHT, FRAME_WIDTH, 3)

    with pytest.raises(DeviceError):
        await camera.get_frame()

    capture = camera.cap
    camera.close()
    assert capture.released is True
    with pytest.raises(DeviceError):
        await camera.get_frame()


@pytest.mark.asyncio
async def test_camera_rejects_shape_change_mid_stream() -> None:
    camera = CameraSource()
    camera.cap = _FakeCapture([_frame(480, 640), _frame(720, 1280), _frame(480, 640)])

    assert (await camera.get_frame()).shape == (FRAME_HEIGHT, FRAME_WIDTH, 3)
    with pytest.raises(DeviceError, match="shape_changed"):
        await camera.get_frame()
    assert (await camera.get_frame()).shape == (FRAME_HEIGHT, FRAME_WIDTH, 3)

    stats = camera.frame_gate.get_stats()
    assert stats["invalid_frames"] == 1
    assert stats["last_valid_shape"] == (480, 640, 3)


def test_camera_open_failure_is_acquisition_error(monkeypatch) -> None:
    class _Closed(_FakeCapture):
        def isOpened(self) -> bool:
            return False

    monkeypatch.setattr(cv2, "VideoCapture", lambda index: _Closed([]))
    camera = CameraSource(camera_index=3)
    with pytest.raises(AcquisitionError):
        camera.open()
    assert camera.is_open is False
