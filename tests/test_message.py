from __future__ import annotations

import json

import pytest

from kinetic_client.errors import ProtocolError
from kinetic_client.message import (
    EncodedFrame,
    ErrorMessage,
    FrameMessage,
    PartialUpdateValidator,
    SetupCompleteMessage,
    SetupMessage,
    StateUpdateMessage,
    create_frame_message,
    parse_inbound,
)
from kinetic_client.state import ColorPalette, ParticleShape


def test_parse_state_update_normalizes_keys() -> None:
    raw = json.dumps({
        "type": "state-update",
        "fields": {"shape": "firework", "colorPalette": "ocean", "rotationSpeed": 1, "expansion": 2.25},
    })
    msg = parse_inbound(raw)
    assert isinstance(msg, StateUpdateMessage)
    assert msg.fields == {
        "shape": ParticleShape.FIREWORK,
        "color_palette": ColorPalette.OCEAN,
        "rotation_speed": 1.0,
        "expansion": 2.25,
    }


def test_parse_empty_update_is_valid() -> None:
    msg = parse_inbound(json.dumps({"type": "state-update", "fields": {}}))
    assert msg == StateUpdateMessage(fields={})


def test_parse_error_and_setup_complete() -> None:
    assert parse_inbound('{"type": "error", "reason": "rate limited"}') == ErrorMessage("rate limited")
    assert parse_inbound(b'{"type": "setup-complete"}') == SetupCompleteMessage()


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        json.dumps([]),
        json.dumps({"type": "telemetry"}),
        json.dumps({"fields": {}}),
        json.dumps({"type": "error"}),
        json.dumps({"type": "error", "reason": ""}),
        json.dumps({"type": "state-update"}),
        json.dumps({"type": "state-update", "fields": []}),
        json.dumps({"type": "state-update", "fields": {"opacity": 1}}),
        json.dumps({"type": "state-update", "fields": {"shape": "cube"}}),
        json.dumps({"type": "state-update", "fields": {"colorPalette": "sepia"}}),
        json.dumps({"type": "state-update", "fields": {"speed": "fast"}}),
        json.dumps({"type": "state-update", "fields": {"speed": True}}),
        json.dumps({"type": "state-update", "fields": {"speed": -1}}),
        json.dumps({"type": "state-update", "fields": {"expansion": 3.5}}),
        '{"type": "state-update", "fields": {"expansion": NaN}}',
        b"\xff\xfe",
    ],
)
def test_parse_invalid(raw) -> None:
    with pytest.raises(ProtocolError):
        parse_inbound(raw)


def test_validator_counts() -> None:
    validator = PartialUpdateValidator()
    validator.validate({"speed": 1})
    validator.validate({"speed": "x"})
    assert validator.get_stats() == {"total_updates": 2, "validated": 1, "rejected": 1}


def test_frame_message_from_encoded_frame() -> None:
    msg = create_frame_message("s1", 3, EncodedFrame(data="QUJD", captured_at=1.234))
    assert isinstance(msg, FrameMessage)
    assert msg.ts_ms == 1234
    assert json.loads(msg.to_json()) == {
        "type": "frame",
        "session_id": "s1",
        "turn": 3,
        "data": "QUJD",
        "ts_ms": 1234,
        "mime_type": "image/jpeg",
    }


def test_setup_message_lists_response_fields() -> None:
    d = json.loads(SetupMessage(session_id="s1", model="gesture-live").to_json())
    assert d["type"] == "setup"
    assert d["session_id"] == "s1"
    assert "colorPalette" in d["response_fields"]
