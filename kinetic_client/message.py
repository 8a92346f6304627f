"""
Message Schema and Validation for the inference service channel.

Defines the JSON message format exchanged with the remote gesture inference
service and validates every inbound partial state update before it is
applied.
"""

import json
import math
import time
import logging
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ProtocolError
from .state import EXPANSION_MAX, EXPANSION_MIN, ColorPalette, ParticleShape

logger = logging.getLogger(__name__)

# Wire key -> ParticleState field name
WIRE_FIELDS = {
    "shape": "shape",
    "expansion": "expansion",
    "colorPalette": "color_palette",
    "color_palette": "color_palette",
    "speed": "speed",
    "rotationSpeed": "rotation_speed",
    "rotation_speed": "rotation_speed",
}

RESPONSE_FIELDS = ["shape", "expansion", "colorPalette", "speed", "rotationSpeed"]


# ============================================================================
# Outbound
# ============================================================================

@dataclass(frozen=True)
class EncodedFrame:
    """
    Compressed camera frame ready for submission. Never retained.

    Attributes:
        data: Base64 encoded JPEG
        captured_at: time.monotonic() at capture
        mime_type: MIME type of the decoded payload
    """
    data: str
    captured_at: float
    mime_type: str = "image/jpeg"


@dataclass
class SetupMessage:
    """
    Handshake message sent once when the session opens.

    Attributes:
        session_id: Client-assigned session identifier
        model: Inference model requested from the service
        response_fields: State fields the service may update
    """
    session_id: str
    model: str
    response_fields: List[str] = field(default_factory=lambda: list(RESPONSE_FIELDS))
    type: str = "setup"

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self))


@dataclass
class FrameMessage:
    """
    One encoded video frame sent to the service.

    Attributes:
        session_id: Session the frame belongs to
        turn: Per-session frame counter, starting at 1
        data: Base64 encoded JPEG
        mime_type: MIME type of the decoded payload
        ts_ms: Capture timestamp in milliseconds (monotonic)
    """
    session_id: str
    turn: int
    data: str
    ts_ms: int
    mime_type: str = "image/jpeg"
    type: str = "frame"

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self))


def create_frame_message(
    session_id: str,
    turn: int,
    frame: Union[EncodedFrame, str],
) -> FrameMessage:
    """
    Create a frame message for the given session turn.

    Args:
        session_id: Active session identifier
        turn: Frame counter within the session
        frame: EncodedFrame, or a bare base64 string stamped with the current time

    Returns:
        FrameMessage instance
    """
    if isinstance(frame, EncodedFrame):
        return FrameMessage(
            session_id=session_id,
            turn=turn,
            data=frame.data,
            ts_ms=int(frame.captured_at * 1000),
            mime_type=frame.mime_type,
        )
    return FrameMessage(
        session_id=session_id,
        turn=turn,
        data=frame,
        ts_ms=int(time.monotonic() * 1000),
    )


# ============================================================================
# Inbound
# ============================================================================

@dataclass(frozen=True)
class SetupCompleteMessage:
    """Handshake acknowledgement from the service."""


@dataclass(frozen=True)
class StateUpdateMessage:
    """Partial particle state update, keyed by ParticleState field names."""
    fields: Dict[str, Any]


@dataclass(frozen=True)
class ErrorMessage:
    """Error reported by the service. Ends the session."""
    reason: str


InboundMessage = Union[SetupCompleteMessage, StateUpdateMessage, ErrorMessage]


class PartialUpdateValidator:
    """
    Validates inbound partial state updates.

    Ensures:
    - every key is a known particle field
    - enum fields carry a known value
    - numeric fields are real, finite numbers
    - expansion lies within its bounded range and speed is non-negative
    """

    def __init__(self):
        self._rejected_count: int = 0
        self._validated_count: int = 0

    def validate(self, raw_fields: Any) -> Tuple[Optional[Dict[str, Any]], str]:
        """
        Validate and normalize a partial update.

        Args:
            raw_fields: The "fields" object of a state-update message

        Returns:
            Tuple of (normalized_fields or None, reason_string)
        """
        if not isinstance(raw_fields, dict):
            return self._reject("fields_not_object")

        normalized: Dict[str, Any] = {}
        for key, value in raw_fields.items():
            name = WIRE_FIELDS.get(key)
            if name is None:
                return self._reject(f"unknown_field:{key}")

            if name == "shape":
                try:
                    normalized[name] = ParticleShape(value)
                except ValueError:
                    return self._reject(f"unknown_shape:{value}")
                continue

            if name == "color_palette":
                try:
                    normalized[name] = ColorPalette(value)
                except ValueError:
                    return self._reject(f"unknown_palette:{value}")
                continue

            # bool is an int subclass but never a valid magnitude
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return self._reject(f"{name}_not_number")
            value = float(value)
            if not math.isfinite(value):
                return self._reject(f"{name}_not_finite")
            if name == "expansion" and not EXPANSION_MIN <= value <= EXPANSION_MAX:
                return self._reject("expansion_out_of_bounds")
            if name == "speed" and value < 0:
                return self._reject("speed_negative")
            normalized[name] = value

        self._validated_count += 1
        return normalized, "ok"

    def _reject(self, reason: str) -> Tuple[None, str]:
        self._rejected_count += 1
        logger.warning(f"Invalid state update: {reason}")
        return None, reason

    def get_stats(self) -> dict:
        """Get validation statistics."""
        total = self._validated_count + self._rejected_count
        return {
            "total_updates": total,
            "validated": self._validated_count,
            "rejected": self._rejected_count,
        }


def parse_inbound(raw: Union[str, bytes], validator: Optional[PartialUpdateValidator] = None) -> InboundMessage:
    """
    Parse one message received from the inference service.

    Raises:
        ProtocolError: if the message is malformed or of an unknown type
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Undecodable message: {e}") from e

    try:
        d = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed message: {e}") from e

    if not isinstance(d, dict):
        raise ProtocolError("Malformed message: expected a JSON object")

    msg_type = d.get("type")

    if msg_type == "state-update":
        validator = validator or PartialUpdateValidator()
        fields_, reason = validator.validate(d.get("fields"))
        if fields_ is None:
            raise ProtocolError(f"Invalid state update: {reason}")
        return StateUpdateMessage(fields=fields_)

    if msg_type == "error":
        reason = d.get("reason")
        if not isinstance(reason, str) or not reason:
            raise ProtocolError("Error message without reason")
        return ErrorMessage(reason=reason)

    if msg_type == "setup-complete":
        return SetupCompleteMessage()

    raise ProtocolError(f"Unrecognized message type: {msg_type!r}")
