"""
Error taxonomy for the live session client.

Only AcquisitionError, TransportError and ProtocolError are surfaced to the
state sink. DeviceError and EncodeError stay local to one capture tick.
"""


class KineticError(Exception):
    """Base class for all client errors."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AcquisitionError(KineticError):
    """Camera unavailable or permission denied."""


class DeviceError(KineticError):
    """A single frame read from the capture device failed."""


class EncodeError(KineticError):
    """A single frame could not be encoded or converted to text."""


class TransportError(KineticError):
    """Connection establishment or mid-session transport failure."""


class ProtocolError(KineticError):
    """Malformed or unrecognized message from the inference service."""
