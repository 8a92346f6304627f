"""
WebSocket transport to the remote gesture inference service.

Handles:
- Async WebSocket connection with Bearer token auth
- Setup handshake (setup -> setup-complete)
- Raw text send/receive
- Mapping of websockets failures onto TransportError

The transport keeps no session state of its own. Lifecycle, framing and
message interpretation belong to the SessionClient.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from .errors import ProtocolError, TransportError
from .message import ErrorMessage, SetupCompleteMessage, SetupMessage, parse_inbound

logger = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 1 << 20


class Transport(Protocol):
    """Collaborator interface the SessionClient drives."""

    async def open(self, session_id: str) -> Any:
        """Open a connection and return its handle. Raises TransportError."""

    async def send(self, handle: Any, payload: str) -> None:
        """Send one text payload. Raises TransportError."""

    def receive(self, handle: Any) -> AsyncIterator[str]:
        """Iterate inbound text messages until the connection closes."""

    async def close(self, handle: Any) -> None:
        """Close the connection. Never raises."""


class WebSocketTransport:
    """
    Transport implementation on top of the websockets asyncio client.

    Features:
    - Bearer token authentication
    - Keepalive pings (20s interval, 10s timeout)
    - Setup handshake bounded by a timeout
    """

    def __init__(
        self,
        server_url: str,
        token: str,
        model: str = "gesture-live",
        handshake_timeout: float = 10.0,
    ):
        """
        Initialize WebSocket transport.

        Args:
            server_url: WebSocket URL of the inference service
            token: Bearer token for authentication
            model: Model name announced in the setup message
            handshake_timeout: Seconds to wait for setup-complete
        """
        self.server_url = server_url
        self.token = token
        self.model = model
        self.handshake_timeout = handshake_timeout

    async def open(self, session_id: str) -> ClientConnection:
        """Connect and complete the setup handshake."""
        headers = {
            "Authorization": f"Bearer {self.token}"
        }

        logger.info(f"Connecting to {self.server_url}...")
        try:
            ws = await connect(
                self.server_url,
                additional_headers=headers,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
                max_size=MAX_MESSAGE_BYTES,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            logger.error(f"Connection rejected: HTTP {status}")
            if status in (401, 403):
                raise TransportError("permission denied") from e
            raise TransportError(f"connection rejected (HTTP {status})") from e
        except InvalidURI as e:
            raise TransportError(f"invalid server URL: {self.server_url}") from e
        except ConnectionRefusedError as e:
            logger.error("Connection refused - is the inference service running?")
            raise TransportError("connection refused") from e
        except (InvalidHandshake, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Connection failed: {e}")
            raise TransportError(f"connection failed: {e}") from e

        try:
            await self._handshake(ws, session_id)
        except BaseException:
            await self.close(ws)
            raise

        logger.info("WebSocket connected successfully")
        return ws

    async def _handshake(self, ws: ClientConnection, session_id: str) -> None:
        setup = SetupMessage(session_id=session_id, model=self.model)
        try:
            await ws.send(setup.to_json())
            raw = await asyncio.wait_for(ws.recv(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError("setup handshake timed out") from e
        except WebSocketException as e:
            raise TransportError(f"setup handshake failed: {e}") from e

        try:
            reply = parse_inbound(raw)
        except ProtocolError as e:
            raise TransportError(f"setup handshake failed: {e.reason}") from e

        if isinstance(reply, ErrorMessage):
            raise TransportError(reply.reason)
        if not isinstance(reply, SetupCompleteMessage):
            raise TransportError("setup handshake failed: unexpected reply")

    async def send(self, handle: ClientConnection, payload: str) -> None:
        try:
            await handle.send(payload)
        except (ConnectionClosed, WebSocketException) as e:
            raise TransportError(f"send failed: {e}") from e

    async def receive(self, handle: ClientConnection) -> AsyncIterator[str]:
        """
        Yield inbound messages.

        Ends quietly on a normal close; an abnormal close raises
        TransportError.
        """
        try:
            async for message in handle:
                yield message
        except ConnectionClosedOK:
            return
        except (ConnectionClosed, WebSocketException) as e:
            raise TransportError(f"connection lost: {e}") from e

    async def close(self, handle: Optional[ClientConnection]) -> None:
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"Error while closing connection: {e}")
