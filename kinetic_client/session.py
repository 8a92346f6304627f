"""
Session Client for the live gesture inference channel.

Handles:
- One streaming session at a time (IDLE -> CONNECTING -> ACTIVE -> CLOSED)
- Non-blocking frame submission, dropped silently outside ACTIVE
- Inbound message delivery as callbacks and as a per-session channel
- Teardown that guarantees no callback fires after disconnect() returns

There is no automatic reconnection and no outbound buffering. The caller
decides whether to call connect() again after an error.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

from .errors import ProtocolError, TransportError
from .message import (
    EncodedFrame,
    ErrorMessage,
    InboundMessage,
    PartialUpdateValidator,
    StateUpdateMessage,
    create_frame_message,
    parse_inbound,
)
from .transport import Transport

logger = logging.getLogger(__name__)

# Marks the end of a session's message channel
_END = object()


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class SessionStats:
    """Statistics about the live session."""
    sessions_opened: int = 0
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None
    frames_sent: int = 0
    frames_dropped: int = 0
    updates_received: int = 0
    errors: int = 0
    last_send_time: Optional[float] = None


class SessionClient:
    """
    Owns the connection to the inference service and mediates all traffic.

    Every session is tagged with a generation number. disconnect() and
    failures bump it, and every callback is checked against it, so work
    left over from a torn-down session never reaches the state sink.

    A connect() while CONNECTING or ACTIVE is ignored and returns False.
    """

    def __init__(
        self,
        transport: Transport,
        on_connected: Optional[Callable[[], Awaitable[None]]] = None,
        on_state_update: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        on_error: Optional[Callable[[str], Awaitable[None]]] = None,
        connect_timeout: float = 10.0,
        channel_size: int = 100,
    ):
        """
        Initialize the session client.

        Args:
            transport: Transport collaborator used to reach the service
            on_connected: Callback when a session becomes active
            on_state_update: Callback with each validated partial update
            on_error: Callback with the reason a session failed
            connect_timeout: Seconds allowed for connect() to complete
            channel_size: Capacity of the per-session message channel
        """
        self._transport = transport
        self.on_connected = on_connected
        self.on_state_update = on_state_update
        self.on_error = on_error
        self.connect_timeout = connect_timeout
        self._channel_size = channel_size

        self._state = SessionState.IDLE
        self._generation = 0
        self._disposed = False

        self._handle: Any = None
        self._session_id: Optional[str] = None
        self._turn = 0
        self._receive_task: Optional[asyncio.Task] = None
        self._channel: Optional[asyncio.Queue] = None

        self._validator = PartialUpdateValidator()
        self.stats = SessionStats()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        """Check if a session is currently active."""
        return self._state is SessionState.ACTIVE and self._handle is not None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open a new session.

        Returns:
            True if the session is now active. False if the attempt failed
            (on_error has fired), was superseded by disconnect(), or was
            ignored because a session is already connecting or active.
        """
        if self._disposed:
            logger.warning("connect() ignored: client disposed")
            return False
        if self._state in (SessionState.CONNECTING, SessionState.ACTIVE):
            logger.warning(f"connect() ignored: session already {self._state.value}")
            return False

        self._state = SessionState.CONNECTING
        self._generation += 1
        generation = self._generation
        session_id = uuid.uuid4().hex

        handle = None
        reason: Optional[str] = None
        try:
            handle = await asyncio.wait_for(
                self._transport.open(session_id),
                timeout=self.connect_timeout,
            )
        except asyncio.CancelledError:
            if generation == self._generation:
                self._state = SessionState.CLOSED
            raise
        except asyncio.TimeoutError:
            reason = "connection timed out"
        except TransportError as e:
            reason = e.reason
        except Exception as e:
            logger.exception("Unexpected error while opening transport")
            reason = str(e) or e.__class__.__name__

        if generation != self._generation:
            # disconnect() ran while the open was in flight
            logger.info("Connect superseded by disconnect, discarding handle")
            if handle is not None:
                await self._transport.close(handle)
            return False

        if reason is not None:
            self._state = SessionState.CLOSED
            self.stats.errors += 1
            logger.error(f"Connect failed: {reason}")
            if self.on_error:
                try:
                    await self.on_error(reason)
                except Exception as e:
                    logger.error(f"Error in error callback: {e}")
            return False

        self._handle = handle
        self._session_id = session_id
        self._turn = 0
        # Created on the first messages() subscription
        self._channel = None
        self._state = SessionState.ACTIVE
        self.stats.sessions_opened += 1
        self.stats.connect_time = time.time()
        logger.info(f"Session {session_id} active")

        if self.on_connected:
            try:
                await self.on_connected()
            except Exception as e:
                logger.error(f"Error in connected callback: {e}")

        # on_connected may have torn the session down again
        if generation != self._generation:
            return False

        self._receive_task = asyncio.create_task(self._receive_loop(generation, handle))
        return True

    async def disconnect(self) -> None:
        """
        Close the current session. Idempotent.

        The receive task is cancelled and the handle released before this
        returns; no callback fires afterwards.
        """
        if self._state not in (SessionState.CONNECTING, SessionState.ACTIVE):
            return

        logger.info(f"Disconnecting session {self._session_id} ({self._state.value})")
        self._state = SessionState.CLOSED
        self._generation += 1
        handle, self._handle = self._handle, None
        task, self._receive_task = self._receive_task, None
        self._close_channel()

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if handle is not None:
            await self._transport.close(handle)

        self.stats.disconnect_time = time.time()
        logger.info("Session closed")

    async def dispose(self) -> None:
        """Disconnect and refuse further sessions."""
        await self.disconnect()
        self._disposed = True
        self.on_connected = None
        self.on_state_update = None
        self.on_error = None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_frame(self, frame: Union[EncodedFrame, str]) -> bool:
        """
        Send one encoded frame.

        Outside ACTIVE this is a silent no-op: frames racing with teardown
        are dropped rather than queued.

        Args:
            frame: EncodedFrame or bare base64 JPEG string

        Returns:
            True if the frame was handed to the transport
        """
        if not self.is_active:
            self.stats.frames_dropped += 1
            logger.debug(f"Frame dropped: session {self._state.value}")
            return False

        generation = self._generation
        handle = self._handle
        self._turn += 1
        msg = create_frame_message(self._session_id, self._turn, frame)

        try:
            await self._transport.send(handle, msg.to_json())
        except TransportError as e:
            self.stats.frames_dropped += 1
            await self._fail(generation, e.reason)
            return False

        self.stats.frames_sent += 1
        self.stats.last_send_time = time.time()
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def messages(self) -> AsyncIterator[InboundMessage]:
        """
        Iterate the current session's inbound messages.

        The sequence ends when the session closes. Subscribe once per
        session; messages are only buffered once someone has subscribed,
        and a closed session yields whatever was still buffered.
        """
        channel = self._channel
        if channel is None:
            if self._state is not SessionState.ACTIVE:
                return
            channel = self._channel = asyncio.Queue(maxsize=self._channel_size)
        while True:
            item = await channel.get()
            if item is _END:
                # Leave the marker for any later subscriber
                channel.put_nowait(_END)
                return
            yield item

    async def _receive_loop(self, generation: int, handle: Any) -> None:
        """Deliver inbound messages until the session closes."""
        try:
            async for raw in self._transport.receive(handle):
                if generation != self._generation:
                    return

                try:
                    msg = parse_inbound(raw, self._validator)
                except ProtocolError as e:
                    logger.error(f"Protocol error: {e.reason}")
                    await self._fail(generation, e.reason)
                    return

                if isinstance(msg, StateUpdateMessage):
                    self.stats.updates_received += 1
                    self._publish(msg)
                    if self.on_state_update:
                        try:
                            await self.on_state_update(dict(msg.fields))
                        except Exception as e:
                            logger.error(f"Error in state update callback: {e}")
                elif isinstance(msg, ErrorMessage):
                    self._publish(msg)
                    await self._fail(generation, msg.reason)
                    return
                else:
                    logger.debug(f"Ignoring control message: {msg}")
        except TransportError as e:
            await self._fail(generation, e.reason)
            return

        await self._fail(generation, "connection closed by server")

    async def _fail(self, generation: int, reason: str) -> None:
        """Close the session because of an error and notify the sink once."""
        if generation != self._generation or self._state is not SessionState.ACTIVE:
            return

        logger.warning(f"Session {self._session_id} failed: {reason}")
        self._state = SessionState.CLOSED
        self._generation += 1
        self.stats.errors += 1
        handle, self._handle = self._handle, None
        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            # Failure came from the send path; the receiver must stop too
            task.cancel()
        self._close_channel()

        try:
            if self.on_error:
                await self.on_error(reason)
        except Exception as e:
            logger.error(f"Error in error callback: {e}")
        finally:
            self.stats.disconnect_time = time.time()
            # On the send path this runs in a capture tick that stop_stream()
            # may cancel; the close must still complete
            await asyncio.shield(self._transport.close(handle))

    def _publish(self, msg: InboundMessage) -> None:
        channel = self._channel
        if channel is None:
            return
        if channel.full():
            channel.get_nowait()
            logger.warning("Message channel full, dropping oldest message")
        channel.put_nowait(msg)

    def _close_channel(self) -> None:
        channel = self._channel
        if channel is None:
            return
        if channel.full():
            channel.get_nowait()
        channel.put_nowait(_END)

    def get_stats(self) -> dict:
        """Get session statistics."""
        return {
            "state": self._state.value,
            "session_id": self._session_id,
            "sessions_opened": self.stats.sessions_opened,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "frames_sent": self.stats.frames_sent,
            "frames_dropped": self.stats.frames_dropped,
            "updates_received": self.stats.updates_received,
            "errors": self.stats.errors,
            "last_send_time": self.stats.last_send_time,
            "validation": self._validator.get_stats(),
        }
