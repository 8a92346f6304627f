"""
State Gateway - publishes particle and connection state to the renderer.

Handles:
- GET /health, GET /state and GET /stats snapshots
- WebSocket /state/stream pushing a snapshot on every change
- Optional Bearer token check for stream subscribers
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware

from .state import StateSink

logger = logging.getLogger(__name__)


class StateGateway:
    """
    Read-only view of a StateSink for external renderers and HUDs.

    The gateway never writes state; the session client remains the only
    writer of the particle state.
    """

    def __init__(
        self,
        sink: StateSink,
        token: Optional[str] = None,
        stats_provider: Optional[Callable[[], dict]] = None,
    ):
        """
        Initialize the state gateway.

        Args:
            sink: State sink to publish
            token: If set, stream subscribers must present it as a Bearer token
            stats_provider: Returns client statistics for GET /stats
        """
        self.sink = sink
        self.token = token
        self.stats_provider = stats_provider

        self._subscribers: Dict[str, WebSocket] = {}
        self._subscriber_counter = 0

        self.app = FastAPI(title="Kinetic State Gateway")

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_routes()

    def _setup_routes(self):
        """Set up FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {
                "status": "ok",
                "connected": self.sink.connection.is_connected,
                **self.get_stats(),
            }

        @self.app.get("/state")
        async def get_state():
            """Current particle and connection state."""
            return self.sink.snapshot()

        @self.app.get("/stats")
        async def get_client_stats():
            """Client and gateway statistics."""
            stats = {"gateway": self.get_stats()}
            if self.stats_provider is not None:
                stats.update(self.stats_provider())
            return stats

        @self.app.websocket("/state/stream")
        async def state_stream(websocket: WebSocket):
            """Push state snapshots to a subscriber."""
            await self._handle_subscriber(websocket)

    async def _handle_subscriber(self, websocket: WebSocket) -> None:
        if self.token is not None:
            auth_header = websocket.headers.get("authorization", "")
            if not self._verify_token(auth_header):
                logger.warning(f"Authentication failed from {websocket.client}")
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return

        await websocket.accept()

        self._subscriber_counter += 1
        subscriber_id = f"subscriber_{self._subscriber_counter}"
        self._subscribers[subscriber_id] = websocket
        queue = self.sink.subscribe()
        logger.info(f"State subscriber connected: {subscriber_id}")

        # Subscribers only listen; reading detects their disconnect promptly
        receiver = asyncio.create_task(self._drain(websocket))
        try:
            await websocket.send_json(self.sink.snapshot())
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {getter, receiver},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if receiver in done:
                    getter.cancel()
                    break
                await websocket.send_json(getter.result())
            logger.info(f"State subscriber disconnected: {subscriber_id}")
        except WebSocketDisconnect:
            logger.info(f"State subscriber disconnected: {subscriber_id}")
        except Exception as e:
            logger.error(f"Error streaming to {subscriber_id}: {e}")
        finally:
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)
            self.sink.unsubscribe(queue)
            self._subscribers.pop(subscriber_id, None)

    @staticmethod
    async def _drain(websocket: WebSocket) -> None:
        while True:
            await websocket.receive_text()

    def _verify_token(self, auth_header: str) -> bool:
        """Verify Bearer token."""
        if not auth_header:
            return False

        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return False

        return parts[1] == self.token

    def get_stats(self) -> dict:
        """Get gateway statistics."""
        return {
            "subscribers": len(self._subscribers),
        }
