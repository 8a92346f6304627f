#!/usr/bin/env python3
"""
Kinetic Client - Main Entry Point

Opens the camera, streams 320x240 JPEG frames at 2 fps to the gesture
inference service, applies the returned particle state updates, and
publishes the resulting state to the renderer through the state gateway.

Environment Variables:
    KINETIC_API_KEY: Authentication token (used when --token is not given)
    KINETIC_GATEWAY_TOKEN: State gateway subscriber token (used when
        --gateway-token is not given)

Usage:
    python -m kinetic_client.main --server wss://inference.example/live --camera 0
    python -m kinetic_client.main --server ws://127.0.0.1:8765/live --token SECRET --no-gateway
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

import uvicorn

from .camera import CameraSource
from .capture_loop import CaptureLoop
from .encoder import JpegEncoder
from .errors import AcquisitionError
from .session import SessionClient
from .state import StateSink
from .state_gateway import StateGateway
from .transport import WebSocketTransport

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class KineticApp:
    """
    Main application that wires all components:
    - Camera capture and JPEG encoding
    - Fixed-cadence capture loop
    - Live session client
    - State sink and state gateway
    """

    def __init__(
        self,
        session: SessionClient,
        sink: StateSink,
        camera: CameraSource,
        encoder: Optional[JpegEncoder] = None,
        capture_loop: Optional[CaptureLoop] = None,
    ):
        """
        Initialize the application.

        The session client's callbacks are routed to the sink by the
        caller; see build_app().

        Args:
            session: Session client owned by this application
            sink: State sink receiving session callbacks
            camera: Capture device
            encoder: Frame encoder
            capture_loop: Capture loop, built from camera/encoder if omitted
        """
        self.session = session
        self.sink = sink
        self.camera = camera
        self.encoder = encoder or JpegEncoder()
        self.capture_loop = capture_loop or CaptureLoop(
            self.camera, self.encoder, self.session.send_frame
        )

        self._streaming = False
        self._stop_event = asyncio.Event()

    @property
    def streaming(self) -> bool:
        return self._streaming

    async def start_stream(self) -> bool:
        """
        Acquire the camera, connect, then start the capture loop.

        Returns:
            True if frames are now streaming
        """
        if self._streaming:
            return False

        logger.info("Starting stream...")
        self.sink.mark_streaming()

        try:
            self.camera.open()
        except AcquisitionError as e:
            await self.sink.on_error(e.reason)
            return False

        if not await self.session.connect():
            self.camera.close()
            return False

        self.capture_loop.start()
        self._streaming = True
        logger.info("Stream started")
        return True

    async def stop_stream(self) -> None:
        """Stop capture and the session in lock-step, then release the camera."""
        logger.info("Stopping stream...")
        await self.capture_loop.stop()
        await self.session.disconnect()
        self.camera.close()
        self._streaming = False
        self.sink.mark_stopped()
        logger.info("Stream stopped")
        logger.info(f"Stream stats: {self.get_stats()}")

    async def on_session_error(self, reason: str) -> None:
        """Session callback: surface the error and end the run."""
        await self.sink.on_error(reason)
        self._stop_event.set()

    def request_stop(self) -> None:
        self._stop_event.set()

    def get_stats(self) -> dict:
        """Get application statistics."""
        return {
            "session": self.session.get_stats(),
            "capture": self.capture_loop.get_stats(),
            "frame_gate": self.camera.frame_gate.get_stats(),
        }

    async def run(self) -> Optional[str]:
        """
        Stream until stop is requested or the session fails.

        Returns:
            The error reason that ended the run, if any
        """
        started = await self.start_stream()
        if started:
            await self._stop_event.wait()

        error = self.sink.connection.error
        await self.stop_stream()
        await self.session.dispose()
        return error


def build_app(args: argparse.Namespace) -> KineticApp:
    """Construct the application and its collaborators from CLI arguments."""
    sink = StateSink()
    transport = WebSocketTransport(
        server_url=args.server,
        token=args.token,
        model=args.model,
    )
    session = SessionClient(
        transport,
        on_connected=sink.on_connected,
        on_state_update=sink.on_state_update,
    )
    app = KineticApp(
        session=session,
        sink=sink,
        camera=CameraSource(camera_index=args.camera),
    )
    session.on_error = app.on_session_error
    return app


def build_gateway(app: KineticApp, args: argparse.Namespace) -> StateGateway:
    """Construct the state gateway publishing the application's state and stats."""
    return StateGateway(
        app.sink,
        token=args.gateway_token,
        stats_provider=app.get_stats,
    )


async def run_gateway(gateway: StateGateway, host: str, port: int) -> None:
    """Run the state gateway with uvicorn."""
    config = uvicorn.Config(
        gateway.app,
        host=host,
        port=port,
        log_level="info",
        access_log=False,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def main_async(args: argparse.Namespace) -> int:
    """Async main entry point."""
    app = build_app(args)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        app.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    app_task = asyncio.create_task(app.run())
    gateway_task: Optional[asyncio.Task] = None
    if not args.no_gateway:
        gateway = build_gateway(app, args)
        gateway_task = asyncio.create_task(
            run_gateway(gateway, args.gateway_host, args.gateway_port)
        )
        logger.info(f"State gateway on http://{args.gateway_host}:{args.gateway_port}")

    try:
        if gateway_task is not None:
            await asyncio.wait(
                [app_task, gateway_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            # Gateway exiting (e.g. port in use) ends the run as well
            app.request_stop()
        error = await app_task
    finally:
        if gateway_task is not None and not gateway_task.done():
            gateway_task.cancel()
            try:
                await gateway_task
            except asyncio.CancelledError:
                pass

    if error:
        logger.error(f"Stopped with error: {error}")
        return 1
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments, falling back to environment tokens."""
    parser = argparse.ArgumentParser(
        description="Kinetic gesture particle live client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--server",
        type=str,
        default="ws://127.0.0.1:8765/live",
        help="Gesture inference service WebSocket URL",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=os.environ.get("KINETIC_API_KEY"),
        help="Authentication token (default: $KINETIC_API_KEY)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default="gesture-live",
        help="Inference model requested in the session setup",
    )
    parser.add_argument(
        "--camera",
        type=int,
        default=0,
        help="Camera device index",
    )
    parser.add_argument(
        "--gateway-host",
        type=str,
        default="127.0.0.1",
        help="State gateway bind address",
    )
    parser.add_argument(
        "--gateway-port",
        type=int,
        default=8080,
        help="State gateway port",
    )
    parser.add_argument(
        "--gateway-token",
        type=str,
        default=os.environ.get("KINETIC_GATEWAY_TOKEN"),
        help="Bearer token required from state stream subscribers (default: $KINETIC_GATEWAY_TOKEN)",
    )
    parser.add_argument(
        "--no-gateway",
        action="store_true",
        help="Do not serve the state gateway",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    if not args.token:
        parser.error("--token or KINETIC_API_KEY is required")
    return args


def main() -> None:
    """Main entry point."""
    args = parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        sys.exit(asyncio.run(main_async(args)))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
