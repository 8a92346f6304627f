"""
Particle and connection state owned by the state sink.

ParticleState is immutable. Every inbound partial update is merged into a
new snapshot which replaces the previous one in a single assignment, so a
reader on the render side never sees a half-applied update.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

EXPANSION_MIN = 0.0
EXPANSION_MAX = 3.0


class ParticleShape(str, Enum):
    SPHERE = "sphere"
    HEART = "heart"
    HELIX = "helix"
    FIREWORK = "firework"


class ColorPalette(str, Enum):
    NEON = "neon"
    FIRE = "fire"
    OCEAN = "ocean"
    FOREST = "forest"
    RAINBOW = "rainbow"


@dataclass(frozen=True)
class ParticleState:
    """
    Current rendering configuration of the particle emitter.

    Attributes:
        shape: Emitter shape
        expansion: Radial scale of the emitter, within [0, 3]
        color_palette: Named color palette
        speed: Particle speed
        rotation_speed: Rotation speed of the whole emitter
    """
    shape: ParticleShape = ParticleShape.SPHERE
    expansion: float = 1.0
    color_palette: ColorPalette = ColorPalette.NEON
    speed: float = 0.5
    rotation_speed: float = 0.2

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the renderer's key names."""
        return {
            "shape": self.shape.value,
            "expansion": self.expansion,
            "colorPalette": self.color_palette.value,
            "speed": self.speed,
            "rotationSpeed": self.rotation_speed,
        }


PARTICLE_FIELDS = frozenset(f.name for f in fields(ParticleState))


class ParticleStateStore:
    """
    Single-writer holder of the current ParticleState.

    Merge policy is sticky: each key present in a partial update overwrites
    the stored value, absent keys keep their last value indefinitely.
    """

    def __init__(self, initial: Optional[ParticleState] = None):
        self._initial = initial or ParticleState()
        self._state = self._initial
        self._updates_applied = 0

    @property
    def snapshot(self) -> ParticleState:
        """Last fully merged state."""
        return self._state

    def apply(self, partial: Mapping[str, Any]) -> ParticleState:
        """
        Merge a partial update into the current state.

        Args:
            partial: Mapping of ParticleState field names to new values

        Returns:
            The new snapshot
        """
        unknown = set(partial) - PARTICLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown particle fields: {sorted(unknown)}")
        self._state = replace(self._state, **partial)
        self._updates_applied += 1
        return self._state

    def reset(self) -> None:
        """Restore the initial state."""
        self._state = self._initial

    @property
    def updates_applied(self) -> int:
        return self._updates_applied


@dataclass
class ConnectionState:
    """Connection status as shown to the user."""
    is_connected: bool = False
    is_streaming: bool = False
    error: Optional[str] = None


class StateSink:
    """
    UI-side state store fed by the session client callbacks.

    Holds the particle state and the connection state, and fans snapshots
    out to listeners such as the state gateway.
    """

    def __init__(self, store: Optional[ParticleStateStore] = None, listener_queue_size: int = 16):
        self.particles = store or ParticleStateStore()
        self.connection = ConnectionState()
        self._listener_queue_size = listener_queue_size
        self._listeners: List[asyncio.Queue] = []

    # Session client callbacks

    async def on_connected(self) -> None:
        self.connection.is_connected = True
        self.connection.error = None
        logger.info("Live session connected")
        self._notify()

    async def on_state_update(self, partial: Dict[str, Any]) -> None:
        state = self.particles.apply(partial)
        logger.debug(f"Particle state updated: {partial} -> {state}")
        self._notify()

    async def on_error(self, reason: str) -> None:
        self.connection.error = reason
        self.connection.is_connected = False
        self.connection.is_streaming = False
        logger.error(f"Live session error: {reason}")
        self._notify()

    # Application-side transitions

    def mark_streaming(self) -> None:
        """Stream requested: clear any previous error."""
        self.connection.is_connected = False
        self.connection.is_streaming = True
        self.connection.error = None
        self._notify()

    def mark_stopped(self) -> None:
        """Stream stopped by the user."""
        self.connection.is_connected = False
        self.connection.is_streaming = False
        self.connection.error = None
        self._notify()

    # Listeners

    def snapshot(self) -> Dict[str, Any]:
        return {
            "particle": self.particles.snapshot.to_dict(),
            "connection": asdict(self.connection),
        }

    def subscribe(self) -> asyncio.Queue:
        """Register a listener queue that receives a snapshot on every change."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._listener_queue_size)
        self._listeners.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for queue in self._listeners:
            if queue.full():
                # Slow listener: only the latest state matters
                queue.get_nowait()
            queue.put_nowait(snap)
