"""
Loop guard: short-lived "I just wrote this, ignore the echo" markers.

Both sync directions are triggered by the same store notification, which
carries no information about who wrote a value. Before writing, the engine
marks (entity, direction); while that marker is live, notifications for
the same entity in the opposite direction are dropped as echoes.

The clock is injectable so tests can advance time explicitly:

    clock = FakeClock()
    guard = LoopGuard(window=5.0, clock=clock)
    guard.mark(42, Direction.FORWARD)
    guard.is_suppressed(42, Direction.FORWARD)   # True
    clock.advance(5.0)
    guard.is_suppressed(42, Direction.FORWARD)   # False
"""

import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple


class Direction(Enum):
    """Sync direction."""
    FORWARD = "forward"   # canonical -> legacy
    REVERSE = "reverse"   # legacy -> canonical

    @property
    def opposite(self) -> "Direction":
        return Direction.REVERSE if self is Direction.FORWARD else Direction.FORWARD


class LoopGuard:
    """Per-entity, per-direction markers with a debounce window."""

    def __init__(self, window: float = 5.0, clock: Callable[[], float] = time.monotonic):
        if window < 0:
            raise ValueError("window must be non-negative")
        self.window = window
        self._clock = clock
        self._marks: Dict[Tuple[int, Direction], float] = {}

    def mark(self, entity_id: int, direction: Direction) -> None:
        """Record that a sync write in this direction is about to happen."""
        self._marks[(entity_id, direction)] = self._clock()

    def remaining(self, entity_id: int, direction: Direction, window: Optional[float] = None) -> float:
        """Seconds left on the marker, 0.0 if none is live."""
        key = (entity_id, direction)
        marked_at = self._marks.get(key)
        if marked_at is None:
            return 0.0

        window = self.window if window is None else window
        left = window - (self._clock() - marked_at)
        if left <= 0:
            del self._marks[key]
            return 0.0
        return left

    def is_suppressed(self, entity_id: int, direction: Direction, window: Optional[float] = None) -> bool:
        """True while now - mark(entity_id, direction) < window."""
        return self.remaining(entity_id, direction, window) > 0

    def clear(self, entity_id: Optional[int] = None) -> None:
        """Drop markers for one entity, or all of them."""
        if entity_id is None:
            self._marks.clear()
            return
        for key in [k for k in self._marks if k[0] == entity_id]:
            del self._marks[key]
