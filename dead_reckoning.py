"""
Dead-reckoning position estimator.

Estimates the walker's position between exact fixes using:
- accelerometer samples (a step is a large jump between consecutive samples)
- compass heading (direction of each stride)

Every checkpoint scan resets the estimate to the waypoint's exact
coordinates. Between scans the estimate moves one stride per detected
step along the current heading, and drift grows without bound until the
next reset.

The estimator never subscribes to device sensors itself. A platform
adapter (the MQTT handler, the HTTP API, a test) pushes samples through
feed_motion / feed_orientation / feed_gps_fix.
"""

import math
import time
import logging
import threading
from typing import Callable, Optional, Tuple

from config import NavConfig
from geo_utils import offset_position
from models import (
    Accuracy,
    CompassHeading,
    GpsFix,
    MotionSample,
    NoHeading,
    OrientationSample,
    Position,
    RotationAlpha,
)

logger = logging.getLogger(__name__)

PositionObserver = Callable[[Position], None]


def orientation_from_device(payload: dict) -> OrientationSample:
    """
    Turn a raw device-orientation payload into a tagged heading sample.

    A native compass heading wins; otherwise the rotation around the
    vertical axis is used; otherwise there is no heading.
    """
    compass = payload.get("webkitCompassHeading", payload.get("compass_heading"))
    if compass is not None:
        return CompassHeading(heading=float(compass))
    alpha = payload.get("alpha")
    if alpha is not None:
        return RotationAlpha(alpha=float(alpha))
    return NoHeading()


class DeadReckoning:
    """
    Step-and-heading position estimator for one walker.

    Lifecycle:
        estimator = DeadReckoning(config)
        estimator.start(on_update)
        estimator.reset_to_exact(lat, lng)   # first fix
        estimator.feed_orientation(sample)   # any number, any order
        estimator.feed_motion(sample)
        estimator.stop()

    All state lives behind one lock so a step and a reset arriving from
    different threads cannot interleave. The observer is invoked after the
    lock is released, with the new immutable Position.
    """

    def __init__(self, config: Optional[NavConfig] = None) -> None:
        self.config = config or NavConfig()
        self._lock = threading.RLock()
        self._position: Optional[Position] = None
        self._heading: float = 0.0
        self._last_accel: Tuple[float, float, float] = (0.0, 0.0, 0.0)
        self._last_step_ms: Optional[float] = None
        self._observer: Optional[PositionObserver] = None
        self._active = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, on_update: PositionObserver) -> "DeadReckoning":
        """Register the observer and begin accepting samples."""
        with self._lock:
            self._observer = on_update
            self._active = True
        logger.debug("[DR] Estimator started")
        return self

    def stop(self) -> None:
        """Deregister the observer; later samples are ignored."""
        with self._lock:
            self._observer = None
            self._active = False
        logger.debug("[DR] Estimator stopped")

    @property
    def is_active(self) -> bool:
        return self._active

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def position(self) -> Optional[Position]:
        with self._lock:
            return self._position

    @property
    def heading(self) -> float:
        with self._lock:
            return self._heading

    @property
    def steps_since_reset(self) -> int:
        pos = self.position
        return pos.step_count if pos else 0

    # ------------------------------------------------------------------
    # Resets
    # ------------------------------------------------------------------

    def reset_to_exact(self, lat: float, lng: float) -> Position:
        """Replace the estimate with an authoritative fix."""
        with self._lock:
            position, observer = self._apply_exact(lat, lng)
        logger.info(f"[DR] Reset to exact fix ({lat:.6f}, {lng:.6f})")
        if observer:
            observer(position)
        return position

    def clear(self) -> None:
        """Forget the position and step history without stopping."""
        with self._lock:
            self._position = None
            self._heading = 0.0
            self._last_accel = (0.0, 0.0, 0.0)
            self._last_step_ms = None

    # ------------------------------------------------------------------
    # Sample ingestion
    # ------------------------------------------------------------------

    def feed_orientation(self, sample: OrientationSample) -> Optional[float]:
        """Update the heading. Samples without a usable heading are dropped."""
        heading = sample.resolve()
        if heading is None:
            logger.debug("[DR] Orientation sample without heading dropped")
            return None
        with self._lock:
            if not self._active:
                return None
            self._heading = heading
        return heading

    def feed_motion(self, sample: MotionSample) -> bool:
        """
        Process one accelerometer sample.

        Returns:
            True if the sample registered a step.
        """
        if not sample.is_complete:
            logger.debug("[DR] Incomplete motion sample dropped")
            return False

        now_ms = sample.timestamp_ms if sample.timestamp_ms is not None else time.time() * 1000
        accel = (sample.x, sample.y, sample.z)

        with self._lock:
            if not self._active:
                return False

            magnitude = math.dist(accel, self._last_accel)
            self._last_accel = accel

            if magnitude <= self.config.step_threshold:
                return False
            if self._last_step_ms is not None and now_ms - self._last_step_ms <= self.config.min_step_interval_ms:
                return False
            if self._position is None:
                # Stepping needs a base position
                return False

            self._last_step_ms = now_ms
            position = self._advance()
            observer = self._observer

        if observer:
            observer(position)
        return True

    def feed_gps_fix(self, fix: GpsFix) -> bool:
        """
        Snap to a GPS fix if the estimate has drifted and the fix is good.

        Only used while the estimate is step-integrated; an exact estimate
        from a checkpoint is never overridden by GPS.
        """
        if fix.error_m >= self.config.gps_fix_max_error_m:
            logger.debug(f"[DR] GPS fix ignored (error {fix.error_m:.1f} m)")
            return False

        # Accuracy check and swap share one critical section
        with self._lock:
            if not self._active or self._position is None:
                return False
            if self._position.accuracy != Accuracy.ESTIMATED:
                return False
            position, observer = self._apply_exact(fix.lat, fix.lng)

        logger.info(f"[DR] GPS correction to ({fix.lat:.6f}, {fix.lng:.6f}), error {fix.error_m:.1f} m")
        if observer:
            observer(position)
        return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _apply_exact(self, lat: float, lng: float) -> Tuple[Position, Optional[PositionObserver]]:
        """Install an exact fix. Caller holds the lock and notifies afterwards."""
        self._position = Position(lat=lat, lng=lng, accuracy=Accuracy.EXACT, step_count=0)
        return self._position, self._observer

    def _advance(self) -> Position:
        """Move one stride along the current heading. Caller holds the lock."""
        lat, lng = offset_position(
            self._position.lat,
            self._position.lng,
            self._heading,
            self.config.stride_length_m,
            self.config.meters_per_lat_degree,
        )
        self._position = Position(
            lat=lat,
            lng=lng,
            accuracy=Accuracy.ESTIMATED,
            step_count=self._position.step_count + 1,
        )
        return self._position
