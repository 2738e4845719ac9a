import time
import uuid
import logging
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple

from pydantic import TypeAdapter, ValidationError

from config import NavConfig
from dead_reckoning import DeadReckoning, orientation_from_device
from geo_utils import calculate_bearing, haversine_distance
from models import (
    ArrivalSummary,
    CampusMap,
    CampusNode,
    FloorTransitionNotice,
    GpsFix,
    MotionSample,
    NavigationPath,
    NavigationStatus,
    OrientationSample,
    Position,
    SessionState,
)
from pathFinding import PathFinder

logger = logging.getLogger(__name__)

FALLBACK_INSTRUCTION = "Proceed to the next waypoint"
OFF_PATH_INSTRUCTION = "You are off the route. Rescan a checkpoint along your route."
NO_ROUTE_INSTRUCTION = "No route available to this destination"
AWAITING_FIX_INSTRUCTION = "Scan a nearby checkpoint to anchor your position"

_orientation_adapter = TypeAdapter(OrientationSample)


class NavigationSession:
    """
    Navigation state for a single walker.

    Holds the last confirmed checkpoint, the destination and the active
    path, and owns the walker's dead-reckoning estimator. Every public
    method is serialized on one lock; events may arrive from the HTTP
    layer and the MQTT thread at the same time.
    """

    def __init__(
        self,
        session_id: str,
        campus_map: CampusMap,
        pathfinder: Optional[PathFinder] = None,
        config: Optional[NavConfig] = None,
        on_change: Optional[Callable[["NavigationSession"], None]] = None,
    ):
        self.session_id = session_id
        self.campus_map = campus_map
        self.pathfinder = pathfinder or PathFinder(campus_map)
        self.config = config or NavConfig()
        self.on_change = on_change

        self.current_location_id: Optional[str] = None
        self.destination_id: Optional[str] = None
        self.active_path: Optional[NavigationPath] = None

        self._lock = threading.RLock()
        self._arrival: Optional[ArrivalSummary] = None
        self._dismissed_transitions: Set[Tuple[str, str]] = set()

        self.created_at = time.time()
        self.last_activity = self.created_at

        self.estimator = DeadReckoning(self.config)
        self.estimator.start(self._on_position_update)

    # ------------------------------------------------------------------
    # Session lifetime
    # ------------------------------------------------------------------

    def touch(self):
        self.last_activity = time.time()

    def is_expired(self) -> bool:
        return (time.time() - self.created_at) > self.config.session_timeout_s

    def is_stale(self) -> bool:
        return (time.time() - self.last_activity) > self.config.heartbeat_timeout_s

    def close(self):
        """Stop the estimator; the session must not be used afterwards."""
        self.estimator.stop()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def set_destination(self, destination_id: str) -> Optional[NavigationPath]:
        """
        Record a destination and plan from the current checkpoint if known.

        The destination is kept even when no path exists, so the next scan
        retries the plan.
        """
        with self._lock:
            self.touch()
            self.destination_id = destination_id
            self.active_path = None
            self._arrival = None

            if self.current_location_id is not None:
                self._replan()
                if self.active_path is not None and len(self.active_path.nodes) == 1:
                    # Already standing at the destination
                    self._mark_arrived()
            else:
                logger.info(f"[SESSION] {self.session_id}: destination {destination_id} set, awaiting fix")
        self._notify()
        return self.active_path

    def on_checkpoint_scanned(self, code: str) -> bool:
        """
        Handle a decoded QR payload.

        Returns:
            True if the scan moved the walker to a new checkpoint.
        """
        node_id = (code or "").strip()
        with self._lock:
            self.touch()
            node = self.campus_map.get_node(node_id)
            if node is None:
                logger.info(f"[SCAN] {self.session_id}: unknown checkpoint code {code!r} ignored")
                return False
            if node_id == self.current_location_id:
                return False

            self.current_location_id = node_id
            logger.info(f"[SCAN] {self.session_id}: checkpoint {node_id} ({node.name})")

            if self._arrival is None and self.destination_id is not None:
                if node_id == self.destination_id:
                    self._mark_arrived()
                else:
                    self._replan()
                    if self.is_off_path:
                        logger.warning(f"[SCAN] {self.session_id}: {node_id} is not on the active path")

            # Observer fires synchronously and publishes the new state
            self.estimator.reset_to_exact(node.lat, node.lng)
        return True

    def dismiss_floor_notice(self) -> bool:
        """Acknowledge the pending floor change for the current leg."""
        with self._lock:
            notice = self.floor_notice
            if notice is None:
                return False
            self._dismissed_transitions.add((notice.from_node_id, notice.to_node_id))
        self._notify()
        return True

    def reset(self):
        """Back to idle: no location, destination, path, position or flags."""
        with self._lock:
            self.current_location_id = None
            self.destination_id = None
            self.active_path = None
            self._arrival = None
            self._dismissed_transitions.clear()
            self.estimator.clear()
            logger.info(f"[SESSION] {self.session_id}: reset")
        self._notify()

    # ------------------------------------------------------------------
    # Sensor passthrough
    # ------------------------------------------------------------------

    def feed_motion(self, sample: MotionSample) -> bool:
        self.touch()
        return self.estimator.feed_motion(sample)

    def feed_orientation(self, sample: OrientationSample) -> Optional[float]:
        self.touch()
        return self.estimator.feed_orientation(sample)

    def feed_gps_fix(self, fix: GpsFix) -> bool:
        self.touch()
        return self.estimator.feed_gps_fix(fix)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def is_arrived(self) -> bool:
        return self._arrival is not None

    @property
    def state(self) -> SessionState:
        if self._arrival is not None:
            return SessionState.ARRIVED
        if self.destination_id is None:
            return SessionState.IDLE
        if self.current_location_id is None:
            return SessionState.AWAITING_FIX
        return SessionState.NAVIGATING

    @property
    def current_node(self) -> Optional[CampusNode]:
        return self.campus_map.get_node(self.current_location_id)

    @property
    def destination_node(self) -> Optional[CampusNode]:
        return self.campus_map.get_node(self.destination_id)

    @property
    def route_available(self) -> bool:
        return self.active_path is not None

    @property
    def is_off_path(self) -> bool:
        path = self.active_path
        if path is None or self.current_location_id is None or self._arrival is not None:
            return False
        return path.index_of(self.current_location_id) is None

    @property
    def target_node(self) -> Optional[CampusNode]:
        """Next waypoint along the path; the last node once it is reached."""
        path = self.active_path
        if path is None or self.current_location_id is None:
            return None
        idx = path.index_of(self.current_location_id)
        if idx is None:
            return None
        if idx >= len(path.nodes) - 1:
            return path.nodes[-1]
        return path.nodes[idx + 1]

    @property
    def current_instruction(self) -> Optional[str]:
        if self._arrival is not None:
            return f"You have arrived at {self._arrival.destination.name}"
        if self.destination_id is None:
            return None
        if self.current_location_id is None:
            return AWAITING_FIX_INSTRUCTION
        if self.active_path is None:
            return NO_ROUTE_INSTRUCTION
        target = self.target_node
        if target is None:
            return OFF_PATH_INSTRUCTION
        if target.id == self.current_location_id:
            return f"You have arrived at {target.name}"

        edge = self.campus_map.find_edge(self.current_location_id, target.id)
        text = edge.instruction if edge and edge.instruction else FALLBACK_INSTRUCTION
        current = self.current_node
        if current.floor != target.floor:
            way = "up" if target.floor > current.floor else "down"
            text = f"{text} (go {way} to Floor {target.floor})"
        return text

    @property
    def position(self) -> Optional[Position]:
        return self.estimator.position

    @property
    def distance_to_target(self) -> Optional[float]:
        target = self.target_node
        pos = self.position
        if target is None or pos is None:
            return None
        return haversine_distance(pos.lat, pos.lng, target.lat, target.lng)

    @property
    def bearing_to_target(self) -> Optional[float]:
        target = self.target_node
        pos = self.position
        if target is None or pos is None:
            return None
        return calculate_bearing(pos.lat, pos.lng, target.lat, target.lng)

    @property
    def floor_notice(self) -> Optional[FloorTransitionNotice]:
        """Pending floor-change prompt for the current leg, once per pair."""
        if self._arrival is not None:
            return None
        current = self.current_node
        target = self.target_node
        if current is None or target is None or current.floor == target.floor:
            return None
        if (current.id, target.id) in self._dismissed_transitions:
            return None
        return FloorTransitionNotice(
            from_node_id=current.id,
            to_node_id=target.id,
            current_floor=current.floor,
            next_floor=target.floor,
            direction="up" if target.floor > current.floor else "down",
            floor_count=abs(target.floor - current.floor),
            next_node_name=target.name,
        )

    @property
    def drift_warning(self) -> bool:
        return self.estimator.steps_since_reset > self.config.drift_warning_steps

    def status(self) -> NavigationStatus:
        with self._lock:
            warnings: List[str] = []
            if self.destination_id is not None and self.current_location_id is not None \
                    and self.active_path is None and self._arrival is None:
                warnings.append("no_route")
            if self.is_off_path:
                warnings.append("off_path")
            if self.drift_warning:
                warnings.append("drift")

            return NavigationStatus(
                session_id=self.session_id,
                state=self.state,
                current_location_id=self.current_location_id,
                destination_id=self.destination_id,
                path=self.active_path.node_ids if self.active_path else [],
                route_available=self.route_available,
                off_path=self.is_off_path,
                target_node=self.target_node,
                instruction=self.current_instruction,
                distance_to_target=self.distance_to_target,
                bearing_to_target=self.bearing_to_target,
                position=self.position,
                heading=self.estimator.heading,
                steps_since_scan=self.estimator.steps_since_reset,
                drift_warning=self.drift_warning,
                floor_notice=self.floor_notice,
                arrival=self._arrival,
                warnings=warnings,
            )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _replan(self):
        path = self.pathfinder.find_path(self.current_location_id, self.destination_id)
        self.active_path = path
        if path is None:
            logger.warning(f"[PLAN] {self.session_id}: no route {self.current_location_id} -> {self.destination_id}")
        else:
            logger.info(f"[PLAN] {self.session_id}: {' -> '.join(path.node_ids)} ({path.total_distance:.0f} m)")

    def _mark_arrived(self):
        self._arrival = ArrivalSummary(
            destination=self.destination_node,
            total_distance=self.active_path.total_distance if self.active_path else None,
            steps_since_scan=self.estimator.steps_since_reset,
        )
        logger.info(f"[SESSION] {self.session_id}: arrived at {self.destination_id}")

    def _on_position_update(self, position: Position):
        """Estimator observer: auto-arrival near the final waypoint."""
        with self._lock:
            if self._arrival is None:
                target = self.target_node
                current = self.current_node
                if (
                    target is not None
                    and target.id == self.destination_id
                    and current is not None
                    and current.floor == target.floor
                    and haversine_distance(position.lat, position.lng, target.lat, target.lng)
                    <= self.config.arrival_threshold_m
                ):
                    self._mark_arrived()
        self._notify()

    def _notify(self):
        if self.on_change:
            try:
                self.on_change(self)
            except Exception as e:
                logger.error(f"[SESSION] {self.session_id}: update listener failed: {e}")


class NavigationSessionManager:
    """Registry of active navigation sessions, one per walker."""

    def __init__(self, campus_map: CampusMap, config: Optional[NavConfig] = None):
        self.campus_map = campus_map
        self.config = config or NavConfig()
        self.pathfinder = PathFinder(campus_map)
        self.sessions: Dict[str, NavigationSession] = {}
        self._lock = threading.Lock()

        # Called with a fresh status after every session change
        self.on_session_update: Optional[Callable[[NavigationStatus], None]] = None

    def create_session(self, session_id: Optional[str] = None) -> NavigationSession:
        """Create a new session, replacing any existing one with the same id."""
        session_id = session_id or f"nav-{uuid.uuid4().hex[:12]}"
        session = NavigationSession(
            session_id=session_id,
            campus_map=self.campus_map,
            pathfinder=self.pathfinder,
            config=self.config,
            on_change=self._session_changed,
        )
        with self._lock:
            old = self.sessions.get(session_id)
            self.sessions[session_id] = session
        if old:
            old.close()
            logger.info(f"Replaced existing session {session_id}")
        logger.info(f"Created new session {session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[NavigationSession]:
        return self.sessions.get(session_id)

    def get_or_create_session(self, session_id: str) -> NavigationSession:
        return self.get_session(session_id) or self.create_session(session_id)

    def remove_session(self, session_id: str) -> bool:
        with self._lock:
            session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        logger.info(f"Removed session {session_id}")
        return True

    def cleanup_expired_sessions(self) -> List[str]:
        """Remove expired and stale sessions. Returns list of expired session IDs."""
        expired = [
            sid for sid, s in list(self.sessions.items())
            if s.is_expired() or s.is_stale()
        ]
        for session_id in expired:
            logger.info(f"Removing expired/stale session: {session_id}")
            self.remove_session(session_id)
        return expired

    def get_active_sessions(self) -> List[NavigationSession]:
        return [s for s in self.sessions.values() if not s.is_stale()]

    # ------------------------------------------------------------------
    # Device event handlers (MQTT callbacks)
    # ------------------------------------------------------------------

    def handle_heartbeat(self, session_id: str, payload: dict):
        session = self.get_session(session_id)
        if session:
            session.touch()

    def handle_scan(self, session_id: str, payload: dict):
        session = self.get_or_create_session(session_id)
        session.on_checkpoint_scanned(str(payload.get("code", payload.get("node_id", ""))))

    def handle_destination(self, session_id: str, payload: dict):
        destination_id = payload.get("destination_id")
        if not destination_id:
            logger.warning(f"[SESSION] {session_id}: destination payload without destination_id")
            return
        self.get_or_create_session(session_id).set_destination(destination_id)

    def handle_motion(self, session_id: str, payload: dict):
        session = self.get_session(session_id)
        if session is None:
            return
        try:
            sample = MotionSample.model_validate(payload)
        except ValidationError as e:
            logger.debug(f"[DR] {session_id}: malformed motion sample dropped: {e}")
            return
        session.feed_motion(sample)

    def handle_orientation(self, session_id: str, payload: dict):
        session = self.get_session(session_id)
        if session is None:
            return
        try:
            if "source" in payload:
                sample = _orientation_adapter.validate_python(payload)
            else:
                sample = orientation_from_device(payload)
        except (ValidationError, TypeError, ValueError) as e:
            logger.debug(f"[DR] {session_id}: malformed orientation sample dropped: {e}")
            return
        session.feed_orientation(sample)

    def handle_gps(self, session_id: str, payload: dict):
        session = self.get_session(session_id)
        if session is None:
            return
        try:
            fix = GpsFix.model_validate(payload)
        except ValidationError as e:
            logger.debug(f"[DR] {session_id}: malformed GPS fix dropped: {e}")
            return
        session.feed_gps_fix(fix)

    def handle_reset(self, session_id: str, payload: dict):
        session = self.get_session(session_id)
        if session:
            session.reset()

    def _session_changed(self, session: NavigationSession):
        if self.on_session_update:
            self.on_session_update(session.status())
