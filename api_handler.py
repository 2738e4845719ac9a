from fastapi import FastAPI, HTTPException
from typing import List, Optional
from contextlib import asynccontextmanager
import httpx
import asyncio
import logging

import config
from campus_data import build_campus_map, default_campus_map, list_destinations, load_campus_map
from models import (
    CampusMap,
    CampusNode,
    DestinationRequest,
    GpsFix,
    MotionSample,
    NavigationStatus,
    OrientationRequest,
    PathNode,
    RouteRequest,
    RouteResponse,
    ScanRequest,
    SessionCreated,
)
from pathFinding import PathFinder
from route_manager import NavigationSession, NavigationSessionManager
from mqtt_handler import MQTTNavigationHandler, status_topic

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

campus_map: Optional[CampusMap] = None
pathfinder: Optional[PathFinder] = None
session_manager: Optional[NavigationSessionManager] = None
mqtt_handler: Optional[MQTTNavigationHandler] = None
cleanup_task = None


async def load_map() -> CampusMap:
    """Map source precedence: map service, local JSON file, built-in campus."""
    if config.MAP_SERVICE_URL:
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                data = await PathFinder.fetch_map_data(client, config.MAP_SERVICE_URL)
            logger.info(f"[INIT] Map fetched from {config.MAP_SERVICE_URL}")
            return build_campus_map(data)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[INIT] Failed to fetch map from {config.MAP_SERVICE_URL}: {e}")
    if config.CAMPUS_MAP_PATH:
        logger.info(f"[INIT] Loading map from {config.CAMPUS_MAP_PATH}")
        return load_campus_map(config.CAMPUS_MAP_PATH)
    logger.info("[INIT] Using built-in campus map")
    return default_campus_map()


def publish_session_update(status: NavigationStatus):
    if mqtt_handler:
        mqtt_handler.publish_status(status)


async def cleanup_sessions():
    """Periodically cleanup expired sessions"""
    while True:
        await asyncio.sleep(60)  # Every minute
        if session_manager:
            expired = session_manager.cleanup_expired_sessions()
            if expired:
                logger.info(f"[SESSION] Cleaned up {len(expired)} sessions")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup resources on startup/shutdown"""
    global campus_map, pathfinder, session_manager, mqtt_handler, cleanup_task

    logger.info("=" * 50)
    logger.info("Starting Campus Navigation Service...")
    logger.info("=" * 50)

    nav_config = config.NavConfig.from_env()
    campus_map = await load_map()
    pathfinder = PathFinder(campus_map)
    session_manager = NavigationSessionManager(campus_map, nav_config)
    session_manager.on_session_update = publish_session_update
    logger.info(f"[INIT] Map cached: {len(campus_map.nodes)} nodes")

    if config.MQTT_ENABLED:
        try:
            mqtt_handler = MQTTNavigationHandler(
                client_broker=config.CLIENT_BROKER,
                client_port=config.CLIENT_PORT,
            )
            mqtt_handler.on_scan = session_manager.handle_scan
            mqtt_handler.on_motion = session_manager.handle_motion
            mqtt_handler.on_orientation = session_manager.handle_orientation
            mqtt_handler.on_gps = session_manager.handle_gps
            mqtt_handler.on_destination = session_manager.handle_destination
            mqtt_handler.on_reset = session_manager.handle_reset
            mqtt_handler.on_heartbeat = session_manager.handle_heartbeat
            mqtt_handler.start()
            logger.info("[INIT] MQTT Handler started")
        except Exception as e:
            mqtt_handler = None
            logger.warning(f"[INIT] MQTT handler failed to start: {e}")
            logger.warning("[INIT] Continuing with HTTP-only device events...")

    cleanup_task = asyncio.create_task(cleanup_sessions())

    yield

    logger.info("Shutting down Campus Navigation Service...")

    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass

    if mqtt_handler:
        mqtt_handler.stop()
        logger.info("MQTT Handler stopped")

    for session_id in list(session_manager.sessions):
        session_manager.remove_session(session_id)


app = FastAPI(
    title="Campus Navigation Service",
    version="1.0.0",
    lifespan=lifespan
)

from fastapi.middleware.cors import CORSMiddleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_map() -> CampusMap:
    if campus_map is None or pathfinder is None or session_manager is None:
        raise HTTPException(status_code=503, detail="Navigation service not initialized (Map data missing)")
    return campus_map


def _require_session(session_id: str) -> NavigationSession:
    _require_map()
    session = session_manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ----------------------------------------------------------------------
# Map and planning
# ----------------------------------------------------------------------

@app.get("/api/map", response_model=CampusMap)
async def get_map():
    return _require_map()


@app.get("/api/destinations", response_model=List[CampusNode])
async def get_destinations():
    return list_destinations(_require_map())


@app.post("/api/route", response_model=RouteResponse)
async def calculate_route(request: RouteRequest):
    """
    Shortest walking path between two waypoints
    """
    cmap = _require_map()
    for node_id in (request.start_id, request.end_id):
        if not cmap.has_node(node_id):
            raise HTTPException(status_code=404, detail=f"Waypoint {node_id} not found")

    path = pathfinder.find_path(request.start_id, request.end_id)
    if path is None:
        raise HTTPException(status_code=404, detail="No path found to destination")

    path_nodes = []
    cumulative_distance = 0.0
    floor_changes = 0

    for i, node in enumerate(path.nodes):
        is_waypoint = False
        if i > 0:
            prev = path.nodes[i - 1]
            edge = cmap.find_edge(prev.id, node.id)
            cumulative_distance += edge.distance
            if node.floor != prev.floor:
                is_waypoint = True
                floor_changes += 1

        path_nodes.append(PathNode(
            node_id=node.id,
            name=node.name,
            floor=node.floor,
            lat=node.lat,
            lng=node.lng,
            kind=node.kind,
            distance_from_start=cumulative_distance,
            is_waypoint=is_waypoint,
        ))

    logger.info(f"[API] Route {request.start_id} -> {request.end_id}: {path.total_distance:.0f} m")
    return RouteResponse(
        path=path_nodes,
        total_distance=path.total_distance,
        floor_changes=floor_changes,
        warnings=["Floor change"] if floor_changes else [],
    )


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------

@app.post("/api/sessions", response_model=SessionCreated)
async def create_session():
    _require_map()
    session = session_manager.create_session()
    return SessionCreated(
        session_id=session.session_id,
        mqtt_topic=status_topic(session.session_id) if mqtt_handler else None,
    )


@app.get("/api/sessions/{session_id}", response_model=NavigationStatus)
async def get_session_status(session_id: str):
    return _require_session(session_id).status()


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    _require_session(session_id)
    session_manager.remove_session(session_id)
    return {"status": "removed", "session_id": session_id}


@app.post("/api/sessions/{session_id}/destination", response_model=NavigationStatus)
async def set_destination(session_id: str, request: DestinationRequest):
    session = _require_session(session_id)
    if not campus_map.has_node(request.destination_id):
        raise HTTPException(status_code=404, detail=f"Waypoint {request.destination_id} not found")
    session.set_destination(request.destination_id)
    return session.status()


@app.post("/api/sessions/{session_id}/scan", response_model=NavigationStatus)
async def scan_checkpoint(session_id: str, request: ScanRequest):
    """Unknown codes are ignored; the unchanged status is returned."""
    session = _require_session(session_id)
    session.on_checkpoint_scanned(request.code)
    return session.status()


@app.post("/api/sessions/{session_id}/motion", response_model=NavigationStatus)
async def feed_motion(session_id: str, sample: MotionSample):
    session = _require_session(session_id)
    session.feed_motion(sample)
    return session.status()


@app.post("/api/sessions/{session_id}/orientation", response_model=NavigationStatus)
async def feed_orientation(session_id: str, request: OrientationRequest):
    session = _require_session(session_id)
    session.feed_orientation(request.sample)
    return session.status()


@app.post("/api/sessions/{session_id}/gps", response_model=NavigationStatus)
async def feed_gps(session_id: str, fix: GpsFix):
    session = _require_session(session_id)
    session.feed_gps_fix(fix)
    return session.status()


@app.post("/api/sessions/{session_id}/floor-notice/dismiss", response_model=NavigationStatus)
async def dismiss_floor_notice(session_id: str):
    session = _require_session(session_id)
    session.dismiss_floor_notice()
    return session.status()


@app.post("/api/sessions/{session_id}/reset", response_model=NavigationStatus)
async def reset_session(session_id: str):
    session = _require_session(session_id)
    session.reset()
    return session.status()


@app.get("/health")
async def health_check():
    """Service health check endpoint"""
    return {
        "status": "healthy",
        "service": "navigation",
        "map_loaded": campus_map is not None,
        "nodes": len(campus_map.nodes) if campus_map else 0,
        "active_sessions": len(session_manager.get_active_sessions()) if session_manager else 0,
        "mqtt": mqtt_handler is not None,
    }
