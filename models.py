from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, model_validator


class NodeKind(str, Enum):
    ENTRANCE = "entrance"
    ROOM = "room"
    JUNCTION = "junction"
    STAIRS = "stairs"
    ELEVATOR = "elevator"
    PARKING = "parking"


class Accuracy(str, Enum):
    EXACT = "exact"          # from a checkpoint scan or a good GPS fix
    ESTIMATED = "estimated"  # integrated from steps since the last exact fix


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_FIX = "awaiting_fix"
    NAVIGATING = "navigating"
    ARRIVED = "arrived"


# ---------------------------------------------------------------------------
# Campus graph
# ---------------------------------------------------------------------------

class CampusNode(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str
    floor: int = Field(ge=0)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    kind: NodeKind = Field(validation_alias=AliasChoices("kind", "type"))
    description: str = ""


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str = Field(validation_alias=AliasChoices("from", "source"), serialization_alias="from")
    target: str = Field(validation_alias=AliasChoices("to", "target"), serialization_alias="to")
    distance: float = Field(gt=0)
    instruction: str = ""
    return_instruction: Optional[str] = None  # used when the loader mirrors this edge


class CampusMap(BaseModel):
    """Static waypoint graph. Edges are directed exactly as declared."""

    nodes: List[CampusNode]
    edges: List[Edge] = []
    bidirectional: bool = False

    _index: Dict[str, CampusNode] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _check_references(self) -> "CampusMap":
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in seen:
                    raise ValueError(f"Edge {edge.source}->{edge.target} references unknown node {end}")
        return self

    def model_post_init(self, __context) -> None:
        self._index = {n.id: n for n in self.nodes}

    def get_node(self, node_id: Optional[str]) -> Optional[CampusNode]:
        if node_id is None:
            return None
        return self._index.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def find_edge(self, from_id: str, to_id: str) -> Optional[Edge]:
        """
        Shortest edge from_id -> to_id, falling back to the shortest reverse
        declaration. Parallel edges resolve the same way the planner does.
        """
        forward = [e for e in self.edges if e.source == from_id and e.target == to_id]
        if not forward:
            forward = [e for e in self.edges if e.source == to_id and e.target == from_id]
        return min(forward, key=lambda e: e.distance, default=None)


class NavigationPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    nodes: List[CampusNode] = Field(min_length=1)
    total_distance: float = Field(ge=0)

    @property
    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def index_of(self, node_id: Optional[str]) -> Optional[int]:
        for i, node in enumerate(self.nodes):
            if node.id == node_id:
                return i
        return None


# ---------------------------------------------------------------------------
# Positioning
# ---------------------------------------------------------------------------

class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    accuracy: Accuracy
    step_count: int = Field(default=0, ge=0)


class MotionSample(BaseModel):
    """Acceleration including gravity. Any missing axis makes the sample unusable."""
    model_config = ConfigDict(allow_inf_nan=False)

    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    timestamp_ms: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.x is not None and self.y is not None and self.z is not None


class CompassHeading(BaseModel):
    """Platform-native compass heading, degrees clockwise from North."""
    model_config = ConfigDict(allow_inf_nan=False)

    source: Literal["compass"] = "compass"
    heading: float

    def resolve(self) -> Optional[float]:
        return self.heading % 360


class RotationAlpha(BaseModel):
    """Raw rotation around the vertical axis (counter-clockwise)."""
    model_config = ConfigDict(allow_inf_nan=False)

    source: Literal["alpha"] = "alpha"
    alpha: float

    def resolve(self) -> Optional[float]:
        return (360 - self.alpha) % 360


class NoHeading(BaseModel):
    source: Literal["none"] = "none"

    def resolve(self) -> Optional[float]:
        return None


OrientationSample = Annotated[
    Union[CompassHeading, RotationAlpha, NoHeading],
    Field(discriminator="source"),
]


class GpsFix(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    error_m: float = Field(ge=0)  # reported error radius


# ---------------------------------------------------------------------------
# Session views
# ---------------------------------------------------------------------------

class FloorTransitionNotice(BaseModel):
    from_node_id: str
    to_node_id: str
    current_floor: int
    next_floor: int
    direction: Literal["up", "down"]
    floor_count: int
    next_node_name: str


class ArrivalSummary(BaseModel):
    destination: CampusNode
    total_distance: Optional[float] = None
    steps_since_scan: int = 0


class NavigationStatus(BaseModel):
    session_id: str
    state: SessionState
    current_location_id: Optional[str] = None
    destination_id: Optional[str] = None
    path: List[str] = []
    route_available: bool = False
    off_path: bool = False
    target_node: Optional[CampusNode] = None
    instruction: Optional[str] = None
    distance_to_target: Optional[float] = None
    bearing_to_target: Optional[float] = None
    position: Optional[Position] = None
    heading: float = 0.0
    steps_since_scan: int = 0
    drift_warning: bool = False
    floor_notice: Optional[FloorTransitionNotice] = None
    arrival: Optional[ArrivalSummary] = None
    warnings: List[str] = []


# ---------------------------------------------------------------------------
# HTTP bodies
# ---------------------------------------------------------------------------

class RouteRequest(BaseModel):
    start_id: str
    end_id: str


class PathNode(BaseModel):
    node_id: str
    name: str
    floor: int
    lat: float
    lng: float
    kind: NodeKind
    distance_from_start: float
    is_waypoint: bool = False  # floor change happens at this node


class RouteResponse(BaseModel):
    path: List[PathNode]
    total_distance: float
    floor_changes: int = 0
    warnings: List[str] = []


class DestinationRequest(BaseModel):
    destination_id: str


class ScanRequest(BaseModel):
    code: str  # decoded QR payload


class SessionCreated(BaseModel):
    session_id: str
    mqtt_topic: Optional[str] = None


class OrientationRequest(BaseModel):
    sample: OrientationSample
