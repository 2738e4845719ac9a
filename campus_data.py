import json
import logging
from typing import List

from models import CampusMap, CampusNode, Edge, NodeKind

logger = logging.getLogger(__name__)

DESTINATION_KINDS = (NodeKind.ROOM, NodeKind.ENTRANCE, NodeKind.PARKING)

# Demo campus. Edges are declared once; the loader mirrors them because
# the dataset is flagged bidirectional. EEE and ECE share a footprint on
# different floors.
CAMPUS_DATA = {
    "bidirectional": True,
    "nodes": [
        {"id": "PARK", "name": "Visitor Parking", "floor": 0, "lat": 51.499641, "lng": -0.100000,
         "type": "parking", "description": "Open-air car park south of the main building"},
        {"id": "ENT", "name": "Main Entrance", "floor": 0, "lat": 51.500000, "lng": -0.100000,
         "type": "entrance", "description": "Lobby area with the university crest"},
        {"id": "J1", "name": "West Corridor Junction", "floor": 0, "lat": 51.500135, "lng": -0.100000,
         "type": "junction", "description": "Near the cafeteria entrance"},
        {"id": "AUD", "name": "Grand Auditorium", "floor": 0, "lat": 51.500135, "lng": -0.100289,
         "type": "room", "description": "Main hall for keynote speeches"},
        {"id": "LAB1", "name": "Robotics Lab", "floor": 0, "lat": 51.500000, "lng": -0.099639,
         "type": "room", "description": "Department of Engineering research wing"},
        {"id": "OFF1", "name": "Alumni Affairs Office", "floor": 0, "lat": 51.500135, "lng": -0.099856,
         "type": "room", "description": "Welcome center for returning graduates"},
        {"id": "ST1", "name": "Central Staircase", "floor": 0, "lat": 51.500243, "lng": -0.100000,
         "type": "stairs", "description": "Connects to Floor 1"},
        {"id": "EEE", "name": "Electrical Engineering", "floor": 0, "lat": 51.500405, "lng": -0.100000,
         "type": "room", "description": "EEE department, ground floor"},
        {"id": "ECE", "name": "Electronics & Communication", "floor": 1, "lat": 51.500405, "lng": -0.100000,
         "type": "room", "description": "ECE department, directly above EEE"},
    ],
    "edges": [
        {"from": "PARK", "to": "ENT", "distance": 40, "instruction": "Walk north across the car park to the main entrance",
         "return_instruction": "Leave through the main doors and head south to the car park"},
        {"from": "ENT", "to": "J1", "distance": 15, "instruction": "Walk straight ahead toward the junction",
         "return_instruction": "Walk back to the main entrance"},
        {"from": "J1", "to": "AUD", "distance": 20, "instruction": "Turn left for the Grand Auditorium",
         "return_instruction": "Exit the hall and return to the junction"},
        {"from": "J1", "to": "OFF1", "distance": 10, "instruction": "Turn right for Alumni Affairs",
         "return_instruction": "Exit the office and return to the junction"},
        {"from": "ENT", "to": "LAB1", "distance": 25, "instruction": "Take the right-side hallway past the lounge",
         "return_instruction": "Return to the main lobby"},
        {"from": "J1", "to": "ST1", "distance": 12, "instruction": "Continue past the junction to the stairs",
         "return_instruction": "Head back toward the main hallway"},
        {"from": "ST1", "to": "EEE", "distance": 18, "instruction": "Go past the staircase to the EEE department",
         "return_instruction": "Walk back to the central staircase"},
        {"from": "EEE", "to": "ECE", "distance": 6, "instruction": "Take the stairs inside EEE up one floor",
         "return_instruction": "Take the stairs down to EEE"},
    ],
}


def mirror_edges(edges: List[Edge], nodes: List[CampusNode]) -> List[Edge]:
    """Add the reverse of every edge that has no explicit reverse declaration."""
    names = {n.id: n.name for n in nodes}
    declared = {(e.source, e.target) for e in edges}
    mirrored = list(edges)
    for edge in edges:
        if (edge.target, edge.source) in declared:
            continue
        text = edge.return_instruction or f"Head back toward the {names.get(edge.source, edge.source)}"
        mirrored.append(Edge(
            source=edge.target,
            target=edge.source,
            distance=edge.distance,
            instruction=text,
        ))
        declared.add((edge.target, edge.source))
    return mirrored


def build_campus_map(data: dict) -> CampusMap:
    """Validate a raw dataset and apply its edge-direction convention."""
    campus_map = CampusMap.model_validate(data)
    if campus_map.bidirectional:
        edges = mirror_edges(campus_map.edges, campus_map.nodes)
        campus_map = CampusMap(nodes=campus_map.nodes, edges=edges, bidirectional=True)
    logger.info(f"[MAP] Loaded {len(campus_map.nodes)} nodes, {len(campus_map.edges)} edges "
                f"(bidirectional={campus_map.bidirectional})")
    return campus_map


def load_campus_map(path: str) -> CampusMap:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return build_campus_map(data)


def default_campus_map() -> CampusMap:
    return build_campus_map(CAMPUS_DATA)


def list_destinations(campus_map: CampusMap) -> List[CampusNode]:
    """Nodes a walker can pick as a destination, sorted by name."""
    return sorted(
        (n for n in campus_map.nodes if n.kind in DESTINATION_KINDS),
        key=lambda n: n.name,
    )
