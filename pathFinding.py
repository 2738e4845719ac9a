import heapq
import logging
from typing import Dict, List, Optional, Set, Tuple

import httpx

from models import CampusMap, NavigationPath

logger = logging.getLogger(__name__)


class PathFinder:
    def __init__(self, campus_map: CampusMap):
        """
        Initialize with a static campus map.
        Builds the adjacency list once; edges are followed only in their
        declared direction.
        """
        self.campus_map = campus_map
        self.graph: Dict[str, List[Tuple[str, float]]] = {}

        for edge in campus_map.edges:
            self.graph.setdefault(edge.source, []).append((edge.target, float(edge.distance)))

    @staticmethod
    async def fetch_map_data(client: httpx.AsyncClient, service_url: str) -> dict:
        response = await client.get(f"{service_url}/api/map")
        response.raise_for_status()
        return response.json()

    def neighbors(self, node_id: str) -> List[Tuple[str, float]]:
        return self.graph.get(node_id, [])

    def find_path(self, start_id: str, end_id: str) -> Optional[NavigationPath]:
        """
        Dijkstra shortest path from start_id to end_id.

        Equal tentative distances are popped in node-id order, so the
        result is deterministic. Returns None when either id is unknown
        or end_id is unreachable.
        """
        if not self.campus_map.has_node(start_id) or not self.campus_map.has_node(end_id):
            logger.info(f"[PLAN] Unknown endpoint in query {start_id} -> {end_id}")
            return None

        # Priority queue: (distance, node_id)
        open_set = [(0.0, start_id)]
        distances: Dict[str, float] = {start_id: 0.0}
        previous: Dict[str, str] = {}
        visited: Set[str] = set()

        while open_set:
            current_dist, current = heapq.heappop(open_set)

            if current in visited:
                continue
            visited.add(current)

            if current == end_id:
                break

            for neighbor, weight in self.neighbors(current):
                if neighbor in visited:
                    continue
                alt = current_dist + weight
                if alt < distances.get(neighbor, float("inf")):
                    distances[neighbor] = alt
                    previous[neighbor] = current
                    heapq.heappush(open_set, (alt, neighbor))

        if end_id not in visited:
            logger.info(f"[PLAN] No path from {start_id} to {end_id}")
            return None

        # Reconstruct path
        path_ids = [end_id]
        while path_ids[-1] != start_id:
            path_ids.append(previous[path_ids[-1]])
        path_ids.reverse()

        nodes = [self.campus_map.get_node(nid) for nid in path_ids]
        return NavigationPath(nodes=nodes, total_distance=distances[end_id])


def plan_route(campus_map: CampusMap, start_id: str, end_id: str) -> Optional[NavigationPath]:
    """Shortest walking path between two waypoints, or None if there is none."""
    return PathFinder(campus_map).find_path(start_id, end_id)
