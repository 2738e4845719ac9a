import math
from typing import Tuple

EARTH_RADIUS_M = 6_371_000.0


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in metres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def calculate_bearing(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Forward azimuth from point 1 to point 2 in degrees [0, 360), 0 = North."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    d_lng = math.radians(lng2 - lng1)
    y = math.sin(d_lng) * math.cos(rlat2)
    x = math.cos(rlat1) * math.sin(rlat2) - math.sin(rlat1) * math.cos(rlat2) * math.cos(d_lng)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def offset_position(
    lat: float,
    lng: float,
    heading_deg: float,
    distance_m: float,
    meters_per_lat_degree: float = 111320.0,
) -> Tuple[float, float]:
    """
    Move a coordinate by distance_m along heading_deg.

    Uses the local flat-earth approximation: a latitude degree is a fixed
    number of metres, a longitude degree shrinks with cos(latitude).
    Good enough for a single stride, not for long legs.
    """
    heading = math.radians(heading_deg)
    d_lat = math.cos(heading) * distance_m / meters_per_lat_degree
    meters_per_lng_degree = meters_per_lat_degree * math.cos(math.radians(lat))
    d_lng = math.sin(heading) * distance_m / meters_per_lng_degree
    return lat + d_lat, lng + d_lng
