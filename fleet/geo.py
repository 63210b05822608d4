import math
from dataclasses import dataclass
from typing import Any, List, Sequence

import numpy as np

from fleet import config
from fleet.domain import Waypoint, parse_path
from fleet.errors import InvalidWaypoint

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True)
class PathStats:
    total_distance: float  # meters
    total_time: float  # seconds


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance(a: Any, b: Any) -> float:
    """Great-circle distance in meters between two waypoints."""
    a, b = Waypoint.parse(a), Waypoint.parse(b)
    return haversine_m(a.lat, a.lng, b.lat, b.lng)


def interpolate(a: Any, b: Any, fraction: float) -> Waypoint:
    """
    Linear interpolation of lat/lng (and altitude) between two waypoints.
    Endpoints are reproduced exactly: fraction 0 gives a, fraction 1 gives b.
    """
    a, b = Waypoint.parse(a), Waypoint.parse(b)
    if fraction is None or not 0.0 <= fraction <= 1.0:
        raise InvalidWaypoint(f"Interpolation fraction out of range: {fraction!r}")
    keep = 1.0 - fraction
    lat = a.lat * keep + b.lat * fraction
    lng = a.lng * keep + b.lng * fraction
    if a.altitude is not None and b.altitude is not None:
        altitude = a.altitude * keep + b.altitude * fraction
    else:
        altitude = b.altitude if fraction >= 1.0 else a.altitude
    return Waypoint(lat=lat, lng=lng, altitude=altitude)


def altitude_change(a: Any, b: Any) -> float:
    a, b = Waypoint.parse(a), Waypoint.parse(b)
    return (b.altitude or 0.0) - (a.altitude or 0.0)


def estimate_flight_time(
    distance_m: float,
    altitude_change_m: float,
    speed: float = config.CRUISE_SPEED_MPS,
    vertical_speed: float = config.VERTICAL_SPEED_MPS,
) -> float:
    horizontal = distance_m / speed
    vertical = abs(altitude_change_m) / vertical_speed
    return max(horizontal, vertical)


def _segments(path: Sequence[Waypoint], speed: float, vertical_speed: float):
    dists = np.array([distance(path[i - 1], path[i]) for i in range(1, len(path))], dtype=float)
    climbs = np.array([altitude_change(path[i - 1], path[i]) for i in range(1, len(path))], dtype=float)
    times = np.maximum(dists / speed, np.abs(climbs) / vertical_speed)
    return dists, times


def path_stats(
    path: Sequence[Any],
    speed: float = config.CRUISE_SPEED_MPS,
    vertical_speed: float = config.VERTICAL_SPEED_MPS,
) -> PathStats:
    points = parse_path(path)
    if len(points) < 2:
        return PathStats(total_distance=0.0, total_time=0.0)
    dists, times = _segments(points, speed, vertical_speed)
    return PathStats(total_distance=float(dists.sum()), total_time=float(times.sum()))


def process_waypoints(
    path: Sequence[Any],
    speed: float = config.CRUISE_SPEED_MPS,
    vertical_speed: float = config.VERTICAL_SPEED_MPS,
) -> List[dict]:
    """Annotate each waypoint with distance/time from the previous waypoint and from the start."""
    points = parse_path(path)
    if not points:
        return []
    if len(points) == 1:
        dists = times = np.zeros(0)
    else:
        dists, times = _segments(points, speed, vertical_speed)
    seg_d = np.concatenate(([0.0], dists))
    seg_t = np.concatenate(([0.0], times))
    cum_d = np.cumsum(seg_d)
    cum_t = np.cumsum(seg_t)
    return [
        {
            **p.to_dict(),
            "distance_from_previous": float(seg_d[i]),
            "distance_from_start": float(cum_d[i]),
            "estimated_time_from_previous": float(seg_t[i]),
            "estimated_time_from_start": float(cum_t[i]),
        }
        for i, p in enumerate(points)
    ]


def mission_stats(processed: List[dict]) -> dict:
    if not processed:
        return {"total_distance": 0.0, "total_time": 0.0, "max_altitude": 0.0, "min_altitude": 0.0}
    last = processed[-1]
    # zero altitudes are treated as "not set"
    altitudes = [wp.get("altitude") or 0.0 for wp in processed]
    altitudes = [alt for alt in altitudes if alt > 0]
    return {
        "total_distance": last.get("distance_from_start", 0.0),
        "total_time": last.get("estimated_time_from_start", 0.0),
        "max_altitude": max(altitudes) if altitudes else 0.0,
        "min_altitude": min(altitudes) if altitudes else 0.0,
    }


def format_distance(meters: float) -> str:
    if meters >= 1000:
        return f"{meters / 1000:.1f} km"
    return f"{round(meters)} m"


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    remaining = round(seconds % 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {remaining}s"
    return f"{remaining}s"
