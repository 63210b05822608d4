import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from fleet.errors import InvalidWaypoint


class DroneStatus(str, Enum):
    AVAILABLE = "available"
    IN_MISSION = "in-mission"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class MissionStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = {MissionStatus.COMPLETED, MissionStatus.CANCELLED, MissionStatus.FAILED}

_TRANSITIONS = {
    MissionStatus.PLANNED: {MissionStatus.IN_PROGRESS, MissionStatus.CANCELLED},
    MissionStatus.IN_PROGRESS: {MissionStatus.COMPLETED, MissionStatus.CANCELLED, MissionStatus.FAILED},
}


def can_transition(current: str, target: str) -> bool:
    current, target = MissionStatus(current), MissionStatus(target)
    return target in _TRANSITIONS.get(current, set())


def is_terminal(status: str) -> bool:
    return MissionStatus(status) in TERMINAL_STATUSES


def _coord(raw: Any, name: str, limit: Optional[float] = None) -> float:
    if raw is None or isinstance(raw, bool):
        raise InvalidWaypoint(f"Waypoint is missing '{name}'")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidWaypoint(f"Waypoint '{name}' is not a number: {raw!r}") from None
    if not math.isfinite(value):
        raise InvalidWaypoint(f"Waypoint '{name}' is not finite: {raw!r}")
    if limit is not None and abs(value) > limit:
        raise InvalidWaypoint(f"Waypoint '{name}' out of range [-{limit:g}, {limit:g}]: {raw!r}")
    return value


@dataclass(frozen=True)
class Waypoint:
    lat: float
    lng: float
    altitude: Optional[float] = None

    @classmethod
    def parse(cls, point: Any) -> "Waypoint":
        """Accept a Waypoint, a {lat, lng[, altitude]} mapping or a (lat, lng[, alt]) sequence."""
        if isinstance(point, Waypoint):
            return point
        if isinstance(point, dict):
            lat = _coord(point.get("lat"), "lat", 90.0)
            lng = _coord(point.get("lng", point.get("lon")), "lng", 180.0)
            alt = point.get("altitude", point.get("alt"))
        elif isinstance(point, (list, tuple)):
            if len(point) < 2:
                raise InvalidWaypoint(f"Waypoint needs lat and lng: {point!r}")
            lat = _coord(point[0], "lat", 90.0)
            lng = _coord(point[1], "lng", 180.0)
            alt = point[2] if len(point) > 2 else None
        else:
            raise InvalidWaypoint(f"Unsupported waypoint: {point!r}")
        return cls(lat=lat, lng=lng, altitude=None if alt is None else _coord(alt, "altitude"))

    def to_dict(self) -> Dict[str, float]:
        data = {"lat": self.lat, "lng": self.lng}
        if self.altitude is not None:
            data["altitude"] = self.altitude
        return data


def parse_path(points: Iterable[Any]) -> List[Waypoint]:
    return [Waypoint.parse(p) for p in points]
