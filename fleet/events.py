from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field


class DroneLocationUpdate(BaseModel):
    type: Literal["drone-location-update"] = "drone-location-update"
    drone: Dict[str, Any]
    organization_id: Optional[int] = None


class MissionLaunched(BaseModel):
    type: Literal["mission-launched"] = "mission-launched"
    mission: Dict[str, Any]  # mission snapshot with its flown waypoints attached
    organization_id: Optional[int] = None


class MissionStatusChanged(BaseModel):
    type: Literal["mission-status"] = "mission-status"
    mission: Dict[str, Any]
    organization_id: Optional[int] = None


class Connected(BaseModel):
    type: Literal["connected"] = "connected"
    message: str = "Connected to Drone Mission Management System"


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str


Event = Union[DroneLocationUpdate, MissionLaunched, MissionStatusChanged, Connected, ErrorMessage]


def drone_update(drone: Dict[str, Any]) -> DroneLocationUpdate:
    return DroneLocationUpdate(drone=drone, organization_id=drone.get("organization_id"))


def mission_launched(mission: Dict[str, Any], waypoints) -> MissionLaunched:
    return MissionLaunched(
        mission={**mission, "waypoints": list(waypoints)},
        organization_id=mission.get("organization_id"),
    )


def mission_status(mission: Dict[str, Any]) -> MissionStatusChanged:
    return MissionStatusChanged(mission=mission, organization_id=mission.get("organization_id"))


class ManualLocationRequest(BaseModel):
    """Inbound operator override sent by a subscriber."""

    type: Literal["drone-location-update"]
    drone_id: int = Field(alias="droneId")
    location: Dict[str, Any]

    model_config = {"populate_by_name": True}
