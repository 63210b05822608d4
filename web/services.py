from fastapi import HTTPException, status

from fleet.broadcast import BroadcastChannel
from fleet.database import SessionLocal
from fleet.errors import (
    AssignmentNotFound,
    DroneBusy,
    DroneNotFound,
    FleetError,
    MissionClosed,
    MissionNotFound,
)
from fleet.mission_simulator import MissionSimulator
from fleet.registry import SimulationRegistry
from fleet.scheduler import StartTimeScheduler

# Process-wide instances, created once
registry = SimulationRegistry()
channel = BroadcastChannel()
simulator = MissionSimulator(SessionLocal, registry=registry, channel=channel)
scheduler = StartTimeScheduler(simulator)


def http_error(exc: FleetError) -> HTTPException:
    if isinstance(exc, (MissionNotFound, DroneNotFound, AssignmentNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (MissionClosed, DroneBusy)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
