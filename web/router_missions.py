from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator

from fleet.database import SessionLocal
from fleet.domain import MissionStatus, can_transition, is_terminal
from fleet.errors import FleetError, InsufficientWaypoints
from fleet.geo import format_distance, format_time, mission_stats, path_stats, process_waypoints
from fleet.repository import (
    assignment_to_dict,
    create_drone_assignment,
    create_mission,
    delete_mission,
    drone_to_dict,
    get_drone,
    get_drone_assignment,
    get_drone_assignments_by_mission,
    get_mission,
    get_mission_result_by_mission,
    get_organization,
    list_missions,
    mission_path,
    mission_to_dict,
    result_to_dict,
    update_drone_assignment,
    update_mission,
)
from web.router_fleet import Location
from web.services import http_error, registry, simulator

router = APIRouter()


def _to_ms(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp() * 1000) if value is not None else None


def _path_fields(waypoints: List[dict]) -> Dict[str, Any]:
    if len(waypoints) < 2:
        return {"path_distance": None, "estimated_duration": None}
    stats = path_stats(waypoints)
    return {"path_distance": stats.total_distance, "estimated_duration": round(stats.total_time)}


class MissionCreateRequest(BaseModel):
    organization_id: int
    name: str = Field(min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    waypoints: List[Location] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator("end_time")
    @classmethod
    def ensure_order(cls, v, info):
        start = info.data.get("start_time")
        if v is not None and start is not None and v < start:
            raise ValueError("end_time must not be before start_time")
        return v


class MissionUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[MissionStatus] = None
    waypoints: Optional[List[Location]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class AssignmentCreateRequest(BaseModel):
    drone_id: int
    waypoints: List[Location] = Field(default_factory=list)
    is_active: bool = True


class AssignmentUpdateRequest(BaseModel):
    waypoints: Optional[List[Location]] = None
    is_active: Optional[bool] = None
    completed: Optional[bool] = None


class SimulateRequest(BaseModel):
    drone_id: int


class ResultCreateRequest(BaseModel):
    success: bool = True
    findings: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=0)
    distance: Optional[int] = Field(default=None, ge=0)
    battery_used: Optional[int] = Field(default=None, ge=0, le=100)
    data: Dict[str, Any] = Field(default_factory=dict)


def _waypoints(points: List[Location]) -> List[dict]:
    return [p.model_dump(exclude_none=True) for p in points]


@router.post("/missions", status_code=status.HTTP_201_CREATED)
def create_mission_endpoint(body: MissionCreateRequest):
    waypoints = _waypoints(body.waypoints)
    with SessionLocal() as session:
        if not get_organization(session, body.organization_id):
            raise HTTPException(status_code=404, detail="Organization not found")
        mission = create_mission(
            session,
            body.organization_id,
            name=body.name,
            description=body.description,
            location=body.location,
            waypoints=waypoints,
            start_time=_to_ms(body.start_time),
            end_time=_to_ms(body.end_time),
            **_path_fields(waypoints),
        )
        session.commit()
        return mission_to_dict(mission)


@router.get("/missions")
def list_missions_endpoint(organization_id: Optional[int] = None):
    with SessionLocal() as session:
        return list_missions(session, organization_id)


@router.get("/missions/{mission_id}")
def get_mission_endpoint(mission_id: int):
    with SessionLocal() as session:
        mission = get_mission(session, mission_id)
        if not mission:
            raise HTTPException(status_code=404, detail="Mission not found")
        return mission_to_dict(mission)


def _apply_mission_update(mission_id: int, body: MissionUpdateRequest):
    update = body.model_dump(exclude_unset=True, exclude={"status"})
    if "waypoints" in update:
        update["waypoints"] = _waypoints(body.waypoints or [])
        update.update(_path_fields(update["waypoints"]))
    for key in ("start_time", "end_time"):
        if key in update:
            update[key] = _to_ms(update[key])

    with SessionLocal() as session:
        mission = get_mission(session, mission_id)
        if not mission:
            raise HTTPException(status_code=404, detail="Mission not found")
        if "waypoints" in update and mission.status != MissionStatus.PLANNED.value:
            raise HTTPException(status_code=409, detail="Waypoints are fixed once a mission has started")
        target = body.status
        if target is not None and target.value != mission.status and not can_transition(mission.status, target):
            raise HTTPException(status_code=409, detail=f"Cannot move mission from {mission.status} to {target.value}")
        if target in (MissionStatus.COMPLETED, MissionStatus.FAILED):
            raise HTTPException(status_code=400, detail="Submit a mission result to complete a mission")
        if update:
            update_mission(session, mission_id, update)
            session.commit()

    try:
        if target == MissionStatus.IN_PROGRESS:
            simulator.ensure_running(mission_id)
        elif target == MissionStatus.CANCELLED:
            simulator.cancel_mission(mission_id)
    except FleetError as e:
        raise http_error(e)

    with SessionLocal() as session:
        return mission_to_dict(get_mission(session, mission_id))


@router.put("/missions/{mission_id}")
async def update_mission_endpoint(mission_id: int, body: MissionUpdateRequest):
    return _apply_mission_update(mission_id, body)


@router.patch("/missions/{mission_id}")
async def patch_mission_endpoint(mission_id: int, body: MissionUpdateRequest):
    return _apply_mission_update(mission_id, body)


@router.delete("/missions/{mission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mission_endpoint(mission_id: int):
    simulator.mission_removed(mission_id)
    with SessionLocal() as session:
        if not delete_mission(session, mission_id):
            raise HTTPException(status_code=404, detail="Mission not found")
        session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/missions/{mission_id}/stats")
def mission_stats_endpoint(mission_id: int, speed: float = 10.0):
    if speed <= 0:
        raise HTTPException(status_code=400, detail="speed must be positive")
    with SessionLocal() as session:
        mission = get_mission(session, mission_id)
        if not mission:
            raise HTTPException(status_code=404, detail="Mission not found")
        path = mission_path(session, mission)
    try:
        processed = process_waypoints(path, speed=speed)
    except FleetError as e:
        raise http_error(e)
    stats = mission_stats(processed)
    return {
        "mission_id": mission_id,
        "waypoints": processed,
        **stats,
        "total_distance_label": format_distance(stats["total_distance"]),
        "total_time_label": format_time(stats["total_time"]),
    }


@router.get("/missions/{mission_id}/drones")
def mission_drones_endpoint(mission_id: int):
    with SessionLocal() as session:
        if not get_mission(session, mission_id):
            raise HTTPException(status_code=404, detail="Mission not found")
        drones = []
        for assignment in get_drone_assignments_by_mission(session, mission_id):
            drone = get_drone(session, assignment.drone_id)
            if drone:
                drones.append(drone_to_dict(drone))
        return drones


@router.get("/missions/{mission_id}/assignments")
def list_assignments_endpoint(mission_id: int):
    with SessionLocal() as session:
        if not get_mission(session, mission_id):
            raise HTTPException(status_code=404, detail="Mission not found")
        return [assignment_to_dict(a) for a in get_drone_assignments_by_mission(session, mission_id)]


@router.post("/missions/{mission_id}/assignments", status_code=status.HTTP_201_CREATED)
async def create_assignment_endpoint(mission_id: int, body: AssignmentCreateRequest):
    with SessionLocal() as session:
        mission = get_mission(session, mission_id)
        if not mission:
            raise HTTPException(status_code=404, detail="Mission not found")
        if is_terminal(mission.status):
            raise HTTPException(status_code=409, detail=f"Mission {mission_id} is already {mission.status}")
        if not get_drone(session, body.drone_id):
            raise HTTPException(status_code=404, detail="Drone not found")
        assignment = create_drone_assignment(
            session,
            mission_id,
            body.drone_id,
            waypoints=_waypoints(body.waypoints),
            is_active=body.is_active,
        )
        session.commit()
        payload = assignment_to_dict(assignment)
        running = mission.status == MissionStatus.IN_PROGRESS.value

    if running and body.is_active:
        # late joiner: attach to the mission's running simulation
        try:
            simulator.request_simulation_start(mission_id, body.drone_id)
        except InsufficientWaypoints:
            pass
        except FleetError as e:
            raise http_error(e)
    return payload


@router.put("/assignments/{assignment_id}")
def update_assignment_endpoint(assignment_id: int, body: AssignmentUpdateRequest):
    update = body.model_dump(exclude_unset=True)
    if "waypoints" in update:
        update["waypoints"] = _waypoints(body.waypoints or [])
    with SessionLocal() as session:
        assignment = get_drone_assignment(session, assignment_id)
        if not assignment:
            raise HTTPException(status_code=404, detail="Assignment not found")
        mission = get_mission(session, assignment.mission_id)
        if "waypoints" in update and mission is not None and mission.status != MissionStatus.PLANNED.value:
            raise HTTPException(status_code=409, detail="Waypoints are fixed once a mission has started")
        update_drone_assignment(session, assignment_id, update)
        session.commit()
        return assignment_to_dict(assignment)


@router.post("/missions/{mission_id}/simulate")
async def simulate_mission_endpoint(mission_id: int, body: SimulateRequest):
    try:
        outcome = simulator.request_simulation_start(mission_id, body.drone_id)
    except FleetError as e:
        raise http_error(e)
    return {"mission_id": mission_id, "drone_id": body.drone_id, "outcome": outcome.value}


@router.post("/missions/{mission_id}/cancel")
async def cancel_mission_endpoint(mission_id: int):
    try:
        return simulator.cancel_mission(mission_id)
    except FleetError as e:
        raise http_error(e)


@router.get("/missions/{mission_id}/simulation")
def simulation_state_endpoint(mission_id: int):
    snapshot = simulator.snapshot(mission_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No active simulation for mission")
    return snapshot


@router.get("/simulations")
def list_simulations_endpoint():
    return {"active": registry.active_missions()}


@router.get("/missions/{mission_id}/results")
def get_results_endpoint(mission_id: int):
    with SessionLocal() as session:
        if not get_mission(session, mission_id):
            raise HTTPException(status_code=404, detail="Mission not found")
        result = get_mission_result_by_mission(session, mission_id)
        if not result:
            raise HTTPException(status_code=404, detail="No results found for this mission")
        return result_to_dict(result)


@router.post("/missions/{mission_id}/results", status_code=status.HTTP_201_CREATED)
async def submit_results_endpoint(mission_id: int, body: ResultCreateRequest):
    try:
        return simulator.submit_result(mission_id, **body.model_dump())
    except FleetError as e:
        raise http_error(e)
