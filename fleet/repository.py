import json
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleet.db_models import (
    DroneAssignmentModel,
    DroneModel,
    MissionModel,
    MissionResultModel,
    OrganizationModel,
)

# public field name -> (column, stored as json)
_DRONE_FIELDS = {
    "name": ("name", False),
    "model": ("model", False),
    "status": ("status", False),
    "battery_level": ("battery_level", False),
    "last_known_location": ("location_json", True),
    "assigned_mission_id": ("assigned_mission_id", False),
    "organization_id": ("organization_id", False),
}

_MISSION_FIELDS = {
    "name": ("name", False),
    "description": ("description", False),
    "status": ("status", False),
    "location": ("location", False),
    "waypoints": ("waypoints_json", True),
    "start_time": ("start_time", False),
    "end_time": ("end_time", False),
    "estimated_duration": ("estimated_duration", False),
    "path_distance": ("path_distance", False),
    "organization_id": ("organization_id", False),
}

_ASSIGNMENT_FIELDS = {
    "drone_id": ("drone_id", False),
    "mission_id": ("mission_id", False),
    "waypoints": ("waypoints_json", True),
    "is_active": ("is_active", False),
    "completed": ("completed", False),
}

_RESULT_FIELDS = {
    "success": ("success", False),
    "findings": ("findings", False),
    "duration": ("duration", False),
    "distance": ("distance", False),
    "battery_used": ("battery_used", False),
    "data": ("data_json", True),
    "completed_at": ("completed_at", False),
}


def now_ms() -> int:
    return int(time.time() * 1000)


def _apply(record, update: Dict[str, Any], fields: Dict[str, tuple]):
    for key, value in update.items():
        if key not in fields:
            raise ValueError(f"Unknown field '{key}'")
        column, as_json = fields[key]
        setattr(record, column, json.dumps(value) if as_json else value)
    return record


def _loads(raw: Optional[str], default):
    return json.loads(raw) if raw else default


def organization_to_dict(o: OrganizationModel):
    return {"id": o.id, "name": o.name, "email": o.email, "created_at": o.created_at}


def drone_to_dict(d: DroneModel):
    return {
        "id": d.id,
        "name": d.name,
        "model": d.model,
        "status": d.status,
        "battery_level": d.battery_level,
        "last_known_location": _loads(d.location_json, {"lat": 0, "lng": 0}),
        "assigned_mission_id": d.assigned_mission_id,
        "organization_id": d.organization_id,
        "created_at": d.created_at,
    }


def mission_to_dict(m: MissionModel):
    return {
        "id": m.id,
        "name": m.name,
        "description": m.description,
        "status": m.status,
        "location": m.location,
        "waypoints": _loads(m.waypoints_json, []),
        "start_time": m.start_time,
        "end_time": m.end_time,
        "estimated_duration": m.estimated_duration,
        "path_distance": m.path_distance,
        "organization_id": m.organization_id,
        "created_at": m.created_at,
    }


def assignment_to_dict(a: DroneAssignmentModel):
    return {
        "id": a.id,
        "drone_id": a.drone_id,
        "mission_id": a.mission_id,
        "waypoints": _loads(a.waypoints_json, []),
        "is_active": a.is_active,
        "completed": a.completed,
        "created_at": a.created_at,
    }


def result_to_dict(r: MissionResultModel):
    return {
        "id": r.id,
        "mission_id": r.mission_id,
        "success": r.success,
        "findings": r.findings,
        "duration": r.duration,
        "distance": r.distance,
        "battery_used": r.battery_used,
        "data": _loads(r.data_json, {}),
        "completed_at": r.completed_at,
    }


# Organizations

def create_organization(session: Session, name: str, email: str):
    org = OrganizationModel(name=name, email=email, created_at=now_ms())
    session.add(org)
    session.flush()
    return org


def get_organization(session: Session, organization_id: int):
    return session.get(OrganizationModel, organization_id)


def get_organization_by_email(session: Session, email: str):
    return session.scalars(select(OrganizationModel).where(OrganizationModel.email == email)).first()


def list_organizations(session: Session):
    return [organization_to_dict(o) for o in session.scalars(select(OrganizationModel)).all()]


# Drones

def create_drone(session: Session, organization_id: int, name: str, model: str, **fields):
    drone = DroneModel(
        name=name,
        model=model,
        organization_id=organization_id,
        status="available",
        battery_level=100,
        location_json=json.dumps({"lat": 0, "lng": 0}),
        created_at=now_ms(),
    )
    _apply(drone, fields, _DRONE_FIELDS)
    session.add(drone)
    session.flush()
    return drone


def get_drone(session: Session, drone_id: int):
    return session.get(DroneModel, drone_id)


def list_drones(session: Session, organization_id: Optional[int] = None):
    query = select(DroneModel).order_by(DroneModel.id)
    if organization_id is not None:
        query = query.where(DroneModel.organization_id == organization_id)
    return [drone_to_dict(d) for d in session.scalars(query).all()]


def update_drone(session: Session, drone_id: int, update: Dict[str, Any]):
    drone = session.get(DroneModel, drone_id)
    if not drone:
        return None
    return _apply(drone, update, _DRONE_FIELDS)


def delete_drone(session: Session, drone_id: int) -> bool:
    drone = session.get(DroneModel, drone_id)
    if not drone:
        return False
    for assignment in session.scalars(
        select(DroneAssignmentModel).where(DroneAssignmentModel.drone_id == drone_id)
    ).all():
        session.delete(assignment)
    session.delete(drone)
    return True


# Missions

def create_mission(session: Session, organization_id: int, name: str, **fields):
    mission = MissionModel(
        name=name,
        organization_id=organization_id,
        status="planned",
        created_at=now_ms(),
    )
    _apply(mission, fields, _MISSION_FIELDS)
    session.add(mission)
    session.flush()
    return mission


def get_mission(session: Session, mission_id: int):
    return session.get(MissionModel, mission_id)


def list_missions(session: Session, organization_id: Optional[int] = None):
    query = select(MissionModel).order_by(MissionModel.id)
    if organization_id is not None:
        query = query.where(MissionModel.organization_id == organization_id)
    return [mission_to_dict(m) for m in session.scalars(query).all()]


def list_due_missions(session: Session, now: int) -> List[int]:
    """Ids of planned missions whose scheduled start time has passed."""
    query = select(MissionModel.id).where(
        MissionModel.status == "planned",
        MissionModel.start_time.is_not(None),
        MissionModel.start_time <= now,
    )
    return list(session.scalars(query).all())


def update_mission(session: Session, mission_id: int, update: Dict[str, Any]):
    mission = session.get(MissionModel, mission_id)
    if not mission:
        return None
    return _apply(mission, update, _MISSION_FIELDS)


def delete_mission(session: Session, mission_id: int) -> bool:
    mission = session.get(MissionModel, mission_id)
    if not mission:
        return False
    for drone in session.scalars(select(DroneModel).where(DroneModel.assigned_mission_id == mission_id)).all():
        drone.assigned_mission_id = None
        if drone.status == "in-mission":
            drone.status = "available"
    session.delete(mission)
    return True


# Drone assignments

def create_drone_assignment(session: Session, mission_id: int, drone_id: int, waypoints: List[dict], is_active: bool = True):
    assignment = DroneAssignmentModel(
        mission_id=mission_id,
        drone_id=drone_id,
        waypoints_json=json.dumps(waypoints),
        is_active=is_active,
        completed=False,
        created_at=now_ms(),
    )
    session.add(assignment)
    session.flush()
    return assignment


def get_drone_assignment(session: Session, assignment_id: int):
    return session.get(DroneAssignmentModel, assignment_id)


def get_drone_assignments_by_mission(session: Session, mission_id: int):
    return session.scalars(
        select(DroneAssignmentModel)
        .where(DroneAssignmentModel.mission_id == mission_id)
        .order_by(DroneAssignmentModel.id)
    ).all()


def update_drone_assignment(session: Session, assignment_id: int, update: Dict[str, Any]):
    assignment = session.get(DroneAssignmentModel, assignment_id)
    if not assignment:
        return None
    return _apply(assignment, update, _ASSIGNMENT_FIELDS)


def delete_drone_assignment(session: Session, assignment_id: int) -> bool:
    assignment = session.get(DroneAssignmentModel, assignment_id)
    if not assignment:
        return False
    session.delete(assignment)
    return True


def mission_path(session: Session, mission: MissionModel) -> List[Any]:
    """
    Raw waypoint list a mission's drones fly: the first assignment's waypoints,
    falling back to the mission-level list.
    """
    assignments = get_drone_assignments_by_mission(session, mission.id)
    for assignment in assignments[:1]:
        waypoints = _loads(assignment.waypoints_json, [])
        if waypoints:
            return waypoints
    return _loads(mission.waypoints_json, [])


# Mission results

def create_mission_result(session: Session, mission_id: int, success: bool, **fields):
    result = MissionResultModel(
        mission_id=mission_id,
        success=success,
        data_json="{}",
        completed_at=now_ms(),
    )
    _apply(result, fields, _RESULT_FIELDS)
    session.add(result)
    session.flush()
    return result


def get_mission_result_by_mission(session: Session, mission_id: int):
    return session.scalars(select(MissionResultModel).where(MissionResultModel.mission_id == mission_id)).first()


def update_mission_result(session: Session, result_id: int, update: Dict[str, Any]):
    result = session.get(MissionResultModel, result_id)
    if not result:
        return None
    return _apply(result, update, _RESULT_FIELDS)
