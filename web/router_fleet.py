from typing import Optional

from fastapi import APIRouter, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError

from fleet.database import SessionLocal
from fleet.domain import DroneStatus
from fleet.errors import FleetError
from fleet.repository import (
    create_drone,
    create_organization,
    delete_drone,
    drone_to_dict,
    get_drone,
    get_organization,
    get_organization_by_email,
    list_drones,
    list_organizations,
    organization_to_dict,
)
from web.services import http_error, simulator

router = APIRouter()


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    altitude: Optional[float] = None


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    email: str

    @field_validator("email")
    @classmethod
    def ensure_email(cls, v):
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.strip().lower()


class DroneCreateRequest(BaseModel):
    organization_id: int
    name: str = Field(min_length=1)
    model: str = Field(min_length=1)
    status: DroneStatus = DroneStatus.AVAILABLE
    battery_level: int = Field(default=100, ge=0, le=100)
    last_known_location: Optional[Location] = None

    @field_validator("status")
    @classmethod
    def no_direct_mission(cls, v):
        if v == DroneStatus.IN_MISSION:
            raise ValueError("a new drone cannot start in-mission")
        return v


class DroneUpdateRequest(BaseModel):
    name: Optional[str] = None
    model: Optional[str] = None
    status: Optional[DroneStatus] = None
    battery_level: Optional[int] = Field(default=None, ge=0, le=100)
    last_known_location: Optional[Location] = None

    @field_validator("status")
    @classmethod
    def no_direct_mission(cls, v):
        if v == DroneStatus.IN_MISSION:
            raise ValueError("drones enter in-mission only when a mission launches them")
        return v


@router.post("/organizations", status_code=status.HTTP_201_CREATED)
def create_organization_endpoint(body: OrganizationCreateRequest):
    with SessionLocal() as session:
        if get_organization_by_email(session, body.email):
            raise HTTPException(status_code=409, detail="Email already registered")
        org = create_organization(session, name=body.name, email=body.email)
        try:
            session.commit()
        except IntegrityError:
            raise HTTPException(status_code=409, detail="Email already registered")
        return organization_to_dict(org)


@router.get("/organizations")
def list_organizations_endpoint():
    with SessionLocal() as session:
        return list_organizations(session)


@router.get("/organizations/{organization_id}")
def get_organization_endpoint(organization_id: int):
    with SessionLocal() as session:
        org = get_organization(session, organization_id)
        if not org:
            raise HTTPException(status_code=404, detail="Organization not found")
        return organization_to_dict(org)


@router.get("/drones")
def list_drones_endpoint(organization_id: Optional[int] = None):
    with SessionLocal() as session:
        return list_drones(session, organization_id)


@router.get("/drones/{drone_id}")
def get_drone_endpoint(drone_id: int):
    with SessionLocal() as session:
        drone = get_drone(session, drone_id)
        if not drone:
            raise HTTPException(status_code=404, detail="Drone not found")
        return drone_to_dict(drone)


@router.post("/drones", status_code=status.HTTP_201_CREATED)
def create_drone_endpoint(body: DroneCreateRequest):
    with SessionLocal() as session:
        if not get_organization(session, body.organization_id):
            raise HTTPException(status_code=404, detail="Organization not found")
        fields = {"status": body.status.value, "battery_level": body.battery_level}
        if body.last_known_location is not None:
            fields["last_known_location"] = body.last_known_location.model_dump(exclude_none=True)
        drone = create_drone(session, body.organization_id, name=body.name, model=body.model, **fields)
        session.commit()
        return drone_to_dict(drone)


@router.put("/drones/{drone_id}")
async def update_drone_endpoint(drone_id: int, body: DroneUpdateRequest):
    update = body.model_dump(exclude_unset=True, exclude_none=True, mode="json")
    try:
        return simulator.edit_drone(drone_id, update)
    except FleetError as e:
        raise http_error(e)


@router.post("/drones/{drone_id}/location")
async def manual_location_endpoint(drone_id: int, body: Location):
    try:
        return simulator.request_manual_location_update(drone_id, body.model_dump(exclude_none=True))
    except FleetError as e:
        raise http_error(e)


@router.delete("/drones/{drone_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_drone_endpoint(drone_id: int):
    with SessionLocal() as session:
        if not delete_drone(session, drone_id):
            raise HTTPException(status_code=404, detail="Drone not found")
        session.commit()
    simulator.drone_removed(drone_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
