from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from fleet.database import Base


class OrganizationModel(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    created_at = Column(Integer, nullable=False)  # ms


class DroneModel(Base):
    __tablename__ = "drones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    model = Column(String, nullable=False)
    status = Column(String, nullable=False, default="available")
    battery_level = Column(Integer, nullable=False, default=100)
    location_json = Column(Text, nullable=False, default='{"lat": 0, "lng": 0}')  # last known {lat, lng}
    assigned_mission_id = Column(Integer, ForeignKey("missions.id", ondelete="SET NULL"), nullable=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    created_at = Column(Integer, nullable=False)


class MissionModel(Base):
    __tablename__ = "missions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="planned")
    location = Column(Text, nullable=True)
    waypoints_json = Column(Text, nullable=True)  # mission-level fallback path
    start_time = Column(Integer, nullable=True, index=True)  # ms
    end_time = Column(Integer, nullable=True)
    estimated_duration = Column(Integer, nullable=True)  # seconds
    path_distance = Column(Float, nullable=True)  # meters
    organization_id = Column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    created_at = Column(Integer, nullable=False)

    assignments = relationship(
        "DroneAssignmentModel",
        cascade="all, delete-orphan",
        order_by="DroneAssignmentModel.id",
    )
    result = relationship("MissionResultModel", cascade="all, delete-orphan", uselist=False)


class DroneAssignmentModel(Base):
    __tablename__ = "drone_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    drone_id = Column(Integer, ForeignKey("drones.id", ondelete="CASCADE"), index=True, nullable=False)
    mission_id = Column(Integer, ForeignKey("missions.id"), index=True, nullable=False)
    waypoints_json = Column(Text, nullable=False, default="[]")  # ordered [{lat, lng, altitude?}]
    is_active = Column(Boolean, nullable=False, default=True)
    completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(Integer, nullable=False)


class MissionResultModel(Base):
    __tablename__ = "mission_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mission_id = Column(Integer, ForeignKey("missions.id"), unique=True, index=True, nullable=False)
    success = Column(Boolean, nullable=False, default=True)
    findings = Column(Text, nullable=True)
    duration = Column(Integer, nullable=True)  # minutes
    distance = Column(Integer, nullable=True)  # meters
    battery_used = Column(Integer, nullable=True)  # percent
    data_json = Column(Text, nullable=False, default="{}")
    completed_at = Column(Integer, nullable=False)
