import os

# the app modules read these at import time
os.environ.setdefault("FLEET_DATABASE_URL", "sqlite://")
os.environ.setdefault("FLEET_RUN_SCHEDULER", "0")
os.environ.setdefault("FLEET_TICK_INTERVAL_S", "3600")

import pytest

from fleet.database import get_engine, init_db, make_session_factory
from fleet.mission_simulator import MissionSimulator
from fleet.repository import (
    create_drone,
    create_drone_assignment,
    create_mission,
    create_organization,
    drone_to_dict,
    get_drone,
    get_mission,
    mission_to_dict,
)


@pytest.fixture
def session_factory():
    engine = get_engine("sqlite://")
    init_db(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def simulator(session_factory):
    return MissionSimulator(session_factory, run_ticks=False)


@pytest.fixture
def seed(session_factory):
    """Create an organization, a mission and drones assigned to it with the given path."""
    counter = {"n": 0}

    def _seed(waypoints, drones=1, mission_waypoints=None, assign=True, start_time=None):
        counter["n"] += 1
        with session_factory() as session:
            org = create_organization(session, name="Acme", email=f"ops{counter['n']}@acme.test")
            mission = create_mission(
                session,
                org.id,
                name="Survey",
                waypoints=mission_waypoints or [],
                start_time=start_time,
            )
            drone_ids = []
            for i in range(drones):
                drone = create_drone(session, org.id, name=f"D{i + 1}", model="Quad-X")
                if assign:
                    create_drone_assignment(session, mission.id, drone.id, waypoints=waypoints)
                drone_ids.append(drone.id)
            session.commit()
            return mission.id, drone_ids

    return _seed


@pytest.fixture
def load(session_factory):
    class _Loader:
        @staticmethod
        def drone(drone_id):
            with session_factory() as session:
                drone = get_drone(session, drone_id)
                return drone_to_dict(drone) if drone else None

        @staticmethod
        def mission(mission_id):
            with session_factory() as session:
                mission = get_mission(session, mission_id)
                return mission_to_dict(mission) if mission else None

    return _Loader()
