import pytest
from sqlalchemy.exc import OperationalError

import fleet.mission_simulator as mission_simulator
from fleet.errors import DroneBusy, DroneNotFound, InsufficientWaypoints, InvalidWaypoint, MissionClosed, MissionNotFound
from fleet.geo import interpolate
from fleet.registry import StartOutcome
from fleet.repository import delete_drone, get_drone_assignments_by_mission, get_mission_result_by_mission

NORTH = [{"lat": 0.0, "lng": 0.0}, {"lat": 1.0, "lng": 0.0}]


def run_ticks(simulator, mission_id, n):
    results = [simulator.tick(mission_id) for _ in range(n)]
    return results


def test_single_segment_scenario(simulator, seed, load):
    mission_id, (drone_id,) = seed(NORTH)

    assert simulator.request_simulation_start(mission_id, drone_id) is StartOutcome.STARTED
    assert load.mission(mission_id)["status"] == "in-progress"
    drone = load.drone(drone_id)
    assert drone["status"] == "in-mission"
    assert drone["assigned_mission_id"] == mission_id

    assert simulator.tick(mission_id) is True
    assert load.drone(drone_id)["last_known_location"] == interpolate(NORTH[0], NORTH[1], 0.05).to_dict()

    results = run_ticks(simulator, mission_id, 19)
    assert results[-1] is False
    drone = load.drone(drone_id)
    assert drone["last_known_location"] == {"lat": 1.0, "lng": 0.0}
    assert drone["status"] == "available"
    assert drone["assigned_mission_id"] is None
    assert load.mission(mission_id)["status"] == "completed"
    assert simulator.registry.get(mission_id) is None


@pytest.mark.parametrize("n_points", [2, 3, 5])
def test_path_completes_after_twenty_ticks_per_segment(simulator, seed, load, n_points):
    path = [{"lat": 0.01 * i, "lng": 0.02 * (i % 2), "altitude": 10.0 * i} for i in range(n_points)]
    mission_id, (drone_id,) = seed(path)
    simulator.request_simulation_start(mission_id, drone_id)

    total = 20 * (n_points - 1)
    assert all(run_ticks(simulator, mission_id, total - 1))
    assert load.mission(mission_id)["status"] == "in-progress"

    assert simulator.tick(mission_id) is False
    assert load.mission(mission_id)["status"] == "completed"
    assert load.drone(drone_id)["last_known_location"] == path[-1]


def test_segment_boundary_lands_on_waypoint(simulator, seed, load):
    path = [{"lat": 0.0, "lng": 0.0}, {"lat": 0.0, "lng": 0.5}, {"lat": 0.5, "lng": 0.5}]
    mission_id, (drone_id,) = seed(path)
    simulator.request_simulation_start(mission_id, drone_id)
    run_ticks(simulator, mission_id, 20)
    assert load.drone(drone_id)["last_known_location"] == path[1]
    assert simulator.registry.get(mission_id).current_segment_index == 1


def test_late_joining_drone_is_merged(simulator, seed, load):
    mission_id, (first, second) = seed(NORTH, drones=2)
    assert simulator.request_simulation_start(mission_id, first) is StartOutcome.STARTED
    simulator.tick(mission_id)
    assert simulator.request_simulation_start(mission_id, second) is StartOutcome.ALREADY_ACTIVE
    assert simulator.registry.get(mission_id).active_drone_ids == {first, second}

    simulator.tick(mission_id)
    expected = interpolate(NORTH[0], NORTH[1], 0.1).to_dict()
    assert load.drone(first)["last_known_location"] == expected
    assert load.drone(second)["last_known_location"] == expected

    run_ticks(simulator, mission_id, 18)
    for drone_id in (first, second):
        assert load.drone(drone_id)["status"] == "available"


@pytest.mark.parametrize("waypoints", [[], [{"lat": 1.0, "lng": 1.0}]])
def test_insufficient_waypoints_leaves_mission_planned(simulator, seed, load, waypoints):
    mission_id, (drone_id,) = seed(waypoints)
    with pytest.raises(InsufficientWaypoints):
        simulator.request_simulation_start(mission_id, drone_id)
    assert load.mission(mission_id)["status"] == "planned"
    assert load.drone(drone_id)["status"] == "available"
    assert simulator.registry.get(mission_id) is None


def test_mission_level_waypoints_are_the_fallback(simulator, seed):
    mission_id, (drone_id,) = seed([], mission_waypoints=NORTH)
    assert simulator.request_simulation_start(mission_id, drone_id) is StartOutcome.STARTED
    assert list(simulator.registry.get(mission_id).path) == NORTH


def test_unknown_mission_and_drone_are_rejected(simulator, seed):
    mission_id, _ = seed(NORTH)
    with pytest.raises(MissionNotFound):
        simulator.request_simulation_start(999, 1)
    with pytest.raises(DroneNotFound):
        simulator.request_simulation_start(mission_id, 999)
    assert simulator.registry.active_missions() == []


def test_finished_mission_cannot_be_relaunched(simulator, seed):
    mission_id, (drone_id,) = seed(NORTH)
    simulator.request_simulation_start(mission_id, drone_id)
    run_ticks(simulator, mission_id, 20)
    with pytest.raises(MissionClosed):
        simulator.request_simulation_start(mission_id, drone_id)


def test_drone_flying_another_mission_is_rejected(simulator, seed, load):
    first, (drone_id,) = seed(NORTH)
    second, _ = seed(NORTH)
    simulator.request_simulation_start(first, drone_id)
    with pytest.raises(DroneBusy):
        simulator.request_simulation_start(second, drone_id)
    assert load.mission(second)["status"] == "planned"
    assert simulator.registry.active_missions() == [first]


def test_invalid_waypoint_aborts_only_that_mission(simulator, seed, load):
    bad_mission, (bad_drone,) = seed([{"lat": 0.0, "lng": 0.0}, {"lat": 1.0}])
    good_mission, (good_drone,) = seed(NORTH)
    simulator.request_simulation_start(bad_mission, bad_drone)
    simulator.request_simulation_start(good_mission, good_drone)

    assert simulator.tick(bad_mission) is False
    assert simulator.tick(good_mission) is True
    assert load.mission(bad_mission)["status"] == "failed"
    assert load.drone(bad_drone)["status"] == "available"
    assert simulator.registry.active_missions() == [good_mission]


def test_tick_after_stop_is_quiet(simulator, seed, load):
    mission_id, (drone_id,) = seed(NORTH)
    simulator.request_simulation_start(mission_id, drone_id)
    simulator.registry.stop(mission_id)
    simulator.registry.stop(mission_id)
    assert simulator.tick(mission_id) is False
    assert load.drone(drone_id)["last_known_location"] == {"lat": 0, "lng": 0}


def test_deleted_drone_is_skipped(simulator, seed, session_factory, load):
    mission_id, (kept, removed) = seed(NORTH, drones=2)
    simulator.request_simulation_start(mission_id, kept)
    simulator.request_simulation_start(mission_id, removed)
    with session_factory() as session:
        delete_drone(session, removed)
        session.commit()

    assert simulator.tick(mission_id) is True
    assert load.drone(kept)["last_known_location"] == interpolate(NORTH[0], NORTH[1], 0.05).to_dict()
    assert load.drone(removed) is None


def test_store_failure_skips_tick_but_progress_continues(simulator, seed, load, monkeypatch):
    mission_id, (drone_id,) = seed(NORTH)
    simulator.request_simulation_start(mission_id, drone_id)

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE drones", {}, Exception("disk I/O error"))

    with monkeypatch.context() as m:
        m.setattr(mission_simulator, "update_drone", broken)
        assert simulator.tick(mission_id) is True
    assert load.drone(drone_id)["last_known_location"] == {"lat": 0, "lng": 0}
    assert simulator.registry.get(mission_id).tick_count == 1

    simulator.tick(mission_id)
    assert load.drone(drone_id)["last_known_location"] == interpolate(NORTH[0], NORTH[1], 0.1).to_dict()


def test_events_are_published_for_launch_ticks_and_completion(simulator, seed):
    mission_id, (drone_id,) = seed(NORTH)
    sub = simulator.channel.subscribe()
    simulator.request_simulation_start(mission_id, drone_id)
    launch = sub.drain()
    assert [e.type for e in launch] == ["connected", "mission-launched", "drone-location-update"]
    assert launch[1].mission["waypoints"] == NORTH

    run_ticks(simulator, mission_id, 20)
    events = sub.drain()
    assert [e.type for e in events].count("drone-location-update") == 20
    assert events[-1].type == "mission-status"
    assert events[-1].mission["status"] == "completed"


def test_completion_records_result_and_closes_assignments(simulator, seed, session_factory):
    mission_id, (drone_id,) = seed(NORTH)
    simulator.request_simulation_start(mission_id, drone_id)
    run_ticks(simulator, mission_id, 20)
    with session_factory() as session:
        result = get_mission_result_by_mission(session, mission_id)
        assert result.success is True
        assert abs(result.distance - 111195) < 5
        assert all(a.completed and not a.is_active for a in get_drone_assignments_by_mission(session, mission_id))


def test_manual_location_update_goes_through_store_and_channel(simulator, seed, load):
    _, (drone_id,) = seed(NORTH)
    sub = simulator.channel.subscribe()
    payload = simulator.request_manual_location_update(drone_id, {"lat": 45.0, "lng": 7.5})
    assert payload["last_known_location"] == {"lat": 45.0, "lng": 7.5}
    assert load.drone(drone_id)["last_known_location"] == {"lat": 45.0, "lng": 7.5}
    assert sub.drain()[-1].drone["id"] == drone_id

    with pytest.raises(DroneNotFound):
        simulator.request_manual_location_update(424242, {"lat": 1, "lng": 1})


def test_out_of_range_override_is_rejected(simulator, seed, load):
    _, (drone_id,) = seed(NORTH)
    before = load.drone(drone_id)["last_known_location"]
    sub = simulator.channel.subscribe()
    sub.drain()
    with pytest.raises(InvalidWaypoint):
        simulator.request_manual_location_update(drone_id, {"lat": 1000.0, "lng": -999.0})
    assert load.drone(drone_id)["last_known_location"] == before
    assert sub.drain() == []


def test_cancel_stops_simulation_and_releases_drones(simulator, seed, load):
    mission_id, (drone_id,) = seed(NORTH)
    simulator.request_simulation_start(mission_id, drone_id)
    simulator.tick(mission_id)
    simulator.cancel_mission(mission_id)
    assert simulator.registry.get(mission_id) is None
    assert load.mission(mission_id)["status"] == "cancelled"
    drone = load.drone(drone_id)
    assert drone["status"] == "available"
    assert drone["assigned_mission_id"] is None
    assert simulator.tick(mission_id) is False
    with pytest.raises(MissionClosed):
        simulator.cancel_mission(mission_id)


def test_submit_result_completes_running_mission(simulator, seed, load):
    mission_id, (drone_id,) = seed(NORTH)
    simulator.request_simulation_start(mission_id, drone_id)
    result = simulator.submit_result(mission_id, success=False, findings="aborted by operator", battery_used=40)
    assert result["success"] is False
    assert result["battery_used"] == 40
    assert load.mission(mission_id)["status"] == "completed"
    assert load.drone(drone_id)["status"] == "available"
    assert simulator.registry.active_missions() == []


def test_ensure_running_is_idempotent(simulator, seed, load):
    mission_id, drone_ids = seed(NORTH, drones=2)
    assert simulator.ensure_running(mission_id) is StartOutcome.STARTED
    assert simulator.ensure_running(mission_id) is StartOutcome.ALREADY_ACTIVE
    assert simulator.registry.get(mission_id).active_drone_ids == set(drone_ids)
    for drone_id in drone_ids:
        assert load.drone(drone_id)["assigned_mission_id"] == mission_id


def test_drone_removed_detaches_from_simulation(simulator, seed):
    mission_id, (first, second) = seed(NORTH, drones=2)
    simulator.ensure_running(mission_id)
    simulator.drone_removed(second)
    assert simulator.registry.get(mission_id).active_drone_ids == {first}


def test_drone_edit_is_broadcast(simulator, seed, load):
    _, (drone_id,) = seed(NORTH)
    sub = simulator.channel.subscribe()
    sub.drain()
    payload = simulator.edit_drone(drone_id, {"last_known_location": {"lat": 10, "lng": 10}, "battery_level": 80})
    assert payload["last_known_location"] == {"lat": 10.0, "lng": 10.0}
    assert load.drone(drone_id)["battery_level"] == 80
    events = sub.drain()
    assert [e.type for e in events] == ["drone-location-update"]
    assert events[0].drone["last_known_location"] == {"lat": 10.0, "lng": 10.0}

    with pytest.raises(InvalidWaypoint):
        simulator.edit_drone(drone_id, {"last_known_location": {"lat": 95.0, "lng": 0.0}})
    with pytest.raises(DroneNotFound):
        simulator.edit_drone(424242, {"battery_level": 10})


def test_flying_drone_status_cannot_be_edited(simulator, seed, load):
    mission_id, (drone_id,) = seed(NORTH)
    simulator.request_simulation_start(mission_id, drone_id)
    with pytest.raises(DroneBusy):
        simulator.edit_drone(drone_id, {"status": "available"})
    drone = load.drone(drone_id)
    assert drone["status"] == "in-mission"
    assert drone["assigned_mission_id"] == mission_id
    assert simulator.registry.missions_for_drone(drone_id) == [mission_id]

    # non-status fields stay editable mid-flight
    assert simulator.edit_drone(drone_id, {"battery_level": 55})["battery_level"] == 55

    simulator.cancel_mission(mission_id)
    assert simulator.edit_drone(drone_id, {"status": "maintenance"})["status"] == "maintenance"
    assert load.drone(drone_id)["assigned_mission_id"] is None
