import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fleet import config
from fleet.broadcast import BroadcastChannel
from fleet.domain import DroneStatus, MissionStatus, Waypoint, is_terminal
from fleet.errors import (
    DroneBusy,
    DroneNotFound,
    InsufficientWaypoints,
    InvalidWaypoint,
    MissionClosed,
    MissionNotFound,
)
from fleet.events import drone_update, mission_launched, mission_status
from fleet.geo import distance, interpolate, path_stats
from fleet.registry import SimulationRegistry, SimulationState, StartOutcome, TickHandle
from fleet.repository import (
    create_mission_result,
    drone_to_dict,
    get_drone,
    get_drone_assignments_by_mission,
    get_mission,
    get_mission_result_by_mission,
    mission_path,
    mission_to_dict,
    now_ms,
    result_to_dict,
    update_drone,
    update_mission,
    update_mission_result,
)

logger = logging.getLogger(__name__)


class MissionSimulator:
    """
    Drives simulated drones along their mission path. One recurring tick per
    active mission advances progress by a fixed fraction of the current
    segment, writes drone locations through the store and broadcasts them.
    """

    def __init__(
        self,
        session_factory,
        registry: Optional[SimulationRegistry] = None,
        channel: Optional[BroadcastChannel] = None,
        tick_interval: float = config.TICK_INTERVAL_S,
        progress_step: float = config.PROGRESS_STEP,
        run_ticks: bool = True,
    ):
        if not 0 < progress_step <= 1:
            raise ValueError("progress_step must be in (0, 1]")
        self.session_factory = session_factory
        self.registry = registry or SimulationRegistry()
        self.channel = channel or BroadcastChannel()
        self.tick_interval = tick_interval
        self.progress_step = progress_step
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        if run_ticks:
            self.registry.set_scheduler(self.schedule)

    # Tick scheduling

    def attach_loop(self, loop: asyncio.AbstractEventLoop):
        """Loop used for ticks started from threads outside the event loop."""
        self._loop = loop

    def schedule(self, mission_id: int) -> TickHandle:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            task = loop.create_task(self._run(mission_id), name=f"mission-{mission_id}-ticks")
            return TickHandle(mission_id, kind="task", task=task)
        if self._loop is not None and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._run(mission_id), self._loop)
            return TickHandle(mission_id, kind="task", task=future)
        logger.warning("No running event loop, mission %s must be ticked manually", mission_id)
        return TickHandle(mission_id)

    async def _run(self, mission_id: int):
        while True:
            await asyncio.sleep(self.tick_interval)
            try:
                running = self.tick(mission_id)
            except Exception:
                logger.exception("Tick for mission %s failed", mission_id)
                running = self.registry.is_active(mission_id)
            if not running:
                return

    # Driver

    def tick(self, mission_id: int) -> bool:
        """Run one simulation step. Returns False once the mission is no longer simulated."""
        state = self.registry.get(mission_id)
        if state is None:
            return False
        try:
            if state.exhausted:
                return self._complete(state)
            start, end = state.segment()
            state = self.registry.advance(mission_id, self.progress_step, distance(start, end))
            if state is None:
                return False
            if state.exhausted:
                return self._complete(state)
            start, end = state.segment()
            position = interpolate(start, end, state.progress)
        except InvalidWaypoint as exc:
            self._abort(mission_id, exc)
            return False

        self._move_drones(state, position)
        return True

    def _move_drones(self, state: SimulationState, position: Waypoint):
        if not self.registry.is_active(state.mission_id):
            return
        location = position.to_dict()
        moved = []
        try:
            with self.session_factory() as session:
                for drone_id in sorted(state.active_drone_ids):
                    drone = update_drone(session, drone_id, {"last_known_location": location})
                    if drone is None:
                        logger.warning("Drone %s vanished from mission %s, skipping", drone_id, state.mission_id)
                        continue
                    moved.append(drone)
                session.commit()
                payloads = [drone_to_dict(d) for d in moved]
        except SQLAlchemyError:
            logger.exception("Store write failed for mission %s, tick %d skipped", state.mission_id, state.tick_count)
            return
        for payload in payloads:
            self.channel.publish(drone_update(payload))

    def _complete(self, state: SimulationState) -> bool:
        mission_id = state.mission_id
        final = Waypoint.parse(state.path[-1]).to_dict()
        stats = path_stats(state.path)
        try:
            with self.session_factory() as session:
                drones = self._release_drones(session, mission_id, state.active_drone_ids, location=final)
                mission = update_mission(
                    session,
                    mission_id,
                    {"status": MissionStatus.COMPLETED.value, "end_time": now_ms()},
                )
                for assignment in get_drone_assignments_by_mission(session, mission_id):
                    assignment.completed = True
                    assignment.is_active = False
                if mission is not None and get_mission_result_by_mission(session, mission_id) is None:
                    started = mission.start_time or mission.end_time
                    create_mission_result(
                        session,
                        mission_id,
                        success=True,
                        duration=round((mission.end_time - started) / 60000),
                        distance=round(stats.total_distance),
                        data={"simulated": True, "ticks": state.tick_count},
                    )
                session.commit()
                mission_payload = mission_to_dict(mission) if mission is not None else None
        except SQLAlchemyError:
            # entry stays registered so the next tick retries completion
            logger.exception("Could not persist completion of mission %s", mission_id)
            return True

        self.registry.stop(mission_id)
        logger.info("Mission %s completed after %d ticks", mission_id, state.tick_count)
        for payload in drones:
            self.channel.publish(drone_update(payload))
        if mission_payload is not None:
            self.channel.publish(mission_status(mission_payload))
        return False

    def _abort(self, mission_id: int, exc: Exception):
        logger.error("Aborting simulation of mission %s: %s", mission_id, exc)
        state = self.registry.get(mission_id)
        self.registry.stop(mission_id)
        drone_ids = state.active_drone_ids if state else frozenset()
        try:
            with self.session_factory() as session:
                drones = self._release_drones(session, mission_id, drone_ids)
                mission = update_mission(
                    session,
                    mission_id,
                    {"status": MissionStatus.FAILED.value, "end_time": now_ms()},
                )
                session.commit()
                mission_payload = mission_to_dict(mission) if mission is not None else None
        except SQLAlchemyError:
            logger.exception("Could not persist abort of mission %s", mission_id)
            return
        for payload in drones:
            self.channel.publish(drone_update(payload))
        if mission_payload is not None:
            self.channel.publish(mission_status(mission_payload))

    def _release_drones(self, session, mission_id: int, drone_ids: Iterable[int], location: Optional[dict] = None) -> List[dict]:
        """Return drones to the available pool; drones missing from the store are skipped."""
        released = []
        ids = set(drone_ids)
        for assignment in get_drone_assignments_by_mission(session, mission_id):
            ids.add(assignment.drone_id)
        for drone_id in sorted(ids):
            drone = get_drone(session, drone_id)
            if drone is None:
                continue
            if drone.assigned_mission_id not in (None, mission_id):
                continue
            update = {"status": DroneStatus.AVAILABLE.value, "assigned_mission_id": None}
            if drone.status != DroneStatus.IN_MISSION.value and drone.assigned_mission_id is None:
                # never flew this mission (maintenance, offline, ...)
                update = {}
            if location is not None and drone_id in drone_ids:
                update["last_known_location"] = location
            if update:
                update_drone(session, drone_id, update)
                released.append(drone_to_dict(drone))
        return released

    # Activation entrypoints

    def request_simulation_start(self, mission_id: int, drone_id: int) -> StartOutcome:
        with self.session_factory() as session:
            mission = get_mission(session, mission_id)
            if mission is None:
                raise MissionNotFound(mission_id)
            if is_terminal(mission.status):
                raise MissionClosed(mission_id, mission.status)
            drone = get_drone(session, drone_id)
            if drone is None:
                raise DroneNotFound(drone_id)
            if drone.assigned_mission_id not in (None, mission_id):
                raise DroneBusy(drone_id, drone.assigned_mission_id)
            path = mission_path(session, mission)
            if len(path) < 2:
                raise InsufficientWaypoints(mission_id, len(path))

            self._mark_in_progress(mission)
            update_drone(
                session,
                drone_id,
                {"status": DroneStatus.IN_MISSION.value, "assigned_mission_id": mission_id},
            )
            session.commit()
            mission_payload = mission_to_dict(mission)
            drone_payload = drone_to_dict(drone)

        outcome = self.registry.start(mission_id, path, [drone_id])
        if outcome is StartOutcome.STARTED:
            self.channel.publish(mission_launched(mission_payload, path))
        self.channel.publish(drone_update(drone_payload))
        return outcome

    def ensure_running(self, mission_id: int) -> Optional[StartOutcome]:
        """
        Idempotent activation used by the start-time scheduler and status patches.
        Returns None when the mission is already finished.
        """
        if self.registry.is_active(mission_id):
            return StartOutcome.ALREADY_ACTIVE
        with self.session_factory() as session:
            mission = get_mission(session, mission_id)
            if mission is None:
                raise MissionNotFound(mission_id)
            if is_terminal(mission.status):
                return None
            path = mission_path(session, mission)
            if len(path) < 2:
                raise InsufficientWaypoints(mission_id, len(path))

            drone_ids = []
            drone_payloads = []
            for assignment in get_drone_assignments_by_mission(session, mission_id):
                if not assignment.is_active or assignment.completed:
                    continue
                drone = get_drone(session, assignment.drone_id)
                if drone is None:
                    continue
                if drone.status != DroneStatus.AVAILABLE.value and drone.assigned_mission_id != mission_id:
                    logger.warning("Drone %s is %s, not joining mission %s", drone.id, drone.status, mission_id)
                    continue
                update_drone(
                    session,
                    drone.id,
                    {"status": DroneStatus.IN_MISSION.value, "assigned_mission_id": mission_id},
                )
                drone_ids.append(drone.id)
                drone_payloads.append(drone_to_dict(drone))
            self._mark_in_progress(mission)
            session.commit()
            mission_payload = mission_to_dict(mission)

        outcome = self.registry.start(mission_id, path, drone_ids)
        if outcome is StartOutcome.STARTED:
            self.channel.publish(mission_launched(mission_payload, path))
        for payload in drone_payloads:
            self.channel.publish(drone_update(payload))
        return outcome

    @staticmethod
    def _mark_in_progress(mission):
        now = now_ms()
        mission.status = MissionStatus.IN_PROGRESS.value
        if mission.start_time is None or mission.start_time > now:
            mission.start_time = now

    def cancel_mission(self, mission_id: int) -> Dict[str, Any]:
        with self.session_factory() as session:
            mission = get_mission(session, mission_id)
            if mission is None:
                raise MissionNotFound(mission_id)
            if is_terminal(mission.status):
                raise MissionClosed(mission_id, mission.status)
            state = self.registry.get(mission_id)
            self.registry.stop(mission_id)
            drones = self._release_drones(session, mission_id, state.active_drone_ids if state else ())
            mission.status = MissionStatus.CANCELLED.value
            mission.end_time = now_ms()
            for assignment in get_drone_assignments_by_mission(session, mission_id):
                assignment.is_active = False
            session.commit()
            mission_payload = mission_to_dict(mission)

        logger.info("Mission %s cancelled", mission_id)
        for payload in drones:
            self.channel.publish(drone_update(payload))
        self.channel.publish(mission_status(mission_payload))
        return mission_payload

    def submit_result(self, mission_id: int, success: bool, **fields) -> Dict[str, Any]:
        """Record a mission result and close the mission the way a finished flight does."""
        with self.session_factory() as session:
            mission = get_mission(session, mission_id)
            if mission is None:
                raise MissionNotFound(mission_id)
            existing = get_mission_result_by_mission(session, mission_id)
            if existing is not None:
                result = update_mission_result(session, existing.id, {"success": success, "completed_at": now_ms(), **fields})
            else:
                result = create_mission_result(session, mission_id, success=success, **fields)

            state = self.registry.get(mission_id)
            self.registry.stop(mission_id)
            drones = self._release_drones(session, mission_id, state.active_drone_ids if state else ())
            if not is_terminal(mission.status):
                mission.status = MissionStatus.COMPLETED.value
                mission.end_time = now_ms()
            for assignment in get_drone_assignments_by_mission(session, mission_id):
                assignment.completed = True
                assignment.is_active = False
            session.commit()
            mission_payload = mission_to_dict(mission)
            result_payload = result_to_dict(result)

        for payload in drones:
            self.channel.publish(drone_update(payload))
        self.channel.publish(mission_status(mission_payload))
        return result_payload

    def request_manual_location_update(self, drone_id: int, location: Any) -> Dict[str, Any]:
        point = Waypoint.parse(location)
        with self.session_factory() as session:
            drone = update_drone(session, drone_id, {"last_known_location": point.to_dict()})
            if drone is None:
                raise DroneNotFound(drone_id)
            session.commit()
            payload = drone_to_dict(drone)
        self.channel.publish(drone_update(payload))
        return payload

    def edit_drone(self, drone_id: int, update: Dict[str, Any]) -> Dict[str, Any]:
        """
        Operator edit of a drone record. Status changes are refused while the
        drone is flying; any change, location included, is broadcast.
        """
        update = dict(update)
        if update.get("last_known_location") is not None:
            update["last_known_location"] = Waypoint.parse(update["last_known_location"]).to_dict()
        if "status" in update:
            flying = self.registry.missions_for_drone(drone_id)
            if flying:
                raise DroneBusy(drone_id, flying[0])
            update["assigned_mission_id"] = None
        with self.session_factory() as session:
            drone = update_drone(session, drone_id, update)
            if drone is None:
                raise DroneNotFound(drone_id)
            session.commit()
            payload = drone_to_dict(drone)
        self.channel.publish(drone_update(payload))
        return payload

    def drone_removed(self, drone_id: int):
        for mission_id in self.registry.detach_drone(drone_id):
            logger.info("Drone %s detached from mission %s simulation", drone_id, mission_id)

    def mission_removed(self, mission_id: int):
        self.registry.stop(mission_id)

    def snapshot(self, mission_id: int) -> Optional[Dict[str, Any]]:
        state = self.registry.get(mission_id)
        if state is None:
            return None
        return {
            "mission_id": state.mission_id,
            "path": [p.to_dict() if isinstance(p, Waypoint) else p for p in state.path],
            "active_drone_ids": sorted(state.active_drone_ids),
            "current_segment_index": state.current_segment_index,
            "progress": state.progress,
            "progress_meters": state.progress_meters,
            "tick_count": state.tick_count,
            "tick_kind": state.tick_handle.kind if state.tick_handle else None,
        }

    def shutdown(self):
        self.registry.stop_all()
