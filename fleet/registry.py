import asyncio
import logging
import math
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class StartOutcome(str, Enum):
    STARTED = "started"
    ALREADY_ACTIVE = "already-active"  # drones merged into the running simulation


@dataclass
class TickHandle:
    """
    Recurring tick job bound to one mission. ``kind`` is ``"task"`` for an
    asyncio task driving the loop or ``"manual"`` when ticks are invoked
    directly by the caller.
    """

    mission_id: int
    kind: str = "manual"
    task: Any = None

    def cancel(self):
        if self.kind != "task" or self.task is None or self.task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self.task is current:
            # stopped from inside its own tick; the loop exits after returning
            return
        self.task.cancel()


@dataclass
class SimulationState:
    mission_id: int
    path: Tuple[Any, ...]
    active_drone_ids: FrozenSet[int]
    current_segment_index: int = 0
    progress: float = 0.0  # fraction of the current segment, 0..1
    ticks_in_segment: int = 0
    progress_meters: float = 0.0
    tick_count: int = 0
    tick_handle: Optional[TickHandle] = field(default=None, compare=False)

    @property
    def segment_count(self) -> int:
        return max(0, len(self.path) - 1)

    @property
    def exhausted(self) -> bool:
        return self.current_segment_index >= len(self.path) - 1

    def segment(self):
        i = self.current_segment_index
        return self.path[i], self.path[i + 1]


Scheduler = Callable[[int], TickHandle]


class SimulationRegistry:
    """
    Process-wide map of mission id -> SimulationState. The registry is the only
    owner of the states; callers get frozen snapshots and mutate through the
    methods below. One lock guards the whole map.
    """

    def __init__(self, scheduler: Optional[Scheduler] = None):
        self._states: Dict[int, SimulationState] = {}
        self._lock = threading.RLock()
        self._scheduler = scheduler

    def set_scheduler(self, scheduler: Optional[Scheduler]):
        self._scheduler = scheduler

    def start(self, mission_id: int, path: Iterable[Any], drone_ids: Iterable[int]) -> StartOutcome:
        drone_ids = frozenset(drone_ids)
        with self._lock:
            state = self._states.get(mission_id)
            if state is not None:
                state.active_drone_ids = state.active_drone_ids | drone_ids
                logger.info("Mission %s already simulating, merged drones %s", mission_id, sorted(drone_ids))
                return StartOutcome.ALREADY_ACTIVE

            state = SimulationState(mission_id=mission_id, path=tuple(path), active_drone_ids=drone_ids)
            self._states[mission_id] = state
            state.tick_handle = self._scheduler(mission_id) if self._scheduler else TickHandle(mission_id)
        logger.info(
            "Simulation registered for mission %s (%d waypoints, drones %s)",
            mission_id,
            len(state.path),
            sorted(drone_ids),
        )
        return StartOutcome.STARTED

    def get(self, mission_id: int) -> Optional[SimulationState]:
        with self._lock:
            state = self._states.get(mission_id)
            return replace(state) if state is not None else None

    def is_active(self, mission_id: int) -> bool:
        with self._lock:
            return mission_id in self._states

    def active_missions(self) -> List[int]:
        with self._lock:
            return sorted(self._states)

    def advance(self, mission_id: int, step: float, segment_length_m: float = 0.0) -> Optional[SimulationState]:
        """
        Move progress forward by ``step`` of the current segment. A finished
        segment rolls over to the next one with progress reset to zero.
        """
        ticks_per_segment = max(1, math.ceil(1.0 / step - 1e-9))
        with self._lock:
            state = self._states.get(mission_id)
            if state is None:
                return None
            state.tick_count += 1
            state.ticks_in_segment += 1
            if state.ticks_in_segment >= ticks_per_segment:
                state.current_segment_index += 1
                state.ticks_in_segment = 0
            state.progress = state.ticks_in_segment * step
            state.progress_meters = state.progress * segment_length_m
            return replace(state)

    def missions_for_drone(self, drone_id: int) -> List[int]:
        with self._lock:
            return sorted(m for m, s in self._states.items() if drone_id in s.active_drone_ids)

    def detach_drone(self, drone_id: int) -> List[int]:
        """Remove a drone from every simulation; returns affected mission ids."""
        affected = []
        with self._lock:
            for mission_id, state in self._states.items():
                if drone_id in state.active_drone_ids:
                    state.active_drone_ids = state.active_drone_ids - {drone_id}
                    affected.append(mission_id)
        return affected

    def stop(self, mission_id: int):
        with self._lock:
            state = self._states.pop(mission_id, None)
        if state is None:
            return
        if state.tick_handle is not None:
            state.tick_handle.cancel()
        logger.info("Simulation for mission %s stopped", mission_id)

    def stop_all(self):
        for mission_id in self.active_missions():
            self.stop(mission_id)
