import asyncio
import logging
from typing import List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from fleet import config
from fleet.errors import FleetError
from fleet.mission_simulator import MissionSimulator
from fleet.repository import list_due_missions, now_ms

logger = logging.getLogger(__name__)


class StartTimeScheduler:
    """Polls planned missions and launches the ones whose start time has passed."""

    def __init__(self, simulator: MissionSimulator, poll_interval: float = config.SCHEDULER_POLL_S):
        self.simulator = simulator
        self.poll_interval = poll_interval
        self._rejected: Set[int] = set()
        self._task: Optional[asyncio.Task] = None

    def poll_once(self, now: Optional[int] = None) -> List[int]:
        """Activate every due mission; returns the ids that were started."""
        now = now if now is not None else now_ms()
        with self.simulator.session_factory() as session:
            due = list_due_missions(session, now)
        started = []
        for mission_id in due:
            try:
                outcome = self.simulator.ensure_running(mission_id)
            except FleetError as exc:
                if mission_id not in self._rejected:
                    logger.warning("Scheduled launch of mission %s rejected: %s", mission_id, exc)
                    self._rejected.add(mission_id)
                continue
            self._rejected.discard(mission_id)
            if outcome is not None:
                logger.info("Mission %s launched at its scheduled start time", mission_id)
                started.append(mission_id)
        return started

    async def run(self):
        while True:
            try:
                self.poll_once()
            except SQLAlchemyError:
                logger.exception("Start-time poll failed")
            await asyncio.sleep(self.poll_interval)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run(), name="start-time-scheduler")
        return self._task

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
