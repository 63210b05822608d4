import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fleet import config
from fleet.database import init_db
from web.router_fleet import router as fleet_router
from web.router_missions import router as mission_router
from web.router_ws import router as ws_router
from web.services import scheduler, simulator

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    simulator.attach_loop(asyncio.get_running_loop())
    if config.RUN_SCHEDULER:
        scheduler.start()
        logger.info("Start-time scheduler polling every %.1fs", scheduler.poll_interval)
    else:
        logger.warning("Start-time scheduler disabled")
    yield
    scheduler.stop()
    simulator.shutdown()


app = FastAPI(title="Drone Fleet Missions", lifespan=lifespan)

app.include_router(fleet_router, prefix="/api")
app.include_router(mission_router, prefix="/api")
app.include_router(ws_router)
init_db()


@app.get("/health")
def health():
    return {"status": "ok", "active_simulations": len(simulator.registry.active_missions())}
