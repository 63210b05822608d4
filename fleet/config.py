import os


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


# SQLite database stored inside data/ unless overridden
DATABASE_URL = os.getenv("FLEET_DATABASE_URL", "sqlite:///data/fleet.db")

# Simulation driver
TICK_INTERVAL_S = _env_float("FLEET_TICK_INTERVAL_S", 1.0)
PROGRESS_STEP = _env_float("FLEET_PROGRESS_STEP", 0.05)  # fraction of a segment per tick

# Start-time scheduler
SCHEDULER_POLL_S = _env_float("FLEET_SCHEDULER_POLL_S", 5.0)
RUN_SCHEDULER = _env_flag("FLEET_RUN_SCHEDULER", True)

# Broadcast channel
SUBSCRIBER_QUEUE_SIZE = int(_env_float("FLEET_SUBSCRIBER_QUEUE_SIZE", 256))

# Path statistics
CRUISE_SPEED_MPS = _env_float("FLEET_CRUISE_SPEED_MPS", 10.0)
VERTICAL_SPEED_MPS = _env_float("FLEET_VERTICAL_SPEED_MPS", 5.0)
