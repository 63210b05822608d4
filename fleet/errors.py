class FleetError(ValueError):
    """Base class for rejected fleet/simulation requests."""


class InvalidWaypoint(FleetError):
    pass


class InsufficientWaypoints(FleetError):
    def __init__(self, mission_id, count: int):
        super().__init__(f"Mission {mission_id} has {count} waypoint(s), at least 2 are required")
        self.mission_id = mission_id
        self.count = count


class MissionNotFound(FleetError):
    def __init__(self, mission_id):
        super().__init__(f"Mission {mission_id} not found")
        self.mission_id = mission_id


class DroneNotFound(FleetError):
    def __init__(self, drone_id):
        super().__init__(f"Drone {drone_id} not found")
        self.drone_id = drone_id


class AssignmentNotFound(FleetError):
    def __init__(self, assignment_id):
        super().__init__(f"Assignment {assignment_id} not found")
        self.assignment_id = assignment_id


class MissionClosed(FleetError):
    def __init__(self, mission_id, status: str):
        super().__init__(f"Mission {mission_id} is already {status}")
        self.mission_id = mission_id
        self.status = status


class DroneBusy(FleetError):
    def __init__(self, drone_id, mission_id):
        super().__init__(f"Drone {drone_id} is already flying mission {mission_id}")
        self.drone_id = drone_id
        self.mission_id = mission_id
