"""Error taxonomy for room authorization, device resolution and dispatch"""

from typing import List, Optional


class DoorRelayError(Exception):
    """Base class for errors reported to the administrative caller"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message}


class RoomNotFound(DoorRelayError):
    status_code = 404

    def __init__(self, room_name: str):
        super().__init__("Room not found")
        self.room_name = room_name


class TargetNotFound(DoorRelayError):
    """No registered session matches the target, even after fuzzy matching"""

    status_code = 404

    def __init__(self, target: str, roster: Optional[List[str]] = None):
        super().__init__(f"Device {target} not connected")
        self.target = target
        self.roster = list(roster or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["availableDevices"] = self.roster
        return data


class DeviceUnreachable(TargetNotFound):
    pass


class AccessDenied(DoorRelayError):
    status_code = 403

    def __init__(self, room_name: str, reason: str = "Door access is disabled for this room"):
        super().__init__(reason)
        self.room_name = room_name


class NoDevicesConnected(DeviceUnreachable):
    """The registry is empty, so no target can be reached"""

    status_code = 503

    def __init__(self, target: str = ""):
        super().__init__(target, [])
        self.message = "No ESP32 devices connected"
        self.args = (self.message,)


class DispatchFailed(DoorRelayError):
    status_code = 503

    def __init__(self, message: str = "Failed to send trigger to ESP32 devices"):
        super().__init__(message)


class PersistenceError(DoorRelayError):
    status_code = 500


class InvalidRequest(DoorRelayError):
    status_code = 400
