"""
Session Registry - in-memory table of currently connected door controllers

Keyed by device id. Each entry holds the Socket.IO session id (transport
handle) the device is currently reachable on, plus liveness metadata.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class DeviceSession:
    """One connected door controller"""

    device_id: str
    transport_handle: str
    room_name: str
    remote_address: Optional[str] = None
    chip_id: Optional[str] = None
    registered_at: float = 0.0
    last_seen_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "socketId": self.transport_handle,
            "roomName": self.room_name,
            "chipId": self.chip_id,
            "ip": self.remote_address,
            "registeredAt": _iso(self.registered_at),
            "lastSeen": _iso(self.last_seen_at),
        }


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class SessionRegistry:
    """
    At most one session per device id

    All mutations are synchronous and run under one lock, so a mutation is
    never interleaved with another even when called from worker threads.
    Iteration order is registration order; re-registering keeps the
    original position.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: Dict[str, DeviceSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._sessions

    def upsert(
        self,
        device_id: str,
        transport_handle: str,
        remote_address: Optional[str],
        room_name: str,
        chip_id: Optional[str] = None,
    ) -> DeviceSession:
        """Create or refresh the session for device_id"""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(device_id)
            if session is not None:
                if session.transport_handle != transport_handle:
                    logger.info(
                        f"Device {device_id} moved from socket {session.transport_handle} to {transport_handle}"
                    )
                session.transport_handle = transport_handle
                session.remote_address = remote_address
                session.room_name = room_name
                if chip_id:
                    session.chip_id = chip_id
                session.last_seen_at = now
            else:
                session = DeviceSession(
                    device_id=device_id,
                    transport_handle=transport_handle,
                    room_name=room_name,
                    remote_address=remote_address,
                    chip_id=chip_id,
                    registered_at=now,
                    last_seen_at=now,
                )
                self._sessions[device_id] = session
            return replace(session)

    def touch(self, device_id: str) -> bool:
        """Advance last_seen_at; unknown devices are ignored"""
        with self._lock:
            session = self._sessions.get(device_id)
            if session is None:
                return False
            session.last_seen_at = self._clock()
            return True

    def assign_room(self, device_id: str, room_name: str, transport_handle: str) -> bool:
        """
        Set the room of a session after an asynchronous room lookup

        Ignored when the device has re-registered on another socket (or gone)
        since the lookup started.
        """
        with self._lock:
            session = self._sessions.get(device_id)
            if session is None or session.transport_handle != transport_handle:
                return False
            session.room_name = room_name
            return True

    def lookup(self, device_id: str) -> Optional[DeviceSession]:
        with self._lock:
            session = self._sessions.get(device_id)
            return replace(session) if session else None

    def find_by_transport(self, transport_handle: str) -> Optional[DeviceSession]:
        with self._lock:
            for session in self._sessions.values():
                if session.transport_handle == transport_handle:
                    return replace(session)
        return None

    def remove_by_transport(self, transport_handle: str) -> List[DeviceSession]:
        """Remove sessions currently bound to transport_handle"""
        with self._lock:
            removed = [
                s for s in self._sessions.values() if s.transport_handle == transport_handle
            ]
            for session in removed:
                del self._sessions[session.device_id]
        return removed

    def remove_stale(self, now: float, threshold_seconds: float) -> List[DeviceSession]:
        """Remove and return sessions silent for more than threshold_seconds"""
        with self._lock:
            stale = [
                s for s in self._sessions.values() if now - s.last_seen_at > threshold_seconds
            ]
            for session in stale:
                del self._sessions[session.device_id]
        return stale

    def snapshot(self) -> List[DeviceSession]:
        """Copies of all sessions in registration order"""
        with self._lock:
            return [replace(s) for s in self._sessions.values()]

    def device_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def roster(self) -> dict:
        """Payload for roster change notifications and status reporting"""
        devices = [s.to_dict() for s in self.snapshot()]
        return {"devices": devices, "count": len(devices)}
