"""Access Policy Gate - per-room door access check"""

import enum
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from doorrelay.models.room import Room


class AuthorizationStatus(str, enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    ROOM_NOT_FOUND = "room_not_found"


@dataclass
class Authorization:
    status: AuthorizationStatus
    room: Optional[Room] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status == AuthorizationStatus.ALLOWED


async def find_room(db: AsyncSession, room_name: str) -> Optional[Room]:
    result = await db.execute(select(Room).where(Room.room_name == room_name))
    return result.scalar_one_or_none()


def device_id_candidates(device_id: str, prefix: str = "") -> List[str]:
    """device_id first, then the same id with the prefix stripped or added"""
    candidates = [device_id]
    if prefix:
        if device_id.startswith(prefix):
            candidates.append(device_id[len(prefix):])
        else:
            candidates.append(f"{prefix}{device_id}")
    return candidates


async def find_room_for_device(
    db: AsyncSession, device_id: str, prefix: str = ""
) -> Optional[Room]:
    """Room bound to device_id, also accepting the binding with/without prefix"""
    candidates = device_id_candidates(device_id, prefix)
    result = await db.execute(select(Room).where(Room.device_id.in_(candidates)))
    rooms = {room.device_id: room for room in result.scalars().all()}
    for candidate in candidates:
        if candidate in rooms:
            return rooms[candidate]
    return None


class AccessPolicyGate:
    """
    Reads the current door_access flag of a room

    Never caches: the flag can be toggled at any time, so a positive answer
    is only good for the dispatch that immediately follows it.
    """

    async def authorize(self, db: AsyncSession, room_name: str) -> Authorization:
        room = await find_room(db, room_name)
        return self.check(room)

    def check(self, room: Optional[Room]) -> Authorization:
        if room is None:
            return Authorization(AuthorizationStatus.ROOM_NOT_FOUND, reason="Room not found")
        if not room.door_access:
            return Authorization(
                AuthorizationStatus.DENIED,
                room=room,
                reason="Door access is disabled for this room",
            )
        return Authorization(AuthorizationStatus.ALLOWED, room=room)
