"""Room management and room trigger API routes"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from doorrelay.api.deps import get_dispatcher, get_gateway, get_registry, get_settings
from doorrelay.api.schemas import (
    AccessLogItem,
    AccessLogResponse,
    RoomAccessUpdate,
    RoomInfo,
    RoomListResponse,
    RoomResponse,
    RoomUpsertRequest,
    TriggerData,
    TriggerRequest,
    TriggerResponse,
)
from doorrelay.core.config import Settings
from doorrelay.core.database import get_db
from doorrelay.core.exceptions import InvalidRequest, PersistenceError, RoomNotFound
from doorrelay.models.room import Room
from doorrelay.services.dispatcher import CommandDispatcher, DispatchResult
from doorrelay.services.device_gateway import DeviceGateway
from doorrelay.services.policy import device_id_candidates, find_room
from doorrelay.services.registry import SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["rooms"])


def room_info(room: Room) -> RoomInfo:
    return RoomInfo(
        room_name=room.room_name,
        door_access=room.door_access,
        device_id=room.device_id,
        last_accessed=room.last_accessed,
        access_log=[AccessLogItem.model_validate(entry) for entry in room.access_log],
        created_at=room.created_at,
        updated_at=room.updated_at,
    )


def trigger_response(result: DispatchResult) -> TriggerResponse:
    return TriggerResponse(
        message=f"Door trigger sent successfully to {result.sent_count} device(s)",
        data=TriggerData(
            mode=result.mode,
            room_name=result.room_name,
            duration_ms=result.duration_ms,
            sent_count=result.sent_count,
            devices=result.devices,
            failed_devices=result.failed,
            access_logged=result.persisted,
            room=room_info(result.room) if result.room is not None else None,
        ),
    )


async def _commit(db: AsyncSession):
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise InvalidRequest("Device is already bound to another room") from e
    except SQLAlchemyError as e:
        await db.rollback()
        raise PersistenceError(f"Database error: {e}") from e


def sync_bound_sessions(registry: SessionRegistry, room: Room, settings: Settings) -> bool:
    """
    Point live sessions at the room's current binding

    The newly bound device gets the room; a previously bound device that
    still carries it goes back to unassigned. Returns True if any changed.
    """
    bound = set()
    if room.device_id:
        bound = set(device_id_candidates(room.device_id, settings.DEVICE_ID_PREFIX))

    changed = False
    for session in registry.snapshot():
        if session.device_id in bound:
            new_room = room.room_name
        elif session.room_name == room.room_name:
            new_room = settings.UNASSIGNED_ROOM
        else:
            continue
        if new_room != session.room_name and registry.assign_room(
            session.device_id, new_room, session.transport_handle
        ):
            logger.info(f"ESP32 {session.device_id} moved from {session.room_name} to {new_room}")
            changed = True
    return changed


@router.get("", response_model=RoomListResponse)
async def list_rooms(db: AsyncSession = Depends(get_db)):
    """Get all rooms"""
    result = await db.execute(select(Room).order_by(Room.id))
    rooms = result.scalars().all()
    return RoomListResponse(data=[room_info(room) for room in rooms])


@router.post("", response_model=RoomResponse)
async def upsert_room(
    request: RoomUpsertRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
    registry: SessionRegistry = Depends(get_registry),
    gateway: DeviceGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    """
    Create a room or update an existing one
    201 when created, 200 when updated
    """
    # door_access changes share the lock with in-flight triggers
    async with dispatcher.access_lock:
        room = await find_room(db, request.room_name)

        if room:
            if request.door_access is not None:
                room.door_access = request.door_access
            if request.device_id is not None:
                room.device_id = request.device_id or None
            response.status_code = 200
        else:
            room = Room(
                room_name=request.room_name,
                door_access=bool(request.door_access),
                device_id=request.device_id or None,
                access_log=[],
            )
            db.add(room)
            response.status_code = 201

        await _commit(db)

    logger.info(f"Room {room.room_name} saved (door_access={room.door_access}, device={room.device_id})")

    if sync_bound_sessions(registry, room, settings):
        await gateway.notify_roster()

    return RoomResponse(data=room_info(room))


@router.get("/{room_name}", response_model=RoomResponse)
async def get_room(room_name: str, db: AsyncSession = Depends(get_db)):
    """Get a room by name"""
    room = await find_room(db, room_name)
    if not room:
        raise RoomNotFound(room_name)
    return RoomResponse(data=room_info(room))


@router.patch("/{room_name}/access", response_model=RoomResponse)
async def update_access(
    room_name: str,
    request: RoomAccessUpdate,
    db: AsyncSession = Depends(get_db),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Enable or disable door access for a room"""
    async with dispatcher.access_lock:
        room = await find_room(db, room_name)
        if not room:
            raise RoomNotFound(room_name)

        room.door_access = request.door_access
        await _commit(db)

    logger.info(f"Door access for {room_name} set to {request.door_access}")
    return RoomResponse(data=room_info(room))


@router.post("/{room_name}/trigger", response_model=TriggerResponse)
async def trigger_room(
    room_name: str,
    request: Optional[TriggerRequest] = None,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """
    Trigger the door of a room
    Sent to the room's bound device, or to every connected device when unbound
    """
    duration_ms = request.duration_ms if request else None
    result = await dispatcher.trigger_room(room_name, duration_ms)
    return trigger_response(result)


@router.get("/{room_name}/logs", response_model=AccessLogResponse)
async def get_room_logs(
    room_name: str,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Room access log, most recent first"""
    room = await find_room(db, room_name)
    if not room:
        raise RoomNotFound(room_name)

    entries = sorted(room.access_log, key=lambda e: (e.timestamp, e.id), reverse=True)
    return AccessLogResponse(
        data=[AccessLogItem.model_validate(e) for e in entries[: settings.LOG_PAGE_SIZE]]
    )
