"""
Command Dispatcher - sends door_trigger to one device or fans out to all

Targeted mode is used when a room is bound to a device (or a device is
addressed directly); broadcast mode reaches every connected device and
counts partial delivery as success.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doorrelay.core.database import utcnow
from doorrelay.core.exceptions import (
    AccessDenied,
    DeviceUnreachable,
    DispatchFailed,
    NoDevicesConnected,
    RoomNotFound,
    TargetNotFound,
)
from doorrelay.models.dispatch_record import DispatchAction, DispatchOutcome
from doorrelay.models.room import AccessLogEntry, Room
from doorrelay.services.audit import AuditSink
from doorrelay.services.policy import (
    AccessPolicyGate,
    Authorization,
    AuthorizationStatus,
    find_room_for_device,
)
from doorrelay.services.registry import DeviceSession, SessionRegistry
from doorrelay.services.resolver import IdentityResolver

logger = logging.getLogger(__name__)

TRIGGER_EVENT = "door_trigger"
ACCESS_LOG_ACTION = "Door opened"


@dataclass
class DispatchResult:
    mode: str
    room_name: str
    duration_ms: int
    devices: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    persisted: bool = True
    room: Optional[Room] = None

    @property
    def sent_count(self) -> int:
        return len(self.devices)


class CommandDispatcher:
    """
    Owns the authorize -> dispatch -> record critical section

    access_lock serializes every trigger with every door_access change, so
    access cannot be revoked between the check and the access log write.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        resolver: IdentityResolver,
        channel,
        audit: AuditSink,
        session_maker: async_sessionmaker,
        policy: Optional[AccessPolicyGate] = None,
        default_duration_ms: int = 3000,
        unassigned_room: str = "unassigned",
        allow_unassigned_trigger: bool = False,
    ):
        self.registry = registry
        self.resolver = resolver
        self.channel = channel
        self.audit = audit
        self.session_maker = session_maker
        self.policy = policy or AccessPolicyGate()
        self.default_duration_ms = default_duration_ms
        self.unassigned_room = unassigned_room
        self.allow_unassigned_trigger = allow_unassigned_trigger
        self.access_lock = asyncio.Lock()

    # ── Entry points ─────────────────────────────────────────────

    async def trigger_room(self, room_name: str, duration_ms: Optional[int] = None) -> DispatchResult:
        """Open the door of a room (targeted if the room is bound to a device)"""
        duration_ms = duration_ms or self.default_duration_ms

        async with self.access_lock:
            async with self.session_maker() as db:
                auth = await self.policy.authorize(db, room_name)
                self._enforce(auth, room_name)
                room = auth.room

                if len(self.registry) == 0:
                    await self._record_failure(room_name, "No devices connected")
                    raise NoDevicesConnected()

                if room.device_id:
                    result = await self.send_targeted(room.device_id, room_name, duration_ms)
                else:
                    result = await self.broadcast(room_name, duration_ms)

                await self._record_access(db, room, result)
                return result

    async def trigger_device(self, target: str, duration_ms: Optional[int] = None) -> DispatchResult:
        """Open the door driven by one device, gated by the room it belongs to"""
        duration_ms = duration_ms or self.default_duration_ms

        async with self.access_lock:
            if len(self.registry) == 0:
                await self._record_failure(target, "No devices connected")
                raise NoDevicesConnected()

            session = await self._resolve(target)

            async with self.session_maker() as db:
                # the stored binding decides, never the room cached on the session
                room = await find_room_for_device(db, session.device_id, self.resolver.prefix)

                if room is None:
                    if not self.allow_unassigned_trigger:
                        logger.warning(f"Trigger rejected, device {session.device_id} is not bound to a room")
                        raise RoomNotFound(self.unassigned_room)
                    logger.info(f"Device {session.device_id} has no room, triggering without room gate")
                    result = await self._send(
                        session, self.unassigned_room, duration_ms, session.device_id
                    )
                    result.persisted = False
                    return result

                self._enforce(self.policy.check(room), room.room_name)
                result = await self._send(session, room.room_name, duration_ms, room.room_name)
                await self._record_access(db, room, result)
                return result

    # ── Dispatch modes ───────────────────────────────────────────

    async def send_targeted(self, target: str, room_name: str, duration_ms: int) -> DispatchResult:
        """Resolve target and send exactly one trigger"""
        session = await self._resolve(target, audit_target=room_name)
        return await self._send(session, room_name, duration_ms, room_name)

    async def broadcast(self, room_name: str, duration_ms: int) -> DispatchResult:
        """Send the trigger to every connected device (best effort)"""
        sessions = self.registry.snapshot()
        if not sessions:
            await self._record_failure(room_name, "No devices connected")
            raise NoDevicesConnected()

        payload = self._payload(room_name, duration_ms)
        result = DispatchResult(mode="broadcast", room_name=room_name, duration_ms=duration_ms)

        for session in sessions:
            try:
                await self.channel.send(session.transport_handle, TRIGGER_EVENT, payload)
            except Exception as e:
                logger.error(f"Error sending to ESP32 {session.device_id}: {e}")
                result.failed.append(session.device_id)
                await self._record_failure(room_name, str(e), session.device_id)
                continue
            result.devices.append(session.device_id)
            logger.info(f"Door trigger sent to ESP32: {session.device_id}")

        if not result.devices:
            raise DispatchFailed()

        await self.audit.record(
            room_name,
            DispatchAction.TRIGGER_SENT,
            DispatchOutcome.SUCCESS,
            detail=f"Sent to {result.sent_count} of {len(sessions)} device(s), duration={duration_ms}ms",
        )
        return result

    async def record_feedback(self, device_id: str, room_name: Optional[str] = None):
        """Device reported the door opened; not correlated with any request"""
        target = room_name if room_name and room_name != self.unassigned_room else device_id
        logger.info(f"Door opened feedback from {device_id} (room {room_name})")
        await self.audit.record(
            target,
            DispatchAction.DOOR_OPENED_FEEDBACK,
            DispatchOutcome.SUCCESS,
            device_id=device_id,
        )

    # ── Helpers ──────────────────────────────────────────────────

    def _enforce(self, auth: Authorization, room_name: str):
        if auth.status == AuthorizationStatus.ROOM_NOT_FOUND:
            raise RoomNotFound(room_name)
        if auth.status == AuthorizationStatus.DENIED:
            logger.warning(f"Trigger denied for room {room_name}: {auth.reason}")
            raise AccessDenied(room_name, auth.reason)

    async def _resolve(self, target: str, audit_target: Optional[str] = None) -> DeviceSession:
        try:
            return self.resolver.resolve(target)
        except TargetNotFound as e:
            logger.warning(f"Device {target} not connected, known devices: {e.roster}")
            await self._record_failure(audit_target or target, "Device not connected", target)
            raise DeviceUnreachable(target, e.roster) from e

    async def _send(
        self, session: DeviceSession, room_name: str, duration_ms: int, audit_target: str
    ) -> DispatchResult:
        payload = self._payload(room_name, duration_ms)
        try:
            await self.channel.send(session.transport_handle, TRIGGER_EVENT, payload)
        except Exception as e:
            logger.error(f"Error sending to ESP32 {session.device_id}: {e}")
            await self._record_failure(audit_target, str(e), session.device_id)
            raise DispatchFailed(f"Failed to send trigger to {session.device_id}") from e

        logger.info(f"Door trigger sent to ESP32: {session.device_id}")
        await self.audit.record(
            audit_target,
            DispatchAction.TRIGGER_SENT,
            DispatchOutcome.SUCCESS,
            device_id=session.device_id,
            detail=f"duration={duration_ms}ms",
        )
        return DispatchResult(
            mode="targeted",
            room_name=room_name,
            duration_ms=duration_ms,
            devices=[session.device_id],
        )

    def _payload(self, room_name: str, duration_ms: int) -> dict:
        return {
            "roomName": room_name,
            "duration": duration_ms,
            "timestamp": utcnow().isoformat(),
        }

    async def _record_failure(self, target: str, detail: str, device_id: Optional[str] = None):
        await self.audit.record(
            target,
            DispatchAction.TRIGGER_FAILED,
            DispatchOutcome.FAILURE,
            device_id=device_id,
            detail=detail,
        )

    async def _record_access(self, db: AsyncSession, room: Room, result: DispatchResult):
        """
        Append to the room access log after a successful dispatch

        The door has already been triggered, so a failure here is audited
        and reported via result.persisted but never raised.
        """
        now = utcnow()
        room_name = room.room_name
        try:
            room.last_accessed = now
            room.access_log.append(AccessLogEntry(timestamp=now, action=ACCESS_LOG_ACTION))
            await db.commit()
            result.room = room
        except Exception as e:
            try:
                await db.rollback()
            except SQLAlchemyError as rollback_error:
                logger.error(f"Rollback after failed access log for {room_name} failed: {rollback_error}")
            result.persisted = False
            logger.error(f"Failed to record access for room {room_name}: {e}")
            await self.audit.record(
                room_name,
                DispatchAction.ACCESS_LOG_FAILED,
                DispatchOutcome.FAILURE,
                detail=str(e),
            )
