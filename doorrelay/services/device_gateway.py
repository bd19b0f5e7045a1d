"""
Socket.IO gateway for door controller communication

Events:
- esp32_register        device -> server, {deviceId, chipId, ip}
- ping                  device -> server, answered with pong
- door_opened_feedback  device -> server, {deviceId, roomName}
- registered            server -> device, registration ack
- door_trigger          server -> device (sent by the dispatcher)
- devices_update        server -> all clients, current roster
"""

import logging
from typing import Dict, Optional

import socketio
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from doorrelay.services.dispatcher import CommandDispatcher
from doorrelay.services.policy import find_room_for_device
from doorrelay.services.registry import SessionRegistry

logger = logging.getLogger(__name__)

ROSTER_EVENT = "devices_update"


class DeviceGateway:
    """
    Handles Socket.IO events from door controllers

    Handlers for one connection run in arrival order; the registry update in
    each handler is synchronous, persistence lookups are awaited afterwards.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        channel,
        dispatcher: CommandDispatcher,
        session_maker: async_sessionmaker,
        unassigned_room: str = "unassigned",
        prefix: str = "ESP32_",
    ):
        self.registry = registry
        self.channel = channel
        self.dispatcher = dispatcher
        self.session_maker = session_maker
        self.unassigned_room = unassigned_room
        self.prefix = prefix
        self.remote_addresses: Dict[str, Optional[str]] = {}

    def attach(self, sio: socketio.AsyncServer):
        """Register handlers on the Socket.IO server"""
        sio.on("connect", self.on_connect)
        sio.on("disconnect", self.on_disconnect)
        sio.on("esp32_register", self.on_register)
        sio.on("ping", self.on_ping)
        sio.on("door_opened_feedback", self.on_feedback)
        logger.info("Device gateway attached to Socket.IO server")

    async def on_connect(self, sid: str, environ: dict, auth=None):
        scope = environ.get("asgi.scope") or {}
        client = scope.get("client")
        address = client[0] if client else environ.get("REMOTE_ADDR")
        self.remote_addresses[sid] = address
        logger.info(f"Client connected: {sid} from {address}")

    async def on_disconnect(self, sid: str, reason=None):
        logger.info(f"Client disconnected: {sid} Reason: {reason}")
        self.remote_addresses.pop(sid, None)

        removed = self.registry.remove_by_transport(sid)
        for session in removed:
            logger.info(f"ESP32 disconnected: {session.device_id}")
        if removed:
            logger.info(f"Remaining ESP32 devices: {len(self.registry)}")
            await self.notify_roster()

    async def on_register(self, sid: str, data=None):
        data = data if isinstance(data, dict) else {}
        device_id = str(data.get("deviceId") or "UNKNOWN")
        if device_id == "UNKNOWN":
            logger.warning(f"ESP32 registration without deviceId from {sid}")

        existing = self.registry.lookup(device_id)
        best_known_room = existing.room_name if existing else self.unassigned_room

        session = self.registry.upsert(
            device_id,
            sid,
            data.get("ip") or self.remote_addresses.get(sid),
            best_known_room,
            chip_id=data.get("chipId"),
        )
        logger.info(
            f"ESP32 registered: {device_id} socket={sid} ip={session.remote_address} "
            f"total={len(self.registry)}"
        )

        await self.channel.send(
            sid,
            "registered",
            {
                "status": "success",
                "message": "ESP32 registered successfully",
                "socketId": sid,
            },
        )
        await self.notify_roster()
        await self._refine_room(device_id, sid, best_known_room)

    async def on_ping(self, sid: str, data=None):
        await self.channel.send(sid, "pong")
        session = self.registry.find_by_transport(sid)
        if session:
            self.registry.touch(session.device_id)

    async def on_feedback(self, sid: str, data=None):
        data = data if isinstance(data, dict) else {}
        session = self.registry.find_by_transport(sid)

        device_id = data.get("deviceId") or (session.device_id if session else sid)
        room_name = data.get("roomName") or (session.room_name if session else None)
        if session:
            self.registry.touch(session.device_id)

        await self.dispatcher.record_feedback(str(device_id), room_name)

    async def notify_roster(self):
        """Push the current roster to every connected client"""
        try:
            await self.channel.broadcast(ROSTER_EVENT, self.registry.roster())
        except Exception as e:
            logger.warning(f"Failed to broadcast roster update: {e}")

    async def _refine_room(self, device_id: str, sid: str, best_known_room: str):
        """Look up the room bound to the device and store it on the session"""
        try:
            async with self.session_maker() as db:
                room = await find_room_for_device(db, device_id, self.prefix)
        except SQLAlchemyError as e:
            logger.error(f"Room lookup failed for {device_id}, keeping {best_known_room}: {e}")
            return

        room_name = room.room_name if room else self.unassigned_room
        if room_name == best_known_room:
            return
        if self.registry.assign_room(device_id, room_name, sid):
            logger.info(f"ESP32 {device_id} assigned to room {room_name}")
            await self.notify_roster()
