"""Device channel - sends events to door controllers over Socket.IO"""

import logging
from typing import Any, Optional

import socketio

logger = logging.getLogger(__name__)


class SocketIOChannel:
    """
    Thin wrapper around the Socket.IO server

    The registry only stores session ids; everything that talks to a device
    goes through send() so tests can substitute a recording channel.
    """

    def __init__(self, sio: socketio.AsyncServer):
        self.sio = sio

    async def send(self, transport_handle: str, event: str, data: Any = None):
        await self.sio.emit(event, data, to=transport_handle)

    async def broadcast(self, event: str, data: Any = None):
        await self.sio.emit(event, data)

    def transport_name(self, transport_handle: str) -> Optional[str]:
        """'websocket' or 'polling', None if the session is gone"""
        try:
            return self.sio.transport(transport_handle)
        except KeyError:
            return None
