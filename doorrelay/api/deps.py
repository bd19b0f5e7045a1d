"""Request dependencies resolving the services owned by the application"""

from fastapi import Request

from doorrelay.core.config import Settings
from doorrelay.services.audit import AuditSink
from doorrelay.services.device_gateway import DeviceGateway
from doorrelay.services.dispatcher import CommandDispatcher
from doorrelay.services.registry import SessionRegistry


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> CommandDispatcher:
    return request.app.state.dispatcher


def get_audit(request: Request) -> AuditSink:
    return request.app.state.audit


def get_channel(request: Request):
    return request.app.state.channel


def get_gateway(request: Request) -> DeviceGateway:
    return request.app.state.gateway
