"""Connected device roster, direct device trigger and audit API routes"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from doorrelay.api.deps import (
    get_audit,
    get_channel,
    get_dispatcher,
    get_registry,
    get_settings,
)
from doorrelay.api.rooms import trigger_response
from doorrelay.api.schemas import (
    AuditJournalResponse,
    DeviceInfo,
    DeviceListResponse,
    DispatchLogResponse,
    DispatchRecordInfo,
    TriggerRequest,
    TriggerResponse,
)
from doorrelay.core.config import Settings
from doorrelay.services.audit import AuditSink
from doorrelay.services.dispatcher import CommandDispatcher
from doorrelay.services.registry import SessionRegistry

router = APIRouter(tags=["devices"])


def _dt(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@router.get("/devices", response_model=DeviceListResponse)
async def list_devices(
    registry: SessionRegistry = Depends(get_registry),
    channel=Depends(get_channel),
):
    """Currently connected door controllers"""
    devices = [
        DeviceInfo(
            socket_id=session.transport_handle,
            device_id=session.device_id,
            room_name=session.room_name,
            chip_id=session.chip_id,
            ip=session.remote_address,
            registered_at=_dt(session.registered_at),
            last_seen=_dt(session.last_seen_at),
            transport=channel.transport_name(session.transport_handle),
        )
        for session in registry.snapshot()
    ]
    return DeviceListResponse(count=len(devices), devices=devices)


@router.post("/trigger/{device_id}", response_model=TriggerResponse)
async def trigger_device(
    device_id: str,
    request: Optional[TriggerRequest] = None,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """
    Trigger one door controller directly
    Accepts the full id or a short id with/without the ESP32_ prefix
    """
    duration_ms = request.duration_ms if request else None
    result = await dispatcher.trigger_device(device_id, duration_ms)
    return trigger_response(result)


@router.get("/logs/{target}", response_model=DispatchLogResponse)
async def get_dispatch_logs(
    target: str,
    audit: AuditSink = Depends(get_audit),
    settings: Settings = Depends(get_settings),
):
    """Persisted dispatch records for a room or device, most recent first"""
    records = await audit.recent(target, limit=settings.LOG_PAGE_SIZE)
    return DispatchLogResponse(
        data=[
            DispatchRecordInfo(
                target=r.target,
                timestamp=r.timestamp,
                action=r.action.value,
                outcome=r.outcome.value,
                device_id=r.device_id,
                detail=r.detail,
            )
            for r in records
        ]
    )


@router.get("/audit/recent", response_model=AuditJournalResponse)
async def recent_audit(
    limit: int = Query(50, ge=1, le=500),
    target: Optional[str] = None,
    audit: AuditSink = Depends(get_audit),
):
    """In-memory audit journal, including entries the database did not accept"""
    return AuditJournalResponse(
        statistics=audit.journal.get_statistics(),
        data=audit.journal.get_entries(limit=limit, target=target),
    )
