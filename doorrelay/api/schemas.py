"""Pydantic schemas for API request/response validation

Field aliases are camelCase to match the existing web and mobile clients.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from doorrelay.core.config import settings


class CamelModel(BaseModel):
    class Config:
        populate_by_name = True
        from_attributes = True


# Room schemas
class RoomUpsertRequest(CamelModel):
    """Create a room or update an existing one"""

    room_name: str = Field(..., alias="roomName", min_length=1, max_length=255)
    door_access: Optional[bool] = Field(None, alias="doorAccess")
    device_id: Optional[str] = Field(None, alias="deviceId", max_length=255)


class RoomAccessUpdate(CamelModel):
    door_access: bool = Field(..., alias="doorAccess")


class AccessLogItem(CamelModel):
    timestamp: datetime
    action: str


class RoomInfo(CamelModel):
    room_name: str = Field(..., alias="roomName")
    door_access: bool = Field(..., alias="doorAccess")
    device_id: Optional[str] = Field(None, alias="deviceId")
    last_accessed: Optional[datetime] = Field(None, alias="lastAccessed")
    access_log: List[AccessLogItem] = Field(default_factory=list, alias="accessLog")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class RoomResponse(BaseModel):
    success: bool = True
    data: RoomInfo


class RoomListResponse(BaseModel):
    success: bool = True
    data: List[RoomInfo]


class AccessLogResponse(BaseModel):
    success: bool = True
    data: List[AccessLogItem]


# Trigger schemas
class TriggerRequest(CamelModel):
    """Optional body for trigger endpoints"""

    duration_ms: Optional[int] = Field(
        None, alias="durationMs", gt=0, le=settings.MAX_DURATION_MS,
        description="Lock release time in milliseconds",
    )


class TriggerData(CamelModel):
    mode: str
    room_name: str = Field(..., alias="roomName")
    duration_ms: int = Field(..., alias="durationMs")
    sent_count: int = Field(..., alias="sentCount")
    devices: List[str]
    failed_devices: List[str] = Field(default_factory=list, alias="failedDevices")
    access_logged: bool = Field(..., alias="accessLogged")
    room: Optional[RoomInfo] = None


class TriggerResponse(BaseModel):
    success: bool = True
    message: str
    data: TriggerData


# Device / audit schemas
class DeviceInfo(CamelModel):
    socket_id: str = Field(..., alias="socketId")
    device_id: str = Field(..., alias="deviceId")
    room_name: str = Field(..., alias="roomName")
    chip_id: Optional[str] = Field(None, alias="chipId")
    ip: Optional[str] = None
    registered_at: datetime = Field(..., alias="registeredAt")
    last_seen: datetime = Field(..., alias="lastSeen")
    transport: Optional[str] = None


class DeviceListResponse(BaseModel):
    success: bool = True
    count: int
    devices: List[DeviceInfo]


class DispatchRecordInfo(CamelModel):
    target: str
    timestamp: datetime
    action: str
    outcome: str
    device_id: Optional[str] = Field(None, alias="deviceId")
    detail: Optional[str] = None


class DispatchLogResponse(BaseModel):
    success: bool = True
    data: List[DispatchRecordInfo]


class AuditJournalResponse(BaseModel):
    success: bool = True
    statistics: dict
    data: List[dict]


# Health check
class ConnectedDevice(CamelModel):
    device_id: str = Field(..., alias="deviceId")
    room_name: str = Field(..., alias="roomName")
    ip: Optional[str] = None
    registered_at: datetime = Field(..., alias="registeredAt")
    last_seen: datetime = Field(..., alias="lastSeen")


class HealthResponse(CamelModel):
    """Health check response"""

    success: bool = True
    status: str
    esp32_connected: bool = Field(..., alias="esp32Connected")
    esp32_count: int = Field(..., alias="esp32Count")
    connected_devices: List[ConnectedDevice] = Field(..., alias="connectedDevices")
    database_connected: bool = Field(..., alias="databaseConnected")
    uptime: float
    timestamp: datetime
    version: str
