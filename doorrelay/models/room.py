"""Room model - conference rooms and their door access flag"""

from sqlalchemy import Column, String, Integer, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from doorrelay.core.database import Base, utcnow


class Room(Base):
    """
    Room table
    - room_name: unique key used by the web/app clients
    - door_access: authorization flag checked before every trigger
    - device_id: optional binding to one door controller
    """

    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)

    room_name = Column(String(255), unique=True, nullable=False, index=True)

    # Authorization flag, toggled administratively at any time
    door_access = Column(Boolean, default=False, nullable=False)

    # Door controller bound to this room (None = broadcast to all devices)
    device_id = Column(String(255), unique=True, nullable=True, index=True)

    last_accessed = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    access_log = relationship(
        "AccessLogEntry",
        back_populates="room",
        order_by="AccessLogEntry.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Room(room_name='{self.room_name}', door_access={self.door_access})>"


class AccessLogEntry(Base):
    """One successful door opening recorded against a room"""

    __tablename__ = "room_access_log"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    action = Column(String(255), nullable=False)

    room = relationship("Room", back_populates="access_log")

    def __repr__(self):
        return f"<AccessLogEntry(room_id={self.room_id}, action='{self.action}')>"
