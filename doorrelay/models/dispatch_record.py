"""Dispatch record model - append-only audit trail of trigger attempts"""

import enum

from sqlalchemy import Column, String, Integer, DateTime, Enum, Index
from doorrelay.core.database import Base


class DispatchAction(str, enum.Enum):
    """What happened"""

    TRIGGER_SENT = "trigger-sent"
    TRIGGER_FAILED = "trigger-failed"
    DOOR_OPENED_FEEDBACK = "door-opened-feedback"
    ACCESS_LOG_FAILED = "access-log-failed"


class DispatchOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class DispatchRecord(Base):
    """
    Audit table
    Rows are only ever inserted; nothing in the server updates or deletes them
    """

    __tablename__ = "dispatch_records"
    __table_args__ = (Index("ix_dispatch_records_target_ts", "target", "timestamp"),)

    id = Column(Integer, primary_key=True, index=True)

    # Room name or device id the attempt was addressed to
    target = Column(String(255), nullable=False)

    timestamp = Column(DateTime(timezone=True), nullable=False)
    action = Column(
        Enum(DispatchAction, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    outcome = Column(
        Enum(DispatchOutcome, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    # Device that was (or should have been) reached, when known
    device_id = Column(String(255), nullable=True)
    detail = Column(String(500), nullable=True)

    def __repr__(self):
        return f"<DispatchRecord(target='{self.target}', action='{self.action}', outcome='{self.outcome}')>"
