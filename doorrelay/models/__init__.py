"""Database models"""

from doorrelay.models.room import Room, AccessLogEntry
from doorrelay.models.dispatch_record import DispatchRecord, DispatchAction, DispatchOutcome

__all__ = ["Room", "AccessLogEntry", "DispatchRecord", "DispatchAction", "DispatchOutcome"]
