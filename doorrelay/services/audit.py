"""
Audit Sink - append-only record of dispatch attempts and device feedback

Every entry goes to two places:
- an in-memory ring buffer (always succeeds, survives database outages)
- the dispatch_records table (best effort)
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from doorrelay.models.dispatch_record import DispatchAction, DispatchOutcome, DispatchRecord

logger = logging.getLogger(__name__)


class AuditJournal:
    """
    Ring buffer of recent audit entries

    Entries that failed to reach the database stay visible here with
    persisted=False.
    """

    def __init__(self, max_size: int = 500):
        self.max_size = max_size
        self.buffer = deque(maxlen=max_size)
        self.buffer_lock = threading.Lock()

        # Statistics
        self.total_entries = 0
        self.unpersisted = 0
        self.by_action: Dict[str, int] = {}

    def append(self, entry: Dict[str, Any]):
        with self.buffer_lock:
            self.buffer.append(entry)
            self.total_entries += 1
            action = entry.get("action", "unknown")
            self.by_action[action] = self.by_action.get(action, 0) + 1

    def mark_unpersisted(self, entry: Dict[str, Any]):
        with self.buffer_lock:
            entry["persisted"] = False
            self.unpersisted += 1

    def get_entries(
        self,
        limit: Optional[int] = None,
        target: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[Dict]:
        """Most recent first"""
        with self.buffer_lock:
            entries = [dict(e) for e in self.buffer]

        if target is not None:
            entries = [e for e in entries if e["target"] == target]
        if action is not None:
            entries = [e for e in entries if e["action"] == action]

        entries.reverse()
        if limit is not None:
            entries = entries[:limit]
        return entries

    def get_statistics(self) -> Dict:
        with self.buffer_lock:
            return {
                "total_entries": self.total_entries,
                "unpersisted": self.unpersisted,
                "buffer_size": len(self.buffer),
                "buffer_max": self.max_size,
                "by_action": dict(self.by_action),
            }


class AuditSink:
    """Write-only audit front end used by the dispatcher and the device gateway"""

    def __init__(self, session_maker: async_sessionmaker, journal: Optional[AuditJournal] = None):
        self.session_maker = session_maker
        self.journal = journal or AuditJournal()

    async def record(
        self,
        target: str,
        action: DispatchAction,
        outcome: DispatchOutcome,
        device_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append one entry; never raises"""
        now = datetime.now(timezone.utc)
        entry = {
            "target": target,
            "timestamp": now.isoformat(),
            "action": action.value,
            "outcome": outcome.value,
            "deviceId": device_id,
            "detail": detail,
            "persisted": True,
        }
        self.journal.append(entry)

        try:
            async with self.session_maker() as db:
                db.add(
                    DispatchRecord(
                        target=target,
                        timestamp=now,
                        action=action,
                        outcome=outcome,
                        device_id=device_id,
                        detail=detail[:500] if detail else None,
                    )
                )
                await db.commit()
        except Exception as e:
            self.journal.mark_unpersisted(entry)
            logger.error(f"Failed to persist audit record {action.value} for {target}: {e}")

        return entry

    async def recent(self, target: str, limit: int = 50) -> List[DispatchRecord]:
        """Persisted records for a target, newest first"""
        async with self.session_maker() as db:
            result = await db.execute(
                select(DispatchRecord)
                .where(DispatchRecord.target == target)
                .order_by(DispatchRecord.timestamp.desc(), DispatchRecord.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
