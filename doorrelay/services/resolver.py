"""Identity Resolver - map a room/device target string to one live session"""

import logging
from typing import Optional

from doorrelay.core.exceptions import TargetNotFound
from doorrelay.services.registry import DeviceSession, SessionRegistry

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Resolve operator-entered device ids

    Order: exact id, then (prefixed target) stripped id and suffix match,
    or (unprefixed target) prefixed id. Suffix matches are ambiguous when
    two ids share a suffix; the first in registration order wins.
    """

    def __init__(self, registry: SessionRegistry, prefix: str = "ESP32_"):
        self.registry = registry
        self.prefix = prefix

    def resolve(self, target: str) -> DeviceSession:
        sessions = self.registry.snapshot()
        by_id = {s.device_id: s for s in sessions}

        match = self._match(target, sessions, by_id)
        if match is None:
            raise TargetNotFound(target, [s.device_id for s in sessions])

        if match.device_id != target:
            logger.info(f"Resolved target {target} to device {match.device_id}")
        return match

    def _match(self, target, sessions, by_id) -> Optional[DeviceSession]:
        if target in by_id:
            return by_id[target]

        if self.prefix and target.startswith(self.prefix):
            stripped = target[len(self.prefix):]
            if stripped in by_id:
                return by_id[stripped]
            if stripped:
                for session in sessions:
                    if session.device_id.endswith(stripped):
                        return session
            return None

        return by_id.get(f"{self.prefix}{target}") if self.prefix else None
