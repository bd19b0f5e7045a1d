"""Tests for the command dispatcher and access policy gate."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from doorrelay.core.database import get_session_maker
from doorrelay.core.exceptions import (
    AccessDenied,
    DeviceUnreachable,
    DispatchFailed,
    NoDevicesConnected,
    RoomNotFound,
)
from doorrelay.models.dispatch_record import DispatchAction, DispatchOutcome
from doorrelay.models.room import Room
from doorrelay.services.policy import AccessPolicyGate, AuthorizationStatus, find_room


async def _add_room(name, access=True, device_id=None):
    async with get_session_maker()() as db:
        db.add(Room(room_name=name, door_access=access, device_id=device_id, access_log=[]))
        await db.commit()


async def _load_room(name):
    async with get_session_maker()() as db:
        return await find_room(db, name)


class TestPolicyGate:
    @pytest.mark.asyncio
    async def test_statuses(self, app):
        await _add_room("Open", access=True)
        await _add_room("Closed", access=False)
        gate = AccessPolicyGate()

        async with get_session_maker()() as db:
            assert (await gate.authorize(db, "Open")).status == AuthorizationStatus.ALLOWED
            denied = await gate.authorize(db, "Closed")
            assert denied.status == AuthorizationStatus.DENIED
            assert denied.reason
            missing = await gate.authorize(db, "Nowhere")
            assert missing.status == AuthorizationStatus.ROOM_NOT_FOUND


class TestTriggerRoom:
    @pytest.mark.asyncio
    async def test_targeted_to_bound_device(self, dispatcher, registry, channel):
        await _add_room("Lab-1", device_id="ESP32_AB12")
        registry.upsert("ESP32_AB12", "sid-1", None, "Lab-1")
        registry.upsert("ESP32_OTHER", "sid-2", None, "unassigned")

        result = await dispatcher.trigger_room("Lab-1")

        assert result.mode == "targeted"
        assert result.devices == ["ESP32_AB12"]
        triggers = channel.triggers()
        assert len(triggers) == 1
        handle, payload = triggers[0]
        assert handle == "sid-1"
        assert payload["roomName"] == "Lab-1"
        assert payload["duration"] == 3000
        assert "timestamp" in payload

        room = await _load_room("Lab-1")
        assert len(room.access_log) == 1
        assert room.access_log[0].action == "Door opened"
        assert room.last_accessed is not None

    @pytest.mark.asyncio
    async def test_broadcast_when_unbound(self, dispatcher, registry, channel):
        await _add_room("Hall")
        registry.upsert("A", "sid-a", None, "unassigned")
        registry.upsert("B", "sid-b", None, "unassigned")

        result = await dispatcher.trigger_room("Hall", duration_ms=5000)

        assert result.mode == "broadcast"
        assert result.sent_count == 2
        assert [h for h, _ in channel.triggers()] == ["sid-a", "sid-b"]
        assert all(p["duration"] == 5000 for _, p in channel.triggers())

    @pytest.mark.asyncio
    async def test_access_denied_sends_nothing(self, dispatcher, registry, channel):
        await _add_room("Lab-1", access=False, device_id="ESP32_AB12")
        registry.upsert("ESP32_AB12", "sid-1", None, "Lab-1")

        with pytest.raises(AccessDenied):
            await dispatcher.trigger_room("Lab-1")

        assert channel.triggers() == []
        room = await _load_room("Lab-1")
        assert room.access_log == []

    @pytest.mark.asyncio
    async def test_room_not_found(self, dispatcher):
        with pytest.raises(RoomNotFound):
            await dispatcher.trigger_room("Nowhere")

    @pytest.mark.asyncio
    async def test_empty_registry(self, dispatcher, channel):
        await _add_room("Lab-1")
        with pytest.raises(NoDevicesConnected):
            await dispatcher.trigger_room("Lab-1")
        assert channel.triggers() == []

    @pytest.mark.asyncio
    async def test_bound_device_offline(self, app, dispatcher, registry):
        await _add_room("Lab-1", device_id="ESP32_AB12")
        registry.upsert("ESP32_CD34", "sid-2", None, "unassigned")

        with pytest.raises(DeviceUnreachable) as exc_info:
            await dispatcher.trigger_room("Lab-1")

        assert exc_info.value.roster == ["ESP32_CD34"]
        records = await app.state.audit.recent("Lab-1")
        assert records[0].action == DispatchAction.TRIGGER_FAILED
        assert records[0].outcome == DispatchOutcome.FAILURE

    @pytest.mark.asyncio
    async def test_targeted_send_error(self, dispatcher, registry, channel):
        await _add_room("Lab-1", device_id="A")
        registry.upsert("A", "sid-a", None, "Lab-1")
        channel.failing.add("sid-a")

        with pytest.raises(DispatchFailed):
            await dispatcher.trigger_room("Lab-1")

        room = await _load_room("Lab-1")
        assert room.access_log == []


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_partial_failure_is_success(self, app, dispatcher, registry, channel):
        await _add_room("Hall")
        registry.upsert("A", "sid-a", None, "unassigned")
        registry.upsert("B", "sid-b", None, "unassigned")
        registry.upsert("C", "sid-c", None, "unassigned")
        channel.failing.add("sid-b")

        result = await dispatcher.trigger_room("Hall")

        assert result.devices == ["A", "C"]
        assert result.failed == ["B"]
        records = await app.state.audit.recent("Hall")
        failures = [r for r in records if r.action == DispatchAction.TRIGGER_FAILED]
        assert [r.device_id for r in failures] == ["B"]

    @pytest.mark.asyncio
    async def test_all_sends_fail(self, dispatcher, registry, channel):
        await _add_room("Hall")
        registry.upsert("A", "sid-a", None, "unassigned")
        channel.failing.add("sid-a")

        with pytest.raises(DispatchFailed):
            await dispatcher.trigger_room("Hall")

    @pytest.mark.asyncio
    async def test_broadcast_empty(self, dispatcher):
        with pytest.raises(NoDevicesConnected):
            await dispatcher.broadcast("Hall", 3000)


class TestTriggerDevice:
    @pytest.mark.asyncio
    async def test_short_id_resolves_to_prefixed(self, dispatcher, registry, channel):
        await _add_room("Lab-1", device_id="ESP32_AB12")
        registry.upsert("AB12", "sid-1", None, "Lab-1")

        result = await dispatcher.trigger_device("ESP32_AB12")

        assert result.devices == ["AB12"]
        assert result.room_name == "Lab-1"
        assert channel.triggers()[0][0] == "sid-1"

    @pytest.mark.asyncio
    async def test_device_in_denied_room(self, dispatcher, registry, channel):
        await _add_room("Lab-1", access=False, device_id="ESP32_AB12")
        registry.upsert("ESP32_AB12", "sid-1", None, "Lab-1")

        with pytest.raises(AccessDenied):
            await dispatcher.trigger_device("AB12")
        assert channel.triggers() == []

    @pytest.mark.asyncio
    async def test_device_in_allowed_room_logs_access(self, dispatcher, registry):
        await _add_room("Lab-1", device_id="ESP32_AB12")
        registry.upsert("ESP32_AB12", "sid-1", None, "Lab-1")

        result = await dispatcher.trigger_device("ESP32_AB12", duration_ms=1500)

        assert result.room_name == "Lab-1"
        assert result.duration_ms == 1500
        room = await _load_room("Lab-1")
        assert len(room.access_log) == 1

    @pytest.mark.asyncio
    async def test_unassigned_device_rejected(self, dispatcher, registry, channel):
        registry.upsert("A", "sid-a", None, "unassigned")
        with pytest.raises(RoomNotFound):
            await dispatcher.trigger_device("A")
        assert channel.triggers() == []

    @pytest.mark.asyncio
    async def test_unassigned_device_allowed_when_enabled(self, dispatcher, registry, channel):
        dispatcher.allow_unassigned_trigger = True
        registry.upsert("A", "sid-a", None, "unassigned")

        result = await dispatcher.trigger_device("A")

        assert result.devices == ["A"]
        assert result.room_name == "unassigned"
        assert result.persisted is False
        assert len(channel.triggers()) == 1

    @pytest.mark.asyncio
    async def test_cached_room_does_not_authorize(self, dispatcher, registry, channel):
        await _add_room("Lab-1", device_id="ESP32_CD34")
        # session still carries a room it is no longer bound to
        registry.upsert("ESP32_AB12", "sid-1", None, "Lab-1")

        with pytest.raises(RoomNotFound):
            await dispatcher.trigger_device("ESP32_AB12")

        assert channel.triggers() == []
        room = await _load_room("Lab-1")
        assert room.access_log == []

    @pytest.mark.asyncio
    async def test_unknown_device(self, dispatcher, registry):
        registry.upsert("A", "sid-a", None, "unassigned")
        with pytest.raises(DeviceUnreachable):
            await dispatcher.trigger_device("ZZ99")

    @pytest.mark.asyncio
    async def test_swept_device_is_unreachable(self, app, dispatcher, registry):
        registry.upsert("ESP32_AB12", "sid-1", None, "unassigned")
        session = registry.lookup("ESP32_AB12")
        await app.state.sweeper.sweep(now=session.last_seen_at + 301)

        with pytest.raises(DeviceUnreachable):
            await dispatcher.trigger_device("ESP32_AB12")


class TestPersistenceFailure:
    @pytest.mark.asyncio
    async def test_success_survives_failed_access_log(self, app, dispatcher, registry, channel, monkeypatch):
        await _add_room("Lab-1", device_id="A")
        registry.upsert("A", "sid-a", None, "Lab-1")

        async def failing_commit(self):
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(AsyncSession, "commit", failing_commit)

        result = await dispatcher.trigger_room("Lab-1")

        assert result.devices == ["A"]
        assert result.persisted is False
        assert len(channel.triggers()) == 1

        journal = app.state.audit.journal.get_entries(target="Lab-1")
        assert journal[0]["action"] == DispatchAction.ACCESS_LOG_FAILED.value
        assert journal[0]["persisted"] is False

        monkeypatch.undo()
        room = await _load_room("Lab-1")
        assert room.access_log == []

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_success(self, app, dispatcher, registry, channel, monkeypatch):
        await _add_room("Lab-1", device_id="A")
        registry.upsert("A", "sid-a", None, "Lab-1")

        async def failing_commit(self):
            raise RuntimeError("connection reset")

        async def failing_rollback(self):
            raise OperationalError("ROLLBACK", {}, Exception("database is locked"))

        monkeypatch.setattr(AsyncSession, "commit", failing_commit)
        monkeypatch.setattr(AsyncSession, "rollback", failing_rollback)

        result = await dispatcher.trigger_room("Lab-1")
        monkeypatch.undo()

        assert result.devices == ["A"]
        assert result.persisted is False
        assert len(channel.triggers()) == 1
        journal = app.state.audit.journal.get_entries(target="Lab-1")
        assert journal[0]["action"] == DispatchAction.ACCESS_LOG_FAILED.value
