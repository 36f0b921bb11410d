"""Unit tests for alert escalation."""

import asyncio
import logging
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from conftest import RecordingNotifier
from route_guard.alerts import (
    AlertEscalator,
    alert_message,
    contact_channel,
    response_from_action,
    user_alert,
)
from route_guard.config import EngineParams
from route_guard.errors import PersistenceError
from route_guard.models import (
    AlertMethod,
    DeviationResponse,
    EmergencyContact,
    EscalationState,
    Severity,
)

# comfortably longer than the 0.05 s escalation timeout in the params fixture
WAIT = 0.3


class TestHelpers:
    """Test message building and action mapping."""

    @pytest.mark.parametrize(
        ("action", "response"),
        [
            ("dismiss", DeviationResponse.DISMISSED),
            ("confirm", DeviationResponse.CONFIRM),
            ("snooze", DeviationResponse.SNOOZED),
            ("default", DeviationResponse.APP_OPENED),
            ("swipe", DeviationResponse.UNKNOWN),
        ],
    )
    def test_response_from_action(self, action, response):
        assert response_from_action(action) is response

    def test_contact_channel(self):
        assert contact_channel(EmergencyContact(1, "a", phone_number="1", email="a@x")) is AlertMethod.SMS
        assert contact_channel(EmergencyContact(2, "b", email="b@x")) is AlertMethod.EMAIL
        assert contact_channel(EmergencyContact(3, "c")) is None

    @pytest.mark.asyncio()
    async def test_alert_message_links_position(self, deviation):
        msg = alert_message(deviation)
        assert "https://maps.google.com/?q=0.0,0.002" in msg
        assert msg.startswith("ALERT:")

    @pytest.mark.asyncio()
    async def test_user_alert(self, deviation):
        alert = user_alert(deviation, require_response=True)
        assert alert.title == "Route Deviation Detected"
        assert alert.body == "You are 222 meters away from your expected route."
        assert alert.actions == ("dismiss", "confirm", "snooze")
        assert alert.data["deviation_id"] == deviation.id
        assert alert.data["type"] == "deviation"
        assert user_alert(deviation, require_response=False).requires_response is False


class TestSeverities:
    """Test the three escalation paths."""

    @pytest.mark.asyncio()
    async def test_low_only_notifies_user(self, escalator, notifier, store, contacts, deviation):
        state = await escalator.handle_deviation(deviation, Severity.LOW)
        await asyncio.sleep(WAIT)

        assert state is EscalationState.USER_NOTIFIED
        assert len(notifier.user_alerts) == 1
        assert notifier.user_alerts[0].requires_response is False
        assert notifier.contact_messages == []
        assert await store.list_alerts() == []
        assert escalator.pending_timers == []
        assert (await store.get_deviation(deviation.id)).alert_sent is True

    @pytest.mark.asyncio()
    async def test_high_alerts_contacts_immediately(self, escalator, notifier, store, contacts, deviation):
        state = await escalator.handle_deviation(deviation, "high")

        assert state is EscalationState.ESCALATED
        assert escalator.pending_timers == []
        alerts = await store.list_alerts(deviation.id)
        assert [a.contact_id for a in alerts] == [contacts[0].id, contacts[1].id]
        assert [a.method for a in alerts] == [AlertMethod.EMAIL, AlertMethod.SMS]
        assert (await store.get_deviation(deviation.id)).user_response is None

    @pytest.mark.asyncio()
    async def test_medium_waits_for_response(self, escalator, notifier, store, contacts, deviation):
        state = await escalator.handle_deviation(deviation)

        assert state is EscalationState.USER_NOTIFIED
        assert notifier.user_alerts[0].actions == ("dismiss", "confirm", "snooze")
        assert escalator.pending_timers == [deviation.id]
        assert await store.list_alerts() == []


class TestMediumEscalation:
    """Test the response timer."""

    @pytest.mark.asyncio()
    async def test_no_response_escalates_once(self, escalator, notifier, store, contacts, deviation):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)
        await asyncio.sleep(WAIT)

        stored = await store.get_deviation(deviation.id)
        assert stored.user_response is DeviationResponse.AUTO_ESCALATED
        assert await escalator.state(deviation.id) is EscalationState.ESCALATED
        assert len(await store.list_alerts(deviation.id)) == 2
        assert escalator.pending_timers == []

        await asyncio.sleep(WAIT)
        assert len(await store.list_alerts(deviation.id)) == 2

    @pytest.mark.asyncio()
    async def test_confirm_alerts_contacts_and_acknowledges(self, escalator, notifier, store, contacts, deviation):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)

        state = await escalator.handle_deviation_response(deviation.id, DeviationResponse.CONFIRM)
        assert len(notifier.contact_messages) == 2
        await asyncio.sleep(WAIT)

        assert state is EscalationState.ACKNOWLEDGED
        assert await escalator.state(deviation.id) is EscalationState.ACKNOWLEDGED
        assert len(await store.list_alerts(deviation.id)) == 2
        stored = await store.get_deviation(deviation.id)
        assert stored.user_response is DeviationResponse.CONFIRM
        assert stored.state is EscalationState.ACKNOWLEDGED

    @pytest.mark.asyncio()
    async def test_dismiss_cancels_escalation(self, escalator, notifier, store, contacts, deviation):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)

        state = await escalator.handle_action(deviation.id, "dismiss")
        await asyncio.sleep(WAIT)

        assert state is EscalationState.ACKNOWLEDGED
        assert await store.list_alerts() == []
        assert notifier.contact_messages == []
        assert (await store.get_deviation(deviation.id)).user_response is DeviationResponse.DISMISSED

    @pytest.mark.parametrize("action", ["snooze", "default", "something-else"])
    @pytest.mark.asyncio()
    async def test_any_recorded_answer_prevents_escalation(self, escalator, store, contacts, deviation, action):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)
        await escalator.handle_action(deviation.id, action)
        await asyncio.sleep(WAIT)

        assert await store.list_alerts() == []
        assert await escalator.state(deviation.id) is EscalationState.ACKNOWLEDGED

    @pytest.mark.asyncio()
    async def test_late_confirm_alerts_again(self, escalator, store, contacts, deviation):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)
        await asyncio.sleep(WAIT)

        state = await escalator.handle_deviation_response(deviation.id, "confirm")

        assert state is EscalationState.ESCALATED
        assert len(await store.list_alerts(deviation.id)) == 4
        assert (await store.get_deviation(deviation.id)).user_response is DeviationResponse.AUTO_ESCALATED

    @pytest.mark.asyncio()
    async def test_late_dismiss_keeps_escalated_state(self, escalator, store, contacts, deviation):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)
        await asyncio.sleep(WAIT)

        state = await escalator.handle_deviation_response(deviation.id, "dismissed")

        assert state is EscalationState.ESCALATED
        assert len(await store.list_alerts(deviation.id)) == 2
        assert (await store.get_deviation(deviation.id)).user_response is DeviationResponse.AUTO_ESCALATED

    @pytest.mark.asyncio()
    async def test_fresh_escalator_sees_stored_escalation(
        self, escalator, store, notifier, params, contacts, deviation
    ):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)
        await asyncio.sleep(WAIT)

        fresh = AlertEscalator(store, notifier, params)
        state = await fresh.handle_deviation_response(deviation.id, "dismissed")

        assert state is EscalationState.ESCALATED
        assert await fresh.state(deviation.id) is EscalationState.ESCALATED
        stored = await store.get_deviation(deviation.id)
        assert stored.user_response is DeviationResponse.AUTO_ESCALATED
        assert stored.state is EscalationState.ESCALATED
        assert len(await store.list_alerts(deviation.id)) == 2

    @pytest.mark.asyncio()
    async def test_fresh_escalator_acknowledges_pending_deviation(
        self, escalator, store, notifier, params, deviation
    ):
        await escalator.handle_deviation(deviation, Severity.LOW)

        fresh = AlertEscalator(store, notifier, params)
        assert await fresh.state(deviation.id) is EscalationState.USER_NOTIFIED
        assert await fresh.handle_action(deviation.id, "dismiss") is EscalationState.ACKNOWLEDGED
        assert await fresh.state(404) is None

    @pytest.mark.asyncio()
    async def test_response_racing_the_timer_escalates_at_most_once(self, store, notifier, contacts, deviation):
        escalator = AlertEscalator(store, notifier, EngineParams(escalation_timeout_s=0.0))
        try:
            await escalator.handle_deviation(deviation, Severity.MEDIUM)
            await asyncio.gather(
                escalator.handle_deviation_response(deviation.id, "dismissed"),
                asyncio.sleep(0),
            )
            await asyncio.sleep(WAIT)
        finally:
            await escalator.aclose()

        alerts = await store.list_alerts(deviation.id)
        assert len(alerts) in (0, 2)
        if alerts:
            assert await escalator.state(deviation.id) is EscalationState.ESCALATED
        else:
            assert await escalator.state(deviation.id) is EscalationState.ACKNOWLEDGED

    @pytest.mark.asyncio()
    async def test_aclose_cancels_pending_timers(self, escalator, store, contacts, deviation):
        await escalator.handle_deviation(deviation, Severity.MEDIUM)

        await escalator.aclose()
        await asyncio.sleep(WAIT)

        assert escalator.pending_timers == []
        assert await store.list_alerts() == []
        assert (await store.get_deviation(deviation.id)).user_response is None


class TestSubmit:
    """Test handling deviations on escalator-owned tasks."""

    @pytest.mark.asyncio()
    async def test_submit_then_settle(self, escalator, store, contacts, deviation):
        task = escalator.submit(deviation, Severity.HIGH)
        await escalator.settle()

        assert task.done()
        assert task.result() is EscalationState.ESCALATED
        assert len(await store.list_alerts(deviation.id)) == 2

    @pytest.mark.asyncio()
    async def test_submitted_failure_is_logged(self, escalator, deviation, caplog):
        missing = replace(deviation, id=404)

        with caplog.at_level(logging.ERROR):
            task = escalator.submit(missing)
            await escalator.settle()

        assert task.result() is None
        assert "Handling deviation 404 failed" in caplog.text


class TestContactNotification:
    """Test contact selection and delivery failures."""

    @pytest.mark.asyncio()
    async def test_priority_order_and_channels(self, escalator, notifier, contacts, deviation):
        events = await escalator.notify_contacts(deviation)

        assert [e.contact_id for e in events] == [contacts[0].id, contacts[1].id]
        assert [(cid, method) for cid, method, _ in notifier.contact_messages] == [
            (contacts[0].id, AlertMethod.EMAIL),
            (contacts[1].id, AlertMethod.SMS),
        ]
        assert all(msg == alert_message(deviation) for _, _, msg in notifier.contact_messages)

    @pytest.mark.asyncio()
    async def test_no_contacts(self, escalator, store, deviation, caplog):
        with caplog.at_level(logging.WARNING):
            events = await escalator.notify_contacts(deviation)

        assert events == []
        assert "No emergency contacts" in caplog.text

    @pytest.mark.asyncio()
    async def test_delivery_failure_keeps_record(self, store, params, contacts, deviation, caplog):
        notifier = RecordingNotifier(fail_contacts=(contacts[0].id,))
        escalator = AlertEscalator(store, notifier, params)

        with caplog.at_level(logging.ERROR):
            state = await escalator.handle_deviation(deviation, Severity.HIGH)

        assert state is EscalationState.ESCALATED
        assert len(await store.list_alerts(deviation.id)) == 2
        assert len(notifier.contact_messages) == 2
        assert "failed" in caplog.text

    @pytest.mark.asyncio()
    async def test_user_notification_failure_still_arms_timer(self, store, params, contacts, deviation):
        escalator = AlertEscalator(store, RecordingNotifier(fail_user=True), params)
        try:
            await escalator.handle_deviation(deviation, Severity.MEDIUM)
            await asyncio.sleep(WAIT)
        finally:
            await escalator.aclose()

        assert len(await store.list_alerts(deviation.id)) == 2

    @pytest.mark.asyncio()
    async def test_timer_failure_is_logged(self, escalator, store, contacts, deviation, caplog, monkeypatch):
        monkeypatch.setattr(store, "list_contacts", AsyncMock(side_effect=PersistenceError("disk gone")))

        with caplog.at_level(logging.ERROR):
            await escalator.handle_deviation(deviation, Severity.MEDIUM)
            await asyncio.sleep(WAIT)

        assert "Escalation timeout handler failed" in caplog.text
        assert escalator.pending_timers == []

    @pytest.mark.asyncio()
    async def test_unknown_deviation(self, escalator):
        with pytest.raises(PersistenceError):
            await escalator.handle_deviation_response(404, "confirm")
