"""Alert escalation for detected deviations.

Each deviation moves through ``detected -> user_notified -> acknowledged | escalated``:

- low: the user is told, nothing else happens.
- medium: the user gets a notification with dismiss/confirm/snooze actions and has
  ``escalation_timeout_s`` to answer; silence escalates to the emergency contacts.
- high: the user is told and the contacts are alerted right away.

A ``confirm`` answer alerts the contacts too but leaves the deviation ``acknowledged``.

The stored ``user_response`` of the deviation is the resolution flag. The timeout handler
and ``handle_deviation_response`` both read and write it under a per-deviation lock, so
whichever acts first wins and the other sees the flag already set.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from route_guard.config import EngineParams
from route_guard.errors import PersistenceError
from route_guard.locks import KeyedLocks
from route_guard.models import (
    AlertEvent,
    AlertMethod,
    DeviationEvent,
    DeviationResponse,
    EmergencyContact,
    EscalationState,
    Severity,
)
from route_guard.notify import DEFAULT_ACTION_IDENTIFIER, DEVIATION_ACTIONS, Notifier, UserAlert
from route_guard.store import Store
from route_guard.timeutils import format_distance, now_ms

logger = logging.getLogger(__name__)

_ACTION_RESPONSES: dict[str, DeviationResponse] = {
    "dismiss": DeviationResponse.DISMISSED,
    "confirm": DeviationResponse.CONFIRM,
    "snooze": DeviationResponse.SNOOZED,
    DEFAULT_ACTION_IDENTIFIER: DeviationResponse.APP_OPENED,
}


def response_from_action(action_id: str) -> DeviationResponse:
    """Map a notification action identifier to a response."""

    return _ACTION_RESPONSES.get(action_id, DeviationResponse.UNKNOWN)


def map_link(latitude: float, longitude: float) -> str:
    return f"https://maps.google.com/?q={latitude},{longitude}"


def alert_message(deviation: DeviationEvent) -> str:
    """Text sent to emergency contacts."""

    return (
        "ALERT: Route Guard has detected that your contact has deviated significantly from "
        "their usual route. They are currently located at "
        f"{map_link(deviation.latitude, deviation.longitude)}. "
        "Please try to contact them to check on their safety."
    )


def contact_channel(contact: EmergencyContact) -> AlertMethod | None:
    """SMS when a phone number is known, else email, else None."""

    if contact.phone_number:
        return AlertMethod.SMS
    if contact.email:
        return AlertMethod.EMAIL
    return None


def user_alert(deviation: DeviationEvent, require_response: bool) -> UserAlert:
    return UserAlert(
        title="Route Deviation Detected",
        body=f"You are {format_distance(deviation.distance)} away from your expected route.",
        data={
            "deviation_id": deviation.id,
            "journey_id": deviation.journey_id,
            "route_id": deviation.route_id,
            "type": "deviation",
        },
        actions=DEVIATION_ACTIONS if require_response else (),
    )


class AlertEscalator:
    """Turns deviation events into user notifications and contact alerts.

    The escalation state lives on the stored deviation, so a fresh escalator (the CLI
    ``respond`` command, a restarted process) picks up where another one left off.
    """

    def __init__(self, store: Store, notifier: Notifier, params: EngineParams | None = None) -> None:
        self._store = store
        self._notifier = notifier
        self._params = params or EngineParams()
        self._locks = KeyedLocks()
        self._timers: dict[int, asyncio.Task[None]] = {}
        self._handling: set[asyncio.Task[EscalationState | None]] = set()

    async def state(self, deviation_id: int) -> EscalationState | None:
        deviation = await self._store.get_deviation(deviation_id)
        return deviation.state if deviation else None

    @property
    def pending_timers(self) -> list[int]:
        return [k for k, t in self._timers.items() if not t.done()]

    def submit(
        self,
        deviation: DeviationEvent,
        severity: Severity | str = Severity.MEDIUM,
    ) -> asyncio.Task[EscalationState | None]:
        """Run ``handle_deviation`` on a task owned by the escalator.

        Cancelling the caller (e.g. a journey monitor being stopped) does not cancel the
        escalation of a deviation that has already been recorded. Failures are logged.
        """

        task = asyncio.create_task(self._handle_logged(deviation, severity), name=f"deviation-{deviation.id}")
        self._handling.add(task)
        task.add_done_callback(self._handling.discard)
        return task

    async def settle(self) -> None:
        """Wait until every submitted deviation has been handled."""

        while self._handling:
            await asyncio.gather(*list(self._handling), return_exceptions=True)

    async def handle_deviation(
        self,
        deviation: DeviationEvent,
        severity: Severity | str = Severity.MEDIUM,
    ) -> EscalationState:
        """Start escalation for a freshly detected deviation.

        Raises:
            PersistenceError: If the deviation cannot be read or updated, or contacts
                cannot be fetched (high severity).
        """

        severity = Severity(severity)
        async with self._locks.hold(deviation.id):
            current = await self._load(deviation.id)
            current = await self._store.update_deviation(replace(current, alert_sent=True))

        await self._notify_user(current, require_response=severity is Severity.MEDIUM)

        async with self._locks.hold(deviation.id):
            # a response may have arrived while the user was being notified
            current = await self._load(deviation.id)
            if current.state is EscalationState.DETECTED:
                current = await self._save_state(current, EscalationState.USER_NOTIFIED)
            if severity is Severity.HIGH:
                current = await self._save_state(current, EscalationState.ESCALATED)
                await self.notify_contacts(current)
            elif severity is Severity.MEDIUM and current.user_response is None:
                self._arm_timer(current.id)

        logger.info(
            "Deviation %s handled with severity=%s -> %s",
            current.id,
            severity.value,
            current.state.value,
        )
        return current.state

    async def handle_deviation_response(
        self,
        deviation_id: int,
        response: DeviationResponse | str,
    ) -> EscalationState:
        """Record the user's answer; ``confirm`` alerts the contacts, even when late.

        An ``auto_escalated`` response is never replaced, and an escalated deviation
        stays escalated. Calling this twice with ``confirm`` alerts the contacts twice.
        """

        response = DeviationResponse(response)
        async with self._locks.hold(deviation_id):
            current = await self._load(deviation_id)
            previous = current.user_response
            self._cancel_timer(deviation_id)

            if previous is DeviationResponse.AUTO_ESCALATED:
                logger.info("Deviation %s already auto-escalated, late response %s", deviation_id, response.value)
            else:
                current = replace(current, user_response=response)
            if current.state is not EscalationState.ESCALATED:
                current = replace(current, state=EscalationState.ACKNOWLEDGED)
            current = await self._store.update_deviation(current)

            if response is DeviationResponse.CONFIRM:
                await self.notify_contacts(current)

        logger.info(
            "Deviation %s response=%s (previous=%s) -> %s",
            deviation_id,
            response.value,
            previous.value if previous else None,
            current.state.value,
        )
        return current.state

    async def handle_action(self, deviation_id: int, action_id: str) -> EscalationState:
        """Entry point for notification callbacks carrying an action identifier."""

        return await self.handle_deviation_response(deviation_id, response_from_action(action_id))

    async def notify_contacts(self, deviation: DeviationEvent) -> list[AlertEvent]:
        """Alert every active contact, highest priority first.

        Each alert is recorded before delivery is attempted; delivery failures are logged.

        Raises:
            PersistenceError: If contacts cannot be fetched or an alert cannot be recorded.
        """

        contacts = await self._store.list_contacts(active_only=True)
        if not contacts:
            logger.warning("No emergency contacts available to alert for deviation %s", deviation.id)
            return []

        message = alert_message(deviation)
        events: list[AlertEvent] = []
        for contact in contacts:
            method = contact_channel(contact)
            if method is None:
                logger.info("Contact %s has no phone or email, skipped", contact.id)
                continue
            event = await self._store.add_alert(contact.id, deviation.id, method, now_ms(), message)
            events.append(event)
            try:
                await self._notifier.send_contact_message(contact, method, message)
            except Exception:
                logger.exception("Delivering %s alert to contact %s failed", method.value, contact.id)
        return events

    async def aclose(self) -> None:
        """Finish submitted deviations, then cancel outstanding escalation timers (process shutdown)."""

        await self.settle()
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _handle_logged(self, deviation: DeviationEvent, severity: Severity | str) -> EscalationState | None:
        try:
            return await self.handle_deviation(deviation, severity)
        except Exception:
            logger.exception("Handling deviation %s failed", deviation.id)
            return None

    async def _load(self, deviation_id: int) -> DeviationEvent:
        deviation = await self._store.get_deviation(deviation_id)
        if deviation is None:
            raise PersistenceError(f"Deviation {deviation_id} does not exist")
        return deviation

    async def _save_state(self, deviation: DeviationEvent, state: EscalationState) -> DeviationEvent:
        return await self._store.update_deviation(replace(deviation, state=state))

    async def _notify_user(self, deviation: DeviationEvent, require_response: bool) -> None:
        try:
            await self._notifier.notify_user(user_alert(deviation, require_response))
        except Exception:
            logger.exception("Notifying user about deviation %s failed", deviation.id)

    def _arm_timer(self, deviation_id: int) -> None:
        self._cancel_timer(deviation_id)
        task = asyncio.create_task(self._escalate_after_timeout(deviation_id), name=f"escalation-{deviation_id}")
        self._timers[deviation_id] = task

    def _cancel_timer(self, deviation_id: int) -> None:
        task = self._timers.pop(deviation_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _escalate_after_timeout(self, deviation_id: int) -> None:
        await asyncio.sleep(self._params.escalation_timeout_s)
        try:
            await self._escalate_if_unanswered(deviation_id)
        except Exception:
            logger.exception("Escalation timeout handler failed for deviation %s", deviation_id)

    async def _escalate_if_unanswered(self, deviation_id: int) -> bool:
        async with self._locks.hold(deviation_id):
            # past this point a response can no longer cancel us
            self._timers.pop(deviation_id, None)
            current = await self._load(deviation_id)
            if current.user_response is not None:
                return False
            current = await self._store.update_deviation(
                replace(
                    current,
                    user_response=DeviationResponse.AUTO_ESCALATED,
                    state=EscalationState.ESCALATED,
                )
            )
            logger.warning(
                "No response to deviation %s within %ss, escalating",
                deviation_id,
                self._params.escalation_timeout_s,
            )
            await self.notify_contacts(current)
            return True
