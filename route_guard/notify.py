"""Notification dispatch interface.

Delivery itself (push, SMS, email) belongs to the host application. The engine only
builds the content and hands it over through a ``Notifier``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Protocol

from route_guard.models import AlertMethod, EmergencyContact

logger = logging.getLogger(__name__)

DEVIATION_ACTIONS: tuple[str, ...] = ("dismiss", "confirm", "snooze")
DEFAULT_ACTION_IDENTIFIER = "default"


@dataclass(frozen=True, slots=True)
class UserAlert:
    """A user-facing notification.

    Attributes:
        actions: Action identifiers the user can answer with; empty for passive alerts.
    """

    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    actions: tuple[str, ...] = ()

    @property
    def requires_response(self) -> bool:
        return bool(self.actions)


class Notifier(Protocol):
    """Delivery transport. Implementations raise NotificationDeliveryError when a send fails."""

    async def notify_user(self, alert: UserAlert) -> str | None:
        """Deliver a user alert; returns a notification id if the transport has one."""
        ...

    async def send_contact_message(self, contact: EmergencyContact, method: AlertMethod, message: str) -> None:
        """Deliver an SMS or email to an emergency contact."""
        ...


class LogNotifier:
    """Notifier that only writes log records (CLI, dashboard, dry runs)."""

    def __init__(self) -> None:
        self._ids = count(1)

    async def notify_user(self, alert: UserAlert) -> str | None:
        notification_id = f"log-{next(self._ids)}"
        logger.warning(
            "[user %s] %s: %s actions=%s",
            notification_id,
            alert.title,
            alert.body,
            ",".join(alert.actions) or "-",
        )
        return notification_id

    async def send_contact_message(self, contact: EmergencyContact, method: AlertMethod, message: str) -> None:
        target = contact.phone_number if method is AlertMethod.SMS else contact.email
        logger.warning("[%s -> %s <%s>] %s", method.value, contact.name, target, message)
