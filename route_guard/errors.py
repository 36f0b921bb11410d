"""Exceptions raised by the engine."""

from __future__ import annotations


class RouteGuardError(Exception):
    """Base class for engine errors."""


class PersistenceError(RouteGuardError):
    """A read or write against the store failed (including a missing record)."""


class NotificationDeliveryError(RouteGuardError):
    """A user or contact notification could not be dispatched."""
