"""Common test fixtures for route_guard tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from route_guard.alerts import AlertEscalator
from route_guard.config import EngineParams
from route_guard.errors import NotificationDeliveryError
from route_guard.models import AlertMethod, EmergencyContact, GeoPoint, TracePoint
from route_guard.notify import UserAlert
from route_guard.store import MemoryStore

T0 = 1_700_000_000_000
STEP_MS = 60_000


class RecordingNotifier:
    """Notifier that remembers everything it was asked to deliver."""

    def __init__(self, fail_user: bool = False, fail_contacts: tuple[int, ...] = ()) -> None:
        self.user_alerts: list[UserAlert] = []
        self.contact_messages: list[tuple[int, AlertMethod, str]] = []
        self.fail_user = fail_user
        self.fail_contacts = set(fail_contacts)

    async def notify_user(self, alert: UserAlert) -> str | None:
        self.user_alerts.append(alert)
        if self.fail_user:
            raise NotificationDeliveryError("push service down")
        return f"n-{len(self.user_alerts)}"

    async def send_contact_message(self, contact: EmergencyContact, method: AlertMethod, message: str) -> None:
        self.contact_messages.append((contact.id, method, message))
        if contact.id in self.fail_contacts:
            raise NotificationDeliveryError("sms gateway down")


def make_trace(coords, t0: int = T0, step_ms: int = STEP_MS, speed: float | None = None) -> list[TracePoint]:
    return [
        TracePoint(latitude=lat, longitude=lon, timestamp=t0 + i * step_ms, speed=speed)
        for i, (lat, lon) in enumerate(coords)
    ]


def zigzag_coords(n: int = 12, lat0: float = 0.0, lon0: float = 0.0) -> list[tuple[float, float]]:
    """~157 m legs alternating ~111 m either side of a line heading east."""
    return [(lat0 + (0.001 if i % 2 else 0.0), lon0 + i * 0.001) for i in range(n)]


@pytest.fixture()
def params():
    """Engine params with a short escalation timeout."""
    return EngineParams(escalation_timeout_s=0.05)


@pytest.fixture()
def store():
    """Empty in-memory store."""
    return MemoryStore()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture()
async def escalator(store, notifier, params):
    """Escalator whose timers are cancelled at teardown."""
    esc = AlertEscalator(store, notifier, params)
    yield esc
    await esc.aclose()


@pytest_asyncio.fixture()
async def contacts(store):
    """Four contacts: email-only (priority 1), phone (2), unreachable (3), inactive (1)."""
    return [
        await store.create_contact("Bob", email="bob@example.com", priority=1),
        await store.create_contact("Alice", phone_number="+15550100", email="alice@example.com", priority=2),
        await store.create_contact("Nobody", priority=3),
        await store.create_contact("Carol", phone_number="+15550199", priority=1, is_active=False),
    ]


@pytest_asyncio.fixture()
async def straight_route(store):
    """A 2.2 km route heading north along the prime meridian."""
    points = [GeoPoint(0.0, 0.0), GeoPoint(0.01, 0.0), GeoPoint(0.02, 0.0)]
    return await store.create_route(
        name="Route Nov 14, 10:13 PM",
        confidence_score=0.3,
        start_location=points[0],
        end_location=points[-1],
        avg_duration=600_000.0,
        times_traveled=1,
        points=points,
    )


@pytest_asyncio.fixture()
async def deviation(store, straight_route):
    """A deviation recorded ~222 m off ``straight_route``."""
    journey = await store.create_journey(T0)
    await store.assign_route(journey.id, straight_route.id)
    return await store.record_deviation(
        journey.id,
        straight_route.id,
        GeoPoint(0.0, 0.002),
        GeoPoint(0.0, 0.0),
        222.4,
        T0,
    )


async def add_journey(store, points) -> int:
    """Create a journey holding ``points``; returns its id."""
    journey = await store.create_journey(points[0].timestamp)
    for i, pt in enumerate(points):
        await store.add_journey_point(journey.id, TracePoint(
            latitude=pt.latitude,
            longitude=pt.longitude,
            timestamp=pt.timestamp,
            sequence_number=i,
        ))
    return journey.id
