"""Data models for traces, journeys, learned routes and alert records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final


class Severity(str, Enum):
    """How aggressively a deviation is escalated."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DeviationResponse(str, Enum):
    """Recorded answer to a deviation notification."""

    DISMISSED = "dismissed"
    CONFIRM = "confirm"
    SNOOZED = "snoozed"
    AUTO_ESCALATED = "auto_escalated"
    APP_OPENED = "app_opened"
    UNKNOWN = "unknown"


class AlertMethod(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class EscalationState(str, Enum):
    """Per-deviation escalation state."""

    DETECTED = "detected"
    USER_NOTIFIED = "user_notified"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"


class TransportationMode(str, Enum):
    WALKING = "walking"
    CYCLING = "cycling"
    DRIVING = "driving"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """A position in decimal degrees (altitude is ignored by all distance math)."""

    latitude: float
    longitude: float


@dataclass(frozen=True, slots=True)
class TracePoint:
    """A single location sample of a journey.

    Attributes:
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        timestamp: Unix epoch milliseconds.
        accuracy: Horizontal accuracy in meters, if reported.
        altitude: Altitude in meters, if reported.
        speed: Speed in meters/second, if reported.
        sequence_number: Position of the sample within its journey.
        battery_level: Device battery level in [0, 1] at capture time.
    """

    latitude: float
    longitude: float
    timestamp: int
    accuracy: float | None = None
    altitude: float | None = None
    speed: float | None = None
    sequence_number: int | None = None
    battery_level: float | None = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


@dataclass(frozen=True, slots=True)
class Journey:
    """One continuous tracked travel session.

    Note:
        A journey is open while ``end_time`` is None.
    """

    id: int
    start_time: int
    end_time: int | None = None
    matched_route_id: int | None = None
    distance: float = 0.0
    transportation_mode: TransportationMode = TransportationMode.UNKNOWN
    has_deviation: bool = False

    @property
    def is_open(self) -> bool:
        return self.end_time is None


@dataclass(frozen=True, slots=True)
class Route:
    """A learned route.

    Attributes:
        points: Simplified trace, ordered start to end (at least two points).
        avg_duration: Mean journey duration in milliseconds.
        confidence_score: In [0, 1]; only ever increases.
    """

    id: int
    name: str
    confidence_score: float
    start_location: GeoPoint
    end_location: GeoPoint
    avg_duration: float
    times_traveled: int
    points: tuple[GeoPoint, ...]
    created_at: int
    updated_at: int
    category: str | None = None

    @property
    def confidence_label(self) -> str:
        return confidence_label(self.confidence_score)


@dataclass(frozen=True, slots=True)
class DeviationEvent:
    """A single detected excursion from the matched route.

    Attributes:
        user_response: Latest answer from the user, or ``auto_escalated`` (kept once set).
        state: Escalation state, persisted so any escalator instance can resume it.
    """

    id: int
    journey_id: int
    route_id: int
    latitude: float
    longitude: float
    timestamp: int
    distance: float
    expected_latitude: float
    expected_longitude: float
    alert_sent: bool = False
    user_response: DeviationResponse | None = None
    state: EscalationState = EscalationState.DETECTED

    @property
    def position(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)

    @property
    def expected(self) -> GeoPoint:
        return GeoPoint(self.expected_latitude, self.expected_longitude)


@dataclass(frozen=True, slots=True)
class EmergencyContact:
    """A person to alert on escalation. Priority 1 is alerted first."""

    id: int
    name: str
    phone_number: str | None = None
    email: str | None = None
    relationship: str | None = None
    priority: int = 1
    is_active: bool = True
    created_at: int = 0


@dataclass(frozen=True, slots=True)
class AlertEvent:
    """Audit record of one contact notification."""

    id: int
    contact_id: int
    deviation_id: int
    method: AlertMethod
    timestamp: int
    message: str


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Outcome of analysing a finished journey."""

    route_id: int
    is_new_route: bool
    similarity: float


def confidence_label(score: float) -> str:
    """Human readable band for a route confidence score."""

    if score >= 0.8:
        return "Very High"
    if score >= 0.6:
        return "High"
    if score >= 0.4:
        return "Medium"
    if score >= 0.2:
        return "Low"
    return "Very Low"


def detect_transportation_mode(speed_mps: float | None) -> TransportationMode:
    """Guess the transportation mode from a single speed sample."""

    if speed_mps is None or speed_mps < 0:
        return TransportationMode.UNKNOWN
    speed_kmh = speed_mps * 3.6
    if speed_kmh < 6:
        return TransportationMode.WALKING
    if speed_kmh < 20:
        return TransportationMode.CYCLING
    if speed_kmh < 200:
        return TransportationMode.DRIVING
    return TransportationMode.UNKNOWN


DEFAULT_TZ: Final[str] = "UTC"
