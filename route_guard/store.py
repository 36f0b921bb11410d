"""Persistence for journeys, routes, deviations, alerts and contacts.

``Store`` is the interface the engine talks to. ``MemoryStore`` keeps everything in
process; ``JsonStore`` adds a JSON snapshot on disk plus a write-ahead journal so that a
crash between two flushes loses nothing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

from route_guard.errors import PersistenceError
from route_guard.locks import KeyedLocks
from route_guard.models import (
    AlertEvent,
    AlertMethod,
    DeviationEvent,
    DeviationResponse,
    EmergencyContact,
    EscalationState,
    GeoPoint,
    Journey,
    Route,
    TracePoint,
    TransportationMode,
)
from route_guard.timeutils import now_ms

logger = logging.getLogger(__name__)


class Store(Protocol):
    """Storage operations the engine relies on. All ids are integers."""

    async def create_journey(
        self, start_time: int, transportation_mode: TransportationMode = ...
    ) -> Journey: ...

    async def get_journey(self, journey_id: int) -> Journey | None: ...

    async def add_journey_point(self, journey_id: int, point: TracePoint) -> None: ...

    async def get_journey_points(self, journey_id: int) -> list[TracePoint]: ...

    async def complete_journey(
        self, journey_id: int, end_time: int, distance: float, matched_route_id: int | None = None
    ) -> Journey: ...

    async def assign_route(self, journey_id: int, route_id: int) -> Journey: ...

    async def list_routes(self) -> list[Route]: ...

    async def get_route(self, route_id: int) -> Route | None: ...

    async def create_route(
        self,
        *,
        name: str,
        confidence_score: float,
        start_location: GeoPoint,
        end_location: GeoPoint,
        avg_duration: float,
        times_traveled: int,
        points: Sequence[GeoPoint],
        category: str | None = None,
    ) -> Route: ...

    async def update_route(self, route_id: int, mutate: Callable[[Route], Route]) -> Route: ...

    async def record_deviation(
        self,
        journey_id: int,
        route_id: int,
        position: GeoPoint,
        expected: GeoPoint,
        distance: float,
        timestamp: int,
    ) -> DeviationEvent: ...

    async def get_deviation(self, deviation_id: int) -> DeviationEvent | None: ...

    async def update_deviation(self, deviation: DeviationEvent) -> DeviationEvent: ...

    async def add_alert(
        self, contact_id: int, deviation_id: int, method: AlertMethod, timestamp: int, message: str
    ) -> AlertEvent: ...

    async def list_contacts(self, active_only: bool = False) -> list[EmergencyContact]: ...


class MemoryStore:
    """In-process store. Route updates are serialised per route id."""

    def __init__(self) -> None:
        self._journeys: dict[int, Journey] = {}
        self._journey_points: dict[int, list[TracePoint]] = {}
        self._routes: dict[int, Route] = {}
        self._deviations: dict[int, DeviationEvent] = {}
        self._alerts: dict[int, AlertEvent] = {}
        self._contacts: dict[int, EmergencyContact] = {}
        self._route_locks = KeyedLocks()
        self._last_ids: dict[str, int] = {}

    # -- hooks -------------------------------------------------------------------------

    def _changed(self, table: str, key: int, record: Any | None) -> None:
        """Called after every write; ``record`` is None for deletions."""

    def _table(self, name: str) -> dict[int, Any]:
        return {
            "journeys": self._journeys,
            "routes": self._routes,
            "deviations": self._deviations,
            "alerts": self._alerts,
            "contacts": self._contacts,
        }[name]

    def _next_id(self, name: str) -> int:
        # ids are never reused, even after a delete
        last = max(self._last_ids.get(name, 0), max(self._table(name), default=0)) + 1
        self._last_ids[name] = last
        return last

    # -- journeys ----------------------------------------------------------------------

    async def create_journey(
        self,
        start_time: int,
        transportation_mode: TransportationMode = TransportationMode.UNKNOWN,
    ) -> Journey:
        journey = Journey(
            id=self._next_id("journeys"),
            start_time=start_time,
            transportation_mode=transportation_mode,
        )
        self._journeys[journey.id] = journey
        self._journey_points[journey.id] = []
        self._changed("journeys", journey.id, journey)
        return journey

    async def get_journey(self, journey_id: int) -> Journey | None:
        return self._journeys.get(journey_id)

    async def list_journeys(self) -> list[Journey]:
        return sorted(self._journeys.values(), key=lambda j: j.start_time, reverse=True)

    async def add_journey_point(self, journey_id: int, point: TracePoint) -> None:
        if journey_id not in self._journeys:
            raise PersistenceError(f"Journey {journey_id} does not exist")
        self._journey_points.setdefault(journey_id, []).append(point)
        self._changed("journey_points", journey_id, point)

    async def get_journey_points(self, journey_id: int) -> list[TracePoint]:
        return list(self._journey_points.get(journey_id, ()))

    async def complete_journey(
        self,
        journey_id: int,
        end_time: int,
        distance: float,
        matched_route_id: int | None = None,
    ) -> Journey:
        journey = self._require(self._journeys, journey_id, "Journey")
        journey = replace(journey, end_time=end_time, distance=distance, matched_route_id=matched_route_id)
        self._journeys[journey_id] = journey
        self._changed("journeys", journey_id, journey)
        return journey

    async def assign_route(self, journey_id: int, route_id: int) -> Journey:
        """Set the expected route of an open journey so it can be monitored live."""

        journey = self._require(self._journeys, journey_id, "Journey")
        self._require(self._routes, route_id, "Route")
        if not journey.is_open:
            raise PersistenceError(f"Journey {journey_id} is already closed")
        journey = replace(journey, matched_route_id=route_id)
        self._journeys[journey_id] = journey
        self._changed("journeys", journey_id, journey)
        return journey

    # -- routes ------------------------------------------------------------------------

    async def list_routes(self) -> list[Route]:
        return sorted(self._routes.values(), key=lambda r: (r.updated_at, r.id), reverse=True)

    async def get_route(self, route_id: int) -> Route | None:
        return self._routes.get(route_id)

    async def create_route(
        self,
        *,
        name: str,
        confidence_score: float,
        start_location: GeoPoint,
        end_location: GeoPoint,
        avg_duration: float,
        times_traveled: int,
        points: Sequence[GeoPoint],
        category: str | None = None,
    ) -> Route:
        if len(points) < 2:
            raise ValueError(f"A route needs at least 2 points, got {len(points)}")
        ts = now_ms()
        route = Route(
            id=self._next_id("routes"),
            name=name,
            confidence_score=confidence_score,
            start_location=start_location,
            end_location=end_location,
            avg_duration=avg_duration,
            times_traveled=times_traveled,
            points=tuple(GeoPoint(p.latitude, p.longitude) for p in points),
            created_at=ts,
            updated_at=ts,
            category=category,
        )
        self._routes[route.id] = route
        self._changed("routes", route.id, route)
        return route

    async def update_route(self, route_id: int, mutate: Callable[[Route], Route]) -> Route:
        """Read-modify-write a route atomically with respect to other updates of it."""

        async with self._route_locks.hold(route_id):
            current = self._require(self._routes, route_id, "Route")
            updated = replace(mutate(current), id=route_id, updated_at=now_ms())
            self._routes[route_id] = updated
            self._changed("routes", route_id, updated)
            return updated

    async def delete_route(self, route_id: int) -> bool:
        if self._routes.pop(route_id, None) is None:
            return False
        self._changed("routes", route_id, None)
        return True

    # -- deviations and alerts ---------------------------------------------------------

    async def record_deviation(
        self,
        journey_id: int,
        route_id: int,
        position: GeoPoint,
        expected: GeoPoint,
        distance: float,
        timestamp: int,
    ) -> DeviationEvent:
        journey = self._require(self._journeys, journey_id, "Journey")
        event = DeviationEvent(
            id=self._next_id("deviations"),
            journey_id=journey_id,
            route_id=route_id,
            latitude=position.latitude,
            longitude=position.longitude,
            timestamp=timestamp,
            distance=distance,
            expected_latitude=expected.latitude,
            expected_longitude=expected.longitude,
        )
        self._deviations[event.id] = event
        self._changed("deviations", event.id, event)
        if not journey.has_deviation:
            journey = replace(journey, has_deviation=True)
            self._journeys[journey_id] = journey
            self._changed("journeys", journey_id, journey)
        return event

    async def get_deviation(self, deviation_id: int) -> DeviationEvent | None:
        return self._deviations.get(deviation_id)

    async def list_deviations(self, journey_id: int | None = None) -> list[DeviationEvent]:
        return [d for d in self._deviations.values() if journey_id is None or d.journey_id == journey_id]

    async def update_deviation(self, deviation: DeviationEvent) -> DeviationEvent:
        self._require(self._deviations, deviation.id, "Deviation")
        self._deviations[deviation.id] = deviation
        self._changed("deviations", deviation.id, deviation)
        return deviation

    async def add_alert(
        self,
        contact_id: int,
        deviation_id: int,
        method: AlertMethod,
        timestamp: int,
        message: str,
    ) -> AlertEvent:
        self._require(self._deviations, deviation_id, "Deviation")
        alert = AlertEvent(
            id=self._next_id("alerts"),
            contact_id=contact_id,
            deviation_id=deviation_id,
            method=method,
            timestamp=timestamp,
            message=message,
        )
        self._alerts[alert.id] = alert
        self._changed("alerts", alert.id, alert)
        return alert

    async def list_alerts(self, deviation_id: int | None = None) -> list[AlertEvent]:
        return [a for a in self._alerts.values() if deviation_id is None or a.deviation_id == deviation_id]

    # -- contacts ----------------------------------------------------------------------

    async def create_contact(
        self,
        name: str,
        phone_number: str | None = None,
        email: str | None = None,
        relationship: str | None = None,
        priority: int = 1,
        is_active: bool = True,
    ) -> EmergencyContact:
        contact = EmergencyContact(
            id=self._next_id("contacts"),
            name=name,
            phone_number=phone_number or None,
            email=email or None,
            relationship=relationship or None,
            priority=priority,
            is_active=is_active,
            created_at=now_ms(),
        )
        self._contacts[contact.id] = contact
        self._changed("contacts", contact.id, contact)
        return contact

    async def update_contact(self, contact: EmergencyContact) -> EmergencyContact:
        self._require(self._contacts, contact.id, "Contact")
        self._contacts[contact.id] = contact
        self._changed("contacts", contact.id, contact)
        return contact

    async def delete_contact(self, contact_id: int) -> bool:
        if self._contacts.pop(contact_id, None) is None:
            return False
        self._changed("contacts", contact_id, None)
        return True

    async def list_contacts(self, active_only: bool = False) -> list[EmergencyContact]:
        contacts = [c for c in self._contacts.values() if c.is_active or not active_only]
        return sorted(contacts, key=lambda c: (c.priority, c.id))

    @staticmethod
    def _require(table: dict[int, Any], key: int, what: str) -> Any:
        try:
            return table[key]
        except KeyError as exc:
            raise PersistenceError(f"{what} {key} does not exist") from exc


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def encode_record(record: Any) -> dict[str, Any]:
    """Dataclass record -> JSON-friendly dict."""

    return _plain(asdict(record))


def _geo(d: dict[str, Any]) -> GeoPoint:
    return GeoPoint(latitude=float(d["latitude"]), longitude=float(d["longitude"]))


def decode_record(table: str, d: dict[str, Any]) -> Any:
    """Inverse of :func:`encode_record` for the given table."""

    if table == "journeys":
        return Journey(**(d | {"transportation_mode": TransportationMode(d["transportation_mode"])}))
    if table == "journey_points":
        return TracePoint(**d)
    if table == "routes":
        return Route(
            **(
                d
                | {
                    "start_location": _geo(d["start_location"]),
                    "end_location": _geo(d["end_location"]),
                    "points": tuple(_geo(p) for p in d["points"]),
                }
            )
        )
    if table == "deviations":
        resp = d.get("user_response")
        return DeviationEvent(
            **(
                d
                | {
                    "user_response": DeviationResponse(resp) if resp else None,
                    "state": EscalationState(d.get("state", EscalationState.DETECTED.value)),
                }
            )
        )
    if table == "alerts":
        return AlertEvent(**(d | {"method": AlertMethod(d["method"])}))
    if table == "contacts":
        return EmergencyContact(**d)
    raise ValueError(f"Unknown table: {table!r}")


class JsonStore(MemoryStore):
    """MemoryStore persisted as a JSON snapshot plus an append-only journal."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        # Example: route_guard.json -> route_guard.journal.jsonl
        self._journal_path = self._path.with_name(f"{self._path.stem}.journal.jsonl")
        self._loading = False

    @property
    def path(self) -> Path:
        return self._path

    def ensure_persistent_files(self) -> None:
        """Create empty snapshot and journal files if missing (never clears content)."""

        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text("{}", encoding="utf-8")
        if not self._journal_path.exists():
            self._journal_path.parent.mkdir(parents=True, exist_ok=True)
            self._journal_path.write_text("", encoding="utf-8")

    def load(self) -> None:
        """Load the snapshot, then replay the journal on top of it."""

        self._loading = True
        try:
            if self._path.exists():
                text = self._path.read_text(encoding="utf-8").strip()
                if text:
                    try:
                        data = json.loads(text)
                    except json.JSONDecodeError as exc:
                        raise PersistenceError(f"Store snapshot {self._path} is corrupted: {exc}") from exc
                    self._load_snapshot(data)
            self._replay_journal()
        finally:
            self._loading = False

    def _load_snapshot(self, data: dict[str, Any]) -> None:
        for key, rows in data.get("journey_points", {}).items():
            self._journey_points[int(key)] = [decode_record("journey_points", r) for r in rows]
        for table in ("journeys", "routes", "deviations", "alerts", "contacts"):
            target = self._table(table)
            for key, row in data.get(table, {}).items():
                target[int(key)] = decode_record(table, row)

    def _replay_journal(self) -> None:
        if not self._journal_path.exists():
            return
        try:
            with self._journal_path.open("r", encoding="utf-8") as f:
                for line in f:
                    s = line.strip()
                    if not s:
                        continue
                    try:
                        rec = json.loads(s)
                    except json.JSONDecodeError:
                        # a crash mid-write leaves a broken tail line
                        logger.warning("Skipping broken journal line in %s", self._journal_path)
                        continue
                    self._apply(rec["t"], int(rec["k"]), rec.get("v"))
        except OSError as exc:
            raise PersistenceError(f"Cannot read journal {self._journal_path}: {exc}") from exc

    def _apply(self, table: str, key: int, value: dict[str, Any] | None) -> None:
        if table == "journey_points":
            self._journey_points.setdefault(key, []).append(decode_record(table, value or {}))
            return
        target = self._table(table)
        if value is None:
            target.pop(key, None)
        else:
            target[key] = decode_record(table, value)
            if table == "journeys":
                self._journey_points.setdefault(key, [])

    def _changed(self, table: str, key: int, record: Any | None) -> None:
        if self._loading:
            return
        entry = {"t": table, "k": key, "v": None if record is None else encode_record(record)}
        try:
            self._journal_path.parent.mkdir(parents=True, exist_ok=True)
            with self._journal_path.open("a", encoding="utf-8", newline="\n") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise PersistenceError(f"Cannot append to journal {self._journal_path}: {exc}") from exc

    def flush(self) -> None:
        """Write a full snapshot (atomic replace) and clear the journal."""

        data: dict[str, Any] = {
            "journey_points": {
                str(k): [encode_record(p) for p in pts] for k, pts in self._journey_points.items()
            }
        }
        for table in ("journeys", "routes", "deviations", "alerts", "contacts"):
            data[table] = {str(k): encode_record(v) for k, v in self._table(table).items()}

        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(self._path)
            if self._journal_path.exists():
                self._journal_path.unlink()
        except OSError as exc:
            raise PersistenceError(f"Cannot write snapshot {self._path}: {exc}") from exc
