from __future__ import annotations

import argparse
import csv
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Final

from zoneinfo import ZoneInfo


TZ: Final[str] = "Asia/Shanghai"

FIELDNAMES: Final[list[str]] = [
    "geoTime",
    "latitude",
    "longitude",
    "altitude",
    "horizontalAccuracy",
    "speed",
]


@dataclass(frozen=True, slots=True)
class Waypoint:
    lat: float
    lon: float


# home -> lab commute, roughly 3 km through city blocks
COMMUTE: Final[list[Waypoint]] = [
    Waypoint(31.2222000, 121.4588000),
    Waypoint(31.2222000, 121.4650000),
    Waypoint(31.2265000, 121.4650000),
    Waypoint(31.2265000, 121.4700000),
    Waypoint(31.2304000, 121.4700000),
    Waypoint(31.2304000, 121.4737000),
]

# replaces COMMUTE[2:4] on the detour journey, swinging about 450 m south of the route
DETOUR: Final[list[Waypoint]] = [
    Waypoint(31.2180000, 121.4650000),
    Waypoint(31.2180000, 121.4700000),
    Waypoint(31.2265000, 121.4700000),
]


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _meters(a: Waypoint, b: Waypoint) -> float:
    # equirectangular is plenty for a few kilometers
    x = math.radians(b.lon - a.lon) * math.cos(math.radians((a.lat + b.lat) / 2.0))
    y = math.radians(b.lat - a.lat)
    return 6_371_000.0 * math.hypot(x, y)


def walk(
    waypoints: list[Waypoint],
    *,
    rng: random.Random,
    start: datetime,
    speed_mps: float,
    interval_s: float,
    jitter_deg: float,
) -> list[dict[str, str]]:
    """Sample a trip along ``waypoints`` every ``interval_s`` seconds."""

    out: list[dict[str, str]] = []
    cur = start
    for a, b in zip(waypoints, waypoints[1:]):
        seg = _meters(a, b)
        steps = max(1, int(seg / (speed_mps * interval_s)))
        for i in range(steps):
            t = i / steps
            lat = a.lat + (b.lat - a.lat) * t + rng.uniform(-jitter_deg, jitter_deg)
            lon = a.lon + (b.lon - a.lon) * t + rng.uniform(-jitter_deg, jitter_deg)
            out.append(_row(cur, lat, lon, speed_mps, rng))
            cur = cur + timedelta(seconds=interval_s * rng.uniform(0.8, 1.2))
    last = waypoints[-1]
    out.append(_row(cur, last.lat, last.lon, 0.0, rng))
    return out


def _row(dt: datetime, lat: float, lon: float, speed: float, rng: random.Random) -> dict[str, str]:
    hacc = rng.choice([3.0, 5.0, 8.0, 12.0, -1.0])
    return {
        "geoTime": str(_epoch_ms(dt)),
        "latitude": f"{lat:.7f}",
        "longitude": f"{lon:.7f}",
        "altitude": f"{rng.uniform(4, 12):.1f}",
        "horizontalAccuracy": f"{hacc:.1f}",
        "speed": f"{speed * rng.uniform(0.8, 1.2):.1f}",
    }


def generate_rows(
    *,
    days: int,
    seed: int,
    start_local: datetime,
    speed_mps: float,
    detour_day: int | None,
) -> list[dict[str, str]]:
    """One commute per day at about the same time; optionally one detour day."""

    rng = random.Random(seed)
    tz = ZoneInfo(TZ)
    base = start_local.replace(tzinfo=tz)

    out: list[dict[str, str]] = []
    for day in range(days):
        start = base + timedelta(days=day, minutes=rng.uniform(-10, 10))
        waypoints = COMMUTE
        if detour_day is not None and day == detour_day:
            waypoints = COMMUTE[:2] + DETOUR + COMMUTE[4:]
        out.extend(
            walk(waypoints, rng=rng, start=start, speed_mps=speed_mps, interval_s=20.0, jitter_deg=0.00005)
        )

    out.sort(key=lambda r: int(r["geoTime"]))
    return out


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a fake commute Path.csv for demo/testing (privacy-safe).")
    p.add_argument("--out", type=str, default="sample_data/Path.csv", help="Output CSV path")
    p.add_argument("--days", type=int, default=5, help="Number of daily commutes")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument("--speed", type=float, default=4.0, help="Travel speed in m/s")
    p.add_argument(
        "--detour-day",
        type=int,
        default=None,
        help="0-based day index whose commute takes a detour",
    )
    p.add_argument(
        "--start",
        type=str,
        default="2025-01-06 08:30:00",
        help="First commute start, local time in Asia/Shanghai",
    )
    args = p.parse_args()

    rows = generate_rows(
        days=args.days,
        seed=args.seed,
        start_local=datetime.fromisoformat(args.start),
        speed_mps=args.speed,
        detour_day=args.detour_day,
    )
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=FIELDNAMES)
        w.writeheader()
        w.writerows(rows)

    print(f"Generated: {out_path} (rows={len(rows)}, days={args.days}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
