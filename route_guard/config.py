"""Engine parameters."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from route_guard.models import DEFAULT_TZ


@dataclass(frozen=True, slots=True)
class EngineParams:
    """Parameters controlling route learning, deviation detection and escalation."""

    # Journeys shorter than this (points or meters) are not analysed at all.
    min_points_for_route: int = 10
    min_route_distance_m: float = 500.0
    similarity_threshold: float = 0.8
    deviation_threshold_m: float = 100.0
    initial_confidence: float = 0.3
    confidence_increment: float = 0.1
    max_confidence: float = 1.0
    # Medium severity: how long the user has to answer before contacts are alerted.
    escalation_timeout_s: float = 60.0
    simplify_epsilon_m: float = 20.0
    resample_count: int = 20
    tz_name: str = DEFAULT_TZ

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], base: EngineParams | None = None) -> EngineParams:
        """Apply overrides from a mapping.

        Raises:
            ValueError: On unknown keys.
        """

        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(values) - set(known))
        if unknown:
            raise ValueError(f"Unknown engine parameter(s): {', '.join(unknown)}")

        coerced: dict[str, Any] = {}
        for key, value in values.items():
            default = getattr(cls(), key)
            coerced[key] = type(default)(value)
        return replace(base or cls(), **coerced)


def load_params(path: str | Path | None) -> EngineParams:
    """Load parameters from a JSON file of overrides; defaults when ``path`` is None."""

    if path is None:
        return EngineParams()
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid parameter file {p}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Parameter file {p} must contain a JSON object")
    return EngineParams.from_mapping(data)
