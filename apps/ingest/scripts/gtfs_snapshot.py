#!/usr/bin/env python3
"""Join GTFS tables into the ranked stop/route snapshot consumed by the app."""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

try:
    from gtfs_tables import GtfsTables, RouteRow, StopRow, StopTimeRow, TripRow
except ImportError:  # pragma: no cover - support package import during testing
    from .gtfs_tables import GtfsTables, RouteRow, StopRow, StopTimeRow, TripRow  # type: ignore

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_STOPS = 400
DEFAULT_ROUTE_TYPE = "Transit"
UNKNOWN_AGENCY = "Unknown"

ROUTE_TYPE_LABELS = {
    "0": "Tram/Light Rail",
    "1": "Metro",
    "2": "Rail",
    "3": "Bus",
    "4": "Ferry",
    "5": "Cable Car",
    "6": "Gondola",
    "7": "Funicular",
}


@dataclass(frozen=True)
class NormalizedStop:
    id: str
    name: str
    lat: float
    lon: float
    routes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "lat": self.lat,
            "lon": self.lon,
            "routes": list(self.routes),
        }


@dataclass(frozen=True)
class NormalizedRoute:
    id: str
    short_name: str
    long_name: str
    agency_id: str
    type: str
    stop_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shortName": self.short_name,
            "longName": self.long_name,
            "agencyId": self.agency_id,
            "type": self.type,
            "stopCount": self.stop_count,
        }


@dataclass(frozen=True)
class Snapshot:
    generated_at: str
    source_url: str
    stops: list[NormalizedStop]
    routes: list[NormalizedRoute]

    def to_dict(self) -> dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "sourceUrl": self.source_url,
            "stops": [stop.to_dict() for stop in self.stops],
            "routes": [route.to_dict() for route in self.routes],
        }


def _to_finite_float(value: str | None) -> float | None:
    # float() would read "3_1" as 31.0.
    if value is None or "_" in value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    utc = moment.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def route_type_label(route_type: str | None) -> str:
    if route_type is None:
        return DEFAULT_ROUTE_TYPE
    return ROUTE_TYPE_LABELS.get(route_type, DEFAULT_ROUTE_TYPE)


def build_trip_route_map(trips: Iterable[TripRow]) -> dict[str, str]:
    trip_routes: dict[str, str] = {}
    for trip in trips:
        if trip.trip_id and trip.route_id:
            # A repeated trip_id keeps the last route seen.
            trip_routes[trip.trip_id] = trip.route_id
    return trip_routes


def build_stop_route_map(
    stop_times: Iterable[StopTimeRow],
    trip_routes: Mapping[str, str],
) -> dict[str, dict[str, None]]:
    """Map each stop to the distinct routes whose trips visit it.

    Route sets are dicts with None values so they keep first-seen order.
    """
    stop_routes: dict[str, dict[str, None]] = {}
    orphaned = 0
    for entry in stop_times:
        if not entry.stop_id or not entry.trip_id:
            continue
        route_id = trip_routes.get(entry.trip_id)
        if not route_id:
            orphaned += 1
            continue
        stop_routes.setdefault(entry.stop_id, {})[route_id] = None

    if orphaned:
        LOGGER.debug("Skipped %d stop_time rows whose trip has no route", orphaned)
    return stop_routes


def count_route_stops(stop_routes: Mapping[str, Iterable[str]]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for route_ids in stop_routes.values():
        for route_id in route_ids:
            counts[route_id] = counts.get(route_id, 0) + 1
    return counts


def normalize_stops(
    stops: Iterable[StopRow],
    stop_routes: Mapping[str, Iterable[str]],
) -> list[NormalizedStop]:
    normalized: list[NormalizedStop] = []
    dropped = 0
    for stop in stops:
        lat = _to_finite_float(stop.stop_lat)
        lon = _to_finite_float(stop.stop_lon)
        if not stop.stop_id or not stop.stop_name or lat is None or lon is None:
            dropped += 1
            continue
        normalized.append(
            NormalizedStop(
                id=stop.stop_id,
                name=stop.stop_name,
                lat=lat,
                lon=lon,
                routes=list(stop_routes.get(stop.stop_id, ())),
            )
        )

    if dropped:
        LOGGER.info("Dropped %d stops missing an id, name or valid coordinates", dropped)
    return normalized


def rank_stops(stops: list[NormalizedStop], max_stops: int) -> list[NormalizedStop]:
    """Busiest interchanges first; sorted() is stable so ties keep feed order."""
    ranked = sorted(stops, key=lambda stop: len(stop.routes), reverse=True)
    return ranked[:max_stops]


def normalize_routes(
    routes: Iterable[RouteRow],
    route_stop_counts: Mapping[str, int],
) -> list[NormalizedRoute]:
    normalized: list[NormalizedRoute] = []
    for route in routes:
        if not route.route_id:
            continue
        short_name = route.route_short_name or route.route_id
        normalized.append(
            NormalizedRoute(
                id=route.route_id,
                short_name=short_name,
                long_name=route.route_long_name or short_name,
                agency_id=route.agency_id or UNKNOWN_AGENCY,
                type=route_type_label(route.route_type),
                stop_count=route_stop_counts.get(route.route_id, 0),
            )
        )
    return normalized


def build_snapshot(
    tables: GtfsTables,
    source_url: str,
    max_stops: int = DEFAULT_MAX_STOPS,
    now: datetime | None = None,
) -> Snapshot:
    trip_routes = build_trip_route_map(tables.trips)
    stop_routes = build_stop_route_map(tables.stop_times, trip_routes)
    # Counted against every joined stop, before the stop list is truncated.
    route_stop_counts = count_route_stops(stop_routes)

    stops = rank_stops(normalize_stops(tables.stops, stop_routes), max_stops)
    routes = normalize_routes(tables.routes, route_stop_counts)

    LOGGER.info(
        "Joined %d trips onto %d served stops (%d stops kept, limit %d)",
        len(trip_routes),
        len(stop_routes),
        len(stops),
        max_stops,
    )
    return Snapshot(
        generated_at=format_timestamp(now or datetime.now(timezone.utc)),
        source_url=source_url,
        stops=stops,
        routes=routes,
    )


def write_snapshot(snapshot: Snapshot, path: Path) -> Path:
    """Write the snapshot atomically, replacing any previous file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    if tmp_path.exists():
        tmp_path.unlink()

    payload = json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)
    tmp_path.write_text(payload, encoding="utf-8")
    tmp_path.replace(path)
    return path
