#!/usr/bin/env python3
"""Query a generated GTFS snapshot for the stops nearest a coordinate."""
from __future__ import annotations

import argparse
import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

try:
    from process_gtfs import default_output_file
except ImportError:  # pragma: no cover - support package import during testing
    from .process_gtfs import default_output_file  # type: ignore

LOGGER = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
REQUIRED_KEYS = ("generatedAt", "sourceUrl", "stops", "routes")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    output_file = default_output_file()
    parser = argparse.ArgumentParser(
        description="List the snapshot stops closest to a latitude/longitude.",
    )
    parser.add_argument(
        "--snapshot",
        default=str(output_file),
        help=f"Snapshot JSON produced by process_gtfs (default: {output_file}).",
    )
    parser.add_argument("--lat", type=float, required=True, help="Latitude in decimal degrees.")
    parser.add_argument("--lon", type=float, required=True, help="Longitude in decimal degrees.")
    parser.add_argument(
        "--limit",
        type=int,
        default=5,
        help="Number of stops to list (default: 5).",
    )
    return parser.parse_args(argv)


def load_snapshot(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as fh:
        payload = json.load(fh)
    if not isinstance(payload, dict):
        raise ValueError(f"{path} does not contain a snapshot object")
    missing = [key for key in REQUIRED_KEYS if key not in payload]
    if missing:
        raise ValueError(f"{path} is missing snapshot keys: {', '.join(missing)}")
    return payload


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def nearest_stops(
    snapshot: dict[str, Any],
    lat: float,
    lon: float,
    limit: int = 5,
) -> list[tuple[dict[str, Any], float]]:
    ranked = [
        (stop, haversine_km(lat, lon, stop["lat"], stop["lon"]))
        for stop in snapshot.get("stops", [])
    ]
    ranked.sort(key=lambda item: item[1])
    return ranked[: max(limit, 0)]


def parse_generated_at(value: str) -> datetime:
    # fromisoformat() only accepts a trailing Z from Python 3.11 onwards.
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def freshness_label(generated_at: str, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    seconds = (current - parse_generated_at(generated_at)).total_seconds()
    if seconds < 60:
        return "just now"

    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)

    path = Path(args.snapshot)
    if not path.exists():
        raise SystemExit(f"Snapshot not found: {path}. Run process_gtfs first.")

    try:
        snapshot = load_snapshot(path)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    LOGGER.info(
        "Snapshot from %s, updated %s",
        snapshot["sourceUrl"],
        freshness_label(snapshot["generatedAt"]),
    )
    for stop, distance in nearest_stops(snapshot, args.lat, args.lon, args.limit):
        print(f"{distance:6.2f} km  {stop['name']} ({stop['id']}) routes={len(stop['routes'])}")


if __name__ == "__main__":
    main()
