#!/usr/bin/env python3
"""Extract the GTFS tables needed for the snapshot from an in-memory zip."""
from __future__ import annotations

import csv
import io
import logging
import zipfile
from dataclasses import dataclass
from typing import Mapping

LOGGER = logging.getLogger(__name__)

STOPS_FILE = "stops.txt"
ROUTES_FILE = "routes.txt"
TRIPS_FILE = "trips.txt"
STOP_TIMES_FILE = "stop_times.txt"
REQUIRED_FILES = (STOPS_FILE, ROUTES_FILE, TRIPS_FILE, STOP_TIMES_FILE)

MAX_LOGGED_WARNINGS = 3


class FeedFormatError(RuntimeError):
    """Raised when the downloaded bundle cannot be read as a GTFS archive."""


class MissingTableError(FeedFormatError):
    """Raised when a required table is absent from the archive."""


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(frozen=True)
class StopRow:
    stop_id: str | None = None
    stop_name: str | None = None
    stop_lat: str | None = None
    stop_lon: str | None = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, str | None]) -> "StopRow":
        return cls(
            stop_id=_clean(row.get("stop_id")),
            stop_name=_clean(row.get("stop_name")),
            stop_lat=_clean(row.get("stop_lat")),
            stop_lon=_clean(row.get("stop_lon")),
        )


@dataclass(frozen=True)
class RouteRow:
    route_id: str | None = None
    route_short_name: str | None = None
    route_long_name: str | None = None
    agency_id: str | None = None
    route_type: str | None = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, str | None]) -> "RouteRow":
        return cls(
            route_id=_clean(row.get("route_id")),
            route_short_name=_clean(row.get("route_short_name")),
            route_long_name=_clean(row.get("route_long_name")),
            agency_id=_clean(row.get("agency_id")),
            route_type=_clean(row.get("route_type")),
        )


@dataclass(frozen=True)
class TripRow:
    trip_id: str | None = None
    route_id: str | None = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, str | None]) -> "TripRow":
        return cls(trip_id=_clean(row.get("trip_id")), route_id=_clean(row.get("route_id")))


@dataclass(frozen=True)
class StopTimeRow:
    trip_id: str | None = None
    stop_id: str | None = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, str | None]) -> "StopTimeRow":
        return cls(trip_id=_clean(row.get("trip_id")), stop_id=_clean(row.get("stop_id")))


@dataclass
class GtfsTables:
    stops: list[StopRow]
    routes: list[RouteRow]
    trips: list[TripRow]
    stop_times: list[StopTimeRow]


def parse_csv(text: str, source: str = "<csv>") -> list[dict[str, str | None]]:
    """Parse header-driven CSV text into one dict per row.

    Rows the csv module rejects are skipped. Extra trailing fields (often a
    trailing comma) are discarded and short rows keep the missing fields as
    None. Only the first few warnings are logged.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    reader = csv.DictReader(io.StringIO(text, newline=""))
    try:
        fieldnames = reader.fieldnames
    except csv.Error as exc:
        raise FeedFormatError(f"Unreadable header in {source}: {exc}") from exc
    if fieldnames:
        normalized = [name.strip() if isinstance(name, str) else name for name in fieldnames]
        if normalized != fieldnames:
            reader.fieldnames = normalized

    rows: list[dict[str, str | None]] = []
    warnings = 0

    def warn(message: str, *args: object) -> None:
        nonlocal warnings
        warnings += 1
        if warnings <= MAX_LOGGED_WARNINGS:
            LOGGER.warning("CSV parse warning in %s: " + message, source, *args)

    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            warn("line %d: %s", reader.line_num, exc)
            continue

        if None in row:
            row.pop(None)
            warn("line %d has more fields than the header", reader.line_num)
        elif any(value is None for value in row.values()):
            # Trailing columns missing; the absent fields read as None.
            warn("line %d has fewer fields than the header", reader.line_num)
        rows.append(row)

    if warnings > MAX_LOGGED_WARNINGS:
        LOGGER.warning(
            "%s: %d further parse warnings suppressed",
            source,
            warnings - MAX_LOGGED_WARNINGS,
        )
    return rows


def _resolve_member(archive: zipfile.ZipFile, name: str) -> str:
    names = archive.namelist()
    if name in names:
        return name

    # Some publishers zip the feed inside a single wrapping folder.
    nested = [member for member in names if member.count("/") == 1 and member.endswith("/" + name)]
    if len(nested) == 1:
        return nested[0]

    raise MissingTableError(f"File {name} not found inside the GTFS archive")


def read_member(archive: zipfile.ZipFile, name: str) -> str:
    member = _resolve_member(archive, name)
    with archive.open(member) as raw:
        return raw.read().decode("utf-8-sig", errors="replace")


def open_archive(content: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as exc:
        raise FeedFormatError("Downloaded GTFS bundle is not a valid zip archive") from exc


def load_feed_tables(content: bytes) -> GtfsTables:
    with open_archive(content) as archive:
        # Resolve every member up front so a missing table aborts before parsing.
        for name in REQUIRED_FILES:
            _resolve_member(archive, name)

        LOGGER.info("Parsing %s", STOPS_FILE)
        stops = [StopRow.from_mapping(row) for row in parse_csv(read_member(archive, STOPS_FILE), STOPS_FILE)]
        LOGGER.info("Parsing %s", ROUTES_FILE)
        routes = [RouteRow.from_mapping(row) for row in parse_csv(read_member(archive, ROUTES_FILE), ROUTES_FILE)]
        LOGGER.info("Parsing %s", TRIPS_FILE)
        trips = [TripRow.from_mapping(row) for row in parse_csv(read_member(archive, TRIPS_FILE), TRIPS_FILE)]
        LOGGER.info("Parsing %s (this may take a while)", STOP_TIMES_FILE)
        stop_times = [
            StopTimeRow.from_mapping(row)
            for row in parse_csv(read_member(archive, STOP_TIMES_FILE), STOP_TIMES_FILE)
        ]

    LOGGER.info(
        "Parsed %d stops, %d routes, %d trips, %d stop_time rows",
        len(stops),
        len(routes),
        len(trips),
        len(stop_times),
    )
    return GtfsTables(stops=stops, routes=routes, trips=trips, stop_times=stop_times)
