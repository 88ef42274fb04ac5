#!/usr/bin/env python3
"""Download a GTFS static feed and write the ranked stop/route snapshot."""
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Mapping, Sequence

import requests
from dotenv import load_dotenv

try:
    import gtfs_snapshot
    import gtfs_sources
    import gtfs_tables
except ImportError:  # pragma: no cover - support package import during testing
    from . import gtfs_snapshot, gtfs_sources, gtfs_tables  # type: ignore

LOGGER = logging.getLogger(__name__)

SOURCE_ROOT = Path(__file__).resolve().parent.parent
OUTPUT_NAME = "gtfs-data.json"
DEFAULT_HTTP_TIMEOUT = 60.0


def resolve_project_root(environ: Mapping[str, str] | None = None) -> Path:
    """Directory holding `.env` and `data/`.

    GTFS_PROJECT_ROOT wins. A source checkout uses `apps/ingest`; an
    installed package falls back to the working directory.
    """
    env = os.environ if environ is None else environ
    configured = (env.get("GTFS_PROJECT_ROOT") or "").strip()
    if configured:
        return Path(configured).expanduser()
    if (SOURCE_ROOT.parent.parent / "pyproject.toml").is_file():
        return SOURCE_ROOT
    return Path.cwd()


def default_output_file(project_root: Path | None = None) -> Path:
    root = resolve_project_root() if project_root is None else project_root
    return root / "data" / OUTPUT_NAME


def parse_args(
    argv: Sequence[str] | None = None,
    project_root: Path | None = None,
) -> argparse.Namespace:
    output_file = default_output_file(project_root)
    parser = argparse.ArgumentParser(
        description="Build the transit stop/route snapshot from a GTFS static feed.",
    )
    parser.add_argument(
        "--url",
        default=os.getenv("GTFS_URL"),
        help="Explicit GTFS zip URL; skips agency discovery (defaults to GTFS_URL env var).",
    )
    parser.add_argument(
        "--agency",
        default=os.getenv("GTFS_AGENCY"),
        help="Agency feed to fetch, e.g. ktmb or prasarana (defaults to GTFS_AGENCY env var).",
    )
    parser.add_argument(
        "--category",
        default=os.getenv("GTFS_CATEGORY"),
        help="Category for multi-category agencies, e.g. rapid-rail-kl (defaults to GTFS_CATEGORY env var).",
    )
    parser.add_argument(
        "--zip-path",
        help="Process a local GTFS zip instead of downloading one.",
    )
    parser.add_argument(
        "--max-stops",
        default=os.getenv("GTFS_MAX_STOPS"),
        help=f"Maximum stops kept in the snapshot (default: {gtfs_snapshot.DEFAULT_MAX_STOPS}).",
    )
    parser.add_argument(
        "--http-timeout",
        default=os.getenv("GTFS_HTTP_TIMEOUT"),
        help=f"Seconds to wait for each download attempt (default: {DEFAULT_HTTP_TIMEOUT:g}).",
    )
    parser.add_argument(
        "--output",
        default=os.getenv("GTFS_OUTPUT") or str(output_file),
        help=f"Snapshot path (default: {output_file}).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the pipeline and log counts without writing the snapshot.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(argv)


def resolve_max_stops(value: str | int | None) -> int:
    if value is None or value == "":
        return gtfs_snapshot.DEFAULT_MAX_STOPS
    try:
        max_stops = int(value)
    except (TypeError, ValueError):
        raise SystemExit(f"GTFS_MAX_STOPS must be an integer, got {value!r}") from None
    if max_stops < 0:
        raise SystemExit(f"GTFS_MAX_STOPS must not be negative, got {max_stops}")
    return max_stops


def resolve_timeout(value: str | float | None) -> float:
    if value is None or value == "":
        return DEFAULT_HTTP_TIMEOUT
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise SystemExit(f"GTFS_HTTP_TIMEOUT must be a number of seconds, got {value!r}") from None
    if timeout <= 0:
        raise SystemExit(f"GTFS_HTTP_TIMEOUT must be positive, got {timeout:g}")
    return timeout


def run_pipeline(
    config: gtfs_sources.FeedSourceConfig,
    output_path: Path,
    max_stops: int = gtfs_snapshot.DEFAULT_MAX_STOPS,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    zip_path: Path | None = None,
    dry_run: bool = False,
    session: requests.Session | None = None,
) -> gtfs_snapshot.Snapshot:
    if zip_path is not None:
        feed = gtfs_sources.load_local_feed(zip_path)
    else:
        candidates = gtfs_sources.build_candidate_urls(config)
        LOGGER.info("Trying %d candidate GTFS feed(s)", len(candidates))
        feed = gtfs_sources.download_feed(candidates, timeout, session=session)

    tables = gtfs_tables.load_feed_tables(feed.content)
    snapshot = gtfs_snapshot.build_snapshot(tables, feed.source_url, max_stops=max_stops)

    if dry_run:
        LOGGER.info("Dry run: snapshot not written to %s", output_path)
    else:
        gtfs_snapshot.write_snapshot(snapshot, output_path)
        LOGGER.info("GTFS data saved to %s", output_path)
    LOGGER.info("Stops stored: %d | Routes stored: %d", len(snapshot.stops), len(snapshot.routes))
    return snapshot


def main(argv: Sequence[str] | None = None) -> None:
    project_root = resolve_project_root()
    load_dotenv(dotenv_path=project_root / ".env")

    args = parse_args(argv, project_root)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    config = gtfs_sources.FeedSourceConfig.build(
        url=args.url,
        agency=args.agency,
        category=args.category,
    )
    max_stops = resolve_max_stops(args.max_stops)
    timeout = resolve_timeout(args.http_timeout)

    zip_path = Path(args.zip_path) if args.zip_path else None
    if zip_path is not None and not zip_path.exists():
        raise SystemExit(f"Zip file not found: {zip_path}")

    try:
        run_pipeline(
            config,
            Path(args.output),
            max_stops=max_stops,
            timeout=timeout,
            zip_path=zip_path,
            dry_run=args.dry_run,
        )
    except gtfs_sources.FeedUnavailableError as exc:
        LOGGER.error("Failed to process GTFS feed: %s", exc)
        raise SystemExit(1) from exc
    except gtfs_tables.FeedFormatError as exc:
        LOGGER.error("Failed to process GTFS feed: %s", exc)
        LOGGER.error("The feed must contain %s.", ", ".join(gtfs_tables.REQUIRED_FILES))
        raise SystemExit(1) from exc
    except requests.RequestException as exc:
        LOGGER.exception("Failed to process GTFS feed: network error")
        LOGGER.error(gtfs_sources.REMEDIATION_HINT)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
