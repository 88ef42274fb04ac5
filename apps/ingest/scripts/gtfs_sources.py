#!/usr/bin/env python3
"""Resolve and download candidate GTFS static feeds from data.gov.my."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

import requests

LOGGER = logging.getLogger(__name__)

API_BASE = "https://api.data.gov.my/gtfs-static"
RAIL_AGENCY = "ktmb"
PRASARANA_AGENCY = "prasarana"
PRASARANA_CATEGORIES = (
    "rapid-bus-kl",
    "rapid-bus-penang",
    "rapid-bus-kuantan",
    "rapid-bus-mrtfeeder",
    "rapid-rail-kl",
)
MYBAS_AGENCIES = (
    "mybas-kangar",
    "mybas-alor-setar",
    "mybas-kota-bharu",
    "mybas-kuala-terengganu",
    "mybas-melaka",
    "mybas-johor",
    "mybas-kuching",
)

# Agencies whose feed is split by a `category` query parameter.
MULTI_CATEGORY_AGENCIES: dict[str, tuple[str, ...]] = {
    PRASARANA_AGENCY: PRASARANA_CATEGORIES,
}

REMEDIATION_HINT = (
    "Set GTFS_AGENCY / GTFS_CATEGORY per https://api.data.gov.my/gtfs-static, "
    'or provide GTFS_URL="https://example.com/feed.zip" (or --url) before re-running.'
)


class FeedUnavailableError(RuntimeError):
    """Raised when no candidate URL produced a downloadable archive."""


@dataclass(frozen=True)
class FeedSourceConfig:
    url: str | None = None
    agency: str | None = None
    category: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "FeedSourceConfig":
        env = os.environ if environ is None else environ
        return cls.build(
            url=env.get("GTFS_URL"),
            agency=env.get("GTFS_AGENCY"),
            category=env.get("GTFS_CATEGORY"),
        )

    @classmethod
    def build(
        cls,
        url: str | None = None,
        agency: str | None = None,
        category: str | None = None,
    ) -> "FeedSourceConfig":
        agency = _clean(agency)
        category = _clean(category)
        return cls(
            url=_clean(url),
            agency=agency.lower() if agency else None,
            category=category.lower() if category else None,
        )


@dataclass(frozen=True)
class DownloadedFeed:
    content: bytes
    source_url: str


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def agency_url(agency: str) -> str:
    return f"{API_BASE}/{agency}"


def category_url(agency: str, category: str) -> str:
    return f"{API_BASE}/{agency}?category={category}"


def _dedupe(urls: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    deduped: list[str] = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            deduped.append(url)
    return deduped


def build_candidate_urls(config: FeedSourceConfig) -> list[str]:
    """Return feed URLs to try, highest priority first.

    An explicit URL wins outright. A configured agency narrows the list to
    that operator (every category when the agency is split by category and
    none was chosen). Otherwise every known feed is swept, rail first.
    """
    if config.url:
        return [config.url]

    if config.agency:
        categories = MULTI_CATEGORY_AGENCIES.get(config.agency)
        if categories is not None:
            if config.category:
                return [category_url(config.agency, config.category)]
            return _dedupe(category_url(config.agency, category) for category in categories)
        if config.category:
            LOGGER.info(
                "Ignoring GTFS_CATEGORY=%s: agency %s is not split by category",
                config.category,
                config.agency,
            )
        return [agency_url(config.agency)]

    urls = [agency_url(RAIL_AGENCY)]
    urls.extend(category_url(PRASARANA_AGENCY, category) for category in PRASARANA_CATEGORIES)
    urls.extend(agency_url(agency) for agency in MYBAS_AGENCIES)
    return _dedupe(urls)


def try_download(
    url: str,
    timeout: float,
    session: requests.Session | None = None,
) -> bytes | None:
    """Fetch one candidate. HTTP failures return None; transport errors propagate."""
    http = session or requests
    LOGGER.info("Attempting GTFS download: %s", url)
    response = http.get(url, timeout=timeout)
    if not response.ok:
        LOGGER.warning(
            "Unable to download from %s (%s %s)",
            url,
            response.status_code,
            response.reason,
        )
        return None

    content = response.content
    LOGGER.info("Downloaded GTFS from %s (%d bytes)", url, len(content))
    return content


def download_feed(
    candidates: Iterable[str],
    timeout: float,
    session: requests.Session | None = None,
) -> DownloadedFeed:
    for url in candidates:
        content = try_download(url, timeout, session=session)
        if content is not None:
            return DownloadedFeed(content=content, source_url=url)

    raise FeedUnavailableError(
        "Unable to download GTFS feed from the available endpoints. " + REMEDIATION_HINT
    )


def load_local_feed(path: Path) -> DownloadedFeed:
    resolved = path.resolve()
    LOGGER.info("Using local GTFS bundle at %s", resolved)
    return DownloadedFeed(content=resolved.read_bytes(), source_url=resolved.as_uri())
