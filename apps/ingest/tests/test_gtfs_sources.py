import sys
import tempfile
import unittest
from pathlib import Path

import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts.gtfs_sources import (
    API_BASE,
    MYBAS_AGENCIES,
    PRASARANA_CATEGORIES,
    FeedSourceConfig,
    FeedUnavailableError,
    build_candidate_urls,
    download_feed,
    load_local_feed,
)


class StubResponse:
    def __init__(self, status_code: int, content: bytes = b"", reason: str = ""):
        self.status_code = status_code
        self.content = content
        self.reason = reason

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


class StubSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls: list[tuple[str, float]] = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


class BuildCandidateUrlsTest(unittest.TestCase):
    def test_explicit_url_overrides_everything(self):
        config = FeedSourceConfig.build(
            url="https://example.com/feed.zip",
            agency="prasarana",
            category="rapid-rail-kl",
        )
        self.assertEqual(build_candidate_urls(config), ["https://example.com/feed.zip"])

    def test_multi_category_agency_with_category(self):
        config = FeedSourceConfig.build(agency="Prasarana", category="RAPID-RAIL-KL")
        self.assertEqual(
            build_candidate_urls(config),
            [f"{API_BASE}/prasarana?category=rapid-rail-kl"],
        )

    def test_multi_category_agency_without_category_tries_every_category(self):
        urls = build_candidate_urls(FeedSourceConfig.build(agency="prasarana"))
        self.assertEqual(
            urls,
            [f"{API_BASE}/prasarana?category={category}" for category in PRASARANA_CATEGORIES],
        )

    def test_single_feed_agency_ignores_category(self):
        config = FeedSourceConfig.build(agency="mybas-johor", category="rapid-bus-kl")
        self.assertEqual(build_candidate_urls(config), [f"{API_BASE}/mybas-johor"])

    def test_default_sweep_is_rail_then_prasarana_then_mybas(self):
        urls = build_candidate_urls(FeedSourceConfig())
        self.assertEqual(urls[0], f"{API_BASE}/ktmb")
        self.assertEqual(
            urls[1 : 1 + len(PRASARANA_CATEGORIES)],
            [f"{API_BASE}/prasarana?category={category}" for category in PRASARANA_CATEGORIES],
        )
        self.assertEqual(
            urls[1 + len(PRASARANA_CATEGORIES) :],
            [f"{API_BASE}/{agency}" for agency in MYBAS_AGENCIES],
        )
        self.assertEqual(len(urls), len(set(urls)))

    def test_from_env_treats_blank_values_as_unset(self):
        config = FeedSourceConfig.from_env({"GTFS_URL": "  ", "GTFS_AGENCY": " KTMB "})
        self.assertIsNone(config.url)
        self.assertEqual(config.agency, "ktmb")
        self.assertIsNone(config.category)
        self.assertEqual(build_candidate_urls(config), [f"{API_BASE}/ktmb"])


class DownloadFeedTest(unittest.TestCase):
    def test_falls_back_until_a_candidate_succeeds(self):
        session = StubSession(
            {
                "https://a.example/feed.zip": StubResponse(503, reason="Service Unavailable"),
                "https://b.example/feed.zip": StubResponse(404, reason="Not Found"),
                "https://c.example/feed.zip": StubResponse(200, content=b"zip-bytes"),
                "https://d.example/feed.zip": StubResponse(200, content=b"never-fetched"),
            }
        )
        with self.assertLogs("scripts.gtfs_sources", level="WARNING") as logs:
            feed = download_feed(list(session.responses), timeout=5.0, session=session)

        self.assertEqual(feed.source_url, "https://c.example/feed.zip")
        self.assertEqual(feed.content, b"zip-bytes")
        self.assertEqual(
            [url for url, _ in session.calls],
            [
                "https://a.example/feed.zip",
                "https://b.example/feed.zip",
                "https://c.example/feed.zip",
            ],
        )
        self.assertTrue(all(timeout == 5.0 for _, timeout in session.calls))
        self.assertEqual(len(logs.records), 2)

    def test_exhausted_candidates_raise_with_guidance(self):
        session = StubSession({"https://a.example/feed.zip": StubResponse(500)})
        with self.assertLogs("scripts.gtfs_sources", level="WARNING"):
            with self.assertRaises(FeedUnavailableError) as ctx:
                download_feed(["https://a.example/feed.zip"], timeout=5.0, session=session)
        self.assertIn("GTFS_URL", str(ctx.exception))

    def test_empty_candidate_list_is_unavailable(self):
        with self.assertRaises(FeedUnavailableError):
            download_feed([], timeout=5.0, session=StubSession({}))

    def test_transport_errors_propagate(self):
        session = StubSession(
            {
                "https://a.example/feed.zip": requests.ConnectionError("boom"),
                "https://b.example/feed.zip": StubResponse(200, content=b"zip-bytes"),
            }
        )
        with self.assertRaises(requests.ConnectionError):
            download_feed(list(session.responses), timeout=5.0, session=session)
        self.assertEqual(len(session.calls), 1)


class LoadLocalFeedTest(unittest.TestCase):
    def test_reads_bytes_and_reports_file_uri(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "feed.zip"
            path.write_bytes(b"local")
            feed = load_local_feed(path)
        self.assertEqual(feed.content, b"local")
        self.assertTrue(feed.source_url.startswith("file://"))
        self.assertTrue(feed.source_url.endswith("/feed.zip"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
