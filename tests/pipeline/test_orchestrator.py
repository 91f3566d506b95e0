"""Tests for the source orchestrator run loop."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from harvester.crawler.structure import StructureCache
from harvester.pipeline.enrichment import EnrichmentStage
from harvester.pipeline.orchestrator import SourceOrchestrator
from harvester.pipeline.progress import ProgressBroadcaster
from tests.helpers.fakes import (
    FakeDetector,
    FakeLadder,
    FakePersistence,
    FakeSource,
    make_article_html,
    make_listing_html,
)

pytestmark = pytest.mark.unit

LISTING = "https://news.example.com/latest"


def _article_urls(count, host="news.example.com"):
    return [f"https://{host}/2024/story-{i}" for i in range(count)]


def _pages(urls, listing=LISTING):
    pages = {listing: make_listing_html(urls)}
    for i, url in enumerate(urls):
        pages[url] = make_article_html(f"Router flaw patched part {i}")
    return pages


def _build(persistence, ladder, detector=None, enrichment=None, **kwargs):
    sleeps = []
    broadcaster = kwargs.pop("broadcaster", None) or ProgressBroadcaster(max_queue_size=500)
    orchestrator = SourceOrchestrator(
        persistence=persistence,
        ladder=ladder,
        structure_cache=StructureCache(detector or FakeDetector()),
        enrichment=enrichment,
        broadcaster=broadcaster,
        sleep=sleeps.append,
        request_delay=(0.0, 0.0),
        **kwargs,
    )
    orchestrator.sleeps = sleeps
    return orchestrator


def _drain(subscription):
    events = []
    while True:
        event = subscription.get(timeout=0)
        if event is None:
            return events
        events.append(event)


@pytest.fixture
def source():
    return FakeSource(id="src-1", name="Example News", url=LISTING)


class TestRunOutcomes:
    def test_existing_articles_skipped_and_new_ones_saved(self, source):
        urls = _article_urls(15)
        persistence = FakePersistence(sources=[source], existing_urls=set(urls[:3]))
        orchestrator = _build(persistence, FakeLadder(_pages(urls)))

        summary = orchestrator.run()

        assert summary["success"] is True
        assert summary["totalProcessed"] == 15
        assert summary["totalSaved"] == 12
        assert summary["totalSkipped"] == 3
        result = summary["sourceResults"][0]
        assert result["savedCount"] == 12
        assert len(result["newArticleIds"]) == 12
        assert result["errors"] == []
        assert len(persistence.articles) == 12
        assert persistence.last_scraped["src-1"][1] is True
        assert orchestrator.get_status()["running"] is False

    def test_captcha_article_rejected_with_reason(self, source):
        urls = _article_urls(4)
        pages = _pages(urls)
        pages[urls[1]] = make_article_html(
            "Just checking",
            body="Please verify you are human to continue reading this story. " * 12,
        )
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, FakeLadder(pages)).run()

        result = summary["sourceResults"][0]
        assert result["errors"] == [f"Article {urls[1]}: Captcha/error page detected"]
        assert result["skippedCount"] == 1
        assert result["savedCount"] == 3

    def test_short_content_counts_one_skip_per_rejection(self, source):
        urls = _article_urls(5)
        pages = _pages(urls)
        pages[urls[0]] = make_article_html("Tiny teaser one", body="Read more soon.")
        pages[urls[4]] = make_article_html("Tiny teaser two", body="Read more soon.")
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, FakeLadder(pages)).run()

        result = summary["sourceResults"][0]
        assert result["skippedCount"] == 2
        assert result["processedCount"] == 5
        assert result["errors"] == [
            f"Article {urls[0]}: Content too short",
            f"Article {urls[4]}: Content too short",
        ]

    def test_failed_article_fetch_recorded(self, source):
        urls = _article_urls(3)
        pages = _pages(urls)
        del pages[urls[2]]
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, FakeLadder(pages)).run()

        result = summary["sourceResults"][0]
        assert result["errors"] == [f"Failed to extract content from: {urls[2]}"]
        assert result["savedCount"] == 2

    def test_no_active_sources(self):
        summary = _build(FakePersistence(), FakeLadder()).run()

        assert summary["success"] is True
        assert summary["message"] == "No active sources found for scraping"
        assert summary["sourceResults"] == []

    def test_listing_exhaustion_marks_protected_and_run_continues(self, source):
        other = FakeSource(id="src-2", name="Other", url="https://other.example.com/news")
        urls = _article_urls(2, host="other.example.com")
        ladder = FakeLadder(_pages(urls, listing=other.url))
        persistence = FakePersistence(sources=[source, other])

        summary = _build(persistence, ladder).run()

        first, second = summary["sourceResults"]
        assert first["errors"] == [f"All scraping tiers exhausted for {LISTING}"]
        assert first["success"] is False
        assert first["tier"] == 5
        assert "src-1" in persistence.protected
        assert persistence.last_scraped["src-1"][1] is False
        assert second["savedCount"] == 2

    def test_listing_without_links(self, source):
        ladder = FakeLadder({LISTING: make_listing_html([])})
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, ladder).run()

        assert summary["sourceResults"][0]["errors"] == ["No article links found"]

    def test_source_protected_until_future_is_skipped(self, source):
        source.protected_until = datetime.utcnow() + timedelta(hours=1)
        ladder = FakeLadder(_pages(_article_urls(2)))
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, ladder).run()

        assert ladder.calls == []
        assert summary["sourceResults"][0]["errors"][0].startswith("Source protected until")
        assert "src-1" not in persistence.last_scraped

    def test_max_articles_per_source(self, source):
        urls = _article_urls(10)
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, FakeLadder(_pages(urls)), max_articles_per_source=4).run()

        assert summary["totalProcessed"] == 4

    def test_polite_delay_between_article_fetches(self, source):
        urls = _article_urls(4)
        orchestrator = _build(FakePersistence(sources=[source]), FakeLadder(_pages(urls)))

        orchestrator.run()

        assert len(orchestrator.sleeps) == 3

    def test_fatal_error_returns_error_summary_and_clears_flag(self):
        persistence = FakePersistence(fail_list=True)
        broadcaster = ProgressBroadcaster()
        orchestrator = _build(persistence, FakeLadder(), broadcaster=broadcaster)
        subscription = broadcaster.subscribe("global")

        summary = orchestrator.run()

        assert summary["success"] is False
        assert "database unavailable" in summary["message"]
        assert orchestrator.get_status()["running"] is False
        events = _drain(subscription)
        assert events[-1].event == "error"
        assert events[-1].data["error"] == "database unavailable"


class TestStructureConfigs:
    def test_detected_config_persisted_once_per_domain(self, source):
        detector = FakeDetector()
        persistence = FakePersistence(sources=[source])

        _build(persistence, FakeLadder(_pages(_article_urls(3))), detector=detector).run()

        assert len(detector.calls) == 1
        assert persistence.configs["src-1"]["titleSelector"] == "h1"
        assert persistence.configs["src-1"]["confidence"] == 0.9

    def test_stored_config_used_without_detection(self, source):
        source.scraping_config = {"titleSelector": "h1", "contentSelector": "article"}
        detector = FakeDetector()
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, FakeLadder(_pages(_article_urls(2))), detector=detector).run()

        assert detector.calls == []
        assert persistence.configs == {}
        assert summary["totalSaved"] == 2

    def test_corrupt_stored_config_replaced_by_detection(self, source):
        source.scraping_config = {"titleSelector": "By John Smith", "contentSelector": "article"}
        detector = FakeDetector()
        ladder = FakeLadder(_pages(_article_urls(2)))
        broadcaster = ProgressBroadcaster(max_queue_size=500)
        subscription = broadcaster.subscribe("global")
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, ladder, detector=detector, broadcaster=broadcaster).run()

        assert len(detector.calls) == 1
        assert persistence.configs["src-1"]["titleSelector"] == "h1"
        assert persistence.configs["src-1"]["confidence"] == 0.9
        assert summary["totalSaved"] == 2
        assert "structure_detection" in [e.event for e in _drain(subscription)]

    def test_low_confidence_detection_not_persisted(self, source):
        detector = FakeDetector(
            result={"titleSelector": "h1", "contentSelector": "article", "confidence": 0.4}
        )
        persistence = FakePersistence(sources=[source])

        summary = _build(persistence, FakeLadder(_pages(_article_urls(2))), detector=detector).run()

        assert persistence.configs == {}
        assert summary["totalSaved"] == 2


class TestJobControl:
    def test_start_while_running_reports_already_running(self, source):
        urls = _article_urls(2)
        ladder = FakeLadder(_pages(urls))
        orchestrator = _build(FakePersistence(sources=[source]), ladder)
        seen = []

        def hook(url, is_article):
            if not seen:
                seen.append(orchestrator.start_run(background=False))
                seen.append(orchestrator.run())

        ladder.hook = hook
        started = orchestrator.start_run(background=False)

        assert started["status"] == "accepted"
        assert seen[0] == {"status": "alreadyRunning", "jobId": started["jobId"]}
        assert seen[1]["success"] is False
        assert seen[1]["message"] == "A scraping job is already running"
        assert orchestrator.get_status()["lastSummary"]["totalSaved"] == 2

    def test_stop_halts_at_link_boundary(self, source):
        urls = _article_urls(6)
        ladder = FakeLadder(_pages(urls))
        orchestrator = _build(FakePersistence(sources=[source]), ladder)
        stops = []

        def hook(url, is_article):
            if url == urls[1]:
                stops.append(orchestrator.stop_run())

        ladder.hook = hook
        summary = orchestrator.run()

        assert stops[0]["status"] == "accepted"
        assert summary["totalProcessed"] == 2
        assert orchestrator.get_status()["running"] is False
        assert orchestrator.stop_run() == {"status": "notRunning"}

    def test_escalation_events_follow_restarted_run(self, source):
        urls = _article_urls(2)
        ladder = FakeLadder(_pages(urls))
        broadcaster = ProgressBroadcaster(max_queue_size=500)
        orchestrator = _build(FakePersistence(sources=[source]), ladder, broadcaster=broadcaster)
        subscription = broadcaster.subscribe("global")
        first_finished = threading.Event()
        restart = []

        def hook(url, is_article):
            if not restart:
                restart.append(orchestrator.stop_run())
                restart.append(orchestrator.start_run(background=True))
            elif url == urls[0]:
                first_finished.wait(timeout=5)
                ladder.on_escalate(3, url)

        ladder.hook = hook
        first = orchestrator.start_run(background=False)
        first_finished.set()
        orchestrator.wait(timeout=10)

        second_id = restart[1]["jobId"]
        assert second_id != first["jobId"]
        events = _drain(subscription)
        assert [e.job_id for e in events if e.event == "bot_bypass"] == [second_id]
        completed = [e.job_id for e in events if e.event == "job_completed"]
        assert completed == [second_id]
        status = orchestrator.get_status()
        assert status["jobId"] == second_id
        assert status["lastSummary"]["totalSaved"] == 2

    def test_source_already_being_scraped(self, source):
        orchestrator = _build(FakePersistence(sources=[source]), FakeLadder())
        orchestrator.state.active_sources.add("src-1")

        result = orchestrator.scrape_source(source)

        assert result.errors == ["Source Example News is already being scraped"]
        assert orchestrator.ladder.calls == []

    def test_background_run_completes(self, source):
        orchestrator = _build(
            FakePersistence(sources=[source]), FakeLadder(_pages(_article_urls(3)))
        )

        started = orchestrator.start_run()
        orchestrator.wait(timeout=10)

        status = orchestrator.get_status()
        assert status["running"] is False
        assert status["jobId"] == started["jobId"]
        assert status["lastSummary"]["totalSaved"] == 3
        assert status["sourceResults"][0]["sourceId"] == "src-1"
        assert orchestrator.ladder.reset_runs == 1


class TestProgressAndEnrichment:
    def test_event_sequence(self, source):
        urls = _article_urls(2)
        ladder = FakeLadder(_pages(urls))
        broadcaster = ProgressBroadcaster()
        orchestrator = _build(FakePersistence(sources=[source]), ladder, broadcaster=broadcaster)
        subscription = broadcaster.subscribe("global")

        def hook(url, is_article):
            if url == urls[0]:
                ladder.on_escalate(3, url)

        ladder.hook = hook
        orchestrator.run()

        names = [e.event for e in _drain(subscription)]
        assert names[0] == "job_started"
        assert names[1] == "source_started"
        assert "bot_bypass" in names
        assert "structure_detection" in names
        assert names.count("article_added") == 2
        assert names[-2:] == ["source_completed", "job_completed"]

    def test_enrichment_stored_with_article(self, source):
        classifier = MagicMock()
        classifier.classify_relevance.return_value = {"isRelevant": True, "confidence": 0.9, "categories": []}
        classifier.extract_entities.return_value = [
            {"type": "company", "name": "Acme", "norm": "acme", "confidence": 0.8, "meta": {}}
        ]
        classifier.score_severity.return_value = {"score": 9.2}
        persistence = FakePersistence(sources=[source])

        _build(
            persistence,
            FakeLadder(_pages(_article_urls(1))),
            enrichment=EnrichmentStage(classifier),
        ).run()

        record = persistence.articles[0]
        assert record["is_relevant"] is True
        assert record["severity_level"] == "critical"
        assert record["meta"]["extraction"]["tier"] == 0
        assert persistence.entities["article-1"][0]["name"] == "Acme"
