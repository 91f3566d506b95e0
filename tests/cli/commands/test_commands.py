"""Tests for the scraping CLI command handlers with fake collaborators."""

from __future__ import annotations

import argparse
import json
from unittest.mock import MagicMock

import pytest

from harvester.cli.commands.detect_structure import handle_detect_structure_command
from harvester.cli.commands.fetch import handle_fetch_command
from harvester.cli.commands.run import add_run_parser, handle_run_command
from harvester.cli.commands.scrape_source import handle_scrape_source_command
from harvester.crawler.ladder import LadderResult
from harvester.pipeline.orchestrator import SourceResult
from tests.helpers.fakes import FakeDetector, FakeSource, make_article_html, make_listing_html


def _summary(success=True):
    return {
        "success": success,
        "message": "Scraped 1 sources: 2 saved, 1 skipped",
        "totalProcessed": 3,
        "totalSaved": 2,
        "totalSkipped": 1,
        "sourceResults": [
            SourceResult(
                source_id="src-1",
                source_name="Example News",
                processed=3,
                saved=2,
                skipped=1,
                errors=["Article https://news.example.com/x: Content too short"],
                success=success,
            ).to_dict()
        ],
    }


@pytest.fixture
def fake_repository(monkeypatch):
    repository = MagicMock()
    monkeypatch.setattr(
        "harvester.models.repository.SQLAlchemyRepository", lambda *a, **k: repository
    )
    return repository


@pytest.fixture
def built(monkeypatch):
    calls = {}
    orchestrator = MagicMock()

    def fake_build_orchestrator(**kwargs):
        calls.update(kwargs)
        return orchestrator

    monkeypatch.setattr("harvester.runtime.build_orchestrator", fake_build_orchestrator)
    return orchestrator, calls


def _fake_ladder(monkeypatch, result):
    ladder = MagicMock()
    ladder.fetch.return_value = result
    monkeypatch.setattr("harvester.runtime.build_ladder", lambda: ladder)
    return ladder


class TestRunCommand:
    def _args(self, *argv):
        parser = argparse.ArgumentParser()
        add_run_parser(parser.add_subparsers(dest="command"))
        return parser.parse_args(["run", *argv])

    def test_prints_summary_lines(self, fake_repository, built, capsys):
        orchestrator, calls = built
        orchestrator.run.return_value = _summary()

        exit_code = handle_run_command(self._args("--no-enrichment", "--max-articles", "5"))

        assert exit_code == 0
        fake_repository.create_schema.assert_called_once()
        assert calls == {"repository": fake_repository, "enable_enrichment": False}
        assert orchestrator.max_articles_per_source == 5
        orchestrator.ladder.http_fetcher.close.assert_called_once()
        out = capsys.readouterr().out
        assert "Example News: ok, 3 processed, 2 saved, 1 skipped" in out
        assert "Content too short" in out

    def test_json_output_and_failure_exit_code(self, fake_repository, built, capsys):
        orchestrator, calls = built
        orchestrator.run.return_value = _summary(success=False)

        exit_code = handle_run_command(self._args("--json"))

        assert exit_code == 1
        assert calls["enable_enrichment"] is None
        assert json.loads(capsys.readouterr().out)["totalSaved"] == 2

    def test_sessions_closed_when_run_raises(self, fake_repository, built):
        orchestrator, _ = built
        orchestrator.run.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            handle_run_command(self._args())

        orchestrator.ladder.http_fetcher.close.assert_called_once()


class TestScrapeSourceCommand:
    def test_unknown_source(self, fake_repository, built):
        fake_repository.get_source.return_value = None
        args = argparse.Namespace(source_id="missing", enrichment=None)

        assert handle_scrape_source_command(args) == 1
        orchestrator, _ = built
        orchestrator.scrape_source.assert_not_called()

    def test_scrapes_single_source(self, fake_repository, built, capsys):
        source = FakeSource(id="src-1", name="Example News", url="https://news.example.com/")
        fake_repository.get_source.return_value = source
        orchestrator, _ = built
        orchestrator.scrape_source.return_value = SourceResult(
            source_id="src-1", source_name="Example News", saved=4, success=True
        )

        exit_code = handle_scrape_source_command(
            argparse.Namespace(source_id="src-1", enrichment=None)
        )

        assert exit_code == 0
        orchestrator.scrape_source.assert_called_once_with(source)
        assert json.loads(capsys.readouterr().out)["savedCount"] == 4


class TestFetchCommand:
    def test_listing_fetch_with_links(self, monkeypatch, capsys):
        urls = [f"https://news.example.com/2024/story-{i}" for i in range(3)]
        result = LadderResult(
            url="https://news.example.com/",
            html=make_listing_html(urls),
            tier=1,
            method="http:chrome120",
            attempts=[(0, "Only 0 links found")],
        )
        ladder = _fake_ladder(monkeypatch, result)

        exit_code = handle_fetch_command(
            argparse.Namespace(
                url="https://news.example.com/", article=False, start_tier=None, links=True
            )
        )

        assert exit_code == 0
        ladder.http_fetcher.close.assert_called_once()
        report = json.loads(capsys.readouterr().out)
        assert report["tier"] == 1
        assert report["attempts"] == [{"tier": 0, "reason": "Only 0 links found"}]
        assert sorted(report["links"]) == urls

    def test_protected_fetch_fails(self, monkeypatch, capsys):
        result = LadderResult(
            url="https://news.example.com/", html=None, tier=5, method="protected", protected=True
        )
        _fake_ladder(monkeypatch, result)

        exit_code = handle_fetch_command(
            argparse.Namespace(
                url="https://news.example.com/", article=True, start_tier=2, links=False
            )
        )

        assert exit_code == 1
        assert json.loads(capsys.readouterr().out)["protected"] is True


class TestDetectStructureCommand:
    def test_detect_and_extract(self, monkeypatch, capsys):
        url = "https://news.example.com/2024/story"
        page = LadderResult(
            url=url, html=make_article_html("Patch released"), tier=0, method="http:chrome124"
        )
        _fake_ladder(monkeypatch, page)
        monkeypatch.setattr("harvester.runtime.build_classifier", lambda: FakeDetector())

        exit_code = handle_detect_structure_command(argparse.Namespace(url=url, extract=True))

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["config"]["titleSelector"] == "h1"
        assert output["tier"] == 0
        assert output["article"]["title"] == "Patch released"

    def test_unreachable_page(self, monkeypatch):
        url = "https://news.example.com/2024/story"
        page = LadderResult(url=url, html=None, tier=5, method="protected", protected=True)
        _fake_ladder(monkeypatch, page)

        assert handle_detect_structure_command(argparse.Namespace(url=url, extract=False)) == 1
