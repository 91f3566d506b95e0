"""Tests for selector-driven article extraction."""

from __future__ import annotations

from datetime import datetime

import pytest

from harvester.crawler.articles import extract_article, parse_publish_date
from harvester.crawler.structure import ExtractionConfig

pytestmark = pytest.mark.unit

BODY = " ".join(["Attackers exploited an unpatched gateway to reach internal systems."] * 10)


def _config(**overrides):
    data = {
        "titleSelector": "h1.headline",
        "contentSelector": ".story-body",
        "authorSelector": ".byline",
        "dateSelector": ".published",
        "confidence": 0.85,
    }
    data.update(overrides)
    return ExtractionConfig.from_mapping(data, source="ai")


def test_configured_selectors_used():
    html = (
        "<html><head><title>Site name</title></head><body>"
        "<nav>Home | World | Tech</nav>"
        '<h1 class="headline">Gateway breach exposes records</h1>'
        '<div class="byline">By Alex Rivera</div>'
        '<span class="published">2024-03-05T08:30:00Z</span>'
        f'<div class="story-body"><p>{BODY}</p><script>track()</script></div>'
        "<footer>Copyright</footer></body></html>"
    )

    article = extract_article(html, "https://news.example.com/a", _config())

    assert article.title == "Gateway breach exposes records"
    assert article.author == "Alex Rivera"
    assert article.publish_date is not None
    assert article.publish_date.year == 2024 and article.publish_date.month == 3
    assert article.content.startswith("Attackers exploited")
    assert "track()" not in article.content
    assert "Home | World" not in article.content
    assert article.extraction_method == "ai-selectors"
    assert article.confidence == 0.85


def test_fallback_selectors_when_configured_missing():
    html = (
        "<html><body><h1>Fallback headline</h1>"
        f"<article><p>{BODY}</p></article>"
        '<time datetime="2024-01-02">Jan 2</time></body></html>'
    )

    article = extract_article(html, "https://news.example.com/b", _config())

    assert article.title == "Fallback headline"
    assert article.content.startswith("Attackers exploited")
    assert article.publish_date == datetime(2024, 1, 2)


def test_default_config_is_fallback():
    html = f"<html><body><h1>Plain</h1><article>{BODY}</article></body></html>"

    article = extract_article(html, "https://news.example.com/c")

    assert article.extraction_method == "fallback-selectors"
    assert article.title == "Plain"


def test_body_fallback_when_container_too_small():
    html = (
        "<html><body><h1>Thin</h1><div class='story-body'>Short teaser.</div>"
        f"<div class='main-column'><p>{BODY}</p></div></body></html>"
    )

    article = extract_article(html, "https://news.example.com/d", _config())

    assert article.extraction_method == "body-fallback"
    assert "Attackers exploited" in article.content


def test_render_worker_output_read_directly():
    html = (
        '<html><body><article data-render-worker="1">'
        "<h1>Rendered headline</h1><div class='author'>Sam Lee</div>"
        "<time>2024-06-01</time>"
        f"<div class='content'>{BODY}</div></article></body></html>"
    )

    article = extract_article(html, "https://news.example.com/e", _config())

    assert article.extraction_method == "render-worker"
    assert article.title == "Rendered headline"
    assert article.author == "Sam Lee"
    assert article.content.startswith("Attackers exploited")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-03-05", datetime(2024, 3, 5)),
        ("March 5, 2024", datetime(2024, 3, 5)),
        ("", None),
        (None, None),
    ],
)
def test_parse_publish_date(value, expected):
    parsed = parse_publish_date(value)
    if expected is None:
        assert parsed is None
    else:
        assert parsed.replace(tzinfo=None) == expected
