"""Tests for article quality checks and URL deduplication."""

from __future__ import annotations

import pytest

from harvester.crawler.articles import ExtractedArticle
from harvester.pipeline.article_validation import (
    REASON_CAPTCHA,
    REASON_CORRUPTED,
    REASON_ERROR_PAGE,
    REASON_NO_TITLE,
    REASON_SHORT,
    ArticleDeduplicator,
    contains_captcha_phrase,
    extract_title_from_url,
    is_corrupted_text,
    is_valid_title,
    sanitize_content,
    validate_article,
)
from tests.helpers.fakes import FakePersistence

pytestmark = pytest.mark.unit

GOOD_CONTENT = " ".join(
    ["Security teams worked through the weekend to contain the intrusion at the utility."] * 10
)


def _article(url="https://news.example.com/2024/utility-intrusion", title="Utility intrusion contained",
             content=GOOD_CONTENT):
    return ExtractedArticle(url=url, title=title, content=content)


def test_good_article_accepted():
    result = validate_article(_article())

    assert result.accepted is True
    assert result.reason is None
    assert result.article.title == "Utility intrusion contained"


def test_captcha_page_rejected_with_reason():
    content = "We detected unusual activity from your network. " + GOOD_CONTENT

    result = validate_article(_article(content=content))

    assert result.accepted is False
    assert result.reason == REASON_CAPTCHA == "Captcha/error page detected"


def test_captcha_phrase_in_title_rejected():
    result = validate_article(_article(title="Press and hold to confirm"))
    assert result.reason == REASON_CAPTCHA


def test_short_content_rejected():
    result = validate_article(_article(content="A brief teaser paragraph."))
    assert result.reason == REASON_SHORT


def test_min_length_override():
    result = validate_article(_article(content="A brief teaser paragraph."), min_length=10)
    assert result.accepted is True


def test_corrupted_content_rejected():
    garbage = "\u00c3\u00a9\u00c2\u00b1" * 300
    result = validate_article(_article(content=garbage))
    assert result.reason == REASON_CORRUPTED


def test_short_error_page_rejected():
    content = (
        "Sorry, the page you requested could not be located on our servers. "
        "Please check the address or return to the homepage to continue browsing. " * 5
    )
    result = validate_article(_article(content=content))
    assert result.reason == REASON_ERROR_PAGE


def test_invalid_title_replaced_from_url():
    result = validate_article(
        _article(url="https://news.example.com/news/article-big-breach-hits-bank-12345.html",
                 title="Page Not Found")
    )

    assert result.accepted is True
    assert result.article.title == "Big Breach Hits Bank"


def test_invalid_title_without_usable_slug_rejected():
    result = validate_article(_article(url="https://news.example.com/", title=""))
    assert result.reason == REASON_NO_TITLE


def test_content_sanitized_on_accept():
    messy = "First line\x00 with\t\ttabs\r\n\r\n\r\n   Second   line   " + GOOD_CONTENT
    result = validate_article(_article(content=messy))

    assert result.accepted is True
    assert result.article.content.startswith("First line with tabs\n\nSecond line")


@pytest.mark.parametrize(
    "title,expected",
    [
        ("Utility intrusion contained", True),
        ("404 Page Not Found", False),
        ("Oops! That page can't be found", False),
        ("Access Denied", False),
        ("untitled", False),
        ("ab", False),
        ("12345", False),
    ],
)
def test_is_valid_title(title, expected):
    assert is_valid_title(title) is expected


def test_is_corrupted_text_cases():
    assert is_corrupted_text("Plain readable sentence.") is False
    assert is_corrupted_text("bad \ufffd\ufffd\ufffd bytes") is True
    assert is_corrupted_text("abcabc" * 60) is True
    assert is_corrupted_text("") is False


def test_separator_lines_are_not_repetition():
    text = "-" * 60 + " " + GOOD_CONTENT
    assert is_corrupted_text(text) is False


def test_helpers():
    assert contains_captcha_phrase(None, "Please VERIFY YOU ARE HUMAN") is True
    assert contains_captcha_phrase("", None) is False
    assert extract_title_from_url("https://x.example.com/post-zero-day-in-vpn.php") == "Zero Day In Vpn"
    assert extract_title_from_url("https://x.example.com/") is None
    assert sanitize_content(None) == ""


class TestDeduplicator:
    def test_existing_url_is_duplicate(self):
        persistence = FakePersistence(existing_urls={"https://news.example.com/a"})
        dedup = ArticleDeduplicator(persistence)

        assert dedup.is_duplicate("https://news.example.com/a/") is True
        assert dedup.is_duplicate("https://news.example.com/b") is False

    def test_seen_this_run_is_duplicate_until_reset(self):
        dedup = ArticleDeduplicator(FakePersistence())
        dedup.mark_seen("https://news.example.com/b#section")

        assert dedup.is_duplicate("https://news.example.com/b") is True
        dedup.reset()
        assert dedup.is_duplicate("https://news.example.com/b") is False
