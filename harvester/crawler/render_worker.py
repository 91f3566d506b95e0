"""Out-of-process browser rendering worker.

Invoked as::

    python -m harvester.crawler.render_worker --input-data=<base64 JSON>

where the payload is ``{"url", "isArticlePage", "scrapingConfig", "stealth"}``.
Exactly one JSON line is written to stdout: ``{"type": "links"|"article",
"html": ...}`` or ``{"error": true, "message": ...}``. All diagnostics go to
stderr so the caller can parse stdout without filtering.
"""

from __future__ import annotations

import argparse
import base64
import binascii
import json
import logging
import os
import random
import resource
import sys
import time
from html import escape
from typing import Any, Optional

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.chrome.service import Service as ChromeService
from selenium.webdriver.common.action_chains import ActionChains
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait
from selenium_stealth import stealth

from harvester.crawler.utils import mask_proxy_url

# Advanced anti-detection for the maximum stealth level
try:
    import undetected_chromedriver as uc

    UNDETECTED_CHROME_AVAILABLE = True
except ImportError:
    UNDETECTED_CHROME_AVAILABLE = False

logger = logging.getLogger("harvester.render_worker")

STEALTH_SETTINGS = {
    "enhanced": {"page_load_timeout": 30, "settle": 2.0, "mouse_moves": 3},
    "maximum": {"page_load_timeout": 60, "settle": 4.0, "mouse_moves": 6},
}

SCROLL_STEPS = 3
SCROLL_PAUSE = 0.8
MIN_LISTING_LINKS = 20

FALLBACK_SELECTORS = {
    "content": [
        "article",
        ".article-content",
        ".article-body",
        "main .content",
        ".post-content",
        "#article-content",
        ".story-content",
    ],
    "title": ["h1", ".article-title", ".post-title"],
    "author": [".author", ".byline", ".article-author"],
    "date": [
        "time",
        "[datetime]",
        ".article-date",
        ".post-date",
        ".published-date",
        ".timestamp",
    ],
}

CHALLENGE_SELECTORS = [
    "iframe[src*='recaptcha']",
    "iframe[src*='hcaptcha']",
    "[class*='g-recaptcha']",
    "[class*='h-captcha']",
    ".cf-challenge-form",
    "#challenge-form",
    "#challenge-running",
    "form[id*='captcha']",
    "iframe[src*='_Incapsula_Resource']",
]

CHALLENGE_PHRASES = [
    "checking your browser",
    "just a moment",
    "verify you are human",
    "_incapsula_resource",
    "incapsula incident",
    "please enable cookies",
    "press and hold",
]

REALISTIC_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)


def decode_payload(raw: str) -> dict[str, Any]:
    """Decode the base64 JSON input payload."""
    try:
        decoded = base64.b64decode(raw.encode("ascii"), validate=True).decode("utf-8")
        payload = json.loads(decoded)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError(f"Invalid worker payload: {exc}") from exc

    if not isinstance(payload, dict) or not payload.get("url"):
        raise ValueError("Invalid worker payload: missing url")
    return payload


def emit(result: dict[str, Any]) -> None:
    """Write the single result line to stdout."""
    sys.stdout.write(json.dumps(result) + "\n")
    sys.stdout.flush()


def peak_memory_mb() -> float:
    """Peak RSS of this process plus reaped children (the browser), in MB."""
    own = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    children = resource.getrusage(resource.RUSAGE_CHILDREN).ru_maxrss
    # ru_maxrss is kilobytes on Linux, bytes on macOS
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return (own + children) / divisor


def create_driver(stealth_level: str = "enhanced"):
    """Create a headless Chrome driver with automation-detection countermeasures."""
    settings = STEALTH_SETTINGS.get(stealth_level, STEALTH_SETTINGS["enhanced"])
    chrome_bin = os.getenv("CHROME_BIN") or os.getenv("GOOGLE_CHROME_BIN") or None
    driver_path = os.getenv("CHROMEDRIVER_PATH") or None
    selenium_proxy = os.getenv("SELENIUM_PROXY")
    if selenium_proxy:
        logger.info(f"Browser proxy: {mask_proxy_url(selenium_proxy)}")

    width = random.randint(1366, 1920)
    height = random.randint(768, 1080)

    if stealth_level == "maximum" and UNDETECTED_CHROME_AVAILABLE:
        options = uc.ChromeOptions()
        options.add_argument("--headless=new")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        options.add_argument(f"--window-size={width},{height}")
        if selenium_proxy:
            options.add_argument(f"--proxy-server={selenium_proxy}")
        driver = uc.Chrome(
            options=options,
            browser_executable_path=chrome_bin,
            driver_executable_path=driver_path,
        )
        logger.info("Created undetected-chromedriver instance")
    else:
        chrome_options = ChromeOptions()
        chrome_options.page_load_strategy = "eager"
        chrome_options.add_argument("--headless=new")
        chrome_options.add_argument("--no-sandbox")
        chrome_options.add_argument("--disable-dev-shm-usage")
        chrome_options.add_argument("--disable-gpu")
        chrome_options.add_argument("--disable-blink-features=AutomationControlled")
        chrome_options.add_argument("--disable-extensions")
        chrome_options.add_argument("--disable-features=TranslateUI")
        chrome_options.add_argument(f"--window-size={width},{height}")
        chrome_options.add_argument(f"--user-agent={REALISTIC_UA}")
        if selenium_proxy:
            chrome_options.add_argument(f"--proxy-server={selenium_proxy}")
        chrome_options.add_experimental_option("excludeSwitches", ["enable-automation"])
        chrome_options.add_experimental_option("useAutomationExtension", False)
        chrome_options.add_experimental_option(
            "prefs",
            {
                "profile.default_content_setting_values": {
                    "notifications": 2,
                    "geolocation": 2,
                    "media_stream": 2,
                }
            },
        )
        if chrome_bin:
            chrome_options.binary_location = str(chrome_bin)

        if driver_path:
            service = ChromeService(executable_path=str(driver_path))
            driver = webdriver.Chrome(service=service, options=chrome_options)
        else:
            driver = webdriver.Chrome(options=chrome_options)

        stealth(
            driver,
            languages=["en-US", "en"],
            vendor="Google Inc.",
            platform="Win32",
            webgl_vendor="Intel Inc.",
            renderer="Intel Iris OpenGL Engine",
            fix_hairline=True,
        )

    driver.execute_script(
        "Object.defineProperty(navigator, 'webdriver', {get: () => undefined})"
    )
    driver.set_page_load_timeout(settings["page_load_timeout"])
    return driver


def wait_for_page(driver, timeout: float, settle: float) -> None:
    """Wait for the document to finish loading, then let scripts settle."""
    try:
        WebDriverWait(driver, timeout).until(
            lambda d: d.execute_script("return document.readyState") == "complete"
        )
    except TimeoutException:
        logger.warning("Timed out waiting for readyState=complete, continuing")
    try:
        WebDriverWait(driver, min(timeout, 10)).until(
            EC.presence_of_element_located((By.TAG_NAME, "body"))
        )
    except TimeoutException:
        logger.warning("Timed out waiting for <body>, continuing")
    time.sleep(settle)


def detect_challenge(driver) -> bool:
    """Return True if the rendered DOM shows a captcha or bot challenge."""
    for selector in CHALLENGE_SELECTORS:
        try:
            if driver.find_elements(By.CSS_SELECTOR, selector):
                logger.info(f"Detected challenge element: {selector}")
                return True
        except WebDriverException:
            continue

    try:
        source = (driver.page_source or "").lower()
    except WebDriverException:
        return False
    for phrase in CHALLENGE_PHRASES:
        if phrase in source:
            logger.info(f"Detected challenge phrase: {phrase}")
            return True
    return False


def simulate_human_pointer(driver, moves: int) -> None:
    """Move the pointer around the viewport in small random hops."""
    try:
        body = driver.find_element(By.TAG_NAME, "body")
        actions = ActionChains(driver)
        actions.move_to_element(body)
        for _ in range(moves):
            actions.move_by_offset(random.randint(-40, 40), random.randint(-30, 30))
            actions.pause(random.uniform(0.1, 0.35))
        actions.perform()
    except WebDriverException as exc:
        logger.debug(f"Pointer simulation failed: {exc}")


def handle_challenge(driver, settings: dict[str, Any]) -> bool:
    """Interact once and reload; returns True if the challenge cleared."""
    simulate_human_pointer(driver, settings["mouse_moves"])
    time.sleep(settings["settle"])
    try:
        driver.refresh()
    except TimeoutException:
        logger.warning("Reload after challenge timed out")
    wait_for_page(driver, settings["page_load_timeout"], settings["settle"])
    cleared = not detect_challenge(driver)
    logger.info(f"Challenge {'cleared' if cleared else 'still present'} after reload")
    return cleared


def scroll_page(driver, steps: int = SCROLL_STEPS, pause: float = SCROLL_PAUSE) -> None:
    """Scroll to the bottom in ``steps`` increments to trigger lazy loading."""
    for step in range(1, steps + 1):
        driver.execute_script(
            f"window.scrollTo(0, document.body.scrollHeight * {step} / {steps});"
        )
        time.sleep(pause)


def _first_text(driver, selectors: list[str]) -> tuple[str, Optional[Any]]:
    for selector in selectors:
        if not selector:
            continue
        try:
            elements = driver.find_elements(By.CSS_SELECTOR, selector)
        except WebDriverException:
            continue
        for element in elements:
            text = (element.text or "").strip()
            if text:
                return text, element
    return "", None


def _selectors_for(field: str, config: dict[str, Any]) -> list[str]:
    configured = config.get(f"{field}Selector") or config.get(f"{field}_selector")
    selectors = [configured] if configured else []
    return selectors + [s for s in FALLBACK_SELECTORS[field] if s != configured]


def extract_article(driver, config: dict[str, Any]) -> str:
    """Pull article fields and wrap them in a minimal, parseable document."""
    scroll_page(driver)

    title, _ = _first_text(driver, _selectors_for("title", config))
    content, _ = _first_text(driver, _selectors_for("content", config))
    author, _ = _first_text(driver, _selectors_for("author", config))
    date_text, date_el = _first_text(driver, _selectors_for("date", config))
    date_attr = ""
    if date_el is not None:
        date_attr = date_el.get_attribute("datetime") or ""

    if not title:
        title = driver.title or ""

    paragraphs = "".join(
        f"<p>{escape(line.strip())}</p>" for line in content.splitlines() if line.strip()
    )
    return (
        "<html><head>"
        f"<title>{escape(title)}</title>"
        "</head><body>"
        '<article data-render-worker="true">'
        f"<h1>{escape(title)}</h1>"
        + (f'<div class="author">{escape(author)}</div>' if author else "")
        + (f'<time datetime="{escape(date_attr)}">{escape(date_text)}</time>' if date_text or date_attr else "")
        + f'<div class="content">{paragraphs}</div>'
        "</article></body></html>"
    )


def has_htmx(driver) -> bool:
    return bool(
        driver.execute_script(
            "return !!window.htmx"
            " || !!document.querySelector('script[src*=\"htmx\"]')"
            " || document.querySelectorAll('[hx-get],[hx-post],[hx-trigger]').length > 0;"
        )
    )


def extract_links(driver, settle: float) -> str:
    """Return the listing page source after dynamic content has loaded."""
    try:
        WebDriverWait(driver, 5).until(EC.presence_of_element_located((By.TAG_NAME, "a")))
    except TimeoutException:
        logger.info("Timeout waiting for links, continuing anyway")

    if has_htmx(driver):
        logger.info("HTMX detected, waiting for load-triggered fragments")
        time.sleep(3)
        driver.execute_script(
            """
            document.querySelectorAll('[hx-get]').forEach(function (el, index) {
                if (index < 5) {
                    var trigger = el.getAttribute('hx-trigger') || 'click';
                    if (trigger.indexOf('load') === -1) { el.click(); }
                }
            });
            """
        )
        time.sleep(5)

    anchors = driver.find_elements(By.CSS_SELECTOR, "a[href]")
    if len(anchors) < MIN_LISTING_LINKS:
        logger.info(f"Only {len(anchors)} links found, running one scroll cycle")
        scroll_page(driver)
        time.sleep(settle)
        anchors = driver.find_elements(By.CSS_SELECTOR, "a[href]")

    logger.info(f"Listing page rendered with {len(anchors)} links")
    return driver.page_source or ""


def run(payload: dict[str, Any]) -> dict[str, Any]:
    """Render one page and return the result dict to emit."""
    url = payload["url"]
    is_article = bool(payload.get("isArticlePage"))
    config = payload.get("scrapingConfig") or {}
    level = payload.get("stealth") or "enhanced"
    settings = STEALTH_SETTINGS.get(level, STEALTH_SETTINGS["enhanced"])

    driver = None
    started = time.time()
    try:
        driver = create_driver(level)
        logger.info(f"Navigating to {url} (stealth={level}, article={is_article})")
        try:
            driver.get(url)
        except TimeoutException:
            logger.warning(f"Navigation timeout for {url}, using partial page")
        wait_for_page(driver, settings["page_load_timeout"], settings["settle"])

        if detect_challenge(driver):
            handle_challenge(driver, settings)

        if is_article:
            return {"type": "article", "html": extract_article(driver, config)}
        return {"type": "links", "html": extract_links(driver, settings["settle"])}
    except Exception as exc:
        logger.error(f"Render failed for {url}: {exc}")
        return {"error": True, "message": str(exc)}
    finally:
        if driver is not None:
            try:
                driver.quit()
            except Exception as exc:
                logger.debug(f"Error quitting driver: {exc}")
        logger.info(
            f"Worker finished in {time.time() - started:.1f}s, "
            f"peak memory {peak_memory_mb():.1f} MB"
        )


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        stream=sys.stderr,
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="[render-worker] [%(levelname)s] %(message)s",
    )
    parser = argparse.ArgumentParser(description="Isolated page render worker")
    parser.add_argument("--input-data", required=True, help="Base64-encoded JSON payload")
    args = parser.parse_args(argv)

    try:
        payload = decode_payload(args.input_data)
    except ValueError as exc:
        emit({"error": True, "message": str(exc)})
        return 0

    emit(run(payload))
    return 0


if __name__ == "__main__":
    sys.exit(main())
