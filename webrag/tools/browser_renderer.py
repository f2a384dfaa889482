"""Headless Chromium rendering of web pages into extracted text.

Each page is loaded in a fresh, non-persistent browser context with consent
banner hosts blocked, waited on until its content stops changing, scrolled
top to bottom to trigger lazy loading, printed to a PDF and converted to text.
Direct PDF links skip the browser and are downloaded instead.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger

from webrag.config import settings
from webrag.research_core.extract.service import ExtractService
from webrag.research_core.models.interfaces import FetchedPage
from webrag.tools import web_utils

CONSENT_HOST_MARKERS = (
    "onetrust",
    "cookielaw",
    "cookiebot",
    "consensu",
    "quantcast",
    "trustarc",
    "didomi",
    "usercentrics",
    "cookiepro",
    "iubenda",
    "termly",
    "cookieyes",
    "osano",
    "consentmanager",
    "sourcepoint",
)

CONSENT_HIDE_SCRIPT = """
(() => {
  const css = `
    #onetrust-consent-sdk, #onetrust-banner-sdk, #CybotCookiebotDialog,
    #didomi-host, #usercentrics-root, #truste-consent-track, .qc-cmp2-container,
    .fc-consent-root, .cc-window, .cookie-banner, .cookie-consent,
    [id*="cookie-banner"], [class*="cookie-banner"], [id*="consent-banner"],
    [class*="consent-banner"], [aria-label*="cookie" i]
    { display: none !important; visibility: hidden !important; }
    html, body { overflow: auto !important; }
  `;
  const install = () => {
    if (document.getElementById("__webrag_consent_hide")) return;
    const style = document.createElement("style");
    style.id = "__webrag_consent_hide";
    style.textContent = css;
    (document.head || document.documentElement).appendChild(style);
  };
  install();
  document.addEventListener("DOMContentLoaded", install);
})();
"""

PAGE_SAMPLE_SCRIPT = """
() => {
  const body = document.body;
  const root = document.documentElement;
  return {
    readyState: document.readyState,
    textLength: body ? body.innerText.length : 0,
    height: Math.max(body ? body.scrollHeight : 0, root ? root.scrollHeight : 0),
  };
}
"""

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


def is_consent_request(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(marker in host for marker in CONSENT_HOST_MARKERS)


@dataclass(frozen=True, slots=True)
class PageSample:
    ready_state: str
    text_length: int
    height: int

    @classmethod
    def from_js(cls, raw: Any) -> "PageSample":
        raw = raw if isinstance(raw, dict) else {}
        return cls(
            ready_state=str(raw.get("readyState") or ""),
            text_length=int(raw.get("textLength") or 0),
            height=int(raw.get("height") or 0),
        )


def within_tolerance(previous: int, current: int, tolerance: float) -> bool:
    reference = max(previous, current, 1)
    return abs(current - previous) <= tolerance * reference


class StabilityTracker:
    """Counts consecutive samples whose text length and height barely move."""

    def __init__(self, required_samples: int, tolerance: float):
        self.required_samples = max(required_samples, 1)
        self.tolerance = tolerance
        self._previous: PageSample | None = None
        self._streak = 0

    def observe(self, sample: PageSample) -> bool:
        previous, self._previous = self._previous, sample
        if sample.ready_state != "complete" or previous is None:
            self._streak = 0
            return False
        if within_tolerance(previous.text_length, sample.text_length, self.tolerance) and within_tolerance(
            previous.height, sample.height, self.tolerance
        ):
            self._streak += 1
        else:
            self._streak = 0
        return self._streak >= self.required_samples


def scroll_positions(total_height: int, step: int) -> list[int]:
    if total_height <= 0 or step <= 0:
        return [0]
    return list(range(0, total_height, step))


async def is_pdf_resource(url: str, client: httpx.AsyncClient) -> bool:
    if web_utils.looks_like_pdf_url(url):
        return True
    try:
        response = await client.head(url)
    except httpx.HTTPError as exc:
        logger.debug(f"HEAD sniff failed for {url}: {exc}")
        return False
    content_type = response.headers.get("content-type", "").lower()
    return "application/pdf" in content_type


class BrowserRenderer:
    """Shared headless Chromium used for one page at a time per context."""

    def __init__(self, *, extractor: ExtractService | None = None):
        self.extractor = extractor or ExtractService()
        self._playwright: Any | None = None
        self._browser: Any | None = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Any:
        async with self._lock:
            if self._browser is None:
                from playwright.async_api import async_playwright

                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
                logger.info("Launched headless Chromium")
            return self._browser

    async def render(self, url: str) -> FetchedPage:
        async with httpx.AsyncClient(
            timeout=settings.render_navigation_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            if await is_pdf_resource(url, client):
                return await self._download_pdf(url, client)
        return await self._render_page(url)

    async def _download_pdf(self, url: str, client: httpx.AsyncClient) -> FetchedPage:
        response = await client.get(url)
        response.raise_for_status()
        text = await asyncio.to_thread(self.extractor.pdf_to_text, response.content)
        return FetchedPage(url=url, text=text)

    async def _render_page(self, url: str) -> FetchedPage:
        browser = await self._ensure_browser()
        context = await browser.new_context(
            viewport={
                "width": settings.render_viewport_width,
                "height": settings.render_page_height,
            },
            user_agent=USER_AGENT,
        )
        try:
            await context.route("**/*", _block_consent_hosts)
            await context.add_init_script(CONSENT_HIDE_SCRIPT)
            page = await context.new_page()

            response = await asyncio.wait_for(
                page.goto(url, wait_until="domcontentloaded", timeout=0),
                timeout=settings.render_navigation_timeout_seconds,
            )
            if response is not None and response.status >= 400:
                raise RuntimeError(f"Navigation to {url} returned HTTP {response.status}")

            if not await wait_for_stable_content(page):
                logger.debug(f"Content of {url} did not settle, rendering anyway")
            await scroll_through(page)

            title = (await page.title()).strip() or None
            await page.emulate_media(media="screen")
            # Chromium cannot print overlapping pages; it breaks pages between
            # lines instead, so page boundaries do not cut text.
            pdf_bytes = await page.pdf(
                width=f"{settings.render_viewport_width}px",
                height=f"{settings.render_page_height}px",
                print_background=False,
            )
        finally:
            await context.close()

        text = await asyncio.to_thread(self.extractor.pdf_to_text, pdf_bytes)
        return FetchedPage(url=url, title=title, text=text)

    async def aclose(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


async def _block_consent_hosts(route: Any) -> None:
    if is_consent_request(route.request.url):
        await route.abort()
    else:
        await route.continue_()


async def wait_for_stable_content(page: Any) -> bool:
    tracker = StabilityTracker(settings.render_settle_samples, settings.render_settle_tolerance)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.render_settle_timeout_seconds
    while loop.time() < deadline:
        sample = PageSample.from_js(await page.evaluate(PAGE_SAMPLE_SCRIPT))
        if tracker.observe(sample):
            return True
        await asyncio.sleep(settings.render_settle_interval_seconds)
    return False


async def scroll_through(page: Any) -> None:
    sample = PageSample.from_js(await page.evaluate(PAGE_SAMPLE_SCRIPT))
    for position in scroll_positions(sample.height, settings.render_scroll_step_px):
        await page.evaluate("(y) => window.scrollTo(0, y)", position)
        await asyncio.sleep(settings.render_scroll_pause_seconds)
    await page.evaluate("() => window.scrollTo(0, 0)")
