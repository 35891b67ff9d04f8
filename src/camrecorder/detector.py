"""
Presence detector for Cam Recorder.
Drives a headless browser to a performer's profile page, clears consent
and age gates, evaluates the platform's live/offline DOM rules and
optionally resolves a direct HLS manifest URL.

Platforms without DOM rules (YouTube, Twitch) are probed with yt-dlp.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from .logger import get_logger, get_performer_logger
from .models import Performer, PlatformBinding
from .errors import DetectionError
from .platforms import PROBE_YTDLP, PlatformConfig, resolve_platform
from .session_store import SessionStore


# Tried in order on the main document and every iframe
GATE_SELECTORS = [
    # Text-based buttons
    'button:has-text("I am over 18")',
    'button:has-text("I am 18 or older")',
    'button:has-text("I am at least 18")',
    'button:has-text("I am 18+")',
    'button:has-text("Enter")',
    'button:has-text("Continue")',
    'button:has-text("Yes")',
    'button:has-text("Accept")',
    'button:has-text("I agree")',
    'button:has-text("I understand")',
    # Id / class heuristics
    '[id*="age-verification"] button',
    '[class*="age-verification"] button',
    '[id*="verify-age"] button',
    '[class*="verify-age"] button',
    '[id*="adult-content"] button',
    '[class*="adult-content"] button',
    # Cookie consent
    'button:has-text("Accept All Cookies")',
    'button:has-text("Accept Cookies")',
    '[id*="cookie-consent"] button',
    '[class*="cookie-consent"] button',
    '[id*="cookie-banner"] button[id*="accept"]',
    '[class*="cookie-banner"] button[class*="accept"]',
]

MANIFEST_PATTERN = re.compile(r'(https?://[^"\'\s]+\.m3u8[^"\'\s]*)')

MEDIA_SOURCES_SCRIPT = """
els => els.map(e => e.currentSrc || e.src).filter(Boolean)
"""


def is_manifest_url(url: str) -> bool:
    """True for URLs that look like HLS/DASH playlists."""
    lower = url.lower()
    return (
        '.m3u8' in lower
        or '/hls/' in lower
        or lower.split('?', 1)[0].endswith('.mpd')
    )


@dataclass
class PresenceStatus:
    """Result of probing one platform binding."""
    is_online: bool
    stream_url: Optional[str] = None
    detected_at: datetime = field(default_factory=datetime.now)
    error: Optional[str] = None


async def collect_responses(
    page: Page,
    duration: float,
    action: Optional[Callable[[], Awaitable[None]]] = None
) -> List[str]:
    """
    Collect manifest-like response URLs for a bounded window.

    The listener lives only for the duration of ``action`` plus ``duration``
    seconds and is always detached before returning.
    """
    collected: List[str] = []

    def on_response(response) -> None:
        url = response.url
        if is_manifest_url(url) and url not in collected:
            collected.append(url)

    page.on("response", on_response)
    try:
        if action is not None:
            await action()
        if duration > 0:
            await page.wait_for_timeout(duration * 1000)
    finally:
        page.remove_listener("response", on_response)

    return collected


class PresenceDetector:
    """
    Checks whether performers are live.

    One browser is shared by all probes; each probe gets a fresh context
    seeded with the platform's stored cookies, which are written back after
    the visit.
    """

    def __init__(
        self,
        platforms: Dict[str, PlatformConfig],
        session_store: Optional[SessionStore] = None,
        headless: bool = True,
        timeout: float = 60,
        user_agent: Optional[str] = None,
        settle_delay: float = 3.0,
        network_wait: float = 5.0,
        extract_stream_urls: bool = True,
        screenshots: bool = False,
        screenshots_dir: str = "./data/screenshots"
    ):
        """
        Args:
            platforms: Platform table keyed by platform key.
            session_store: Cookie persistence; probes run anonymous without it.
            headless: Run the browser headless.
            timeout: Navigation timeout in seconds.
            user_agent: Overrides the per-platform user agent.
            settle_delay: Seconds to let the player render after gates.
            network_wait: Extra seconds of response collection when no manifest was seen.
            extract_stream_urls: Resolve a manifest URL for online performers.
            screenshots: Save a screenshot when navigation fails.
            screenshots_dir: Where screenshots go.
        """
        self.platforms = platforms
        self.session_store = session_store
        self.headless = headless
        self.timeout = timeout
        self.user_agent = user_agent
        self.settle_delay = settle_delay
        self.network_wait = network_wait
        self.extract_stream_urls = extract_stream_urls
        self.screenshots = screenshots
        self.screenshots_dir = Path(screenshots_dir)

        self._logger = get_logger('detector')
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._start_lock = asyncio.Lock()

    async def start(self) -> None:
        """
        Launch the browser (Firefox, falling back to Chromium).

        No-op while the browser is connected; a crashed or disconnected
        browser is discarded and launched again.
        """
        async with self._start_lock:
            if self._browser is not None:
                if self._browser.is_connected():
                    return
                self._logger.warning("Browser disconnected, relaunching")
                await self.close()

            self._playwright = await async_playwright().start()
            try:
                self._browser = await self._playwright.firefox.launch(headless=self.headless)
                self._logger.info("Browser started (firefox)")
            except PlaywrightError as e:
                self._logger.warning(f"Firefox launch failed, trying chromium: {e}")
                try:
                    self._browser = await self._playwright.chromium.launch(
                        headless=self.headless,
                        args=['--no-sandbox', '--disable-dev-shm-usage']
                    )
                except PlaywrightError:
                    await self._playwright.stop()
                    self._playwright = None
                    raise
                self._logger.info("Browser started (chromium)")

    async def close(self) -> None:
        """Close the browser and stop Playwright."""
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                self._logger.warning(f"Error closing browser: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def check_status(self, performer: Performer) -> Dict[str, PresenceStatus]:
        """
        Probe every platform binding of a performer, one after another.

        A failure on one binding is reported as offline for that binding only.
        """
        results: Dict[str, PresenceStatus] = {}
        for binding in performer.platforms:
            results[binding.platform] = await self.check_binding(performer, binding)
        return results

    async def check_binding(self, performer: Performer, binding: PlatformBinding) -> PresenceStatus:
        logger = get_performer_logger(performer.name, 'detector')
        platform = resolve_platform(binding.platform, binding.url, self.platforms)
        if platform is None:
            logger.warning(f"Unknown platform '{binding.platform}'")
            return PresenceStatus(is_online=False, error=f"Unknown platform: {binding.platform}")

        url = binding.url or platform.profile_url(binding.channel_id)

        try:
            if platform.probe == PROBE_YTDLP:
                status = await self._probe_ytdlp(url)
            else:
                status = await self._probe_browser(performer, platform, url)
        except DetectionError as e:
            logger.warning(str(e))
            return PresenceStatus(is_online=False, error=str(e))
        except Exception as e:
            logger.error(f"Detection failed on {platform.name}: {e}", exc_info=True)
            return PresenceStatus(is_online=False, error=str(e) or type(e).__name__)

        if status.is_online:
            logger.info(f"🟢 Live on {platform.name}: {status.stream_url}")
        else:
            logger.debug(f"Offline on {platform.name}")
        return status

    async def _probe_browser(
        self,
        performer: Performer,
        platform: PlatformConfig,
        url: str
    ) -> PresenceStatus:
        await self.start()

        context = await self._browser.new_context(
            user_agent=self.user_agent or platform.user_agent,
            viewport={'width': 1280, 'height': 720},
        )
        try:
            if platform.cookies and self.session_store:
                cookies = await self.session_store.load(platform.domain)
                if cookies:
                    await context.add_cookies(cookies)

            page = await context.new_page()

            async def open_page() -> None:
                await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout * 1000)
                await self.clear_gates(page)

            try:
                collected = await collect_responses(page, self.settle_delay, action=open_page)
            except PlaywrightError as e:
                await self._screenshot(page, performer.name)
                raise DetectionError(f"Could not load {url}: {e}") from e

            is_online = await self.evaluate_rules(
                page, platform.positive_selectors, platform.negative_selectors
            )

            stream_url = None
            if is_online:
                stream_url = url
                if self.extract_stream_urls:
                    if not collected and self.network_wait > 0:
                        collected = await collect_responses(page, self.network_wait)
                    stream_url = await self.extract_stream_url(page, collected) or url

            if platform.cookies and self.session_store:
                await self.session_store.save(platform.domain, await context.cookies())

            return PresenceStatus(is_online=is_online, stream_url=stream_url)
        finally:
            await context.close()

    async def _probe_ytdlp(self, url: str) -> PresenceStatus:
        """Liveness via yt-dlp metadata extraction (no download)."""
        loop = asyncio.get_running_loop()
        is_live = await loop.run_in_executor(None, self._extract_is_live, url)
        return PresenceStatus(is_online=is_live, stream_url=url if is_live else None)

    def _extract_is_live(self, url: str) -> bool:
        """Blocking extraction to determine live status via yt-dlp."""
        import yt_dlp

        ydl_opts = {
            'quiet': True,
            'no_warnings': True,
            'skip_download': True,
            'noplaylist': True,
        }
        try:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except yt_dlp.utils.DownloadError as e:
            # Offline channels surface as extraction errors
            self._logger.debug(f"yt-dlp: {e}")
            return False

        if not info:
            return False
        if info.get('is_live'):
            return True
        return info.get('live_status') == 'is_live'

    async def clear_gates(self, page: Page) -> int:
        """
        Click through consent and age-verification dialogs.

        Each selector is looked up in the main document, then in every
        iframe; the first match is clicked. Click failures are ignored.

        Returns:
            Number of clicks made.
        """
        clicked = 0
        for selector in GATE_SELECTORS:
            for frame in page.frames:
                try:
                    element = await frame.query_selector(selector)
                except PlaywrightError:
                    continue
                if element is None:
                    continue
                self._logger.debug(f"Gate element found: {selector}")
                try:
                    await element.click(timeout=2000)
                    clicked += 1
                except PlaywrightError:
                    pass
                break
        return clicked

    async def evaluate_rules(
        self,
        page: Page,
        positive: Iterable[str],
        negative: Iterable[str]
    ) -> bool:
        """Online iff every positive selector is present and no negative one is."""
        for selector in positive:
            if await page.query_selector(selector) is None:
                self._logger.debug(f"Missing positive selector: {selector}")
                return False
        for selector in negative:
            if await page.query_selector(selector) is not None:
                self._logger.debug(f"Found negative selector: {selector}")
                return False
        return True

    async def extract_stream_url(self, page: Page, collected: Iterable[str] = ()) -> Optional[str]:
        """
        First manifest candidate: collected network responses, then
        ``<video>``/``<source>`` sources, then a regex scan of the page HTML.
        """
        first = next(iter(collected), None)
        if first:
            return first

        try:
            sources = await page.eval_on_selector_all('video, video source', MEDIA_SOURCES_SCRIPT)
        except PlaywrightError:
            sources = []
        for src in sources:
            if src.startswith('http'):
                return src

        content = await page.content()
        match = MANIFEST_PATTERN.search(content)
        if match:
            return match.group(1)

        return None

    async def _screenshot(self, page: Page, name: str) -> None:
        if not self.screenshots:
            return
        self.screenshots_dir.mkdir(parents=True, exist_ok=True)
        safe_name = re.sub(r'[^\w-]', '_', name)
        path = self.screenshots_dir / f"{safe_name}-{int(datetime.now().timestamp() * 1000)}.png"
        try:
            await page.screenshot(path=str(path), full_page=True)
            self._logger.info(f"Screenshot saved: {path}")
        except PlaywrightError as e:
            self._logger.debug(f"Screenshot failed: {e}")
