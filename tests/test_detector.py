from typing import Dict, List, Optional

import pytest
from playwright.async_api import Error as PlaywrightError

from camrecorder import detector as detector_module
from camrecorder.detector import (
    GATE_SELECTORS,
    PresenceDetector,
    PresenceStatus,
    collect_responses,
    is_manifest_url,
)
from camrecorder.models import Performer, PlatformBinding
from camrecorder.platforms import DEFAULT_PLATFORMS

from conftest import make_performer


class FakeElement:
    def __init__(self, fail_click: bool = False):
        self.fail_click = fail_click
        self.clicks = 0

    async def click(self, timeout: Optional[float] = None) -> None:
        if self.fail_click:
            raise PlaywrightError("element is not visible")
        self.clicks += 1


class FakeFrame:
    def __init__(self, elements: Optional[Dict[str, FakeElement]] = None):
        self.elements = elements or {}

    async def query_selector(self, selector: str) -> Optional[FakeElement]:
        return self.elements.get(selector)


class FakeResponse:
    def __init__(self, url: str):
        self.url = url


class FakePage(FakeFrame):
    """Main frame plus child frames, with a response event emitter."""

    def __init__(
        self,
        elements: Optional[Dict[str, FakeElement]] = None,
        child_frames: Optional[List[FakeFrame]] = None,
        media_sources: Optional[List[str]] = None,
        html: str = "<html></html>"
    ):
        super().__init__(elements)
        self.frames = [self] + (child_frames or [])
        self.media_sources = media_sources or []
        self.html = html
        self.listeners = {}
        self.pending_responses: List[str] = []

    def on(self, event, handler) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler) -> None:
        self.listeners[event].remove(handler)

    def emit(self, url: str) -> None:
        for handler in list(self.listeners.get("response", [])):
            handler(FakeResponse(url))

    async def wait_for_timeout(self, timeout_ms: float) -> None:
        for url in self.pending_responses:
            self.emit(url)

    async def eval_on_selector_all(self, selector: str, script: str) -> List[str]:
        return list(self.media_sources)

    async def content(self) -> str:
        return self.html



class UnreachablePage(FakePage):
    async def goto(self, url, wait_until=None, timeout=None):
        raise PlaywrightError(f"net::ERR_NAME_NOT_RESOLVED at {url}")


class FakeContext:
    def __init__(self, page: FakePage):
        self.page = page
        self.closed = False

    async def add_cookies(self, cookies) -> None:
        pass

    async def new_page(self) -> FakePage:
        return self.page

    async def cookies(self) -> list:
        return []

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, connected: bool = True, page: Optional[FakePage] = None):
        self.connected = connected
        self.closed = False
        self.contexts: List[FakeContext] = []
        self.page = page or FakePage()

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **kwargs) -> FakeContext:
        context = FakeContext(self.page)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True


class FakePlaywright:
    """Driver whose firefox.launch hands out fresh FakeBrowsers."""

    def __init__(self):
        self.firefox = self
        self.launched: List[FakeBrowser] = []
        self.stopped = False

    async def launch(self, headless: bool = True) -> FakeBrowser:
        browser = FakeBrowser()
        self.launched.append(browser)
        return browser

    async def stop(self) -> None:
        self.stopped = True


class FakePlaywrightStarter:
    def __init__(self, driver: FakePlaywright):
        self.driver = driver

    async def start(self) -> FakePlaywright:
        return self.driver


@pytest.fixture
def detector(tmp_path):
    return PresenceDetector(
        DEFAULT_PLATFORMS, screenshots_dir=str(tmp_path / "shots"), settle_delay=0, network_wait=0
    )


@pytest.mark.parametrize("url, expected", [
    ("https://edge.example.com/live/playlist.m3u8?token=1", True),
    ("https://cdn.example.com/hls/stream/index", True),
    ("https://cdn.example.com/dash/manifest.mpd?x=1", True),
    ("https://example.com/static/app.js", False),
    ("https://example.com/mpd/info.json", False),
])
def test_is_manifest_url(url, expected):
    assert is_manifest_url(url) is expected


async def test_evaluate_rules(detector):
    page = FakePage(elements={'#video': FakeElement(), '.chat': FakeElement()})

    assert await detector.evaluate_rules(page, ['#video', '.chat'], ['.offline'])
    assert not await detector.evaluate_rules(page, ['#video', '.missing'], [])
    assert not await detector.evaluate_rules(page, ['#video'], ['.chat'])
    assert await detector.evaluate_rules(page, [], [])


async def test_clear_gates_clicks_inside_iframe(detector):
    button = FakeElement()
    iframe = FakeFrame({'button:has-text("I am over 18")': button})
    page = FakePage(child_frames=[iframe])

    clicked = await detector.clear_gates(page)

    assert clicked == 1
    assert button.clicks == 1


async def test_clear_gates_prefers_main_document_and_tolerates_click_failures(detector):
    main_button = FakeElement()
    frame_button = FakeElement()
    broken = FakeElement(fail_click=True)
    page = FakePage(
        elements={GATE_SELECTORS[0]: main_button, 'button:has-text("Accept")': broken},
        child_frames=[FakeFrame({GATE_SELECTORS[0]: frame_button})],
    )

    clicked = await detector.clear_gates(page)

    assert clicked == 1
    assert main_button.clicks == 1
    assert frame_button.clicks == 0


async def test_clear_gates_without_gates(detector):
    assert await detector.clear_gates(FakePage()) == 0


async def test_collect_responses_detaches_listener():
    page = FakePage()
    page.pending_responses = [
        "https://cdn.example.com/a.m3u8",
        "https://cdn.example.com/logo.png",
        "https://cdn.example.com/a.m3u8",
    ]
    actions = []

    async def action():
        actions.append(True)
        page.emit("https://cdn.example.com/b/hls/chunk")

    collected = await collect_responses(page, 1.0, action=action)

    assert actions == [True]
    assert collected == ["https://cdn.example.com/b/hls/chunk", "https://cdn.example.com/a.m3u8"]
    assert page.listeners["response"] == []


async def test_collect_responses_detaches_listener_on_error():
    page = FakePage()

    async def action():
        raise PlaywrightError("navigation failed")

    with pytest.raises(PlaywrightError):
        await collect_responses(page, 1.0, action=action)
    assert page.listeners["response"] == []


async def test_extract_prefers_collected_responses(detector):
    page = FakePage(
        media_sources=["https://media.example.com/video.m3u8"],
        html='<script>var u = "https://html.example.com/x.m3u8";</script>',
    )

    url = await detector.extract_stream_url(page, ["https://net.example.com/live.m3u8"])

    assert url == "https://net.example.com/live.m3u8"


async def test_extract_falls_back_to_media_sources(detector):
    page = FakePage(
        media_sources=["blob:https://example.com/123", "https://media.example.com/video.m3u8"],
        html='<script>var u = "https://html.example.com/x.m3u8";</script>',
    )

    assert await detector.extract_stream_url(page) == "https://media.example.com/video.m3u8"


async def test_extract_falls_back_to_page_html(detector):
    page = FakePage(html='<script>var cfg = {"hls": "https://html.example.com/x.m3u8?t=9"};</script>')

    assert await detector.extract_stream_url(page) == "https://html.example.com/x.m3u8?t=9"


async def test_extract_returns_none_without_candidates(detector):
    assert await detector.extract_stream_url(FakePage()) is None


class ScriptedDetector(PresenceDetector):
    """Detector whose browser probe answers from a table."""

    def __init__(self, answers, **kwargs):
        super().__init__(DEFAULT_PLATFORMS, **kwargs)
        self.answers = answers
        self.probed = []

    async def _probe_browser(self, performer, platform, url):
        self.probed.append(url)
        answer = self.answers[platform.name]
        if isinstance(answer, Exception):
            raise answer
        return answer


async def test_check_status_isolates_binding_failures():
    performer = Performer(
        name="Alice",
        platforms=[
            PlatformBinding(platform="chaturbate", channel_id="alice"),
            PlatformBinding(platform="stripchat", channel_id="alice"),
        ],
    )
    detector = ScriptedDetector({
        'Chaturbate': RuntimeError("page crashed"),
        'Stripchat': PresenceStatus(is_online=True, stream_url="https://s.example/a.m3u8"),
    })

    results = await detector.check_status(performer)

    assert not results['chaturbate'].is_online
    assert results['chaturbate'].error == "page crashed"
    assert results['stripchat'].is_online
    assert results['stripchat'].stream_url == "https://s.example/a.m3u8"
    assert detector.probed == [
        DEFAULT_PLATFORMS['chaturbate'].profile_url("alice"),
        DEFAULT_PLATFORMS['stripchat'].profile_url("alice"),
    ]


async def test_binding_url_takes_precedence():
    performer = make_performer("Bob")
    detector = ScriptedDetector({'Chaturbate': PresenceStatus(is_online=False)})

    status = await detector.check_binding(performer, performer.platforms[0])

    assert not status.is_online
    assert detector.probed == ["https://chaturbate.com/bob/"]


async def test_unknown_platform_is_offline_with_error():
    performer = make_performer("Carol", platform="nosuchsite")
    detector = ScriptedDetector({})

    results = await detector.check_status(performer)

    assert not results['nosuchsite'].is_online
    assert "Unknown platform" in results['nosuchsite'].error
    assert detector.probed == []


async def test_ytdlp_platforms_skip_the_browser(monkeypatch):
    performer = Performer(
        name="Dana", platforms=[PlatformBinding(platform="youtube", channel_id="@dana")]
    )
    detector = ScriptedDetector({})
    monkeypatch.setattr(detector, '_extract_is_live', lambda url: True)

    status = await detector.check_binding(performer, performer.platforms[0])

    assert status.is_online
    assert status.stream_url == DEFAULT_PLATFORMS['youtube'].profile_url("@dana")
    assert detector.probed == []


async def test_binding_with_unknown_key_resolves_platform_from_url():
    performer = Performer(
        name="Eve",
        platforms=[PlatformBinding(platform="cb", channel_id="eve", url="https://cht.xxx/eve/")],
    )
    detector = ScriptedDetector({'Chaturbate': PresenceStatus(is_online=True, stream_url="https://c/e.m3u8")})

    status = await detector.check_binding(performer, performer.platforms[0])

    assert status.is_online
    assert detector.probed == ["https://cht.xxx/eve/"]


async def test_disconnected_browser_is_relaunched(detector, monkeypatch):
    old_driver = FakePlaywright()
    crashed = FakeBrowser(connected=False)
    detector._playwright = old_driver
    detector._browser = crashed
    new_driver = FakePlaywright()
    monkeypatch.setattr(detector_module, 'async_playwright', lambda: FakePlaywrightStarter(new_driver))

    await detector.start()

    assert crashed.closed
    assert old_driver.stopped
    assert new_driver.launched == [detector._browser]

    await detector.start()
    assert len(new_driver.launched) == 1


async def test_navigation_failure_is_reported_offline(detector):
    detector._browser = FakeBrowser(page=UnreachablePage())
    performer = make_performer("Frank")

    status = await detector.check_binding(performer, performer.platforms[0])

    assert not status.is_online
    assert status.error.startswith("Could not load https://chaturbate.com/frank/")
    assert "ERR_NAME_NOT_RESOLVED" in status.error
    [context] = detector._browser.contexts
    assert context.closed
