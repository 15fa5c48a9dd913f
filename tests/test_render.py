import time

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from offline_mirror.driver import MirrorDriver
from offline_mirror.render import (
    ObservedResource,
    PlaywrightRenderer,
    RenderError,
    RenderResult,
    RequestsRenderer,
    find_blocked_marker,
    get_renderer_factory,
)

URL = "https://example.com/"


def test_requests_renderer_returns_html(session):
    session.add(URL, "<html><body>hi</body></html>", "text/html; charset=utf-8")
    result = RequestsRenderer(session).render(URL, 5)
    assert result.url == URL
    assert "hi" in result.html
    assert result.resources == [] and result.exchanges == []


def test_requests_renderer_errors(session):
    with pytest.raises(RenderError, match="HTTP 404"):
        RequestsRenderer(session).render(URL, 5)
    session.add(URL, "{}", "application/json")
    with pytest.raises(RenderError, match="not an HTML page"):
        RequestsRenderer(session).render(URL, 5)


def test_asset_urls_skip_documents():
    result = RenderResult(
        URL,
        "",
        resources=[
            ObservedResource("https://example.com/a.css", "stylesheet"),
            ObservedResource("https://example.com/frame/", "document"),
        ],
    )
    assert result.asset_urls() == ["https://example.com/a.css"]


def test_find_blocked_marker():
    assert find_blocked_marker("<title>Just a moment...</title>", ["Just a moment"]) == "Just a moment"
    assert find_blocked_marker("<p>ok</p>", ["Just a moment"]) is None


def test_renderer_factory(settings, session):
    settings.render_js = False
    assert isinstance(get_renderer_factory(settings, session)(), RequestsRenderer)
    settings.render_js = True
    renderer = get_renderer_factory(settings, session)()
    assert isinstance(renderer, PlaywrightRenderer)
    # browser is started lazily
    renderer.close()


class SlowContentPage:
    """Looks like a Playwright page whose body text never grows past the threshold."""

    def __init__(self, html):
        self.html = html
        self.url = "about:blank"
        self.goto_timeout = None
        self.function_waits = []

    def route(self, pattern, handler):
        pass

    def goto(self, url, wait_until=None, timeout=None):
        self.url = url
        self.goto_timeout = timeout

    def evaluate(self, expression, arg=None):
        return None

    def wait_for_timeout(self, ms):
        pass

    def title(self):
        return "Gallery"

    def content(self):
        return self.html

    def wait_for_function(self, expression, arg=None, timeout=None):
        self.function_waits.append(timeout)
        time.sleep(timeout / 1000)
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    def screenshot(self, full_page=False):
        return b"PNG"

    def close(self):
        pass


class FakeContext:
    def __init__(self, page):
        self.page = page

    def new_page(self):
        return self.page


def short_page_renderer(settings):
    page = SlowContentPage('<html><head><title>Gallery</title></head><body><img src="a.png"></body></html>')
    renderer = PlaywrightRenderer(settings)
    renderer._context = FakeContext(page)
    return renderer, page


def test_short_page_renders_within_its_own_content_wait(settings):
    settings.content_wait_ms = 200
    renderer, page = short_page_renderer(settings)
    result = renderer.render(URL, 0.05)
    assert "Gallery" in result.html
    assert page.goto_timeout == 50
    assert page.function_waits == [200]


def test_short_page_is_saved_by_the_driver(settings, session):
    settings.content_wait_ms = 200
    renderer, _ = short_page_renderer(settings)
    driver = MirrorDriver(settings, renderer_factory=lambda: renderer, session=session)
    report = driver.run([URL], page_timeout=0.05)
    assert report.failed == []
    assert (settings.root / "index" / "index.html").is_file()
