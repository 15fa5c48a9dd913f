import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .settings import Settings
from .shim import ApiExchange, is_api_request, looks_like_json

RESOURCE_KINDS = ("stylesheet", "script", "image", "font", "document")
CHALLENGE_TITLES = ("Just a moment", "Checking your browser")
CHALLENGE_URL_MARKERS = ("challenge", "cf-browser-verification")

CHALLENGE_CLEARED_JS = """
(markers) => {
  const title = document.title || '';
  const body = (document.body && document.body.innerText) || '';
  if (title.includes('Just a moment') || title.includes('Checking')) return false;
  for (const m of markers) { if (body.includes(m)) return false; }
  return body.length > 500;
}
"""

HIDE_POPUPS_JS = """
(selectors) => {
  for (const sel of selectors) {
    document.querySelectorAll(sel).forEach(el => { el.style.display = 'none'; });
  }
  const closeBtn = document.querySelector('.mc-closeModal');
  if (closeBtn) closeBtn.click();
}
"""


class RenderError(Exception):
    pass


class RenderTimeout(RenderError):
    pass


class VerificationPending(RenderError):
    pass


@dataclass
class ObservedResource:
    url: str
    kind: str


@dataclass
class RenderResult:
    url: str
    html: str
    resources: List[ObservedResource] = field(default_factory=list)
    exchanges: List[ApiExchange] = field(default_factory=list)
    screenshot: Optional[bytes] = None

    def asset_urls(self) -> List[str]:
        return [r.url for r in self.resources if r.kind != "document"]


def find_blocked_marker(html: str, markers: List[str]) -> Optional[str]:
    for m in markers:
        if m in html:
            return m
    return None


# -------------------- Renderers --------------------


class Renderer:
    def render(self, url: str, timeout: float) -> RenderResult:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RequestsRenderer(Renderer):
    """Plain HTTP fetch for sites that do not need a browser."""

    def __init__(self, session: requests.Session):
        self.session = session

    def render(self, url: str, timeout: float) -> RenderResult:
        try:
            r = self.session.get(url, timeout=timeout)
        except requests.Timeout as e:
            raise RenderTimeout(f"Timeout after {timeout:.0f}s loading {url}") from e
        except requests.RequestException as e:
            raise RenderError(f"Failed to load {url}: {e}") from e
        if r.status_code >= 400:
            raise RenderError(f"HTTP {r.status_code} for {url}")
        ct = (r.headers.get("Content-Type") or "").lower()
        if "text/html" not in ct and "application/xhtml+xml" not in ct:
            raise RenderError(f"not an HTML page ({ct or 'no content type'}): {url}")
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        return RenderResult(url=url, html=r.text)


class PlaywrightRenderer(Renderer):
    """Chromium via Playwright's sync API.

    One instance belongs to one thread: it is created, used and closed by the
    same worker.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._pl = None
        self._browser = None
        self._context = None

    def _ensure_browser(self) -> None:
        if self._context is not None:
            return
        self._pl = sync_playwright().start()
        self._browser = self._pl.chromium.launch(
            headless=self.settings.headless,
            slow_mo=0 if self.settings.headless else 100,
        )
        self._context = self._browser.new_context(
            user_agent=self.settings.headers.get("User-Agent"),
            viewport={"width": 1920, "height": 1080},
            locale="en-US",
        )

    def render(self, url: str, timeout: float) -> RenderResult:
        self._ensure_browser()
        resources: List[ObservedResource] = []
        exchanges: List[ApiExchange] = []
        patterns = self.settings.api_patterns

        def on_route(route):
            request = route.request
            u = request.url
            rt = request.resource_type
            if is_api_request(u, patterns):
                try:
                    response = route.fetch()
                    body = response.text()
                    if looks_like_json(body):
                        exchanges.append(
                            ApiExchange(
                                url=u,
                                method=request.method,
                                request_headers=dict(request.headers),
                                request_body=request.post_data,
                                status=response.status,
                                status_text=response.status_text,
                                response_headers=dict(response.headers),
                                response_body=body,
                            )
                        )
                    route.fulfill(response=response, body=body)
                except PlaywrightError as e:
                    logging.warning("failed to intercept API call %s: %s", u, e)
                    route.continue_()
                return
            if rt in RESOURCE_KINDS and not u.startswith(("data:", "blob:")):
                resources.append(ObservedResource(u, rt))
            route.continue_()

        page = self._context.new_page()
        page.route("**/*", on_route)
        try:
            page.goto(url, wait_until=self.settings.wait_until, timeout=int(timeout * 1000))
            page.evaluate(HIDE_POPUPS_JS, self.settings.popup_selectors)
            page.wait_for_timeout(self.settings.settle_ms)
            self._wait_for_challenge(page, url)
            self._wait_for_content(page)
            self._scroll(page)
            html = page.content()
            shot = page.screenshot(full_page=True) if self.settings.screenshot else None
            return RenderResult(
                url=url,
                html=html,
                resources=resources,
                exchanges=exchanges,
                screenshot=shot,
            )
        except PlaywrightTimeoutError as e:
            raise RenderTimeout(f"Timeout after {timeout:.0f}s loading {url}: {e}") from e
        except PlaywrightError as e:
            raise RenderError(f"Failed to load {url}: {e}") from e
        finally:
            try:
                page.close()
            except Exception:
                pass

    def _challenge_pending(self, page) -> bool:
        title = page.title()
        if any(t in title for t in CHALLENGE_TITLES):
            return True
        if any(m in page.url for m in CHALLENGE_URL_MARKERS):
            return True
        return find_blocked_marker(page.content(), self.settings.heuristics.blocked_markers) is not None

    def _wait_for_challenge(self, page, url: str) -> None:
        if not self._challenge_pending(page):
            return
        logging.warning(
            "verification challenge on %s, waiting up to %.0fs (complete it in the browser window)",
            url,
            self.settings.challenge_timeout,
        )
        try:
            page.wait_for_function(
                CHALLENGE_CLEARED_JS,
                arg=self.settings.heuristics.blocked_markers,
                timeout=int(self.settings.challenge_timeout * 1000),
            )
        except PlaywrightTimeoutError as e:
            raise VerificationPending(f"verification not completed for {url}") from e
        page.wait_for_timeout(3000)
        logging.info("verification passed for %s", url)

    def _wait_for_content(self, page) -> None:
        # bounded on its own; a short page is kept as rendered
        try:
            page.wait_for_function(
                "(n) => document.body && (document.body.innerText || '').length > n",
                arg=self.settings.heuristics.min_body_chars,
                timeout=self.settings.content_wait_ms,
            )
        except PlaywrightTimeoutError:
            logging.debug("body text still short on %s", page.url)

    def _scroll(self, page) -> None:
        # trigger lazy loading
        for pos in ("document.body.scrollHeight / 2", "document.body.scrollHeight", "0"):
            page.evaluate(f"() => window.scrollTo(0, {pos})")
            page.wait_for_timeout(1000)

    def close(self) -> None:
        try:
            if self._browser:
                self._browser.close()
        except Exception:
            pass
        try:
            if self._pl:
                self._pl.stop()
        except Exception:
            pass


def get_renderer_factory(
    settings: Settings, session: requests.Session
) -> Callable[[], Renderer]:
    if settings.render_js:
        return lambda: PlaywrightRenderer(settings)
    return lambda: RequestsRenderer(session)
