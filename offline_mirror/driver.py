import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import requests

from .assets import AssetStore, build_session
from .detect import scan
from .links import LinkResolver, repair_all
from .paths import (
    atomic_write_bytes,
    atomic_write_text,
    canonical_url,
    page_document_path,
    relpath_posix,
    same_site,
)
from .render import (
    Renderer,
    RenderError,
    VerificationPending,
    find_blocked_marker,
    get_renderer_factory,
)
from .report import (
    MirrorReport,
    PageOutcome,
    build_report,
    load_report,
    merge_reports,
    save_report,
)
from .settings import SCREENSHOT_FILENAME, Settings
from .shim import ExchangeStore
from .transform import PageTransformer


@dataclass
class PageRecord(PageOutcome):
    local_dir: Optional[str] = None
    assets: List[str] = field(default_factory=list)
    elapsed: float = 0.0


class MirrorDriver:
    """Renders pages, localizes their assets and records the outcome in the report.

    The asset store and exchange store are shared by every worker for the
    lifetime of the driver, so an asset used on many pages is fetched once.
    """

    def __init__(
        self,
        settings: Settings,
        renderer_factory: Optional[Callable[[], Renderer]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.root = Path(settings.root)
        self.session = session or build_session(settings)
        self.renderer_factory = renderer_factory or get_renderer_factory(
            settings, self.session
        )
        self.store = AssetStore(settings, self.session)
        self.exchanges = ExchangeStore(settings.api_data_dir)
        self.resolver = LinkResolver(self.root, settings.base_url)
        self.transformer = PageTransformer(settings, self.store, self.resolver)

    # -------------------- Pages --------------------

    def scrape_page(self, renderer: Renderer, url: str, timeout: float) -> PageRecord:
        url_path = urlparse(url).path or "/"
        doc = page_document_path(self.root, url_path)
        pdir = doc.parent
        record = PageRecord(url=url, ok=False, local_dir=relpath_posix(pdir, self.root))
        logging.info("scraping %s", url_path)
        started = time.monotonic()
        try:
            # the renderer enforces the timeout on navigation
            result = renderer.render(url, timeout)
            marker = find_blocked_marker(
                result.html, self.settings.heuristics.blocked_markers
            )
            if marker:
                raise VerificationPending(f"verification pending ({marker})")
        except RenderError as e:
            logging.error("failed %s: %s", url_path, e)
            record.reason = str(e)
            record.elapsed = time.monotonic() - started
            return record

        for exchange in result.exchanges:
            self.exchanges.persist(exchange)

        html, resolved = self.transformer.transform_with_assets(
            result.html, url, pdir, observed=result.asset_urls()
        )
        atomic_write_text(doc, html)
        if result.screenshot:
            atomic_write_bytes(pdir / SCREENSHOT_FILENAME, result.screenshot)
        record.ok = True
        record.assets = sorted(resolved)
        record.elapsed = time.monotonic() - started
        logging.info(
            "saved %s (%d asset(s), %.1fs)",
            relpath_posix(doc, self.root),
            len(record.assets),
            record.elapsed,
        )
        return record

    def _worker(
        self,
        pending: "queue.Queue[str]",
        timeout: float,
        outcomes: Dict[str, PageRecord],
        lock: threading.Lock,
    ) -> None:
        # the renderer is created, used and closed on this thread only
        renderer: Optional[Renderer] = None
        try:
            while True:
                try:
                    url = pending.get_nowait()
                except queue.Empty:
                    return
                try:
                    if renderer is None:
                        renderer = self.renderer_factory()
                    outcome = self.scrape_page(renderer, url, timeout)
                except Exception as e:
                    logging.exception("error processing %s", url)
                    outcome = PageRecord(url=url, ok=False, reason=str(e) or type(e).__name__)
                with lock:
                    outcomes[url] = outcome
        finally:
            if renderer is not None:
                try:
                    renderer.close()
                except Exception:
                    pass

    # -------------------- Runs --------------------

    def run(
        self,
        urls: Iterable[str],
        concurrency: Optional[int] = None,
        page_timeout: Optional[float] = None,
    ) -> MirrorReport:
        base = self.settings.base_url
        # one entry per page: www/non-www, query and fragment variants collapse
        urls = list(
            dict.fromkeys(canonical_url(u, base) if same_site(u, base) else u for u in urls)
        )
        concurrency = max(1, concurrency or self.settings.concurrency)
        timeout = page_timeout or self.settings.page_timeout
        self.root.mkdir(parents=True, exist_ok=True)

        outcomes: Dict[str, PageRecord] = {}
        pending: "queue.Queue[str]" = queue.Queue()
        for u in urls:
            if same_site(u, base):
                pending.put(u)
            else:
                logging.warning("skip different origin: %s", u)
                outcomes[u] = PageRecord(url=u, ok=False, reason="Different origin")

        logging.info(
            "mirroring %d page(s) with %d worker(s), timeout %.0fs",
            pending.qsize(),
            concurrency,
            timeout,
        )
        lock = threading.Lock()
        workers: List[threading.Thread] = [
            threading.Thread(
                target=self._worker,
                args=(pending, timeout, outcomes, lock),
                name=f"page-worker-{i}",
                daemon=True,
            )
            for i in range(min(concurrency, pending.qsize()))
        ]
        for t in workers:
            t.start()
        for t in workers:
            t.join()

        ordered = [outcomes[u] for u in urls]
        current = build_report(ordered, self.store.downloaded_count())
        report = merge_reports(
            load_report(self.settings.report_path),
            current,
            [o.url for o in ordered if o.ok],
        )
        save_report(self.settings.report_path, report)

        ok = sum(1 for o in ordered if o.ok)
        logging.info("done: %d/%d page(s) saved", ok, len(ordered))
        logging.info(
            "downloaded %d asset(s) to %s", current.assets_downloaded, self.store.assets_dir
        )
        logging.info("saved %d API exchange(s)", self.exchanges.count())
        if current.failed:
            logging.warning("%d page(s) failed", len(current.failed))
        return report

    def run_targeted(self, page_timeout: Optional[float] = None) -> MirrorReport:
        """Re-render the pages the detector flags, then repair links across the mirror."""
        flagged = scan(self.root, self.settings.base_url, self.settings.heuristics)
        if not flagged:
            logging.info("no incomplete pages found")
            return load_report(self.settings.report_path) or MirrorReport()
        logging.info("re-scraping %d incomplete page(s)", len(flagged))
        report = self.run(
            [p.url for p in flagged],
            page_timeout=page_timeout or self.settings.retry_page_timeout,
        )
        stats = repair_all(self.root, self.settings.base_url)
        logging.info("repaired %d link(s) in %d page(s)", stats.links, stats.changed_pages)
        return report

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:
            pass
