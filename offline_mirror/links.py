import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from .markup import bs4_parse, serialize_html
from .paths import (
    atomic_write_text,
    iter_page_documents,
    relpath_posix,
    same_site,
    to_local_path,
    url_path_for_document,
)
from .settings import DOCUMENT_FILENAME

SKIP_HREF_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:")

# -------------------- Resolver --------------------


class LinkResolver:
    """Maps hrefs to page documents that already exist under the mirror root."""

    def __init__(self, root: Path, base_url: str):
        self.root = Path(root)
        self.base_url = base_url

    def target_path(self, href: str, page_url: str) -> Optional[str]:
        h = (href or "").strip()
        if not h or h.lower().startswith(SKIP_HREF_PREFIXES):
            return None
        try:
            if h.lower().startswith(("http://", "https://")):
                if not same_site(h, self.base_url):
                    return None
                return urlparse(h).path or "/"
            if h.startswith("//"):
                return None
            if h.startswith("/"):
                return urlparse(h).path or "/"
            absu = urljoin(page_url, h)
            if not same_site(absu, self.base_url):
                return None
            return urlparse(absu).path or "/"
        except ValueError:
            return None

    def resolve(self, href: str, page_url: str) -> Optional[str]:
        path = self.target_path(href, page_url)
        if path is None:
            return None
        local = f"{to_local_path(path)}/{DOCUMENT_FILENAME}"
        if (self.root / local).is_file():
            return local
        return None

    def relative_href(self, href: str, page_url: str, page_dir: Path) -> Optional[str]:
        local = self.resolve(href, page_url)
        if local is None:
            return None
        rel = relpath_posix(self.root / local, page_dir)
        _, frag = urldefrag(href.strip())
        if frag:
            rel = f"{rel}#{frag}"
        return rel


def rewrite_links(
    soup: BeautifulSoup, resolver: LinkResolver, page_url: str, page_dir: Path
) -> int:
    changed = 0
    for a in soup.select("a[href], area[href]"):
        href = a.get("href")
        new = resolver.relative_href(href, page_url, page_dir)
        if new is not None and new != href:
            a["href"] = new
            changed += 1
    return changed


# -------------------- Repair pass --------------------


@dataclass
class RepairStats:
    pages: int = 0
    changed_pages: int = 0
    links: int = 0


def repair_all(root: Path, base_url: str) -> RepairStats:
    root = Path(root)
    resolver = LinkResolver(root, base_url)
    stats = RepairStats()
    for doc in iter_page_documents(root):
        stats.pages += 1
        try:
            html = doc.read_text(encoding="utf-8")
        except OSError as e:
            logging.warning("cannot read %s: %s", doc, e)
            continue
        page_url = urljoin(base_url, url_path_for_document(root, doc))
        soup = bs4_parse(html)
        n = rewrite_links(soup, resolver, page_url, doc.parent)
        if not n:
            continue
        atomic_write_text(doc, serialize_html(soup))
        stats.changed_pages += 1
        stats.links += n
        logging.info("fixed %d link(s) in %s", n, relpath_posix(doc, root))
    return stats
