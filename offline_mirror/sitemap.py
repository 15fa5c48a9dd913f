import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional, Set, Tuple
from urllib.parse import urljoin

import requests

from .paths import ensure_parent_dir, iter_page_documents, same_site, url_path_for_document

XML_MARKERS = ("<?xml", "<urlset", "<sitemapindex")
WRAPPED_XML_RE = re.compile(
    r"<(?:\?xml|urlset|sitemapindex)[\s\S]*?(?:</urlset>|</sitemapindex>)",
    re.IGNORECASE,
)
MIN_SITEMAP_CHARS = 100
SITEMAP_DEBUG_FILENAME = "_sitemap_debug.html"


class UrlListError(Exception):
    pass


def looks_like_sitemap(text: Optional[str]) -> bool:
    return bool(text) and any(m in text for m in XML_MARKERS)


def unwrap_xml(text: str) -> str:
    """Pull sitemap XML out of an HTML wrapper (browsers render XML inside a page)."""
    if "<html" not in text[:500].lower():
        return text
    m = WRAPPED_XML_RE.search(text)
    if m:
        logging.info("extracted sitemap XML from HTML wrapper")
        return m.group(0)
    return text


def parse_locs(xml_text: str) -> Tuple[bool, List[str]]:
    """Return (is_index, locs) for a urlset or sitemapindex document."""
    root = ET.fromstring(xml_text.strip())
    locs = [
        (loc.text or "").strip()
        for loc in root.findall(".//{*}loc")
        if (loc.text or "").strip()
    ]
    return root.tag.endswith("sitemapindex"), locs


def fetch_text(session: requests.Session, url: str, timeout: float = 15) -> str:
    r = session.get(url, timeout=timeout)
    if r.status_code >= 400:
        raise UrlListError(f"HTTP {r.status_code} fetching {url}")
    return r.text


def _expand(
    session: requests.Session, xml_text: str, source: str, seen: Set[str], depth: int = 0
) -> List[str]:
    try:
        is_index, locs = parse_locs(unwrap_xml(xml_text))
    except ET.ParseError as e:
        raise UrlListError(f"cannot parse sitemap {source}: {e}") from e
    if not is_index:
        return locs
    logging.info("sitemap index with %d sitemap(s)", len(locs))
    urls: List[str] = []
    for child in locs:
        if child in seen or depth > 3:
            continue
        seen.add(child)
        logging.info("fetching sitemap: %s", child)
        try:
            text = fetch_text(session, child)
            urls.extend(_expand(session, text, child, seen, depth + 1))
        except (requests.RequestException, UrlListError) as e:
            logging.warning("skipping child sitemap %s: %s", child, e)
    return urls


def urls_from_sitemap(
    session: requests.Session, sitemap_url: str, cache_path: Optional[Path] = None
) -> List[str]:
    """Page URLs listed by a sitemap (or sitemap index), de-duplicated in order.

    A cached copy at ``cache_path`` is used when present; a freshly fetched
    sitemap is saved there for later runs.
    """
    if cache_path is not None and cache_path.is_file() and cache_path.stat().st_size > 0:
        logging.info("using cached sitemap from %s", cache_path)
        text = cache_path.read_text(encoding="utf-8", errors="ignore")
    else:
        try:
            text = fetch_text(session, sitemap_url)
        except requests.RequestException as e:
            raise UrlListError(f"cannot fetch sitemap {sitemap_url}: {e}") from e
        if not looks_like_sitemap(text) or len(text) < MIN_SITEMAP_CHARS:
            if cache_path is not None:
                debug = cache_path.parent / SITEMAP_DEBUG_FILENAME
                ensure_parent_dir(debug)
                debug.write_text(text or "", encoding="utf-8")
                logging.error("sitemap response saved to %s for inspection", debug)
            raise UrlListError(
                f"sitemap response from {sitemap_url} is not XML "
                "(possibly a verification challenge page)"
            )
        if cache_path is not None:
            ensure_parent_dir(cache_path)
            cache_path.write_text(text, encoding="utf-8")
            logging.info("saved sitemap to %s", cache_path)

    urls = _expand(session, text, sitemap_url, {sitemap_url})
    unique = list(dict.fromkeys(urls))
    logging.info("found %d unique URL(s) in sitemap", len(unique))
    return unique


def discover_sitemaps(session: requests.Session, base_url: str) -> List[str]:
    sites: List[str] = []
    try:
        robots_url = urljoin(base_url, "/robots.txt")
        r = session.get(robots_url, timeout=10)
        if r.status_code == 200 and r.text:
            for line in r.text.splitlines():
                if line.strip().lower().startswith("sitemap:"):
                    sites.append(line.split(":", 1)[1].strip())
    except requests.RequestException as e:
        logging.debug("robots.txt unavailable for %s: %s", base_url, e)
    return sites


def urls_from_mirror(root: Path, base_url: str) -> List[str]:
    """Reconstruct page URLs from the documents already stored under root."""
    root = Path(root)
    return [
        urljoin(base_url, url_path_for_document(root, doc))
        for doc in iter_page_documents(root)
    ]


def enumerate_urls(
    session: requests.Session,
    base_url: str,
    root: Path,
    sitemap_url: Optional[str] = None,
    cache_path: Optional[Path] = None,
) -> List[str]:
    """Sitemap URLs restricted to the site, falling back to the existing mirror."""
    candidates = [sitemap_url] if sitemap_url else []
    if not candidates:
        candidates = discover_sitemaps(session, base_url) or [urljoin(base_url, "/sitemap.xml")]

    urls: List[str] = []
    for i, sm in enumerate(candidates):
        try:
            urls = urls_from_sitemap(session, sm, cache_path if i == 0 else None)
        except UrlListError as e:
            logging.warning("sitemap unavailable: %s", e)
            continue
        if urls:
            break
    urls = [u for u in urls if same_site(u, base_url)]
    if urls:
        return urls

    logging.warning("no sitemap URLs, falling back to existing mirror pages")
    urls = urls_from_mirror(root, base_url)
    if not urls:
        raise UrlListError(
            "could not fetch a sitemap and no existing pages found under "
            f"{root}; check that sitemap.xml exists and is public"
        )
    logging.info("found %d page(s) in existing mirror", len(urls))
    return urls
