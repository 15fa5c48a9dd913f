import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Set
from urllib.parse import urljoin, urlparse

from .assets import AssetStore, can_fetch_url
from .paths import atomic_write_bytes, relpath_posix

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\()?\s*([\"']?)([^\)\"';]+)\1\s*\)?[^;]*;",
    re.IGNORECASE,
)
# @import "x.css"; -- the url(...) form is covered by CSS_URL_RE
CSS_IMPORT_STRING_RE = re.compile(r"(@import\s+)([\"'])([^\"']+)\2", re.IGNORECASE)


def extract_references(css_text: str) -> Set[str]:
    urls: Set[str] = set()
    for m in CSS_IMPORT_RE.finditer(css_text):
        u = m.group(2).strip()
        if can_fetch_url(u):
            urls.add(u)
    for m in CSS_URL_RE.finditer(css_text):
        u = m.group(2).strip()
        if can_fetch_url(u):
            urls.add(u)
    return urls


def rewrite_css(
    css_text: str,
    resolved: Dict[str, str],
    css_local_path: str,
    root: Path,
    base_url: Optional[str] = None,
) -> str:
    css_dir = (root / css_local_path).parent

    def map_url(u: str) -> Optional[str]:
        if not can_fetch_url(u):
            return None
        lp = resolved.get(u)
        if lp is None and base_url:
            lp = resolved.get(urljoin(base_url, u))
        if lp is None:
            return None
        return relpath_posix(root / lp, css_dir)

    def repl_url(m: re.Match) -> str:
        nu = map_url(m.group(2).strip())
        if nu is None:
            return m.group(0)
        return f'url("{nu}")'

    def repl_import(m: re.Match) -> str:
        nu = map_url(m.group(3).strip())
        if nu is None:
            return m.group(0)
        q = m.group(2)
        return f"{m.group(1)}{q}{nu}{q}"

    t = CSS_URL_RE.sub(repl_url, css_text)
    t = CSS_IMPORT_STRING_RE.sub(repl_import, t)
    return t


def is_local_reference(ref: str, base_dir: Path) -> bool:
    """True when a relative reference already points at a file inside the mirror."""
    p = urlparse(ref)
    if p.scheme or p.netloc or not p.path or p.path.startswith("/"):
        return False
    try:
        return Path(os.path.normpath(base_dir / p.path)).is_file()
    except OSError:
        return False


def localize_stylesheet(
    store: AssetStore, css_url: str, css_local_path: str, depth: int = 0
) -> bool:
    """Download a stored stylesheet's references and rewrite it in place.

    Returns True when the file on disk changed. Each stylesheet is processed
    once per store; nested @imports are followed a few levels deep.
    """
    if depth > 4 or not store.claim_stylesheet(css_local_path):
        return False
    css_path = store.absolute_path(css_local_path)
    try:
        # undecodable bytes round-trip unchanged
        text = css_path.read_bytes().decode("utf-8", errors="surrogateescape")
    except OSError as e:
        logging.warning("cannot read stylesheet %s: %s", css_path, e)
        return False

    resolved: Dict[str, str] = {}
    for ref in extract_references(text):
        if is_local_reference(ref, css_path.parent):
            continue
        lp = store.fetch_and_store(ref, css_url)
        if lp is None:
            continue
        resolved[ref] = lp
        if lp.endswith(".css") and lp != css_local_path:
            localize_stylesheet(store, urljoin(css_url, ref), lp, depth + 1)

    if not resolved:
        return False
    new_text = rewrite_css(text, resolved, css_local_path, store.root, css_url)
    if new_text == text:
        return False
    atomic_write_bytes(css_path, new_text.encode("utf-8", errors="surrogateescape"))
    logging.debug("rewrote stylesheet %s (%d refs)", css_local_path, len(resolved))
    return True
