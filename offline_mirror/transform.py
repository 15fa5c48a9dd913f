import logging
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Comment

from .assets import AssetStore, can_fetch_url
from .css import extract_references, is_local_reference, localize_stylesheet, rewrite_css
from .links import LinkResolver, rewrite_links
from .markup import (
    bs4_parse,
    effective_base_url,
    has_body_close,
    has_head_close,
    parse_srcset,
    serialize_html,
)
from .paths import is_allowed_host, relpath_posix
from .settings import DOCUMENT_FILENAME, Settings
from .shim import SHIM_ELEMENT_ID, build_shim

POPUP_STYLE_ID = "offline-popup-suppression"

ASSET_ATTRS = {
    "link": ["href"],
    "script": ["src"],
    "img": ["src"],
    "source": ["src"],
    "video": ["poster"],
}
LINK_ASSET_RELS = {
    "stylesheet",
    "icon",
    "shortcut",
    "apple-touch-icon",
    "manifest",
    "preload",
    "modulepreload",
}
SRCSET_TAGS = ["img", "source"]
DROP_ON_REWRITE = ("integrity", "crossorigin", "referrerpolicy")

TRACKING_KEYWORDS_RE = re.compile(
    r"googletagmanager|clarity|analytics|tracking|mailchimp|chimpstatic|linkedin|insight\.min\.js",
    re.IGNORECASE,
)
DYNAMIC_SRC_RE = re.compile(r"\.src\s*=\s*[\"']https?://")
WEBFONT_LOAD_RE = re.compile(r"(?<!false && )WebFont\.load\s*\(")
FONT_HOSTS = ("fonts.googleapis.com", "fonts.gstatic.com")
DYNAMIC_SCRIPT_MAX_CHARS = 3000


class PageTransformer:
    def __init__(
        self,
        settings: Settings,
        store: AssetStore,
        resolver: LinkResolver,
    ):
        self.settings = settings
        self.store = store
        self.resolver = resolver
        self.root = Path(settings.root)

    def transform(
        self,
        html: str,
        page_url: str,
        page_dir: Path,
        observed: Iterable[str] = (),
    ) -> str:
        return self.transform_with_assets(html, page_url, page_dir, observed)[0]

    def transform_with_assets(
        self,
        html: str,
        page_url: str,
        page_dir: Path,
        observed: Iterable[str] = (),
    ) -> Tuple[str, Dict[str, str]]:
        """Rewritten document plus the references localized for it (raw URL -> LocalPath)."""
        has_head = has_head_close(html)
        has_body = has_body_close(html)
        soup = bs4_parse(html)
        base = effective_base_url(soup, page_url)

        refs = self.collect_references(soup, page_dir)
        inline_refs = self.collect_inline_css_references(soup, page_dir)
        resolved = self.download(refs | inline_refs, base, observed)

        self.rewrite_assets(soup, base, resolved, page_dir)
        self.rewrite_inline_css(soup, base, resolved, page_dir)
        n = rewrite_links(soup, self.resolver, page_url, page_dir)
        if n:
            logging.debug("rewrote %d internal link(s) on %s", n, page_url)
        self.inject_shim(soup, page_url, page_dir, has_head, has_body)
        self.neutralize_tracking(soup)
        if has_head:
            self.inject_popup_style(soup)
        return serialize_html(soup), resolved

    # -------------------- Collection --------------------

    def _asset_tags(self, soup: BeautifulSoup):
        for tag_name, attrs in ASSET_ATTRS.items():
            for tag in soup.find_all(tag_name):
                if tag_name == "link":
                    rels = {r.lower() for r in (tag.get("rel") or [])}
                    if not rels & LINK_ASSET_RELS:
                        continue
                for a in attrs:
                    yield tag, a

    def collect_references(self, soup: BeautifulSoup, page_dir: Path) -> Set[str]:
        refs: Set[str] = set()
        for tag, a in self._asset_tags(soup):
            val = tag.get(a)
            if can_fetch_url(val) and not is_local_reference(val, page_dir):
                refs.add(val.strip())
        for tag in soup.find_all(SRCSET_TAGS):
            for u, _ in parse_srcset(tag.get("srcset", "")):
                if can_fetch_url(u) and not is_local_reference(u, page_dir):
                    refs.add(u)
        return refs

    def collect_inline_css_references(
        self, soup: BeautifulSoup, page_dir: Path
    ) -> Set[str]:
        refs: Set[str] = set()
        texts = [tag.get("style") or "" for tag in soup.select("[style]")]
        texts += [style.string or "" for style in soup.find_all("style")]
        for text in texts:
            for u in extract_references(text):
                if not is_local_reference(u, page_dir):
                    refs.add(u)
        return refs

    # -------------------- Download --------------------

    def _fetch(self, url: str, base: str) -> Optional[str]:
        lp = self.store.fetch_and_store(url, base)
        if lp and lp.endswith(".css"):
            absu = self.store.resolve(url, base)
            if absu:
                localize_stylesheet(self.store, absu, lp)
        return lp

    def download(
        self, refs: Set[str], base: str, observed: Iterable[str] = ()
    ) -> Dict[str, str]:
        urls = set(refs) | {u for u in observed if can_fetch_url(u)}
        resolved: Dict[str, str] = {}
        if not urls:
            return resolved
        # one worker per reference; the store serializes duplicates per URL
        with ThreadPoolExecutor(max_workers=len(urls)) as pool:
            future_map = {pool.submit(self._fetch, u, base): u for u in urls}
            for fut, u in future_map.items():
                try:
                    lp = fut.result()
                except Exception as e:
                    logging.warning("asset %s failed: %s", u, e)
                    continue
                if lp is not None:
                    resolved[u] = lp
        return resolved

    def lookup(self, value: str, base: str, resolved: Dict[str, str]) -> Optional[str]:
        v = value.strip()
        lp = resolved.get(v)
        if lp is None:
            absu = self.store.resolve(v, base)
            if absu is not None:
                lp = resolved.get(absu) or self.store.get(absu)
        return lp

    # -------------------- Rewriting --------------------

    def rewrite_assets(
        self, soup: BeautifulSoup, base: str, resolved: Dict[str, str], page_dir: Path
    ) -> None:
        def to_rel(lp: str) -> str:
            return relpath_posix(self.root / lp, page_dir)

        for tag, a in self._asset_tags(soup):
            val = tag.get(a)
            if not can_fetch_url(val):
                continue
            lp = self.lookup(val, base, resolved)
            if lp is None:
                continue
            tag[a] = to_rel(lp)
            for rm in DROP_ON_REWRITE:
                if rm in tag.attrs:
                    del tag.attrs[rm]
        for tag in soup.find_all(SRCSET_TAGS):
            srcset_val = tag.get("srcset")
            if not srcset_val:
                continue
            parts = []
            changed = False
            for u, desc in parse_srcset(srcset_val):
                lp = self.lookup(u, base, resolved) if can_fetch_url(u) else None
                if lp is not None:
                    u = to_rel(lp)
                    changed = True
                parts.append(f"{u} {desc}".strip())
            if changed:
                tag["srcset"] = ", ".join(parts)

    def rewrite_inline_css(
        self, soup: BeautifulSoup, base: str, resolved: Dict[str, str], page_dir: Path
    ) -> None:
        doc_local = relpath_posix(page_dir / DOCUMENT_FILENAME, self.root)
        mapping = dict(resolved)
        for tag in soup.select("[style]"):
            css = tag.get("style")
            if not css:
                continue
            new_css = rewrite_css(css, mapping, doc_local, self.root, base)
            if new_css != css:
                tag["style"] = new_css
        for style in soup.find_all("style"):
            if style.string:
                new_text = rewrite_css(style.string, mapping, doc_local, self.root, base)
                if new_text != style.string:
                    style.string.replace_with(new_text)

    # -------------------- Injection --------------------

    def inject_shim(
        self,
        soup: BeautifulSoup,
        page_url: str,
        page_dir: Path,
        has_head: bool,
        has_body: bool,
    ) -> bool:
        if soup.find(id=SHIM_ELEMENT_ID) is not None:
            return False
        target = None
        if has_head and soup.head is not None:
            target = soup.head
        elif has_body and soup.body is not None:
            target = soup.body
        if target is None:
            logging.debug("no </head> or </body> on %s, shim skipped", page_url)
            return False
        script = soup.new_tag("script", attrs={"id": SHIM_ELEMENT_ID})
        script.string = build_shim(
            page_url, page_dir, self.settings.api_data_dir, self.settings.api_patterns
        )
        target.append(script)
        return True

    def inject_popup_style(self, soup: BeautifulSoup) -> None:
        if not self.settings.popup_selectors or soup.head is None:
            return
        if soup.find(id=POPUP_STYLE_ID) is not None:
            return
        style = soup.new_tag("style", attrs={"id": POPUP_STYLE_ID})
        style.string = (
            ", ".join(self.settings.popup_selectors)
            + " { display: none !important; visibility: hidden !important;"
            " opacity: 0 !important; pointer-events: none !important; }"
        )
        soup.head.append(style)

    # -------------------- Tracking --------------------

    def _is_tracking_src(self, src: str) -> bool:
        if not src.startswith(("http://", "https://", "//")):
            return False
        host = urlparse(src if not src.startswith("//") else "https:" + src).netloc
        if any(h in src for h in self.settings.tracking_hosts):
            return True
        if is_allowed_host("https://" + host, self.settings.asset_host_allowlist):
            return False
        return TRACKING_KEYWORDS_RE.search(src) is not None

    def _is_tracking_inline(self, text: str) -> bool:
        if len(text) <= self.settings.tracking_inline_max_chars and any(
            m in text for m in self.settings.tracking_inline_markers
        ):
            return True
        return (
            len(text) <= DYNAMIC_SCRIPT_MAX_CHARS
            and DYNAMIC_SRC_RE.search(text) is not None
            and TRACKING_KEYWORDS_RE.search(text) is not None
        )

    def neutralize_tracking(self, soup: BeautifulSoup) -> int:
        removed = 0
        for script in list(soup.find_all("script")):
            if script.get("id") == SHIM_ELEMENT_ID:
                continue
            src = (script.get("src") or "").strip()
            if src:
                if self._is_tracking_src(src):
                    script.replace_with(Comment(" Tracking script removed for offline "))
                    removed += 1
                continue
            if script.get("id") == "mcjs":
                script.replace_with(Comment(" Mailchimp script removed "))
                removed += 1
                continue
            text = script.string or ""
            if not text:
                continue
            if self._is_tracking_inline(text):
                script.replace_with(Comment(" Tracking script removed for offline "))
                removed += 1
            elif "google" in text and WEBFONT_LOAD_RE.search(text):
                script.string = WEBFONT_LOAD_RE.sub("false && WebFont.load(", text)
        for link in list(soup.find_all("link", href=True)):
            rels = {r.lower() for r in (link.get("rel") or [])}
            href = link["href"]
            if "preconnect" in rels and any(h in href for h in FONT_HOSTS):
                link.replace_with(Comment(" Font preconnect removed "))
                removed += 1
            elif href.startswith("//") and "mailchimp" in href:
                link.replace_with(Comment(" External Mailchimp stylesheet removed "))
                removed += 1
        for img in list(soup.find_all("img", src=True)):
            src = img["src"]
            if src.startswith(("http://", "https://")) and "linkedin" in src:
                img.replace_with(Comment(" LinkedIn tracking pixel removed "))
                removed += 1
        return removed
