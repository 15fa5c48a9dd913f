import hashlib
import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .paths import (
    UNSAFE_ASSET_CHARS_RE,
    ensure_parent_dir,
    is_allowed_host,
    relpath_posix,
    same_site,
    sanitize_filename,
)
from .settings import Settings

# -------------------- HTTP --------------------


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.http_retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=128, pool_maxsize=128)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(settings.headers)
    return s


# -------------------- Utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u:
        return False
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def guess_ext_from_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    ct = content_type.split(";")[0].strip().lower()
    if "css" in ct:
        return ".css"
    if "javascript" in ct or "ecmascript" in ct:
        return ".js"
    if ct.startswith("image/"):
        if "png" in ct:
            return ".png"
        if "jpg" in ct or "jpeg" in ct:
            return ".jpg"
        if "svg" in ct:
            return ".svg"
        if "gif" in ct:
            return ".gif"
        if "webp" in ct:
            return ".webp"
    if "font" in ct or "woff" in ct:
        if "woff2" in ct:
            return ".woff2"
        if "woff" in ct:
            return ".woff"
        if "ttf" in ct or "truetype" in ct:
            return ".ttf"
        if "otf" in ct or "opentype" in ct:
            return ".otf"
    return mimetypes.guess_extension(ct) or ""


def asset_stem(asset_url: str, site_url: str) -> Tuple[str, str]:
    """Flattened filename stem for an asset URL and the extension taken from its path."""
    u = urlparse(asset_url)
    path = u.path or "/"
    name = os.path.basename(path.rstrip("/"))
    base, ext = os.path.splitext(name)
    base = base or "index"
    directory = os.path.dirname(path.rstrip("/")).strip("/").replace("/", "_")
    stem = f"{directory}_{base}" if directory else base
    if u.query or not same_site(asset_url, site_url):
        stem = f"{stem}_{short_h(asset_url)}"
    return sanitize_filename(stem), UNSAFE_ASSET_CHARS_RE.sub("_", ext)


# -------------------- Asset store --------------------


@dataclass
class AssetRecord:
    url: str
    local_path: Optional[str] = None
    content_type: Optional[str] = None
    ok: bool = False
    error: Optional[str] = None
    from_cache: bool = False


class AssetStore:
    """Run-scoped download cache keyed by absolute URL.

    Paths handed out are relative to the mirror root (forward slashes). Every
    URL is fetched at most once per store, failures included; concurrent
    callers asking for the same URL wait on that URL's lock and observe the
    first caller's result.
    """

    def __init__(self, settings: Settings, session: requests.Session):
        self.settings = settings
        self.session = session
        self.root = Path(settings.root)
        self.assets_dir = settings.assets_dir
        self._records: Dict[str, AssetRecord] = {}
        self._key_locks: Dict[str, Lock] = {}
        self._scanned_css: Set[str] = set()
        self._lock = Lock()

    def _key_lock(self, key: str) -> Lock:
        with self._lock:
            lk = self._key_locks.get(key)
            if lk is None:
                lk = Lock()
                self._key_locks[key] = lk
            return lk

    def resolve(self, url: str, referer_url: str) -> Optional[str]:
        if not can_fetch_url(url):
            return None
        try:
            absu, _ = urldefrag(urljoin(referer_url, url.strip()))
            p = urlparse(absu)
        except ValueError:
            return None
        if p.scheme not in ("http", "https") or not p.netloc:
            return None
        return absu

    def eligible(self, absolute_url: str) -> bool:
        return same_site(absolute_url, self.settings.base_url) or is_allowed_host(
            absolute_url, self.settings.asset_host_allowlist
        )

    def get(self, absolute_url: str) -> Optional[str]:
        with self._lock:
            rec = self._records.get(absolute_url)
        return rec.local_path if rec is not None else None

    def records(self) -> List[AssetRecord]:
        with self._lock:
            return list(self._records.values())

    def downloaded_count(self) -> int:
        return sum(1 for r in self.records() if r.ok)

    def absolute_path(self, local_path: str) -> Path:
        return self.root / local_path

    def claim_stylesheet(self, local_path: str) -> bool:
        with self._lock:
            if local_path in self._scanned_css:
                return False
            self._scanned_css.add(local_path)
            return True

    def fetch_and_store(self, url: str, referer_url: str) -> Optional[str]:
        absu = self.resolve(url, referer_url)
        if absu is None:
            return None
        with self._lock:
            rec = self._records.get(absu)
        if rec is not None:
            return rec.local_path
        if not self.eligible(absu):
            logging.debug("skip ineligible asset: %s", absu)
            return None
        with self._key_lock(absu):
            with self._lock:
                rec = self._records.get(absu)
            if rec is not None:
                return rec.local_path
            rec = self._cached(absu) or self._download(absu)
            with self._lock:
                self._records[absu] = rec
            return rec.local_path

    def _cached(self, absolute_url: str) -> Optional[AssetRecord]:
        if not self.settings.reuse_cached_assets or not self.assets_dir.is_dir():
            return None
        stem, ext = asset_stem(absolute_url, self.settings.base_url)
        if ext:
            candidates = [self.assets_dir / f"{stem}{ext}"]
        else:
            candidates = sorted(self.assets_dir.glob(f"{stem}.*"))
            candidates = [c for c in candidates if not c.name.endswith(".tmp")]
        for c in candidates:
            if c.is_file() and c.stat().st_size > 0:
                logging.debug("cached asset: %s -> %s", absolute_url, c)
                return AssetRecord(
                    url=absolute_url,
                    local_path=relpath_posix(c, self.root),
                    ok=True,
                    from_cache=True,
                )
        return None

    def _download(self, absolute_url: str) -> AssetRecord:
        try:
            resp = self.session.get(
                absolute_url, timeout=self.settings.timeout, stream=True
            )
            if resp.status_code >= 400:
                logging.warning("failed %s -> HTTP %s", absolute_url, resp.status_code)
                return AssetRecord(url=absolute_url, error=f"HTTP {resp.status_code}")
            content_type = resp.headers.get("Content-Type")
            stem, ext = asset_stem(absolute_url, self.settings.base_url)
            ext = ext or guess_ext_from_type(content_type)
            local_path = self.assets_dir / f"{stem}{ext}"
            ensure_parent_dir(local_path)
            tmp_path = local_path.with_name(local_path.name + ".tmp")

            written = 0
            with open(tmp_path, "wb") as f:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    if not chunk:
                        continue
                    written += len(chunk)
                    if written > self.settings.max_bytes:
                        logging.warning(
                            "truncated %s at %d bytes", absolute_url, written
                        )
                        break
                    f.write(chunk)

            if written == 0:
                tmp_path.unlink(missing_ok=True)
                logging.warning("empty response %s", absolute_url)
                return AssetRecord(
                    url=absolute_url, content_type=content_type, error="empty body"
                )
            os.replace(tmp_path, local_path)
            logging.info("downloaded asset: %s -> %s", absolute_url, local_path)
            return AssetRecord(
                url=absolute_url,
                local_path=relpath_posix(local_path, self.root),
                content_type=content_type,
                ok=True,
            )
        except (requests.RequestException, OSError) as e:
            logging.warning("error downloading %s: %s", absolute_url, e)
            return AssetRecord(url=absolute_url, error=str(e))
