import os
import re
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlparse, urlunparse

from .settings import DOCUMENT_FILENAME, ROOT_PAGE_DIRNAME

WWW_PREFIX_RE = re.compile(r"^www\.", re.IGNORECASE)

# -------------------- Origins --------------------


def normalize_origin(url: str) -> str:
    p = urlparse(url)
    host = WWW_PREFIX_RE.sub("", (p.hostname or "").lower())
    if p.port:
        host = f"{host}:{p.port}"
    return f"{p.scheme.lower()}://{host}"


def same_site(a: str, b: str) -> bool:
    try:
        return normalize_origin(a) == normalize_origin(b)
    except ValueError:
        return False


def is_allowed_host(url: str, allow_list: Iterable[str]) -> bool:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not host:
        return False
    return any(h in host for h in allow_list)


def canonical_url(url: str, base_url: Optional[str] = None) -> str:
    """Page identity key: site origin (www-normalized) plus path, no query/fragment."""
    p = urlparse(url)
    path = p.path or "/"
    if base_url and same_site(url, base_url):
        b = urlparse(base_url)
        return urlunparse((b.scheme, b.netloc, path, "", "", ""))
    return urlunparse((p.scheme, p.netloc, path, "", "", ""))


# -------------------- Pages --------------------


def to_local_path(url_path: str) -> str:
    p = url_path.split("?")[0].split("#")[0]
    if p.endswith("/"):
        p = p[:-1]
    p = p.lstrip("/")
    if not p:
        return ROOT_PAGE_DIRNAME
    return p


def page_dir(root: Path, url_path: str) -> Path:
    return root.joinpath(*to_local_path(url_path).split("/"))


def page_document_path(root: Path, url_path: str) -> Path:
    return page_dir(root, url_path) / DOCUMENT_FILENAME


def url_path_for_document(root: Path, document: Path) -> str:
    rel = Path(os.path.relpath(document, root)).as_posix()
    dir_path = os.path.dirname(rel)
    if dir_path in ("", ".", ROOT_PAGE_DIRNAME):
        return "/"
    return "/" + dir_path + "/"


def iter_page_documents(root: Path):
    """Yield every stored page document, skipping the `_`-prefixed support dirs."""
    if not root.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("_"))
        if DOCUMENT_FILENAME in filenames:
            yield Path(dirpath) / DOCUMENT_FILENAME


def relpath_posix(target: Path, start: Path) -> str:
    return Path(os.path.relpath(target, start)).as_posix()


# -------------------- Files --------------------

UNSAFE_ASSET_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(name: str) -> str:
    name = UNSAFE_ASSET_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, text: str) -> None:
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    ensure_parent_dir(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)
