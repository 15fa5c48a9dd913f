import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from .paths import (
    atomic_write_text,
    is_allowed_host,
    iter_page_documents,
    relpath_posix,
    same_site,
)
from .settings import LINKS_FILENAME

EXTERNAL_URL_RE = re.compile(
    r"https?://(?!localhost\b|127\.0\.0\.1\b)[^/\s\"'<>();,]+", re.IGNORECASE
)

LINKS_TEMPLATE = """Localhost Links for Offline Website
==========================================
Port: {port}
Total Pages: {count}

To use these links:
1. Start a local server in the mirror directory:
   cd {root} && python3 -m http.server {port}

2. Open any of the links below in your browser:

{links}
"""


def localhost_links(root: Path, port: int = 8000) -> List[str]:
    root = Path(root)
    return sorted(
        f"http://localhost:{port}/{relpath_posix(doc, root)}"
        for doc in iter_page_documents(root)
    )


def write_localhost_links(root: Path, port: int = 8000) -> Path:
    root = Path(root)
    links = localhost_links(root, port)
    out = root / LINKS_FILENAME
    atomic_write_text(
        out,
        LINKS_TEMPLATE.format(
            port=port, count=len(links), root=root, links="\n".join(links)
        ),
    )
    logging.info("generated %d localhost link(s) in %s", len(links), out)
    return out


def external_hosts(content: str, base_url: str, allow_list: Iterable[str]) -> List[str]:
    hosts = set()
    for m in EXTERNAL_URL_RE.finditer(content):
        u = m.group(0)
        try:
            host = urlparse(u).hostname
        except ValueError:
            continue
        if not host or same_site(u, base_url) or is_allowed_host(u, allow_list):
            continue
        hosts.add(host)
    return sorted(hosts)


def verify_offline(
    root: Path,
    base_url: str,
    allow_list: Iterable[str],
    sample: Optional[Iterable[str]] = None,
) -> Dict[str, List[str]]:
    """External hosts still referenced by stored documents, keyed by LocalPath.

    ``sample`` limits the check to the given LocalPaths; documents without
    stray references are omitted.
    """
    root = Path(root)
    allow_list = list(allow_list)
    if sample is not None:
        docs = [root / s for s in sample if (root / s).is_file()]
    else:
        docs = list(iter_page_documents(root))
    problems: Dict[str, List[str]] = {}
    for doc in docs:
        try:
            content = doc.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            logging.warning("error reading %s: %s", doc, e)
            continue
        hosts = external_hosts(content, base_url, allow_list)
        if hosts:
            lp = relpath_posix(doc, root)
            problems[lp] = hosts
            logging.warning("%s: %d external host(s) referenced", lp, len(hosts))
    return problems
