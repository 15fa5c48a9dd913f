import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import urljoin

from .markup import BODY_RE, SCRIPT_STYLE_RE
from .paths import iter_page_documents, relpath_posix, url_path_for_document
from .settings import Heuristics


@dataclass
class IncompletePage:
    url: str
    local_path: str
    line_count: int
    reason: str


def incomplete_reason(content: str, heuristics: Heuristics) -> Optional[str]:
    """Why a stored document looks blank or blocked, or None if it looks fine."""
    for marker in heuristics.blocked_markers:
        if marker in content:
            return f"blocked marker: {marker}"
    line_count = len(content.split("\n"))
    if line_count < heuristics.min_lines:
        return f"{line_count} lines"
    m = BODY_RE.search(content)
    # injected scripts and styles are not content
    body = SCRIPT_STYLE_RE.sub("", m.group(1)).strip() if m else ""
    if len(body) <= heuristics.min_body_chars:
        return f"body {len(body)} chars"
    return None


def is_incomplete(content: str, heuristics: Optional[Heuristics] = None) -> bool:
    return incomplete_reason(content, heuristics or Heuristics()) is not None


def scan(
    root: Path, base_url: str, heuristics: Optional[Heuristics] = None
) -> List[IncompletePage]:
    root = Path(root)
    heuristics = heuristics or Heuristics()
    found: List[IncompletePage] = []
    for doc in iter_page_documents(root):
        try:
            content = doc.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            logging.warning("error reading %s: %s", doc, e)
            continue
        reason = incomplete_reason(content, heuristics)
        if reason is None:
            continue
        url_path = url_path_for_document(root, doc)
        page = IncompletePage(
            url=urljoin(base_url, url_path),
            local_path=relpath_posix(doc, root),
            line_count=len(content.split("\n")),
            reason=reason,
        )
        logging.info("incomplete page: %s (%s)", url_path, reason)
        found.append(page)
    return found
