import re
from typing import List, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)
BODY_RE = re.compile(r"<body[^>]*>([\s\S]*?)</body>", re.IGNORECASE)
SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>[\s\S]*?</\1\s*>", re.IGNORECASE)


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def parse_srcset(v: str) -> List[Tuple[str, str]]:
    """Split a srcset value into (url, descriptor) candidates."""
    out: List[Tuple[str, str]] = []
    if not v:
        return out
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        if parts and parts[0]:
            out.append((parts[0], " ".join(parts[1:])))
    return out


def has_head_close(html: str) -> bool:
    return HEAD_CLOSE_RE.search(html) is not None


def has_body_close(html: str) -> bool:
    return BODY_CLOSE_RE.search(html) is not None
