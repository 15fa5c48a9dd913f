import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .paths import atomic_write_text


@dataclass
class PageOutcome:
    url: str
    ok: bool
    reason: Optional[str] = None


@dataclass
class MirrorReport:
    total: int = 0
    failed: List[Dict[str, str]] = field(default_factory=list)
    assets_downloaded: int = 0

    def to_json(self) -> dict:
        return {
            "total": self.total,
            "failed": self.failed,
            "assetsDownloaded": self.assets_downloaded,
        }

    @classmethod
    def from_json(cls, data: dict) -> "MirrorReport":
        failed = [
            {"url": f["url"], "reason": f.get("reason") or ""}
            for f in data.get("failed") or []
            if isinstance(f, dict) and f.get("url")
        ]
        return cls(
            total=int(data.get("total") or 0),
            failed=failed,
            assets_downloaded=int(data.get("assetsDownloaded") or 0),
        )

    def failed_urls(self) -> List[str]:
        return [f["url"] for f in self.failed]


def build_report(outcomes: Iterable[PageOutcome], assets_downloaded: int) -> MirrorReport:
    outcomes = list(outcomes)
    failed = [
        {"url": o.url, "reason": o.reason or "unknown error"}
        for o in outcomes
        if not o.ok
    ]
    return MirrorReport(
        total=len(outcomes), failed=failed, assets_downloaded=assets_downloaded
    )


def merge_reports(
    previous: Optional[MirrorReport],
    current: MirrorReport,
    succeeded: Iterable[str],
) -> MirrorReport:
    """Fold this run into the persisted report.

    URLs that succeeded now leave the failure list; new failures are appended
    once per URL, keeping any earlier entry for the same URL.
    """
    if previous is None:
        return current
    ok = set(succeeded)
    failed = [f for f in previous.failed if f["url"] not in ok]
    known = {f["url"] for f in failed}
    for f in current.failed:
        if f["url"] not in known:
            failed.append(f)
            known.add(f["url"])
    return MirrorReport(
        total=max(previous.total, current.total),
        failed=failed,
        assets_downloaded=current.assets_downloaded,
    )


def load_report(path: Path) -> Optional[MirrorReport]:
    if not path.exists():
        return None
    try:
        return MirrorReport.from_json(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, KeyError, TypeError) as e:
        logging.warning("ignoring unreadable report %s: %s", path, e)
        return None


def save_report(path: Path, report: MirrorReport) -> None:
    atomic_write_text(path, json.dumps(report.to_json(), indent=2))
