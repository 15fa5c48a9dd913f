import json

from offline_mirror.report import (
    MirrorReport,
    PageOutcome,
    build_report,
    load_report,
    merge_reports,
    save_report,
)

A = "https://example.com/a/"
B = "https://example.com/b/"
C = "https://example.com/c/"


def test_build_report():
    report = build_report(
        [PageOutcome(A, True), PageOutcome(B, False, "Timeout after 60s")], 7
    )
    assert report.total == 2
    assert report.failed == [{"url": B, "reason": "Timeout after 60s"}]
    assert report.assets_downloaded == 7


def test_merge_prunes_successes_and_appends_once():
    previous = MirrorReport(
        total=10,
        failed=[{"url": A, "reason": "old"}, {"url": B, "reason": "old"}],
        assets_downloaded=3,
    )
    current = MirrorReport(
        total=2,
        failed=[{"url": B, "reason": "new"}, {"url": C, "reason": "new"}],
        assets_downloaded=5,
    )
    merged = merge_reports(previous, current, succeeded=[A])
    assert merged.failed == [{"url": B, "reason": "old"}, {"url": C, "reason": "new"}]
    assert merged.total == 10
    assert merged.assets_downloaded == 5


def test_merge_without_previous_returns_current():
    current = MirrorReport(total=1, failed=[], assets_downloaded=0)
    assert merge_reports(None, current, []) is current


def test_save_and_load(tmp_path):
    path = tmp_path / "_report.json"
    save_report(path, MirrorReport(total=1, failed=[{"url": A, "reason": "x"}], assets_downloaded=2))
    data = json.loads(path.read_text())
    assert data == {"total": 1, "failed": [{"url": A, "reason": "x"}], "assetsDownloaded": 2}
    assert load_report(path).failed_urls() == [A]


def test_load_missing_or_corrupt(tmp_path):
    assert load_report(tmp_path / "missing.json") is None
    bad = tmp_path / "_report.json"
    bad.write_text("{not json")
    assert load_report(bad) is None
