import argparse
import json
import logging
import shlex
import sys
from dataclasses import asdict, fields
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from .detect import scan
from .driver import MirrorDriver
from .links import repair_all
from .settings import (
    SITEMAP_CACHE_FILENAME,
    Heuristics,
    Settings,
    flatten_config,
    load_config_file,
)
from .sitemap import UrlListError, enumerate_urls
from .verify import verify_offline, write_localhost_links

SETTINGS_FIELDS = {f.name for f in fields(Settings)} - {"heuristics"}
HEURISTIC_FIELDS = {f.name for f in fields(Heuristics)}
CLI_OVERRIDES = ("base_url", "concurrency", "render_js", "headless", "sitemap_url")


# -------------------- Commands --------------------


def cmd_mirror(args: argparse.Namespace, settings: Settings) -> int:
    if urlparse(settings.base_url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        return 1
    print("Reminder: only mirror content you own or have permission to copy.")
    driver = MirrorDriver(settings)
    try:
        if args.urls:
            urls = [urljoin(settings.base_url, u) for u in args.urls]
            timeout = settings.retry_page_timeout
            logging.info("scraping %d specific URL(s)", len(urls))
        else:
            urls = enumerate_urls(
                driver.session,
                settings.base_url,
                settings.root,
                settings.sitemap_url or None,
                settings.root / SITEMAP_CACHE_FILENAME,
            )
            timeout = settings.page_timeout
        report = driver.run(urls, page_timeout=timeout)
    finally:
        driver.close()

    stats = repair_all(settings.root, settings.base_url)
    logging.info("repaired %d link(s) in %d page(s)", stats.links, stats.changed_pages)
    print(f"Pages: {report.total}, failed: {len(report.failed)}")
    print(f"Report: {settings.report_path}")
    if report.failed:
        cmd = ["offline-mirror", "mirror", settings.base_url, "--root", str(settings.root)]
        print(f"\n{len(report.failed)} page(s) failed. To retry them, run:")
        print("  " + shlex.join(cmd + report.failed_urls()))
    return 0


def cmd_repair_links(args: argparse.Namespace, settings: Settings) -> int:
    stats = repair_all(settings.root, settings.base_url)
    print(
        f"Checked {stats.pages} page(s); fixed {stats.links} link(s) "
        f"in {stats.changed_pages} page(s)"
    )
    return 0


def cmd_find_incomplete(args: argparse.Namespace, settings: Settings) -> int:
    pages = scan(settings.root, settings.base_url, settings.heuristics)
    if args.json:
        print(json.dumps([asdict(p) for p in pages], indent=2))
        return 0
    if not pages:
        print("All pages look complete.")
        return 0
    print(f"Found {len(pages)} incomplete page(s):")
    for p in pages:
        print(f"  {p.url}  ({p.local_path}, {p.reason})")
    return 0


def cmd_rescrape_incomplete(args: argparse.Namespace, settings: Settings) -> int:
    driver = MirrorDriver(settings)
    try:
        report = driver.run_targeted()
    finally:
        driver.close()
    print(f"Remaining failures: {len(report.failed)}")
    return 0


def cmd_links(args: argparse.Namespace, settings: Settings) -> int:
    out = write_localhost_links(settings.root, args.port)
    print(f"Wrote {out}")
    return 0


def cmd_verify(args: argparse.Namespace, settings: Settings) -> int:
    problems = verify_offline(
        settings.root, settings.base_url, settings.asset_host_allowlist
    )
    if not problems:
        print("No external dependencies found.")
        return 0
    total = sum(len(h) for h in problems.values())
    for lp, hosts in sorted(problems.items()):
        print(f"  {lp}: {', '.join(hosts)}")
    print(f"Found {total} external host reference(s); re-run the mirror to fetch them.")
    return 1


# -------------------- CLI --------------------


def _add_root(p: argparse.ArgumentParser) -> None:
    p.add_argument("--root", type=str, default=None, help="mirror directory (default: offline)")


def _add_base(p: argparse.ArgumentParser) -> None:
    p.add_argument("--base", dest="base_url", type=str, default=None, help="site base URL")


def _add_render(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--timeout",
        dest="timeout_override",
        type=float,
        default=None,
        help="per-page render timeout in seconds",
    )
    p.add_argument(
        "--render",
        dest="render_js",
        action="store_true",
        default=None,
        help="render pages in a browser (default)",
    )
    p.add_argument(
        "--no-render",
        dest="render_js",
        action="store_false",
        default=None,
        help="fetch pages over plain HTTP instead of a browser",
    )
    p.add_argument(
        "--headless",
        action="store_true",
        default=None,
        help="run the browser headless (verification challenges cannot be solved)",
    )


def build_arg_parser() -> Tuple[argparse.ArgumentParser, List[argparse.ArgumentParser]]:
    p = argparse.ArgumentParser(
        prog="offline-mirror",
        description="Mirror a website into a self-contained offline directory.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    m = sub.add_parser("mirror", help="render pages and localize their assets")
    m.add_argument("base_url", help="site base URL (http/https)")
    m.add_argument("urls", nargs="*", help="specific pages to (re)scrape")
    _add_root(m)
    m.add_argument("--concurrency", type=int, default=None, help="pages in flight")
    m.add_argument("--sitemap", dest="sitemap_url", type=str, default=None, help="sitemap URL")
    _add_render(m)
    m.set_defaults(func=cmd_mirror)

    r = sub.add_parser("repair-links", help="point internal links at mirrored pages")
    _add_root(r)
    _add_base(r)
    r.set_defaults(func=cmd_repair_links)

    f = sub.add_parser("find-incomplete", help="list blank or blocked pages")
    _add_root(f)
    _add_base(f)
    f.add_argument("--json", action="store_true", help="machine-readable output")
    f.set_defaults(func=cmd_find_incomplete)

    rs = sub.add_parser("rescrape-incomplete", help="re-render incomplete pages")
    _add_root(rs)
    _add_base(rs)
    _add_render(rs)
    rs.set_defaults(func=cmd_rescrape_incomplete)

    lk = sub.add_parser("links", help="write _localhost-links.txt")
    _add_root(lk)
    lk.add_argument("--port", type=int, default=8000, help="local server port")
    lk.set_defaults(func=cmd_links)

    v = sub.add_parser("verify", help="report external hosts still referenced")
    _add_root(v)
    _add_base(v)
    v.set_defaults(func=cmd_verify)

    return p, [m, r, f, rs, lk, v]


def parse_args(argv: Optional[List[str]] = None) -> Tuple[argparse.Namespace, Dict]:
    parser, subparsers = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    flat: Dict = {}
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = flatten_config(cfg)
            # subcommand defaults take precedence over the parent's
            for sp in subparsers:
                sp.set_defaults(**{k: v for k, v in flat.items() if k != "func"})
    args = parser.parse_args(argv)
    return args, flat


def build_settings(args: argparse.Namespace, cfg: Dict) -> Settings:
    s = Settings()
    h = Heuristics()
    for k, v in cfg.items():
        if k in HEURISTIC_FIELDS:
            setattr(h, k, v)
        elif k in SETTINGS_FIELDS:
            setattr(s, k, v)
        else:
            logging.debug("ignoring unknown config key: %s", k)
    s.heuristics = h
    for k in CLI_OVERRIDES:
        v = getattr(args, k, None)
        if v is not None:
            setattr(s, k, v)
    if getattr(args, "root", None):
        s.root = args.root
    s.root = Path(s.root)
    if getattr(args, "timeout_override", None):
        s.page_timeout = s.retry_page_timeout = args.timeout_override
    s.concurrency = max(1, int(s.concurrency))
    return s


def main(argv: Optional[List[str]] = None) -> int:
    args, cfg = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = build_settings(args, cfg)
    if args.command != "links" and not settings.base_url:
        print("A base URL is required: pass --base or set base_url in the config file.")
        return 2
    try:
        return args.func(args, settings)
    except UrlListError as e:
        logging.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
