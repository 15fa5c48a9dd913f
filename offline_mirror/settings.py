from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Union

# -------------------- Defaults --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

ASSETS_DIRNAME = "_assets"
API_DATA_DIRNAME = "_api_data"
REPORT_FILENAME = "_report.json"
SITEMAP_CACHE_FILENAME = "_sitemap.xml"
LINKS_FILENAME = "_localhost-links.txt"
ROOT_PAGE_DIRNAME = "index"
DOCUMENT_FILENAME = "index.html"
SCREENSHOT_FILENAME = "screenshot.png"

ASSET_HOST_ALLOWLIST = [
    "cdn.prod.website-files.com",
    "fonts.googleapis.com",
    "fonts.gstatic.com",
    "cdn.jsdelivr.net",
    "unpkg.com",
    "ajax.googleapis.com",
    "downloads.mailchimp.com",
    "chimpstatic.com",
]

TRACKING_HOSTS = [
    "googletagmanager",
    "google-analytics",
    "clarity.ms",
    "snap.licdn",
    "chimpstatic",
    "mailchimp",
]

# inline scripts mentioning any of these are dropped (when short)
TRACKING_INLINE_MARKERS = [
    "gtag",
    "google-analytics",
    "clarity",
    "_linkedin_partner_id",
    "dataLayer.push",
]

POPUP_SELECTORS = [
    ".mc-modal",
    ".mc-modal-bg",
    ".mc-banner",
    "#PopupSignupForm_0",
    '[id^="PopupSignupForm"]',
    '[class*="mc-modal"]',
    '[class*="mc-banner"]',
    '[class*="popup-overlay"]',
]

API_PATTERNS = [
    "api.webflow.com",
    "webflow.com/api",
    "/v1/collections/",
    "/v1/items/",
]

BLOCKED_MARKERS = [
    "The content of the page cannot be displayed",
    "Just a moment",
    "Checking your browser",
]


@dataclass
class Heuristics:
    min_lines: int = 50
    min_body_chars: int = 200
    blocked_markers: List[str] = field(default_factory=lambda: list(BLOCKED_MARKERS))


# -------------------- Settings --------------------


@dataclass
class Settings:
    base_url: str = ""
    root: Path = Path("offline")

    # Pages
    concurrency: int = 1
    page_timeout: float = 60.0
    retry_page_timeout: float = 120.0
    sitemap_url: str = ""

    # Assets
    timeout: float = 30.0
    max_bytes: int = 50_000_000
    http_retries: int = 0
    reuse_cached_assets: bool = True
    asset_host_allowlist: List[str] = field(
        default_factory=lambda: list(ASSET_HOST_ALLOWLIST)
    )
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    # Rewriting
    tracking_hosts: List[str] = field(default_factory=lambda: list(TRACKING_HOSTS))
    tracking_inline_markers: List[str] = field(
        default_factory=lambda: list(TRACKING_INLINE_MARKERS)
    )
    tracking_inline_max_chars: int = 2000
    popup_selectors: List[str] = field(default_factory=lambda: list(POPUP_SELECTORS))
    api_patterns: List[str] = field(default_factory=lambda: list(API_PATTERNS))

    # Rendering
    render_js: bool = True
    headless: bool = False
    wait_until: str = "networkidle"
    settle_ms: int = 5000
    challenge_timeout: float = 60.0
    content_wait_ms: int = 10000
    screenshot: bool = True

    # Detection
    heuristics: Heuristics = field(default_factory=Heuristics)

    @property
    def assets_dir(self) -> Path:
        return self.root / ASSETS_DIRNAME

    @property
    def api_data_dir(self) -> Path:
        return self.root / API_DATA_DIRNAME

    @property
    def report_path(self) -> Path:
        return self.root / REPORT_FILENAME


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            import tomli as tomllib  # backport
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


CONFIG_GROUPS = ("mirror", "render", "detect", "http", "general")


def flatten_config(cfg: Dict) -> Dict:
    flat = {k: v for k, v in cfg.items() if k not in CONFIG_GROUPS}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    return flat
