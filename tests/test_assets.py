import threading

from fakes import FakeSession
from offline_mirror.assets import AssetStore, asset_stem, can_fetch_url, guess_ext_from_type

BASE = "https://example.com"
CSS_URL = "https://example.com/css/main.css"


def test_asset_stem_flattens_directories():
    assert asset_stem(CSS_URL, BASE) == ("css_main", ".css")
    assert asset_stem("https://example.com/logo.png", BASE) == ("logo", ".png")


def test_asset_stem_hashes_query_and_foreign_hosts():
    stem, ext = asset_stem("https://example.com/css/main.css?v=2", BASE)
    assert stem.startswith("css_main_") and ext == ".css"
    assert stem != asset_stem("https://example.com/css/main.css?v=3", BASE)[0]
    stem, _ = asset_stem("https://cdn.prod.website-files.com/abc/style.css", BASE)
    assert stem.startswith("abc_style_")


def test_guess_ext_from_type():
    assert guess_ext_from_type("text/css; charset=utf-8") == ".css"
    assert guess_ext_from_type("application/javascript") == ".js"
    assert guess_ext_from_type("image/png") == ".png"
    assert guess_ext_from_type("font/woff2") == ".woff2"
    assert guess_ext_from_type(None) == ""


def test_can_fetch_url():
    assert can_fetch_url("/a.png")
    for u in ("", "  ", "#top", "mailto:a@b", "tel:1", "javascript:void(0)", "data:x", "blob:y"):
        assert not can_fetch_url(u)


def test_fetch_once_and_shared_local_path(settings, session):
    session.add(CSS_URL, "body{}", "text/css")
    store = AssetStore(settings, session)
    first = store.fetch_and_store("/css/main.css", "https://example.com/about/")
    second = store.fetch_and_store(CSS_URL, "https://example.com/")
    third = store.fetch_and_store("../../css/main.css#x", "https://example.com/blog/post/")
    assert first == second == third == "_assets/css_main.css"
    assert session.count(CSS_URL) == 1
    assert (settings.root / "_assets" / "css_main.css").read_text() == "body{}"
    assert store.downloaded_count() == 1


def test_concurrent_callers_share_one_fetch(settings):
    session = FakeSession(delay=0.05)
    session.add(CSS_URL, "body{}", "text/css")
    store = AssetStore(settings, session)
    results = []
    lock = threading.Lock()

    def worker():
        lp = store.fetch_and_store(CSS_URL, BASE)
        with lock:
            results.append(lp)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results == ["_assets/css_main.css"] * 8
    assert session.count(CSS_URL) == 1


def test_ineligible_and_unfetchable_references(settings, session):
    store = AssetStore(settings, session)
    assert store.fetch_and_store("https://evil.com/x.js", BASE) is None
    assert store.fetch_and_store("data:image/png;base64,AAAA", BASE) is None
    assert store.fetch_and_store("mailto:a@example.com", BASE) is None
    assert session.calls == {}


def test_allowlisted_cdn_is_eligible(settings, session):
    url = "https://fonts.gstatic.com/s/inter/a.woff2"
    session.add(url, b"\x00\x01", "font/woff2")
    store = AssetStore(settings, session)
    lp = store.fetch_and_store(url, BASE)
    assert lp is not None and lp.startswith("_assets/s_inter_a_") and lp.endswith(".woff2")


def test_failures_are_memoized(settings, session):
    store = AssetStore(settings, session)
    url = "https://example.com/missing.png"
    assert store.fetch_and_store(url, BASE) is None
    assert store.fetch_and_store(url, BASE) is None
    assert session.count(url) == 1
    assert not (settings.root / "_assets" / "missing.png").exists()


def test_empty_body_is_a_failure(settings, session):
    url = "https://example.com/empty.js"
    session.add(url, b"", "application/javascript")
    store = AssetStore(settings, session)
    assert store.fetch_and_store(url, BASE) is None


def test_extension_from_content_type(settings, session):
    url = "https://example.com/images/logo"
    session.add(url, b"PNG", "image/png")
    store = AssetStore(settings, session)
    assert store.fetch_and_store(url, BASE) == "_assets/images_logo.png"


def test_existing_file_is_reused_across_runs(settings, session):
    cached = settings.root / "_assets" / "css_main.css"
    cached.parent.mkdir(parents=True)
    cached.write_text("cached{}")
    store = AssetStore(settings, session)
    assert store.fetch_and_store(CSS_URL, BASE) == "_assets/css_main.css"
    assert session.count(CSS_URL) == 0
    assert store.records()[0].from_cache


def test_resolve_drops_fragment(settings, session):
    store = AssetStore(settings, session)
    assert store.resolve("img/a.png#frag", "https://example.com/x/") == (
        "https://example.com/x/img/a.png"
    )
    assert store.resolve("ftp://example.com/a", BASE) is None
