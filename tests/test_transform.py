from bs4 import BeautifulSoup

from offline_mirror.assets import AssetStore
from offline_mirror.links import LinkResolver
from offline_mirror.shim import SHIM_ELEMENT_ID
from offline_mirror.transform import POPUP_STYLE_ID, PageTransformer

PAGE_URL = "https://example.com/"

PAGE = """<!DOCTYPE html>
<html>
<head>
<title>Home</title>
<link rel="stylesheet" href="/css/main.css" integrity="sha384-x" crossorigin="anonymous">
<link rel="canonical" href="https://example.com/">
<link rel="preconnect" href="https://fonts.gstatic.com">
<script src="https://www.googletagmanager.com/gtag/js?id=G-1"></script>
<script>gtag('config', 'G-1');</script>
<script>WebFont.load({google: {families: ["Inter"]}});</script>
</head>
<body>
<img src="/img/logo.png" srcset="/img/logo.png 1x, /img/logo@2x.png 2x">
<img src="https://evil.example.org/pixel.gif">
<img src="https://px.ads.linkedin.com/collect/?pid=1">
<div style="background:url('/img/bg.jpg')">hero</div>
<a href="/about/">About</a>
</body>
</html>
"""


def make_transformer(settings, session):
    session.add("https://example.com/css/main.css", '@font-face{src:url("../fonts/inter.woff2")}', "text/css")
    session.add("https://example.com/fonts/inter.woff2", b"wOF2", "font/woff2")
    session.add("https://example.com/img/logo.png", b"PNG1", "image/png")
    session.add("https://example.com/img/logo@2x.png", b"PNG2", "image/png")
    session.add("https://example.com/img/bg.jpg", b"JPG", "image/jpeg")
    store = AssetStore(settings, session)
    resolver = LinkResolver(settings.root, settings.base_url)
    return PageTransformer(settings, store, resolver)


def test_page_stylesheet_font_chain(settings, session):
    t = make_transformer(settings, session)
    page_dir = settings.root / "index"
    out = t.transform(PAGE, PAGE_URL, page_dir)
    soup = BeautifulSoup(out, "lxml")

    css = soup.find("link", rel="stylesheet")
    assert css["href"] == "../_assets/css_main.css"
    assert "integrity" not in css.attrs and "crossorigin" not in css.attrs
    assert (settings.root / "_assets" / "css_main.css").is_file()

    css_text = (settings.root / "_assets" / "css_main.css").read_text()
    assert 'url("fonts_inter.woff2")' in css_text
    assert (settings.root / "_assets" / "fonts_inter.woff2").is_file()

    logo = soup.find("img", src="../_assets/img_logo.png")
    assert logo is not None
    assert logo["srcset"] == "../_assets/img_logo.png 1x, ../_assets/img_logo_2x.png 2x"
    assert "../_assets/img_bg.jpg" in soup.find("div")["style"]


def test_unmapped_references_are_untouched(settings, session):
    t = make_transformer(settings, session)
    out = t.transform(PAGE, PAGE_URL, settings.root / "index")
    soup = BeautifulSoup(out, "lxml")
    assert soup.find("img", src="https://evil.example.org/pixel.gif") is not None
    assert soup.find("link", rel="canonical")["href"] == "https://example.com/"
    # no local page yet
    assert soup.find("a")["href"] == "/about/"
    assert session.count("https://evil.example.org/pixel.gif") == 0


def test_links_to_existing_pages_are_rewritten(settings, session):
    about = settings.root / "about" / "index.html"
    about.parent.mkdir(parents=True)
    about.write_text("<html></html>")
    t = make_transformer(settings, session)
    out = t.transform(PAGE, PAGE_URL, settings.root / "index")
    assert BeautifulSoup(out, "lxml").find("a")["href"] == "../about/index.html"


def test_tracking_removed_and_webfont_disabled(settings, session):
    t = make_transformer(settings, session)
    out = t.transform(PAGE, PAGE_URL, settings.root / "index")
    assert "googletagmanager" not in out
    assert "gtag(" not in out
    assert "linkedin" not in out
    assert "false && WebFont.load(" in out
    soup = BeautifulSoup(out, "lxml")
    assert soup.find("link", rel="preconnect") is None


def test_shim_and_popup_style_injected_into_head(settings, session):
    t = make_transformer(settings, session)
    out = t.transform(PAGE, PAGE_URL, settings.root / "index")
    soup = BeautifulSoup(out, "lxml")
    shim = soup.find(id=SHIM_ELEMENT_ID)
    assert shim is not None and shim.parent.name == "head"
    assert '"apiDir": "../_api_data/"' in shim.string
    assert "&amp;&amp;" not in shim.string
    style = soup.find(id=POPUP_STYLE_ID)
    assert style is not None and ".mc-modal" in style.string


def test_shim_skipped_without_head_or_body(settings, session):
    t = make_transformer(settings, session)
    out = t.transform('<p>fragment <img src="/img/logo.png"></p>', PAGE_URL, settings.root / "index")
    assert SHIM_ELEMENT_ID not in out
    assert POPUP_STYLE_ID not in out
    assert "../_assets/img_logo.png" in out


def test_shim_goes_to_body_when_head_missing(settings, session):
    t = make_transformer(settings, session)
    out = t.transform("<html><body><p>x</p></body></html>", PAGE_URL, settings.root / "index")
    soup = BeautifulSoup(out, "lxml")
    assert soup.find(id=SHIM_ELEMENT_ID).parent.name == "body"
    assert soup.find(id=POPUP_STYLE_ID) is None


def test_rerun_is_stable(settings, session):
    t = make_transformer(settings, session)
    page_dir = settings.root / "index"
    once = t.transform(PAGE, PAGE_URL, page_dir)
    twice = t.transform(once, PAGE_URL, page_dir)
    assert once == twice
    assert twice.count(SHIM_ELEMENT_ID) == 1
    assert "false && false && WebFont" not in twice
    assert session.count("https://example.com/css/main.css") == 1
