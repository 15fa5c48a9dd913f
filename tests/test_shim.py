import json
import re

from offline_mirror.shim import (
    ApiExchange,
    ExchangeStore,
    build_shim,
    exchange_key,
    fnv1a_32,
    is_api_request,
    looks_like_json,
)

API_URL = "https://api.webflow.com/collections/123/items?offset=0&limit=100"


def test_fnv1a_known_values():
    assert fnv1a_32(b"") == 0x811C9DC5
    assert fnv1a_32(b"a") == 0xE40C292C


def test_exchange_key_is_deterministic_and_distinct():
    key = exchange_key(API_URL)
    assert key == exchange_key(API_URL)
    assert re.fullmatch(r"[A-Za-z0-9_]{1,48}_[0-9a-f]{8}", key)
    # same long prefix, different tail
    other = API_URL.replace("offset=0", "offset=100")
    assert exchange_key(other) != key


def test_api_predicates():
    patterns = ["api.webflow.com", "/v1/items/"]
    assert is_api_request(API_URL, patterns)
    assert is_api_request("https://example.com/v1/items/5", patterns)
    assert not is_api_request("https://example.com/css/main.css", patterns)
    assert looks_like_json('  {"items": []}')
    assert looks_like_json("[1, 2]")
    assert not looks_like_json("<html></html>")
    assert not looks_like_json("")


def test_exchange_persisted_and_loadable(tmp_path):
    store = ExchangeStore(tmp_path / "_api_data")
    ex = ApiExchange(
        url=API_URL,
        method="GET",
        request_headers={"accept": "application/json"},
        status=200,
        status_text="OK",
        response_headers={"content-type": "application/json"},
        response_body='{"items": [{"id": 1}]}',
    )
    path = store.persist(ex)
    assert path == tmp_path / "_api_data" / f"{exchange_key(API_URL)}.json"
    data = json.loads(path.read_text())
    assert data["response"]["statusText"] == "OK"
    assert data["response"]["body"] == '{"items": [{"id": 1}]}'
    assert store.load(API_URL) == ex
    assert store.count() == 1
    assert store.load("https://api.webflow.com/other") is None


def test_build_shim_config(tmp_path):
    shim = build_shim(
        "https://example.com/blog/post-1/",
        tmp_path / "blog" / "post-1",
        tmp_path / "_api_data",
        ["api.webflow.com", "</script>"],
    )
    assert "__CONFIG__" not in shim
    assert '"apiDir": "../../_api_data/"' in shim
    assert '"pageUrl": "https://example.com/blog/post-1/"' in shim
    assert "</script>" not in shim
    assert "XMLHttpRequest.prototype.open" in shim
    assert "window.fetch = function" in shim
