"""Recorded data-API exchanges and the in-page script that replays them offline."""

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, Optional

from .paths import atomic_write_text, relpath_posix

SHIM_ELEMENT_ID = "offline-api-replay"
KEY_PREFIX_CHARS = 48
NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")


def is_api_request(url: str, patterns: Iterable[str]) -> bool:
    return any(p in url for p in patterns)


def looks_like_json(body: Optional[str]) -> bool:
    if not body:
        return False
    s = body.lstrip()
    return s.startswith("{") or s.startswith("[")


def fnv1a_32(data: bytes) -> int:
    h = 0x811C9DC5
    for b in data:
        h ^= b
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def exchange_key(url: str) -> str:
    # must stay in sync with exchangeKey() in SHIM_TEMPLATE
    raw = url.encode("utf-8")
    prefix = NON_ALNUM_RE.sub("_", base64.b64encode(raw).decode("ascii"))
    return f"{prefix[:KEY_PREFIX_CHARS]}_{fnv1a_32(raw):08x}"


def utc_now() -> str:
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


# -------------------- Exchanges --------------------


@dataclass
class ApiExchange:
    url: str
    method: str = "GET"
    request_headers: Dict[str, str] = field(default_factory=dict)
    request_body: Optional[str] = None
    status: int = 200
    status_text: str = ""
    response_headers: Dict[str, str] = field(default_factory=dict)
    response_body: str = ""
    timestamp: str = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return exchange_key(self.url)

    def to_json(self) -> dict:
        return {
            "url": self.url,
            "method": self.method,
            "headers": self.request_headers,
            "body": self.request_body,
            "response": {
                "status": self.status,
                "statusText": self.status_text,
                "headers": self.response_headers,
                "body": self.response_body,
            },
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_json(cls, data: dict) -> "ApiExchange":
        resp = data.get("response") or {}
        return cls(
            url=data["url"],
            method=data.get("method", "GET"),
            request_headers=data.get("headers") or {},
            request_body=data.get("body"),
            status=int(resp.get("status", 200)),
            status_text=resp.get("statusText", ""),
            response_headers=resp.get("headers") or {},
            response_body=resp.get("body", ""),
            timestamp=data.get("timestamp", ""),
        )


class ExchangeStore:
    def __init__(self, api_dir: Path):
        self.api_dir = Path(api_dir)
        self._saved: Dict[str, Path] = {}
        self._lock = Lock()

    def path_for(self, url: str) -> Path:
        return self.api_dir / f"{exchange_key(url)}.json"

    def persist(self, exchange: ApiExchange) -> Path:
        p = self.path_for(exchange.url)
        with self._lock:
            atomic_write_text(p, json.dumps(exchange.to_json(), indent=2))
            self._saved[exchange.url] = p
        logging.info("saved API exchange: %s", exchange.url[:100])
        return p

    def load(self, url: str) -> Optional[ApiExchange]:
        p = self.path_for(url)
        if not p.is_file():
            return None
        return ApiExchange.from_json(json.loads(p.read_text(encoding="utf-8")))

    def count(self) -> int:
        with self._lock:
            return len(self._saved)


# -------------------- Shim --------------------

SHIM_TEMPLATE = r"""
(function() {
  var CONFIG = __CONFIG__;
  var originalFetch = window.fetch ? window.fetch.bind(window) : null;

  function matches(url) {
    for (var i = 0; i < CONFIG.patterns.length; i++) {
      if (url.indexOf(CONFIG.patterns[i]) !== -1) return true;
    }
    return false;
  }

  function absolute(url) {
    try { return new URL(url, CONFIG.pageUrl).href; } catch (e) { return String(url); }
  }

  function exchangeKey(url) {
    var bytes = new TextEncoder().encode(url);
    var bin = '';
    for (var i = 0; i < bytes.length; i++) bin += String.fromCharCode(bytes[i]);
    var h = 0x811c9dc5;
    for (var j = 0; j < bytes.length; j++) {
      h ^= bytes[j];
      h = Math.imul(h, 0x01000193) >>> 0;
    }
    var prefix = btoa(bin).replace(/[^a-zA-Z0-9]/g, '_').substring(0, CONFIG.prefixChars);
    return prefix + '_' + ('0000000' + h.toString(16)).slice(-8);
  }

  function loadExchange(url) {
    return originalFetch(CONFIG.apiDir + exchangeKey(url) + '.json')
      .then(function(r) {
        if (!r.ok) throw new Error('missing exchange');
        return r.json();
      });
  }

  if (originalFetch) {
    window.fetch = function(input, init) {
      var raw = (input && typeof input === 'object' && input.url) ? input.url : String(input);
      var url = absolute(raw);
      if (!matches(url)) return originalFetch(input, init);
      return loadExchange(url)
        .then(function(data) {
          return new Response(data.response.body, {
            status: data.response.status,
            statusText: data.response.statusText,
            headers: data.response.headers
          });
        })
        .catch(function() { return originalFetch(input, init); });
    };
  }

  var originalOpen = XMLHttpRequest.prototype.open;
  var originalSend = XMLHttpRequest.prototype.send;

  XMLHttpRequest.prototype.open = function(method, url) {
    this._replayUrl = absolute(url);
    return originalOpen.apply(this, arguments);
  };

  XMLHttpRequest.prototype.send = function() {
    var xhr = this;
    var args = arguments;
    if (!originalFetch || !xhr._replayUrl || !matches(xhr._replayUrl)) {
      return originalSend.apply(xhr, args);
    }
    loadExchange(xhr._replayUrl)
      .then(function(data) {
        var res = data.response;
        var headers = res.headers || {};
        Object.defineProperty(xhr, 'readyState', { value: 4, configurable: true });
        Object.defineProperty(xhr, 'status', { value: res.status, configurable: true });
        Object.defineProperty(xhr, 'statusText', { value: res.statusText, configurable: true });
        Object.defineProperty(xhr, 'responseText', { value: res.body, configurable: true });
        Object.defineProperty(xhr, 'response', {
          value: xhr.responseType === 'json' ? JSON.parse(res.body) : res.body,
          configurable: true
        });
        xhr.getResponseHeader = function(name) {
          var wanted = String(name).toLowerCase();
          for (var k in headers) {
            if (k.toLowerCase() === wanted) return headers[k];
          }
          return null;
        };
        if (xhr.onreadystatechange) xhr.onreadystatechange();
        if (xhr.onload) xhr.onload();
        xhr.dispatchEvent(new Event('readystatechange'));
        xhr.dispatchEvent(new Event('load'));
        xhr.dispatchEvent(new Event('loadend'));
      })
      .catch(function() { originalSend.apply(xhr, args); });
  };
})();
"""


def build_shim(page_url: str, page_dir: Path, api_dir: Path, patterns: Iterable[str]) -> str:
    api_rel = relpath_posix(api_dir, page_dir).rstrip("/") + "/"
    config = {
        "pageUrl": page_url,
        "apiDir": api_rel,
        "patterns": list(patterns),
        "prefixChars": KEY_PREFIX_CHARS,
    }
    # keep the payload from closing the surrounding <script>
    payload = json.dumps(config).replace("</", "<\\/")
    return SHIM_TEMPLATE.replace("__CONFIG__", payload)
