from __future__ import annotations

import os
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Callable, Optional

from ledgersync.importers.adapters import ProviderError, RequestFailed


def network_enabled() -> bool:
    v = (os.environ.get("NETWORK_ENABLED") or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def _normalize_host(raw: str) -> str:
    s = (raw or "").strip().lower()
    if not s:
        return ""
    if "://" in s:
        s = urllib.parse.urlparse(s).hostname or ""
    s = s.split("/", 1)[0]
    if ":" in s:
        s = s.split(":", 1)[0]
    return s


def allowed_outbound_hosts() -> set[str]:
    raw = (os.environ.get("ALLOWED_OUTBOUND_HOSTS") or "").strip()
    if raw:
        hosts = {_normalize_host(h) for h in raw.split(",")}
        return {h for h in hosts if h}
    # Safe-by-default allowlist: the broker API plus the presigned report bucket.
    # Entries starting with "." match any subdomain.
    return {
        "live.trading212.com",
        "demo.trading212.com",
        ".amazonaws.com",
    }


def _host_allowed(host: str, allowed: set[str]) -> bool:
    if host in allowed:
        return True
    return any(a.startswith(".") and host.endswith(a) for a in allowed)


def assert_url_allowed(url: str) -> None:
    u = urllib.parse.urlparse(url)
    if (u.scheme or "").lower() != "https":
        raise ProviderError("Blocked network request: only https:// is allowed.")
    host = (u.hostname or "").lower()
    if not host:
        raise ProviderError("Blocked network request: missing hostname.")
    if not _host_allowed(host, allowed_outbound_hosts()):
        hint = " (ALLOWED_OUTBOUND_HOSTS overrides defaults)" if os.environ.get("ALLOWED_OUTBOUND_HOSTS") else ""
        raise ProviderError(f"Blocked network request: host not allowlisted ({host}).{hint}")


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    content: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return (self.content or b"").decode("utf-8-sig", errors="replace")


Transport = Callable[[str, str, dict[str, str], Optional[bytes], float], HttpResponse]


class _AllowlistRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        # Enforce allowlist on redirects as well.
        assert_url_allowed(str(newurl))
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def default_transport(
    url: str,
    method: str,
    headers: dict[str, str],
    body: bytes | None,
    timeout_s: float,
) -> HttpResponse:
    """
    Single HTTP exchange with:
      - NETWORK_ENABLED gate
      - outbound host allowlist
      - fixed timeout

    HTTP error statuses come back as responses so callers can map them; transport-level
    failures raise RequestFailed. Never include secrets (headers, query) in raised errors.
    """
    if not network_enabled():
        raise RequestFailed("Network disabled; set NETWORK_ENABLED=1 to enable live connectors.")
    assert_url_allowed(url)

    parsed = urllib.parse.urlparse(url)
    host = (parsed.hostname or "").lower()
    opener = urllib.request.build_opener(_AllowlistRedirectHandler())
    req = urllib.request.Request(url, data=body, method=method.upper())
    for k, v in (headers or {}).items():
        if k and v is not None:
            req.add_header(str(k), str(v))
    try:
        with opener.open(req, timeout=timeout_s) as resp:
            status = int(getattr(resp, "status", 200))
            hdrs = {str(k): str(v) for k, v in dict(resp.headers).items()}
            return HttpResponse(status_code=status, content=resp.read(), headers=hdrs)
    except urllib.error.HTTPError as e:
        try:
            content = e.read()
        except Exception:
            content = b""
        hdrs: dict[str, str] = {}
        if getattr(e, "headers", None) is not None:
            hdrs = {str(k): str(v) for k, v in dict(e.headers).items()}
        return HttpResponse(status_code=int(getattr(e, "code", 0) or 0), content=content, headers=hdrs)
    except urllib.error.URLError as e:
        reason = getattr(e, "reason", None)
        raise RequestFailed(f"Network request failed: {type(e).__name__}: {reason or e} host={host}") from e
    except (socket.timeout, TimeoutError, ConnectionError) as e:
        raise RequestFailed(f"Network request failed: {type(e).__name__}: {e} host={host}") from e
