"""
Outbound webhook HTTP gateway.

All outbound webhook calls go through this class. Direct `requests` calls
in services or blueprints are forbidden.

  - SSRF guard: the target host is resolved on every attempt and the call
    is refused before any socket to it is opened when any resolved address
    is not a public unicast address. The connection is then opened to the
    checked address, never to a second DNS answer.
  - Timeout: ``timeout`` seconds per connect/read phase, plus a watchdog
    that shuts the socket down once ``timeout`` seconds have passed in total.
  - Response cap: at most ``max_response_bytes`` of body are read; the
    rest is discarded and the result is flagged ``truncated``.
  - Redirects are not followed (a redirect could point inside the network).
    Proxy settings from the environment are ignored.

Testability: pass a mock `session` to WebhookGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import HTTPError as Urllib3Error

from cardflow.core.exceptions import DeliveryFailure, SsrfRejected

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 7.0
_DEFAULT_MAX_RESPONSE_BYTES = 100 * 1024
_CHUNK_SIZE = 8192
_ALLOWED_SCHEMES = ("http", "https")

# Guard of the delivery in progress on the current thread.
_active = threading.local()


class DeliveryResult:
    """Structured return value from WebhookGateway.post.

    Attributes:
        ok:           True for an HTTP 2xx response.
        status_code:  HTTP status code.
        headers:      Response headers.
        body:         Response body (decoded, at most the byte cap).
        truncated:    True if the body exceeded the byte cap.
        duration_ms:  Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int,
        headers: dict,
        body: str,
        truncated: bool,
        duration_ms: int,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.headers = headers
        self.body = body
        self.truncated = truncated
        self.duration_ms = duration_ms

    def to_snapshot(self) -> dict:
        """Fields stored on WebhookDelivery.response."""
        return {
            "status_code": self.status_code,
            "headers": self.headers,
            "body": self.body,
            "truncated": self.truncated,
            "duration_ms": self.duration_ms,
        }


# ── Address policy ───────────────────────────────────────────────────────────

def is_public_address(address: str) -> bool:
    """True only for globally routable unicast addresses."""
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if (ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_multicast
            or ip.is_reserved or ip.is_unspecified):
        return False
    return ip.is_global


def _normalize_host(host: str) -> str:
    return host.strip("[]").rstrip(".").lower()


# ── Per-delivery guard ───────────────────────────────────────────────────────

class _DeliveryGuard:
    """
    Pins one delivery to its checked address and bounds its total duration.

    Every socket opened or reused for the delivery is tracked through a
    duplicate descriptor; when the timer fires they are all shut down, which
    unblocks whatever read is pending on the delivery thread.
    """

    def __init__(self, host: str, address: str, timeout: float) -> None:
        self.host = _normalize_host(host)
        self.address = address
        self.expired = False
        self._sockets: list[socket.socket] = []
        self._lock = threading.Lock()
        self._timer = threading.Timer(timeout, self._expire)
        self._timer.daemon = True

    def address_for(self, host: str) -> str:
        if _normalize_host(host) != self.host:
            raise SsrfRejected(host)
        return self.address

    def track(self, sock: socket.socket) -> None:
        # fromfd rather than dup(): TLS sockets refuse dup().
        dup = socket.fromfd(sock.fileno(), sock.family, sock.type)
        with self._lock:
            self._sockets.append(dup)
            if self.expired:
                _shutdown(dup)

    def start(self) -> None:
        self._timer.start()

    def _expire(self) -> None:
        with self._lock:
            self.expired = True
            for sock in self._sockets:
                _shutdown(sock)

    def close(self) -> None:
        self._timer.cancel()
        with self._lock:
            for sock in self._sockets:
                sock.close()
            self._sockets = []


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        # Already closed by the peer or by urllib3.
        logger.debug("Webhook socket shutdown: %s", exc)


class _GuardedConnectionMixin:
    """Connects to the guard's checked address instead of resolving again."""

    def _new_conn(self):
        guard = getattr(_active, "guard", None)
        if guard is None:
            return super()._new_conn()
        dns_host = self._dns_host
        self._dns_host = guard.address_for(self.host)
        try:
            sock = super()._new_conn()
        finally:
            self._dns_host = dns_host
        guard.track(sock)
        return sock

    def request(self, *args, **kwargs):
        guard = getattr(_active, "guard", None)
        if guard is not None and self.sock is not None:
            guard.track(self.sock)
        return super().request(*args, **kwargs)


class _GuardedHTTPConnection(_GuardedConnectionMixin, HTTPConnection):
    pass


class _GuardedHTTPSConnection(_GuardedConnectionMixin, HTTPSConnection):
    pass


class _GuardedHTTPPool(HTTPConnectionPool):
    ConnectionCls = _GuardedHTTPConnection


class _GuardedHTTPSPool(HTTPSConnectionPool):
    ConnectionCls = _GuardedHTTPSConnection


class _GuardedAdapter(HTTPAdapter):
    """HTTPAdapter whose pools open guarded connections."""

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _GuardedHTTPPool,
            "https": _GuardedHTTPSPool,
        }


# ── Gateway ──────────────────────────────────────────────────────────────────

class WebhookGateway:
    """Signed-payload delivery gateway.

    Instantiate once at module level (module-level singleton pattern).

    Usage:
        from cardflow.integrations.webhook_gateway import webhook_gateway
        result = webhook_gateway.post(url, body, headers)
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        max_response_bytes: int = _DEFAULT_MAX_RESPONSE_BYTES,
    ) -> None:
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session
        self.timeout = timeout
        self.max_response_bytes = max_response_bytes

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            session = requests.Session()
            session.trust_env = False
            adapter = _GuardedAdapter()
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            self._session = session
        return self._session

    # ── SSRF guard ───────────────────────────────────────────────────────────

    def resolve(self, host: str, port: int) -> list[str]:
        """Resolve ``host`` to every address it currently maps to, in resolver order."""
        try:
            infos = socket.getaddrinfo(host, port, proto=socket.IPPROTO_TCP)
        except (socket.gaierror, UnicodeError) as exc:
            raise DeliveryFailure(f"Cannot resolve {host}: {exc}") from exc
        addresses = list(dict.fromkeys(info[4][0] for info in infos))
        if not addresses:
            raise DeliveryFailure(f"Cannot resolve {host}: no addresses")
        return addresses

    def ensure_public(self, url: str) -> list[str]:
        """
        Refuse ``url`` unless it is http(s) and every address its host
        resolves to is public.

        Returns the checked addresses; the first one is the connect target.

        Raises:
            SsrfRejected: bad scheme, missing host, or a non-public address.
            DeliveryFailure: the host does not resolve.
        """
        parts = urlsplit(url)
        if parts.scheme not in _ALLOWED_SCHEMES or not parts.hostname:
            raise SsrfRejected(url)
        try:
            port = parts.port or (443 if parts.scheme == "https" else 80)
        except ValueError as exc:
            raise SsrfRejected(url) from exc

        host = parts.hostname
        try:
            ipaddress.ip_address(host.split("%", 1)[0])
            addresses = [host]
        except ValueError:
            addresses = self.resolve(host, port)

        for address in addresses:
            if not is_public_address(address):
                logger.warning("SSRF guard rejected %s (%s)", url, address)
                raise SsrfRejected(url, address)
        return addresses

    # ── Delivery ─────────────────────────────────────────────────────────────

    def post(
        self,
        url: str,
        body: bytes,
        headers: dict,
        *,
        timeout: float | None = None,
        max_response_bytes: int | None = None,
    ) -> DeliveryResult:
        """POST ``body`` once and return the (possibly truncated) response.

        Raises:
            SsrfRejected: before any connection is attempted.
            DeliveryFailure: DNS failure, connection error or timeout.
        """
        timeout = timeout or self.timeout
        cap = max_response_bytes or self.max_response_bytes

        addresses = self.ensure_public(url)

        start = time.monotonic()
        deadline = start + timeout
        guard = _DeliveryGuard(urlsplit(url).hostname, addresses[0], timeout)
        _active.guard = guard
        guard.start()
        try:
            try:
                response = self.session.post(
                    url,
                    data=body,
                    headers=headers,
                    timeout=(timeout, timeout),
                    stream=True,
                    allow_redirects=False,
                )
            except requests.Timeout as exc:
                raise DeliveryFailure(f"Timed out after {timeout:g}s") from exc
            except requests.RequestException as exc:
                if guard.expired:
                    raise DeliveryFailure(f"Timed out after {timeout:g}s") from exc
                raise DeliveryFailure(f"Request failed: {exc}") from exc

            try:
                raw, truncated = self._read_capped(response, cap, deadline, guard, timeout)
            except (requests.RequestException, Urllib3Error, OSError) as exc:
                if guard.expired:
                    raise DeliveryFailure(f"Timed out after {timeout:g}s") from exc
                raise DeliveryFailure(f"Reading response failed: {exc}") from exc
            finally:
                response.close()
        finally:
            _active.guard = None
            guard.close()

        duration_ms = int((time.monotonic() - start) * 1000)
        status = response.status_code
        return DeliveryResult(
            ok=200 <= status < 300,
            status_code=status,
            headers=dict(response.headers or {}),
            body=_decode(raw, response.encoding),
            truncated=truncated,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _read_capped(response, cap: int, deadline: float, guard: _DeliveryGuard,
                     timeout: float) -> tuple[bytes, bool]:
        chunks = []
        size = 0
        truncated = False
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            if guard.expired or time.monotonic() > deadline:
                raise DeliveryFailure(f"Timed out after {timeout:g}s")
            if not chunk:
                continue
            remaining = cap - size
            if len(chunk) > remaining:
                chunks.append(chunk[:remaining])
                truncated = True
                break
            chunks.append(chunk)
            size += len(chunk)
        if guard.expired:
            raise DeliveryFailure(f"Timed out after {timeout:g}s")
        return b"".join(chunks), truncated


def _decode(raw: bytes, encoding: str | None) -> str:
    """Decode with the declared charset, falling back to UTF-8 for unknown ones."""
    try:
        return raw.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


# Module-level singleton
webhook_gateway = WebhookGateway()
