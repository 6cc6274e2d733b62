"""
Webhook gateway tests: SSRF guard, timeouts and the response cap.

Unit tests use a MagicMock session with DNS patched. The pinning and
deadline tests use a real session against a throwaway loopback server.
"""

import socket
import threading
import time
from itertools import chain, repeat
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from cardflow.core.exceptions import DeliveryFailure, SsrfRejected
from cardflow.integrations.webhook_gateway import WebhookGateway, is_public_address

PUBLIC_IP = "93.184.216.34"


@pytest.fixture()
def http_session(response_factory):
    fake = MagicMock()
    fake.post.return_value = response_factory()
    return fake


@pytest.fixture()
def gateway(http_session):
    gw = WebhookGateway(session=http_session)
    with patch.object(gw, "resolve", return_value=[PUBLIC_IP]):
        yield gw


@pytest.fixture()
def slow_server():
    """Loopback server that answers one request with ``head`` then drips ``drip``."""
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(3)
    stop = threading.Event()
    hits = []
    threads = []

    def serve(head, drip, interval):
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        with conn:
            request = b""
            while b"\r\n\r\n" not in request:
                data = conn.recv(4096)
                if not data:
                    return
                request += data
            hits.append(request)
            try:
                conn.sendall(head)
                for byte in drip:
                    if stop.wait(interval):
                        return
                    conn.sendall(bytes([byte]))
            except OSError:
                return

    def start(head, drip=b"", interval=0.2):
        thread = threading.Thread(target=serve, args=(head, drip, interval), daemon=True)
        thread.start()
        threads.append(thread)
        return listener.getsockname()[1]

    yield SimpleNamespace(start=start, hits=hits)
    stop.set()
    listener.close()
    for thread in threads:
        thread.join(4)


def _addrinfo(*addresses):
    return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (a, 443)) for a in addresses]


# ── Address policy ───────────────────────────────────────────────────────────


@pytest.mark.parametrize("address,expected", [
    ("8.8.8.8", True),
    (PUBLIC_IP, True),
    ("2001:4860:4860::8888", True),
    ("127.0.0.1", False),
    ("10.1.2.3", False),
    ("172.16.0.1", False),
    ("192.168.1.10", False),
    ("169.254.169.254", False),
    ("100.64.0.1", False),
    ("0.0.0.0", False),
    ("224.0.0.1", False),
    ("::1", False),
    ("fc00::1", False),
    ("fe80::1%eth0", False),
    ("::ffff:127.0.0.1", False),
    ("::ffff:10.0.0.1", False),
])
def test_is_public_address(address, expected):
    assert is_public_address(address) is expected


# ── SSRF guard ───────────────────────────────────────────────────────────────


class TestSsrfGuard:
    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/hook",
        "http://[::1]:8080/hook",
        "http://[::ffff:127.0.0.1]/hook",
        "https://169.254.169.254/latest/meta-data",
        "http://10.0.0.7/hook",
    ])
    def test_private_literals_rejected_before_connecting(self, gateway, http_session, url):
        with pytest.raises(SsrfRejected):
            gateway.post(url, b"{}", {})
        http_session.post.assert_not_called()

    @pytest.mark.parametrize("url", ["ftp://example.com/hook", "file:///etc/passwd", "http:///nohost"])
    def test_non_http_urls_rejected(self, gateway, http_session, url):
        with pytest.raises(SsrfRejected):
            gateway.post(url, b"{}", {})
        http_session.post.assert_not_called()

    def test_hostname_resolving_to_private_address_rejected(self, http_session):
        gw = WebhookGateway(session=http_session)
        with patch("cardflow.integrations.webhook_gateway.socket.getaddrinfo",
                   return_value=_addrinfo("10.0.0.5")):
            with pytest.raises(SsrfRejected) as info:
                gw.post("https://intranet.example.com/hook", b"{}", {})
        assert info.value.address == "10.0.0.5"
        http_session.post.assert_not_called()

    def test_any_private_address_in_answer_rejects(self, http_session):
        gw = WebhookGateway(session=http_session)
        with patch("cardflow.integrations.webhook_gateway.socket.getaddrinfo",
                   return_value=_addrinfo(PUBLIC_IP, "127.0.0.1")):
            with pytest.raises(SsrfRejected):
                gw.post("https://mixed.example.com/hook", b"{}", {})
        http_session.post.assert_not_called()

    def test_unresolvable_host_is_a_delivery_failure(self, http_session):
        gw = WebhookGateway(session=http_session)
        with patch("cardflow.integrations.webhook_gateway.socket.getaddrinfo",
                   side_effect=socket.gaierror("Name or service not known")):
            with pytest.raises(DeliveryFailure) as info:
                gw.post("https://nowhere.invalid/hook", b"{}", {})
        assert not isinstance(info.value, SsrfRejected)

    def test_public_host_is_delivered(self, http_session):
        gw = WebhookGateway(session=http_session)
        with patch("cardflow.integrations.webhook_gateway.socket.getaddrinfo",
                   return_value=_addrinfo(PUBLIC_IP)):
            result = gw.post("https://example.com/hook", b"{}", {"X-Test": "1"})
        assert result.ok
        http_session.post.assert_called_once()


# ── Delivery ─────────────────────────────────────────────────────────────────


class TestPost:
    def test_redirects_are_not_followed(self, gateway, http_session):
        gateway.post("https://example.com/hook", b"{}", {})
        kwargs = http_session.post.call_args.kwargs
        assert kwargs["allow_redirects"] is False
        assert kwargs["stream"] is True
        assert kwargs["timeout"] == (7.0, 7.0)

    def test_result_captures_response(self, gateway, http_session, response_factory):
        http_session.post.return_value = response_factory(201, b"created", {"X-Id": "9"})
        result = gateway.post("https://example.com/hook", b"{}", {})
        assert result.ok
        assert result.status_code == 201
        assert result.body == "created"
        assert result.headers == {"X-Id": "9"}
        assert result.truncated is False

    def test_non_2xx_is_not_ok(self, gateway, http_session, response_factory):
        http_session.post.return_value = response_factory(500, b"boom")
        result = gateway.post("https://example.com/hook", b"{}", {})
        assert not result.ok
        assert result.to_snapshot()["status_code"] == 500

    def test_body_capped_at_limit(self, gateway, http_session, response_factory):
        http_session.post.return_value = response_factory(200, b"x" * (150 * 1024))
        result = gateway.post("https://example.com/hook", b"{}", {})
        assert result.truncated is True
        assert len(result.body) == 100 * 1024

    def test_custom_cap(self, gateway, http_session, response_factory):
        http_session.post.return_value = response_factory(200, b"abcdefghij")
        result = gateway.post("https://example.com/hook", b"{}", {}, max_response_bytes=4)
        assert result.body == "abcd"
        assert result.truncated is True

    def test_connect_timeout_is_delivery_failure(self, gateway, http_session):
        http_session.post.side_effect = requests.Timeout("slow")
        with pytest.raises(DeliveryFailure, match="Timed out"):
            gateway.post("https://example.com/hook", b"{}", {})

    def test_connection_error_is_delivery_failure(self, gateway, http_session):
        http_session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(DeliveryFailure, match="Request failed"):
            gateway.post("https://example.com/hook", b"{}", {})

    def test_total_deadline_enforced_while_streaming(self, gateway, http_session, response_factory):
        http_session.post.return_value = response_factory(200, b"x" * 20000)
        clock = MagicMock()
        clock.monotonic.side_effect = chain([0.0], repeat(60.0))
        with patch("cardflow.integrations.webhook_gateway.time", clock):
            with pytest.raises(DeliveryFailure, match="Timed out"):
                gateway.post("https://example.com/hook", b"{}", {})
        http_session.post.return_value.close.assert_called_once()

    def test_unknown_charset_falls_back_to_utf8(self, gateway, http_session, response_factory):
        response = response_factory(500, "café".encode())
        response.encoding = "x-bogus"
        http_session.post.return_value = response

        result = gateway.post("https://example.com/hook", b"{}", {})

        assert result.status_code == 500
        assert result.body == "café"


# ── Real sockets ─────────────────────────────────────────────────────────────


class TestLiveSockets:
    def test_connects_to_the_checked_address(self, slow_server):
        port = slow_server.start(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n")
        real_getaddrinfo = socket.getaddrinfo
        lookups = []
        attempts = []

        def rebinding_dns(host, *args, **kwargs):
            if host != "rebind.example":
                return real_getaddrinfo(host, *args, **kwargs)
            lookups.append(host)
            return _addrinfo(PUBLIC_IP if len(lookups) == 1 else "127.0.0.1")

        def refuse(address, *args, **kwargs):
            attempts.append(address)
            raise ConnectionRefusedError("no outbound network in tests")

        gw = WebhookGateway()
        with patch("cardflow.integrations.webhook_gateway.socket.getaddrinfo",
                   side_effect=rebinding_dns), \
                patch("urllib3.util.connection.create_connection", side_effect=refuse):
            with pytest.raises(DeliveryFailure, match="Request failed"):
                gw.post(f"http://rebind.example:{port}/hook", b"{}", {})

        assert lookups == ["rebind.example"]
        assert attempts == [(PUBLIC_IP, port)]
        assert slow_server.hits == []

    def test_host_header_keeps_the_hostname(self, slow_server):
        port = slow_server.start(b"HTTP/1.1 204 No Content\r\nContent-Length: 0\r\n\r\n")
        gw = WebhookGateway()
        with patch.object(gw, "ensure_public", return_value=["127.0.0.1"]):
            result = gw.post(f"http://hooks.example:{port}/hook", b"{}", {})

        assert result.status_code == 204
        assert f"Host: hooks.example:{port}".encode() in slow_server.hits[0]

    @pytest.mark.parametrize("head,drip", [
        (b"HTTP/1.1 200 OK\r\n", b"X-Slow: " + b"a" * 30),
        (b"HTTP/1.1 200 OK\r\nContent-Length: 30\r\n\r\n", b"a" * 30),
    ], ids=["slow-headers", "slow-body"])
    def test_total_deadline_holds_against_slow_server(self, slow_server, head, drip):
        port = slow_server.start(head, drip)
        gw = WebhookGateway(timeout=1.0)

        started = time.monotonic()
        with patch.object(gw, "ensure_public", return_value=["127.0.0.1"]):
            with pytest.raises(DeliveryFailure, match="Timed out"):
                gw.post(f"http://127.0.0.1:{port}/hook", b"{}", {})

        assert time.monotonic() - started < 2.5
