import asyncio
import queue
import threading

import pytest
import websocket as websocket_client
from kubernetes.client import Configuration

from cilikube.config import KubernetesConfig
from cilikube.services.k8s.client_factory import ClientFactory, ClientSource, TransportConfig
from cilikube.services.k8s.proxy import (
    KubernetesProxy,
    build_target_url,
    filter_request_headers,
    filter_response_headers,
    forwarded_query,
    is_spdy_upgrade,
    strip_prefix,
)
from cilikube.services.k8s.resolver import ResolvedCluster
from cilikube.services.k8s.streaming import CloseReason

from fakes import WS_DISCONNECT, FakeClusterClient, FakeWebSocket, kubeconfig_for, ws_bytes, ws_text


def _make_transport(host: str = "https://10.0.0.1:6443") -> TransportConfig:
    return TransportConfig(host=host, headers={"Authorization": "Bearer cluster-token"})


class TestTargetUrl:
    def test_strips_proxy_prefix(self):
        assert strip_prefix("/api/v1/proxy/api/v1/namespaces") == "/api/v1/namespaces"
        assert strip_prefix("apis/apps/v1") == "/apis/apps/v1"

    def test_rebases_onto_server(self):
        url = build_target_url(_make_transport(), "/api/v1/pods", "limit=5")
        assert url == "https://10.0.0.1:6443/api/v1/pods?limit=5"

    def test_keeps_server_base_path(self):
        transport = _make_transport("https://rancher.example.com/k8s/clusters/c-1")
        url = build_target_url(transport, "/api/v1/proxy/version")
        assert url == "https://rancher.example.com/k8s/clusters/c-1/version"

    @pytest.mark.parametrize(
        ("host", "scheme"),
        [("https://10.0.0.1:6443", "wss"), ("http://127.0.0.1:8001", "ws")],
    )
    def test_websocket_scheme(self, host, scheme):
        url = build_target_url(_make_transport(host), "/api/v1/namespaces/default/pods/p/exec", websocket=True)
        assert url.startswith(f"{scheme}://")


class TestFilters:
    def test_cluster_selectors_are_not_forwarded(self):
        query = forwarded_query([("clusterId", "abc"), ("watch", "1"), ("clusterName", "x"), ("labelSelector", "a=b")])
        assert query == "watch=1&labelSelector=a%3Db"

    def test_client_credentials_replaced_by_cluster_credentials(self):
        headers = filter_request_headers(
            [
                ("Authorization", "Bearer user-session"),
                ("Cookie", "sid=1"),
                ("Host", "dashboard.local"),
                ("Connection", "keep-alive"),
                ("Accept", "application/json"),
            ],
            _make_transport(),
        )
        assert headers == {"Accept": "application/json", "Authorization": "Bearer cluster-token"}

    def test_response_hop_by_hop_headers_dropped(self):
        headers = filter_response_headers(
            {"Content-Type": "application/json", "Transfer-Encoding": "chunked", "Content-Length": "12"}
        )
        assert headers == {"Content-Type": "application/json"}

    def test_spdy_detection(self):
        assert is_spdy_upgrade({"upgrade": "SPDY/3.1"})
        assert not is_spdy_upgrade({"upgrade": "websocket"})
        assert not is_spdy_upgrade({})


class TestClusterCredentials:
    def test_token_from_kubeconfig(self):
        client = ClientFactory(KubernetesConfig()).build(
            ClientSource.from_bytes(kubeconfig_for("https://10.0.0.1:6443")), probe=False
        )
        try:
            headers = filter_request_headers([("Accept", "*/*")], client.transport)
        finally:
            client.close()
        assert headers == {"Accept": "*/*", "Authorization": "Bearer abc"}

    def test_rotated_token_is_used(self):
        cfg = Configuration(host="https://10.0.0.1:6443", api_key={"BearerToken": "Bearer first"})
        tokens = iter(["Bearer second", "Bearer third"])

        def refresh(config: Configuration) -> None:
            config.api_key["BearerToken"] = next(tokens)

        cfg.refresh_api_key_hook = refresh
        transport = TransportConfig.from_configuration(cfg, qps=5, burst=10)
        assert filter_request_headers([], transport) == {"Authorization": "Bearer second"}
        assert filter_request_headers([], transport) == {"Authorization": "Bearer third"}

    def test_no_credentials(self):
        transport = TransportConfig.from_configuration(Configuration(host="http://127.0.0.1:8001"), qps=5, burst=10)
        assert filter_request_headers([("Authorization", "Bearer user")], transport) == {}


class FakeUpstreamSocket:
    """Server side of a proxied WebSocket; ``frames`` are (opcode, data) pairs."""

    def __init__(self, frames=()):
        self.frames: queue.Queue = queue.Queue()
        for frame in frames:
            self.frames.put(frame)
        self.sent: list = []
        self.aborted = threading.Event()
        self.shut_down = False

    def getsubprotocol(self):
        return "v4.channel.k8s.io"

    def settimeout(self, timeout) -> None:
        pass

    def recv_data(self):
        frame = self.frames.get(timeout=5)
        if frame is None:
            raise websocket_client.WebSocketConnectionClosedException("socket is already closed.")
        return frame

    def send(self, data: str) -> None:
        self.sent.append(data)

    def send_binary(self, data: bytes) -> None:
        self.sent.append(data)

    def abort(self) -> None:
        self.aborted.set()
        self.frames.put(None)

    def shutdown(self) -> None:
        self.shut_down = True


class TestWebSocketBridge:
    def _make_proxy(self, upstream: FakeUpstreamSocket, connects: list) -> KubernetesProxy:
        proxy = KubernetesProxy(ResolvedCluster(id="c-1", client=FakeClusterClient("https://10.0.0.1:6443")))

        def connect(url, headers, subprotocols):
            connects.append((url, headers, subprotocols))
            return upstream

        proxy._connect_ws = connect
        return proxy

    def test_upstream_frames_reach_client(self):
        upstream = FakeUpstreamSocket(
            [
                (websocket_client.ABNF.OPCODE_TEXT, b"ready"),
                (websocket_client.ABNF.OPCODE_BINARY, b"\x01stdout"),
                (websocket_client.ABNF.OPCODE_CLOSE, b""),
            ]
        )
        connects: list = []
        ws = FakeWebSocket(
            headers={"Authorization": "Bearer user", "X-Trace": "t-1"},
            query_string="clusterId=c-1&command=ls&stdout=true",
        )
        path = "/api/v1/proxy/api/v1/namespaces/default/pods/web-0/exec"
        session = asyncio.run(self._make_proxy(upstream, connects).bridge_websocket(ws, path))

        assert ws.sent == ["ready", b"\x01stdout"]
        assert ws.close_code == 1000
        assert session.close_reason is CloseReason.UPSTREAM_END
        assert upstream.shut_down
        url, headers, _ = connects[0]
        assert url == "wss://10.0.0.1:6443/api/v1/namespaces/default/pods/web-0/exec?command=ls&stdout=true"
        assert headers["Authorization"] == "Bearer test-token"
        assert "authorization" not in headers
        assert headers["x-trace"] == "t-1"

    def test_client_frames_reach_upstream(self):
        upstream = FakeUpstreamSocket()
        ws = FakeWebSocket([ws_text("ls\n"), ws_bytes(b"\x00data"), WS_DISCONNECT])
        session = asyncio.run(self._make_proxy(upstream, []).bridge_websocket(ws, "/api/v1/proxy/api/v1/watch"))

        assert upstream.sent == ["ls\n", b"\x00data"]
        assert upstream.aborted.is_set()
        assert upstream.shut_down
        assert session.close_reason is CloseReason.CLIENT_CLOSE
        assert ws.close_code is None

    def test_connect_failure_is_reported(self):
        proxy = KubernetesProxy(ResolvedCluster(id="c-1", client=FakeClusterClient("https://10.0.0.1:6443")))

        def refuse(url, headers, subprotocols):
            raise ConnectionRefusedError("connection refused")

        proxy._connect_ws = refuse
        ws = FakeWebSocket()
        session = asyncio.run(proxy.bridge_websocket(ws, "/api/v1/proxy/api/v1/watch"))
        assert "connection refused" in ws.texts[-1]
        assert ws.close_code == 1011
        assert session.close_reason is CloseReason.ERROR
