"""Transparent pass-through to a cluster's API server."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Iterable, Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import structlog
import websocket as websocket_client
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.websockets import WebSocket, WebSocketDisconnect

from cilikube.exceptions import UpstreamError, ValidationError
from cilikube.services.k8s.client_factory import TransportConfig
from cilikube.services.k8s.resolver import ResolvedCluster
from cilikube.services.k8s.streaming import (
    WS_INTERNAL_ERROR,
    WS_NORMAL_CLOSURE,
    CloseReason,
    OutboundChannel,
    StreamSession,
    close_websocket,
    send_error_and_close,
)

logger = structlog.get_logger(__name__)

PROXY_PREFIX = "/api/v1/proxy/"
CLUSTER_SELECTOR_PARAMS = frozenset({"clusterId", "clusterName"})

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# Never forwarded upstream: the cluster transport supplies its own credentials
_DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", "authorization", "cookie"}
_DROPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}
_DROPPED_WS_HEADERS = _DROPPED_REQUEST_HEADERS | {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "origin",
}


def strip_prefix(path: str, prefix: str = PROXY_PREFIX) -> str:
    if path.startswith(prefix):
        path = path[len(prefix):]
    return "/" + path.lstrip("/")


def build_target_url(transport: TransportConfig, path: str, query: str = "", *, websocket: bool = False) -> str:
    """Rebase ``path`` onto the cluster server, keeping any base path of the server URL."""
    base = urlsplit(transport.host)
    scheme = base.scheme or "https"
    if websocket:
        scheme = "wss" if scheme == "https" else "ws"
    target_path = base.path.rstrip("/") + strip_prefix(path)
    return urlunsplit((scheme, base.netloc, target_path, query, ""))


def forwarded_query(params: Iterable[tuple[str, str]]) -> str:
    """Query string for the upstream call, minus the cluster selectors."""
    return urlencode([(k, v) for k, v in params if k not in CLUSTER_SELECTOR_PARAMS])


def filter_request_headers(headers: Iterable[tuple[str, str]], transport: TransportConfig) -> dict[str, str]:
    forwarded = {k: v for k, v in headers if k.lower() not in _DROPPED_REQUEST_HEADERS}
    forwarded.update(transport.auth_headers())
    return forwarded


def filter_response_headers(headers: Mapping[str, str] | httpx.Headers) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in _DROPPED_RESPONSE_HEADERS}


def is_spdy_upgrade(headers: Mapping[str, str]) -> bool:
    return "spdy" in headers.get("upgrade", "").lower()


class KubernetesProxy:
    """Forward HTTP requests and bridge WebSocket upgrades for one resolved cluster."""

    def __init__(
        self,
        cluster: ResolvedCluster,
        *,
        connect_timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.cluster = cluster
        self.transport = cluster.client.transport
        self.connect_timeout = connect_timeout
        self._http_client = http_client

    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return self.cluster.client.http_client(self.connect_timeout)

    async def forward(self, request: Request, path: str) -> StreamingResponse:
        if is_spdy_upgrade(request.headers):
            raise ValidationError(
                "SPDY upgrades are not supported by this proxy; use a WebSocket client",
                cluster_id=self.cluster.id,
            )
        url = build_target_url(self.transport, path, forwarded_query(request.query_params.multi_items()))
        headers = await asyncio.to_thread(filter_request_headers, request.headers.items(), self.transport)
        body = await request.body()

        client = self.http_client()
        upstream_request = client.build_request(request.method, url, headers=headers, content=body or None)
        try:
            response = await client.send(upstream_request, stream=True)
        except httpx.TransportError as exc:
            logger.warning("proxy.transport_failed", cluster_id=self.cluster.id, url=url, error=str(exc))
            raise UpstreamError(f"proxy request to {self.transport.host} failed: {exc}", cluster_id=self.cluster.id) from exc

        logger.debug("proxy.forwarded", cluster_id=self.cluster.id, method=request.method, status=response.status_code)
        return StreamingResponse(
            response.aiter_raw(),
            status_code=response.status_code,
            headers=filter_response_headers(response.headers),
            background=BackgroundTask(_close_upstream, response),
        )

    def _connect_ws(self, url: str, headers: dict[str, str], subprotocols: list[str]) -> websocket_client.WebSocket:
        ctx = self.transport.ssl_context()
        return websocket_client.create_connection(
            url,
            header=[f"{k}: {v}" for k, v in headers.items()],
            sslopt={"context": ctx, "check_hostname": ctx.check_hostname, "cert_reqs": ctx.verify_mode},
            subprotocols=subprotocols or None,
            timeout=self.connect_timeout,
        )

    async def bridge_websocket(self, ws: WebSocket, path: str) -> StreamSession:
        session = StreamSession("proxy", self.cluster.id)
        url = build_target_url(self.transport, path, forwarded_query(ws.query_params.multi_items()), websocket=True)
        headers = {k: v for k, v in ws.headers.items() if k.lower() not in _DROPPED_WS_HEADERS}
        headers.update(await asyncio.to_thread(self.transport.auth_headers))
        subprotocols = list(ws.scope.get("subprotocols") or [])

        try:
            upstream = await asyncio.to_thread(self._connect_ws, url, headers, subprotocols)
        except (websocket_client.WebSocketException, OSError) as exc:
            session.close(CloseReason.ERROR, str(exc))
            await ws.accept()
            await send_error_and_close(ws, f"Error: proxy connection to {self.transport.host} failed: {exc}")
            return session

        await ws.accept(subprotocol=upstream.getsubprotocol())
        upstream.settimeout(None)
        session.on_close(upstream.abort)
        session.mark_running()
        outbound = OutboundChannel(session, asyncio.get_running_loop())

        def read_upstream() -> None:
            try:
                while not session.cancelled.is_set():
                    opcode, data = upstream.recv_data()
                    if opcode == websocket_client.ABNF.OPCODE_CLOSE:
                        break
                    if opcode == websocket_client.ABNF.OPCODE_TEXT:
                        outbound.emit(data.decode("utf-8", errors="replace"))
                    else:
                        outbound.emit(data)
            except (websocket_client.WebSocketException, OSError) as exc:
                if not session.cancelled.is_set():
                    session.error = str(exc)
            finally:
                outbound.emit(None)

        async def inbound() -> CloseReason:
            try:
                while True:
                    message = await ws.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    if message.get("bytes") is not None:
                        await asyncio.to_thread(upstream.send_binary, message["bytes"])
                    elif message.get("text") is not None:
                        await asyncio.to_thread(upstream.send, message["text"])
            except (WebSocketDisconnect, RuntimeError):
                pass
            except (websocket_client.WebSocketException, OSError) as exc:
                session.error = str(exc)
                return CloseReason.ERROR
            return CloseReason.CLIENT_CLOSE

        reader = asyncio.create_task(asyncio.to_thread(read_upstream))
        inbound_task = asyncio.create_task(inbound())
        outbound_task = asyncio.create_task(outbound.pump(ws))
        done, pending = await asyncio.wait({inbound_task, outbound_task}, return_when=asyncio.FIRST_COMPLETED)
        reason = next(iter(done)).result()
        session.close(reason, session.error)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await reader
        await asyncio.to_thread(upstream.shutdown)

        if reason is CloseReason.ERROR:
            await send_error_and_close(ws, f"Error: {session.error}", WS_INTERNAL_ERROR)
        elif reason is not CloseReason.CLIENT_CLOSE:
            await close_websocket(ws, WS_NORMAL_CLOSURE)
        return session


async def _close_upstream(response: httpx.Response) -> None:
    with contextlib.suppress(httpx.HTTPError):
        await response.aclose()
