"""Long-lived streams between a client WebSocket and a cluster.

Every stream is tracked by a :class:`StreamSession` whose ``close`` runs at
most once no matter which side ends first. Blocking Kubernetes I/O runs in
worker threads; bytes travel back to the event loop through a bounded
:class:`OutboundChannel`.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import enum
import json
import queue
import socket
import threading
from collections.abc import Callable
from typing import Any, Optional, Protocol

import structlog
import urllib3
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.stream import stream
from kubernetes.watch.watch import iter_resp_lines
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websocket import WebSocketException

from cilikube.core.validators import validate_namespace, validate_resource_name
from cilikube.exceptions import AppException, UpstreamError, UpstreamNotFound, ValidationError, classify_api_exception
from cilikube.services.k8s.client_factory import ClusterClient

logger = structlog.get_logger(__name__)

CHANNEL_CAPACITY = 100
DEFAULT_TAIL_LINES = 1000
DEFAULT_SHELL = "/bin/sh"
EXEC_READ_SIZE = 4096
EXEC_FAILURE_TEMPLATE = "\r\n--- Command Execution Failed ---\r\nError: {reason}\r\n"
# Channel on which the API server reports the exec outcome as a v1 Status
STATUS_CHANNEL = 3

WS_NORMAL_CLOSURE = 1000
WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011


class StreamState(str, enum.Enum):
    OPENING = "opening"
    RUNNING = "running"
    CLOSED = "closed"


class CloseReason(str, enum.Enum):
    CLIENT_CLOSE = "client-close"
    UPSTREAM_END = "upstream-end"
    ERROR = "error"


class StreamSession:
    """State machine ``Opening -> Running -> Closed`` with a close-once latch."""

    def __init__(self, kind: str, cluster_id: str | None = None) -> None:
        self.kind = kind
        self.cluster_id = cluster_id
        self.state = StreamState.OPENING
        self.close_reason: Optional[CloseReason] = None
        self.error: Optional[str] = None
        self.cancelled = threading.Event()
        self.close_count = 0
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self.state is StreamState.CLOSED

    def mark_running(self) -> None:
        with self._lock:
            if self.state is StreamState.OPENING:
                self.state = StreamState.RUNNING

    def on_close(self, callback: Callable[[], None]) -> None:
        run_now = False
        with self._lock:
            if self.state is StreamState.CLOSED:
                run_now = True
            else:
                self._callbacks.append(callback)
        if run_now:
            self._run_callback(callback)

    def close(self, reason: CloseReason, error: str | None = None) -> bool:
        """Close the session; only the first call has any effect."""
        with self._lock:
            if self.state is StreamState.CLOSED:
                return False
            self.state = StreamState.CLOSED
            self.close_reason = reason
            self.error = error
            self.close_count += 1
            callbacks, self._callbacks = self._callbacks, []
        self.cancelled.set()
        for callback in callbacks:
            self._run_callback(callback)
        logger.info(
            "stream.closed",
            stream_kind=self.kind,
            cluster_id=self.cluster_id,
            reason=reason.value,
            error=error,
        )
        return True

    def _run_callback(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except (OSError, RuntimeError, WebSocketException, urllib3.exceptions.HTTPError) as exc:
            logger.debug("stream.close_callback_failed", stream_kind=self.kind, error=str(exc))


class StdinReader:
    """Byte-stream reader over message-framed stdin.

    Frames larger than the requested read size are split; the unread tail is
    kept in ``_remainder`` and returned by the following reads.
    """

    def __init__(self, capacity: int = CHANNEL_CAPACITY) -> None:
        self._queue: "queue.Queue[bytes | None]" = queue.Queue(maxsize=capacity)
        self._remainder = b""
        self._eof = False
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def feed(self, data: bytes, poll: float = 0.5) -> bool:
        """Queue a frame, waiting while the channel is full; False once closed."""
        while not self._closed.is_set():
            try:
                self._queue.put(data, timeout=poll)
                return True
            except queue.Full:
                continue
        return False

    def close(self) -> bool:
        with self._close_lock:
            if self._closed.is_set():
                return False
            self._closed.set()
            self.close_count += 1
        with contextlib.suppress(queue.Full):
            self._queue.put_nowait(None)
        return True

    def read(self, size: int = EXEC_READ_SIZE, timeout: float | None = 0) -> bytes | None:
        """Return up to ``size`` bytes, ``b""`` at end of input, ``None`` if nothing is ready."""
        if size <= 0:
            raise ValueError("size must be positive")
        if self._remainder:
            chunk, self._remainder = self._remainder[:size], self._remainder[size:]
            return chunk
        if self._eof:
            return b""
        try:
            if timeout == 0:
                data = self._queue.get_nowait()
            else:
                data = self._queue.get(timeout=timeout)
        except queue.Empty:
            if self._closed.is_set():
                self._eof = True
                return b""
            return None
        if data is None:
            self._eof = True
            return b""
        chunk, self._remainder = data[:size], data[size:]
        return chunk


class OutboundChannel:
    """Bounded queue from a worker thread to the WebSocket sender."""

    def __init__(self, session: StreamSession, loop: asyncio.AbstractEventLoop, capacity: int = CHANNEL_CAPACITY):
        self._session = session
        self._loop = loop
        self._queue: "asyncio.Queue[bytes | str | None]" = asyncio.Queue(maxsize=capacity)

    def emit(self, item: bytes | str | None, poll: float = 0.5) -> bool:
        """Thread side: block while the queue is full, give up once the session is cancelled."""
        future = asyncio.run_coroutine_threadsafe(self._queue.put(item), self._loop)
        while True:
            try:
                future.result(timeout=poll)
                return True
            except concurrent.futures.TimeoutError:
                if self._session.cancelled.is_set():
                    future.cancel()
                    return False
            except (concurrent.futures.CancelledError, RuntimeError):
                return False

    async def pump(self, websocket: WebSocket) -> CloseReason:
        """Drain the queue into frames until the upstream ends or the client goes away."""
        while True:
            item = await self._queue.get()
            if item is None:
                return CloseReason.ERROR if self._session.error else CloseReason.UPSTREAM_END
            try:
                if isinstance(item, bytes):
                    await websocket.send_bytes(item)
                else:
                    await websocket.send_text(item)
            except (WebSocketDisconnect, RuntimeError, OSError):
                return CloseReason.CLIENT_CLOSE


def abort_response(resp: Any) -> None:
    """Interrupt a blocked read on a streaming urllib3 response, then close it."""
    shutdown = getattr(resp, "shutdown", None)
    if callable(shutdown):
        shutdown()
    else:
        sock = getattr(getattr(resp, "connection", None), "sock", None)
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
    resp.close()


async def close_websocket(websocket: WebSocket, code: int = WS_NORMAL_CLOSURE, reason: str | None = None) -> None:
    if websocket.application_state != WebSocketState.CONNECTED:
        return
    if websocket.client_state != WebSocketState.CONNECTED:
        return
    with contextlib.suppress(RuntimeError, OSError):
        await websocket.close(code=code, reason=reason)


async def send_error_and_close(websocket: WebSocket, message: str, code: int = WS_INTERNAL_ERROR) -> None:
    if websocket.client_state == WebSocketState.CONNECTED:
        with contextlib.suppress(RuntimeError, OSError, WebSocketDisconnect):
            await websocket.send_text(message)
    await close_websocket(websocket, code)


async def _wait_for_disconnect(websocket: WebSocket, session: StreamSession) -> None:
    """Read and discard client frames; exists to notice the client leaving."""
    try:
        while not session.closed:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except (WebSocketDisconnect, RuntimeError):
        pass
    session.close(CloseReason.CLIENT_CLOSE)


class PodLogStreamer:
    """Tail a container log into one text frame per line."""

    def __init__(
        self,
        websocket: WebSocket,
        client: ClusterClient,
        *,
        cluster_id: str,
        namespace: str,
        pod: str,
        container: str | None,
        follow: bool = False,
        timestamps: bool = False,
        previous: bool = False,
        tail_lines: int | None = DEFAULT_TAIL_LINES,
    ) -> None:
        self.websocket = websocket
        self.client = client
        self.namespace = namespace
        self.pod = pod
        self.container = container
        self.follow = follow
        self.timestamps = timestamps
        self.previous = previous
        self.tail_lines = DEFAULT_TAIL_LINES if tail_lines is None else tail_lines
        self.session = StreamSession("logs", cluster_id)

    def _precheck(self) -> None:
        validate_namespace(self.namespace)
        validate_resource_name(self.pod, "pod name")
        if not self.container:
            raise ValidationError("query parameter 'container' is required", cluster_id=self.session.cluster_id)
        core = self.client.api("CoreV1Api")
        try:
            pod = core.read_namespaced_pod(self.pod, self.namespace)
        except ApiException as exc:
            raise classify_api_exception(exc, self.session.cluster_id) from exc
        spec = pod.spec
        names = {c.name for c in (spec.containers or [])} | {c.name for c in (spec.init_containers or [])}
        if self.container not in names:
            raise UpstreamNotFound(
                f"container {self.container!r} not found in pod {self.namespace}/{self.pod}",
                details={"container": self.container},
                cluster_id=self.session.cluster_id,
            )

    def _open(self) -> Any:
        self._precheck()
        core = self.client.api("CoreV1Api")
        try:
            return core.read_namespaced_pod_log(
                name=self.pod,
                namespace=self.namespace,
                container=self.container,
                follow=self.follow,
                timestamps=self.timestamps,
                previous=self.previous,
                tail_lines=self.tail_lines if self.tail_lines > 0 else None,
                _preload_content=False,
            )
        except ApiException as exc:
            raise classify_api_exception(exc, self.session.cluster_id) from exc

    async def run(self) -> StreamSession:
        websocket = self.websocket
        session = self.session
        await websocket.accept()
        try:
            resp = await asyncio.to_thread(self._open)
        except AppException as exc:
            session.close(CloseReason.ERROR, exc.message)
            code = WS_POLICY_VIOLATION if isinstance(exc, ValidationError) else WS_INTERNAL_ERROR
            await send_error_and_close(websocket, f"Error: {exc.message}", code)
            return session
        except urllib3.exceptions.HTTPError as exc:
            session.close(CloseReason.ERROR, str(exc))
            await send_error_and_close(websocket, f"Error: {exc}")
            return session

        session.on_close(lambda: abort_response(resp))
        session.mark_running()
        logger.info("stream.logs_opened", cluster_id=session.cluster_id, namespace=self.namespace, pod=self.pod)
        reader = asyncio.create_task(_wait_for_disconnect(websocket, session))
        lines = iter_resp_lines(resp)
        try:
            while not session.closed:
                line = await asyncio.to_thread(next, lines, None)
                if line is None:
                    session.close(CloseReason.UPSTREAM_END)
                    break
                try:
                    await websocket.send_text(line)
                except (WebSocketDisconnect, RuntimeError, OSError):
                    session.close(CloseReason.CLIENT_CLOSE)
                    break
        except (urllib3.exceptions.HTTPError, OSError, ValueError) as exc:
            # Aborting the response on client close also lands here
            if session.close(CloseReason.ERROR, str(exc)):
                await send_error_and_close(websocket, f"Error: {exc}")
        finally:
            session.close(CloseReason.UPSTREAM_END)
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        if session.close_reason is not CloseReason.CLIENT_CLOSE:
            await close_websocket(websocket, WS_NORMAL_CLOSURE)
        return session


class ExecUpstream(Protocol):
    """Subset of ``kubernetes.stream.ws_client.WSClient`` used by exec sessions."""

    def is_open(self) -> bool: ...

    def update(self, timeout: float = 0) -> None: ...

    def peek_stdout(self, timeout: float = 0) -> bool: ...

    def read_stdout(self, timeout: float | None = None) -> Any: ...

    def peek_stderr(self, timeout: float = 0) -> bool: ...

    def read_stderr(self, timeout: float | None = None) -> Any: ...

    def read_channel(self, channel: int, timeout: float = 0) -> Any: ...

    def write_stdin(self, data: Any) -> None: ...

    def close(self, **kwargs: Any) -> None: ...


def exec_status_failure(raw: Any) -> Optional[str]:
    """Failure message from the exec status channel, ``None`` on success or silence."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not raw or not raw.strip():
        return None
    try:
        status = json.loads(raw)
    except ValueError:
        return raw.strip()
    if not isinstance(status, dict):
        return raw.strip()
    if status.get("status") == "Success":
        return None
    return status.get("message") or status.get("reason") or "command failed"


def resolve_command(command: list[str] | None, shell: str | None) -> list[str]:
    cmd = [c for c in (command or []) if c]
    if cmd:
        return cmd
    return [shell or DEFAULT_SHELL]


def open_pod_exec(
    client: ClusterClient,
    *,
    namespace: str,
    pod: str,
    container: str | None,
    command: list[str],
    stdin: bool = True,
    stdout: bool = True,
    stderr: bool = True,
    tty: bool = True,
) -> tuple[ExecUpstream, ApiClient]:
    """Open an exec WebSocket on a dedicated ApiClient.

    ``kubernetes.stream.stream`` swaps the request method of the ApiClient it
    is given for the duration of the call, so exec never uses the shared one.
    """
    from kubernetes import client as k8s_client

    api_client = client.new_api_client()
    core = k8s_client.CoreV1Api(api_client)
    kwargs: dict[str, Any] = {
        "command": command,
        "stdin": stdin,
        "stdout": stdout,
        "stderr": stderr and not tty,
        "tty": tty,
        "_preload_content": False,
        "binary": True,
    }
    if container:
        kwargs["container"] = container
    try:
        upstream = stream(core.connect_get_namespaced_pod_exec, pod, namespace, **kwargs)
    except BaseException:
        api_client.close()
        raise
    return upstream, api_client


class ExecSession:
    """Bidirectional exec: an inbound pump, an outbound pump and an upstream loop thread."""

    def __init__(
        self,
        websocket: WebSocket,
        opener: Callable[[], ExecUpstream],
        *,
        cluster_id: str | None = None,
        poll_interval: float = 0.1,
        on_finish: Callable[[], None] | None = None,
    ) -> None:
        self.websocket = websocket
        self.opener = opener
        self.poll_interval = poll_interval
        self.on_finish = on_finish
        self.session = StreamSession("exec", cluster_id)
        self.stdin = StdinReader()

    async def _inbound(self) -> CloseReason:
        try:
            while not self.session.closed:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("bytes")
                if data is None:
                    text = message.get("text")
                    data = text.encode("utf-8") if text else b""
                if data and not await asyncio.to_thread(self.stdin.feed, data):
                    break
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            self.stdin.close()
        return CloseReason.CLIENT_CLOSE

    def _upstream_loop(self, upstream: ExecUpstream, outbound: OutboundChannel) -> None:
        session = self.session
        try:
            while not session.cancelled.is_set() and upstream.is_open():
                upstream.update(timeout=self.poll_interval)
                if upstream.peek_stdout():
                    outbound.emit(_as_bytes(upstream.read_stdout()))
                if upstream.peek_stderr():
                    outbound.emit(_as_bytes(upstream.read_stderr()))
                while True:
                    data = self.stdin.read(EXEC_READ_SIZE, timeout=0)
                    if not data:
                        break
                    upstream.write_stdin(data)
            if not session.cancelled.is_set():
                failure = exec_status_failure(upstream.read_channel(STATUS_CHANNEL))
                if failure:
                    session.error = failure
                    outbound.emit(EXEC_FAILURE_TEMPLATE.format(reason=failure))
        except (WebSocketException, OSError, urllib3.exceptions.HTTPError, ValueError) as exc:
            if not session.cancelled.is_set():
                session.error = str(exc)
                outbound.emit(EXEC_FAILURE_TEMPLATE.format(reason=exc))
        finally:
            with contextlib.suppress(WebSocketException, OSError):
                upstream.close()
            outbound.emit(None)

    async def run(self) -> StreamSession:
        websocket = self.websocket
        session = self.session
        await websocket.accept()
        try:
            upstream = await asyncio.to_thread(self.opener)
        except ApiException as exc:
            err = classify_api_exception(exc, session.cluster_id)
            await self._fail(err.message)
            return session
        except AppException as exc:
            await self._fail(exc.message)
            return session
        except (WebSocketException, OSError, urllib3.exceptions.HTTPError, ValueError) as exc:
            await self._fail(str(UpstreamError(str(exc))))
            return session

        session.mark_running()
        logger.info("stream.exec_opened", cluster_id=session.cluster_id)
        outbound = OutboundChannel(session, asyncio.get_running_loop())
        upstream_task = asyncio.create_task(asyncio.to_thread(self._upstream_loop, upstream, outbound))
        inbound_task = asyncio.create_task(self._inbound())
        outbound_task = asyncio.create_task(outbound.pump(websocket))

        done, pending = await asyncio.wait({inbound_task, outbound_task}, return_when=asyncio.FIRST_COMPLETED)
        reason = next(iter(done)).result()
        session.close(reason, session.error)
        self.stdin.close()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await upstream_task
        if self.on_finish is not None:
            self.on_finish()

        if reason is not CloseReason.CLIENT_CLOSE:
            code = WS_INTERNAL_ERROR if reason is CloseReason.ERROR else WS_NORMAL_CLOSURE
            await close_websocket(websocket, code)
        return session

    async def _fail(self, reason: str) -> None:
        self.session.close(CloseReason.ERROR, reason)
        self.stdin.close()
        if self.on_finish is not None:
            self.on_finish()
        await send_error_and_close(self.websocket, EXEC_FAILURE_TEMPLATE.format(reason=reason))


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, bytes):
        return data
    return str(data).encode("utf-8")
