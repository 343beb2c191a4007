"""Tests for WebSocket streams: stdin framing, session lifecycle, pod logs and exec."""

import asyncio
import threading
import time
from types import SimpleNamespace

import pytest

from cilikube.services.k8s.streaming import (
    EXEC_READ_SIZE,
    CloseReason,
    ExecSession,
    PodLogStreamer,
    StdinReader,
    StreamSession,
    StreamState,
    exec_status_failure,
    resolve_command,
)

from fakes import FakeClusterClient, FakeStreamResponse, FakeWebSocket, WS_DISCONNECT, api_error, ws_bytes, ws_text


class FakeLogApi:
    def __init__(self, chunks: list[bytes], containers=("app",), init_containers=("setup",)):
        self.chunks = chunks
        self.containers = containers
        self.init_containers = init_containers
        self.log_kwargs: dict = {}
        self.response: FakeStreamResponse | None = None

    def read_namespaced_pod(self, name, namespace):
        if name != "web-0":
            raise api_error(404, "NotFound", f'pods "{name}" not found')
        return SimpleNamespace(
            spec=SimpleNamespace(
                containers=[SimpleNamespace(name=n) for n in self.containers],
                init_containers=[SimpleNamespace(name=n) for n in self.init_containers],
            )
        )

    def read_namespaced_pod_log(self, **kwargs):
        self.log_kwargs = kwargs
        self.response = FakeStreamResponse(self.chunks)
        return self.response


class FakeExecUpstream:
    """Echoes stdin to stdout; ``exit`` ends the process after a goodbye line."""

    def __init__(self, fail_after_write: bool = False, status: bytes = b""):
        self.stdin: list[bytes] = []
        self.status = status
        self.closed = False
        self.ended = False
        self.fail_after_write = fail_after_write
        self._stdout: list[bytes] = []
        self._lock = threading.Lock()

    def is_open(self) -> bool:
        with self._lock:
            return not self.closed and not (self.ended and not self._stdout)

    def update(self, timeout: float = 0) -> None:
        if self.fail_after_write and self.stdin:
            raise OSError("connection reset by peer")
        time.sleep(min(timeout, 0.01))

    def peek_stdout(self, timeout: float = 0) -> bool:
        with self._lock:
            return bool(self._stdout)

    def read_stdout(self, timeout=None) -> bytes:
        with self._lock:
            data, self._stdout = b"".join(self._stdout), []
        return data

    def peek_stderr(self, timeout: float = 0) -> bool:
        return False

    def read_stderr(self, timeout=None) -> bytes:
        return b""

    def read_channel(self, channel: int, timeout: float = 0) -> bytes:
        assert channel == 3
        data, self.status = self.status, b""
        return data

    def write_stdin(self, data: bytes) -> None:
        with self._lock:
            self.stdin.append(data)
            if data.strip() == b"exit":
                self._stdout.append(b"bye\r\n")
                self.ended = True
            else:
                self._stdout.append(data)

    def close(self, **kwargs) -> None:
        with self._lock:
            self.closed = True


class TestStdinReader:
    def test_large_frame_is_split_without_loss(self):
        reader = StdinReader()
        payload = bytes(range(256)) * 40
        reader.feed(payload)
        reader.close()
        chunks = []
        while True:
            chunk = reader.read(EXEC_READ_SIZE)
            if chunk == b"":
                break
            assert len(chunk) <= EXEC_READ_SIZE
            chunks.append(chunk)
        assert b"".join(chunks) == payload

    def test_nothing_ready_returns_none(self):
        reader = StdinReader()
        assert reader.read(16) is None

    def test_remainder_is_served_before_next_frame(self):
        reader = StdinReader()
        reader.feed(b"abcdef")
        reader.feed(b"gh")
        assert reader.read(4) == b"abcd"
        assert reader.read(4) == b"ef"
        assert reader.read(4) == b"gh"

    def test_close_is_idempotent_and_stops_feeding(self):
        reader = StdinReader()
        assert reader.close() is True
        assert reader.close() is False
        assert reader.close_count == 1
        assert reader.feed(b"late") is False
        assert reader.read(8) == b""

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            StdinReader().read(0)


class TestStreamSession:
    def test_close_runs_callbacks_once(self):
        session = StreamSession("logs", "c1")
        calls = []
        session.on_close(lambda: calls.append("a"))
        session.mark_running()
        assert session.state is StreamState.RUNNING
        assert session.close(CloseReason.UPSTREAM_END) is True
        assert session.close(CloseReason.ERROR, "late") is False
        assert calls == ["a"]
        assert session.close_count == 1
        assert session.close_reason is CloseReason.UPSTREAM_END
        assert session.cancelled.is_set()

    def test_callback_registered_after_close_runs_immediately(self):
        session = StreamSession("exec")
        session.close(CloseReason.CLIENT_CLOSE)
        calls = []
        session.on_close(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_callback_errors_do_not_escape(self):
        session = StreamSession("exec")

        def boom():
            raise OSError("socket already closed")

        session.on_close(boom)
        assert session.close(CloseReason.ERROR, "x") is True


class TestPodLogStreamer:
    def _make_streamer(self, api: FakeLogApi, websocket: FakeWebSocket, **kwargs) -> PodLogStreamer:
        client = FakeClusterClient(apis={"CoreV1Api": api})
        kwargs.setdefault("container", "app")
        return PodLogStreamer(websocket, client, cluster_id="c1", namespace="default", pod="web-0", **kwargs)

    def test_lines_become_text_frames(self):
        api = FakeLogApi([b"first line\nsecond ", b"line\nthird\n"])
        websocket = FakeWebSocket()
        session = asyncio.run(self._make_streamer(api, websocket).run())
        assert websocket.texts == ["first line", "second line", "third"]
        assert websocket.close_code == 1000
        assert session.close_reason is CloseReason.UPSTREAM_END
        assert api.response.closed
        assert api.log_kwargs["tail_lines"] == 1000
        assert api.log_kwargs["_preload_content"] is False

    def test_init_container_and_unbounded_tail(self):
        api = FakeLogApi([b"init done\n"])
        websocket = FakeWebSocket()
        asyncio.run(self._make_streamer(api, websocket, container="setup", tail_lines=0, follow=True).run())
        assert websocket.texts == ["init done"]
        assert api.log_kwargs["tail_lines"] is None
        assert api.log_kwargs["follow"] is True
        assert api.log_kwargs["previous"] is False

    def test_previous_container_instance(self):
        api = FakeLogApi([b"before restart\n"])
        websocket = FakeWebSocket()
        asyncio.run(self._make_streamer(api, websocket, previous=True).run())
        assert websocket.texts == ["before restart"]
        assert api.log_kwargs["previous"] is True

    def test_unknown_container(self):
        websocket = FakeWebSocket()
        session = asyncio.run(self._make_streamer(FakeLogApi([]), websocket, container="sidecar").run())
        assert websocket.texts == ["Error: container 'sidecar' not found in pod default/web-0"]
        assert websocket.close_code == 1011
        assert session.close_reason is CloseReason.ERROR

    def test_missing_container_parameter_is_a_policy_violation(self):
        websocket = FakeWebSocket()
        asyncio.run(self._make_streamer(FakeLogApi([]), websocket, container=None).run())
        assert websocket.texts[0].startswith("Error: query parameter 'container' is required")
        assert websocket.close_code == 1008

    def test_client_disconnect_stops_stream(self):
        api = FakeLogApi([b"x\n"] * 50)
        websocket = FakeWebSocket([WS_DISCONNECT])
        session = asyncio.run(self._make_streamer(api, websocket).run())
        assert session.close_reason in (CloseReason.CLIENT_CLOSE, CloseReason.UPSTREAM_END)
        assert session.close_count == 1
        assert api.response.closed


class TestExecSession:
    def test_echo_then_client_disconnect(self):
        upstream = FakeExecUpstream()
        websocket = FakeWebSocket()
        websocket.script.extend([ws_bytes(b"ls\n"), websocket.sent_event, WS_DISCONNECT])
        finished = []
        exec_session = ExecSession(
            websocket, lambda: upstream, cluster_id="c1", poll_interval=0.01, on_finish=lambda: finished.append(1)
        )
        session = asyncio.run(exec_session.run())
        assert websocket.binary == b"ls\n"
        assert session.close_reason is CloseReason.CLIENT_CLOSE
        assert upstream.closed
        assert exec_session.stdin.closed
        assert finished == [1]
        # The client already left, so no close frame is sent
        assert websocket.close_code is None

    def test_text_frames_are_forwarded_as_utf8(self):
        upstream = FakeExecUpstream()
        websocket = FakeWebSocket([ws_text("héllo\n"), ws_text("exit\n")])
        asyncio.run(ExecSession(websocket, lambda: upstream, poll_interval=0.01).run())
        assert b"".join(upstream.stdin) == "héllo\nexit\n".encode()

    def test_upstream_end_closes_normally(self):
        upstream = FakeExecUpstream()
        websocket = FakeWebSocket([ws_bytes(b"exit\n")])
        session = asyncio.run(ExecSession(websocket, lambda: upstream, poll_interval=0.01).run())
        assert websocket.binary.endswith(b"bye\r\n")
        assert session.close_reason is CloseReason.UPSTREAM_END
        assert websocket.close_code == 1000
        assert upstream.closed

    def test_upstream_failure_sends_failure_frame(self):
        upstream = FakeExecUpstream(fail_after_write=True)
        websocket = FakeWebSocket([ws_bytes(b"ls\n")])
        session = asyncio.run(ExecSession(websocket, lambda: upstream, poll_interval=0.01).run())
        assert "--- Command Execution Failed ---" in websocket.texts[-1]
        assert "connection reset by peer" in websocket.texts[-1]
        assert session.close_reason is CloseReason.ERROR
        assert websocket.close_code == 1011

    def test_failure_status_after_exit(self):
        upstream = FakeExecUpstream(
            status=b'{"kind":"Status","status":"Failure","reason":"NonZeroExitCode",'
            b'"message":"command terminated with non-zero exit code: exit status 127"}'
        )
        websocket = FakeWebSocket([ws_text("exit\n")])
        session = asyncio.run(ExecSession(websocket, lambda: upstream, poll_interval=0.01).run())
        assert websocket.binary.endswith(b"bye\r\n")
        assert websocket.texts[-1] == (
            "\r\n--- Command Execution Failed ---\r\n"
            "Error: command terminated with non-zero exit code: exit status 127\r\n"
        )
        assert session.close_reason is CloseReason.ERROR
        assert websocket.close_code == 1011

    def test_success_status_closes_normally(self):
        upstream = FakeExecUpstream(status=b'{"metadata":{},"status":"Success"}')
        websocket = FakeWebSocket([ws_text("exit\n")])
        session = asyncio.run(ExecSession(websocket, lambda: upstream, poll_interval=0.01).run())
        assert websocket.texts == []
        assert session.close_reason is CloseReason.UPSTREAM_END
        assert websocket.close_code == 1000

    def test_open_failure(self):
        def opener():
            raise api_error(403, "Forbidden", 'pods "web-0" is forbidden: cannot create pods/exec')

        finished = []
        websocket = FakeWebSocket()
        session = asyncio.run(ExecSession(websocket, opener, on_finish=lambda: finished.append(1)).run())
        assert websocket.texts == [
            "\r\n--- Command Execution Failed ---\r\n"
            "Error: pods \"web-0\" is forbidden: cannot create pods/exec\r\n"
        ]
        assert websocket.close_code == 1011
        assert session.close_reason is CloseReason.ERROR
        assert finished == [1]


class TestExecStatusFailure:
    def test_success_and_silence(self):
        assert exec_status_failure(b'{"status":"Success"}') is None
        assert exec_status_failure(b"") is None
        assert exec_status_failure("  ") is None

    def test_failure_message_then_reason(self):
        assert exec_status_failure('{"status":"Failure","message":"boom","reason":"InternalError"}') == "boom"
        assert exec_status_failure('{"status":"Failure","reason":"InternalError"}') == "InternalError"
        assert exec_status_failure('{"status":"Failure"}') == "command failed"

    def test_plain_text(self):
        assert exec_status_failure(b"container not found\n") == "container not found"


class TestResolveCommand:
    def test_default_shell(self):
        assert resolve_command(None, None) == ["/bin/sh"]
        assert resolve_command(["", ""], "/bin/bash") == ["/bin/bash"]

    def test_explicit_command_wins(self):
        assert resolve_command(["ls", "-la"], "/bin/bash") == ["ls", "-la"]
