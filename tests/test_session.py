"""Tests for the session actor, driven by an in-memory fake helper."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from termport.config.models import TermportConfig
from termport.errors import (
    CommandRejectedError,
    CommandTimeoutError,
    FailureReason,
    HandshakeError,
    NotConnectedError,
    ProtocolDesyncError,
    ResponseDecodeError,
    SessionBusyError,
    SessionFailedError,
    SpawnError,
    TermportError,
)
from termport.process import ExitStatus
from termport.protocol import codec
from termport.protocol.models import Cell, Event, EventType
from termport.session.actor import TermSession
from termport.session.handshake import Stage
from termport.trace.recorder import TraceRecorder, read_trace

# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #


class FakeChild:
    """Stands in for ``ChildProcess``: a stdout stream and an exit latch."""

    def __init__(self) -> None:
        self.pid = 4242
        self.stdout = asyncio.StreamReader()
        self.returncode: int | None = None
        self._exited = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.returncode is None

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stdout.feed_eof()
            self._exited.set()

    async def wait(self) -> ExitStatus:
        await self._exited.wait()
        assert self.returncode is not None
        return ExitStatus(self.returncode)


class FakeSupervisor:
    """Hands out one FakeChild and records how it was terminated."""

    def __init__(self, child: FakeChild, spawn_error: Exception | None = None) -> None:
        self.child = child
        self.spawn_error = spawn_error
        self.graceful: list[bool] = []

    async def spawn(self, path: Path) -> FakeChild:
        if self.spawn_error is not None:
            raise self.spawn_error
        return self.child

    async def terminate(
        self,
        child: FakeChild,
        request_shutdown: Callable[[], Awaitable[None]] | None = None,
    ) -> ExitStatus:
        self.graceful.append(request_shutdown is not None)
        if child.running and request_shutdown is not None:
            try:
                await request_shutdown()
            except TermportError:
                pass
        child.exit(0)
        return await child.wait()


class FakeWriter:
    """Collects written lines and answers ``shutdown`` like a real helper."""

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self._reader = reader
        self.lines: list[str] = []
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self.closed = False

    def write(self, data: bytes) -> None:
        line = data.decode().removesuffix("\n")
        self.lines.append(line)
        self._queue.put_nowait(line)
        if line == "shutdown" and not self._reader.at_eof():
            self._reader.feed_data(b"OK\n")
            self._reader.feed_eof()

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass

    async def next_line(self, timeout: float = 1.0) -> str:
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)


class RecordingObserver:
    def __init__(self, fail_on_event: bool = False) -> None:
        self.events: list[Event] = []
        self.fatal: list[SessionFailedError] = []
        self.fail_on_event = fail_on_event

    def on_event(self, event: Event) -> None:
        self.events.append(event)
        if self.fail_on_event:
            raise RuntimeError("observer bug")

    def on_fatal(self, error: SessionFailedError) -> None:
        self.fatal.append(error)


class Harness:
    """One TermSession wired to fakes."""

    def __init__(
        self,
        config: TermportConfig | None = None,
        observer: RecordingObserver | None = None,
        trace: TraceRecorder | None = None,
        spawn_error: Exception | None = None,
        open_error: Exception | None = None,
    ) -> None:
        self.child = FakeChild()
        self.supervisor = FakeSupervisor(self.child, spawn_error)
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter(self.reader)
        self.observer = observer or RecordingObserver()
        self.addresses: list[str] = []
        self.open_error = open_error
        self.session = TermSession(
            "/fake/termbox_port",
            self.observer,
            config,
            supervisor=self.supervisor,  # type: ignore[arg-type]
            opener=self._open,
            trace=trace,
        )

    async def _open(self, address: str) -> tuple[Any, Any]:
        self.addresses.append(address)
        if self.open_error is not None:
            raise self.open_error
        return self.reader, self.writer

    async def connect(self, handshake: bytes = b"OK /tmp/s.sock\n") -> None:
        start = asyncio.create_task(self.session.start())
        await _wait_for(lambda: self.session.stage is Stage.AWAITING_HANDSHAKE_DATA)
        self.child.stdout.feed_data(handshake)
        await start

    def reply(self, data: bytes) -> None:
        self.reader.feed_data(data)


def _make_config(**sections: dict[str, Any]) -> TermportConfig:
    return TermportConfig.model_validate(sections)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


# ------------------------------------------------------------------ #
# Handshake through the session
# ------------------------------------------------------------------ #


class TestStart:
    async def test_connects_on_address_line(self) -> None:
        h = Harness()
        await h.connect()
        assert h.session.stage is Stage.CONNECTED
        assert h.session.address == "/tmp/s.sock"
        assert h.addresses == ["/tmp/s.sock"]
        assert h.session.pid == 4242
        await h.session.close()

    async def test_handshake_split_across_chunks(self) -> None:
        h = Harness()
        start = asyncio.create_task(h.session.start())
        await _wait_for(lambda: h.session.stage is Stage.AWAITING_HANDSHAKE_DATA)
        for piece in (b"OK ", b"/tmp/", b"s.sock", b"\n"):
            h.child.stdout.feed_data(piece)
            await asyncio.sleep(0)
        await start
        assert h.session.stage is Stage.CONNECTED
        await h.session.close()

    async def test_garbage_handshake_fails(self) -> None:
        h = Harness()
        with pytest.raises(HandshakeError) as exc_info:
            await h.connect(b"garbage\n")
        assert exc_info.value.reason is FailureReason.INVALID_HANDSHAKE
        assert h.session.stage is Stage.FAILED
        assert [e.reason for e in h.observer.fatal] == [FailureReason.INVALID_HANDSHAKE]
        assert not h.child.running

    async def test_handshake_timeout(self) -> None:
        h = Harness(config=_make_config(timeouts={"handshake": 0.05}))
        with pytest.raises(HandshakeError) as exc_info:
            await h.session.start()
        assert exc_info.value.reason is FailureReason.TIMEOUT
        assert h.session.stage is Stage.FAILED

    async def test_process_exit_during_handshake(self) -> None:
        h = Harness()
        start = asyncio.create_task(h.session.start())
        await _wait_for(lambda: h.session.stage is Stage.AWAITING_HANDSHAKE_DATA)
        h.child.exit(1)
        with pytest.raises(HandshakeError) as exc_info:
            await start
        assert exc_info.value.reason is FailureReason.PROCESS_EXITED
        assert exc_info.value.detail == "helper exited with code 1"

    async def test_connect_failure(self) -> None:
        h = Harness(open_error=FileNotFoundError("no such socket"))
        with pytest.raises(HandshakeError) as exc_info:
            await h.connect()
        assert exc_info.value.reason is FailureReason.CONNECT_FAILED
        assert "/tmp/s.sock" in exc_info.value.detail
        assert len(h.observer.fatal) == 1

    async def test_spawn_failure_is_raised_directly(self) -> None:
        h = Harness(spawn_error=SpawnError("Helper executable not found: /fake"))
        with pytest.raises(SpawnError):
            await h.session.start()
        assert h.session.stage is Stage.FAILED
        assert h.session.failure is not None
        assert h.session.failure.reason is FailureReason.SPAWN_FAILED
        assert h.observer.fatal == []

    async def test_start_twice_is_rejected(self) -> None:
        h = Harness()
        await h.connect()
        with pytest.raises(RuntimeError, match="only be called once"):
            await h.session.start()
        await h.session.close()

    async def test_context_manager(self) -> None:
        h = Harness()
        h.child.stdout.feed_data(b"OK /tmp/s.sock\n")
        async with h.session as term:
            assert term.stage is Stage.CONNECTED
        assert h.session.stage is Stage.FAILED
        assert h.session.failure is not None
        assert h.session.failure.reason is FailureReason.SHUTDOWN


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


class TestCommands:
    async def test_width(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.width())
        assert await h.writer.next_line() == "width"
        h.reply(b"OK_WIDTH 80\n")
        assert await task == 80
        await h.session.close()

    async def test_get_cell(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.get_cell(3, 4))
        assert await h.writer.next_line() == "get_cell 3 4"
        h.reply(b"OK_CELL 3 4 A 7 0\n")
        assert await task == Cell(x=3, y=4, char="A", fg=7, bg=0)
        await h.session.close()

    async def test_response_split_across_chunks(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.height())
        await h.writer.next_line()
        h.reply(b"OK_HEI")
        await asyncio.sleep(0.01)
        assert not task.done()
        h.reply(b"GHT 24\r\n")
        assert await task == 24
        await h.session.close()

    @pytest.mark.parametrize(
        ("call", "expected"),
        [
            (lambda s: s.present(), "present"),
            (lambda s: s.clear(), "clear"),
            (lambda s: s.print(1, 2, 7, 0, "hi\nthere"), "print 1 2 7 0 hi there"),
            (lambda s: s.change_cell(0, 0, "A", 2, 0), "change_cell 0 0 65 2 0"),
            (lambda s: s.set_cursor(5, 6), "set_cursor 5 6"),
            (lambda s: s.set_input_mode(1), "set_input_mode 1"),
            (lambda s: s.set_output_mode(2), "set_output_mode 2"),
            (lambda s: s.set_clear_attributes(7, 0), "set_clear_attributes 7 0"),
        ],
    )
    async def test_ack_commands(self, call: Any, expected: str) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(call(h.session))
        assert await h.writer.next_line() == expected
        h.reply(b"OK\n")
        assert await task is None
        await h.session.close()

    async def test_error_response_rejects_command(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.set_cursor(999, 999))
        await h.writer.next_line()
        h.reply(b"ERROR out_of_bounds\n")
        with pytest.raises(CommandRejectedError) as exc_info:
            await task
        assert exc_info.value.reason == "out_of_bounds"
        assert exc_info.value.command == "set_cursor"
        assert h.session.stage is Stage.CONNECTED
        await h.session.close()

    async def test_not_connected_before_start(self) -> None:
        h = Harness()
        with pytest.raises(NotConnectedError):
            await h.session.present()

    async def test_second_command_is_rejected_while_pending(self) -> None:
        h = Harness()
        await h.connect()
        first = asyncio.create_task(h.session.width())
        await h.writer.next_line()
        assert h.session.busy
        with pytest.raises(SessionBusyError, match="width is still pending"):
            await h.session.height()
        assert h.writer.lines == ["width"]
        h.reply(b"OK_WIDTH 80\n")
        assert await first == 80
        assert not h.session.busy
        await h.session.close()

    async def test_timeout_releases_caller_and_keeps_session(self) -> None:
        h = Harness(config=_make_config(timeouts={"command": 0.05}))
        await h.connect()
        with pytest.raises(CommandTimeoutError) as exc_info:
            await h.session.present()
        assert exc_info.value.command == "present"
        assert h.session.stage is Stage.CONNECTED
        assert not h.session.busy

        task = asyncio.create_task(h.session.width())
        await _wait_for(lambda: h.writer.lines[-1:] == ["width"])
        h.reply(b"OK_WIDTH 80\n")
        assert await task == 80
        await h.session.close()

    async def test_explicit_timeout_overrides_default(self) -> None:
        h = Harness()
        await h.connect()
        with pytest.raises(CommandTimeoutError) as exc_info:
            await h.session.send_command(codec.clear(), timeout=0.02)
        assert exc_info.value.timeout == 0.02
        await h.session.close()

    async def test_debug_send_event_resolves_on_write(self) -> None:
        h = Harness()
        await h.connect()
        event = Event.from_fields([1, 0, 0, ord("x"), 0, 0, 0, 0])
        await h.session.debug_send_event(event)
        assert h.writer.lines == ["DEBUG_SEND_EVENT 1 0 0 120 0 0 0 0"]
        assert not h.session.busy
        h.reply(b"EVENT 1 0 0 120 0 0 0 0\n")
        await _wait_for(lambda: len(h.observer.events) == 1)
        assert h.observer.events[0] == event
        await h.session.close()


# ------------------------------------------------------------------ #
# Correlation
# ------------------------------------------------------------------ #


class TestCorrelation:
    async def test_event_while_clear_pending(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.clear())
        await h.writer.next_line()
        h.reply(b"EVENT 1 0 0 113 0 0 0 0\n")
        await _wait_for(lambda: len(h.observer.events) == 1)
        assert not task.done()
        assert h.observer.events[0].type is EventType.KEY
        assert h.observer.events[0].char == "q"
        h.reply(b"OK\n")
        assert await task is None
        await h.session.close()

    async def test_helper_event_object_while_clear_pending(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.clear())
        await h.writer.next_line()
        h.reply(b'EVENT {"type":1, "mod":0, "key":0, "ch":113, "w":0, "h":0, "x":0, "y":0}\n')
        await _wait_for(lambda: len(h.observer.events) == 1)
        assert not task.done()
        assert h.observer.events[0].char == "q"
        h.reply(b"OK\n")
        assert await task is None
        assert not h.session.busy
        await h.session.close()

    async def test_events_without_pending_command(self) -> None:
        h = Harness()
        await h.connect()
        h.reply(b"EVENT 2 0 0 0 120 40 0 0\nEVENT 3 0 0 0 0 0 5 6\n")
        await _wait_for(lambda: len(h.observer.events) == 2)
        assert [e.type for e in h.observer.events] == [EventType.RESIZE, EventType.MOUSE]
        await h.session.close()

    async def test_mismatched_response_is_discarded(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.present())
        await h.writer.next_line()
        h.reply(b"OK_WIDTH 80\n")
        await asyncio.sleep(0.01)
        assert not task.done()
        h.reply(b"OK\n")
        assert await task is None
        await h.session.close()

    async def test_cell_at_wrong_coordinates_does_not_match(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.get_cell(3, 4))
        await h.writer.next_line()
        h.reply(b"OK_CELL 4 3 B 1 0\nOK_CELL 3 4 A 7 0\n")
        cell = await task
        assert (cell.x, cell.y, cell.char) == (3, 4, "A")
        await h.session.close()

    async def test_repeated_mismatches_fail_with_desync(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.get_cell(3, 4))
        await h.writer.next_line()
        h.reply(b"OK\nOK\nOK\n")
        with pytest.raises(ProtocolDesyncError):
            await task
        assert h.session.stage is Stage.CONNECTED
        assert not h.session.busy
        await h.session.close()

    async def test_desync_threshold_zero_never_fails(self) -> None:
        h = Harness(config=_make_config(protocol={"desync_threshold": 0}))
        await h.connect()
        task = asyncio.create_task(h.session.width())
        await h.writer.next_line()
        h.reply(b"OK\n" * 5 + b"OK_WIDTH 100\n")
        assert await task == 100
        await h.session.close()

    async def test_malformed_line_fails_pending_command(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.width())
        await h.writer.next_line()
        h.reply(b"OK_WIDTH wide\n")
        with pytest.raises(ResponseDecodeError, match="OK_WIDTH"):
            await task
        assert h.session.stage is Stage.CONNECTED
        await h.session.close()

    async def test_unrecognized_and_stray_lines_are_ignored(self) -> None:
        h = Harness()
        await h.connect()
        h.reply(b"HELLO\nOK\nOK_WIDTH bad\n\n")
        await asyncio.sleep(0.01)
        task = asyncio.create_task(h.session.height())
        await _wait_for(lambda: h.writer.lines[-1:] == ["height"])
        h.reply(b"OK_HEIGHT 24\n")
        assert await task == 24
        assert h.observer.fatal == []
        await h.session.close()

    async def test_observer_exception_does_not_break_session(self) -> None:
        h = Harness(observer=RecordingObserver(fail_on_event=True))
        await h.connect()
        h.reply(b"EVENT 1 0 0 97 0 0 0 0\n")
        await _wait_for(lambda: len(h.observer.events) == 1)
        task = asyncio.create_task(h.session.width())
        await _wait_for(lambda: h.writer.lines[-1:] == ["width"])
        h.reply(b"OK_WIDTH 80\n")
        assert await task == 80
        await h.session.close()


# ------------------------------------------------------------------ #
# Fatal failures
# ------------------------------------------------------------------ #


class TestFatal:
    async def test_channel_close_while_present_pending(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.present())
        await h.writer.next_line()
        h.reader.feed_eof()
        with pytest.raises(SessionFailedError) as exc_info:
            await task
        assert not isinstance(exc_info.value, HandshakeError)
        assert exc_info.value.reason is FailureReason.CHANNEL_CLOSED
        assert h.session.stage is Stage.FAILED
        assert h.observer.fatal == [exc_info.value]
        assert h.writer.closed
        await h.session.close()
        assert h.supervisor.graceful == [False]
        assert not h.child.running

    async def test_process_exit_after_connect(self) -> None:
        h = Harness()
        await h.connect()
        h.child.exit(-9)
        await _wait_for(lambda: h.session.stage is Stage.FAILED)
        assert h.session.failure is not None
        assert h.session.failure.reason is FailureReason.PROCESS_EXITED
        assert h.session.failure.detail == "helper killed by SIGKILL"
        assert len(h.observer.fatal) == 1
        await h.session.close()

    async def test_buffer_overflow_is_fatal(self) -> None:
        h = Harness(config=_make_config(protocol={"max_line_bytes": 64}))
        await h.connect()
        h.reply(b"x" * 100)
        await _wait_for(lambda: h.session.stage is Stage.FAILED)
        assert h.observer.fatal[0].reason is FailureReason.BUFFER_OVERFLOW
        await h.session.close()

    async def test_commands_after_failure_are_rejected(self) -> None:
        h = Harness()
        await h.connect()
        h.reader.feed_eof()
        await _wait_for(lambda: h.session.stage is Stage.FAILED)
        with pytest.raises(NotConnectedError, match="channel-closed"):
            await h.session.present()
        await h.session.close()

    async def test_fatal_notified_once(self) -> None:
        h = Harness()
        await h.connect()
        h.reader.feed_eof()
        h.child.exit(1)
        await _wait_for(lambda: h.session.stage is Stage.FAILED)
        await h.session.close()
        assert len(h.observer.fatal) == 1


# ------------------------------------------------------------------ #
# Close
# ------------------------------------------------------------------ #


class TestClose:
    async def test_close_sends_shutdown(self) -> None:
        h = Harness()
        await h.connect()
        await h.session.close()
        assert h.writer.lines == ["shutdown"]
        assert h.supervisor.graceful == [True]
        assert h.session.stage is Stage.FAILED
        assert h.observer.fatal == []

    async def test_close_is_idempotent(self) -> None:
        h = Harness()
        await h.connect()
        await asyncio.gather(h.session.close(), h.session.close())
        await h.session.close()
        assert h.writer.lines == ["shutdown"]
        assert h.supervisor.graceful == [True]

    async def test_close_before_start(self) -> None:
        h = Harness()
        await h.session.close()
        assert h.supervisor.graceful == []

    async def test_close_fails_pending_command_without_fatal(self) -> None:
        h = Harness()
        await h.connect()
        task = asyncio.create_task(h.session.present())
        await h.writer.next_line()
        await h.session.close()
        with pytest.raises(SessionFailedError) as exc_info:
            await task
        assert exc_info.value.reason is FailureReason.SHUTDOWN
        assert h.observer.fatal == []

    async def test_close_during_handshake(self) -> None:
        h = Harness()
        start = asyncio.create_task(h.session.start())
        await _wait_for(lambda: h.session.stage is Stage.AWAITING_HANDSHAKE_DATA)
        await h.session.close()
        with pytest.raises(HandshakeError) as exc_info:
            await start
        assert exc_info.value.reason is FailureReason.SHUTDOWN
        assert h.supervisor.graceful == [False]
        assert h.observer.fatal == []


# ------------------------------------------------------------------ #
# Trace
# ------------------------------------------------------------------ #


class TestSessionTrace:
    async def test_wire_traffic_is_traced(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("/fake/termbox_port", tmp_path)
        h = Harness(trace=recorder)
        await h.connect()
        task = asyncio.create_task(h.session.width())
        await h.writer.next_line()
        h.reply(b"OK_WIDTH 80\n")
        await task
        await h.session.close()

        records = read_trace(recorder.trace_file)
        types = [r.type for r in records]
        assert types[0] == "trace_start"
        assert types[-1] == "trace_end"
        wire = [(r.direction, r.line) for r in records if r.type == "wire"]
        assert ("out", "width") in wire
        assert ("in", "OK_WIDTH 80") in wire
        stages = [r.stage for r in records if r.type == "stage"]
        assert stages == ["awaiting_handshake_data", "connecting_channel", "connected"]
        assert records[-1].reason == "shutdown"

    async def test_trace_file_opened_only_on_start(self, tmp_path: Path) -> None:
        trace_dir = tmp_path / "traces"
        config = _make_config(trace={"enabled": True, "dir": str(trace_dir)})
        h = Harness(config=config)
        assert not trace_dir.exists()

        await h.connect()
        await h.session.close()

        files = list(trace_dir.glob("*.jsonl"))
        assert len(files) == 1
        assert read_trace(files[0])[-1].type == "trace_end"

    async def test_close_before_start_ends_trace(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("/fake/termbox_port", tmp_path)
        h = Harness(trace=recorder)
        await h.session.close()

        assert recorder.closed
        records = read_trace(recorder.trace_file)
        assert [r.type for r in records] == ["trace_start", "trace_end"]
        with pytest.raises(RuntimeError, match="only be called once"):
            await h.session.start()
