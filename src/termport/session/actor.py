"""Session actor — one task owning the helper process, its channel and the pending command.

Every input (caller submissions, handshake bytes, channel bytes, timer
expiry, process exit, close requests) arrives as a message on the inbox
queue.  Handlers run to completion without awaiting, so the session state
is only ever touched from the actor task.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from termport.config.models import TermportConfig
from termport.errors import (
    CommandRejectedError,
    CommandTimeoutError,
    FailureReason,
    HandshakeError,
    LineTooLongError,
    NotConnectedError,
    ProtocolDesyncError,
    ResponseDecodeError,
    SessionBusyError,
    SessionFailedError,
    SpawnError,
)
from termport.process import ChildProcess, ExitStatus, ProcessSupervisor
from termport.protocol import codec
from termport.protocol.buffer import LineBuffer
from termport.protocol.models import (
    Cell,
    CellResponse,
    Command,
    ErrorResponse,
    Event,
    EventResponse,
    MalformedLine,
    Response,
    ResponseShape,
    UnrecognizedLine,
    ValueResponse,
)
from termport.session.handshake import (
    Established,
    Failed,
    HandshakeMachine,
    OpenChannel,
    Stage,
    StartTimer,
    Step,
)
from termport.session.observer import NullObserver, SessionObserver
from termport.trace.recorder import TraceRecorder
from termport.transport import ChannelOpener, open_channel

logger = logging.getLogger(__name__)

_R = TypeVar("_R", ValueResponse, CellResponse)

#: Read size for the handshake pipe and the duplex channel.
_READ_CHUNK = 65_536


# ------------------------------------------------------------------ #
# Inbox messages
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class _Spawned:
    child: ChildProcess


@dataclass(frozen=True)
class _HandshakeBytes:
    data: bytes


@dataclass(frozen=True)
class _StdoutClosed:
    pass


@dataclass(frozen=True)
class _StageTimeout:
    stage: Stage


@dataclass(frozen=True)
class _ChannelOpened:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter


@dataclass(frozen=True)
class _ChannelOpenFailed:
    detail: str


@dataclass(frozen=True)
class _ChannelBytes:
    data: bytes


@dataclass(frozen=True)
class _ChannelClosed:
    pass


@dataclass(frozen=True)
class _ChannelFailed:
    detail: str


@dataclass(frozen=True)
class _Submit:
    command: Command
    waiter: asyncio.Future[Response | None]
    timeout: float


@dataclass(frozen=True)
class _CommandTimeout:
    token: int


@dataclass(frozen=True)
class _ProcessExited:
    status: ExitStatus


@dataclass(frozen=True)
class _Closing:
    pass


@dataclass(frozen=True)
class _Stop:
    pass


_Message = (
    _Spawned
    | _HandshakeBytes
    | _StdoutClosed
    | _StageTimeout
    | _ChannelOpened
    | _ChannelOpenFailed
    | _ChannelBytes
    | _ChannelClosed
    | _ChannelFailed
    | _Submit
    | _CommandTimeout
    | _ProcessExited
    | _Closing
    | _Stop
)


@dataclass
class _Pending:
    """The single in-flight command."""

    command: Command
    waiter: asyncio.Future[Response | None]
    timeout: float
    token: int
    timer: asyncio.TimerHandle
    mismatches: int = 0


# ------------------------------------------------------------------ #
# Session
# ------------------------------------------------------------------ #


class TermSession:
    """Supervised connection to one helper process.

    Usage::

        async with TermSession("/usr/local/bin/termbox_port", observer) as term:
            await term.print(0, 0, 7, 0, "hello")
            await term.present()

    At most one command is in flight; a second ``send_command`` while one is
    pending fails with ``SessionBusyError``.  Events go to *observer* as they
    arrive, and ``observer.on_fatal`` is called once if the session fails
    irrecoverably (not on ``close()``).
    """

    def __init__(
        self,
        helper_path: str | os.PathLike[str],
        observer: SessionObserver | None = None,
        config: TermportConfig | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        opener: ChannelOpener | None = None,
        trace: TraceRecorder | None = None,
    ) -> None:
        self._helper_path = Path(helper_path)
        self._observer: SessionObserver = observer if observer is not None else NullObserver()
        self._config = config if config is not None else TermportConfig()

        timeouts = self._config.timeouts
        protocol = self._config.protocol
        self._command_timeout = timeouts.command
        self._shutdown_timeout = timeouts.shutdown
        self._desync_threshold = protocol.desync_threshold

        self._supervisor = supervisor or ProcessSupervisor(
            stderr=self._config.helper.stderr,
            shutdown_wait=timeouts.shutdown,
            sigterm_wait=timeouts.terminate,
        )
        self._opener: ChannelOpener = opener or open_channel
        self._trace = trace

        self._machine = HandshakeMachine(
            handshake_timeout=timeouts.handshake,
            connect_timeout=timeouts.connect,
            max_line_bytes=protocol.max_line_bytes,
        )
        self._recv = LineBuffer(max_bytes=protocol.max_line_bytes)
        self._inbox: asyncio.Queue[_Message] = asyncio.Queue()

        self._child: ChildProcess | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._pending: _Pending | None = None
        self._tokens = itertools.count(1)
        self._consecutive_timeouts = 0

        self._ready: asyncio.Future[None] | None = None
        self._actor: asyncio.Task[None] | None = None
        self._timers: dict[Stage, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._drain_task: asyncio.Task[None] | None = None
        self._reaper: asyncio.Task[ExitStatus] | None = None
        self._close_task: asyncio.Task[None] | None = None

        self._closing = False
        self._fatal_notified = False
        self._failure: SessionFailedError | None = None

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def stage(self) -> Stage:
        return self._machine.stage

    @property
    def address(self) -> str | None:
        """Channel address announced by the helper, once known."""
        return self._machine.address

    @property
    def pid(self) -> int | None:
        return self._child.pid if self._child is not None else None

    @property
    def failure(self) -> SessionFailedError | None:
        """Why the session failed, or None while it is healthy."""
        return self._failure

    @property
    def busy(self) -> bool:
        return self._pending is not None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Spawn the helper and wait until the duplex channel is connected.

        Raises ``SpawnError`` if the helper cannot be started and
        ``HandshakeError`` if the handshake fails.
        """
        if self._actor is not None or self.stage is not Stage.STARTING:
            msg = "TermSession.start() may only be called once"
            raise RuntimeError(msg)

        if self._trace is None and self._config.trace.enabled:
            self._trace = TraceRecorder(str(self._helper_path), self._config.trace.dir)

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        try:
            child = await self._supervisor.spawn(self._helper_path)
        except SpawnError as exc:
            self._machine.fail(FailureReason.SPAWN_FAILED, str(exc))
            self._failure = HandshakeError(FailureReason.SPAWN_FAILED, str(exc))
            if self._trace is not None:
                self._trace.record_error(FailureReason.SPAWN_FAILED.value, str(exc))
                self._trace.end(FailureReason.SPAWN_FAILED.value)
            raise

        self._child = child
        self._actor = asyncio.create_task(self._run(), name=f"termport-session-{child.pid}")
        self._post(_Spawned(child))
        try:
            await self._ready
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        """Shut the helper down and stop the actor.  Idempotent."""
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._close_task)

    async def __aenter__(self) -> TermSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _shutdown(self) -> None:
        if self._actor is None:
            self._machine.fail(FailureReason.SHUTDOWN, "closed before start")
            if self._trace is not None:
                self._trace.end(FailureReason.SHUTDOWN.value)
            return

        if self.stage is not Stage.FAILED:
            self._post(_Closing())
        if self._reaper is None and self._child is not None:
            graceful = self._request_shutdown if self.stage is Stage.CONNECTED else None
            self._reaper = asyncio.create_task(self._supervisor.terminate(self._child, graceful))

        status: ExitStatus | None = None
        if self._reaper is not None:
            status = await self._reaper
        self._post(_Stop())
        await self._actor

        if self._writer is not None:
            with contextlib.suppress(OSError):
                await self._writer.wait_closed()
        if self._drain_task is not None:
            self._drain_task.cancel()
        if status is not None:
            logger.info("Session closed (%s)", status.describe())
        if self._trace is not None:
            reason = self._failure.reason if self._failure is not None else FailureReason.SHUTDOWN
            self._trace.end(reason.value)

    async def _request_shutdown(self) -> None:
        await self.send_command(codec.shutdown(), timeout=self._shutdown_timeout or None)

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    async def send_command(self, command: Command, timeout: float | None = None) -> Response | None:
        """Write *command* and wait for its matching response.

        Returns None for commands that expect no response.  Raises a
        ``CommandError`` subclass if the command fails on its own and
        ``SessionFailedError`` if the session dies while it is pending.
        """
        if self._actor is None or self.stage is not Stage.CONNECTED:
            raise NotConnectedError(self._not_connected_message())

        waiter: asyncio.Future[Response | None] = asyncio.get_running_loop().create_future()
        self._post(_Submit(command, waiter, timeout or self._command_timeout))
        return await waiter

    async def present(self) -> None:
        await self.send_command(codec.present())

    async def clear(self) -> None:
        await self.send_command(codec.clear())

    async def print(self, x: int, y: int, fg: int, bg: int, text: str) -> None:
        """Draw *text* starting at (x, y); line breaks become spaces."""
        await self.send_command(codec.print_text(x, y, fg, bg, text))

    async def change_cell(self, x: int, y: int, char: str | int, fg: int, bg: int) -> None:
        await self.send_command(codec.change_cell(x, y, char, fg, bg))

    async def get_cell(self, x: int, y: int) -> Cell:
        response = await self.send_command(codec.get_cell(x, y))
        return _expect(response, CellResponse).cell

    async def width(self) -> int:
        response = await self.send_command(codec.width())
        return _expect(response, ValueResponse).value

    async def height(self) -> int:
        response = await self.send_command(codec.height())
        return _expect(response, ValueResponse).value

    async def set_cursor(self, x: int, y: int) -> None:
        await self.send_command(codec.set_cursor(x, y))

    async def set_input_mode(self, mode: int) -> None:
        await self.send_command(codec.set_input_mode(mode))

    async def set_output_mode(self, mode: int) -> None:
        await self.send_command(codec.set_output_mode(mode))

    async def set_clear_attributes(self, fg: int, bg: int) -> None:
        await self.send_command(codec.set_clear_attributes(fg, bg))

    async def debug_send_event(self, event: Event) -> None:
        """Ask the helper to echo *event*; it arrives through the observer."""
        await self.send_command(codec.debug_send_event(event))

    # ------------------------------------------------------------------ #
    # Actor loop
    # ------------------------------------------------------------------ #

    def _post(self, message: _Message) -> None:
        self._inbox.put_nowait(message)

    async def _run(self) -> None:
        try:
            while self.stage is not Stage.FAILED:
                message = await self._inbox.get()
                try:
                    self._handle(message)
                except Exception as exc:
                    logger.exception("Session actor failed handling %s", type(message).__name__)
                    self._fail(FailureReason.CHANNEL_ERROR, f"internal error: {exc}")
        finally:
            self._drain_inbox()

    def _handle(self, message: _Message) -> None:
        match message:
            case _Spawned(child=child):
                self._spawn_task(self._pump_stdout(child), "stdout")
                self._spawn_task(self._watch_exit(child), "exit")
                self._apply(self._machine.on_spawned(), f"pid {child.pid}")
            case _HandshakeBytes(data=data):
                if self.stage is Stage.AWAITING_HANDSHAKE_DATA:
                    self._apply(self._machine.on_data(data))
                else:
                    self._log_helper_output(data)
            case _StdoutClosed():
                logger.debug("Helper closed its stdout")
            case _StageTimeout(stage=stage):
                self._apply(self._machine.on_timeout(stage))
            case _ChannelOpened(reader=reader, writer=writer):
                if self.stage is not Stage.CONNECTING_CHANNEL:
                    writer.close()
                    return
                self._writer = writer
                self._spawn_task(self._pump_channel(reader), "channel")
                self._apply(self._machine.on_channel_opened(), self._machine.address or "")
            case _ChannelOpenFailed(detail=detail):
                self._apply(self._machine.on_channel_failed(detail))
            case _ChannelBytes(data=data):
                self._on_channel_bytes(data)
            case _ChannelClosed():
                self._fail(FailureReason.CHANNEL_CLOSED, "helper closed the channel")
            case _ChannelFailed(detail=detail):
                self._fail(FailureReason.CHANNEL_ERROR, detail)
            case _Submit():
                self._on_submit(message)
            case _CommandTimeout(token=token):
                self._on_command_timeout(token)
            case _ProcessExited(status=status):
                if self._closing or self.stage is Stage.CONNECTED:
                    self._fail(FailureReason.PROCESS_EXITED, status.describe())
                else:
                    self._apply(self._machine.on_process_exit(status.describe()))
            case _Closing():
                self._closing = True
            case _Stop():
                self._fail(FailureReason.SHUTDOWN, "session closed")

    def _drain_inbox(self) -> None:
        """Settle whatever is still queued once the actor has stopped."""
        while not self._inbox.empty():
            match self._inbox.get_nowait():
                case _Submit(waiter=waiter):
                    _settle(waiter, error=NotConnectedError(self._not_connected_message()))
                case _ChannelOpened(writer=writer):
                    writer.close()
                case _:
                    pass

    # ------------------------------------------------------------------ #
    # Effects
    # ------------------------------------------------------------------ #

    def _apply(self, step: Step, detail: str = "") -> None:
        if self._trace is not None and step.effects and not isinstance(step.effects[-1], Failed):
            self._trace.record_stage(step.stage.value, detail)

        for effect in step.effects:
            match effect:
                case StartTimer(stage=stage, seconds=seconds):
                    self._cancel_timers()
                    loop = asyncio.get_running_loop()
                    self._timers[stage] = loop.call_later(seconds, self._post, _StageTimeout(stage))
                case OpenChannel(address=address):
                    if self._machine.carry_over:
                        self._log_helper_output(self._machine.carry_over)
                    logger.info("Connecting to helper channel at %s", address)
                    self._spawn_task(self._connect(address), "connect")
                case Established():
                    self._cancel_timers()
                    logger.info("Session connected (helper pid %s)", self.pid)
                    if self._ready is not None and not self._ready.done():
                        self._ready.set_result(None)
                case Failed():
                    self._on_failed(effect)

    def _fail(self, reason: FailureReason, detail: str) -> None:
        if self._closing:
            reason = FailureReason.SHUTDOWN
        self._apply(self._machine.fail(reason, detail))

    def _on_failed(self, failed: Failed) -> None:
        connected_once = Stage.CONNECTED in self._machine.history
        error_cls = SessionFailedError if connected_once else HandshakeError
        error = error_cls(failed.reason, failed.detail)
        self._failure = error

        if failed.reason is FailureReason.SHUTDOWN:
            logger.info("Session shut down")
        else:
            logger.error("Session failed: %s", error)
        if self._trace is not None:
            self._trace.record_error(failed.reason.value, failed.detail)

        self._cancel_timers()
        pending, self._pending = self._pending, None
        if pending is not None:
            pending.timer.cancel()
            _settle(pending.waiter, error=error)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)

        for task in self._tasks:
            task.cancel()
        if self._writer is not None:
            self._writer.close()

        if failed.reason is not FailureReason.SHUTDOWN:
            self._notify_fatal(error)
        if self._child is not None and self._reaper is None and not self._closing:
            self._reaper = asyncio.create_task(self._supervisor.terminate(self._child))

    def _cancel_timers(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    # ------------------------------------------------------------------ #
    # Commands and responses
    # ------------------------------------------------------------------ #

    def _on_submit(self, submit: _Submit) -> None:
        command, waiter = submit.command, submit.waiter
        if waiter.done():
            return
        if self.stage is not Stage.CONNECTED or self._writer is None:
            _settle(waiter, error=NotConnectedError(self._not_connected_message()))
            return
        if self._closing and command.name != "shutdown":
            _settle(waiter, error=NotConnectedError("Session is closing"))
            return
        if self._pending is not None:
            msg = f"Cannot send {command.name}: {self._pending.command.name} is still pending"
            _settle(waiter, error=SessionBusyError(msg))
            return

        try:
            line = codec.encode_command(command)
        except ValueError as exc:
            _settle(waiter, error=exc)
            return
        self._write_line(line)

        if command.expects is ResponseShape.NONE:
            _settle(waiter, result=None)
            return

        token = next(self._tokens)
        timer = asyncio.get_running_loop().call_later(
            submit.timeout, self._post, _CommandTimeout(token)
        )
        self._pending = _Pending(command, waiter, submit.timeout, token, timer)

    def _on_command_timeout(self, token: int) -> None:
        pending = self._pending
        if pending is None or pending.token != token:
            return
        self._pending = None
        self._consecutive_timeouts += 1
        logger.warning(
            "%s timed out after %.1fs (%d consecutive)",
            pending.command.name, pending.timeout, self._consecutive_timeouts,
        )
        _settle(pending.waiter, error=CommandTimeoutError(pending.command.name, pending.timeout))

    def _on_channel_bytes(self, data: bytes) -> None:
        if self.stage is not Stage.CONNECTED:
            return
        try:
            lines = self._recv.feed(data)
        except LineTooLongError as exc:
            self._fail(FailureReason.BUFFER_OVERFLOW, str(exc))
            return

        for raw in lines:
            if self.stage is not Stage.CONNECTED:
                return
            line = raw.decode("utf-8", errors="replace")
            if self._trace is not None:
                self._trace.record_wire("in", line)
            if not line.strip():
                continue
            self._dispatch(codec.decode_line(line))

    def _dispatch(self, response: Response) -> None:
        pending = self._pending
        match response:
            case EventResponse(event=event):
                self._notify_event(event)
            case UnrecognizedLine(line=line):
                logger.info("Ignoring unrecognized line from helper: %r", line)
            case MalformedLine(line=line, reason=reason):
                if pending is None:
                    logger.warning("Malformed line from helper (%s): %r", reason, line)
                else:
                    self._resolve(error=ResponseDecodeError(f"{reason}: {line!r}"))
            case ErrorResponse(reason=reason):
                if pending is None:
                    logger.warning("Helper reported ERROR %s with no command pending", reason)
                else:
                    self._resolve(error=CommandRejectedError(pending.command.name, reason))
            case _ if pending is None:
                logger.warning("Dropping %s response with no command pending", response.kind)
            case _ if codec.matches(pending.command, response):
                self._resolve(result=response)
            case _:
                self._on_mismatch(pending, response)

    def _on_mismatch(self, pending: _Pending, response: Response) -> None:
        pending.mismatches += 1
        logger.warning(
            "Discarding %s response while %s is pending (%d mismatch(es))",
            response.kind, pending.command.name, pending.mismatches,
        )
        if self._desync_threshold and pending.mismatches >= self._desync_threshold:
            msg = (
                f"{pending.command.name} received {pending.mismatches} "
                "responses that did not match it"
            )
            self._resolve(error=ProtocolDesyncError(msg))

    def _resolve(
        self,
        result: Response | None = None,
        error: BaseException | None = None,
    ) -> None:
        pending, self._pending = self._pending, None
        if pending is None:
            return
        pending.timer.cancel()
        self._consecutive_timeouts = 0
        if pending.waiter.done():
            logger.debug("Caller of %s went away before its response", pending.command.name)
            return
        _settle(pending.waiter, result=result, error=error)

    # ------------------------------------------------------------------ #
    # Channel I/O
    # ------------------------------------------------------------------ #

    def _write_line(self, line: str) -> None:
        writer = self._writer
        if writer is None:
            return
        if self._trace is not None:
            self._trace.record_wire("out", line)
        writer.write(line.encode("utf-8") + b"\n")
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain(writer))

    async def _drain(self, writer: asyncio.StreamWriter) -> None:
        try:
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            self._post(_ChannelFailed(f"write failed: {exc}"))

    # ------------------------------------------------------------------ #
    # Background tasks
    # ------------------------------------------------------------------ #

    def _spawn_task(self, coro: Coroutine[Any, Any, None], label: str) -> None:
        task = asyncio.create_task(coro, name=f"termport-{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _pump_stdout(self, child: ChildProcess) -> None:
        stream = child.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                self._post(_StdoutClosed())
                return
            self._post(_HandshakeBytes(chunk))

    async def _watch_exit(self, child: ChildProcess) -> None:
        status = await child.wait()
        self._post(_ProcessExited(status))

    async def _connect(self, address: str) -> None:
        try:
            reader, writer = await self._opener(address)
        except (OSError, ValueError) as exc:
            self._post(_ChannelOpenFailed(f"{address}: {exc}"))
            return
        self._post(_ChannelOpened(reader, writer))

    async def _pump_channel(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK)
                if not chunk:
                    self._post(_ChannelClosed())
                    return
                self._post(_ChannelBytes(chunk))
        except (ConnectionError, OSError) as exc:
            self._post(_ChannelFailed(f"read failed: {exc}"))

    # ------------------------------------------------------------------ #
    # Observer
    # ------------------------------------------------------------------ #

    def _notify_event(self, event: Event) -> None:
        try:
            self._observer.on_event(event)
        except Exception:
            logger.exception("Observer failed handling %s event", event.type.value)

    def _notify_fatal(self, error: SessionFailedError) -> None:
        if self._fatal_notified:
            return
        self._fatal_notified = True
        try:
            self._observer.on_fatal(error)
        except Exception:
            logger.exception("Observer failed handling fatal error")

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _log_helper_output(self, data: bytes) -> None:
        text = data.decode("utf-8", errors="replace").rstrip()
        if text:
            logger.debug("helper stdout: %s", text)

    def _not_connected_message(self) -> str:
        if self._failure is not None:
            return f"Session is not connected ({self._failure})"
        return f"Session is not connected (stage {self.stage.value})"


def _settle(
    waiter: asyncio.Future[Response | None],
    result: Response | None = None,
    error: BaseException | None = None,
) -> None:
    if waiter.done():
        return
    if error is not None:
        waiter.set_exception(error)
    else:
        waiter.set_result(result)


def _expect(response: Response | None, kind: type[_R]) -> _R:
    if not isinstance(response, kind):
        msg = f"Expected {kind.__name__}, got {type(response).__name__}"
        raise ResponseDecodeError(msg)
    return response
