"""Handshake state machine — from a freshly spawned helper to a connected channel.

The machine is pure: it never touches sockets, processes or timers.  Each
input returns a :class:`Step` naming the resulting stage and the side
effects the session actor must perform.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from termport.errors import FailureReason, LineTooLongError
from termport.protocol.buffer import LineBuffer

logger = logging.getLogger(__name__)

_HANDSHAKE_RE = re.compile(r"^OK\s+(\S.*)$")

#: Max characters of an offending handshake line kept in failure details.
_PREVIEW_LEN = 120


class Stage(StrEnum):
    """Lifecycle stage of a session."""

    STARTING = "starting"
    AWAITING_HANDSHAKE_DATA = "awaiting_handshake_data"
    CONNECTING_CHANNEL = "connecting_channel"
    CONNECTED = "connected"
    FAILED = "failed"


#: Forward transitions; any non-terminal stage may additionally move to FAILED.
_NEXT_STAGE: dict[Stage, Stage] = {
    Stage.STARTING: Stage.AWAITING_HANDSHAKE_DATA,
    Stage.AWAITING_HANDSHAKE_DATA: Stage.CONNECTING_CHANNEL,
    Stage.CONNECTING_CHANNEL: Stage.CONNECTED,
}


class InvalidTransitionError(RuntimeError):
    """Raised when code attempts a stage change the lifecycle does not allow."""


def is_allowed(current: Stage, target: Stage) -> bool:
    """True if moving from *current* to *target* is a legal transition."""
    if current is Stage.FAILED:
        return False
    if target is Stage.FAILED:
        return True
    return _NEXT_STAGE.get(current) is target


# ------------------------------------------------------------------ #
# Effects
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class StartTimer:
    """Arm a one-shot deadline for *stage*."""

    stage: Stage
    seconds: float


@dataclass(frozen=True)
class OpenChannel:
    """Open the duplex channel at *address*."""

    address: str


@dataclass(frozen=True)
class Established:
    """The duplex channel is connected; release the creator."""


@dataclass(frozen=True)
class Failed:
    """The session failed; tear everything down."""

    reason: FailureReason
    detail: str = ""


Effect = StartTimer | OpenChannel | Established | Failed


@dataclass(frozen=True)
class Step:
    """Result of feeding one input into the machine."""

    stage: Stage
    effects: tuple[Effect, ...] = ()


# ------------------------------------------------------------------ #
# Machine
# ------------------------------------------------------------------ #


@dataclass
class HandshakeMachine:
    """Explicit FSM driving Starting → AwaitingHandshakeData → ConnectingChannel → Connected.

    ``carry_over`` holds handshake-channel bytes that followed the address
    line; they belong to whatever the helper prints next and are handed to
    the session rather than dropped.
    """

    handshake_timeout: float = 10.0
    connect_timeout: float = 5.0
    max_line_bytes: int = 4096
    stage: Stage = Stage.STARTING
    address: str | None = None
    carry_over: bytes = b""
    failure: Failed | None = None
    history: list[Stage] = field(default_factory=lambda: [Stage.STARTING])

    def __post_init__(self) -> None:
        self._buffer = LineBuffer(max_bytes=self.max_line_bytes)
        self._data_handlers: dict[Stage, Callable[[bytes], Step]] = {
            Stage.AWAITING_HANDSHAKE_DATA: self._data_while_awaiting,
        }

    # -- inputs --------------------------------------------------------- #

    def on_spawned(self) -> Step:
        """The helper process started."""
        if self.stage is not Stage.STARTING:
            return self._ignored("spawned")
        self._move(Stage.AWAITING_HANDSHAKE_DATA)
        return Step(
            self.stage,
            (StartTimer(Stage.AWAITING_HANDSHAKE_DATA, self.handshake_timeout),),
        )

    def on_data(self, chunk: bytes) -> Step:
        """Bytes arrived on the handshake channel."""
        handler = self._data_handlers.get(self.stage)
        if handler is None:
            return self._ignored("handshake data")
        return handler(chunk)

    def on_channel_opened(self) -> Step:
        """The duplex channel connected."""
        if self.stage is not Stage.CONNECTING_CHANNEL:
            return self._ignored("channel opened")
        self._move(Stage.CONNECTED)
        return Step(self.stage, (Established(),))

    def on_channel_failed(self, detail: str) -> Step:
        """Opening the duplex channel failed."""
        if self.stage is not Stage.CONNECTING_CHANNEL:
            return self._ignored("channel failure")
        return self.fail(FailureReason.CONNECT_FAILED, detail)

    def on_timeout(self, stage: Stage) -> Step:
        """The deadline armed for *stage* expired."""
        if self.stage is not stage or stage not in _NEXT_STAGE:
            return Step(self.stage)
        return self.fail(
            FailureReason.TIMEOUT, f"no progress while {stage.value.replace('_', ' ')}"
        )

    def on_process_exit(self, description: str) -> Step:
        """The helper exited before the channel was connected."""
        if self.stage in (Stage.CONNECTED, Stage.FAILED):
            return Step(self.stage)
        return self.fail(FailureReason.PROCESS_EXITED, description)

    def fail(self, reason: FailureReason, detail: str = "") -> Step:
        """Move to FAILED from any live stage."""
        if self.stage is Stage.FAILED:
            return Step(self.stage)
        self._move(Stage.FAILED)
        self.failure = Failed(reason, detail)
        return Step(self.stage, (self.failure,))

    # -- per-stage handlers ---------------------------------------------- #

    def _data_while_awaiting(self, chunk: bytes) -> Step:
        try:
            lines = self._buffer.feed(chunk)
        except LineTooLongError as exc:
            return self.fail(FailureReason.INVALID_HANDSHAKE, str(exc))
        if not lines:
            return Step(self.stage)

        first, *rest = lines
        text = first.decode("utf-8", errors="replace").strip()
        match = _HANDSHAKE_RE.match(text)
        if match is None:
            return self.fail(
                FailureReason.INVALID_HANDSHAKE,
                f"unexpected handshake line: {text[:_PREVIEW_LEN]!r}",
            )

        self.address = match.group(1).strip()
        self.carry_over = b"".join(line + b"\n" for line in rest)
        self.carry_over += self._buffer.take_remainder()
        logger.debug("Handshake received channel address %s", self.address)

        self._move(Stage.CONNECTING_CHANNEL)
        return Step(
            self.stage,
            (
                StartTimer(Stage.CONNECTING_CHANNEL, self.connect_timeout),
                OpenChannel(self.address),
            ),
        )

    # -- helpers ----------------------------------------------------------- #

    def _move(self, target: Stage) -> None:
        if not is_allowed(self.stage, target):
            msg = f"Illegal stage transition {self.stage.value} -> {target.value}"
            raise InvalidTransitionError(msg)
        logger.debug("Stage %s -> %s", self.stage.value, target.value)
        self.stage = target
        self.history.append(target)

    def _ignored(self, what: str) -> Step:
        logger.debug("Ignoring %s in stage %s", what, self.stage.value)
        return Step(self.stage)
