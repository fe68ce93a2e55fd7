"""Exception taxonomy shared by the session, codec and supervisor."""

from __future__ import annotations

from enum import StrEnum


class FailureReason(StrEnum):
    """Why a session moved to the terminal ``Failed`` stage."""

    SPAWN_FAILED = "spawn-failed"
    INVALID_HANDSHAKE = "invalid-handshake"
    TIMEOUT = "timeout"
    PROCESS_EXITED = "process-exited"
    CONNECT_FAILED = "connect-failed"
    CHANNEL_CLOSED = "channel-closed"
    CHANNEL_ERROR = "channel-error"
    BUFFER_OVERFLOW = "buffer-overflow"
    SHUTDOWN = "shutdown"


class TermportError(Exception):
    """Base class for every error raised by termport."""


class SpawnError(TermportError):
    """The helper executable is missing or could not be started."""


class SessionFailedError(TermportError):
    """The session failed irrecoverably and must be discarded."""

    def __init__(self, reason: FailureReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


class HandshakeError(SessionFailedError):
    """The session failed before reaching the connected stage."""


class CommandError(TermportError):
    """A single command failed; the session remains usable."""


class NotConnectedError(CommandError):
    """A command was sent while the session was not connected."""


class SessionBusyError(CommandError):
    """A command was sent while another one was still awaiting its response."""


class CommandRejectedError(CommandError):
    """The helper answered a command with ``ERROR <reason>``."""

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"{command} rejected by helper: {reason}")


class CommandTimeoutError(CommandError):
    """No response arrived before the command's deadline."""

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"No response to {command} within {timeout}s")


class ResponseDecodeError(CommandError):
    """A malformed line arrived while a command was waiting for its response."""


class ProtocolDesyncError(CommandError):
    """Repeated well-formed responses did not match the pending command."""


class ProtocolError(TermportError):
    """The byte stream from the helper violated the framing rules."""


class LineTooLongError(ProtocolError):
    """A partial line grew past the configured guard."""
