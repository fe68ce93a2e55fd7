"""Line framing for byte streams coming from the helper."""

from __future__ import annotations

from termport.errors import LineTooLongError

#: Line terminator used by both the handshake and the duplex channel.
TERMINATOR = b"\n"

#: Default guard for a single unterminated line (64 KB).
DEFAULT_MAX_LINE_BYTES = 65_536


def split_lines(remainder: bytes, chunk: bytes) -> tuple[list[bytes], bytes]:
    """Append *chunk* to *remainder* and cut out every complete line.

    Returns ``(lines, new_remainder)``.  Lines have the terminator (and a
    trailing ``\\r``, if any) removed; whatever follows the last terminator
    becomes the new remainder, which may be empty.
    """
    data = remainder + chunk
    *complete, rest = data.split(TERMINATOR)
    return [line.removesuffix(b"\r") for line in complete], rest


class LineBuffer:
    """Stateful wrapper around :func:`split_lines` with a growth guard.

    A ``max_bytes`` of 0 disables the guard.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self._remainder = b""
        self._max_bytes = max_bytes

    @property
    def remainder(self) -> bytes:
        """Bytes received after the last terminator."""
        return self._remainder

    def feed(self, chunk: bytes) -> list[bytes]:
        """Consume *chunk* and return the complete lines it finished.

        Raises ``LineTooLongError`` once the partial line outgrows the guard.
        """
        lines, self._remainder = split_lines(self._remainder, chunk)
        if self._max_bytes and len(self._remainder) > self._max_bytes:
            size = len(self._remainder)
            self._remainder = b""
            msg = f"Unterminated line of {size} bytes exceeds {self._max_bytes}"
            raise LineTooLongError(msg)
        return lines

    def take_remainder(self) -> bytes:
        """Return the partial line and reset the buffer."""
        rest, self._remainder = self._remainder, b""
        return rest
