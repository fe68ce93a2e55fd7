"""Pydantic v2 models for commands, responses and events on the duplex channel."""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

#: Wire order of the integer fields in an ``EVENT`` line.
EVENT_FIELDS = ("type", "mod", "key", "ch", "w", "h", "x", "y")


class ResponseShape(StrEnum):
    """The kind of response a command waits for."""

    ACK = "ack"
    WIDTH = "width"
    HEIGHT = "height"
    CELL = "cell"
    NONE = "none"


class EventType(StrEnum):
    """Event category derived from the helper's numeric type code."""

    KEY = "key"
    RESIZE = "resize"
    MOUSE = "mouse"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: int) -> EventType:
        return _EVENT_TYPE_CODES.get(code, cls.UNKNOWN)


_EVENT_TYPE_CODES = {1: EventType.KEY, 2: EventType.RESIZE, 3: EventType.MOUSE}

#: Modifier bits carried in ``Event.mod``.
MOD_ALT = 0x01
MOD_MOTION = 0x02


class Command(BaseModel):
    """An outbound request; the instance itself is the correlation key."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(description="Command keyword as written on the wire")
    args: tuple[int | str, ...] = Field(
        default=(),
        description="Positional arguments, already validated against the command table",
    )
    expects: ResponseShape = Field(
        default=ResponseShape.ACK,
        description="Response shape that releases the caller",
    )


class Cell(BaseModel):
    """Contents of one screen cell as reported by ``OK_CELL``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    x: int
    y: int
    char: str = Field(
        description="UTF-8 glyph, possibly a space; empty for a cell holding code point 0",
    )
    fg: int = Field(ge=0)
    bg: int = Field(ge=0)


class Event(BaseModel):
    """An unsolicited notification from the helper."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: EventType
    type_code: int = Field(ge=0, le=0xFF)
    mod: int = Field(ge=0, le=0xFF)
    key: int = Field(ge=0, le=0xFFFF)
    ch: int = Field(ge=0, le=0x10FFFF)
    w: int = Field(ge=_INT32_MIN, le=_INT32_MAX)
    h: int = Field(ge=_INT32_MIN, le=_INT32_MAX)
    x: int = Field(ge=_INT32_MIN, le=_INT32_MAX)
    y: int = Field(ge=_INT32_MIN, le=_INT32_MAX)

    @classmethod
    def from_fields(cls, values: Sequence[int]) -> Event:
        """Build an event from the eight integers in wire order.

        Raises ``ValueError`` for a wrong count and pydantic's
        ``ValidationError`` for out-of-range values.
        """
        if len(values) != len(EVENT_FIELDS):
            msg = f"Expected {len(EVENT_FIELDS)} event fields, got {len(values)}"
            raise ValueError(msg)
        data = dict(zip(EVENT_FIELDS, values, strict=True))
        code = data.pop("type")
        return cls(type=EventType.from_code(code), type_code=code, **data)

    def to_fields(self) -> tuple[int, ...]:
        """Return the eight integers in wire order."""
        return (
            self.type_code, self.mod, self.key, self.ch,
            self.w, self.h, self.x, self.y,
        )

    @property
    def char(self) -> str | None:
        """The typed character, or None for special keys."""
        return chr(self.ch) if self.ch else None

    @property
    def alt(self) -> bool:
        return bool(self.mod & MOD_ALT)

    @property
    def motion(self) -> bool:
        return bool(self.mod & MOD_MOTION)


# ------------------------------------------------------------------ #
# Responses
# ------------------------------------------------------------------ #


class _ResponseBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class OkResponse(_ResponseBase):
    """Plain acknowledgement (``OK``)."""

    kind: Literal["ok"] = "ok"


class ValueResponse(_ResponseBase):
    """Scalar acknowledgement (``OK_WIDTH`` / ``OK_HEIGHT``)."""

    kind: Literal["value"] = "value"
    name: Literal["width", "height"]
    value: int = Field(ge=0)


class CellResponse(_ResponseBase):
    """Structured acknowledgement (``OK_CELL``)."""

    kind: Literal["cell"] = "cell"
    cell: Cell


class ErrorResponse(_ResponseBase):
    """The helper refused the pending command (``ERROR <reason>``)."""

    kind: Literal["error"] = "error"
    reason: str


class EventResponse(_ResponseBase):
    """An ``EVENT`` line; never correlated with a command."""

    kind: Literal["event"] = "event"
    event: Event


class UnrecognizedLine(_ResponseBase):
    """A line that starts with no known keyword."""

    kind: Literal["unrecognized"] = "unrecognized"
    line: str


class MalformedLine(_ResponseBase):
    """A known keyword whose fields failed to decode."""

    kind: Literal["malformed"] = "malformed"
    line: str
    reason: str


Response = Annotated[
    OkResponse
    | ValueResponse
    | CellResponse
    | ErrorResponse
    | EventResponse
    | UnrecognizedLine
    | MalformedLine,
    Field(discriminator="kind"),
]
"""Closed union of everything the duplex channel can deliver."""
