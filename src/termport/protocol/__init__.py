"""Wire protocol — line framing, typed models and the command/response codec."""

from termport.protocol.buffer import LineBuffer, split_lines
from termport.protocol.codec import (
    COMMANDS,
    build_command,
    decode_line,
    encode_command,
    parse_command,
)
from termport.protocol.models import (
    Cell,
    CellResponse,
    Command,
    ErrorResponse,
    Event,
    EventResponse,
    EventType,
    MalformedLine,
    OkResponse,
    Response,
    ResponseShape,
    UnrecognizedLine,
    ValueResponse,
)

__all__ = [
    "COMMANDS",
    "Cell",
    "CellResponse",
    "Command",
    "ErrorResponse",
    "Event",
    "EventResponse",
    "EventType",
    "LineBuffer",
    "MalformedLine",
    "OkResponse",
    "Response",
    "ResponseShape",
    "UnrecognizedLine",
    "ValueResponse",
    "build_command",
    "decode_line",
    "encode_command",
    "parse_command",
    "split_lines",
]
