"""Encode commands into wire lines and decode helper lines into typed responses.

Every function here is pure: no I/O, no session state.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from pydantic import ValidationError

from termport.protocol.models import (
    EVENT_FIELDS,
    Cell,
    CellResponse,
    Command,
    ErrorResponse,
    Event,
    EventResponse,
    MalformedLine,
    OkResponse,
    Response,
    ResponseShape,
    UnrecognizedLine,
    ValueResponse,
)

_INT_RE = re.compile(r"^-?\d+$")
_UINT_RE = re.compile(r"^\d+$")
_OK_CELL_RE = re.compile(r"^OK_CELL\s+(-?\d+)\s+(-?\d+)\s(.*)\s(\d+)\s+(\d+)$")
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class CommandSpec:
    """Arity, argument names and expected response for one wire command."""

    name: str
    arg_names: tuple[str, ...]
    expects: ResponseShape
    text_tail: bool = False


COMMANDS: dict[str, CommandSpec] = {
    spec.name: spec
    for spec in (
        CommandSpec("present", (), ResponseShape.ACK),
        CommandSpec("clear", (), ResponseShape.ACK),
        CommandSpec(
            "print", ("x", "y", "fg", "bg", "text"), ResponseShape.ACK, text_tail=True
        ),
        CommandSpec(
            "change_cell", ("x", "y", "codepoint", "fg", "bg"), ResponseShape.ACK
        ),
        CommandSpec("get_cell", ("x", "y"), ResponseShape.CELL),
        CommandSpec("width", (), ResponseShape.WIDTH),
        CommandSpec("height", (), ResponseShape.HEIGHT),
        CommandSpec("set_cursor", ("x", "y"), ResponseShape.ACK),
        CommandSpec("set_input_mode", ("mode",), ResponseShape.ACK),
        CommandSpec("set_output_mode", ("mode",), ResponseShape.ACK),
        CommandSpec("set_clear_attributes", ("fg", "bg"), ResponseShape.ACK),
        CommandSpec("shutdown", (), ResponseShape.ACK),
        # The helper answers with an EVENT line rather than an acknowledgement.
        CommandSpec("DEBUG_SEND_EVENT", EVENT_FIELDS, ResponseShape.NONE),
    )
}


# ------------------------------------------------------------------ #
# Command building
# ------------------------------------------------------------------ #


def build_command(name: str, *args: int | str) -> Command:
    """Validate *args* against the command table and return a ``Command``.

    Raises ``ValueError`` for unknown commands, wrong arity, non-integer
    numeric arguments, or free text containing a line terminator.
    """
    spec = COMMANDS.get(name)
    if spec is None:
        msg = f"Unknown command '{name}'"
        raise ValueError(msg)
    if len(args) != len(spec.arg_names):
        msg = (
            f"Command '{name}' takes {len(spec.arg_names)} argument(s) "
            f"({', '.join(spec.arg_names) or 'none'}), got {len(args)}"
        )
        raise ValueError(msg)

    for index, (arg_name, value) in enumerate(zip(spec.arg_names, args, strict=True)):
        is_text = spec.text_tail and index == len(args) - 1
        if is_text:
            if not isinstance(value, str) or not value:
                msg = f"Argument '{arg_name}' of '{name}' must be non-empty text"
                raise ValueError(msg)
            if _LINE_BREAK_RE.search(value):
                msg = f"Argument '{arg_name}' of '{name}' contains a line terminator"
                raise ValueError(msg)
        elif not isinstance(value, int) or isinstance(value, bool):
            msg = f"Argument '{arg_name}' of '{name}' must be an integer, got {value!r}"
            raise ValueError(msg)

    return Command(name=name, args=tuple(args), expects=spec.expects)


def present() -> Command:
    return build_command("present")


def clear() -> Command:
    return build_command("clear")


def print_text(x: int, y: int, fg: int, bg: int, text: str) -> Command:
    """Build a ``print`` command, flattening line breaks in *text* to spaces."""
    return build_command("print", x, y, fg, bg, _LINE_BREAK_RE.sub(" ", text))


def change_cell(x: int, y: int, char: str | int, fg: int, bg: int) -> Command:
    """Build a ``change_cell`` command from a one-character string or a code point."""
    if isinstance(char, str):
        if len(char) != 1:
            msg = f"change_cell expects a single character, got {char!r}"
            raise ValueError(msg)
        codepoint = ord(char)
    else:
        codepoint = char
    if codepoint < 0 or codepoint > 0x10FFFF:
        msg = f"Invalid code point {codepoint}"
        raise ValueError(msg)
    return build_command("change_cell", x, y, codepoint, fg, bg)


def get_cell(x: int, y: int) -> Command:
    return build_command("get_cell", x, y)


def width() -> Command:
    return build_command("width")


def height() -> Command:
    return build_command("height")


def set_cursor(x: int, y: int) -> Command:
    return build_command("set_cursor", x, y)


def set_input_mode(mode: int) -> Command:
    return build_command("set_input_mode", mode)


def set_output_mode(mode: int) -> Command:
    return build_command("set_output_mode", mode)


def set_clear_attributes(fg: int, bg: int) -> Command:
    return build_command("set_clear_attributes", fg, bg)


def shutdown() -> Command:
    return build_command("shutdown")


def debug_send_event(event: Event) -> Command:
    """Ask the helper to echo *event* back as an ``EVENT`` line."""
    return build_command("DEBUG_SEND_EVENT", *event.to_fields())


# ------------------------------------------------------------------ #
# Encoding
# ------------------------------------------------------------------ #


def encode_command(command: Command) -> str:
    """Serialise *command* into one wire line, without the terminator."""
    parts = [command.name, *(str(arg) for arg in command.args)]
    for part in parts:
        if _LINE_BREAK_RE.search(part):
            msg = f"Command '{command.name}' argument contains a line terminator"
            raise ValueError(msg)
    return " ".join(parts)


def parse_command(line: str) -> Command:
    """Decode a command line produced by :func:`encode_command`.

    This is the helper's side of the wire; termport uses it in tests and in
    stand-in helpers.
    """
    name, _, rest = line.partition(" ")
    spec = COMMANDS.get(name)
    if spec is None:
        msg = f"Unknown command '{name}'"
        raise ValueError(msg)

    arity = len(spec.arg_names)
    if arity == 0:
        fields: list[str] = [rest] if rest else []
    elif spec.text_tail:
        fields = rest.split(" ", arity - 1)
    else:
        fields = rest.split(" ")

    if len(fields) != arity:
        msg = f"Command '{name}' expects {arity} argument(s), got {len(fields)}"
        raise ValueError(msg)

    args: list[int | str] = []
    for index, value in enumerate(fields):
        if spec.text_tail and index == arity - 1:
            args.append(value)
        elif _INT_RE.match(value):
            args.append(int(value))
        else:
            msg = f"Argument '{spec.arg_names[index]}' of '{name}' is not an integer: {value!r}"
            raise ValueError(msg)
    return build_command(name, *args)


# ------------------------------------------------------------------ #
# Decoding
# ------------------------------------------------------------------ #


def decode_line(line: str) -> Response:
    """Decode one line from the duplex channel.

    Never raises: a known keyword with bad fields yields ``MalformedLine`` and
    an unknown keyword yields ``UnrecognizedLine``.
    """
    text = line.strip(" \t")
    keyword, _, payload = text.partition(" ")

    match keyword:
        case "OK":
            if payload:
                return MalformedLine(line=line, reason="OK takes no arguments")
            return OkResponse()
        case "OK_WIDTH" | "OK_HEIGHT":
            return _decode_value(keyword, payload.strip(), line)
        case "OK_CELL":
            return _decode_cell(text, line)
        case "ERROR":
            reason = payload.strip()
            if not reason:
                return MalformedLine(line=line, reason="ERROR without a reason")
            return ErrorResponse(reason=reason)
        case "EVENT":
            return decode_event(payload, line)
        case _:
            return UnrecognizedLine(line=line)


def decode_event(payload: str, line: str = "") -> EventResponse | MalformedLine:
    """Decode the payload following ``EVENT``.

    The helper writes a keyed object, ``{"type":1, "mod":0, ...}``; the
    positional form, eight space-separated integers in wire order, is
    accepted as well.  Keys beyond the eight event fields are ignored.
    """
    raw = line or f"EVENT {payload}"
    body = payload.strip()
    if body.startswith("{"):
        values = _event_values_from_object(body)
    else:
        values = _event_values_from_fields(body.split())
    if isinstance(values, str):
        return MalformedLine(line=raw, reason=values)
    try:
        event = Event.from_fields(values)
    except ValidationError as exc:
        bad = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
        return MalformedLine(line=raw, reason=f"event field out of range: {bad}")
    return EventResponse(event=event)


def _event_values_from_object(body: str) -> list[int] | str:
    """Event integers in wire order, or the reason the object is unusable."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        return f"event object is not valid JSON: {exc.msg}"
    if not isinstance(data, dict):
        return "event payload is not an object"
    missing = [name for name in EVENT_FIELDS if name not in data]
    if missing:
        return f"event object lacks {', '.join(missing)}"
    values: list[int] = []
    for name in EVENT_FIELDS:
        value = data[name]
        if not isinstance(value, int) or isinstance(value, bool):
            return f"event field '{name}' is not an integer"
        values.append(value)
    return values


def _event_values_from_fields(fields: list[str]) -> list[int] | str:
    if len(fields) != len(EVENT_FIELDS):
        return f"expected {len(EVENT_FIELDS)} event fields, got {len(fields)}"
    for name, value in zip(EVENT_FIELDS, fields, strict=True):
        if not _INT_RE.match(value):
            return f"event field '{name}' is not an integer"
    return [int(value) for value in fields]


def _decode_value(keyword: str, payload: str, line: str) -> ValueResponse | MalformedLine:
    if not _UINT_RE.match(payload):
        return MalformedLine(line=line, reason=f"{keyword} expects a non-negative integer")
    name = "width" if keyword == "OK_WIDTH" else "height"
    return ValueResponse(name=name, value=int(payload))


def _decode_cell(text: str, line: str) -> CellResponse | MalformedLine:
    match = _OK_CELL_RE.match(text)
    if match is None:
        return MalformedLine(line=line, reason="OK_CELL expects x y char fg bg")
    x_s, y_s, char, fg_s, bg_s = match.groups()
    try:
        cell = Cell(x=int(x_s), y=int(y_s), char=char, fg=int(fg_s), bg=int(bg_s))
    except ValidationError as exc:
        return MalformedLine(line=line, reason=f"invalid OK_CELL fields: {exc.error_count()} error(s)")
    return CellResponse(cell=cell)


# ------------------------------------------------------------------ #
# Correlation
# ------------------------------------------------------------------ #


def matches(command: Command, response: Response) -> bool:
    """True if *response* is the shape *command* is waiting for."""
    match command.expects, response:
        case ResponseShape.ACK, OkResponse():
            return True
        case ResponseShape.WIDTH, ValueResponse(name="width"):
            return True
        case ResponseShape.HEIGHT, ValueResponse(name="height"):
            return True
        case ResponseShape.CELL, CellResponse(cell=cell):
            return (cell.x, cell.y) == tuple(command.args[:2])
        case _:
            return False
