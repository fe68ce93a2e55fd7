"""Pydantic v2 models for wire trace records."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _RecordBase(BaseModel):
    """Common envelope fields shared by every trace record."""

    model_config = ConfigDict(extra="forbid")

    ts: str = Field(description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(ge=0, description="Monotonic sequence number")


class TraceStartRecord(_RecordBase):
    """Emitted once when the trace file is opened."""

    type: Literal["trace_start"] = "trace_start"
    session_id: str = Field(description="Unique session identifier")
    helper: str = Field(description="Helper executable path")


class StageRecord(_RecordBase):
    """The session moved to a new lifecycle stage."""

    type: Literal["stage"] = "stage"
    stage: str = Field(description="Stage entered")
    detail: str = Field(default="", description="Address, pid or failure detail")


class WireRecord(_RecordBase):
    """One line written to or read from the duplex channel."""

    type: Literal["wire"] = "wire"
    direction: Literal["out", "in"] = Field(description="'out' to the helper, 'in' from it")
    line: str = Field(description="Line without its terminator")


class ErrorRecord(_RecordBase):
    """The session failed."""

    type: Literal["error"] = "error"
    reason: str = Field(description="Failure reason value")
    detail: str = Field(default="", description="Human-readable context")


class TraceEndRecord(_RecordBase):
    """Emitted once when the session is closed."""

    type: Literal["trace_end"] = "trace_end"
    reason: str = Field(description="Final failure reason, or 'shutdown'")
    duration_ms: int = Field(ge=0, description="Session duration in milliseconds")
    lines_out: int = Field(ge=0, description="Lines written to the helper")
    lines_in: int = Field(ge=0, description="Lines read from the helper")


def _record_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


TraceRecord = Annotated[
    Annotated[TraceStartRecord, Tag("trace_start")]
    | Annotated[StageRecord, Tag("stage")]
    | Annotated[WireRecord, Tag("wire")]
    | Annotated[ErrorRecord, Tag("error")]
    | Annotated[TraceEndRecord, Tag("trace_end")],
    Discriminator(_record_discriminator),
]
"""Discriminated union of every record a trace file can contain."""
