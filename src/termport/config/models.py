"""Pydantic v2 models for termport.yaml configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class HelperConfig(BaseModel):
    """Where the helper executable lives and what happens to its stderr."""

    model_config = ConfigDict(extra="forbid")

    path: str | None = Field(
        default=None,
        description="Helper executable; falls back to $TERMPORT_HELPER, then PATH",
    )
    stderr: Literal["log", "inherit", "discard"] = Field(
        default="log",
        description="Log helper stderr at DEBUG, pass it through, or drop it",
    )


class TimeoutConfig(BaseModel):
    """Deadlines in seconds."""

    model_config = ConfigDict(extra="forbid")

    handshake: float = Field(default=10.0, gt=0, description="Wait for the OK <address> line")
    connect: float = Field(default=5.0, gt=0, description="Open the duplex channel")
    command: float = Field(default=5.0, gt=0, description="Default per-command deadline")
    shutdown: float = Field(
        default=2.0,
        ge=0,
        description="Grace period after the shutdown command before SIGTERM",
    )
    terminate: float = Field(
        default=3.0,
        ge=0,
        description="Wait after SIGTERM before SIGKILL",
    )


class ProtocolConfig(BaseModel):
    """Framing and correlation limits."""

    model_config = ConfigDict(extra="forbid")

    max_line_bytes: int = Field(
        default=65_536,
        ge=0,
        description="Largest unterminated line accepted (0 to disable)",
    )
    desync_threshold: int = Field(
        default=3,
        ge=0,
        description="Mismatched responses before a pending command fails (0 to disable)",
    )


class TraceConfig(BaseModel):
    """Wire trace recording."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Write a JSONL trace per session")
    dir: Path = Field(default=Path("traces"), description="Directory for trace files")


class TermportConfig(BaseModel):
    """Top-level termport.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    helper: HelperConfig = Field(default_factory=HelperConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    trace: TraceConfig = Field(default_factory=TraceConfig)

    @model_validator(mode="after")
    def _validate_version(self) -> TermportConfig:
        if self.version != "1":
            msg = f"Unsupported config version '{self.version}', expected '1'"
            raise ValueError(msg)
        return self
