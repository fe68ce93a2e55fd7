"""Trace recorder — append-only JSONL log of one session's wire traffic."""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from datetime import UTC, date, datetime
from pathlib import Path
from typing import IO, Literal

from pydantic import TypeAdapter, ValidationError

from termport.trace.models import (
    ErrorRecord,
    StageRecord,
    TraceEndRecord,
    TraceRecord,
    TraceStartRecord,
    WireRecord,
)

logger = logging.getLogger(__name__)

Direction = Literal["out", "in"]

_ADAPTER: TypeAdapter[TraceRecord] = TypeAdapter(TraceRecord)


class TraceRecorder:
    """Writes one JSONL trace file per session.

    Records are numbered and timestamped under a lock and each one is
    flushed before ``record`` returns, so a crash loses at most the record
    being written.
    """

    def __init__(self, helper: str, trace_dir: Path | None = None) -> None:
        self._session_id = secrets.token_hex(6)
        directory = trace_dir if trace_dir is not None else Path("traces")
        directory.mkdir(parents=True, exist_ok=True)
        self._trace_file = directory / f"{date.today().isoformat()}_{self._session_id}.jsonl"

        self._lock = threading.Lock()
        self._next_seq = 0
        self._counts: dict[Direction, int] = {"out": 0, "in": 0}
        self._opened_at = time.monotonic()
        self._stream: IO[str] | None = self._trace_file.open("a", encoding="utf-8")
        try:
            self.record(
                TraceStartRecord(ts="", seq=0, session_id=self._session_id, helper=helper)
            )
        except BaseException:
            self.close()
            raise

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def trace_file(self) -> Path:
        return self._trace_file

    @property
    def record_count(self) -> int:
        """Records written so far."""
        return self._next_seq

    @property
    def closed(self) -> bool:
        return self._stream is None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, record: TraceRecord) -> None:
        """Stamp ``seq`` and ``ts`` on *record* and append it.

        Records arriving after ``close()`` are dropped.
        """
        with self._lock:
            if self._stream is None:
                return
            record.seq = self._next_seq
            record.ts = _utc_timestamp()
            self._stream.write(record.model_dump_json() + "\n")
            self._stream.flush()
            self._next_seq += 1

    def record_stage(self, stage: str, detail: str = "") -> None:
        self.record(StageRecord(ts="", seq=0, stage=stage, detail=detail))

    def record_wire(self, direction: Direction, line: str) -> None:
        with self._lock:
            self._counts[direction] += 1
        self.record(WireRecord(ts="", seq=0, direction=direction, line=line))

    def record_error(self, reason: str, detail: str = "") -> None:
        self.record(ErrorRecord(ts="", seq=0, reason=reason, detail=detail))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def end(self, reason: str) -> None:
        """Append the ``trace_end`` summary and close; later calls do nothing."""
        if self.closed:
            return
        elapsed = time.monotonic() - self._opened_at
        self.record(
            TraceEndRecord(
                ts="",
                seq=0,
                reason=reason,
                duration_ms=int(elapsed * 1000),
                lines_out=self._counts["out"],
                lines_in=self._counts["in"],
            )
        )
        self.close()

    def close(self) -> None:
        """Close the file without a ``trace_end`` record."""
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()


def read_trace(path: Path) -> list[TraceRecord]:
    """Load every valid record from *path*; bad lines are logged and skipped."""
    records: list[TraceRecord] = []
    with path.open(encoding="utf-8") as fh:
        for number, raw in enumerate(fh, start=1):
            if not raw.strip():
                continue
            try:
                records.append(_ADAPTER.validate_python(json.loads(raw)))
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning("%s line %d: skipping invalid record (%s)", path.name, number, exc)
    return records


def _utc_timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
