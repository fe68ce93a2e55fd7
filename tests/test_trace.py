"""Tests for trace record models and the JSONL trace recorder."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import pytest
from pydantic import TypeAdapter

from termport.trace.models import (
    ErrorRecord,
    StageRecord,
    TraceEndRecord,
    TraceRecord,
    TraceStartRecord,
    WireRecord,
)
from termport.trace.recorder import TraceRecorder, read_trace

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_ADAPTER: TypeAdapter[TraceRecord] = TypeAdapter(TraceRecord)


def _base(seq: int = 0) -> dict[str, Any]:
    return {"ts": "2026-10-19T12:00:00.000Z", "seq": seq}


def _read_lines(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text().splitlines()]


# ===================================================================
# Record models
# ===================================================================


class TestRecordModels:
    def test_wire_record_round_trip(self) -> None:
        record = WireRecord(**_base(), direction="out", line="width")
        data = json.loads(record.model_dump_json())
        assert data["type"] == "wire"
        assert _ADAPTER.validate_python(data) == record

    @pytest.mark.parametrize(
        "record",
        [
            TraceStartRecord(**_base(), session_id="abc", helper="/bin/helper"),
            StageRecord(**_base(1), stage="connected", detail="/tmp/s.sock"),
            ErrorRecord(**_base(2), reason="timeout", detail="no progress"),
            TraceEndRecord(**_base(3), reason="shutdown", duration_ms=5, lines_out=1, lines_in=1),
        ],
        ids=lambda r: r.type,
    )
    def test_discriminator_selects_type(self, record: Any) -> None:
        parsed = _ADAPTER.validate_json(record.model_dump_json())
        assert type(parsed) is type(record)

    def test_invalid_direction(self) -> None:
        with pytest.raises(ValueError):
            WireRecord(**_base(), direction="sideways", line="x")  # type: ignore[arg-type]

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValueError):
            _ADAPTER.validate_python({**_base(), "type": "stage", "stage": "x", "bogus": 1})


# ===================================================================
# Recorder
# ===================================================================


class TestTraceRecorder:
    def test_creates_file_with_start_record(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("/bin/helper", tmp_path / "traces")
        assert recorder.trace_file.parent == tmp_path / "traces"
        assert recorder.trace_file.name.endswith(f"_{recorder.session_id}.jsonl")
        lines = _read_lines(recorder.trace_file)
        assert lines[0]["type"] == "trace_start"
        assert lines[0]["helper"] == "/bin/helper"
        assert lines[0]["seq"] == 0
        recorder.close()

    def test_sequence_numbers_increase(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("h", tmp_path)
        recorder.record_stage("awaiting_handshake_data")
        recorder.record_wire("out", "width")
        recorder.record_wire("in", "OK_WIDTH 80")
        recorder.record_error("channel-closed", "eof")
        recorder.end("channel-closed")
        lines = _read_lines(recorder.trace_file)
        assert [line["seq"] for line in lines] == list(range(6))
        assert lines[-1]["type"] == "trace_end"
        assert lines[-1]["lines_out"] == 1
        assert lines[-1]["lines_in"] == 1

    def test_end_is_idempotent(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("h", tmp_path)
        recorder.end("shutdown")
        recorder.end("shutdown")
        assert recorder.record_count == 2
        assert len(_read_lines(recorder.trace_file)) == 2

    def test_records_after_close_are_dropped(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("h", tmp_path)
        recorder.close()
        recorder.record_wire("out", "present")
        assert len(_read_lines(recorder.trace_file)) == 1

    def test_thread_safe_writes(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("h", tmp_path)

        def _write(n: int) -> None:
            for i in range(50):
                recorder.record_wire("out", f"print {n} {i} 7 0 x")

        threads = [threading.Thread(target=_write, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        recorder.close()

        seqs = [line["seq"] for line in _read_lines(recorder.trace_file)]
        assert seqs == list(range(201))

    def test_read_trace_skips_bad_lines(self, tmp_path: Path) -> None:
        recorder = TraceRecorder("h", tmp_path)
        recorder.record_wire("in", "OK")
        recorder.close()
        with recorder.trace_file.open("a", encoding="utf-8") as fh:
            fh.write("not json\n\n")
            fh.write('{"type": "mystery", "ts": "x", "seq": 9}\n')

        records = read_trace(recorder.trace_file)
        assert [r.type for r in records] == ["trace_start", "wire"]
