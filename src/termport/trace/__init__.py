"""Wire trace — record models and JSONL recorder."""

from termport.trace.models import (
    ErrorRecord,
    StageRecord,
    TraceEndRecord,
    TraceRecord,
    TraceStartRecord,
    WireRecord,
)
from termport.trace.recorder import TraceRecorder, read_trace

__all__ = [
    "ErrorRecord",
    "StageRecord",
    "TraceEndRecord",
    "TraceRecord",
    "TraceRecorder",
    "TraceStartRecord",
    "WireRecord",
    "read_trace",
]
