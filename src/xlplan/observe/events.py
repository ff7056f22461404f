"""Plan lifecycle events and per-step execution traces."""

from __future__ import annotations

import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Timer:
    """Context-manager timer for measuring duration_ms."""

    def __init__(self) -> None:
        self.start: float = 0
        self.elapsed_ms: int = 0

    def __enter__(self) -> "Timer":
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed_ms = int((time.perf_counter() - self.start) * 1000)


class EventEmitter:
    """Writes one JSON line per lifecycle event (``plan.*``, ``step.*``).

    Events go to stderr unless a stream is given. A disabled emitter drops
    everything, so components always hold one and call ``emit`` freely.
    """

    def __init__(self, enabled: bool = False, stream: TextIO | None = None) -> None:
        self.enabled = enabled
        self._stream = stream

    def emit(self, event: str, data: dict[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        line = json.dumps({"event": event, "timestamp": _now(), "data": data or {}}, default=str)
        out = self._stream or sys.stderr
        out.write(line + "\n")
        out.flush()


class TraceRecorder:
    """Collects step timings for one plan execution and saves them as JSON."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []
        self._start = time.perf_counter()

    def _offset_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)

    def record(self, category: str, data: dict[str, Any]) -> None:
        self.entries.append({"category": category, "timestamp_ms": self._offset_ms(), **data})

    def failed_steps(self) -> list[Any]:
        return [e.get("step") for e in self.entries if e.get("status") == "error"]

    def save(self, path: str | Path) -> str:
        """Write the trace to *path* and return it."""
        trace = {
            "trace_version": "1.0",
            "generated_at": _now(),
            "total_duration_ms": self._offset_ms(),
            "steps_run": sum(1 for e in self.entries if e["category"] == "step"),
            "failed_steps": self.failed_steps(),
            "entries": self.entries,
        }
        Path(path).write_text(json.dumps(trace, indent=2, default=str))
        return str(path)
