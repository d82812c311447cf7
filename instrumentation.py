#!/usr/bin/env python3
"""
Refresh Trace for the Trading Dashboard
========================================
Records every significant step of a refresh cycle (FETCH of each sheet,
PARSE into Tables, CALC of exposure / phases / reconciliation, WRITE of
artifacts) to an in-memory log, then flushes it to CSV and Markdown.

Usage:
    from instrumentation import EventLog, trace_event

    events = EventLog()
    with trace_event(events, "CALC", "Exposure score"):
        score = calc_exposure(indices, breadth, sectors)

    events.flush_all("reports/")
"""

import csv
import inspect
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

EVENT_TYPES = ("FETCH", "PARSE", "CALC", "WRITE")
_COLUMNS = ["#", "Time", "Type", "Duration", "Operation", "Caller",
            "Status", "Details"]


class Event:
    """One traced step."""
    __slots__ = ("seq", "wall_time", "event_type", "duration_ms",
                 "operation", "caller", "status", "details")

    def __init__(self, seq: int, wall_time: str, event_type: str,
                 duration_ms: float, operation: str, caller: str,
                 status: str, details: str):
        self.seq = seq
        self.wall_time = wall_time
        self.event_type = event_type
        self.duration_ms = duration_ms
        self.operation = operation
        self.caller = caller
        self.status = status
        self.details = details

    def duration_human(self) -> str:
        ms = self.duration_ms
        if ms < 1000:
            return f"{ms:.0f} ms"
        return f"{ms:.0f} ms ({ms/1000:.1f}s)"

    def to_dict(self) -> dict:
        return {
            "#": self.seq,
            "Time": self.wall_time,
            "Type": self.event_type,
            "Duration": self.duration_human(),
            "Operation": self.operation,
            "Caller": self.caller,
            "Status": self.status,
            "Details": self.details,
        }


class EventLog:
    """In-memory event log for one refresh."""

    def __init__(self):
        self.events: list[Event] = []
        self._seq = 0

    def record(self, event_type: str, operation: str, duration_ms: float,
               status: str = "OK", details: str = "",
               caller: Optional[str] = None) -> Event:
        if caller is None:
            caller = _get_caller(skip=2)
        self._seq += 1
        evt = Event(
            seq=self._seq,
            wall_time=datetime.now().strftime("%H:%M:%S"),
            event_type=event_type,
            duration_ms=round(duration_ms, 1),
            operation=operation,
            caller=caller,
            status=status,
            details=details,
        )
        self.events.append(evt)
        return evt

    def failures(self) -> list[Event]:
        return [e for e in self.events if e.status != "OK"]

    def flush_csv(self, path: str | Path) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=_COLUMNS)
            w.writeheader()
            for evt in self.events:
                w.writerow(evt.to_dict())
        return str(path)

    def flush_md(self, path: str | Path) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("# Refresh Trace\n\n")
            f.write(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")

            total_ms = sum(e.duration_ms for e in self.events)
            type_counts: dict[str, int] = {}
            for e in self.events:
                type_counts[e.event_type] = type_counts.get(e.event_type, 0) + 1
            f.write("## Summary\n\n")
            f.write(f"- Total events: {len(self.events)}\n")
            f.write(f"- Total traced time: {total_ms/1000:.1f}s\n")
            f.write(f"- Event types: {', '.join(f'{k}={v}' for k, v in sorted(type_counts.items()))}\n")
            f.write(f"- Failures: {len(self.failures())}\n\n")

            f.write("## Events\n\n")
            f.write("| " + " | ".join(_COLUMNS) + " |\n")
            f.write("| " + " | ".join("---" for _ in _COLUMNS) + " |\n")
            for evt in self.events:
                d = evt.to_dict()
                row = " | ".join(str(d.get(c, "")).replace("|", "\\|")
                                 for c in _COLUMNS)
                f.write(f"| {row} |\n")
        return str(path)

    def flush_all(self, report_dir: str | Path):
        d = Path(report_dir)
        d.mkdir(parents=True, exist_ok=True)
        self.flush_csv(d / "refresh_trace.csv")
        self.flush_md(d / "refresh_trace.md")


def _get_caller(skip: int = 2) -> str:
    """Caller as file:function:line."""
    try:
        frame = inspect.stack()[skip]
        return f"{Path(frame.filename).name}:{frame.function}:{frame.lineno}"
    except (IndexError, AttributeError):
        return "unknown"


@contextmanager
def trace_event(log: EventLog, event_type: str, operation: str,
                details: str = "", caller: Optional[str] = None):
    """Record a timed event; a raised exception is logged as FAIL and re-raised."""
    if caller is None:
        # trace_event -> contextmanager wrapper -> actual caller
        try:
            frame = inspect.stack()[2]
            caller = f"{Path(frame.filename).name}:{frame.function}:{frame.lineno}"
        except (IndexError, AttributeError):
            caller = "unknown"
    t0 = time.monotonic()
    status = "OK"
    try:
        yield
    except Exception as exc:
        status = "FAIL"
        err = f"ERROR: {type(exc).__name__}: {exc}"
        details = f"{details}; {err}" if details else err
        raise
    finally:
        log.record(event_type, operation, (time.monotonic() - t0) * 1000,
                   status=status, details=details, caller=caller)


def trace_fetch(log: EventLog, sheet: str, nbytes: int = 0,
                error: str = "", duration_ms: float = 0,
                caller: Optional[str] = None):
    """Record the outcome of one sheet fetch."""
    parts = [f"sheet={sheet}"]
    if nbytes:
        parts.append(f"bytes={nbytes}")
    if error:
        parts.append(f"ERROR: {error}")
    if caller is None:
        caller = _get_caller(skip=1)
    log.record("FETCH", f"Fetch {sheet}", duration_ms,
               status="FAIL" if error else "OK",
               details="; ".join(parts), caller=caller)
