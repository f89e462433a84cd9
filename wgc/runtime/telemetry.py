"""
Structured telemetry for workflow composition runs.

Every ``compose`` call opens a trace; the composer logs when it starts, which
policies it applied and how the run ended. Traces live in memory and, when a
directory is given, are appended to ``<root_dir>/<trace_id>.jsonl``.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from wgc.ir.manifest import normalize_workflow_name

OUTCOMES = {
    "composition_completed": "completed",
    "composition_rejected": "rejected",
    "composition_failed": "failed",
}


class TelemetryEvent(BaseModel):
    trace_id: str
    event: str
    timestamp: str
    data: Dict[str, Any] = Field(default_factory=dict)


class TelemetryCollector:
    def __init__(self, root_dir: Optional[str] = None) -> None:
        self.root_dir = Path(root_dir) if root_dir else None
        if self.root_dir is not None:
            self.root_dir.mkdir(parents=True, exist_ok=True)
        self._traces: Dict[str, List[TelemetryEvent]] = {}
        self._lock = threading.Lock()

    def start_trace(self, workflow_name: str) -> str:
        trace_id = f"{normalize_workflow_name(workflow_name)}-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._traces[trace_id] = []
        self.log(trace_id, "trace_started", workflow_name=workflow_name)
        return trace_id

    def log(self, trace_id: str, event: str, **data: Any) -> TelemetryEvent:
        record = TelemetryEvent(
            trace_id=trace_id,
            event=event,
            timestamp=datetime.now(timezone.utc).isoformat(),
            data=data,
        )
        with self._lock:
            self._traces.setdefault(trace_id, []).append(record)
            if self.root_dir is not None:
                self._append(record)
        return record

    def events(self, trace_id: str) -> List[TelemetryEvent]:
        with self._lock:
            return list(self._traces.get(trace_id, []))

    def outcome(self, trace_id: str) -> Optional[str]:
        """``completed``, ``rejected`` or ``failed``; None while the run is open."""

        for record in reversed(self.events(trace_id)):
            if record.event in OUTCOMES:
                return OUTCOMES[record.event]
        return None

    def summarize(self, trace_id: str) -> Dict[str, Any]:
        events = self.events(trace_id)
        return {
            "trace_id": trace_id,
            "outcome": self.outcome(trace_id),
            "event_count": len(events),
            "counts": dict(Counter(record.event for record in events)),
            "started_at": events[0].timestamp if events else None,
            "finished_at": events[-1].timestamp if events else None,
        }

    def load(self, trace_id: str) -> List[TelemetryEvent]:
        """Read a trace back from its JSONL file."""

        if self.root_dir is None:
            return self.events(trace_id)
        path = self.root_dir / f"{trace_id}.jsonl"
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            return [TelemetryEvent.model_validate_json(line) for line in handle if line.strip()]

    def _append(self, record: TelemetryEvent) -> None:
        path = self.root_dir / f"{record.trace_id}.jsonl"
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.model_dump(), sort_keys=True, default=str) + "\n")
