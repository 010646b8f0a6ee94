"""
Events - structured engine events and the JSONL journal.

Every gate decision, order, resolution and risk transition is published
on the EventBus. Subscribers (the JSONL journal, the stats snapshot,
tests) consume them; a failing subscriber is logged and skipped.

Event types:
- GATE_DECISION: one per evaluated tick (buffered in the journal)
- ORDER_SUBMIT / ORDER_FAILED: order lifecycle
- POSITION_OPEN / RESOLUTION / STALE_RESOLUTION: position lifecycle
- STOP_LOSS_ALERT: advisory only
- WINDOW_OPEN / WINDOW_ARCHIVE: market roll-over
- RISK_PAUSE / RISK_RESUME / RISK_HALT / RISK_CLEAR: governor transitions
- PERSISTENCE_ERROR: a state or journal write failed
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(Enum):
    GATE_DECISION = "GATE_DECISION"
    ORDER_SUBMIT = "ORDER_SUBMIT"
    ORDER_FAILED = "ORDER_FAILED"
    POSITION_OPEN = "POSITION_OPEN"
    RESOLUTION = "RESOLUTION"
    STALE_RESOLUTION = "STALE_RESOLUTION"
    STOP_LOSS_ALERT = "STOP_LOSS_ALERT"
    WINDOW_OPEN = "WINDOW_OPEN"
    WINDOW_ARCHIVE = "WINDOW_ARCHIVE"
    RISK_PAUSE = "RISK_PAUSE"
    RISK_RESUME = "RISK_RESUME"
    RISK_HALT = "RISK_HALT"
    RISK_CLEAR = "RISK_CLEAR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"


class EventBus:
    """Synchronous publish/subscribe with a short in-memory tail."""

    def __init__(self, history_size: int = 200):
        self._subscribers: List[Callable[[dict], None]] = []
        self._seq = 0
        self._lock = threading.Lock()
        self.recent: deque = deque(maxlen=history_size)
        self.counts: Dict[str, int] = {}

    def subscribe(self, callback: Callable[[dict], None]):
        self._subscribers.append(callback)

    def publish(self, event_type: EventType, **data) -> dict:
        with self._lock:
            self._seq += 1
            event = {
                "seq": self._seq,
                "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                "event": event_type.value,
                **data,
            }
            self.recent.append(event)
            self.counts[event_type.value] = self.counts.get(event_type.value, 0) + 1

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event_type.value}: {e}")
        return event

    def of_type(self, event_type: EventType) -> List[dict]:
        return [e for e in self.recent if e["event"] == event_type.value]


class EventJournal:
    """
    Appends events to a JSONL file.

    High-frequency GATE_DECISION events are buffered and flushed in
    batches; everything else is written immediately.
    """

    BUFFERED = {EventType.GATE_DECISION.value}

    def __init__(self, path: str, buffer_size: int = 50):
        self.path = Path(path)
        self._buffer: List[dict] = []
        self._buffer_size = buffer_size
        self.write_errors = 0

    def __call__(self, event: dict):
        if event["event"] in self.BUFFERED:
            self._buffer.append(event)
            if len(self._buffer) >= self._buffer_size:
                self.flush()
            return
        self._write([event])

    def _write(self, events: List[dict]):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                for event in events:
                    f.write(json.dumps(event, default=str) + "\n")
        except OSError as e:
            self.write_errors += 1
            logger.error(f"Event journal write failed ({self.path}): {e}")

    def flush(self):
        """Flush buffered events to file."""
        if not self._buffer:
            return
        events, self._buffer = self._buffer, []
        self._write(events)


def read_events(path: str) -> List[Dict[str, Any]]:
    """Load a JSONL journal (skips torn lines)."""
    events = []
    p = Path(path)
    if not p.exists():
        return events
    with open(p) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed journal line in {p}")
    return events
