# lockdrop/error_log.py
"""
In-memory error history for the UI layer.

Keeps the most recent error events, logs each one at a level derived from
its severity, and can summarise or export the history as JSON.
"""

import json
import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import Category, LockdropError, Severity


logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100


def _log_level(severity: int) -> int:
    if severity >= Severity.ERROR:
        return logging.ERROR
    if severity >= Severity.WARNING:
        return logging.WARNING
    return logging.INFO


def _event_for(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, LockdropError):
        return exc.to_event()
    # Foreign exceptions are recorded as unknown errors
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": {"product": "lockdrop"},
        "action": "lockdrop.error",
        "operation": None,
        "outcome": "failure",
        "category": Category.UNKNOWN.value,
        "severity": int(Severity.ERROR),
        "retryable": True,
        "attempts": None,
        "metadata": {"error_type": type(exc).__name__, "message": str(exc)},
    }


class ErrorLog:
    """Bounded, thread-safe error history."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._entries: deque = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, exc: BaseException, context: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Record an exception and return the stored event."""
        event = _event_for(exc)
        event["event_id"] = str(uuid.uuid4())
        event["context"] = context
        if metadata:
            event["metadata"] = {**event["metadata"], **metadata}

        with self._lock:
            self._entries.append(event)

        logger.log(
            _log_level(event["severity"]),
            f"[{context or event['operation']}] {event['category'].upper()}: "
            f"{event['metadata'].get('message')}",
        )
        return event

    def __len__(self) -> int:
        return len(self._entries)

    def recent(self, count: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._entries)
        return entries[-count:] if count > 0 else []

    def by_category(self, category: Category) -> List[Dict[str, Any]]:
        with self._lock:
            return [e for e in self._entries if e["category"] == Category(category).value]

    def by_severity(self, severity: int) -> List[Dict[str, Any]]:
        with self._lock:
            return [e for e in self._entries if e["severity"] == int(severity)]

    def statistics(self) -> Dict[str, Any]:
        """Totals by category and severity; every bucket is present."""
        by_category = {c.value: 0 for c in Category}
        by_severity = {int(s): 0 for s in Severity}
        with self._lock:
            for entry in self._entries:
                by_category[entry["category"]] += 1
                by_severity[entry["severity"]] += 1
            total = len(self._entries)
        return {"total": total, "by_category": by_category, "by_severity": by_severity}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def export_json(self) -> str:
        with self._lock:
            return json.dumps(list(self._entries), indent=2, default=str)
