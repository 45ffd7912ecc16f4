"""
core/digest/events.py — Structured digest event trail.

One JSON object per line on stdout (or the given stream):
    { "timestamp", "service", "type", "status", "payload": {...} }

Types: digest.add, digest.edit (record committed), digest.remove, digest.sent.
Emitting never raises; a failed write is logged and dropped.

Logging marker: [DigestEvents]
"""
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any

from utils.logger import log_warn

EVENT_DIGEST_ADD = "digest.add"
EVENT_DIGEST_EDIT = "digest.edit"
EVENT_DIGEST_REMOVE = "digest.remove"
EVENT_DIGEST_SENT = "digest.sent"


class DigestEventLogger:
    """
    Emits structured JSON events to stdout.
    Picked up by log collectors (Fluentd/Vector) as the digest event trail.
    """

    def __init__(self, service: str = "digest", stream=None):
        self._service = service
        self._stream = stream

    def emit(self, event_type: str, payload: Dict[str, Any], status: str = "info"):
        event = {
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "service": self._service,
            "type": event_type,
            "status": status,
            "payload": payload,
        }
        try:
            print(json.dumps(event, default=str), file=self._stream or sys.stdout, flush=True)
        except Exception as e:
            log_warn(f"[DigestEvents] emit failed for {event_type}: {e}")

    def record_edit(self, reference: str, periods: int, messages: int, event_type: str = EVENT_DIGEST_EDIT):
        self.emit(event_type, {"ref": reference, "periods": periods, "messages": messages})

    def record_remove(self, reference: str):
        self.emit(EVENT_DIGEST_REMOVE, {"ref": reference})

    def record_sent(self, reference: str, period: str, messages: int, ok: bool):
        self.emit(
            EVENT_DIGEST_SENT,
            {"ref": reference, "period": period, "messages": messages},
            status="info" if ok else "error",
        )


class NullEventLogger(DigestEventLogger):
    """Drops every event."""

    def emit(self, event_type: str, payload: Dict[str, Any], status: str = "info"):
        return None
