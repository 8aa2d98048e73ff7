"""Structured record of store writes.

Every write, verification failure, undo and migration run becomes an
:class:`AuditEvent`.  Events are emitted as one JSON line on the
``alumnistore.audit`` logger and the latest ones are kept in memory so a
maintenance command (or a test) can inspect what just happened.
"""
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Mapping, Optional, Tuple

_LOGGER = logging.getLogger("alumnistore.audit")
_EVENTS: Deque["AuditEvent"] = deque(maxlen=100)
_LOCK = threading.Lock()

WRITE = "write"
VERIFICATION_FAILED = "verification_failed"
UNDO = "undo"
MIGRATION = "migration"


@dataclass(frozen=True)
class AuditEvent:
    record_id: str
    event: str
    fields: Dict[str, Tuple[str, str]]
    timestamp: str
    actor: str = ""
    tab: str = ""
    target_range: str = ""
    row_number: Optional[int] = None
    created: bool = False
    details: Dict[str, object] = field(default_factory=dict)

    def to_json(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "record_id": self.record_id,
            "event": self.event,
            "fields": {name: [before, after] for name, (before, after) in self.fields.items()},
            "timestamp": self.timestamp,
        }
        if self.actor:
            payload["actor"] = self.actor
        if self.tab:
            payload["tab"] = self.tab
        if self.target_range:
            payload["range"] = self.target_range
        if self.row_number is not None:
            payload["row"] = self.row_number
        if self.created:
            payload["created"] = True
        if self.details:
            payload["details"] = dict(self.details)
        return payload


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def record(
    record_id: str,
    field_diffs: Mapping[str, Tuple[str, str]],
    *,
    event: str = WRITE,
    actor: str = "",
    tab: str = "",
    target_range: str = "",
    row_number: Optional[int] = None,
    created: bool = False,
    details: Optional[Mapping[str, object]] = None,
) -> Optional[AuditEvent]:
    """Emit one audit event; a ``write`` with no field diffs is dropped."""

    if not field_diffs and event == WRITE:
        return None
    entry = AuditEvent(
        record_id=record_id,
        event=event,
        fields={name: (str(before), str(after)) for name, (before, after) in field_diffs.items()},
        timestamp=_now(),
        actor=actor or "",
        tab=tab or "",
        target_range=target_range or "",
        row_number=row_number,
        created=created,
        details=dict(details or {}),
    )
    _LOGGER.info("%s", json.dumps(entry.to_json(), ensure_ascii=False, sort_keys=True, default=str))
    with _LOCK:
        _EVENTS.appendleft(entry)
    return entry


def recent(limit: int = 10, *, record_id: Optional[str] = None, event: Optional[str] = None) -> List[AuditEvent]:
    """Return the latest events, newest first, optionally filtered."""

    with _LOCK:
        events = list(_EVENTS)
    if record_id is not None:
        events = [entry for entry in events if entry.record_id == record_id]
    if event is not None:
        events = [entry for entry in events if entry.event == event]
    return events[:limit]


def clear() -> None:
    with _LOCK:
        _EVENTS.clear()


__all__ = ["AuditEvent", "MIGRATION", "UNDO", "VERIFICATION_FAILED", "WRITE", "clear", "recent", "record"]
