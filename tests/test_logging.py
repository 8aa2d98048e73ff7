import json
import logging
from pathlib import Path

from alumnistore import audit_log
from alumnistore.logging_config import configure_logging, get_log_path


def test_configure_logging_is_idempotent(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "alumnistore.log"
    root = logging.getLogger()

    try:
        assert configure_logging("debug", log_file) == log_file
        configure_logging(logging.INFO, log_file)

        handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file.resolve())
        ]
        assert len(handlers) == 1
        assert get_log_path() == log_file

        logging.getLogger("alumnistore.test").warning("hello from the store")
        handlers[0].flush()
        assert "[WARNING] alumnistore.test: hello from the store" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file.resolve()):
                root.removeHandler(handler)
                handler.close()


def test_audit_log_keeps_recent_events_newest_first(caplog) -> None:
    audit_log.clear()
    caplog.set_level(logging.INFO, logger="alumnistore.audit")

    audit_log.record(
        "jane-doe",
        {"bio": ("old", "new")},
        actor="jane@example.org",
        tab="Profile-Live",
        target_range="'Profile-Live'!A2:M2",
        row_number=2,
    )
    assert audit_log.record("jane-doe", {}) is None
    audit_log.record("john-roe", {"name": ("", "John")}, event=audit_log.UNDO, details={"undone_ts": "t1"})

    events = audit_log.recent()
    assert [event.record_id for event in events] == ["john-roe", "jane-doe"]
    assert events[1].fields == {"bio": ("old", "new")}
    assert events[1].actor == "jane@example.org"
    assert events[1].row_number == 2
    assert [event.record_id for event in audit_log.recent(event=audit_log.UNDO)] == ["john-roe"]
    assert audit_log.recent(record_id="jane-doe") == [events[1]]

    payload = json.loads(caplog.records[0].getMessage())
    assert payload == {
        "actor": "jane@example.org",
        "event": "write",
        "fields": {"bio": ["old", "new"]},
        "range": "'Profile-Live'!A2:M2",
        "record_id": "jane-doe",
        "row": 2,
        "tab": "Profile-Live",
        "timestamp": payload["timestamp"],
    }
    assert json.loads(caplog.records[1].getMessage())["details"] == {"undone_ts": "t1"}
    audit_log.clear()
    assert audit_log.recent() == []
