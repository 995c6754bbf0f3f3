"""
Tests: log formatting for service records.
"""

import json
import logging

from flask import Flask

from tracker.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    build_formatter,
    configure_logging,
)


def _record(**extra):
    record = logging.makeLogRecord({
        "name": "tracker.services.baseline_service",
        "levelname": "WARNING",
        "levelno": logging.WARNING,
        "msg": "Baseline breached",
    })
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_carries_workflow_scope():
    line = JSONFormatter().format(_record(project_id=3, milestone_id=12, request_id="abc", unrelated="x"))
    entry = json.loads(line)
    assert entry["message"] == "Baseline breached"
    assert entry["level"] == "WARNING"
    assert entry["project_id"] == 3
    assert entry["milestone_id"] == 12
    assert entry["request_id"] == "abc"
    assert "unrelated" not in entry


def test_readable_line_appends_scope_and_duration():
    line = ReadableFormatter(color=False).format(_record(project_id=3, entity_kind="baseline", duration_ms=41.6))
    assert "tracker.services.baseline_service: Baseline breached" in line
    assert "(project_id=3 entity_kind=baseline)" in line
    assert line.endswith("[42ms]")


def test_format_follows_config():
    app = Flask(__name__)
    app.config.update(TESTING=True)
    assert isinstance(build_formatter(app), ReadableFormatter)
    app.config.update(LOG_FORMAT="json")
    assert isinstance(build_formatter(app), JSONFormatter)


def test_configure_logging_installs_one_handler():
    app = Flask(__name__)
    app.config.update(TESTING=True, LOG_LEVEL="warning")
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging(app)
        configure_logging(app)
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
