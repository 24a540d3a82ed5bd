import json
import logging

import structlog

from timetracker_voice.logging_utils import configure_logging, emit_trace, get_trace_logger
from timetracker_voice.observable import Observable


def test_observable_notifies_only_on_change():
    seen = []
    value = Observable(1)
    unsubscribe = value.subscribe(seen.append)

    value.set(1)
    value.set(2)
    unsubscribe()
    value.set(3)

    assert seen == [2]
    assert value.value == 3


def test_trace_lines_are_json(tmp_path):
    path = tmp_path / "traces" / "voice.jsonl"
    trace = get_trace_logger(path)

    emit_trace(trace, event="tool.finished", name="get_tasks")
    for handler in trace.handlers:
        handler.flush()

    line = json.loads(path.read_text().splitlines()[-1])
    assert line["event"] == "tool.finished"
    assert line["name"] == "get_tasks"
    assert "timestamp" in line
    emit_trace(None, event="ignored")
    for handler in list(trace.handlers):
        trace.removeHandler(handler)
        handler.close()


def test_json_logs_carry_bound_connection_context(caplog):
    caplog.set_level(logging.INFO)
    configure_logging("INFO")
    structlog.contextvars.bind_contextvars(realtime_model="gpt-test", connection=3)
    try:
        structlog.get_logger("timetracker_voice.tools").info("tool.finished", name="get_tasks")
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()

    record = json.loads(caplog.records[-1].getMessage())
    assert record["event"] == "tool.finished"
    assert record["level"] == "info"
    assert record["connection"] == 3
    assert record["realtime_model"] == "gpt-test"
    assert logging.getLogger("websockets").level == logging.WARNING


def test_trace_lines_carry_the_bound_connection(tmp_path):
    path = tmp_path / "voice.jsonl"
    trace = get_trace_logger(path)
    structlog.contextvars.bind_contextvars(connection=7)
    try:
        emit_trace(trace, event="tool.started", name="get_tasks")
    finally:
        structlog.contextvars.clear_contextvars()
    for handler in trace.handlers:
        handler.flush()

    line = json.loads(path.read_text().splitlines()[-1])
    assert line["connection"] == 7
