import io
import json
import logging

import pytest

from qrun.domain.states import JobEvent
from qrun.services import events as events_module
from qrun.services.events import EventLog, event_logger
from qrun.settings import Settings


@pytest.fixture
def stream():
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(logging.Formatter("%(message)s"))
    saved = list(event_logger.handlers)
    event_logger.handlers = [handler]
    event_logger.setLevel(logging.INFO)
    yield buffer
    event_logger.handlers = saved


def test_json_line_per_event(stream):
    EventLog(Settings()).emit(JobEvent.MESSAGE_RECEIVED, queue="qdone_test", message_id="m1")
    record = json.loads(stream.getvalue())
    assert record["event"] == "MESSAGE_RECEIVED"
    assert record["queue"] == "qdone_test"
    assert record["message_id"] == "m1"
    assert "timestamp" in record


def test_disable_log_suppresses_json(stream):
    EventLog(Settings(disable_log=True)).emit(JobEvent.MESSAGE_RECEIVED, queue="q")
    assert stream.getvalue() == ""


def test_archive_suppresses_json(stream):
    EventLog(Settings(archive=True)).emit(JobEvent.DELETE_MESSAGES, queue="q")
    assert stream.getvalue() == ""


def test_verbose_goes_to_logger(stream, caplog):
    with caplog.at_level(logging.INFO, logger=events_module.__name__):
        EventLog(Settings(verbose=True)).emit(JobEvent.DELETE_MESSAGES, queue="qdone_test", count=2)
    assert stream.getvalue() == ""
    assert "DELETE_MESSAGES queue=qdone_test count=2" in caplog.text
