import logging

import pytest

from observability.event_tracker import RunEventTracker
from observability.log_handler import SqlServerLogHandler


def test_event_tracker_writes_one_event_per_phase():
    written = []
    tracker = RunEventTracker(enabled=True, writer=written.append)
    with tracker.track("DETECT", "run-1") as event:
        event.rows_processed = 6
    assert len(written) == 1
    assert written[0].status == "SUCCESS"
    assert written[0].rows_processed == 6
    assert written[0].run_id == "run-1"


def test_event_tracker_records_failure_and_reraises():
    written = []
    tracker = RunEventTracker(enabled=True, writer=written.append)
    with pytest.raises(RuntimeError):
        with tracker.track("SUMMARY_REFRESH", "run-1"):
            raise RuntimeError("locked")
    assert written[0].status == "FAILED"
    assert written[0].error_message == "locked"


def test_event_tracker_disabled_writes_nothing():
    written = []
    with RunEventTracker(enabled=False, writer=written.append).track("DETECT", "r"):
        pass
    assert written == []


def test_event_write_failure_does_not_propagate():
    def broken(event):
        raise ConnectionError("General DB down")

    with RunEventTracker(enabled=True, writer=broken).track("DETECT", "r"):
        pass


class _CapturingHandler(SqlServerLogHandler):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.batches = []

    def _write_rows(self, rows):
        self.batches.append(rows)


def _record(level, msg="hello"):
    return logging.LogRecord("reconcile.test", level, __file__, 1, msg, None, None)


def test_log_handler_buffers_until_warning():
    handler = _CapturingHandler(buffer_size=10)
    handler.set_context(run_id="run-1")
    handler.emit(_record(logging.INFO))
    assert handler.batches == []
    handler.emit(_record(logging.WARNING, "careful"))
    assert len(handler.batches) == 1
    assert [row[0] for row in handler.batches[0]] == ["run-1", "run-1"]
    assert handler.batches[0][1][2] == "WARNING"


def test_log_handler_ignores_records_without_run():
    handler = _CapturingHandler()
    handler.emit(_record(logging.ERROR))
    handler.flush()
    assert handler.batches == []


def test_log_handler_worker_context_defaults_to_thread_name():
    handler = _CapturingHandler(buffer_size=1)
    handler.set_context(run_id="r")
    handler.emit(_record(logging.INFO))
    handler.set_context(worker="worker-7")
    handler.emit(_record(logging.INFO))
    assert handler.batches[0][0][1] == "MainThread"
    assert handler.batches[1][0][1] == "worker-7"


def test_log_handler_flush_failure_goes_to_stderr(capsys):
    class Broken(SqlServerLogHandler):
        def _write_rows(self, rows):
            raise ConnectionError("no route")

    handler = Broken()
    handler.set_context(run_id="r")
    handler.emit(_record(logging.ERROR))
    assert "FLUSH FAILED" in capsys.readouterr().err
