from datetime import date

from reconcile.models import RunCheckpoint, RunState, RunSummary
from reconcile.reporter import ProgressReporter, ProgressSnapshot, format_status, format_summary


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _snapshot(succeeded, elapsed, total=100):
    return ProgressSnapshot(run_id="r", total=total, succeeded=succeeded, failed=0,
                            pending=total - succeeded, in_flight=0, waiting_retry=0,
                            elapsed_seconds=elapsed)


def test_reports_only_when_interval_elapsed():
    clock = _Clock()
    reporter = ProgressReporter(interval=10, clock=clock)
    assert reporter.report(_snapshot(1, 1)) is None
    clock.now += 10
    line = reporter.report(_snapshot(10, 10))
    assert line is not None
    assert "10/100 (10.0%)" in line
    assert reporter.report(_snapshot(11, 11)) is None
    assert reporter.report(_snapshot(11, 11), force=True) is not None


def test_recent_rate_and_eta():
    clock = _Clock()
    reporter = ProgressReporter(interval=10, clock=clock)
    clock.now += 10
    reporter.report(_snapshot(10, 10))
    clock.now += 10
    line = reporter.report(_snapshot(30, 20))
    assert reporter.recent_rate() == 2.0
    assert "recent=2.00/s" in line
    assert "eta=35s" in line


def test_seconds_until_due():
    clock = _Clock()
    reporter = ProgressReporter(interval=10, clock=clock)
    clock.now += 4
    assert reporter.seconds_until_due() == 6.0


def test_format_summary_lists_failures():
    summary = RunSummary(
        run_id="2025-03-28", state=RunState.COMPLETED, total_gaps=6, processed=9,
        succeeded=5, failed=1, work_items=3, elapsed_seconds=75,
        failures=[("2025-03-28|12|T_ABRBO-1|S9", "deadlock victim")],
        refreshed_dates=[date(2025, 3, 28)],
    )
    text = format_summary(summary)
    assert "COMPLETED" in text
    assert "1m15s" in text
    assert "2025-03-28|12|T_ABRBO-1|S9" in text
    assert "deadlock victim" in text


def test_format_status():
    cp = RunCheckpoint(run_id="r", scope={"start": "2025-03-01", "end": "2025-03-31"},
                       models=["S9", "M20S"], completed={"a": "x", "b": "y"},
                       failed={"c": {"reason": "bad", "fingerprint": None}}, pending=["d"])
    text = format_status(cp)
    assert "2025-03-01..2025-03-31" in text
    assert "Processed:  0 gap outcome(s)" in text
    assert "3/4 (75.0%)" in text
    assert "bad" in text


def test_format_status_missing():
    assert "No checkpoint" in format_status(None, "ghost")


def test_format_status_shows_processed_counter():
    cp = RunCheckpoint(run_id="r", scope={"start": "2025-03-28", "end": "2025-03-28"},
                       models=["S9"], completed={"a": "x"}, processed=4, succeeded=1, failed_count=0)
    text = format_status(cp)
    assert "Processed:  4 gap outcome(s) including retries (1 succeeded, 0 failed terminally)" in text
