import logging
from datetime import datetime

from chdbatch.app.events import EventSinks, timestamped
from chdbatch.app.models import BatchReport, ProgressSample


def test_timestamped_uses_millisecond_clock():
    now = datetime(2024, 1, 2, 13, 4, 5, 678901)
    assert timestamped("hello", now) == "[13:04:05.678] hello"


def test_log_lines_are_timestamped_and_logged(caplog):
    lines = []
    sinks = EventSinks(log_cb=lines.append)

    with caplog.at_level(logging.INFO, logger="chdbatch.app.events"):
        sinks.log("Starting")

    assert lines[0].startswith("[") and lines[0].endswith("] Starting")
    assert "Starting" in caplog.text


def test_progress_sample_percentage():
    sample = ProgressSample(3, 4, "game.iso", "Converting")
    assert sample.percentage == 75.0
    assert sample.describe() == "Converting file 3 of 4: game.iso (75.0%)"
    assert ProgressSample(0, 0, "", "Verifying").percentage == 0.0


def test_summary_logs_report_lines_before_callback():
    lines = []
    reports = []
    sinks = EventSinks(log_cb=lines.append, summary_cb=lambda report: reports.append((report, len(lines))))
    report = BatchReport("verification", total=3, succeeded=2, failed=1, cancelled=False, elapsed_sec=1.0)

    sinks.summary(report)

    assert reports == [(report, 4)]
    assert lines[0].endswith("--- Batch verification completed. ---")
    assert lines[2].endswith("Successfully verified: 2 files")
    assert lines[3].endswith("Failed to verify: 1 files")
