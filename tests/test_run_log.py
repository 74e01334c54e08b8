import logging
import os
import time

import pytest

from modules.run_log import prune_logs, transcript, transcript_path, write_status
from modules.run_report import RunReport, RunStatus, StageOutcome


def test_transcript_creates_dir_and_detaches_handler(tmp_path):
    log_dir = tmp_path / "nested" / "logs"
    root = logging.getLogger()
    handlers_before = list(root.handlers)

    with transcript(log_dir, "job") as path:
        logging.getLogger("some.module").info("hello transcript")
        assert path.parent == log_dir
        assert path.name.startswith("job_")

    assert root.handlers == handlers_before
    assert "hello transcript" in path.read_text()


def test_transcript_detaches_on_error(tmp_path):
    root = logging.getLogger()
    handlers_before = list(root.handlers)
    with pytest.raises(RuntimeError):
        with transcript(tmp_path, "job"):
            raise RuntimeError("stage blew up")
    assert root.handlers == handlers_before


def test_transcript_path_format(tmp_path):
    from datetime import datetime

    path = transcript_path(tmp_path, "job", now=datetime(2026, 10, 19, 6, 30, 5))
    assert path.name == "job_20261019_063005.log"


def test_prune_removes_only_old_logs_for_this_script(tmp_path):
    now = time.time()
    old = tmp_path / "job_20260101_000000.log"
    fresh = tmp_path / "job_20261019_000000.log"
    other = tmp_path / "other_20260101_000000.log"
    for f in (old, fresh, other):
        f.write_text("x")
    eight_days_ago = now - 8 * 86400
    os.utime(old, (eight_days_ago, eight_days_ago))
    os.utime(other, (eight_days_ago, eight_days_ago))

    removed = prune_logs(tmp_path, "job", max_age_days=7, now=now)

    assert removed == [old]
    assert not old.exists()
    assert fresh.exists()
    assert other.exists()


def test_write_status_overwrites(tmp_path):
    path = tmp_path / "state" / "run.status"
    write_status(path, RunStatus.FAILURE)
    assert path.read_text() == "1"
    write_status(path, RunStatus.SUCCESS)
    assert path.read_text() == "0"


def test_report_status_rules():
    report = RunReport(window=7, failing_stages=frozenset({"dispatch"}))
    collect = report.stage("collect")
    collect.add_error("one account skipped")
    assert collect.outcome is StageOutcome.PARTIAL_FAILURE
    assert report.status is RunStatus.SUCCESS

    dispatch = report.stage("dispatch")
    dispatch.add_error("relay down")
    assert report.status is RunStatus.FAILURE
    assert not report.fatal

    collect.fail("search failed")
    assert report.fatal
    assert "collect=fatal" in report.summary()
