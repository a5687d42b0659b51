import os
import shutil
import sys
import time
from datetime import datetime, timedelta, timezone

import pytest

from dbacked.controller import BackupScheduler, run_backup_process
from dbacked.exceptions import ConfigError
from dbacked.ipc import build_error_message, worker_process
from dbacked.models import BackupInfo, BackupRecord, JobResult, JobState

# ============================================================================
# Worker stand-ins, module level so child processes can import them
# ============================================================================

def succeeding_worker(conn):
    conn.recv()
    conn.close()


def failing_worker(conn):
    conn.recv()
    conn.send(build_error_message('"EUPLOADFAILED"\nfirst'))
    conn.send(build_error_message('"EOTHER"\nsecond'))
    conn.close()
    sys.exit(1)


def crashing_worker(conn):
    conn.recv()
    os._exit(3)


def hanging_worker(conn):
    conn.recv()
    time.sleep(60)


# ============================================================================
# RUN BACKUP PROCESS
# ============================================================================

def test_clean_exit_is_success(make_config):
    info = BackupInfo(backup=BackupRecord(id="backup-42"))
    result = run_backup_process(make_config("free"), info, timeout=30, target=succeeding_worker)

    assert result.state == JobState.SUCCEEDED
    assert result.error is None
    assert result.record.id == "backup-42"


def test_first_error_message_wins(make_config):
    result = run_backup_process(make_config("free"), timeout=30, target=failing_worker)

    assert result.state == JobState.FAILED
    assert result.error == '"EUPLOADFAILED"\nfirst'


def test_exit_without_message_is_a_failure(make_config):
    result = run_backup_process(make_config("free"), timeout=30, target=crashing_worker)

    assert result.state == JobState.FAILED
    assert result.error.splitlines()[0] == '"EWORKEREXIT"'
    assert "code 3" in result.error


def test_worker_killed_after_timeout(make_config):
    started = time.monotonic()
    result = run_backup_process(make_config("free"), timeout=0.5, target=hanging_worker)

    assert result.state == JobState.FAILED
    assert result.error.splitlines()[0] == '"ETIMEDOUT"'
    assert time.monotonic() - started < 30


def test_real_worker_reports_missing_dump_program(make_config, tmp_path):
    if shutil.which("pg_dump"):
        pytest.skip("pg_dump is installed")

    config = make_config("free", dump_programs_directory=str(tmp_path))
    result = run_backup_process(config, timeout=60, target=worker_process)

    assert result.state == JobState.FAILED
    assert result.error.splitlines()[0] == '"ENODUMPPROGRAM"'


# ============================================================================
# SCHEDULER
# ============================================================================

class FakeClock:
    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


def test_scheduler_runs_once_per_due_cycle(make_config):
    clock = FakeClock(datetime(2024, 3, 7, 1, 0, tzinfo=timezone.utc))
    runs = []

    def run_job(config):
        runs.append(clock())
        return JobResult(state=JobState.SUCCEEDED, record=BackupRecord())

    scheduler = BackupScheduler(make_config("free"), "0 2 * * *", run_job=run_job, now=clock)
    assert scheduler.next_run_at == datetime(2024, 3, 7, 2, 0, tzinfo=timezone.utc)

    assert scheduler.run_pending() is None
    clock.advance(hours=1)
    assert scheduler.run_pending().succeeded
    assert scheduler.run_pending() is None
    assert scheduler.next_run_at == datetime(2024, 3, 8, 2, 0, tzinfo=timezone.utc)
    assert len(runs) == 1


def test_cycles_missed_during_a_long_backup_are_skipped(make_config):
    clock = FakeClock(datetime(2024, 3, 7, 0, 59, tzinfo=timezone.utc))

    def long_job(config):
        clock.advance(hours=3)
        return JobResult(state=JobState.FAILED, record=BackupRecord(), error='"X"\n')

    scheduler = BackupScheduler(make_config("free"), "0 * * * *", run_job=long_job, now=clock)
    clock.advance(minutes=1)

    result = scheduler.run_pending()

    assert result.state == JobState.FAILED
    assert scheduler.last_result is result
    assert scheduler.next_run_at == datetime(2024, 3, 7, 5, 0, tzinfo=timezone.utc)


def test_invalid_cron_is_rejected(make_config):
    with pytest.raises(ConfigError) as exc_info:
        BackupScheduler(make_config("free"), "every day", run_job=lambda config: None)
    assert exc_info.value.code == "EINVALIDCRON"


def test_run_forever_stops(make_config):
    clock = FakeClock(datetime(2024, 3, 7, 1, 0, tzinfo=timezone.utc))
    scheduler = BackupScheduler(make_config("free"), run_job=lambda config: None, now=clock)
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        scheduler.stop()

    scheduler.run_forever(sleep=sleep)

    assert sleeps == [30]
    assert not scheduler.running
