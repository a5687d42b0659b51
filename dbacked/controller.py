"""
Backup Controller
Starts one worker process per backup cycle and collects its terminal result
"""

import logging
import multiprocessing
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from croniter import croniter

from .config import BackupJobConfig, get_settings
from .exceptions import ConfigError
from .ipc import build_start_command, parse_error_message, worker_process
from .models import BackupInfo, BackupRecord, JobResult, JobState

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1  # seconds


def run_backup_process(
    config: BackupJobConfig,
    backup_info: Optional[BackupInfo] = None,
    timeout: Optional[float] = None,
    target: Callable = worker_process
) -> JobResult:
    """
    Run one backup in its own process

    Args:
        config: Job configuration
        backup_info: What is known about the backup beforehand (premium)
        timeout: Seconds before the worker is killed (default: DBACKED_JOB_TIMEOUT)
        target: Process entry point

    Returns:
        JobResult built from the worker's error message or exit status
    """
    backup_info = backup_info or BackupInfo()
    timeout = timeout if timeout is not None else get_settings().JOB_TIMEOUT
    record = backup_info.backup or BackupRecord()

    parent_conn, child_conn = multiprocessing.Pipe()
    process = multiprocessing.Process(
        target=target,
        args=(child_conn,),
        name=f"dbacked-backup-{config.agent_id}"
    )
    process.start()
    child_conn.close()
    logger.info(f"Backup worker started (pid {process.pid})")

    error: Optional[str] = None
    deadline = time.monotonic() + timeout if timeout else None
    try:
        parent_conn.send(build_start_command(config, backup_info))

        while True:
            if parent_conn.poll(POLL_INTERVAL):
                try:
                    raw = parent_conn.recv()
                except EOFError:
                    break
                payload = parse_error_message(raw)
                # only the first error counts, a job reports at most one
                if payload is not None and error is None:
                    error = payload
                continue

            if not process.is_alive():
                break

            if deadline and time.monotonic() > deadline:
                logger.error(f"Backup worker timed out after {timeout}s, killing it")
                process.kill()
                error = error or f"\"ETIMEDOUT\"\nBackup worker killed after {timeout}s"
                break
    except (BrokenPipeError, ConnectionError) as e:
        logger.error(f"Lost connection with backup worker: {e}")
    finally:
        parent_conn.close()
        process.join()

    if error is None and process.exitcode != 0:
        error = f"\"EWORKEREXIT\"\nBackup worker exited with code {process.exitcode}"

    if error is not None:
        logger.error(f"Backup failed: {error.splitlines()[0]}")
        return JobResult(state=JobState.FAILED, record=record, error=error)

    logger.info("Backup succeeded")
    return JobResult(state=JobState.SUCCEEDED, record=record)


class BackupScheduler:
    """
    Cron driven backup loop

    Runs at most one backup at a time: a cycle that comes due while a backup
    is running is skipped.
    """

    def __init__(
        self,
        config: BackupJobConfig,
        cron_expression: Optional[str] = None,
        run_job: Callable[[BackupJobConfig], JobResult] = run_backup_process,
        now: Optional[Callable[[], datetime]] = None
    ):
        self.config = config
        self.cron_expression = cron_expression or get_settings().CRON_EXPRESSION
        if not self.is_valid_cron(self.cron_expression):
            raise ConfigError(f"Invalid cron expression: {self.cron_expression}", code="EINVALIDCRON")

        self.run_job = run_job
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.running = False
        self.last_result: Optional[JobResult] = None
        self.next_run_at = self.calculate_next_run(self.now())

    @staticmethod
    def is_valid_cron(cron_expr: str) -> bool:
        """Validate cron expression"""
        return croniter.is_valid(cron_expr)

    def calculate_next_run(self, after: datetime) -> datetime:
        """Next UTC run time after a date"""
        return croniter(self.cron_expression, after).get_next(datetime)

    def run_pending(self) -> Optional[JobResult]:
        """Run the backup if it is due, returns its result"""
        now = self.now()
        if now < self.next_run_at:
            return None

        logger.info(f"Backup due at {self.next_run_at.isoformat()}, starting")
        self.last_result = self.run_job(self.config)
        # cycles missed while the backup ran are skipped
        self.next_run_at = self.calculate_next_run(self.now())
        logger.info(f"Next backup at {self.next_run_at.isoformat()}")
        return self.last_result

    def run_forever(self, sleep: Callable[[float], None] = time.sleep) -> None:
        """Main scheduler loop, checks for due backups every 30 seconds"""
        self.running = True
        logger.info(f"Scheduler started, next backup at {self.next_run_at.isoformat()}")

        while self.running:
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
            sleep(30)

    def stop(self) -> None:
        self.running = False
