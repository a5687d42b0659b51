"""
Worker Process Adapter
Translates controller messages into a backup job and its result back into messages

Messages are JSON strings sent over a multiprocessing connection:
    controller -> worker  {"type": "startBackup", "payload": {"config": ..., "backupInfo": ...}}
    worker -> controller  {"type": "error", "payload": "<code-or-body>\\n<trace>"}
Success is signaled by the worker exiting with status 0.

A startBackup message whose config does not validate is skipped like any
other unreadable message: the worker keeps waiting for a valid one and only
the controller's timeout (DBACKED_JOB_TIMEOUT) ends the wait.
"""

import json
import logging
import sys
from typing import Optional, Tuple

from pydantic import ValidationError

from .config import BackupJobConfig
from .logging_setup import configure_logging
from .models import (
    BackupInfo, BackupRecord, ErrorMessage, JobResult, MessageType, StartBackupCommand, StartBackupPayload
)
from .worker import format_error, run_backup

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def build_start_command(config: BackupJobConfig, backup_info: Optional[BackupInfo] = None) -> str:
    command = StartBackupCommand(
        type=MessageType.START_BACKUP,
        payload=StartBackupPayload(config=config, backup_info=backup_info or BackupInfo())
    )
    return command.model_dump_json(by_alias=True)


def parse_start_command(raw) -> Optional[Tuple[BackupJobConfig, BackupRecord]]:
    """
    Read a start command

    Returns:
        (config, record) or None when the message is anything else
    """
    try:
        message = json.loads(raw)
        command = StartBackupCommand.model_validate(message)
    except (TypeError, ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable message: {e.__class__.__name__}")
        return None

    if command.type != MessageType.START_BACKUP:
        logger.warning(f"Ignoring {command.type.value} message")
        return None

    payload = command.payload
    return payload.config, payload.backup_info.backup or BackupRecord()


def build_error_message(payload: str) -> str:
    return ErrorMessage(payload=payload).model_dump_json()


def parse_error_message(raw) -> Optional[str]:
    """Payload of an error message, None for anything else"""
    try:
        message = ErrorMessage.model_validate(json.loads(raw))
    except (TypeError, ValueError, ValidationError):
        return None
    if message.type != MessageType.ERROR:
        return None
    return message.payload


def report(conn, result: JobResult) -> int:
    """Send a job result to the controller, returns the exit status"""
    if result.succeeded:
        return EXIT_SUCCESS
    conn.send(build_error_message(result.error))
    return EXIT_FAILURE


def worker_main(conn) -> int:
    """
    Serve one backup then stop

    Waits for the first valid start command, other messages are ignored.
    Returns the process exit status.
    """
    logger.debug("Backup worker starting")
    try:
        while True:
            try:
                raw = conn.recv()
            except EOFError:
                logger.warning("Controller went away before starting a backup")
                return EXIT_FAILURE

            command = parse_start_command(raw)
            if command is None:
                continue

            config, record = command
            return report(conn, run_backup(config, record))
    except Exception as e:
        logger.error(f"Uncaught error in backup worker: {e}")
        conn.send(build_error_message(format_error(e)))
        return EXIT_FAILURE
    finally:
        conn.close()


def worker_process(conn) -> None:
    """multiprocessing target"""
    configure_logging(worker=True)
    sys.exit(worker_main(conn))
