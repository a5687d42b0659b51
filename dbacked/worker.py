"""
Backup Worker
Runs one backup from dump to finalized upload and returns a single terminal result

Steps:
1. Check the dump program exists
2. Create the backup key and start the encrypted dump
3. Write the envelope header, then the ciphertext, into a fan-out buffer
4. Hash and upload the buffer concurrently
5. Complete the upload (S3 for free agents, DBacked API for premium ones)
"""

import json
import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .api import DBackedClient
from .config import BackupJobConfig, get_settings
from .crypto import BackupKey, create_backup_key
from .dumper import DumpStream, check_dump_program, start_dumper
from .envelope import build_header
from .exceptions import StreamAbortedError
from .models import BackupRecord, JobResult, JobState, PartEtag
from .s3 import GenerateUrl, S3Storage, upload_to_s3
from .stream import FanOutBuffer, StreamReader, hash_stream, pump

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _make_api_client(config: BackupJobConfig) -> DBackedClient:
    return DBackedClient(api_key=config.apikey)


@dataclass
class Collaborators:
    """Everything the worker talks to, replaceable in tests"""
    check_dump_program: Callable[..., str] = check_dump_program
    create_backup_key: Callable[[str], BackupKey] = create_backup_key
    start_dumper: Callable[[bytes, BackupJobConfig, str], DumpStream] = start_dumper
    s3_factory: Callable[[BackupJobConfig], S3Storage] = S3Storage.from_config
    api_factory: Callable[[BackupJobConfig], DBackedClient] = _make_api_client
    upload: Callable[[StreamReader, GenerateUrl, int], List[PartEtag]] = upload_to_s3
    now: Callable[[], datetime] = _utcnow


def make_object_name(db_name: str, now: datetime) -> str:
    """backup_<db name>_<UTC ddMMyyyyHHmm>"""
    return f"backup_{db_name}_{now.astimezone(timezone.utc).strftime('%d%m%Y%H%M')}"


def format_error(error: BaseException) -> str:
    """
    Error payload sent to the controller

    Returns:
        '<json code, response body or message>\\n<traceback>'
    """
    if isinstance(error, StreamAbortedError) and error.__cause__ is not None:
        error = error.__cause__

    summary = (
        getattr(error, "code", None)
        or getattr(error, "response_body", None)
        or getattr(error, "message", None)
        or str(error)
        or error.__class__.__name__
    )
    trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return f"{json.dumps(summary, default=str)}\n{trace}"


class BackupJob:
    """
    One backup attempt

    The job owns its record and state, nothing is shared with other jobs.
    `run()` never raises: it returns exactly one JobResult.
    """

    def __init__(
        self,
        config: BackupJobConfig,
        record: Optional[BackupRecord] = None,
        collaborators: Optional[Collaborators] = None,
        part_size: Optional[int] = None,
        buffer_size: Optional[int] = None
    ):
        settings = get_settings()
        self.config = config
        self.record = record.model_copy(deep=True) if record else BackupRecord()
        self.collaborators = collaborators or Collaborators()
        self.part_size = part_size or settings.PART_SIZE
        if buffer_size is None:
            buffer_size = settings.buffer_size if part_size is None else part_size + settings.BUFFER_SLACK
        self.buffer_size = buffer_size
        self.state = JobState.IDLE

    def _transition(self, state: JobState) -> None:
        logger.debug(f"Backup job: {self.state.value} -> {state.value}")
        self.state = state

    # ========================================================================
    # RUN
    # ========================================================================

    def run(self) -> JobResult:
        if self.state != JobState.IDLE:
            raise RuntimeError("A backup job can only run once")

        try:
            self._run()
        except Exception as e:
            self._transition(JobState.FAILED)
            summary = getattr(e, "code", None) or getattr(e, "response_body", None) or str(e)
            logger.error(f"Unknown error while creating backup: {summary}")
            return JobResult(state=self.state, record=self.record, error=format_error(e))

        self._transition(JobState.SUCCEEDED)
        logger.info("backup finished !")
        return JobResult(state=self.state, record=self.record)

    def _run(self) -> None:
        config = self.config.check()
        c = self.collaborators

        program = c.check_dump_program(config.db_type, config.dump_programs_directory or get_settings().DUMP_PROGRAMS_DIRECTORY)
        self._transition(JobState.DUMPER_READY)

        backup_key = c.create_backup_key(config.public_key)
        self._transition(JobState.KEYS_READY)

        dump = c.start_dumper(backup_key.key, config, program)
        try:
            header = build_header(backup_key.encrypted_key, dump.iv)
            generate_url, finalize = self._select_strategy()
            self._transition(JobState.STREAMING_UPLOAD)
            parts, full_hash = self._stream(header, dump, generate_url)
        finally:
            dump.close()

        self._transition(JobState.FINALIZING)
        for part in parts:
            self.record.add_part(part)
        self.record.hash = full_hash
        finalize()
        self.record.freeze()

    # ========================================================================
    # STREAMING
    # ========================================================================

    def _stream(self, header: bytes, dump: DumpStream, generate_url: GenerateUrl):
        """Fan the envelope out to the hasher and the uploader"""
        buffer = FanOutBuffer(self.buffer_size)
        hash_reader = buffer.reader("hash")
        upload_reader = buffer.reader("upload")

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="backup") as executor:
            producer = executor.submit(pump, dump.chunks, buffer, header)
            hasher = executor.submit(hash_stream, hash_reader)
            try:
                parts = self.collaborators.upload(upload_reader, generate_url, self.part_size)
                # the hash is only complete once the hasher reached end of stream
                full_hash = hasher.result()
            except BaseException as e:
                buffer.abort(e)
                dump.terminate()
                raise
            producer.result()

        logger.info(f"Uploaded {buffer.bytes_written} bytes in {len(parts)} parts, md5 {full_hash}")
        return parts, full_hash

    # ========================================================================
    # STRATEGIES
    # ========================================================================

    def _select_strategy(self):
        if self.config.is_premium:
            return self._delegated_strategy()
        return self._direct_strategy()

    def _direct_strategy(self):
        """Free agents upload to their own bucket"""
        s3 = self.collaborators.s3_factory(self.config)
        self.record.filename = make_object_name(self.config.db_name, self.collaborators.now())
        self.record.s3_upload_id = s3.init_multipart_upload(self.record.filename)

        def generate_url(part_number: int, part_hash: str) -> str:
            logger.debug(f"Getting multipart upload URL for part number {part_number}")
            return s3.get_upload_part_url(self.record.filename, self.record.s3_upload_id, part_number, part_hash)

        def finalize() -> None:
            s3.complete_multipart_upload(self.record.filename, self.record.s3_upload_id, self.record.parts)

        return generate_url, finalize

    def _delegated_strategy(self):
        """Premium agents get URLs from, and report to, the DBacked API"""
        api = self.collaborators.api_factory(self.config)

        def generate_url(part_number: int, part_hash: str) -> str:
            logger.debug(f"Getting multipart upload URL for part number {part_number}")
            return api.get_upload_part_url(self.record, part_number, self.config.agent_id, part_hash)

        def finalize() -> None:
            api.finish_upload(
                backup=self.record,
                parts=self.record.parts,
                hash=self.record.hash,
                agent_id=self.config.agent_id,
                public_key=self.config.public_key
            )

        return generate_url, finalize


def run_backup(
    config: BackupJobConfig,
    record: Optional[BackupRecord] = None,
    collaborators: Optional[Collaborators] = None
) -> JobResult:
    """Run one backup job to its terminal result"""
    logger.info(f"Starting backup of {config.db_name} ({config.subscription_type.value})")
    return BackupJob(config, record, collaborators).run()
