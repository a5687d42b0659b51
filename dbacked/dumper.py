"""
Database Dumper
Runs pg_dump / mysqldump / mongodump and encrypts their output on the fly
"""

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .config import BackupJobConfig, DbType
from .crypto import StreamCipher
from .exceptions import DumpError, PreconditionError

logger = logging.getLogger(__name__)

DUMP_PROGRAMS = {
    DbType.PG: "pg_dump",
    DbType.MYSQL: "mysqldump",
    DbType.MONGODB: "mongodump",
}

READ_SIZE = 1024 * 1024  # 1MB


def find_dump_program(db_type: DbType, programs_directory: Optional[str] = None) -> Optional[str]:
    """Path of the dump program, looked up in the programs directory then in PATH"""
    program = DUMP_PROGRAMS[DbType(db_type)]

    if programs_directory:
        for candidate in (Path(programs_directory) / program, Path(programs_directory) / "bin" / program):
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)

    return shutil.which(program)


def check_dump_program(db_type: DbType, programs_directory: Optional[str] = None) -> str:
    """
    Verify the dump program of a database type is installed

    Returns:
        Path of the program

    Raises:
        PreconditionError: If it cannot be found
    """
    path = find_dump_program(db_type, programs_directory)
    if not path:
        program = DUMP_PROGRAMS[DbType(db_type)]
        raise PreconditionError(
            f"{program} not found in {programs_directory or 'PATH'}, install it to backup {DbType(db_type).value} databases",
            code="ENODUMPPROGRAM"
        )
    logger.debug(f"Using dump program {path}")
    return path


def build_dump_command(program: str, config: BackupJobConfig) -> List[str]:
    """Command line of the dump program, credentials excluded"""
    if config.db_type == DbType.PG:
        cmd = [program, "--format=custom"]
        if config.db_host:
            cmd += ["--host", config.db_host]
        if config.db_port:
            cmd += ["--port", str(config.db_port)]
        if config.db_username:
            cmd += ["--username", config.db_username]
        cmd += ["--no-password"]
        tail = [config.db_name]
    elif config.db_type == DbType.MYSQL:
        cmd = [program, "--single-transaction"]
        if config.db_host:
            cmd += ["--host", config.db_host]
        if config.db_port:
            cmd += ["--port", str(config.db_port)]
        if config.db_username:
            cmd += ["--user", config.db_username]
        tail = [config.db_name]
    else:
        cmd = [program, "--archive", "--gzip"]
        if config.db_connection_string:
            cmd += ["--uri", config.db_connection_string]
        cmd += ["--db", config.db_name]
        tail = []

    if config.dumper_options:
        cmd += shlex.split(config.dumper_options)
    return cmd + tail


def build_dump_env(config: BackupJobConfig) -> Dict[str, str]:
    env = dict(os.environ)
    if config.db_password:
        if config.db_type == DbType.PG:
            env["PGPASSWORD"] = config.db_password
        elif config.db_type == DbType.MYSQL:
            env["MYSQL_PWD"] = config.db_password
    return env


class DumpStream:
    """
    Running dump process whose stdout is encrypted as it is read

    Iterate over `chunks` to get the ciphertext, `iv` is known as soon as
    the stream exists.
    """

    def __init__(self, process: subprocess.Popen, cipher: StreamCipher, stderr_file):
        self.process = process
        self.iv = cipher.iv
        self._stderr_file = stderr_file
        self.chunks = cipher.encrypt(self._read_plaintext())

    def _read_plaintext(self) -> Iterator[bytes]:
        try:
            while True:
                data = self.process.stdout.read(READ_SIZE)
                if not data:
                    break
                yield data

            returncode = self.process.wait()
            if returncode != 0:
                self._stderr_file.seek(0)
                stderr = self._stderr_file.read().decode('utf-8', errors='ignore').strip()
                raise DumpError(
                    f"Dump program exited with code {returncode}: {stderr[-2000:]}",
                    code="EDUMPFAILED"
                )
            logger.info("Dump finished")
        finally:
            self.close()

    def terminate(self) -> None:
        """Kill the dump process, a blocked reader then sees end of file"""
        if self.process.poll() is None:
            logger.warning("Killing unfinished dump process")
            self.process.kill()
            self.process.wait()

    def close(self) -> None:
        self.terminate()
        if self.process.stdout:
            self.process.stdout.close()
        self._stderr_file.close()


def start_dumper(key: bytes, config: BackupJobConfig, program: str) -> DumpStream:
    """
    Start dumping the database

    Args:
        key: AES key of this backup
        config: Job configuration
        program: Dump program path, as resolved by check_dump_program

    Returns:
        The encrypted dump stream and its IV
    """
    cmd = build_dump_command(program, config)

    logger.info(f"Starting {config.db_type.value} dump of {config.db_name}")
    stderr_file = tempfile.TemporaryFile()
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=stderr_file,
        env=build_dump_env(config)
    )
    return DumpStream(process, StreamCipher(key), stderr_file)
