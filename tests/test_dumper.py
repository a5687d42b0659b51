import stat
import subprocess
import sys
import tempfile

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from dbacked.config import DbType
from dbacked.crypto import StreamCipher
from dbacked.dumper import (
    DumpStream, build_dump_command, build_dump_env, check_dump_program, find_dump_program
)
from dbacked.exceptions import DumpError, PreconditionError

KEY = b"k" * 32


def _decrypt(ciphertext, iv):
    decryptor = Cipher(algorithms.AES(KEY), modes.CBC(iv)).decryptor()
    unpadder = padding.PKCS7(128).unpadder()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    return unpadder.update(padded) + unpadder.finalize()


def _python_dump(script):
    """DumpStream over a python one-liner standing in for pg_dump"""
    stderr_file = tempfile.TemporaryFile()
    process = subprocess.Popen(
        [sys.executable, "-c", script],
        stdout=subprocess.PIPE,
        stderr=stderr_file
    )
    return DumpStream(process, StreamCipher(KEY), stderr_file)


# ============================================================================
# COMMANDS
# ============================================================================

def test_pg_dump_command(make_config):
    config = make_config("free", db_port=5433, dumper_options="--no-owner --exclude-table 'audit log'")

    cmd = build_dump_command("/usr/bin/pg_dump", config)

    assert cmd == [
        "/usr/bin/pg_dump", "--format=custom",
        "--host", "localhost", "--port", "5433", "--username", "postgres", "--no-password",
        "--no-owner", "--exclude-table", "audit log",
        "mydb",
    ]


def test_mysqldump_command(make_config):
    config = make_config("free", db_type="mysql", db_username="root")
    cmd = build_dump_command("mysqldump", config)

    assert cmd[:2] == ["mysqldump", "--single-transaction"]
    assert "--user" in cmd and cmd[cmd.index("--user") + 1] == "root"
    assert cmd[-1] == "mydb"


def test_mongodump_command(make_config):
    config = make_config("free", db_type="mongodb", db_connection_string="mongodb://db:27017")
    cmd = build_dump_command("mongodump", config)

    assert cmd == ["mongodump", "--archive", "--gzip", "--uri", "mongodb://db:27017", "--db", "mydb"]


def test_password_goes_through_environment(make_config):
    config = make_config("free", db_password="s3cret")

    env = build_dump_env(config)

    assert env["PGPASSWORD"] == "s3cret"
    assert "s3cret" not in build_dump_command("pg_dump", config)


# ============================================================================
# PROGRAM LOOKUP
# ============================================================================

def test_programs_directory_is_searched_first(tmp_path):
    program = tmp_path / "bin" / "pg_dump"
    program.parent.mkdir()
    program.write_text("#!/bin/sh\n")
    program.chmod(program.stat().st_mode | stat.S_IXUSR)

    assert find_dump_program(DbType.PG, str(tmp_path)) == str(program)


def test_missing_program_is_a_precondition_error(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))

    with pytest.raises(PreconditionError) as exc_info:
        check_dump_program(DbType.MONGODB, str(tmp_path))

    assert exc_info.value.code == "ENODUMPPROGRAM"
    assert "mongodump" in exc_info.value.message


# ============================================================================
# DUMP STREAM
# ============================================================================

def test_dump_output_is_encrypted():
    dump = _python_dump("import sys; sys.stdout.buffer.write(b'row ' * 100000)")

    ciphertext = b"".join(dump.chunks)

    assert len(ciphertext) % 16 == 0
    assert _decrypt(ciphertext, dump.iv) == b"row " * 100000
    assert dump.process.returncode == 0


def test_failing_dump_raises_with_stderr():
    dump = _python_dump(
        "import sys; sys.stdout.buffer.write(b'partial'); "
        "sys.stderr.write('FATAL: password authentication failed'); sys.exit(1)"
    )

    with pytest.raises(DumpError) as exc_info:
        b"".join(dump.chunks)

    assert exc_info.value.code == "EDUMPFAILED"
    assert "password authentication failed" in exc_info.value.message


def test_terminate_stops_a_running_dump():
    dump = _python_dump("import time; time.sleep(60)")

    dump.close()

    assert dump.process.returncode is not None
    assert dump.process.returncode != 0
