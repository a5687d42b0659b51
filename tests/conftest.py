import hashlib
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from dbacked.config import BackupJobConfig
from dbacked.crypto import BackupKey
from dbacked.exceptions import NetworkError
from dbacked.models import BackupRecord, PartEtag

FIXED_NOW = datetime(2024, 3, 7, 14, 5, tzinfo=timezone.utc)
IV = bytes(range(16))
ENCRYPTED_KEY = b"wrapped-key-" * 4


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_key_pem(rsa_private_key):
    return rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("utf-8")


@pytest.fixture
def make_config(public_key_pem):
    def _make(subscription_type="free", **overrides):
        values = {
            "subscription_type": subscription_type,
            "agent_id": "agent-1",
            "public_key": public_key_pem,
            "db_type": "pg",
            "db_name": "mydb",
            "db_host": "localhost",
            "db_username": "postgres",
        }
        if subscription_type == "free":
            values.update({
                "s3_access_key_id": "AKIATEST",
                "s3_secret_access_key": "secret",
                "s3_region": "eu-west-1",
                "s3_bucket": "backups",
            })
        else:
            values["apikey"] = "api-key"
        values.update(overrides)
        return BackupJobConfig(**values)
    return _make


class FakeDump:
    """Stands in for a running dump: ciphertext chunks and an IV"""

    def __init__(self, chunks, iv: bytes = IV):
        self.chunks = chunks
        self.iv = iv
        self.closed = False
        self.terminated = False

    def terminate(self):
        self.terminated = True

    def close(self):
        self.closed = True


class FakeS3:
    def __init__(self):
        self.opened: List[str] = []
        self.url_requests: List[tuple] = []
        self.completed: List[tuple] = []

    def init_multipart_upload(self, filename: str) -> str:
        self.opened.append(filename)
        return "upload-1"

    def get_upload_part_url(self, filename, upload_id, part_number, part_hash):
        self.url_requests.append((filename, upload_id, part_number, part_hash))
        return f"https://s3.test/{filename}?partNumber={part_number}"

    def complete_multipart_upload(self, filename, upload_id, parts):
        self.completed.append((filename, upload_id, list(parts)))


class FakeApi:
    def __init__(self):
        self.url_requests: List[dict] = []
        self.finished: List[dict] = []

    def get_upload_part_url(self, backup, part_number, agent_id, hash):
        self.url_requests.append({"backup": backup.to_api(), "part_number": part_number, "agent_id": agent_id, "hash": hash})
        return f"https://api.test/parts/{part_number}"

    def finish_upload(self, backup, parts, hash, agent_id, public_key):
        self.finished.append({
            "backup": backup.to_api(),
            "parts": list(parts),
            "hash": hash,
            "agent_id": agent_id,
            "public_key": public_key,
        })


class FakeResponse:
    def __init__(self, status_code=200, headers=None, text=""):
        self.status_code = status_code
        self.headers = headers or {}
        self.text = text


class FakeSession:
    """requests-like session recording part PUTs"""

    def __init__(self, fail_on_part: Optional[int] = None, status_code: int = 500):
        self.fail_on_part = fail_on_part
        self.status_code = status_code
        self.puts: List[Dict] = []

    def put(self, url, data=None, headers=None, timeout=None):
        part_number = len(self.puts) + 1
        self.puts.append({"url": url, "data": data, "headers": headers})
        if part_number == self.fail_on_part:
            return FakeResponse(self.status_code, text="<Error><Code>InternalError</Code></Error>")
        return FakeResponse(200, headers={"ETag": f'"{hashlib.md5(data).hexdigest()}"'})


def fake_backup_key(public_key_pem: str) -> BackupKey:
    return BackupKey(key=b"k" * 32, encrypted_key=ENCRYPTED_KEY)


def chunked(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)]


def expected_etags(session: FakeSession) -> List[PartEtag]:
    return [
        PartEtag(part_number=i + 1, etag=f'"{hashlib.md5(put["data"]).hexdigest()}"')
        for i, put in enumerate(session.puts)
    ]


def seeded_record() -> BackupRecord:
    return BackupRecord(id="backup-42", filename="server-side-name", s3_upload_id="server-upload")


def raise_network_error(*args, **kwargs):
    raise NetworkError("unreachable", code="ECONNREFUSED")
