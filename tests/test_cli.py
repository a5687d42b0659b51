import json

import pytest

from dbacked import cli
from dbacked.exceptions import DBackedError
from dbacked.models import BackupRecord, JobResult, JobState


@pytest.fixture
def config_file(tmp_path, make_config):
    path = tmp_path / "config.json"
    path.write_text(make_config("free").model_dump_json())
    return path


def test_load_job_config(config_file):
    config = cli.load_job_config(str(config_file))
    assert config.db_name == "mydb"


def test_missing_config_file(tmp_path):
    with pytest.raises(DBackedError) as exc_info:
        cli.load_job_config(str(tmp_path / "nope.json"))
    assert exc_info.value.code == "ENOENT"


def test_invalid_config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"agent_id": "a"}))

    with pytest.raises(DBackedError) as exc_info:
        cli.load_job_config(str(path))
    assert exc_info.value.code == "EINVALIDCONFIG"


def test_backup_exit_status_follows_result(monkeypatch, config_file):
    results = iter([
        JobResult(state=JobState.SUCCEEDED, record=BackupRecord()),
        JobResult(state=JobState.FAILED, record=BackupRecord(), error='"E"\n'),
    ])
    monkeypatch.setattr(cli, "run_backup_process", lambda config: next(results))

    assert cli.main(["backup", "--config", str(config_file)]) == 0
    assert cli.main(["backup", "--config", str(config_file)]) == 1


def test_errors_exit_with_status_one(tmp_path):
    assert cli.main(["check", "--config", str(tmp_path / "missing.json")]) == 1
