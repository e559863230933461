from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional

import pytest
import yaml

from clouddump import cli, executor
from clouddump.executor import Executor
from clouddump.registry import JobType


def _which_all(tool: str) -> Optional[str]:
    return f"/usr/bin/{tool}"


def _base_config(**job_overrides: object) -> dict:
    job = {
        "type": "s3bucket",
        "id": "s3-sync",
        "crontab": "*/5 * * * *",
        "buckets": [{"source": "s3://bucket", "destination": "/backup/s3"}],
    }
    job.update(job_overrides)
    return {"settings": {"HOST": "testhost"}, "jobs": [job]}


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _tools_on_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("clouddump.registry.shutil.which", _which_all)


def test_unknown_job_type_exits_before_loop(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    loops: List[Any] = []
    monkeypatch.setattr(Executor, "run_forever", lambda self, state=None: loops.append(state))
    config_path = _write_config(tmp_path, _base_config(type="ftp"))

    with caplog.at_level(logging.ERROR, logger="clouddump"):
        code = cli.main(["--config", str(config_path)])

    assert code == 1
    assert loops == []
    assert any(record.getMessage().startswith("[s3-sync]") and '"ftp"' in record.getMessage() for record in caplog.records)


def test_start_sends_startup_mail_and_enters_loop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    loops: List[Any] = []
    announced: List[Any] = []
    monkeypatch.setattr(Executor, "run_forever", lambda self, state=None: loops.append(state))
    monkeypatch.setattr(cli.Reporter, "announce_startup", lambda self, jobs: announced.append(jobs) or False)
    monkeypatch.setattr("clouddump.cli.signal.signal", lambda signum, handler: None)
    config = _base_config()
    config["settings"]["lock_dir"] = str(tmp_path / "locks")
    config_path = _write_config(tmp_path, config)

    assert cli.main(["--config", str(config_path), "start"]) == 0
    assert len(loops) == 1
    assert [job.id for job in announced[0]] == ["s3-sync"]


def test_validate_prints_summary(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert cli.main(["validate", "--config", str(config_path)]) == 0
    output = capsys.readouterr().out
    assert "Config valid:" in output
    assert "Total jobs: 1" in output
    assert "- s3-sync: s3bucket (*/5 * * * *)" in output


def test_preview_lists_next_runs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert cli.main(["--config", str(config_path), "preview", "--count", "2"]) == 0
    output = capsys.readouterr().out
    assert "Job: s3-sync (s3bucket, S3Sync)" in output
    assert "Next 2 run(s):" in output


def test_preview_rejects_unknown_job(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert cli.main(["--config", str(config_path), "preview", "--job", "nope"]) == 1


def test_preview_rejects_non_positive_count(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, _base_config())
    assert cli.main(["--config", str(config_path), "preview", "--count", "0"]) == 1


def test_run_reports_failure_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ran: List[str] = []

    def fake_s3(payload: dict, log: Any, runner: Any, debug: bool) -> int:
        ran.append(payload["id"])
        return 2

    monkeypatch.setitem(executor.DEFAULT_RUNNERS, JobType.S3BUCKET, fake_s3)
    config = _base_config()
    config["settings"]["lock_dir"] = str(tmp_path / "locks")
    config_path = _write_config(tmp_path, config)

    assert cli.main(["--config", str(config_path), "run", "--job", "s3-sync"]) == 1
    assert ran == ["s3-sync"]


def test_missing_config_file(tmp_path: Path) -> None:
    assert cli.main(["--config", str(tmp_path / "missing.json"), "validate"]) == 1
