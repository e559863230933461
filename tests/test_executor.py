from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import yaml

from clouddump import executor as executor_module
from clouddump.config import ConfigSource, parse_settings
from clouddump.executor import Executor, SchedulerState, seconds_until_next_minute
from clouddump.locks import FileJobLock
from clouddump.logs import JobLog
from clouddump.policy import CatchUpPolicy
from clouddump.registry import JobRegistry, JobType, load_registry
from clouddump.report import RenderedMessage, Reporter


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMailer:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: List[RenderedMessage] = []

    def send(self, message: RenderedMessage) -> bool:
        self.sent.append(message)
        return self.ok


def _s3_job(job_id: str, crontab: str) -> dict:
    return {
        "type": "s3bucket",
        "id": job_id,
        "crontab": crontab,
        "buckets": [
            {
                "source": "s3://bucket",
                "destination": "/backup/s3",
                "aws_secret_access_key": "topsecret",
            }
        ],
    }


def _config(*jobs: dict) -> dict:
    return {"settings": {"HOST": "testhost", "MAILTO": "ops@example.com"}, "jobs": list(jobs)}


def _registry(config: dict) -> JobRegistry:
    return load_registry(ConfigSource(config), which=lambda tool: f"/usr/bin/{tool}")


def _executor(
    tmp_path: Path,
    config: dict,
    clock: FakeClock,
    runner: Callable[..., int],
    mailer: Optional[FakeMailer] = None,
    source: Optional[ConfigSource] = None,
) -> Executor:
    settings = parse_settings(ConfigSource(config))
    return Executor(
        _registry(config),
        CatchUpPolicy(),
        FileJobLock(tmp_path / "locks"),
        Reporter(settings, mailer or FakeMailer()),
        runners={JobType.S3BUCKET: runner},
        clock=clock,
        config=source,
        log_dir=tmp_path,
    )


def test_missed_fire_time_runs_once_after_blocking_job(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 10, 1, 0))
    runs: List[str] = []

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        runs.append(payload["id"])
        if payload["id"] == "long":
            clock.advance(minutes=6, seconds=40)
        else:
            clock.advance(seconds=20)
        return 0

    config = _config(_s3_job("five", "*/5 * * * *"), _s3_job("long", "1 10 * * *"))
    executor = _executor(tmp_path, config, clock, runner)
    state = SchedulerState({"five": datetime(2024, 1, 1, 10, 0, 30)})

    state = executor.tick(state)
    assert runs == ["long"]
    assert clock.now == datetime(2024, 1, 1, 10, 7, 40)

    clock.now = datetime(2024, 1, 1, 10, 8, 0)
    state = executor.tick(state)
    assert runs == ["long", "five"]
    assert state.last_for("five") == datetime(2024, 1, 1, 10, 8, 20)

    clock.now = datetime(2024, 1, 1, 10, 9, 0)
    state = executor.tick(state)
    assert runs == ["long", "five"]

    clock.now = datetime(2024, 1, 1, 10, 10, 0)
    executor.tick(state)
    assert runs == ["long", "five", "five"]


def test_failure_does_not_stop_other_jobs(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    mailer = FakeMailer()

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        if payload["id"] == "broken":
            raise RuntimeError("boom")
        return 0 if payload["id"] == "ok" else 3

    config = _config(_s3_job("broken", "* * * * *"), _s3_job("bad", "* * * * *"), _s3_job("ok", "* * * * *"))
    executor = _executor(tmp_path, config, clock, runner, mailer)

    state = executor.tick(SchedulerState())

    assert [m.subject for m in mailer.sent] == [
        "[Failure] CloudDump testhost: broken",
        "[Failure] CloudDump testhost: bad",
        "[Success] CloudDump testhost: ok",
    ]
    assert set(state.last_completion) == {"broken", "bad", "ok"}
    assert list((tmp_path / "locks").iterdir()) == []


def test_busy_lock_skips_job_and_keeps_state(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    calls: List[str] = []

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        calls.append(payload["id"])
        return 0

    config = _config(_s3_job("job-1", "* * * * *"))
    executor = _executor(tmp_path, config, clock, runner)
    token = executor.lock.try_acquire("job-1")
    assert token is not None

    state = executor.tick(SchedulerState())

    assert calls == []
    assert state.last_for("job-1") is None
    executor.lock.release(token)


def test_mail_failure_still_records_completion_and_removes_log(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    log_paths: List[Path] = []

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        log_paths.append(log.path)
        log.info("working")
        return 0

    config = _config(_s3_job("job-1", "* * * * *"))
    mailer = FakeMailer(ok=False)
    executor = _executor(tmp_path, config, clock, runner, mailer)

    state = executor.tick(SchedulerState())

    assert state.last_for("job-1") == clock.now
    assert len(mailer.sent) == 1
    assert mailer.sent[0].attachments == log_paths
    assert not log_paths[0].exists()


def test_report_snapshot_hides_credentials(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    mailer = FakeMailer()
    config = _config(_s3_job("job-1", "* * * * *"))
    executor = _executor(tmp_path, config, clock, lambda *args: 0, mailer)

    executor.tick(SchedulerState())

    body = mailer.sent[0].body
    assert "s3://bucket" in body
    assert "topsecret" not in body


def test_payload_is_reread_before_each_run(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    config = _config(_s3_job("job-1", "* * * * *"))
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    destinations: List[str] = []

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        destinations.append(payload["buckets"][0]["destination"])
        return 0

    executor = _executor(tmp_path, config, clock, runner, source=ConfigSource.from_file(config_path))
    config["jobs"][0]["buckets"][0]["destination"] = "/backup/changed"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")

    executor.tick(SchedulerState())

    assert destinations == ["/backup/changed"]


def test_unreadable_config_falls_back_to_startup_payload(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    config = _config(_s3_job("job-1", "* * * * *"))
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    destinations: List[str] = []

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        destinations.append(payload["buckets"][0]["destination"])
        return 0

    executor = _executor(tmp_path, config, clock, runner, source=ConfigSource.from_file(config_path))
    config_path.write_text("jobs: [unclosed", encoding="utf-8")

    executor.tick(SchedulerState())

    assert destinations == ["/backup/s3"]


def test_run_forever_stops_on_request(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    executor: Optional[Executor] = None

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        assert executor is not None
        executor.request_stop()
        return 0

    executor = _executor(tmp_path, _config(_s3_job("job-1", "* * * * *")), clock, runner)
    state = executor.run_forever()

    assert state.last_for("job-1") == clock.now
    assert executor.stopping


def test_sleep_until_next_minute_has_floor() -> None:
    assert seconds_until_next_minute(datetime(2024, 1, 1, 0, 0, 0)) == 60
    assert seconds_until_next_minute(datetime(2024, 1, 1, 0, 0, 45)) == 15
    assert seconds_until_next_minute(datetime(2024, 1, 1, 0, 0, 59, 900000)) == 1


def test_malformed_reread_payload_still_reports_and_runs_later_jobs(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    config = _config(_s3_job("j1", "* * * * *"), _s3_job("j2", "* * * * *"))
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    mailer = FakeMailer()
    ran: List[str] = []
    log_paths: List[Path] = []

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        ran.append(payload["id"])
        log_paths.append(log.path)
        return 1 if payload["id"] == "j1" else 0

    executor = _executor(tmp_path, config, clock, runner, mailer, source=ConfigSource.from_file(config_path))
    config["jobs"][0]["buckets"] = 5
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")

    state = executor.tick(SchedulerState())

    assert ran == ["j1", "j2"]
    assert set(state.last_completion) == {"j1", "j2"}
    assert "buckets: 5" in mailer.sent[0].body
    assert not any(path.exists() for path in log_paths)


def test_config_snapshot_failure_falls_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    mailer = FakeMailer()

    def broken_snapshot(payload: Dict[str, Any]) -> str:
        raise TypeError("'int' object is not iterable")

    monkeypatch.setattr(executor_module, "format_job_configuration", broken_snapshot)
    executor = _executor(tmp_path, _config(_s3_job("j1", "* * * * *")), clock, lambda *args: 0, mailer)

    state = executor.tick(SchedulerState())

    assert state.last_for("j1") == clock.now
    assert "Configuration unavailable" in mailer.sent[0].body


def test_raising_mailer_does_not_stop_the_tick(tmp_path: Path) -> None:
    clock = FakeClock(datetime(2024, 1, 1, 0, 0, 5))
    log_paths: List[Path] = []

    class ExplodingMailer(FakeMailer):
        def send(self, message: RenderedMessage) -> bool:
            super().send(message)
            raise UnicodeEncodeError("ascii", "pässword", 1, 2, "ordinal not in range(128)")

    def runner(payload: Dict[str, Any], log: JobLog, command_runner: Any, debug: bool) -> int:
        log_paths.append(log.path)
        return 0

    mailer = ExplodingMailer()
    config = _config(_s3_job("j1", "* * * * *"), _s3_job("j2", "* * * * *"))
    executor = _executor(tmp_path, config, clock, runner, mailer)

    state = executor.tick(SchedulerState())

    assert len(mailer.sent) == 2
    assert state.last_for("j1") == clock.now
    assert state.last_for("j2") == clock.now
    assert not any(path.exists() for path in log_paths)
