from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest

from clouddump.config import ConfigSource, ensure_bool, ensure_int, parse_settings
from clouddump.errors import ConfigError


def test_json_config_is_loaded(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"settings": {"HOST": "box"}, "jobs": [{"id": "a", "servers": [{"host": "db"}]}]}))
    source = ConfigSource.from_file(path)
    assert source.get("settings.HOST") == "box"
    assert source.length("jobs") == 1
    assert source.get("jobs[0].servers[0].host") == "db"
    assert source.element("jobs", 0)["id"] == "a"
    assert source.get("jobs[3].id", "missing") == "missing"


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        ConfigSource.from_file(tmp_path / "nope.json")
    broken = tmp_path / "broken.json"
    broken.write_text('{"settings": ', encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse"):
        ConfigSource.from_file(broken)
    listed = tmp_path / "list.yaml"
    listed.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Top-level config must be a mapping"):
        ConfigSource.from_file(listed)


def test_length_requires_list() -> None:
    with pytest.raises(ConfigError, match="jobs must be a list"):
        ConfigSource({"jobs": {"a": 1}}).length("jobs")


def test_settings_defaults() -> None:
    settings = parse_settings(ConfigSource({}))
    assert settings.host
    assert settings.debug is False
    assert settings.smtp_port == 465
    assert settings.schedule_policy == "catchup"
    assert settings.lock_dir == Path(tempfile.gettempdir())
    assert settings.lock_stale_hours == 24
    assert settings.mounts == []
    assert not settings.mail_enabled


def test_settings_values() -> None:
    raw = {
        "HOST": "backup01",
        "DEBUG": "true",
        "SMTPSERVER": "smtp.example.com",
        "SMTPPORT": "587",
        "MAILTO": "ops@example.com",
        "schedule_policy": "SKIP",
        "lock_stale_hours": 2,
        "mount": [{"path": "host\\share", "mountpoint": "/mnt/share"}, {"path": "incomplete"}],
    }
    settings = parse_settings(ConfigSource({"settings": raw}))
    assert settings.debug is True
    assert settings.smtp_port == 587
    assert settings.schedule_policy == "skip"
    assert settings.lock_stale_hours == 2
    assert [(m.path, m.mountpoint) for m in settings.mounts] == [("host/share", "/mnt/share")]
    assert settings.mail_enabled


def test_invalid_schedule_policy() -> None:
    with pytest.raises(ConfigError, match="settings.schedule_policy"):
        parse_settings(ConfigSource({"settings": {"schedule_policy": "parallel"}}))


def test_typed_helpers() -> None:
    assert ensure_bool(None, "x", True) is True
    assert ensure_bool("False", "x", True) is False
    with pytest.raises(ConfigError, match="x must be true or false"):
        ensure_bool("yes", "x", False)
    assert ensure_int("15", "y", 1) == 15
    with pytest.raises(ConfigError, match="y must be >= 1"):
        ensure_int(0, "y", 1)
    with pytest.raises(ConfigError, match="y must be an integer"):
        ensure_int(True, "y", 1)
