from __future__ import annotations

import json
import re
import socket
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from clouddump.errors import ConfigError

DEFAULT_CONFIG = "/config/config.json"
DEFAULT_SMTP_PORT = 465
DEFAULT_LOCK_STALE_HOURS = 24
DEFAULT_SCHEDULE_POLICY = "catchup"
VALID_SCHEDULE_POLICIES = {"catchup", "skip"}
PATH_TOKEN_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def _split_path(path: str) -> Iterator[Tuple[Optional[str], int]]:
    position = 0
    for match in PATH_TOKEN_RE.finditer(path):
        gap = path[position:match.start()]
        if gap not in ("", "."):
            raise ConfigError(f'Error: Invalid config path "{path}".')
        position = match.end()
        if match.group(1) is not None:
            yield match.group(1), -1
        else:
            yield None, int(match.group(2))
    if path[position:]:
        raise ConfigError(f'Error: Invalid config path "{path}".')


class ConfigSource:
    """Read-only view over a loaded configuration, addressed by paths like jobs[0].servers."""

    def __init__(self, payload: Dict[str, Any], path: Optional[Path] = None):
        self.payload = payload
        self.path = path

    @classmethod
    def from_file(cls, config_path: Path) -> "ConfigSource":
        if not config_path.exists():
            raise ConfigError(f"Error: Config file not found: {config_path}")
        try:
            text = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Error: Can't read config file {config_path}: {exc}") from exc
        try:
            if config_path.suffix.lower() == ".json":
                payload = json.loads(text) if text.strip() else {}
            else:
                payload = yaml.safe_load(text) or {}
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ConfigError(f"Error: Failed to parse {config_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError("Error: Top-level config must be a mapping.")
        return cls(payload, config_path)

    def reload(self) -> "ConfigSource":
        if self.path is None:
            return self
        return ConfigSource.from_file(self.path)

    def get(self, path: str, default: Any = None) -> Any:
        node: Any = self.payload
        for key, index in _split_path(path):
            if key is not None:
                if not isinstance(node, dict) or key not in node:
                    return default
                node = node[key]
            else:
                if not isinstance(node, list) or index >= len(node):
                    return default
                node = node[index]
        return default if node is None else node

    def length(self, path: str) -> int:
        value = self.get(path)
        if value is None:
            return 0
        if not isinstance(value, list):
            raise ConfigError(f"Error: {path} must be a list.")
        return len(value)

    def element(self, path: str, index: int, default: Any = None) -> Any:
        return self.get(f"{path}[{index}]", default)


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def optional_str(value: Any, field_path: str, default: str = "") -> str:
    if value is None or value == "":
        return default
    return ensure_str(value, field_path)


@dataclass(frozen=True)
class MountSpec:
    path: str
    mountpoint: str


@dataclass(frozen=True)
class Settings:
    host: str
    debug: bool
    smtp_server: str
    smtp_port: int
    smtp_user: str
    smtp_pass: str
    mail_from: str
    mail_to: str
    mounts: List[MountSpec]
    schedule_policy: str
    lock_dir: Path
    lock_stale_hours: int

    @property
    def mail_enabled(self) -> bool:
        return bool(self.smtp_server and self.mail_to)


def parse_settings(source: ConfigSource) -> Settings:
    raw = source.get("settings", {})
    if not isinstance(raw, dict):
        raise ConfigError("Error: settings must be a mapping.")

    mounts: List[MountSpec] = []
    for idx in range(source.length("settings.mount")):
        item_path = f"settings.mount[{idx}]"
        item = source.element("settings.mount", idx)
        if not isinstance(item, dict):
            raise ConfigError(f"Error: {item_path} must be a mapping.")
        path = optional_str(item.get("path"), f"{item_path}.path")
        mountpoint = optional_str(item.get("mountpoint"), f"{item_path}.mountpoint")
        if path and mountpoint:
            mounts.append(MountSpec(path=path.replace("\\", "/"), mountpoint=mountpoint))

    policy = optional_str(raw.get("schedule_policy"), "settings.schedule_policy", DEFAULT_SCHEDULE_POLICY).lower()
    if policy not in VALID_SCHEDULE_POLICIES:
        raise ConfigError(
            f'Error: settings.schedule_policy must be one of {sorted(VALID_SCHEDULE_POLICIES)}, got "{policy}".'
        )

    lock_dir = Path(optional_str(raw.get("lock_dir"), "settings.lock_dir", tempfile.gettempdir()))

    return Settings(
        host=optional_str(raw.get("HOST"), "settings.HOST", socket.gethostname()),
        debug=ensure_bool(raw.get("DEBUG"), "settings.DEBUG", False),
        smtp_server=optional_str(raw.get("SMTPSERVER"), "settings.SMTPSERVER"),
        smtp_port=ensure_int(raw.get("SMTPPORT"), "settings.SMTPPORT", DEFAULT_SMTP_PORT),
        smtp_user=optional_str(raw.get("SMTPUSER"), "settings.SMTPUSER"),
        smtp_pass=optional_str(raw.get("SMTPPASS"), "settings.SMTPPASS"),
        mail_from=optional_str(raw.get("MAILFROM"), "settings.MAILFROM"),
        mail_to=optional_str(raw.get("MAILTO"), "settings.MAILTO"),
        mounts=mounts,
        schedule_policy=policy,
        lock_dir=lock_dir,
        lock_stale_hours=ensure_int(
            raw.get("lock_stale_hours"), "settings.lock_stale_hours", DEFAULT_LOCK_STALE_HOURS
        ),
    )
