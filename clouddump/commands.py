from __future__ import annotations

import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from clouddump.errors import CommandError
from clouddump.logs import JobLog
from clouddump.redact import redact

AUXILIARY_LOG_RE = re.compile(r"^Log file is located at: (.*\.log)\s*$", re.MULTILINE)
DEFAULT_CAPTURE_TIMEOUT_SECONDS = 300


@dataclass
class CommandResult:
    return_code: int
    stdout: str
    stderr: str


class CommandRunner:
    """Runs the external dump tools."""

    def run(
        self,
        argv: Sequence[str],
        log: JobLog,
        env: Optional[Dict[str, str]] = None,
        trace: bool = False,
    ) -> int:
        if trace:
            log.info("+ %s", redact(shlex.join(argv)))
        try:
            result = subprocess.run(
                list(argv),
                stdout=log.sink(),
                stderr=subprocess.STDOUT,
                env=_child_env(env),
                check=False,
            )
        except OSError as exc:
            log.error("Could not start %s: %s", argv[0], exc)
            return 127
        return result.returncode

    def capture(
        self,
        argv: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        timeout: int = DEFAULT_CAPTURE_TIMEOUT_SECONDS,
    ) -> CommandResult:
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                env=_child_env(env),
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"Error: {argv[0]} timed out after {timeout} seconds.") from exc
        except OSError as exc:
            raise CommandError(f"Error: Could not start {argv[0]}: {exc}") from exc
        return CommandResult(
            return_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )


def _child_env(overrides: Optional[Dict[str, str]]) -> Dict[str, str]:
    env = os.environ.copy()
    if overrides:
        env.update({k: v for k, v in overrides.items() if v is not None})
    return env


def prepare_directory(path: Path, log: JobLog) -> bool:
    log.info("Creating directory %s", path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        log.error("Could not create directory %s: %s", path, exc)
        return False

    log.info("Checking permission for %s", path)
    probe = path / "TEST_FILE"
    try:
        probe.touch()
        probe.unlink()
    except OSError as exc:
        log.error("Could not access %s: %s", path, exc)
        return False
    return True


def auxiliary_logs(log_text: str) -> List[Path]:
    """Tool log files announced in a job's output, e.g. azcopy's own log."""
    paths: List[Path] = []
    for match in AUXILIARY_LOG_RE.finditer(log_text):
        path = Path(match.group(1).strip())
        if path not in paths and path.is_file():
            paths.append(path)
    return paths
