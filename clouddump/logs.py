from __future__ import annotations

import hashlib
import logging
import os
import re
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional, TextIO

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_.-]")


def setup_logging(debug: bool = False) -> logging.Logger:
    logger = logging.getLogger("clouddump")
    if not logger.handlers:
        logger.setLevel(logging.INFO)
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)
    if debug:
        logger.setLevel(logging.DEBUG)
    return logger


logger = setup_logging()


def filename_token(value: str) -> str:
    """Filesystem and logger safe form of a job id; distinct ids stay distinct."""
    raw = value.strip()
    token = UNSAFE_FILENAME_RE.sub("_", raw)
    if token != raw or not token:
        digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:8]
        token = f"{token or 'job'}-{digest}"
    return token


class JobLog:
    """Log file for a single job run; dump tool output is appended to it."""

    def __init__(self, job_id: str, directory: Optional[Path] = None):
        token = filename_token(job_id)
        fd, name = tempfile.mkstemp(
            prefix=f"clouddump-{token}-",
            suffix=".log",
            dir=str(directory) if directory else None,
        )
        self.job_id = job_id
        self.path = Path(name)
        self._stream: TextIO = os.fdopen(fd, "a", encoding="utf-8")
        self._handler = logging.StreamHandler(self._stream)
        self._handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.logger = logging.getLogger(f"clouddump.job.{token}")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        self.logger.addHandler(self._handler)

    def info(self, message: str, *args: Any) -> None:
        self.logger.info(message, *args)

    def warning(self, message: str, *args: Any) -> None:
        self.logger.warning(message, *args)

    def error(self, message: str, *args: Any) -> None:
        self.logger.error(message, *args)

    def debug(self, message: str, *args: Any) -> None:
        self.logger.debug(message, *args)

    def sink(self) -> TextIO:
        # Child processes write straight into the file; flush ours first so
        # lines stay in order.
        self._handler.flush()
        self._stream.flush()
        return self._stream

    def read_text(self) -> str:
        self._handler.flush()
        return self.path.read_text(encoding="utf-8", errors="replace")

    def close(self) -> None:
        self.logger.removeHandler(self._handler)
        self._handler.close()
        if not self._stream.closed:
            self._stream.close()

    def __enter__(self) -> "JobLog":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
