from __future__ import annotations

from typing import Iterable, List


class CloudDumpError(Exception):
    """Base error for clouddump."""


class ConfigError(CloudDumpError):
    """Config validation error."""


class RegistryError(ConfigError):
    """One or more configured jobs failed validation."""

    def __init__(self, problems: Iterable[str]):
        self.problems: List[str] = list(problems)
        count = len(self.problems)
        super().__init__(f"Error: {count} job configuration problem(s) found.")


class CommandError(CloudDumpError):
    """An external tool could not be started or returned unusable output."""
