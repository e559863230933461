"""
Job registry: validates every configured job before the scheduler starts.

Validation collects every problem across all jobs instead of stopping at the
first one, so a broken configuration can be fixed in a single pass.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from clouddump import pgsql, sync
from clouddump.config import ConfigSource, ensure_bool
from clouddump.cron import CronSchedule, cron_problems, parse_schedule
from clouddump.errors import ConfigError, RegistryError


class JobType(str, Enum):
    AZSTORAGE = "azstorage"
    S3BUCKET = "s3bucket"
    PGSQL = "pgsql"

    @property
    def label(self) -> str:
        return JOB_TYPE_LABELS[self]


JOB_TYPE_LABELS = {
    JobType.AZSTORAGE: "BlobSync",
    JobType.S3BUCKET: "S3Sync",
    JobType.PGSQL: "PostgresDump",
}

REQUIRED_TOOLS: Dict[JobType, Tuple[str, ...]] = {
    JobType.AZSTORAGE: ("azcopy",),
    JobType.S3BUCKET: ("aws",),
    JobType.PGSQL: ("psql", "pg_dump"),
}

PAYLOAD_VALIDATORS: Dict[JobType, Callable[[Dict[str, Any], str], List[str]]] = {
    JobType.AZSTORAGE: sync.blob_payload_problems,
    JobType.S3BUCKET: sync.s3_payload_problems,
    JobType.PGSQL: pgsql.payload_problems,
}


@dataclass(frozen=True)
class Job:
    id: str
    type: JobType
    schedule: CronSchedule
    debug: bool
    payload: Dict[str, Any] = field(compare=False)
    index: int = 0


class JobRegistry:
    def __init__(self, jobs: List[Job]):
        self.jobs = list(jobs)

    def get(self, job_id: str) -> Optional[Job]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def __iter__(self) -> Iterator[Job]:
        return iter(self.jobs)

    def __len__(self) -> int:
        return len(self.jobs)


def _job_label(raw: Dict[str, Any], field_path: str) -> str:
    job_id = raw.get("id")
    if isinstance(job_id, str) and job_id.strip():
        return f"[{job_id.strip()}]"
    return f"[{field_path}]"


def _job_problems(
    raw: Any,
    field_path: str,
    seen_ids: Dict[str, str],
    which: Callable[[str], Optional[str]],
) -> List[str]:
    if not isinstance(raw, dict):
        return [f"[{field_path}] Error: {field_path} must be a mapping."]

    label = _job_label(raw, field_path)
    problems: List[str] = []

    job_id = raw.get("id")
    if not isinstance(job_id, str) or not job_id.strip():
        problems.append(f"Error: Missing {field_path}.id.")
    elif job_id.strip() in seen_ids:
        problems.append(f'Error: Duplicate job id "{job_id.strip()}" (also used by {seen_ids[job_id.strip()]}).')
    else:
        seen_ids[job_id.strip()] = field_path

    problems.extend(cron_problems(raw.get("crontab"), f"{field_path}.crontab"))

    try:
        ensure_bool(raw.get("debug"), f"{field_path}.debug", False)
    except ConfigError as exc:
        problems.append(str(exc))

    raw_type = raw.get("type")
    job_type: Optional[JobType] = None
    if raw_type in (None, ""):
        problems.append(f"Error: Missing {field_path}.type.")
    else:
        try:
            job_type = JobType(str(raw_type).strip().lower())
        except ValueError:
            known = ", ".join(item.value for item in JobType)
            problems.append(f'Error: {field_path}.type "{raw_type}" is not one of: {known}.')

    if job_type is not None:
        for tool in REQUIRED_TOOLS[job_type]:
            if which(tool) is None:
                problems.append(f'Error: Required executable "{tool}" for {job_type.value} jobs was not found on PATH.')
        problems.extend(PAYLOAD_VALIDATORS[job_type](raw, field_path))

    return [f"{label} {problem}" for problem in problems]


def load_registry(
    source: ConfigSource,
    which: Optional[Callable[[str], Optional[str]]] = None,
) -> JobRegistry:
    which = which or shutil.which
    try:
        count = source.length("jobs")
    except ConfigError as exc:
        raise RegistryError([str(exc)]) from exc
    if count == 0:
        raise RegistryError(["Error: No jobs configured."])

    problems: List[str] = []
    seen_ids: Dict[str, str] = {}
    for idx in range(count):
        problems.extend(_job_problems(source.element("jobs", idx), f"jobs[{idx}]", seen_ids, which))
    if problems:
        raise RegistryError(problems)

    jobs: List[Job] = []
    for idx in range(count):
        field_path = f"jobs[{idx}]"
        raw = source.element("jobs", idx)
        jobs.append(
            Job(
                id=raw["id"].strip(),
                type=JobType(str(raw["type"]).strip().lower()),
                schedule=parse_schedule(raw["crontab"], f"{field_path}.crontab"),
                debug=ensure_bool(raw.get("debug"), f"{field_path}.debug", False),
                payload=raw,
                index=idx,
            )
        )
    return JobRegistry(jobs)
