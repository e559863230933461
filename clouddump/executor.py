"""
Sequential executor and main loop.

Jobs are evaluated in declaration order once per minute tick. An eligible job
runs synchronously under its lock; its completion time is the moment the run
finished, so a long job never triggers itself again for fire times that passed
while it was running.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from clouddump.commands import CommandRunner, auxiliary_logs
from clouddump.config import ConfigSource
from clouddump.errors import CloudDumpError
from clouddump.locks import JobLock
from clouddump.logs import JobLog, logger
from clouddump.pgsql import run_pgsql_job
from clouddump.policy import SchedulePolicy
from clouddump.registry import Job, JobRegistry, JobType
from clouddump.report import Reporter, RunReport, format_job_configuration
from clouddump.sync import run_blob_job, run_s3_job

JobRunner = Callable[[Dict[str, Any], JobLog, CommandRunner, bool], int]

DEFAULT_RUNNERS: Dict[JobType, JobRunner] = {
    JobType.AZSTORAGE: run_blob_job,
    JobType.S3BUCKET: run_s3_job,
    JobType.PGSQL: run_pgsql_job,
}
MIN_SLEEP_SECONDS = 1
REPORT_CONFIG_UNAVAILABLE = "Configuration unavailable"


@dataclass(frozen=True)
class SchedulerState:
    last_completion: Mapping[str, datetime] = field(default_factory=dict)

    def last_for(self, job_id: str) -> Optional[datetime]:
        return self.last_completion.get(job_id)

    def with_completion(self, job_id: str, completed_at: datetime) -> "SchedulerState":
        updated = dict(self.last_completion)
        updated[job_id] = completed_at
        return SchedulerState(updated)


def seconds_until_next_minute(now: datetime) -> int:
    return max(60 - now.second, MIN_SLEEP_SECONDS)


class Executor:
    def __init__(
        self,
        registry: JobRegistry,
        policy: SchedulePolicy,
        lock: JobLock,
        reporter: Reporter,
        runners: Optional[Dict[JobType, JobRunner]] = None,
        command_runner: Optional[CommandRunner] = None,
        clock: Callable[[], datetime] = datetime.now,
        config: Optional[ConfigSource] = None,
        log_dir: Optional[Path] = None,
    ):
        self.registry = registry
        self.policy = policy
        self.lock = lock
        self.reporter = reporter
        self.runners = dict(DEFAULT_RUNNERS)
        if runners:
            self.runners.update(runners)
        self.command_runner = command_runner or CommandRunner()
        self.clock = clock
        self.config = config
        self.log_dir = log_dir
        self._stop = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def tick(self, state: SchedulerState) -> SchedulerState:
        for job in self.registry:
            if self.stopping:
                break
            if not self.policy.should_run(job.schedule, state.last_for(job.id), self.clock()):
                continue
            report = self.execute(job)
            if report is not None:
                state = state.with_completion(job.id, report.ended_at)
        return state

    def _current_payload(self, job: Job) -> Dict[str, Any]:
        if self.config is None:
            return job.payload
        try:
            payload = self.config.reload().element("jobs", job.index)
        except CloudDumpError as exc:
            logger.warning("Could not re-read configuration for job %s, using the startup copy: %s", job.id, exc)
            return job.payload
        if not isinstance(payload, dict) or payload.get("id") != job.id:
            logger.warning("Job %s is no longer at jobs[%s]; using the startup copy.", job.id, job.index)
            return job.payload
        return payload

    def execute(self, job: Job) -> Optional[RunReport]:
        """Run one job under its lock. Returns None when the lock is busy."""
        token = self.lock.try_acquire(job.id)
        if token is None:
            logger.info("Job %s is already running; skipping this tick.", job.id)
            return None

        try:
            return self._run_locked(job)
        finally:
            self.lock.release(token)

    def _run_locked(self, job: Job) -> RunReport:
        started_at = self.clock()
        payload = self._current_payload(job)
        logger.info("Running job %s (%s).", job.id, job.type.value)

        with JobLog(job.id, self.log_dir) as log:
            log.info("Job %s (%s) started.", job.id, job.type.label)
            try:
                exit_code = self.runners[job.type](payload, log, self.command_runner, job.debug)
            except Exception as exc:
                log.error("Job %s failed with an unexpected error: %s", job.id, exc)
                logger.exception("Job %s failed with an unexpected error.", job.id)
                exit_code = 1
            log.info("Job %s finished with exit code %s.", job.id, exit_code)
            log_text = log.read_text()
            log_path = log.path

        ended_at = self.clock()
        if exit_code == 0:
            logger.info("Job %s completed successfully.", job.id)
        else:
            logger.error("Job %s failed with exit code %s.", job.id, exit_code)

        report = RunReport(
            job_id=job.id,
            job_type=f"{job.type.value} ({job.type.label})",
            exit_code=exit_code,
            started_at=started_at,
            ended_at=ended_at,
            log_path=log_path,
            config_snapshot=self._config_snapshot(job, payload),
            auxiliary_logs=auxiliary_logs(log_text),
        )
        try:
            self.reporter.deliver(report)
        except Exception as exc:
            logger.exception("Could not deliver the report for job %s: %s", job.id, exc)
        return report

    def _config_snapshot(self, job: Job, payload: Dict[str, Any]) -> str:
        try:
            return format_job_configuration(payload)
        except Exception as exc:
            logger.warning("Could not render the configuration of job %s: %s", job.id, exc)
            return REPORT_CONFIG_UNAVAILABLE

    def run_forever(self, state: Optional[SchedulerState] = None) -> SchedulerState:
        state = state or SchedulerState()
        logger.info("Scheduler started with %s job(s).", len(self.registry))
        while not self.stopping:
            state = self.tick(state)
            if self._stop.wait(seconds_until_next_minute(self.clock())):
                break
        logger.info("Scheduler stopped.")
        return state
