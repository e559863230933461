from __future__ import annotations

import argparse
import signal
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, List, Optional, Tuple

from clouddump import __version__
from clouddump.config import DEFAULT_CONFIG, ConfigSource, Settings, parse_settings
from clouddump.cron import next_fire_times
from clouddump.errors import CloudDumpError, ConfigError, RegistryError
from clouddump.executor import Executor, SchedulerState
from clouddump.locks import FileJobLock
from clouddump.logs import logger, setup_logging
from clouddump.policy import policy_for
from clouddump.registry import Job, JobRegistry, load_registry
from clouddump.report import Reporter

DEFAULT_PREVIEW_COUNT = 5


def load_config(config_path: Path) -> Tuple[ConfigSource, Settings, JobRegistry]:
    source = ConfigSource.from_file(config_path)
    settings = parse_settings(source)
    setup_logging(settings.debug)
    registry = load_registry(source)
    return source, settings, registry


def build_executor(source: ConfigSource, settings: Settings, registry: JobRegistry) -> Tuple[Executor, FileJobLock]:
    lock = FileJobLock(settings.lock_dir, stale_after=timedelta(hours=settings.lock_stale_hours))
    executor = Executor(
        registry,
        policy_for(settings.schedule_policy),
        lock,
        Reporter(settings),
        config=source,
    )
    return executor, lock


def filter_jobs(registry: JobRegistry, job_id: Optional[str]) -> List[Job]:
    if not job_id:
        return list(registry)
    job = registry.get(job_id)
    if job is None:
        raise ConfigError(f'Error: Job "{job_id}" not found.')
    return [job]


def command_start(config_path: Path) -> int:
    source, settings, registry = load_config(config_path)
    logger.info("CloudDump v%s starting on %s with %s job(s).", __version__, settings.host, len(registry))

    executor, lock = build_executor(source, settings, registry)
    executor.reporter.announce_startup(list(registry))
    for path in lock.cleanup_stale():
        logger.info("Removed stale lock %s", path)

    def shutdown(signum: int, frame: Any) -> None:
        logger.info("Received signal %s, stopping after the current job.", signum)
        executor.request_stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    executor.run_forever(SchedulerState())
    return 0


def command_validate(config_path: Path) -> int:
    _, settings, registry = load_config(config_path)
    print(f"Config valid: {config_path}")
    print(f"Host: {settings.host}")
    print(f"Schedule policy: {settings.schedule_policy}")
    print(f"Total jobs: {len(registry)}")
    for job in registry:
        print(f"- {job.id}: {job.type.value} ({job.schedule})")
    return 0


def command_preview(config_path: Path, job_id: Optional[str], count: int) -> int:
    _, _, registry = load_config(config_path)
    now = datetime.now()
    for job in filter_jobs(registry, job_id):
        print("=" * 80)
        print(f"Job: {job.id} ({job.type.value}, {job.type.label})")
        print(f"Schedule: {job.schedule}")
        print(f"Debug: {str(job.debug).lower()}")
        print(f"Next {count} run(s):")
        runs = next_fire_times(job.schedule, now, count)
        if not runs:
            print("- none")
        for run_at in runs:
            print(f"- {run_at.isoformat(sep=' ')}")
    print("=" * 80)
    return 0


def command_run(config_path: Path, job_id: Optional[str], respect_schedule: bool) -> int:
    source, settings, registry = load_config(config_path)
    executor, _ = build_executor(source, settings, registry)

    exit_code = 0
    now = datetime.now()
    for job in filter_jobs(registry, job_id):
        if respect_schedule and not executor.policy.should_run(job.schedule, None, now):
            logger.info("Skipping %s: not due now.", job.id)
            continue
        report = executor.execute(job)
        if report is not None and not report.success:
            exit_code = 1
    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="clouddump",
        description="CloudDump scheduler for blob storage, S3 and PostgreSQL dump jobs",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to JSON or YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    start_parser = subparsers.add_parser("start", help="Run the scheduler loop (default)")
    start_parser.add_argument("--config", default=argparse.SUPPRESS, help="Path to config")

    validate_parser = subparsers.add_parser("validate", help="Validate config and all jobs")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help="Path to config")

    preview_parser = subparsers.add_parser("preview", help="Show the next fire times of each job")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help="Path to config")
    preview_parser.add_argument("--job", help="Preview a single job by id")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run jobs once")
    run_parser.add_argument("--config", default=argparse.SUPPRESS, help="Path to config")
    run_parser.add_argument("--job", help="Run one job by id")
    run_parser.add_argument(
        "--respect-schedule",
        action="store_true",
        help="Only run selected job(s) if due in the current minute",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG)
    command = args.command or "start"

    try:
        if command == "start":
            return command_start(config_path)
        if command == "validate":
            return command_validate(config_path)
        if command == "preview":
            if args.count <= 0:
                raise CloudDumpError("--count must be >= 1")
            return command_preview(config_path, job_id=args.job, count=args.count)
        if command == "run":
            return command_run(config_path, job_id=args.job, respect_schedule=args.respect_schedule)
        raise CloudDumpError(f"Unsupported command: {command}")
    except RegistryError as exc:
        for problem in exc.problems:
            logger.error(problem)
        logger.error(str(exc))
        return 1
    except CloudDumpError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return 1
