"""
Cloud storage sync jobs: Azure blob storage through azcopy and S3/MinIO
buckets through the aws CLI.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from clouddump.commands import CommandRunner, prepare_directory
from clouddump.config import ensure_bool, optional_str
from clouddump.errors import ConfigError
from clouddump.logs import JobLog

DEFAULT_AWS_REGION = "us-east-1"


def _entries(raw_job: Dict[str, Any], key: str, field_path: str) -> List[Dict[str, Any]]:
    entries = raw_job.get(key)
    if not isinstance(entries, list) or not entries:
        raise ConfigError(f"Error: {field_path}.{key} must be a non-empty list.")
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"Error: {field_path}.{key}[{idx}] must be a mapping.")
    return entries


def _entry_problems(
    raw_job: Dict[str, Any],
    key: str,
    field_path: str,
    scheme: str,
    optional_strings: List[str],
) -> List[str]:
    try:
        entries = _entries(raw_job, key, field_path)
    except ConfigError as exc:
        return [str(exc)]

    problems: List[str] = []
    for idx, entry in enumerate(entries):
        item_path = f"{field_path}.{key}[{idx}]"
        try:
            source = optional_str(entry.get("source"), f"{item_path}.source")
            if not source:
                problems.append(f"Error: Missing {item_path}.source.")
            elif not source.startswith(scheme):
                problems.append(f"Error: {item_path}.source must start with {scheme}")
            if not optional_str(entry.get("destination"), f"{item_path}.destination"):
                problems.append(f"Error: Missing {item_path}.destination.")
            ensure_bool(entry.get("delete_destination"), f"{item_path}.delete_destination", False)
            for name in optional_strings:
                optional_str(entry.get(name), f"{item_path}.{name}")
        except ConfigError as exc:
            problems.append(str(exc))
    return problems


def blob_payload_problems(raw_job: Dict[str, Any], field_path: str) -> List[str]:
    return _entry_problems(raw_job, "blobstorages", field_path, "https://", [])


def s3_payload_problems(raw_job: Dict[str, Any], field_path: str) -> List[str]:
    return _entry_problems(
        raw_job,
        "buckets",
        field_path,
        "s3://",
        ["aws_access_key_id", "aws_secret_access_key", "aws_region", "endpoint_url"],
    )


def run_blob_job(raw_job: Dict[str, Any], log: JobLog, runner: CommandRunner, debug: bool = False) -> int:
    result = 0
    entries = _entries(raw_job, "blobstorages", "job")
    for idx, entry in enumerate(entries):
        item_path = f"blobstorages[{idx}]"
        source = optional_str(entry.get("source"), f"{item_path}.source")
        destination = optional_str(entry.get("destination"), f"{item_path}.destination")
        mirror = ensure_bool(entry.get("delete_destination"), f"{item_path}.delete_destination", True)
        source_stripped = source.split("?", 1)[0]

        log.info("Source: %s", source_stripped)
        log.info("Destination: %s", destination)
        log.info("Mirror (delete): %s", str(mirror).lower())

        if not source.startswith("https://"):
            log.error("Invalid source %s. Source must start with https://", source_stripped)
            result = 1
            continue
        if not destination or not prepare_directory(Path(destination), log):
            result = 1
            continue

        argv = [
            "azcopy",
            "sync",
            "--recursive",
            f"--delete-destination={str(mirror).lower()}",
        ]
        if debug:
            argv.append("--log-level=DEBUG")
        argv.extend([source, destination])

        log.info("Syncing source %s to destination %s...", source_stripped, destination)
        code = runner.run(argv, log, trace=debug)
        if code != 0:
            log.error("Sync from source %s to destination %s failed (exit code %s).", source_stripped, destination, code)
            result = code
            continue
        log.info("Sync completed successfully.")
    return result


def run_s3_job(raw_job: Dict[str, Any], log: JobLog, runner: CommandRunner, debug: bool = False) -> int:
    result = 0
    entries = _entries(raw_job, "buckets", "job")
    for idx, entry in enumerate(entries):
        item_path = f"buckets[{idx}]"
        source = optional_str(entry.get("source"), f"{item_path}.source")
        destination = optional_str(entry.get("destination"), f"{item_path}.destination")
        delete = ensure_bool(entry.get("delete_destination"), f"{item_path}.delete_destination", False)
        region = optional_str(entry.get("aws_region"), f"{item_path}.aws_region", DEFAULT_AWS_REGION)
        endpoint_url = optional_str(entry.get("endpoint_url"), f"{item_path}.endpoint_url")

        log.info("Source: %s", source)
        log.info("Destination: %s", destination)
        log.info("Delete destination: %s", str(delete).lower())
        log.info("AWS Region: %s", region)
        if endpoint_url:
            log.info("Endpoint URL: %s", endpoint_url)

        if not source.startswith("s3://"):
            log.error("Invalid source %s. Source must start with s3://", source)
            result = 1
            continue
        if not destination or not prepare_directory(Path(destination), log):
            result = 1
            continue

        # Credentials only ever reach the child environment.
        env = {"AWS_DEFAULT_REGION": region}
        access_key_id = optional_str(entry.get("aws_access_key_id"), f"{item_path}.aws_access_key_id")
        secret_access_key = optional_str(entry.get("aws_secret_access_key"), f"{item_path}.aws_secret_access_key")
        if access_key_id:
            env["AWS_ACCESS_KEY_ID"] = access_key_id
        if secret_access_key:
            env["AWS_SECRET_ACCESS_KEY"] = secret_access_key

        argv = ["aws", "s3", "sync"]
        if endpoint_url:
            argv.extend(["--endpoint-url", endpoint_url])
        if delete:
            argv.append("--delete")
        if debug:
            argv.append("--debug")
        argv.extend([source, destination])

        log.info("Syncing source %s to destination %s...", source, destination)
        code = runner.run(argv, log, env=env, trace=debug)
        if code != 0:
            log.error("Sync from source %s to destination %s failed (exit code %s).", source, destination, code)
            result = code
            continue
        log.info("Sync completed successfully.")
    return result
