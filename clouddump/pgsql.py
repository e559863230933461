"""
PostgreSQL dump jobs.

Each server descriptor is resolved against the live server on every run: the
database list and (when table options are configured) the table list are
queried with ``psql`` and handed to the resolver. Every selected database is
dumped with ``pg_dump`` in tar format to a timestamped temporary file, checked,
optionally bzip2-compressed and moved to its final name.
"""

from __future__ import annotations

import bz2
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List

from clouddump.commands import CommandRunner, prepare_directory
from clouddump.config import ensure_bool, ensure_int, ensure_str, optional_str
from clouddump.errors import CommandError, ConfigError
from clouddump.logs import JobLog
from clouddump.resolver import DatabaseSelection, TableSelection, parse_selection, resolve_databases, resolve_tables

DEFAULT_PORT = 5432
MAINTENANCE_DATABASE = "postgres"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
LIST_DATABASES_SQL = "SELECT datname FROM pg_database WHERE datallowconn ORDER BY datname"
LIST_TABLES_SQL = (
    "SELECT schemaname || '.' || tablename FROM pg_catalog.pg_tables "
    "WHERE schemaname NOT IN ('pg_catalog', 'information_schema') ORDER BY 1"
)


@dataclass(frozen=True)
class ServerSpec:
    host: str
    user: str
    password: str = field(repr=False)
    backuppath: Path
    port: int = DEFAULT_PORT
    filenamedate: bool = False
    compress: bool = True
    selection: DatabaseSelection = field(default_factory=DatabaseSelection)

    @property
    def env(self) -> Dict[str, str]:
        return {"PGPASSWORD": self.password}

    def connection_args(self, database: str) -> List[str]:
        return ["-h", self.host, "-p", str(self.port), "-U", self.user, "-d", database]


def _servers(raw_job: Dict[str, Any], field_path: str) -> List[Dict[str, Any]]:
    servers = raw_job.get("servers")
    if not isinstance(servers, list) or not servers:
        raise ConfigError(f"Error: {field_path}.servers must be a non-empty list.")
    return servers


def parse_server(raw: Any, field_path: str) -> ServerSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    for key in ("host", "user", "pass", "backuppath"):
        if raw.get(key) in (None, ""):
            raise ConfigError(f"Error: Missing {field_path}.{key}.")
    return ServerSpec(
        host=ensure_str(raw.get("host"), f"{field_path}.host"),
        port=ensure_int(raw.get("port"), f"{field_path}.port", DEFAULT_PORT),
        user=ensure_str(raw.get("user"), f"{field_path}.user"),
        password=ensure_str(raw.get("pass"), f"{field_path}.pass"),
        backuppath=Path(ensure_str(raw.get("backuppath"), f"{field_path}.backuppath")),
        filenamedate=ensure_bool(raw.get("filenamedate"), f"{field_path}.filenamedate", False),
        compress=ensure_bool(raw.get("compress"), f"{field_path}.compress", True),
        selection=parse_selection(raw.get("databases"), raw.get("databases_excluded"), field_path),
    )


def payload_problems(raw_job: Dict[str, Any], field_path: str) -> List[str]:
    try:
        servers = _servers(raw_job, field_path)
    except ConfigError as exc:
        return [str(exc)]
    problems: List[str] = []
    for idx, raw in enumerate(servers):
        try:
            parse_server(raw, f"{field_path}.servers[{idx}]")
        except ConfigError as exc:
            problems.append(str(exc))
    return problems


def _query(runner: CommandRunner, server: ServerSpec, database: str, sql: str) -> List[str]:
    argv = ["psql", *server.connection_args(database), "-At", "-c", sql]
    result = runner.capture(argv, env=server.env)
    if result.return_code != 0:
        detail = result.stderr.strip() or f"exit code {result.return_code}"
        raise CommandError(f"Error: psql query on {server.host}/{database} failed: {detail}")
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def list_databases(runner: CommandRunner, server: ServerSpec) -> List[str]:
    return _query(runner, server, MAINTENANCE_DATABASE, LIST_DATABASES_SQL)


def list_tables(runner: CommandRunner, server: ServerSpec, database: str) -> List[str]:
    return _query(runner, server, database, LIST_TABLES_SQL)


def _compress(source: Path, target: Path) -> None:
    with source.open("rb") as src, bz2.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)
    source.unlink()


def _final_name(database: str, timestamp: str, server: ServerSpec) -> str:
    stem = f"{database}-{timestamp}" if server.filenamedate else database
    return f"{stem}.tar.bz2" if server.compress else f"{stem}.tar"


def dump_database(
    server: ServerSpec,
    database: str,
    log: JobLog,
    runner: CommandRunner,
    debug: bool = False,
    clock: Callable[[], datetime] = datetime.now,
) -> int:
    tables: TableSelection = server.selection.tables_for(database)
    live_tables = None
    if tables.configured:
        try:
            live_tables = list_tables(runner, server, database)
        except CommandError as exc:
            log.error("%s", exc)
            return 1

    resolution = resolve_tables(live_tables, tables)
    for warning in resolution.warnings:
        log.warning("%s: %s", database, warning)
    for error in resolution.errors:
        log.error("%s: %s", database, error)
    if resolution.skip:
        return 1

    timestamp = clock().strftime(TIMESTAMP_FORMAT)
    temp_file = server.backuppath / f"{database}-{timestamp}.tar"
    final_file = server.backuppath / _final_name(database, timestamp, server)

    argv = ["pg_dump", *server.connection_args(database), "-F", "tar", "-f", str(temp_file)]
    argv.extend(resolution.include_params)
    argv.extend(resolution.exclude_params)
    if debug:
        argv.append("--verbose")

    log.info("Backing up database %s from %s to %s...", database, server.host, temp_file)
    code = runner.run(argv, log, env=server.env, trace=debug)
    if code != 0:
        log.error("Backup of database %s failed (exit code %s).", database, code)
        temp_file.unlink(missing_ok=True)
        return code

    if not temp_file.is_file() or temp_file.stat().st_size == 0:
        log.error("Backup file %s is missing or empty.", temp_file)
        temp_file.unlink(missing_ok=True)
        return 1

    try:
        if server.compress:
            log.info("Compressing backup file %s...", temp_file)
            compressed = temp_file.with_name(temp_file.name + ".bz2")
            _compress(temp_file, compressed)
            temp_file = compressed
        log.info("Moving %s to %s", temp_file, final_file)
        os.replace(temp_file, final_file)
    except OSError as exc:
        log.error("Could not finalize backup of database %s: %s", database, exc)
        return 1

    if resolution.errors:
        # The dump ran for the tables that exist; the missing ones still fail the run.
        return 1
    log.info("Backup of database %s completed successfully.", database)
    return 0


def dump_server(
    server: ServerSpec,
    log: JobLog,
    runner: CommandRunner,
    debug: bool = False,
    clock: Callable[[], datetime] = datetime.now,
) -> int:
    log.info("Host: %s", server.host)
    log.info("Port: %s", server.port)
    log.info("Username: %s", server.user)
    log.info("Backup path: %s", server.backuppath)
    log.info("Filename date: %s", str(server.filenamedate).lower())
    log.info("Compress: %s", str(server.compress).lower())

    if not prepare_directory(server.backuppath, log):
        return 1

    try:
        live_databases = list_databases(runner, server)
    except CommandError as exc:
        log.error("%s", exc)
        return 1

    resolution = resolve_databases(live_databases, server.selection)
    result = 0
    for error in resolution.errors:
        log.error("%s: %s", server.host, error)
        result = 1

    for database in resolution.databases:
        code = dump_database(server, database, log, runner, debug=debug, clock=clock)
        if code != 0:
            result = code
    return result


def run_pgsql_job(
    raw_job: Dict[str, Any],
    log: JobLog,
    runner: CommandRunner,
    debug: bool = False,
    clock: Callable[[], datetime] = datetime.now,
) -> int:
    result = 0
    for idx, raw in enumerate(_servers(raw_job, "job")):
        try:
            server = parse_server(raw, f"servers[{idx}]")
        except ConfigError as exc:
            log.error("%s", exc)
            result = 1
            continue
        code = dump_server(server, log, runner, debug=debug, clock=clock)
        if code != 0:
            result = code
    return result
