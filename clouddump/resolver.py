"""
Database and table selection for PostgreSQL dump jobs.

A server descriptor either lists databases explicitly (``databases``) or
dumps everything except ``databases_excluded``; an explicit list always wins.
Per database, ``tables_included`` restricts the dump to existing tables and
``tables_excluded`` adds exclude flags. Names compare case-insensitively.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from clouddump.errors import ConfigError


@dataclass(frozen=True)
class TableSelection:
    included: Tuple[str, ...] = ()
    excluded: Tuple[str, ...] = ()

    @property
    def configured(self) -> bool:
        return bool(self.included or self.excluded)

    @property
    def ambiguous(self) -> bool:
        return bool(self.included and self.excluded)


@dataclass(frozen=True)
class DatabaseSelection:
    explicit: Dict[str, TableSelection] = field(default_factory=dict)
    excluded: Tuple[str, ...] = ()

    def tables_for(self, database: str) -> TableSelection:
        wanted = database.lower()
        for name, tables in self.explicit.items():
            if name.lower() == wanted:
                return tables
        return TableSelection()


@dataclass
class DatabaseResolution:
    databases: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class TableResolution:
    include_params: List[str] = field(default_factory=list)
    exclude_params: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    skip: bool = False


def _name_list(raw: Any, field_path: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        raise ConfigError(f"Error: {field_path} must be a list of names.")
    names: List[str] = []
    for idx, value in enumerate(raw):
        if not isinstance(value, str):
            raise ConfigError(f"Error: {field_path}[{idx}] must be a string.")
        if value.strip():
            names.append(value.strip())
    return tuple(names)


def _table_selection(raw: Any, field_path: str) -> TableSelection:
    if raw is None:
        return TableSelection()
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(raw.keys()) - {"tables_included", "tables_excluded"}
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return TableSelection(
        included=_name_list(raw.get("tables_included"), f"{field_path}.tables_included"),
        excluded=_name_list(raw.get("tables_excluded"), f"{field_path}.tables_excluded"),
    )


def parse_selection(databases: Any, databases_excluded: Any, field_path: str) -> DatabaseSelection:
    """Build a selection from a server's ``databases`` and ``databases_excluded``.

    ``databases`` may be a list whose items are database names or single-key
    mappings of name to table options, or one mapping of name to options.
    """
    explicit: Dict[str, TableSelection] = {}
    path = f"{field_path}.databases"
    if databases is None:
        pass
    elif isinstance(databases, dict):
        for name, options in databases.items():
            explicit[str(name).strip()] = _table_selection(options, f"{path}.{name}")
    elif isinstance(databases, list):
        for idx, item in enumerate(databases):
            item_path = f"{path}[{idx}]"
            if isinstance(item, str) and item.strip():
                explicit[item.strip()] = TableSelection()
            elif isinstance(item, dict) and item:
                for name, options in item.items():
                    explicit[str(name).strip()] = _table_selection(options, f"{item_path}.{name}")
            else:
                raise ConfigError(f"Error: {item_path} must be a database name or a mapping.")
    else:
        raise ConfigError(f"Error: {path} must be a list or a mapping.")

    excluded = _name_list(databases_excluded, f"{field_path}.databases_excluded")
    return DatabaseSelection(explicit=explicit, excluded=excluded)


def resolve_databases(live_databases: Iterable[str], selection: DatabaseSelection) -> DatabaseResolution:
    live = [name for name in live_databases if name]
    by_lower: Dict[str, str] = {}
    for name in live:
        by_lower.setdefault(name.lower(), name)

    result = DatabaseResolution()
    if selection.explicit:
        for name in selection.explicit:
            actual = by_lower.get(name.lower())
            if actual is None:
                result.errors.append(f"Configured database '{name}' does not exist on the server.")
                continue
            if actual not in result.databases:
                result.databases.append(actual)
    else:
        excluded = {name.lower() for name in selection.excluded}
        result.databases = [name for name in live if name.lower() not in excluded]

    if not result.databases:
        result.errors.append("No databases to back up.")
    return result


def _table_exists(name: str, live_tables: Sequence[str]) -> bool:
    wanted = name.lower()
    for table in live_tables:
        candidate = table.lower()
        if candidate == wanted or candidate.rsplit(".", 1)[-1] == wanted:
            return True
    return False


def resolve_tables(live_tables: Optional[Iterable[str]], tables: TableSelection) -> TableResolution:
    result = TableResolution()
    live = list(live_tables or [])

    if tables.ambiguous:
        result.warnings.append(
            "Both tables_included and tables_excluded are configured; "
            "tables_included takes precedence and tables_excluded is ignored."
        )

    if tables.included:
        for name in tables.included:
            if _table_exists(name, live):
                result.include_params.append(f"--table={name}")
            else:
                result.errors.append(f"Configured table '{name}' does not exist. Skipping this table.")
        if not result.include_params:
            result.errors.append("None of the configured tables exist; the database will not be dumped.")
            result.skip = True
        return result

    for name in tables.excluded:
        if not _table_exists(name, live):
            result.warnings.append(f"Excluded table '{name}' does not exist.")
        result.exclude_params.append(f"--exclude-table={name}")
    return result
