"""
Five-field cron expressions: parsing, validation and matching.

Supported field forms are ``*``, ``*/N``, ``N``, ``A-B`` and comma separated
lists of numbers and ranges. Day-of-week is 0=Sunday..6=Saturday (7 is also
accepted as Sunday). Unlike classic cron, a restricted day-of-month and a
restricted day-of-week must BOTH match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Tuple

from croniter import croniter

from clouddump.errors import ConfigError

FIELD_NAMES = ("minute", "hour", "day_of_month", "month", "day_of_week")
FIELD_BOUNDS = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day_of_month": (1, 31),
    "month": (1, 12),
    "day_of_week": (0, 7),
}
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
ONE_MINUTE = timedelta(minutes=1)
DEFAULT_PREVIEW_HORIZON = timedelta(days=366 * 4)


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str

    @property
    def fields(self) -> Tuple[str, str, str, str, str]:
        return (self.minute, self.hour, self.day_of_month, self.month, self.day_of_week)

    def __str__(self) -> str:
        return self.expression


def truncate_to_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


def validate_cron_token(token: str, field_path: str, min_value: int, max_value: int) -> List[str]:
    if not CRON_FIELD_RE.match(token):
        return [f'Error: Invalid cron token "{token}" at {field_path}.']

    problems: List[str] = []
    for part in token.split(","):
        if not part:
            problems.append(f'Error: Invalid cron token "{token}" at {field_path}.')
            continue
        if "/" in part:
            base, step_str = part.split("/", 1)
            if base != "*":
                problems.append(f'Error: Step "{part}" must have the form */N at {field_path}.')
            elif not step_str.isdigit() or int(step_str) <= 0:
                problems.append(f'Error: Invalid step "{part}" at {field_path}.')
            continue
        problems.extend(_validate_range_or_single(part, field_path, min_value, max_value))
    return problems


def _validate_range_or_single(token: str, field_path: str, min_value: int, max_value: int) -> List[str]:
    if token == "*":
        return []
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            return [f'Error: Invalid range "{token}" at {field_path}.']
        start = int(left)
        end = int(right)
        if start > end:
            return [f'Error: Invalid range "{token}" at {field_path}.']
        if start < min_value or end > max_value:
            return [f'Error: Range "{token}" out of bounds {min_value}-{max_value} at {field_path}.']
        return []
    if not token.isdigit():
        return [f'Error: Invalid token "{token}" at {field_path}.']
    value = int(token)
    if value < min_value or value > max_value:
        return [f'Error: Value "{value}" out of bounds {min_value}-{max_value} at {field_path}.']
    return []


def cron_problems(expression: object, field_path: str = "crontab") -> List[str]:
    if not isinstance(expression, str) or not expression.strip():
        return [f"Error: {field_path} must be a non-empty cron expression."]
    tokens = expression.split()
    if len(tokens) != 5:
        return [
            f'Error: {field_path} must have exactly 5 fields (minute hour day month weekday), '
            f'got {len(tokens)} in "{expression.strip()}".'
        ]

    problems: List[str] = []
    for name, token in zip(FIELD_NAMES, tokens):
        low, high = FIELD_BOUNDS[name]
        problems.extend(validate_cron_token(token, f"{field_path}.{name}", low, high))
    if not problems and not croniter.is_valid(" ".join(tokens)):
        problems.append(f'Error: {field_path} "{expression.strip()}" is not a valid cron expression.')
    return problems


def parse_schedule(expression: object, field_path: str = "crontab") -> CronSchedule:
    problems = cron_problems(expression, field_path)
    if problems:
        raise ConfigError(" ".join(problems))
    tokens = str(expression).split()
    return CronSchedule(" ".join(tokens), *tokens)


def field_matches(pattern: str, value: int) -> bool:
    return any(_part_matches(part, value) for part in pattern.split(","))


def _part_matches(part: str, value: int) -> bool:
    if part == "*":
        return True
    if part.startswith("*/"):
        step = int(part[2:])
        return step > 0 and value % step == 0
    if "-" in part:
        left, right = part.split("-", 1)
        return int(left) <= value <= int(right)
    return int(part) == value


def cron_weekday(moment: datetime) -> int:
    day_of_week = moment.isoweekday()
    if day_of_week == 7:
        day_of_week = 0
    return day_of_week


def _weekday_matches(pattern: str, moment: datetime) -> bool:
    day_of_week = cron_weekday(moment)
    if field_matches(pattern, day_of_week):
        return True
    # Sunday may be written as 7.
    return day_of_week == 0 and field_matches(pattern, 7)


def _day_matches(schedule: CronSchedule, moment: datetime) -> bool:
    return field_matches(schedule.day_of_month, moment.day) and _weekday_matches(schedule.day_of_week, moment)


def matches(schedule: CronSchedule, moment: datetime) -> bool:
    return (
        field_matches(schedule.minute, moment.minute)
        and field_matches(schedule.hour, moment.hour)
        and field_matches(schedule.month, moment.month)
        and _day_matches(schedule, moment)
    )


def _start_of_next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0)
    return moment.replace(month=moment.month + 1, day=1, hour=0, minute=0)


def next_fire_times(
    schedule: CronSchedule,
    after: datetime,
    count: int,
    horizon: timedelta = DEFAULT_PREVIEW_HORIZON,
) -> List[datetime]:
    runs: List[datetime] = []
    candidate = truncate_to_minute(after) + ONE_MINUTE
    limit = candidate + horizon
    while len(runs) < count and candidate <= limit:
        if not field_matches(schedule.month, candidate.month):
            candidate = _start_of_next_month(candidate)
            continue
        if not _day_matches(schedule, candidate):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if not field_matches(schedule.hour, candidate.hour):
            candidate = (candidate + timedelta(hours=1)).replace(minute=0)
            continue
        if field_matches(schedule.minute, candidate.minute):
            runs.append(candidate)
        candidate += ONE_MINUTE
    return runs
