"""
Schedule policies decide whether a job is due, given its last completion.

``CatchUpPolicy`` looks back over every whole minute since the last completion
so a fire time that passed while the loop was busy with another job is not
lost. ``SkipPolicy`` only looks at the current minute.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Type

from clouddump.cron import ONE_MINUTE, CronSchedule, matches, next_fire_times, truncate_to_minute
from clouddump.errors import ConfigError


class SchedulePolicy:
    name = ""

    def should_run(self, schedule: CronSchedule, last_completion: Optional[datetime], now: datetime) -> bool:
        raise NotImplementedError


class CatchUpPolicy(SchedulePolicy):
    name = "catchup"

    def should_run(self, schedule: CronSchedule, last_completion: Optional[datetime], now: datetime) -> bool:
        current_minute = truncate_to_minute(now)
        if last_completion is None:
            return matches(schedule, current_minute)

        # First fire time after the last completion, searched no further than now.
        window = current_minute - truncate_to_minute(last_completion) - ONE_MINUTE
        return bool(next_fire_times(schedule, last_completion, 1, horizon=window))


class SkipPolicy(SchedulePolicy):
    name = "skip"

    def should_run(self, schedule: CronSchedule, last_completion: Optional[datetime], now: datetime) -> bool:
        current_minute = truncate_to_minute(now)
        if not matches(schedule, current_minute):
            return False
        return last_completion is None or truncate_to_minute(last_completion) != current_minute


POLICIES: Dict[str, Type[SchedulePolicy]] = {
    CatchUpPolicy.name: CatchUpPolicy,
    SkipPolicy.name: SkipPolicy,
}


def policy_for(name: str) -> SchedulePolicy:
    try:
        return POLICIES[name]()
    except KeyError as exc:
        raise ConfigError(f'Error: Unknown schedule policy "{name}".') from exc
