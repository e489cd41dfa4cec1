"""
Module deciding when the dispatcher may start uploads.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
EVERY_DAY = tuple(range(7))


class ScheduleMode(str, Enum):
    ALLOW_DURING = "allow"
    BLOCK_DURING = "block"


@dataclass
class ScheduleRule:
    """A daily time window.

    Minutes count from midnight. A window whose end is before its start runs
    overnight, e.g. 18:00-09:00. Days use datetime.weekday(), 0 = Monday.
    """
    start_minute: int
    end_minute: int
    days: Tuple[int, ...] = EVERY_DAY
    name: str = ""
    enabled: bool = True

    def __post_init__(self):
        self.days = tuple(sorted(set(self.days)))
        if not 0 <= self.start_minute <= MINUTES_PER_DAY or not 0 <= self.end_minute <= MINUTES_PER_DAY:
            raise ValueError(f"Schedule window {self.start_minute}-{self.end_minute} is outside one day")
        if any(day not in EVERY_DAY for day in self.days):
            raise ValueError(f"Invalid schedule days: {self.days}")

    def contains(self, minute: int) -> bool:
        if self.start_minute <= self.end_minute:
            return self.start_minute <= minute < self.end_minute
        return minute >= self.start_minute or minute < self.end_minute

    def applies_on(self, weekday: int) -> bool:
        return self.enabled and weekday in self.days


@dataclass
class UploadSchedule:
    """Allow-list or block-list of windows for starting uploads.

    A disabled schedule allows everything. In allow mode a day without
    rules allows nothing; in block mode it allows everything.
    """
    enabled: bool = False
    mode: ScheduleMode = ScheduleMode.ALLOW_DURING
    rules: List[ScheduleRule] = field(default_factory=list)

    def __post_init__(self):
        self.mode = ScheduleMode(self.mode)

    def is_upload_allowed(self, at: datetime) -> bool:
        if not self.enabled:
            return True

        rules = [r for r in self.rules if r.applies_on(at.weekday())]
        if not rules:
            return self.mode == ScheduleMode.BLOCK_DURING

        minute = at.hour * 60 + at.minute
        inside = any(rule.contains(minute) for rule in rules)
        return inside if self.mode == ScheduleMode.ALLOW_DURING else not inside

    def next_allowed_time(self, at: datetime) -> Optional[datetime]:
        """Earliest window boundary within a week at which uploads are allowed.

        Returns:
            None if uploads are allowed now or no boundary opens the schedule
        """
        if self.is_upload_allowed(at):
            return None

        midnight = at.replace(hour=0, minute=0, second=0, microsecond=0)
        candidates = []
        for offset in range(8):
            day = midnight + timedelta(days=offset)
            for rule in self.rules:
                if not rule.applies_on(day.weekday()):
                    continue
                boundary = rule.start_minute if self.mode == ScheduleMode.ALLOW_DURING else rule.end_minute
                candidates.append(day + timedelta(minutes=boundary))
            # Midnight switches to another day's rule set.
            candidates.append(day + timedelta(days=1))

        for candidate in sorted(c for c in candidates if c > at):
            if self.is_upload_allowed(candidate):
                return candidate
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadSchedule":
        return cls(
            enabled=bool(data.get('enabled', False)),
            mode=data.get('mode', ScheduleMode.ALLOW_DURING.value),
            rules=[
                ScheduleRule(
                    start_minute=int(rule['start_minute']),
                    end_minute=int(rule['end_minute']),
                    days=tuple(rule.get('days', EVERY_DAY)),
                    name=rule.get('name', ""),
                    enabled=bool(rule.get('enabled', True))
                )
                for rule in data.get('rules', [])
            ]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'mode': self.mode.value,
            'rules': [
                {
                    'name': rule.name,
                    'start_minute': rule.start_minute,
                    'end_minute': rule.end_minute,
                    'days': list(rule.days),
                    'enabled': rule.enabled,
                }
                for rule in self.rules
            ]
        }
