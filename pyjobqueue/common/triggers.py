# pyjobqueue/common/triggers.py
"""Schedule triggers for recurring job definitions.

A job is scheduled either by a cron-like expression or by a fixed interval,
never both. The two cases are modelled as separate trigger types so a job
definition carries exactly one of them.

Cron expressions are evaluated with ``cronsim``. Besides the standard five
fields, a six-field form with a leading seconds field and the ``@every``
descriptor (``@every 1s``, ``@every 1m30s``) are accepted; the latter is
turned into an :class:`IntervalTrigger`.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from cronsim import CronSim, CronSimError

from .exceptions import ConfigurationError

_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}

# Upper bound on minute matches inspected when a seconds field is present.
_MAX_MINUTE_SCAN = 10_000


def parse_duration(text: str) -> float:
    """Parse a Go-style duration such as ``1h30m`` or ``45s`` into seconds."""
    text = text.strip()
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if not text or pos != len(text):
        raise ConfigurationError(f"Invalid duration: {text!r}")
    return total


def _parse_seconds_field(field: str) -> List[int]:
    seconds = set()
    for part in field.split(","):
        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) == 0:
                raise ConfigurationError(f"Invalid seconds step: {step_str!r}")
            step = int(step_str)
        if part == "*":
            start, end = 0, 59
        elif "-" in part:
            lo, hi = part.split("-", 1)
            if not (lo.isdigit() and hi.isdigit()):
                raise ConfigurationError(f"Invalid seconds range: {part!r}")
            start, end = int(lo), int(hi)
        elif part.isdigit():
            start = int(part)
            end = 59 if step > 1 else start
        else:
            raise ConfigurationError(f"Invalid seconds field: {field!r}")
        if start > end or end > 59:
            raise ConfigurationError(f"Seconds out of range: {field!r}")
        seconds.update(range(start, end + 1, step))
    return sorted(seconds)


@dataclass(frozen=True)
class CronTrigger:
    expression: str

    def __post_init__(self):
        expression = " ".join(self.expression.split())
        if expression.startswith("@every"):
            raise ConfigurationError(
                "'@every' expressions are interval triggers; use parse_schedule()"
            )
        expression = _DESCRIPTORS.get(expression, expression)
        object.__setattr__(self, "expression", expression)
        # Validate eagerly so bad definitions fail at scheduling time.
        minute_expr, _ = self._split()
        try:
            CronSim(minute_expr, datetime(2000, 1, 1))
        except CronSimError as e:
            raise ConfigurationError(
                f"Invalid cron expression {self.expression!r}: {e}"
            ) from e

    def _split(self) -> Tuple[str, Optional[List[int]]]:
        fields = self.expression.split(" ")
        if len(fields) == 6:
            return " ".join(fields[1:]), _parse_seconds_field(fields[0])
        if len(fields) == 5:
            return self.expression, None
        raise ConfigurationError(
            f"Cron expression must have 5 or 6 fields: {self.expression!r}"
        )

    def next_fire_time(self, after: datetime) -> datetime:
        minute_expr, seconds = self._split()
        if seconds is None:
            return next(CronSim(minute_expr, after))

        minute = after.replace(second=0, microsecond=0)
        it = CronSim(minute_expr, minute - timedelta(minutes=1))
        for _ in range(_MAX_MINUTE_SCAN):
            candidate_minute = next(it)
            for second in seconds:
                candidate = candidate_minute + timedelta(seconds=second)
                if candidate > after:
                    return candidate
        raise ConfigurationError(
            f"Cron expression {self.expression!r} has no upcoming fire time"
        )

    def describe(self) -> str:
        return f"cron: {self.expression}"


@dataclass(frozen=True)
class IntervalTrigger:
    seconds: float

    def __post_init__(self):
        if self.seconds <= 0:
            raise ConfigurationError(
                f"Interval must be positive, got {self.seconds!r}"
            )

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.seconds)

    def next_fire_time(self, after: datetime) -> datetime:
        return after + self.interval

    def describe(self) -> str:
        return f"interval: {self.interval}"


Trigger = Union[CronTrigger, IntervalTrigger]


def parse_schedule(expression: str) -> Trigger:
    expression = expression.strip()
    if expression.startswith("@every"):
        return IntervalTrigger(parse_duration(expression[len("@every"):]))
    return CronTrigger(expression)


def trigger_from_fields(
    cron_expression: Optional[str], interval_seconds: Optional[float]
) -> Trigger:
    """Build the trigger for a job definition stored as two optional columns."""
    has_cron = bool(cron_expression and cron_expression.strip())
    has_interval = bool(interval_seconds and interval_seconds > 0)
    if has_cron and has_interval:
        raise ConfigurationError(
            "Job defines both a cron expression and an interval"
        )
    if has_cron:
        return parse_schedule(cron_expression)
    if has_interval:
        return IntervalTrigger(float(interval_seconds))
    raise ConfigurationError("Job has no cron expression or interval")


def trigger_to_fields(trigger: Trigger) -> Tuple[Optional[str], Optional[float]]:
    if isinstance(trigger, CronTrigger):
        return trigger.expression, None
    return None, trigger.seconds
