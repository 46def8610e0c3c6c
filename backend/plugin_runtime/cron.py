"""
Five-field cron expressions: minute hour day-of-month month day-of-week.

Supports `*`, numbers, ranges `a-b`, steps `*/n` and `a-b/n`, lists, month and
weekday names, weekday 7 as Sunday, and the @hourly/@daily/@weekly/@monthly/
@yearly shorthands. When both day fields are restricted a time matches if
either one does (standard cron semantics).
"""

from datetime import datetime, timedelta

_MONTH_NAMES = {name: i for i, name in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], 1)}
_DAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

_MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# (low, high, names) per field
_FIELDS = (
    (0, 59, None),
    (0, 23, None),
    (1, 31, None),
    (1, 12, _MONTH_NAMES),
    (0, 7, _DAY_NAMES),
)

# Searching further than this means the expression can never fire (e.g. Feb 30)
_SEARCH_YEARS = 5


class CronParseError(ValueError):
    pass


def _value(token: str, low: int, high: int, names) -> int:
    token = token.strip().lower()
    if names and token in names:
        return names[token]
    if not token.isdigit():
        raise CronParseError(f"invalid value {token!r}")
    value = int(token)
    if value < low or value > high:
        raise CronParseError(f"value {value} out of range {low}-{high}")
    return value


def _parse_field(text: str, low: int, high: int, names) -> set[int]:
    allowed: set[int] = set()
    for part in text.split(","):
        if not part:
            raise CronParseError(f"empty list item in {text!r}")
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise CronParseError(f"invalid step {step_text!r}")
            step = int(step_text)
        if base == "*":
            start, end = low, high
        elif "-" in base:
            a, b = base.split("-", 1)
            start, end = _value(a, low, high, names), _value(b, low, high, names)
            if start > end:
                raise CronParseError(f"range {base!r} is reversed")
        else:
            start = _value(base, low, high, names)
            end = high if step_text else start
        allowed.update(range(start, end + 1, step))
    return allowed


class CronExpression:
    def __init__(self, text: str, minutes, hours, days, months, weekdays,
                 day_restricted: bool, weekday_restricted: bool):
        self.text = text
        self.minutes = minutes
        self.hours = hours
        self.days = days
        self.months = months
        self.weekdays = weekdays
        self.day_restricted = day_restricted
        self.weekday_restricted = weekday_restricted

    @classmethod
    def parse(cls, text: str) -> "CronExpression":
        if not isinstance(text, str) or not text.strip():
            raise CronParseError("cron expression is empty")
        expanded = _MACROS.get(text.strip().lower(), text)
        parts = expanded.split()
        if len(parts) != 5:
            raise CronParseError(f"expected 5 fields, got {len(parts)}")
        sets = [_parse_field(p, lo, hi, names) for p, (lo, hi, names) in zip(parts, _FIELDS)]
        weekdays = {0 if d == 7 else d for d in sets[4]}
        return cls(
            text.strip(), sets[0], sets[1], sets[2], sets[3], weekdays,
            day_restricted=not parts[2].startswith("*"),
            weekday_restricted=not parts[4].startswith("*"),
        )

    def _day_matches(self, dt: datetime) -> bool:
        dom = dt.day in self.days
        dow = (dt.isoweekday() % 7) in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return dom or dow
        if self.day_restricted:
            return dom
        if self.weekday_restricted:
            return dow
        return True

    def matches(self, dt: datetime) -> bool:
        return (dt.minute in self.minutes and dt.hour in self.hours
                and dt.month in self.months and self._day_matches(dt))

    def next_after(self, dt: datetime) -> datetime:
        """First matching minute strictly after `dt` (keeps dt's tzinfo)."""
        candidate = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit_year = candidate.year + _SEARCH_YEARS
        while candidate.year <= limit_year:
            if candidate.month not in self.months:
                if candidate.month == 12:
                    candidate = candidate.replace(year=candidate.year + 1, month=1, day=1, hour=0, minute=0)
                else:
                    candidate = candidate.replace(month=candidate.month + 1, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise CronParseError(f"'{self.text}' never fires")

    def __repr__(self):
        return f"CronExpression({self.text!r})"
