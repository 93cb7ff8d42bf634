from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import List, Optional, Tuple

# Canonical weekday abbreviations, indexed like datetime.weekday() (Mon=0)
WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

WEEKDAY_ALIASES = {
    "sun": "Sun", "sunday": "Sun",
    "mon": "Mon", "monday": "Mon",
    "tue": "Tue", "tues": "Tue", "tuesday": "Tue",
    "wed": "Wed", "wednesday": "Wed",
    "thu": "Thu", "thur": "Thu", "thurs": "Thu", "thursday": "Thu",
    "fri": "Fri", "friday": "Fri",
    "sat": "Sat", "saturday": "Sat",
}

MAX_INTERVAL_HOURS = 48
HORIZON_HOURS = 24
WEEKLY_SCAN_DAYS = 14
WEEKLY_MAX_DOSES = 4

# Fallbacks for rows stored before the form validated these fields
DEFAULT_TIME_OF_DAY = "08:00"
DEFAULT_DAYS_OF_WEEK = "Mon,Thu"

INTERVAL_ERROR = "Interval must be a number between 1 and 48 hours."
TIME_ERROR = "Time of day must be HH:MM."
DAYS_ERROR = "Days must be comma-separated names like Mon,Thu (case-insensitive; full names allowed)."
FREQ_ERROR = "Invalid frequency type."


class ValidationError(ValueError):
    """Raised when a medication form does not describe a valid recurrence rule."""


@dataclass(frozen=True)
class IntervalRule:
    interval_hours: int


@dataclass(frozen=True)
class DailyRule:
    time_of_day: time


@dataclass(frozen=True)
class WeeklyRule:
    time_of_day: time
    days_of_week: Tuple[str, ...]


@dataclass
class DoseProjection:
    upcoming: List[datetime] = field(default_factory=list)

    @property
    def next_due(self) -> Optional[datetime]:
        return self.upcoming[0] if self.upcoming else None


# --- Parsing / validation ---

def normalize_weekday(token):
    """Map 'thurs', 'Thursday', 'THU' ... to the canonical 'Thu'."""
    canonical = WEEKDAY_ALIASES.get(token.strip().lower())
    if canonical is None:
        raise ValidationError(DAYS_ERROR)
    return canonical


def parse_days_of_week(text):
    """
    Parses a comma-separated day list into a tuple of canonical names.
    Duplicates collapse, first occurrence wins the ordering.
    """
    tokens = [t.strip() for t in (text or "").split(",") if t.strip()]
    days = []
    for token in tokens:
        day = normalize_weekday(token)
        if day not in days:
            days.append(day)
    if not days:
        raise ValidationError(DAYS_ERROR)
    return tuple(days)


def parse_time_of_day(text):
    text = (text or "").strip()
    if len(text) != 5 or text[2] != ":" or not (text[:2] + text[3:]).isdigit():
        raise ValidationError(TIME_ERROR)
    hour, minute = int(text[:2]), int(text[3:])
    if hour > 23 or minute > 59:
        raise ValidationError(TIME_ERROR)
    return time(hour, minute)


def parse_interval_hours(value):
    try:
        hours = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(INTERVAL_ERROR)
    if hours <= 0 or hours > MAX_INTERVAL_HOURS:
        raise ValidationError(INTERVAL_ERROR)
    return hours


def parse_rule(freq_type, interval_hours=None, time_of_day=None, days_of_week=None):
    """
    Validates medication form fields and returns the matching rule.
    Raises ValidationError carrying the message shown to the user.
    """
    kind = (freq_type or "").strip().lower()
    if kind == "interval":
        return IntervalRule(parse_interval_hours(interval_hours))
    if kind == "daily":
        return DailyRule(parse_time_of_day(time_of_day))
    if kind == "weekly":
        tod = parse_time_of_day(time_of_day)
        return WeeklyRule(tod, parse_days_of_week(days_of_week))
    raise ValidationError(FREQ_ERROR)


def rule_from_row(row):
    """Builds the rule for a stored medications row (dict or sqlite3.Row)."""
    kind = row["freq_type"]
    if kind == "interval":
        return IntervalRule(int(row["interval_hours"]))
    if kind == "daily":
        return DailyRule(parse_time_of_day(row["time_of_day"] or DEFAULT_TIME_OF_DAY))
    if kind == "weekly":
        return WeeklyRule(
            parse_time_of_day(row["time_of_day"] or DEFAULT_TIME_OF_DAY),
            parse_days_of_week(row["days_of_week"] or DEFAULT_DAYS_OF_WEEK),
        )
    raise ValidationError(FREQ_ERROR)


def rule_to_columns(rule):
    """
    Returns (freq_type, interval_hours, time_of_day, days_of_week) for storage.
    Fields that do not belong to the rule's kind are None.
    """
    if isinstance(rule, IntervalRule):
        return "interval", rule.interval_hours, None, None
    if isinstance(rule, DailyRule):
        return "daily", None, rule.time_of_day.strftime("%H:%M"), None
    if isinstance(rule, WeeklyRule):
        return "weekly", None, rule.time_of_day.strftime("%H:%M"), ",".join(rule.days_of_week)
    raise TypeError(f"Unsupported medication rule: {rule!r}")


# --- Projection ---

def _project_interval(rule, now):
    doses = []
    elapsed = rule.interval_hours
    while elapsed <= HORIZON_HOURS:
        doses.append(now + timedelta(hours=elapsed))
        elapsed += rule.interval_hours
    return doses


def _project_daily(rule, now):
    doses = []
    today_dose = datetime.combine(now.date(), rule.time_of_day)
    if today_dose > now:
        doses.append(today_dose)
    doses.append(datetime.combine(now.date() + timedelta(days=1), rule.time_of_day))
    return doses


def _project_weekly(rule, now):
    doses = []
    for i in range(WEEKLY_SCAN_DAYS):
        day = now.date() + timedelta(days=i)
        if WEEKDAYS[day.weekday()] not in rule.days_of_week:
            continue
        candidate = datetime.combine(day, rule.time_of_day)
        if candidate > now:
            doses.append(candidate)
    return doses[:WEEKLY_MAX_DOSES]


def project(rule, now):
    """
    Projects upcoming doses for a rule as seen from `now`.

    Interval rules fill a 24h horizon (so anything over 24h projects nothing),
    daily rules give at most today+tomorrow, weekly rules at most 4 doses
    from the next two weeks.
    """
    if isinstance(rule, IntervalRule):
        doses = _project_interval(rule, now)
    elif isinstance(rule, DailyRule):
        doses = _project_daily(rule, now)
    elif isinstance(rule, WeeklyRule):
        doses = _project_weekly(rule, now)
    else:
        raise TypeError(f"Unsupported medication rule: {rule!r}")
    return DoseProjection(upcoming=doses)


def schedule_medications(rows, now):
    """
    Adds `schedule` and `next_due` to each medication row for the templates/API.
    Rows that cannot be turned into a rule get an empty schedule.
    """
    meds = []
    for row in rows:
        med = dict(row)
        try:
            projection = project(rule_from_row(med), now)
        except (ValidationError, TypeError, ValueError) as e:
            print(f"Warning: could not project schedule for medication {med.get('id')}: {e}")
            projection = DoseProjection()
        med["schedule"] = projection.upcoming
        med["next_due"] = projection.next_due
        meds.append(med)
    return meds
