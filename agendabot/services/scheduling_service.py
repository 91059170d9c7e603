"""Opening hours and free-slot arithmetic.

Every date and time handled here is a business-timezone wall-clock value; the
callers convert "now" with ``business_now`` before asking anything.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from agendabot.logging_config import get_logger

logger = get_logger("scheduling_service")

# Indexed by date.weekday() (Monday == 0).
WEEKDAY_KEYS = ("segunda", "terca", "quarta", "quinta", "sexta", "sabado", "domingo")
WEEKDAY_NAMES = ("segunda", "terça", "quarta", "quinta", "sexta", "sábado", "domingo")

CLOSED_MARKER = "FECHADO"

PERIODS = {
    "manhã": (6, 12),
    "tarde": (12, 18),
    "noite": (18, 23),
}
PERIOD_ALIASES = {"manha": "manhã", "manhã": "manhã", "tarde": "tarde", "noite": "noite"}


@dataclass(frozen=True)
class OpeningHours:
    opens: time
    closes: time


@dataclass(frozen=True)
class DayCheck:
    open: bool
    reason: Optional[str] = None


def business_now(timezone_name: str, now: Optional[datetime] = None) -> datetime:
    """Current wall-clock datetime in the business timezone (naive)."""
    zone = ZoneInfo(timezone_name)
    moment = now.astimezone(zone) if now is not None else datetime.now(zone)
    return moment.replace(tzinfo=None)


def to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def from_minutes(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def parse_hhmm(raw: str) -> time:
    hour, _, minute = raw.strip().partition(":")
    return time(int(hour), int(minute or 0))


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def parse_hours(raw: Optional[str]) -> Optional[OpeningHours]:
    """Parse ``"09:00-18:00"``; ``None`` for closed or unreadable days."""
    if not raw or raw.strip().upper() == CLOSED_MARKER:
        return None
    try:
        start, end = raw.strip().split("-", 1)
        opens = parse_hhmm(start)
        closes = parse_hhmm(end)
    except ValueError:
        logger.warning("Unreadable opening hours", extra={"context": {"raw": raw}})
        return None
    if closes <= opens:
        logger.warning("Opening hours close before they open", extra={"context": {"raw": raw}})
        return None
    return OpeningHours(opens=opens, closes=closes)


def hours_for(business_settings: Any, day: date) -> Optional[OpeningHours]:
    if business_settings is None:
        return None
    key = WEEKDAY_KEYS[day.weekday()]
    open_days = getattr(business_settings, "open_days", None) or {}
    if open_days.get(key) is False:
        return None
    weekly_hours = getattr(business_settings, "weekly_hours", None) or {}
    return parse_hours(weekly_hours.get(key))


def check_day_open(business_settings: Any, day: date, at: Optional[time] = None) -> DayCheck:
    hours = hours_for(business_settings, day)
    if hours is None:
        return DayCheck(open=False, reason=f"Desculpa, estamos fechados às {WEEKDAY_NAMES[day.weekday()]}s.")

    if at is not None:
        if at < hours.opens:
            return DayCheck(
                open=False,
                reason=f"Desculpa, abrimos às {format_hhmm(hours.opens)} nesse dia. Escolha um horário após esse.",
            )
        if at >= hours.closes:
            return DayCheck(
                open=False,
                reason=f"Desculpa, fechamos às {format_hhmm(hours.closes)} nesse dia. Escolha um horário antes disso.",
            )
    return DayCheck(open=True)


def floor_to_step(value: time, step_minutes: int) -> time:
    minutes = to_minutes(value)
    return from_minutes(minutes - minutes % step_minutes)


def available_slots(
    hours: Optional[OpeningHours],
    booked: Iterable[time],
    duration_minutes: int,
    step_minutes: int = 30,
    not_before: Optional[time] = None,
) -> list[time]:
    """Grid of free start times from opening to closing.

    A slot must end by closing time. Booked times are floored to the grid so
    that an appointment at 17:01 still blocks the 17:00 slot.
    """
    if hours is None:
        return []

    taken = {to_minutes(floor_to_step(value, step_minutes)) for value in booked}
    closes = to_minutes(hours.closes)
    earliest = to_minutes(not_before) if not_before is not None else None

    slots = []
    current = to_minutes(hours.opens)
    while current < closes:
        if current + duration_minutes <= closes and current not in taken:
            if earliest is None or current >= earliest:
                slots.append(from_minutes(current))
        current += step_minutes
    return slots


def nearest_slots(slots: list[time], requested: time, count: int = 4) -> list[time]:
    target = to_minutes(requested)
    closest = sorted(slots, key=lambda value: abs(to_minutes(value) - target))[:count]
    return sorted(closest)


def normalize_period(period: Optional[str]) -> Optional[str]:
    if not period:
        return None
    return PERIOD_ALIASES.get(period.strip().lower())


def filter_by_period(slots: list[time], period: Optional[str]) -> list[time]:
    key = normalize_period(period)
    if key is None:
        return list(slots)
    start, end = PERIODS[key]
    return [value for value in slots if start <= value.hour < end]


def available_periods(hours: Optional[OpeningHours], day: date, today: date, now: time) -> list[str]:
    """Periods the business is open during, restricted to what is still ahead when ``day`` is today."""
    if hours is None or day < today:
        return []

    opens = to_minutes(hours.opens)
    closes = to_minutes(hours.closes)
    if day == today:
        opens = max(opens, to_minutes(now))

    periods = []
    for name, (start_hour, end_hour) in PERIODS.items():
        if opens < end_hour * 60 and closes > start_hour * 60:
            periods.append(name)
    return periods
