from __future__ import annotations

import math
import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Mapping

from crmseed.core.config import SUPPORTED_DENSITY_SHAPES, Settings

SALES_CYCLE_DAYS = 90
UNKNOWN_STAGE_REMAINING_DAYS = 30

STAGE_REMAINING_DAYS: dict[str, int] = {
    "Prospecting": 90,
    "Qualification": 75,
    "Needs Analysis": 60,
    "Value Proposition": 45,
    "Id. Decision Makers": 40,
    "Perception Analysis": 30,
    "Proposal/Price Quote": 21,
    "Negotiation/Review": 14,
    # Closed deals have no time left: a real zero, not the unknown-stage default.
    "Closed Won": 0,
    "Closed Lost": 0,
}


@dataclass(frozen=True)
class TemporalConfig:
    business_hours_start: int = 9
    business_hours_end: int = 17
    include_weekends: bool = False
    density: str = "bell-curve"
    sales_cycle_days: int = SALES_CYCLE_DAYS
    unknown_stage_remaining_days: int = UNKNOWN_STAGE_REMAINING_DAYS
    email_min_delay_hours: float = 2.0
    email_max_delay_hours: float = 48.0
    meeting_duration_minutes: int = 30

    def __post_init__(self) -> None:
        if not 0 <= self.business_hours_start < self.business_hours_end <= 24:
            raise ValueError("business hours must satisfy 0 <= start < end <= 24")
        if self.density not in SUPPORTED_DENSITY_SHAPES:
            raise ValueError(f"Unknown density shape: {self.density}")
        if self.email_min_delay_hours < 0 or self.email_max_delay_hours < self.email_min_delay_hours:
            raise ValueError("email delays must satisfy 0 <= min <= max")

    @classmethod
    def from_settings(cls, settings: Settings) -> "TemporalConfig":
        return cls(
            business_hours_start=settings.business_hours_start,
            business_hours_end=settings.business_hours_end,
            include_weekends=settings.include_weekends,
            density=settings.default_density_shape,
            sales_cycle_days=settings.sales_cycle_days,
            unknown_stage_remaining_days=settings.unknown_stage_remaining_days,
            email_min_delay_hours=settings.email_min_delay_hours,
            email_max_delay_hours=settings.email_max_delay_hours,
            meeting_duration_minutes=settings.meeting_duration_minutes,
        )


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _as_utc(self.start))
        object.__setattr__(self, "end", _as_utc(self.end))
        if self.end < self.start:
            raise ValueError("window end must not precede window start")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def _as_utc(value: datetime | date) -> datetime:
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def remaining_days_for_stage(stage: str | None, config: TemporalConfig) -> int:
    if stage is None:
        return config.unknown_stage_remaining_days
    return STAGE_REMAINING_DAYS.get(stage, config.unknown_stage_remaining_days)


def sales_cycle_window(close_date: datetime | date, stage: str | None, config: TemporalConfig) -> TimeWindow:
    end = _as_utc(close_date)
    remaining = min(remaining_days_for_stage(stage, config), config.sales_cycle_days)
    start = end - timedelta(days=config.sales_cycle_days - remaining)
    return TimeWindow(start=start, end=end)


def default_activity_window(now: datetime | None = None, days_back: int = 60, days_ahead: int = 30) -> TimeWindow:
    anchor = _as_utc(now) if now is not None else datetime.now(tz=timezone.utc)
    return TimeWindow(start=anchor - timedelta(days=days_back), end=anchor + timedelta(days=days_ahead))


def _business_bounds(day: date, config: TemporalConfig) -> tuple[datetime, datetime]:
    opening = datetime.combine(day, time.min, tzinfo=timezone.utc) + timedelta(hours=config.business_hours_start)
    return opening, opening + timedelta(hours=config.business_hours_end - config.business_hours_start)


def candidate_days(window: TimeWindow, config: TemporalConfig) -> list[date]:
    """Days whose business hours overlap the window."""
    days: list[date] = []
    current = window.start.date()
    last = window.end.date()
    while current <= last:
        opening, closing = _business_bounds(current, config)
        if (config.include_weekends or not _is_weekend(current)) and opening < window.end and closing > window.start:
            days.append(current)
        current += timedelta(days=1)
    return days


def _skewed_index(value: float, total_days: int) -> int:
    return min(int(value * total_days), total_days - 1)


def day_distribution(count: int, total_days: int, density: str, rng: random.Random) -> list[int]:
    if total_days <= 0:
        return []
    distribution = [0] * total_days

    if density == "front-loaded":
        for _ in range(count):
            distribution[_skewed_index(rng.random() ** 2, total_days)] += 1
    elif density == "back-loaded":
        for _ in range(count):
            distribution[_skewed_index(1 - rng.random() ** 2, total_days)] += 1
    elif density == "bell-curve":
        for _ in range(count):
            # Box-Muller; 1 - random() keeps the log argument in (0, 1].
            u1 = 1.0 - rng.random()
            u2 = rng.random()
            z = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
            normalized = max(0.0, min(1.0, (z + 3.0) / 6.0))
            distribution[_skewed_index(normalized, total_days)] += 1
    elif density == "uniform":
        base, remainder = divmod(count, total_days)
        for index in range(total_days):
            distribution[index] = base + (1 if index < remainder else 0)
    else:
        raise ValueError(f"Unknown density shape: {density}")

    return distribution


def _clamp(moment: datetime, window: TimeWindow) -> datetime:
    return max(window.start, min(window.end, moment))


def _business_time(day: date, index: int, total_for_day: int, config: TemporalConfig, rng: random.Random) -> datetime:
    business_hours = config.business_hours_end - config.business_hours_start
    hour_offset = int(index / max(total_for_day, 1) * business_hours)
    minute = rng.randrange(60)
    return datetime.combine(
        day,
        time(hour=config.business_hours_start + hour_offset, minute=minute),
        tzinfo=timezone.utc,
    )


def activity_slots(
    count: int,
    window: TimeWindow,
    config: TemporalConfig,
    rng: random.Random,
    density: str | None = None,
) -> list[datetime]:
    """Return exactly ``count`` sorted timestamps inside ``window``.

    Days are drawn according to the density shape; times of day are spread
    across business hours with random minute jitter. When weekend filtering
    leaves no day to use, the raw window is split evenly instead.
    """
    if count < 0:
        raise ValueError("count must be >= 0")
    if count == 0:
        return []

    shape = density or config.density
    days = candidate_days(window, config)
    if not days:
        span = window.end - window.start
        return [window.start + span * (index / count) for index in range(count)]

    slots: list[datetime] = []
    for day, activities in zip(days, day_distribution(count, len(days), shape, rng)):
        for index in range(activities):
            slots.append(_clamp(_business_time(day, index, activities, config, rng), window))
    slots.sort()
    return slots


def meeting_slots(
    count: int,
    window: TimeWindow,
    config: TemporalConfig,
    rng: random.Random,
    duration_minutes: int | None = None,
    density: str | None = None,
) -> list[tuple[datetime, datetime]]:
    duration = timedelta(minutes=config.meeting_duration_minutes if duration_minutes is None else duration_minutes)
    return [(start, start + duration) for start in activity_slots(count, window, config, rng, density)]


def _adjust_to_business_hours(moment: datetime, config: TemporalConfig, rng: random.Random) -> datetime:
    def opening(day: date) -> datetime:
        hour = min(config.business_hours_start + rng.randrange(2), config.business_hours_end - 1)
        return datetime.combine(day, time(hour=hour, minute=moment.minute), tzinfo=timezone.utc)

    adjusted = moment
    if adjusted.hour < config.business_hours_start:
        adjusted = max(adjusted, opening(adjusted.date()))
    elif adjusted.hour >= config.business_hours_end:
        adjusted = opening(adjusted.date() + timedelta(days=1))

    while _is_weekend(adjusted.date()):
        adjusted += timedelta(days=1)
    return adjusted


def email_thread_timestamps(
    count: int,
    start: datetime,
    config: TemporalConfig,
    rng: random.Random,
    *,
    min_delay_hours: float | None = None,
    max_delay_hours: float | None = None,
    business_hours_only: bool = True,
) -> list[datetime]:
    low = config.email_min_delay_hours if min_delay_hours is None else min_delay_hours
    high = config.email_max_delay_hours if max_delay_hours is None else max_delay_hours
    if low < 0 or high < low:
        raise ValueError("email delays must satisfy 0 <= min <= max")
    if count <= 0:
        return []

    timestamps = [_as_utc(start)]
    for _ in range(1, count):
        delay = timedelta(hours=rng.uniform(low, high))
        candidate = timestamps[-1] + delay
        if business_hours_only:
            candidate = _adjust_to_business_hours(candidate, config, rng)
        timestamps.append(candidate)
    return timestamps


def opportunity_activity_timeline(
    opportunities: Iterable[Mapping[str, Any]],
    per_opportunity: int,
    config: TemporalConfig,
    rng: random.Random,
    density: str | None = None,
) -> dict[str, list[datetime]]:
    timeline: dict[str, list[datetime]] = {}
    for opportunity in opportunities:
        window = sales_cycle_window(
            parse_close_date(opportunity["close_date"]),
            opportunity.get("stage_name"),
            config,
        )
        timeline[str(opportunity["local_id"])] = activity_slots(per_opportunity, window, config, rng, density)
    return timeline


def parse_close_date(value: datetime | date | str) -> datetime:
    if isinstance(value, str):
        return _as_utc(date.fromisoformat(value[:10]))
    return _as_utc(value)
