"""Deterministic per-user schedule slots and next-run previews."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator

from feedcast.libs.clock import TimeZoneClock
from feedcast.libs.schemas.models import UserScheduleConfig, is_valid_hhmm

JITTER_MIN_MINUTES = 0
JITTER_MAX_MINUTES = 4
PODCAST_OFFSET_MINUTES = 10
MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True, slots=True)
class Slot:
    hour: int
    minute: int

    @property
    def label(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    @property
    def minute_of_day(self) -> int:
        return self.hour * 60 + self.minute

    @classmethod
    def from_minute_of_day(cls, total: int) -> "Slot":
        total %= MINUTES_PER_DAY
        return cls(total // 60, total % 60)


def _utf16_units(value: str) -> Iterator[int]:
    raw = value.encode("utf-16-le")
    for idx in range(0, len(raw), 2):
        yield raw[idx] | (raw[idx + 1] << 8)


def stable_hash(value: str) -> int:
    """32-bit rolling hash (``h = h*31 + unit``) over UTF-16 code units."""

    h = 0
    for unit in _utf16_units(value):
        h = (h * 31 + unit) & 0xFFFFFFFF
    return h


def stable_jitter(
    user_id: str,
    *,
    minimum: int = JITTER_MIN_MINUTES,
    maximum: int = JITTER_MAX_MINUTES,
) -> int:
    if maximum < minimum:
        raise ValueError("maximum must be >= minimum")
    return minimum + stable_hash(user_id) % (maximum - minimum + 1)


def parse_hhmm(value: str) -> Slot:
    if not is_valid_hhmm(value):
        raise ValueError("time must be HH:MM")
    hh, mm = value.split(":")
    return Slot(int(hh), int(mm))


def jittered_slot(user_id: str, hhmm: str, *, max_jitter: int = JITTER_MAX_MINUTES) -> Slot:
    base = parse_hhmm(hhmm)
    jitter = stable_jitter(user_id, maximum=max_jitter)
    minute = (base.minute + jitter) % 60
    hour = (base.hour + (base.minute + jitter) // 60) % 24
    return Slot(hour, minute)


def add_offset(slot: Slot, minutes: int) -> Slot:
    return Slot.from_minute_of_day(slot.minute_of_day + minutes)


def podcast_slot(
    user_id: str,
    summary_hhmm: str,
    *,
    offset_minutes: int = PODCAST_OFFSET_MINUTES,
    max_jitter: int = JITTER_MAX_MINUTES,
) -> Slot:
    """The podcast always fires a fixed offset after the jittered summary slot."""

    return add_offset(jittered_slot(user_id, summary_hhmm, max_jitter=max_jitter), offset_minutes)


def next_run(slot: Slot, clock: TimeZoneClock, *, now: datetime | None = None) -> datetime:
    """First local instant at ``slot`` strictly after ``now``."""

    current = clock.local(now) if now is not None else clock.now()
    candidate = clock.at(current.date(), slot.hour, slot.minute)
    if candidate <= current:
        candidate = clock.at(current.date() + timedelta(days=1), slot.hour, slot.minute)
    return candidate


def preview(
    user_id: str,
    hhmm: str,
    clock: TimeZoneClock,
    *,
    offset_minutes: int = PODCAST_OFFSET_MINUTES,
    max_jitter: int = JITTER_MAX_MINUTES,
    now: datetime | None = None,
) -> Dict[str, Any]:
    summary = jittered_slot(user_id, hhmm, max_jitter=max_jitter)
    podcast = add_offset(summary, offset_minutes)
    return {
        "input": hhmm,
        "timezone": clock.tz_name,
        "summary_slot": summary.label,
        "podcast_slot": podcast.label,
        "summary_next_run": next_run(summary, clock, now=now).isoformat(),
        "podcast_next_run": next_run(podcast, clock, now=now).isoformat(),
    }


def schedule_info(
    config: UserScheduleConfig,
    clock: TimeZoneClock,
    *,
    offset_minutes: int = PODCAST_OFFSET_MINUTES,
    max_jitter: int = JITTER_MAX_MINUTES,
    now: datetime | None = None,
) -> Dict[str, Any]:
    info: Dict[str, Any] = {
        "timezone": clock.tz_name,
        "summary_next_run": None,
        "podcast_next_run": None,
    }
    if not config.summary_enabled or not config.summary_time:
        return info
    summary = jittered_slot(config.user_id, config.summary_time, max_jitter=max_jitter)
    info["summary_next_run"] = next_run(summary, clock, now=now).isoformat()
    if config.podcast_enabled:
        podcast = add_offset(summary, offset_minutes)
        info["podcast_next_run"] = next_run(podcast, clock, now=now).isoformat()
    return info


__all__ = [
    "JITTER_MAX_MINUTES",
    "PODCAST_OFFSET_MINUTES",
    "Slot",
    "add_offset",
    "jittered_slot",
    "next_run",
    "parse_hhmm",
    "podcast_slot",
    "preview",
    "schedule_info",
    "stable_hash",
    "stable_jitter",
]
