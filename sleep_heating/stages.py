# SPDX-License-Identifier: MPL-2.0
"""
Temperature Stage Scheduling

Turns a user's sleep window and temperature stages into the single heating
level that should be active at a given moment.

A schedule is made of:
1. A sleep window (bed time to wake time), which may cross midnight
2. A list of stages, each switching the target level at a wall-clock time
3. When no custom stages are stored, a default 3-stage schedule derived
   from the window and the user's initial/mid/final levels
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, time as dt_time
from typing import Any, List, Optional

from sleep_heating.eight_sleep import MAX_HEATING_LEVEL, MIN_HEATING_LEVEL

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class TemperatureStage:
    """A point in the night where the target heating level changes."""
    time: str  # HH:MM local wall-clock time
    temp: int  # Heating level
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {'time': self.time, 'temp': self.temp, 'name': self.name}


@dataclass(frozen=True)
class SleepWindow:
    """
    A nightly sleep window.

    wake_time may be earlier than bed_time, denoting a window that
    crosses midnight (e.g., 23:00-07:00).
    """
    bed_time: str
    wake_time: str

    def __str__(self) -> str:
        return f"{self.bed_time}-{self.wake_time}"


@dataclass(frozen=True)
class SleepLevels:
    """Heating levels for the default 3-stage schedule."""
    initial: int
    mid: int
    final: int


def parse_time(value: str) -> dt_time:
    """
    Parse a wall-clock time in HH:MM format.

    Args:
        value: String in format "hh:mm" (e.g., "23:30")

    Returns:
        datetime.time object

    Raises:
        ValueError: If format is invalid or out of range
    """
    if not isinstance(value, str) or ':' not in value:
        raise ValueError(f"Invalid time format: '{value}'. Expected 'hh:mm'")

    parts = value.strip().split(':')
    if len(parts) != 2:
        raise ValueError(f"Invalid time format: '{value}'. Expected 'hh:mm'")

    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time format: '{value}'. Expected 'hh:mm'")

    if not (0 <= hour <= 23):
        raise ValueError(f"Hour must be 0-23, got {hour}")
    if not (0 <= minute <= 59):
        raise ValueError(f"Minute must be 0-59, got {minute}")

    return dt_time(hour, minute)


def time_to_minutes(value: str) -> int:
    """Convert an HH:MM string to minutes since midnight (0-1439)."""
    t = parse_time(value)
    return t.hour * 60 + t.minute


def format_minutes(minutes: int) -> str:
    """Format minutes since midnight as HH:MM, wrapping around the day."""
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def add_hours_to_time(value: str, hours: int) -> str:
    """
    Shift an HH:MM time by a whole number of hours, wrapping at midnight.

    Args:
        value: Time in HH:MM format
        hours: Hours to add (negative to subtract)

    Returns:
        Shifted time in HH:MM format
    """
    return format_minutes(time_to_minutes(value) + hours * 60)


def default_stages(window: SleepWindow, levels: SleepLevels) -> List[TemperatureStage]:
    """
    Derive the default 3-stage schedule from a sleep window.

    - Initial Sleep at bed time
    - Mid Sleep one hour after bed time
    - Final Sleep two hours before wake time

    Args:
        window: The user's sleep window
        levels: The user's initial/mid/final heating levels

    Returns:
        List of three stages, in schedule order
    """
    return [
        TemperatureStage(window.bed_time, levels.initial, 'Initial Sleep'),
        TemperatureStage(add_hours_to_time(window.bed_time, 1), levels.mid, 'Mid Sleep'),
        TemperatureStage(add_hours_to_time(window.wake_time, -2), levels.final, 'Final Sleep'),
    ]


def parse_stage(item: Any) -> TemperatureStage:
    """
    Validate one stage entry.

    Args:
        item: Decoded JSON object with 'time', 'temp' and an optional 'name'

    Returns:
        The stage

    Raises:
        ValueError: If the entry is not an object, the time is not HH:MM, or
                    the level is not a whole number within the device range
    """
    if not isinstance(item, dict):
        raise ValueError(f"Stage must be an object, got {type(item).__name__}")

    time_value = item.get('time')
    temp = item.get('temp')
    name = item.get('name', '')

    # bool is an int subclass, but never a valid level
    if isinstance(temp, bool) or not isinstance(temp, (int, float)):
        raise ValueError(f"Stage temp must be a number, got {temp!r}")
    if isinstance(temp, float) and not temp.is_integer():
        raise ValueError(f"Stage temp must be a whole number, got {temp}")
    if not (MIN_HEATING_LEVEL <= temp <= MAX_HEATING_LEVEL):
        raise ValueError(
            f"Stage temp must be {MIN_HEATING_LEVEL} to {MAX_HEATING_LEVEL}, got {temp:g}"
        )

    parse_time(time_value)

    return TemperatureStage(time_value, int(temp), str(name) if name is not None else '')


def parse_custom_stages(raw: Optional[str]) -> Optional[List[TemperatureStage]]:
    """
    Parse a stored custom stage list.

    The stored form is a JSON array of objects with 'time' (HH:MM),
    'temp' (integer level) and an optional 'name'.

    Args:
        raw: JSON text as stored with the profile

    Returns:
        List of stages in stored order (empty for an empty array), or None
        if the data is absent, blank, or not a valid stage list
    """
    if raw is None or not raw.strip():
        return None

    try:
        data = json.loads(raw)
    except ValueError:
        return None

    if not isinstance(data, list):
        return None

    try:
        return [parse_stage(item) for item in data]
    except ValueError:
        return None


def resolve_stages(raw: Optional[str], window: SleepWindow, levels: SleepLevels,
                   label: str = "user") -> List[TemperatureStage]:
    """
    Pick the stages to use for a user.

    Custom stages are used when present and valid. Otherwise the default
    3-stage schedule is derived; stored data that fails to parse is logged
    and never aborts the run.

    Args:
        raw: Stored custom stage JSON (may be None or blank)
        window: The user's sleep window
        levels: The user's default-schedule levels
        label: Name used in log messages

    Returns:
        Non-empty list of stages
    """
    custom = parse_custom_stages(raw)
    if custom:
        return custom

    if custom is None and raw is not None and raw.strip():
        logger.warning(f"Failed to parse custom stages for {label}, falling back to 3-stage schedule")

    return default_stages(window, levels)


def get_current_temp_for_stages(
    bed_time: str,
    wake_time: str,
    stages: List[TemperatureStage],
    now: datetime
) -> Optional[int]:
    """
    Determine the heating level that should be active right now.

    All times are compared as minutes since midnight. An overnight window
    (wake before bed) is laid out on a single line by moving wake time,
    early-morning "now" values and early stages forward by one day.

    Stages sharing the same time resolve to the one listed last.

    Args:
        bed_time: Bed time in HH:MM format
        wake_time: Wake time in HH:MM format
        stages: Temperature stages, in any order
        now: Current local time (only the time of day is used)

    Returns:
        The target heating level, or None when outside the sleep window

    Raises:
        ValueError: If a time is malformed, or the window is active but
                    there are no stages
    """
    current_minutes = now.hour * 60 + now.minute
    bed_minutes = time_to_minutes(bed_time)
    wake_minutes = time_to_minutes(wake_time)

    adjusted_current = current_minutes
    adjusted_wake = wake_minutes

    if wake_minutes < bed_minutes:
        adjusted_wake += MINUTES_PER_DAY

    if current_minutes < bed_minutes and current_minutes < wake_minutes:
        adjusted_current += MINUTES_PER_DAY

    if adjusted_current < bed_minutes or adjusted_current >= adjusted_wake:
        return None

    if not stages:
        raise ValueError("Sleep window is active but no temperature stages are defined")

    def rebased(stage: TemperatureStage) -> int:
        minutes = time_to_minutes(stage.time)
        if minutes < bed_minutes:
            minutes += MINUTES_PER_DAY
        return minutes

    # sorted() is stable, so equal times keep their input order
    sorted_stages = sorted(stages, key=rebased)

    active_temp = sorted_stages[0].temp
    for stage in sorted_stages:
        if adjusted_current >= rebased(stage):
            active_temp = stage.temp
        else:
            break

    return active_temp
