#!/usr/bin/env python3
# SPDX-License-Identifier: MPL-2.0
"""
Example usage of the temperature stage scheduler.

This script previews a night's schedule without touching any device: it
derives the stages for a sleep window and prints the target heating level
every half hour, then shows what would be sent to a bed that is switched off.
"""

from datetime import datetime, timedelta

from sleep_heating.eight_sleep import HeatingStatus
from sleep_heating.reconciler import reconcile
from sleep_heating.stages import (
    SleepLevels,
    SleepWindow,
    get_current_temp_for_stages,
    resolve_stages,
)


def main():
    """Example usage of the stage scheduler."""

    # Configuration parameters
    window = SleepWindow(bed_time='22:30', wake_time='06:30')
    levels = SleepLevels(initial=20, mid=10, final=-10)
    custom_stages = None  # e.g. '[{"time": "23:00", "temp": 20, "name": "Warm"}]'

    stages = resolve_stages(custom_stages, window, levels)

    print(f"Sleep window: {window}")
    print(f"Stages ({len(stages)}):")
    for stage in stages:
        print(f"  {stage.time}  {stage.temp:+4d}  {stage.name}")

    print("\nTimeline:")
    start = datetime(2025, 1, 1, 21, 0)
    for step in range(22):
        now = start + timedelta(minutes=30 * step)
        target = get_current_temp_for_stages(window.bed_time, window.wake_time, stages, now)
        shown = "off" if target is None else f"{target:+d}"
        print(f"  {now.strftime('%H:%M')}  {shown}")

    # What the job would do for a bed that is currently off at 01:30
    now = datetime(2025, 1, 2, 1, 30)
    target = get_current_temp_for_stages(window.bed_time, window.wake_time, stages, now)
    actions = reconcile(target, HeatingStatus(is_heating=False, heating_level=0))
    print(f"\nAt {now.strftime('%H:%M')} with the bed off: {actions}")

    return 0


if __name__ == "__main__":
    exit(main())
