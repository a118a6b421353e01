# SPDX-License-Identifier: MPL-2.0
"""
Heating reconciliation.

Compares the target heating level with the observed state of the bed and
works out the smallest list of commands that brings the two in line.
Deciding is kept separate from executing, so a dry run computes exactly
the same actions as a live one.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, List, Optional

from sleep_heating.eight_sleep import (
    EightAPIError,
    EightSleepClient,
    EightToken,
    HeatingStatus,
    clamp_level,
)
from sleep_heating.retry import DEFAULT_ATTEMPTS, DEFAULT_INITIAL_DELAY, retry_api_call

logger = logging.getLogger(__name__)


class ActionType(Enum):
    """Commands that can be sent to the bed."""
    TURN_ON = "turn_on"
    TURN_OFF = "turn_off"
    SET_LEVEL = "set_level"


@dataclass(frozen=True)
class DeviceAction:
    """A single command for the bed."""
    action: ActionType
    level: Optional[int] = None

    def __post_init__(self) -> None:
        if self.action == ActionType.SET_LEVEL and self.level is None:
            raise ValueError("set_level needs a level")

    def __repr__(self) -> str:
        if self.action == ActionType.SET_LEVEL:
            return f"DeviceAction(set_level {self.level})"
        return f"DeviceAction({self.action.value})"


def reconcile(target: Optional[int], status: HeatingStatus) -> List[DeviceAction]:
    """
    Decide which commands move the bed from its current state to the target.

    Args:
        target: Target heating level, or None when no schedule is active
        status: Observed heating state

    Returns:
        Actions in the order they must be executed (turn on always comes
        before setting the level)
    """
    if target is None:
        if status.is_heating:
            return [DeviceAction(ActionType.TURN_OFF)]
        return []

    # Compare against what the device can actually reach
    target = clamp_level(target)

    if not status.is_heating:
        return [
            DeviceAction(ActionType.TURN_ON),
            DeviceAction(ActionType.SET_LEVEL, target),
        ]

    if status.heating_level != target:
        return [DeviceAction(ActionType.SET_LEVEL, target)]

    return []


def execute_actions(
    actions: List[DeviceAction],
    client: EightSleepClient,
    token: EightToken,
    user_id: str,
    dry_run: bool = False,
    retries: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "user",
) -> None:
    """
    Send actions to the bed, in order, each with its own retry budget.

    Args:
        actions: Actions produced by reconcile()
        client: Eight Sleep API client
        token: Credentials of the user
        user_id: Eight Sleep user ID whose side is controlled
        dry_run: Log the actions instead of sending them
        retries: Attempts per action
        initial_delay: Delay before the first retry, in seconds
        sleep: Function used to wait between attempts
        label: Name used in log messages

    Raises:
        EightAPIError: If an action still fails after all retries; later
                       actions are not attempted
    """
    for action in actions:
        if dry_run:
            logger.info(f"[DRY RUN] Would {_describe(action)} for {label}")
            continue

        if action.action == ActionType.TURN_ON:
            call = partial(client.turn_on_side, token, user_id)
        elif action.action == ActionType.TURN_OFF:
            call = partial(client.turn_off_side, token, user_id)
        else:
            call = partial(client.set_heating_level, token, user_id, action.level)

        retry_api_call(
            call,
            retries=retries,
            initial_delay=initial_delay,
            exceptions=(EightAPIError,),
            sleep=sleep,
            description=f"{action.action.value} for {label}",
        )
        logger.info(f"Heating {_describe(action, past=True)} for {label}")


def _describe(action: DeviceAction, past: bool = False) -> str:
    if action.action == ActionType.TURN_ON:
        return "turned on" if past else "turn on heating"
    if action.action == ActionType.TURN_OFF:
        return "turned off" if past else "turn off heating"
    return f"level set to {action.level}" if past else f"set heating level to {action.level}"
