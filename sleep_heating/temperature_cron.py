# SPDX-License-Identifier: MPL-2.0
"""
Sleep Heating Reconciliation Job

Meant to be run on a fixed interval (e.g., every few minutes from cron or a
systemd timer). Each run makes a single pass over all user profiles and
brings every bed in line with its owner's sleep schedule.

For each user the job:
1. Refreshes the Eight Sleep access token if it has expired
2. Works out the temperature stages (custom or default 3-stage schedule)
3. Determines the target heating level for the user's local time
4. Reads the current heating state of the bed
5. Turns heating on/off and sets the level as needed, retrying failures

A failure for one user is logged and does not stop the others.
"""

import argparse
import configparser
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from sleep_heating.eight_sleep import EightAPIError, EightSleepClient, HeatingStatus
from sleep_heating.profile_store import ProfileStore, ProfileStoreError, UserProfile
from sleep_heating.reconciler import DeviceAction, execute_actions, reconcile
from sleep_heating.retry import DEFAULT_ATTEMPTS, DEFAULT_INITIAL_DELAY, retry_api_call
from sleep_heating.stages import (
    TemperatureStage,
    get_current_temp_for_stages,
    parse_stage,
    resolve_stages,
)

# Logger will be configured later based on config/CLI args
logger = logging.getLogger(__name__)

CONFIG_SEARCH_PATHS = [
    "/etc/sleep-heating/sleep-heating.conf",
    "/run/sleep-heating/sleep-heating.conf",
    "/usr/lib/sleep-heating/sleep-heating.conf",
]


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass
class Config:
    """Application configuration."""
    # Eight Sleep API
    client_id: str
    client_secret: str

    # Profile database
    database_url: str

    request_timeout: int = 30  # Seconds per HTTP request

    # Retry policy for remote calls
    retry_attempts: int = DEFAULT_ATTEMPTS
    retry_initial_delay: float = DEFAULT_INITIAL_DELAY  # Seconds, doubled per attempt

    # Logging
    logging_level: str = 'WARNING'  # Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)


@dataclass
class ProfileResult:
    """Outcome of reconciling one user."""
    email: str
    target: Optional[int] = None
    actions: List[DeviceAction] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def find_default_config() -> Optional[str]:
    """
    Find configuration file using standard search paths.

    Search order:
    1. /etc/sleep-heating/sleep-heating.conf
    2. /run/sleep-heating/sleep-heating.conf
    3. /usr/lib/sleep-heating/sleep-heating.conf

    Returns:
        Path to first existing config file, or None if none found
    """
    for path in CONFIG_SEARCH_PATHS:
        if os.path.exists(path):
            logger.debug(f"Found configuration file: {path}")
            return path

    return None


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from INI file and credentials directory.

    Args:
        config_path: Path to configuration INI file. If None, searches default locations.

    Returns:
        Config object with all settings

    Raises:
        ConfigurationError: If configuration is invalid or credentials missing
    """
    if config_path is None:
        config_path = find_default_config()
        if config_path is None:
            raise ConfigurationError(
                "No configuration file found. Searched: " + ", ".join(CONFIG_SEARCH_PATHS)
            )

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path)

    # Get credentials directory from environment
    creds_dir = os.getenv('CREDENTIALS_DIRECTORY')
    if not creds_dir:
        raise ConfigurationError(
            "CREDENTIALS_DIRECTORY environment variable not set"
        )

    creds_path = Path(creds_dir)
    if not creds_path.exists():
        raise ConfigurationError(
            f"Credentials directory does not exist: {creds_dir}"
        )

    client_secret_file = creds_path / "client_secret"
    if not client_secret_file.exists():
        raise ConfigurationError(
            f"client_secret file not found in {creds_dir}"
        )
    client_secret = client_secret_file.read_text().strip()

    try:
        # Database URL may carry a password, so a credential file wins
        database_url_file = creds_path / "database_url"
        if database_url_file.exists():
            database_url = database_url_file.read_text().strip()
        else:
            database_url = parser.get('database', 'url')

        config = Config(
            client_id=parser.get('eight', 'client_id'),
            client_secret=client_secret,
            database_url=database_url,
        )

        if parser.has_option('eight', 'timeout'):
            config.request_timeout = parser.getint('eight', 'timeout')

        if parser.has_section('retry'):
            if parser.has_option('retry', 'attempts'):
                config.retry_attempts = parser.getint('retry', 'attempts')
            if parser.has_option('retry', 'initial_delay'):
                config.retry_initial_delay = parser.getfloat('retry', 'initial_delay')

        if parser.has_option('logging', 'level'):
            config.logging_level = parser.get('logging', 'level').upper()

    except (configparser.NoSectionError, configparser.NoOptionError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration value: {e}")

    if config.retry_attempts < 1:
        raise ConfigurationError(f"retry attempts must be at least 1, got {config.retry_attempts}")
    if config.retry_initial_delay < 0:
        raise ConfigurationError(
            f"retry initial_delay must be non-negative, got {config.retry_initial_delay}"
        )

    return config


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> None:
    """
    Apply command line argument overrides to configuration.

    Args:
        config: Configuration object to modify
        args: Parsed command line arguments
    """
    if args.log_level is not None:
        config.logging_level = args.log_level.upper()

    if args.database_url is not None:
        logger.debug("Overriding database URL from command line")
        config.database_url = args.database_url


def configure_logging(level: str) -> None:
    """
    Configure logging level for all modules.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL,
    }

    log_level = level_map.get(level.upper(), logging.WARNING)

    logging.basicConfig(
        level=log_level,
        format='%(name)s - %(levelname)s - %(message)s',
        force=True,
    )

    logging.getLogger('sleep_heating.temperature_cron').setLevel(log_level)
    logging.getLogger('sleep_heating.eight_sleep').setLevel(log_level)
    logging.getLogger('sleep_heating.profile_store').setLevel(log_level)
    logging.getLogger('sleep_heating.reconciler').setLevel(log_level)
    logging.getLogger('sleep_heating.retry').setLevel(log_level)
    logging.getLogger('sleep_heating.stages').setLevel(log_level)


def parse_test_time(value: str) -> datetime:
    """
    Parse a simulated run time.

    Args:
        value: POSIX timestamp in seconds (e.g., "1700000000") or an
               ISO-8601 datetime; naive ISO values are taken as UTC

    Returns:
        Timezone-aware datetime

    Raises:
        argparse.ArgumentTypeError: If the value cannot be parsed
    """
    value = value.strip()
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid test time: '{value}'. Expected POSIX seconds or ISO-8601"
        )

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def reconcile_profile(
    profile: UserProfile,
    store: ProfileStore,
    client: EightSleepClient,
    now: datetime,
    simulate: bool = False,
    dry_run: bool = False,
    retries: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> ProfileResult:
    """
    Bring one user's bed in line with their schedule.

    Args:
        profile: User profile with credentials
        store: Profile store, used to persist refreshed tokens
        client: Eight Sleep API client
        now: Current instant (timezone-aware)
        simulate: Skip token refresh and device reads, assume the bed is off
        dry_run: Compute actions but do not send them
        retries: Attempts per remote call
        initial_delay: Delay before the first retry, in seconds
        sleep: Function used to wait between attempts

    Returns:
        ProfileResult with the target and the actions decided

    Raises:
        Exception: Any failure while handling this user
    """
    email = profile.email
    token = profile.token
    result = ProfileResult(email=email)

    if not simulate and token.is_expired(now):
        logger.info(f"Access token expired for user {email}, refreshing")
        refresh, user_id = token.refresh_token, token.user_id
        token = retry_api_call(
            partial(client.refresh_token, refresh, user_id),
            retries=retries,
            initial_delay=initial_delay,
            exceptions=(EightAPIError,),
            sleep=sleep,
            description=f"token refresh for {email}",
        )
        store.update_token(email, token)

    user_now = now.astimezone(ZoneInfo(profile.timezone))

    stages: List[TemperatureStage] = resolve_stages(
        profile.custom_stages, profile.window, profile.levels, label=email
    )

    target = get_current_temp_for_stages(profile.bed_time, profile.wake_time, stages, user_now)
    result.target = target

    if simulate:
        status = HeatingStatus(is_heating=False, heating_level=0)
        logger.info(f"[TEST MODE] Current time set to {user_now.isoformat()} for user {email}")
    else:
        status = retry_api_call(
            partial(client.get_heating_status, token),
            retries=retries,
            initial_delay=initial_delay,
            exceptions=(EightAPIError,),
            sleep=sleep,
            description=f"heating status for {email}",
        )

    logger.debug(f"Current heating status for user {email}: {status}")
    logger.debug(f"User's current time: {user_now.isoformat()} for user {email}")
    logger.debug(f"Active stages for user {email}: {json.dumps([s.to_dict() for s in stages])}")

    if target is None:
        logger.info(f"User {email} is outside sleep schedule ({profile.window})")
    else:
        logger.info(f"Target heating level for user {email}: {target}")

    actions = reconcile(target, status)
    result.actions = actions

    if not actions:
        logger.debug(f"No heating change needed for user {email}")
        return result

    execute_actions(
        actions,
        client,
        token,
        token.user_id,
        dry_run=simulate or dry_run,
        retries=retries,
        initial_delay=initial_delay,
        sleep=sleep,
        label=f"user {email}",
    )

    return result


def run_reconciliation(
    store: ProfileStore,
    client: EightSleepClient,
    simulated_time: Optional[datetime] = None,
    dry_run: bool = False,
    retries: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> List[ProfileResult]:
    """
    Run one reconciliation pass over every user.

    Args:
        store: Profile store
        client: Eight Sleep API client
        simulated_time: Run as if it were this instant; implies a dry run
                        that neither refreshes tokens nor reads devices
        dry_run: Compute actions but do not send them
        retries: Attempts per remote call
        initial_delay: Delay before the first retry, in seconds
        sleep: Function used to wait between attempts

    Returns:
        One ProfileResult per user, in processing order

    Raises:
        ProfileStoreError: If the profile list cannot be read
    """
    simulate = simulated_time is not None

    try:
        profiles = store.get_all_profiles()
    except ProfileStoreError as e:
        logger.error(f"Error fetching user profiles: {e}")
        raise

    logger.debug(f"Reconciling {len(profiles)} user profile(s)")

    results = []
    for profile in profiles:
        now = simulated_time or datetime.now(timezone.utc)
        try:
            result = reconcile_profile(
                profile, store, client, now,
                simulate=simulate,
                dry_run=dry_run,
                retries=retries,
                initial_delay=initial_delay,
                sleep=sleep,
            )
            logger.debug(f"Successfully completed temperature adjustment check for user {profile.email}")
        except Exception as e:
            logger.error(f"Error adjusting temperature for user {profile.email}: {e}")
            result = ProfileResult(email=profile.email, error=str(e))
        results.append(result)

    failed = sum(1 for r in results if not r.ok)
    logger.info(f"Reconciliation pass complete: {len(results)} user(s), {failed} failed")
    return results


def load_stages_file(path: str) -> List[TemperatureStage]:
    """
    Load a stage list from a JSON file.

    Raises:
        ValueError: If the file does not hold a valid stage list
    """
    with open(path) as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON array of stages")

    stages = []
    for index, item in enumerate(data):
        try:
            stages.append(parse_stage(item))
        except ValueError as e:
            raise ValueError(f"{path}: stage {index}: {e}")
    return stages


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        description='Sleep heating scheduler - keeps Eight Sleep heating in line with sleep schedules'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: searches /etc, /run, /usr/lib)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (default: WARNING)'
    )
    parser.add_argument(
        '--database-url',
        type=str,
        default=None,
        help='SQLAlchemy database URL (overrides config file)'
    )
    subparsers = parser.add_subparsers(dest='command')
    # Running without a subcommand behaves like 'run'
    parser.set_defaults(command='run', test_time=None, dry_run=False)

    run_parser = subparsers.add_parser('run', help='Run one reconciliation pass (default)')
    run_parser.add_argument(
        '--test-time',
        type=parse_test_time,
        default=None,
        help='Simulate a run at this time (POSIX seconds or ISO-8601). '
             'No tokens are refreshed and no commands are sent.'
    )
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Read device state and show planned actions without executing them'
    )

    save_parser = subparsers.add_parser('save-stages', help='Store custom temperature stages for a user')
    save_parser.add_argument('--email', required=True, help='User email')
    save_parser.add_argument('--bed-time', required=True, help='Bed time in hh:mm format')
    save_parser.add_argument('--wake-time', required=True, help='Wake time in hh:mm format')
    save_parser.add_argument(
        '--stages',
        required=True,
        help='JSON file with a list of {"time": "hh:mm", "temp": <level>, "name": <label>}'
    )

    subparsers.add_parser('init-db', help='Create the profile database tables')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Command line entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        apply_cli_overrides(config, args)
        configure_logging(config.logging_level)
        logger.debug("Configuration loaded successfully")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        store = ProfileStore(config.database_url)
    except ProfileStoreError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.command == 'init-db':
        try:
            store.create_tables()
        except ProfileStoreError as e:
            logger.error(str(e))
            return 1
        return 0

    if args.command == 'save-stages':
        try:
            stages = load_stages_file(args.stages)
            store.save_stages(args.email, args.bed_time, args.wake_time, stages)
        except (OSError, ValueError, ProfileStoreError) as e:
            logger.error(f"Error saving stages: {e}")
            return 1
        return 0

    if args.test_time is not None:
        logger.info(f"[TEST MODE] Running temperature adjustment with test time: {args.test_time.isoformat()}")

    with EightSleepClient(config.client_id, config.client_secret,
                          timeout=config.request_timeout) as client:
        try:
            run_reconciliation(
                store,
                client,
                simulated_time=args.test_time,
                dry_run=args.dry_run,
                retries=config.retry_attempts,
                initial_delay=config.retry_initial_delay,
            )
        except Exception as e:
            logger.error(f"Error in temperature adjustment job: {e}", exc_info=True)
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
