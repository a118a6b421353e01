# SPDX-License-Identifier: MPL-2.0
"""
Unit tests for the reconciliation job.

Tests configuration loading, the per-user reconciliation flow with a mocked
Eight Sleep client and profile store, failure isolation across users, and
the command line entry point.
"""

import argparse
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional
from unittest.mock import MagicMock, Mock, call, patch

import pytest

from sleep_heating.eight_sleep import EightAPIError, EightSleepClient, EightToken, HeatingStatus
from sleep_heating.profile_store import (
    ProfileStore,
    ProfileStoreError,
    User,
    UserProfile,
    UserTemperatureProfile,
)
from sleep_heating.reconciler import ActionType, DeviceAction
from sleep_heating.temperature_cron import (
    ConfigurationError,
    find_default_config,
    load_config,
    load_stages_file,
    main,
    parse_test_time,
    reconcile_profile,
    run_reconciliation,
)

# 01:30 in London during winter (UTC+0)
NIGHT = datetime(2025, 1, 15, 1, 30, tzinfo=timezone.utc)
# 12:00 in London
MIDDAY = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

CUSTOM_STAGES = json.dumps([
    {'time': '23:00', 'temp': 20, 'name': 'Warm'},
    {'time': '00:00', 'temp': 22, 'name': 'Warmer'},
    {'time': '05:00', 'temp': 18, 'name': 'Cool'},
])


def create_profile(email: str = "a@example.com", expires_at: Optional[datetime] = None,
                   custom_stages: Optional[str] = CUSTOM_STAGES,
                   tz: str = "Europe/London") -> UserProfile:
    """Helper to create a profile with a 23:00-07:00 window."""
    if expires_at is None:
        expires_at = NIGHT + timedelta(hours=4)
    return UserProfile(
        email=email,
        bed_time='23:00',
        wake_time='07:00',
        initial_sleep_level=10,
        mid_stage_sleep_level=15,
        final_sleep_level=5,
        timezone=tz,
        custom_stages=custom_stages,
        token=EightToken("access", "refresh", expires_at, f"eight-{email}"),
    )


def create_client(status: Optional[HeatingStatus] = None) -> MagicMock:
    client = MagicMock(spec=EightSleepClient)
    client.get_heating_status.return_value = status or HeatingStatus(False, 0)
    return client


def create_store(profiles: List[UserProfile]) -> MagicMock:
    store = MagicMock(spec=ProfileStore)
    store.get_all_profiles.return_value = profiles
    return store


class TestConfiguration:
    """Test configuration loading and validation."""

    def write_config(self, tmp_path: Any, body: str, secret: bool = True) -> tuple:
        config_file = tmp_path / "sleep-heating.conf"
        config_file.write_text(body)
        creds_dir = tmp_path / "credentials"
        creds_dir.mkdir()
        if secret:
            (creds_dir / "client_secret").write_text("test-secret-abc123\n")
        return str(config_file), creds_dir

    def test_load_config_success(self, tmp_path: Any) -> None:
        """Test successful configuration loading."""
        config_file, creds_dir = self.write_config(tmp_path, """
[eight]
client_id = test-client-id
timeout = 10

[database]
url = sqlite:////var/lib/sleep-heating/profiles.db

[retry]
attempts = 5
initial_delay = 0.5

[logging]
level = info
""")
        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            config = load_config(config_file)

        assert config.client_id == "test-client-id"
        assert config.client_secret == "test-secret-abc123"
        assert config.database_url == "sqlite:////var/lib/sleep-heating/profiles.db"
        assert config.request_timeout == 10
        assert config.retry_attempts == 5
        assert config.retry_initial_delay == 0.5
        assert config.logging_level == "INFO"

    def test_load_config_defaults(self, tmp_path: Any) -> None:
        """Test optional settings fall back to defaults."""
        config_file, creds_dir = self.write_config(tmp_path, """
[eight]
client_id = test-client-id

[database]
url = sqlite:///profiles.db
""")
        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            config = load_config(config_file)

        assert config.request_timeout == 30
        assert config.retry_attempts == 3
        assert config.retry_initial_delay == 1.0
        assert config.logging_level == "WARNING"

    def test_database_url_credential_overrides(self, tmp_path: Any) -> None:
        """Test a database_url credential file wins over the config file."""
        config_file, creds_dir = self.write_config(tmp_path, """
[eight]
client_id = test-client-id
""")
        (creds_dir / "database_url").write_text("postgresql://user:pw@db/sleep\n")

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            config = load_config(config_file)

        assert config.database_url == "postgresql://user:pw@db/sleep"

    def test_load_config_missing_file(self) -> None:
        """Test error when config file doesn't exist."""
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            load_config("nonexistent.conf")

    def test_load_config_no_credentials_dir(self, tmp_path: Any) -> None:
        """Test error when CREDENTIALS_DIRECTORY not set."""
        config_file, _ = self.write_config(tmp_path, "[eight]\nclient_id = x\n")

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError, match="CREDENTIALS_DIRECTORY"):
                load_config(config_file)

    def test_load_config_missing_secret(self, tmp_path: Any) -> None:
        """Test error when client_secret is missing."""
        config_file, creds_dir = self.write_config(tmp_path, "[eight]\nclient_id = x\n", secret=False)

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            with pytest.raises(ConfigurationError, match="client_secret file not found"):
                load_config(config_file)

    def test_load_config_missing_option(self, tmp_path: Any) -> None:
        """Test error when a required option is missing."""
        config_file, creds_dir = self.write_config(tmp_path, "[database]\nurl = sqlite://\n")

        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            with pytest.raises(ConfigurationError, match="Invalid configuration"):
                load_config(config_file)

    def test_load_config_invalid_retry(self, tmp_path: Any) -> None:
        """Test a retry budget below one is rejected."""
        config_file, creds_dir = self.write_config(tmp_path, """
[eight]
client_id = x
[database]
url = sqlite://
[retry]
attempts = 0
""")
        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            with pytest.raises(ConfigurationError, match="at least 1"):
                load_config(config_file)

    def test_load_config_non_numeric(self, tmp_path: Any) -> None:
        """Test non-numeric values are reported as configuration errors."""
        config_file, creds_dir = self.write_config(tmp_path, """
[eight]
client_id = x
timeout = soon
[database]
url = sqlite://
""")
        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            with pytest.raises(ConfigurationError, match="Invalid configuration value"):
                load_config(config_file)

    def test_find_default_config_not_found(self) -> None:
        """Test None is returned when no config exists."""
        with patch('os.path.exists', return_value=False):
            assert find_default_config() is None

    def test_find_default_config_finds_etc(self) -> None:
        """Test /etc is searched first."""
        def exists_mock(path: str) -> bool:
            return path in ("/etc/sleep-heating/sleep-heating.conf",
                            "/usr/lib/sleep-heating/sleep-heating.conf")

        with patch('os.path.exists', side_effect=exists_mock):
            assert find_default_config() == "/etc/sleep-heating/sleep-heating.conf"

    def test_load_config_with_none_path_fails_if_not_found(self) -> None:
        """Test error when no config is given and none is found."""
        with patch('sleep_heating.temperature_cron.find_default_config', return_value=None):
            with pytest.raises(ConfigurationError, match="No configuration file found"):
                load_config(None)


class TestParseTestTime:
    """Test parsing of simulated run times."""

    def test_posix_seconds(self) -> None:
        """Test POSIX timestamps are accepted."""
        assert parse_test_time("1736904600") == datetime(2025, 1, 15, 1, 30, tzinfo=timezone.utc)

    def test_iso_with_offset(self) -> None:
        """Test ISO-8601 values keep their offset."""
        parsed = parse_test_time("2025-01-15T02:30:00+01:00")
        assert parsed == NIGHT

    def test_naive_iso_is_utc(self) -> None:
        """Test naive ISO values are taken as UTC."""
        assert parse_test_time("2025-01-15T01:30:00") == NIGHT

    def test_invalid(self) -> None:
        """Test garbage is rejected."""
        with pytest.raises(argparse.ArgumentTypeError):
            parse_test_time("yesterday")


class TestReconcileProfile:
    """Test reconciling a single user."""

    def test_turns_on_and_sets_level(self) -> None:
        """Test an idle bed is switched on and set to the active stage."""
        profile = create_profile()
        client = create_client(HeatingStatus(False, 0))
        store = create_store([profile])

        result = reconcile_profile(profile, store, client, NIGHT, sleep=Mock())

        assert result.target == 22
        assert result.actions == [DeviceAction(ActionType.TURN_ON), DeviceAction(ActionType.SET_LEVEL, 22)]
        token = profile.token
        assert client.mock_calls == [
            call.get_heating_status(token),
            call.turn_on_side(token, "eight-a@example.com"),
            call.set_heating_level(token, "eight-a@example.com", 22),
        ]
        store.update_token.assert_not_called()

    def test_already_correct(self) -> None:
        """Test nothing is sent when the bed already matches."""
        profile = create_profile()
        client = create_client(HeatingStatus(True, 22))

        result = reconcile_profile(profile, create_store([profile]), client, NIGHT, sleep=Mock())

        assert result.actions == []
        client.turn_on_side.assert_not_called()
        client.set_heating_level.assert_not_called()

    def test_outside_window_turns_off(self, caplog: Any) -> None:
        """Test a heating bed is switched off outside the sleep window."""
        profile = create_profile()
        client = create_client(HeatingStatus(True, 22))

        with caplog.at_level(logging.INFO, logger='sleep_heating.temperature_cron'):
            result = reconcile_profile(profile, create_store([profile]), client, MIDDAY, sleep=Mock())

        assert result.target is None
        assert result.actions == [DeviceAction(ActionType.TURN_OFF)]
        client.turn_off_side.assert_called_once_with(profile.token, "eight-a@example.com")
        assert "outside sleep schedule" in caplog.text

    def test_uses_user_timezone(self) -> None:
        """Test the schedule is evaluated in the user's local time."""
        # 01:30 UTC is 20:30 the previous evening in New York
        profile = create_profile(tz="America/New_York")
        client = create_client(HeatingStatus(False, 0))

        result = reconcile_profile(profile, create_store([profile]), client, NIGHT, sleep=Mock())

        assert result.target is None
        assert result.actions == []

    def test_default_stages_when_none_stored(self) -> None:
        """Test the default 3-stage schedule is used without custom stages."""
        # Mid stage starts at 00:00 for a 23:00 bed time
        profile = create_profile(custom_stages=None)
        client = create_client(HeatingStatus(True, 10))

        result = reconcile_profile(profile, create_store([profile]), client, NIGHT, sleep=Mock())

        assert result.target == 15
        client.set_heating_level.assert_called_once_with(profile.token, "eight-a@example.com", 15)

    def test_invalid_stages_fall_back(self) -> None:
        """Test unparseable stages fall back to the default schedule."""
        profile = create_profile(custom_stages="[{oops")
        client = create_client(HeatingStatus(True, 15))

        result = reconcile_profile(profile, create_store([profile]), client, NIGHT, sleep=Mock())

        assert result.target == 15
        assert result.actions == []

    def test_expired_token_is_refreshed_and_stored(self) -> None:
        """Test an expired token is refreshed, saved and used."""
        profile = create_profile(expires_at=NIGHT - timedelta(minutes=1))
        new_token = EightToken("new-access", "new-refresh", NIGHT + timedelta(hours=8),
                               "eight-a@example.com")
        client = create_client(HeatingStatus(True, 22))
        client.refresh_token.return_value = new_token
        store = create_store([profile])

        reconcile_profile(profile, store, client, NIGHT, sleep=Mock())

        client.refresh_token.assert_called_once_with("refresh", "eight-a@example.com")
        store.update_token.assert_called_once_with("a@example.com", new_token)
        client.get_heating_status.assert_called_once_with(new_token)

    def test_token_at_expiry_is_not_refreshed(self) -> None:
        """Test refresh only happens once now is past the expiry time."""
        profile = create_profile(expires_at=NIGHT)
        client = create_client(HeatingStatus(True, 22))

        reconcile_profile(profile, create_store([profile]), client, NIGHT, sleep=Mock())

        client.refresh_token.assert_not_called()

    def test_refresh_is_retried(self) -> None:
        """Test a transient refresh failure is retried."""
        profile = create_profile(expires_at=NIGHT - timedelta(minutes=1))
        client = create_client(HeatingStatus(True, 22))
        client.refresh_token.side_effect = [EightAPIError("502"), profile.token]
        sleep = Mock()

        reconcile_profile(profile, create_store([profile]), client, NIGHT, sleep=sleep)

        assert client.refresh_token.call_count == 2
        sleep.assert_called_once_with(1.0)

    def test_status_read_is_retried(self) -> None:
        """Test a transient status failure is retried."""
        profile = create_profile()
        client = create_client()
        client.get_heating_status.side_effect = [EightAPIError("timeout"), HeatingStatus(True, 22)]
        sleep = Mock()

        result = reconcile_profile(profile, create_store([profile]), client, NIGHT, sleep=sleep)

        assert result.actions == []
        assert client.get_heating_status.call_count == 2

    def test_simulation_skips_remote_calls(self, caplog: Any) -> None:
        """Test simulation assumes an idle bed and only logs actions."""
        profile = create_profile(expires_at=NIGHT - timedelta(days=1))
        client = create_client()
        store = create_store([profile])

        with caplog.at_level(logging.INFO, logger='sleep_heating.reconciler'):
            result = reconcile_profile(profile, store, client, NIGHT, simulate=True, sleep=Mock())

        assert result.actions == [DeviceAction(ActionType.TURN_ON), DeviceAction(ActionType.SET_LEVEL, 22)]
        assert client.mock_calls == []
        store.update_token.assert_not_called()
        assert "Would turn on heating for user a@example.com" in caplog.text
        assert "Would set heating level to 22 for user a@example.com" in caplog.text

    def test_dry_run_reads_state_but_sends_nothing(self) -> None:
        """Test a dry run reads the bed but does not change it."""
        profile = create_profile()
        client = create_client(HeatingStatus(True, 5))

        result = reconcile_profile(profile, create_store([profile]), client, NIGHT,
                                   dry_run=True, sleep=Mock())

        assert result.actions == [DeviceAction(ActionType.SET_LEVEL, 22)]
        client.get_heating_status.assert_called_once()
        client.set_heating_level.assert_not_called()


class TestRunReconciliation:
    """Test a full pass over all users."""

    def test_processes_all_profiles(self) -> None:
        """Test every profile is reconciled."""
        profiles = [create_profile("a@example.com"), create_profile("b@example.com")]
        client = create_client(HeatingStatus(True, 22))

        results = run_reconciliation(create_store(profiles), client,
                                     simulated_time=None, sleep=Mock())

        assert [r.email for r in results] == ["a@example.com", "b@example.com"]
        assert all(r.ok for r in results)
        assert client.get_heating_status.call_count == 2

    def test_failure_is_isolated(self, caplog: Any) -> None:
        """Test one user's failure does not stop the others."""
        profiles = [create_profile("a@example.com"), create_profile("b@example.com")]
        client = create_client()
        client.get_heating_status.side_effect = [
            EightAPIError("down"), EightAPIError("down"), EightAPIError("down"),
            HeatingStatus(False, 0),
        ]
        sleep = Mock()

        with caplog.at_level(logging.ERROR, logger='sleep_heating.temperature_cron'):
            results = run_reconciliation(create_store(profiles), client, sleep=sleep)

        assert not results[0].ok
        assert results[0].error == "down"
        assert results[1].ok
        assert results[1].actions == [DeviceAction(ActionType.TURN_ON), DeviceAction(ActionType.SET_LEVEL, 22)]
        client.turn_on_side.assert_called_once_with(profiles[1].token, "eight-b@example.com")
        assert "Error adjusting temperature for user a@example.com: down" in caplog.text

    def test_bad_timezone_is_isolated(self) -> None:
        """Test an unknown timezone only fails that user."""
        profiles = [create_profile("a@example.com", tz="Mars/Olympus_Mons"),
                    create_profile("b@example.com")]
        client = create_client(HeatingStatus(True, 22))

        results = run_reconciliation(create_store(profiles), client, sleep=Mock())

        assert not results[0].ok
        assert results[1].ok

    def test_store_failure_is_fatal(self) -> None:
        """Test a failure reading profiles propagates."""
        store = MagicMock(spec=ProfileStore)
        store.get_all_profiles.side_effect = ProfileStoreError("database is locked")
        client = create_client()

        with pytest.raises(ProfileStoreError, match="database is locked"):
            run_reconciliation(store, client, sleep=Mock())

        client.get_heating_status.assert_not_called()

    def test_simulated_time(self) -> None:
        """Test a simulated run uses the given time and never calls the API."""
        profiles = [create_profile("a@example.com"), create_profile("b@example.com")]
        client = create_client()

        results = run_reconciliation(create_store(profiles), client, simulated_time=MIDDAY)

        assert [r.target for r in results] == [None, None]
        assert [r.actions for r in results] == [[], []]
        assert client.mock_calls == []

    def test_no_profiles(self) -> None:
        """Test an empty store is a successful, empty pass."""
        assert run_reconciliation(create_store([]), create_client()) == []


class TestLoadStagesFile:
    """Test reading stage lists for save-stages."""

    def test_load(self, tmp_path: Any) -> None:
        """Test a valid file is loaded in order."""
        path = tmp_path / "stages.json"
        path.write_text(CUSTOM_STAGES)

        stages = load_stages_file(str(path))

        assert [(s.time, s.temp, s.name) for s in stages] == [
            ('23:00', 20, 'Warm'), ('00:00', 22, 'Warmer'), ('05:00', 18, 'Cool'),
        ]

    def test_not_a_list(self, tmp_path: Any) -> None:
        """Test a non-list document is rejected."""
        path = tmp_path / "stages.json"
        path.write_text('{"time": "23:00", "temp": 1}')

        with pytest.raises(ValueError, match="expected a JSON array"):
            load_stages_file(str(path))

    @pytest.mark.parametrize('temp', ['null', 'true', '20.7', '[20]', '{"level": 20}', '150'])
    def test_bad_temp(self, tmp_path: Any, temp: str) -> None:
        """Test unusable levels are rejected as ValueError."""
        path = tmp_path / "stages.json"
        path.write_text(f'[{{"time": "23:00", "temp": 20}}, {{"time": "01:00", "temp": {temp}}}]')

        with pytest.raises(ValueError, match="stage 1"):
            load_stages_file(str(path))

    def test_whole_float_accepted(self, tmp_path: Any) -> None:
        """Test a float with no fraction is read as an integer level."""
        path = tmp_path / "stages.json"
        path.write_text('[{"time": "23:00", "temp": 20.0}]')

        assert load_stages_file(str(path))[0].temp == 20

    def test_bad_time(self, tmp_path: Any) -> None:
        """Test a malformed stage time is rejected."""
        path = tmp_path / "stages.json"
        path.write_text('[{"time": "late", "temp": 1}]')

        with pytest.raises(ValueError):
            load_stages_file(str(path))


class TestMain:
    """Test the command line entry point."""

    @pytest.fixture
    def config_env(self, tmp_path: Any) -> Any:
        config_file = tmp_path / "sleep-heating.conf"
        config_file.write_text(f"""
[eight]
client_id = test-client-id

[database]
url = sqlite:///{tmp_path / 'profiles.db'}
""")
        creds_dir = tmp_path / "credentials"
        creds_dir.mkdir()
        (creds_dir / "client_secret").write_text("secret")
        with patch.dict(os.environ, {'CREDENTIALS_DIRECTORY': str(creds_dir)}):
            yield str(config_file)

    def test_run_success(self, config_env: str) -> None:
        """Test a completed pass exits 0."""
        with patch('sleep_heating.temperature_cron.run_reconciliation', return_value=[]) as mock_run, \
                patch('sleep_heating.temperature_cron.EightSleepClient') as mock_client_class:
            assert main(['--config', config_env]) == 0

        mock_client_class.assert_called_once_with("test-client-id", "secret", timeout=30)
        kwargs = mock_run.call_args.kwargs
        assert kwargs['simulated_time'] is None
        assert kwargs['dry_run'] is False
        assert kwargs['retries'] == 3

    def test_run_with_test_time(self, config_env: str) -> None:
        """Test --test-time is passed through as a simulated time."""
        with patch('sleep_heating.temperature_cron.run_reconciliation', return_value=[]) as mock_run, \
                patch('sleep_heating.temperature_cron.EightSleepClient'):
            assert main(['--config', config_env, 'run', '--test-time', '1736904600']) == 0

        assert mock_run.call_args.kwargs['simulated_time'] == NIGHT

    def test_run_fatal_error(self, config_env: str) -> None:
        """Test a fatal store failure exits 1."""
        with patch('sleep_heating.temperature_cron.run_reconciliation',
                   side_effect=ProfileStoreError("no database")), \
                patch('sleep_heating.temperature_cron.EightSleepClient'):
            assert main(['--config', config_env, 'run']) == 1

    def test_configuration_error(self, tmp_path: Any) -> None:
        """Test a configuration error exits 1."""
        assert main(['--config', str(tmp_path / "missing.conf")]) == 1

    def test_invalid_database_url(self, config_env: str) -> None:
        """Test a malformed database URL exits 1."""
        assert main(['--config', config_env, '--database-url', 'notaurl', 'run']) == 1

    def test_save_stages_bad_file(self, config_env: str, tmp_path: Any) -> None:
        """Test a stage file with a null level exits 1."""
        assert main(['--config', config_env, 'init-db']) == 0
        stages_file = tmp_path / "stages.json"
        stages_file.write_text('[{"time": "23:00", "temp": null}]')

        assert main(['--config', config_env, 'save-stages', '--email', 'a@example.com',
                     '--bed-time', '23:00', '--wake-time', '07:00',
                     '--stages', str(stages_file)]) == 1

    def test_init_db_and_save_stages(self, config_env: str, tmp_path: Any) -> None:
        """Test creating tables and saving stages end to end."""
        assert main(['--config', config_env, 'init-db']) == 0

        stages_file = tmp_path / "stages.json"
        stages_file.write_text(CUSTOM_STAGES)

        # No profile exists yet
        assert main(['--config', config_env, 'save-stages', '--email', 'a@example.com',
                     '--bed-time', '23:00', '--wake-time', '07:00',
                     '--stages', str(stages_file)]) == 1

    def test_simulated_run_end_to_end(self, config_env: str, tmp_path: Any) -> None:
        """Test a simulated pass over a real database exits 0 without network access."""
        assert main(['--config', config_env, 'init-db']) == 0
        store = ProfileStore(f"sqlite:///{tmp_path / 'profiles.db'}")
        with store.session() as session:
            session.add(User(email="a@example.com", eight_user_id="u1", eight_access_token="a",
                             eight_refresh_token="r",
                             eight_token_expires_at=NIGHT - timedelta(days=1)))
            session.add(UserTemperatureProfile(
                email="a@example.com", bed_time='23:00', wakeup_time='07:00',
                initial_sleep_level=10, mid_stage_sleep_level=15, final_sleep_level=5,
                timezone_tz='UTC'))
            session.commit()

        with patch('sleep_heating.temperature_cron.EightSleepClient') as mock_client_class:
            assert main(['--config', config_env, 'run', '--test-time', '1736904600']) == 0

        assert mock_client_class.return_value.__enter__.return_value.mock_calls == []
