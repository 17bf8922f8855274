"""Tests for server configuration and the loan configuration record."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import T0
from pydantic import ValidationError

from library_circulation.config import ServerConfig, get_config, reset_config
from library_circulation.database.configuration_repository import (
    LoanConfigurationStore,
    UpdateLoanConfigurationCommand,
)
from library_circulation.database.session import DatabaseManager


class TestServerConfig:
    def test_default_configuration(self):
        config = ServerConfig()

        assert config.server_name == "library-circulation"
        assert config.transport == "stdio"
        assert config.database_path == Path("data/circulation.db")
        assert config.transaction_retries == 3
        assert config.is_development is False

    def test_policy_seed_defaults(self):
        assert ServerConfig().policy_defaults == {
            "default_loan_days": 14,
            "max_active_loans": 5,
            "max_renewals": 2,
            "grace_period_days": 0,
            "daily_fine_amount": 1.0,
            "allow_loans_with_fines": False,
            "reservation_hold_days": 7,
        }

    def test_environment_variable_loading(self):
        env_vars = {
            "LIBRARY_CIRCULATION_SERVER_NAME": "branch-circulation",
            "LIBRARY_CIRCULATION_DEBUG": "true",
            "LIBRARY_CIRCULATION_POLICY_MAX_RENEWALS": "4",
            "LIBRARY_CIRCULATION_DATABASE_URL": "sqlite:///tmp/branch.db",
        }

        with patch.dict(os.environ, env_vars):
            config = ServerConfig()

        assert config.server_name == "branch-circulation"
        assert config.is_development is True
        assert config.policy_defaults["max_renewals"] == 4
        assert config.get_database_url() == "sqlite:///tmp/branch.db"

    def test_database_url_falls_back_to_path(self, tmp_path):
        config = ServerConfig(database_path=tmp_path / "library.db")

        assert config.get_database_url() == f"sqlite:///{tmp_path / 'library.db'}"

    @pytest.mark.parametrize("name", ["ab", "Library Circulation", "x" * 51])
    def test_invalid_server_names(self, name):
        with pytest.raises(ValidationError):
            ServerConfig(server_name=name)

    def test_invalid_transport(self):
        with pytest.raises(ValidationError):
            ServerConfig(transport="websocket")

    def test_get_config_is_a_singleton_until_reset(self):
        first = get_config()

        assert get_config() is first
        reset_config()
        assert get_config() is not first


class TestLoanConfigurationStore:
    def test_row_is_seeded_from_process_configuration(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LIBRARY_CIRCULATION_POLICY_DEFAULT_LOAN_DAYS", "21")
        reset_config()
        manager = DatabaseManager(f"sqlite:///{tmp_path / 'seeded.db'}")
        try:
            manager.init_database()
            policy = manager.run_in_transaction(lambda s: LoanConfigurationStore(s).get())
        finally:
            manager.close()

        assert policy.default_loan_days == 21
        assert policy.max_active_loans == 5

    def test_later_environment_changes_do_not_touch_existing_row(self, db_manager, monkeypatch):
        monkeypatch.setenv("LIBRARY_CIRCULATION_POLICY_MAX_RENEWALS", "9")
        reset_config()

        policy = db_manager.run_in_transaction(lambda s: LoanConfigurationStore(s).get())

        assert policy.max_renewals == 2

    def test_partial_update_keeps_other_fields(self, circulation):
        updated = circulation.set_policy(max_renewals=0, daily_fine_amount=0.5)

        assert updated.max_renewals == 0
        assert updated.daily_fine_amount == 0.5
        assert updated.default_loan_days == 14
        assert updated.updated_at is not None
        assert updated.updated_at > T0
        assert circulation.policy() == updated

    @pytest.mark.parametrize(
        "changes",
        [
            {"default_loan_days": 0},
            {"max_active_loans": -1},
            {"daily_fine_amount": -0.01},
            {"reservation_hold_days": 0},
        ],
    )
    def test_update_is_validated(self, changes):
        with pytest.raises(ValidationError):
            UpdateLoanConfigurationCommand(**changes)
