"""Tests for escrow_config: loading, checksums and validation.

Each test writes a variant of the packaged default YAML to tmp_path and
loads it through get_active_config(), the only runtime entrypoint.
"""
from __future__ import annotations

from decimal import Decimal

import pytest
import yaml

from escrow_config import DEFAULT_CONFIG_PATH, get_active_config
from escrow_config.loader import load_yaml_file, parse_release_config
from escrow_config.validator import validate_configuration
from escrow_kernel.exceptions import ReleaseConfigError


@pytest.fixture
def default_data():
    return load_yaml_file(DEFAULT_CONFIG_PATH)


@pytest.fixture
def write_config(tmp_path):
    def _write(data, name="release.yaml"):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


class TestDefaultConfig:
    """The packaged default loads and carries the documented policy table."""

    def test_loads(self):
        config = get_active_config()
        assert config.config_id == "default"
        assert config.rules.high_value_threshold == Decimal("5000")
        assert config.rules.standard.max_escrow_days == 30
        assert config.rules.milestone.grace_period_days == 3
        assert config.rules.dispute.requires_approval is True
        assert [t.name for t in config.triggers] == ["milestone_hourly", "comprehensive_bihourly"]
        assert config.notifications.admin_recipients == ("admin",)

    def test_checksum_is_stable(self):
        assert get_active_config().checksum == get_active_config().checksum
        assert len(get_active_config().checksum) == 64

    def test_load_is_logged(self, captured_logs):
        config = get_active_config()
        loaded = [r for r in captured_logs() if r["message"] == "release_config_loaded"]
        assert loaded[-1]["checksum"] == config.checksum


class TestOverrides:
    """A custom YAML file replaces the defaults."""

    def test_changed_rule_changes_checksum(self, default_data, write_config):
        default_data["rules"]["standard"]["max_escrow_days"] = 21
        config = get_active_config(write_config(default_data))
        assert config.rules.standard.max_escrow_days == 21
        assert config.checksum != get_active_config().checksum

    def test_optional_sections_default(self, default_data, write_config):
        minimal = {"config_id": "minimal", "rules": default_data["rules"]}
        config = get_active_config(write_config(minimal))
        assert config.engine.max_workers == 8
        assert config.retry.attempts == 3
        assert config.triggers == ()
        assert config.engine.run_timeout_seconds is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_missing_policy_is_key_error(self, default_data, write_config):
        del default_data["rules"]["milestone"]
        with pytest.raises(KeyError):
            get_active_config(write_config(default_data))


class TestValidation:
    """Invalid configs are rejected with every error listed."""

    def test_bad_cron(self, default_data, write_config):
        default_data["triggers"][0]["cron"] = "0 25 * * *"
        with pytest.raises(ReleaseConfigError) as exc_info:
            get_active_config(write_config(default_data))
        assert any("milestone_hourly" in e for e in exc_info.value.errors)
        assert exc_info.value.code == "RELEASE_CONFIG_INVALID"

    def test_unknown_class_and_duplicate_trigger(self, default_data, write_config):
        default_data["triggers"][0]["classes"] = ["instant_payout"]
        default_data["triggers"][1]["name"] = "milestone_hourly"
        with pytest.raises(ReleaseConfigError) as exc_info:
            get_active_config(write_config(default_data))
        errors = exc_info.value.errors
        assert any("instant_payout" in e for e in errors)
        assert any("Duplicate trigger name" in e for e in errors)

    def test_worker_bounds(self, default_data):
        default_data["engine"]["max_workers"] = 64
        result = validate_configuration(parse_release_config(default_data))
        assert not result.is_valid
        assert any("max_workers" in e for e in result.errors)

    def test_in_flight_below_workers(self, default_data):
        default_data["engine"]["max_in_flight"] = 2
        result = validate_configuration(parse_release_config(default_data))
        assert any("max_in_flight" in e for e in result.errors)

    def test_non_positive_escrow_days(self, default_data):
        default_data["rules"]["standard"]["max_escrow_days"] = 0
        result = validate_configuration(parse_release_config(default_data))
        assert any("rules.standard.max_escrow_days" in e for e in result.errors)

    def test_grace_longer_than_ceiling_warns(self, default_data, write_config, captured_logs):
        default_data["rules"]["milestone"]["grace_period_days"] = 20
        config = get_active_config(write_config(default_data))
        assert config.rules.milestone.grace_period_days == 20
        assert any(r["message"] == "release_config_warning" for r in captured_logs())

    def test_dispute_without_approval_warns(self, default_data):
        default_data["rules"]["dispute"]["requires_approval"] = False
        result = validate_configuration(parse_release_config(default_data))
        assert result.is_valid
        assert result.warnings == ["rules.dispute does not require approval"]
