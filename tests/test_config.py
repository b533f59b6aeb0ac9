"""Tests for LedgerSettings loading (defaults, YAML file, environment)."""

from decimal import Decimal

import pytest
import yaml

from dairy_ledger.config import DEFAULT_DATABASE_URL, LedgerSettings, load_settings


class TestLedgerSettings:

    def test_defaults(self):
        settings = LedgerSettings()
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.max_reasonable_outstanding == Decimal("1000000")
        assert settings.default_unapplied_reason == "Payment not fully allocated"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"database_url": ""},
            {"pool_size": 0},
            {"max_overflow": -1},
            {"max_reasonable_outstanding": Decimal("0")},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            LedgerSettings(**kwargs)


class TestLoadSettings:

    def test_yaml_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "ledger.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "database_url": "sqlite:///from_file.sqlite",
                    "max_reasonable_outstanding": "250000.50",
                    "default_unapplied_reason": "Advance payment",
                }
            )
        )

        settings = load_settings(path, env={})

        assert settings.database_url == "sqlite:///from_file.sqlite"
        assert settings.max_reasonable_outstanding == Decimal("250000.50")
        assert settings.default_unapplied_reason == "Advance payment"

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "ledger.yaml"
        path.write_text("database_url: sqlite:///from_file.sqlite\n")

        settings = load_settings(
            path,
            env={
                "DAIRY_LEDGER_DATABASE_URL": "postgresql://ledger@db/ledger",
                "DAIRY_LEDGER_LOG_LEVEL": "debug",
            },
        )

        assert settings.database_url == "postgresql://ledger@db/ledger"
        assert settings.log_level == "DEBUG"

    def test_generic_database_url_fallback(self):
        settings = load_settings(env={"DATABASE_URL": "sqlite:///generic.sqlite"})
        assert settings.database_url == "sqlite:///generic.sqlite"

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "ledger.yaml"
        path.write_text("database_url: sqlite://\nunpaid_statuses: [sent]\n")

        with pytest.raises(ValueError, match="unknown settings"):
            load_settings(path, env={})

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "ledger.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError, match="mapping"):
            load_settings(path, env={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml", env={})
