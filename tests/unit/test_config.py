"""Tests for policy configuration defaults and env overrides."""

import pytest

import tooltrust.__main__ as entry_point
from tooltrust.config import Settings
from tooltrust.domains.disputes.config import DisputeConfig, MutualClosureConfig
from tooltrust.domains.fraud.config import FraudConfig


class TestFraudConfig:
    def test_defaults(self):
        config = FraudConfig()
        assert (config.bands.medium, config.bands.high, config.bands.critical) == (30.0, 60.0, 80.0)
        assert config.triangulation.min_points == 3
        assert config.triangulation.min_distance_km == 1.0
        assert config.triangulation.window_hours == 24
        assert config.decision.dedup_window_days is None

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("FRAUD_DAILY_TRANSACTION_LIMIT", "7")
        monkeypatch.setenv("FRAUD_BAND_HIGH", "55")
        monkeypatch.setenv("FRAUD_TRIANGULATION_ENABLED", "false")
        monkeypatch.setenv("FRAUD_DEDUP_WINDOW_DAYS", "14")

        config = FraudConfig.from_env()

        assert config.velocity.transaction_limits["daily_transactions"] == 7
        assert config.bands.high == 55.0
        assert config.bands.medium == 30.0
        assert config.triangulation.enabled is False
        assert config.decision.dedup_window_days == 14

    def test_invalid_band_override_rejected(self, monkeypatch):
        monkeypatch.setenv("FRAUD_BAND_MEDIUM", "90")

        with pytest.raises(ValueError):
            FraudConfig.from_env()

    def test_instances_do_not_share_limits(self):
        first = FraudConfig()
        first.velocity.amount_limits["daily_amount"] = 1.0
        assert FraudConfig().velocity.amount_limits["daily_amount"] == 5_000.0


class TestDisputeConfig:
    def test_closure_defaults(self):
        policy = DisputeConfig().mutual_closure
        assert policy.default_expiration_hours == 72
        assert (policy.min_expiration_hours, policy.max_expiration_hours) == (24, 168)
        assert policy.max_refund_amount == 500.0

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DISPUTE_CLOSURE_EXPIRATION_HOURS", "48")
        monkeypatch.setenv("DISPUTE_MAX_CONFLICT_RETRIES", "5")

        config = DisputeConfig.from_env()

        assert config.mutual_closure.default_expiration_hours == 48
        assert config.max_conflict_retries == 5

    def test_expiration_out_of_range_rejected(self, monkeypatch):
        monkeypatch.setenv("DISPUTE_CLOSURE_EXPIRATION_HOURS", "500")

        with pytest.raises(ValueError):
            DisputeConfig.from_env()

    def test_fee_must_be_a_fraction(self):
        with pytest.raises(ValueError):
            MutualClosureConfig(platform_fee_pct=1.5)


class TestSettings:
    def test_defaults_keep_everything_in_memory(self, monkeypatch):
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)
        monkeypatch.delenv("VELOCITY_BACKEND", raising=False)

        settings = Settings(_env_file=None)

        assert settings.storage_backend == "memory"
        assert settings.velocity_backend == "store"
        assert settings.kafka_enabled is False

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "database")
        monkeypatch.setenv("KAFKA_ENABLED", "true")

        settings = Settings(_env_file=None)

        assert settings.storage_backend == "database"
        assert settings.kafka_enabled is True

    def test_entry_point_serves_the_app_from_settings(self, monkeypatch):
        calls = []
        monkeypatch.setattr(entry_point.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

        entry_point.main()

        [(app, kwargs)] = calls
        assert app == "tooltrust.main:app"
        assert (kwargs["host"], kwargs["port"]) == (entry_point.settings.host, entry_point.settings.port)
