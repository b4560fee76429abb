"""
Unit Tests for Referral Settings and Configuration
"""

import pytest

from points_ledger.config import LedgerSettings
from points_ledger.models import UpdateSettingsRequest
from points_ledger.referral_settings import DEFAULT_SETTINGS, SettingsResolver
from points_ledger.storage import InMemoryStorage


class TestSettingsResolver:
    """Tests for reading and updating the settings record."""

    def test_defaults_when_nothing_stored(self):
        resolver = SettingsResolver(InMemoryStorage())

        settings = resolver.get_settings()

        assert settings.referral_discount_amount == 5000
        assert settings.referrer_points_earned == 10
        assert settings.points_redemption_minimum == 50
        assert settings.points_redemption_value == 100
        assert settings.is_active is True
        assert settings.id == 0

    def test_defaults_are_not_persisted(self):
        storage = InMemoryStorage()

        SettingsResolver(storage).get_settings()

        assert storage.get_settings_record() is None

    def test_defaults_are_a_copy(self):
        resolver = SettingsResolver(InMemoryStorage())

        settings = resolver.get_settings()
        settings.referral_discount_amount = 1

        assert DEFAULT_SETTINGS.referral_discount_amount == 5000

    def test_partial_update_keeps_other_fields(self):
        resolver = SettingsResolver(InMemoryStorage())

        updated = resolver.update_settings(UpdateSettingsRequest(referrer_points_earned=25))

        assert updated.id == 1
        assert updated.referrer_points_earned == 25
        assert updated.referral_discount_amount == 5000
        assert resolver.get_settings() == updated

    def test_updates_apply_to_one_record(self):
        resolver = SettingsResolver(InMemoryStorage())
        resolver.update_settings({"points_redemption_minimum": 10})

        updated = resolver.update_settings({"is_active": False})

        assert updated.id == 1
        assert updated.points_redemption_minimum == 10
        assert updated.is_active is False

    def test_inactive_record_still_returned(self):
        resolver = SettingsResolver(InMemoryStorage())
        resolver.update_settings({"is_active": False, "referral_discount_amount": 100})

        settings = resolver.get_settings()

        assert settings.is_active is False
        assert settings.referral_discount_amount == 100

    def test_storage_error_falls_back(self, monkeypatch):
        storage = InMemoryStorage()
        resolver = SettingsResolver(storage)
        resolver.update_settings({"referrer_points_earned": 99})

        def broken():
            raise RuntimeError("connection refused")

        monkeypatch.setattr(storage, "get_settings_record", broken)

        assert resolver.get_settings().referrer_points_earned == 10
        with pytest.raises(RuntimeError):
            resolver.fetch_settings()

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            UpdateSettingsRequest(points_redemption_value=-1)


class TestLedgerSettings:
    """Tests for environment driven configuration."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("POINTS_LEDGER_DATABASE_URL", raising=False)

        config = LedgerSettings(_env_file=None)

        assert config.database_url is None
        assert config.settings_fallback_on_error is True
        assert config.log_level == "INFO"

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("POINTS_LEDGER_DATABASE_URL", "sqlite://")
        monkeypatch.setenv("POINTS_LEDGER_SETTINGS_FALLBACK_ON_ERROR", "false")
        monkeypatch.setenv("POINTS_LEDGER_CORS_ORIGINS", '["https://shop.example"]')

        config = LedgerSettings(_env_file=None)

        assert config.database_url == "sqlite://"
        assert config.settings_fallback_on_error is False
        assert config.cors_origins == ["https://shop.example"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
