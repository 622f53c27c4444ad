"""Tests for settings and vendor billing configuration."""

from dataclasses import replace
from decimal import Decimal

import pytest

from billing_engine.config import Settings
from billing_engine.errors import ValidationError
from billing_engine.models import VendorBillingSettings
from billing_engine.services.eligibility_service import CapSetting


class TestSettings:
    """Test environment-driven settings."""

    def test_from_env(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("BILLING_TIMEZONE", "Europe/Dublin")
        monkeypatch.setenv("TIME_BLOCK_MINUTES", "30")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.timezone == "Europe/Dublin"
        assert settings.time_block_minutes == 30
        assert settings.log_level == "DEBUG"

    def test_rejects_non_positive_block(self, settings):
        """Time blocks must be at least one minute."""
        with pytest.raises(ValueError, match="time_block_minutes"):
            replace(settings, time_block_minutes=0)

    def test_rejects_non_positive_iteration_bound(self, settings):
        """The money search needs at least one iteration."""
        with pytest.raises(ValueError, match="money_max_iterations"):
            replace(settings, money_max_iterations=0)


class TestCapSetting:
    """Test vendor settings validation."""

    def test_missing_row_is_uncapped(self):
        """Vendors without settings bill uncapped at default rates."""
        setting = CapSetting.from_row(None)

        assert setting.is_capped is False
        assert setting.effective_cap is None
        assert setting.hourly_rate_ex_tax == Decimal("75.00")

    def test_capped_requires_positive_cap(self):
        """A capped vendor without a cap is rejected."""
        row = VendorBillingSettings(
            billing_mode="capped",
            cap_inc_tax=None,
            statement_mode=False,
            hourly_rate_ex_tax=Decimal("75.00"),
            tax_rate=Decimal("20.00"),
            mileage_rate=Decimal("0.420"),
        )

        with pytest.raises(ValidationError):
            CapSetting.from_row(row)

    def test_unknown_mode_rejected(self):
        """Billing modes outside the known set are rejected."""
        row = VendorBillingSettings(
            billing_mode="prepaid",
            hourly_rate_ex_tax=Decimal("75.00"),
            tax_rate=Decimal("20.00"),
            mileage_rate=Decimal("0.420"),
        )

        with pytest.raises(ValidationError, match="prepaid"):
            CapSetting.from_row(row)

    def test_negative_rate_rejected(self):
        """Default rates may not be negative."""
        row = VendorBillingSettings(
            billing_mode="uncapped",
            hourly_rate_ex_tax=Decimal("-1.00"),
            tax_rate=Decimal("20.00"),
            mileage_rate=Decimal("0.420"),
        )

        with pytest.raises(ValidationError, match="hourly_rate_ex_tax"):
            CapSetting.from_row(row)
