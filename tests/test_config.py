"""Unit tests for app/config.py defaults and environment overrides."""

from decimal import Decimal

import pytest

from app.config import Settings


def test_default_escrow_period_is_ten_days() -> None:
    assert Settings().escrow_period_minutes == 14400


def test_default_fee_schedule() -> None:
    s = Settings()
    assert s.service_fee_rate == Decimal("0.10")
    assert s.currency == "usd"


def test_default_settings_testable() -> None:
    """Default settings should have development-friendly defaults."""
    s = Settings()
    assert s.env != "production"
    assert s.paypal_api_url.startswith("https://api-m.sandbox.paypal.com")
    assert s.release_max_sleep_seconds <= s.release_sweep_interval_seconds


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ESCROW_PERIOD_MINUTES", "5")
    monkeypatch.setenv("SERVICE_FEE_RATE", "0.125")
    monkeypatch.setenv("CLERK_JWT_ALGORITHMS", '["RS256", "HS256"]')
    s = Settings()
    assert s.escrow_period_minutes == 5
    assert s.service_fee_rate == Decimal("0.125")
    assert s.clerk_jwt_algorithms == ["RS256", "HS256"]
