"""Unit tests for taskpay/config.py defaults and computed properties."""

from decimal import Decimal

import pytest

from taskpay.config import Settings


def test_escrow_timeline_defaults() -> None:
    s = Settings(_env_file=None)
    assert s.auto_release_hours == 72
    assert s.refund_cutoff_hours == 24
    assert s.auto_release_delay_seconds == 72 * 3600


def test_default_fee_schedule() -> None:
    s = Settings(_env_file=None)
    assert s.fee_platform_rate == Decimal("0.15")
    assert s.fee_tax_rate == Decimal("0.05")
    assert s.currency == "cad"


def test_stripe_configured() -> None:
    assert Settings(_env_file=None, stripe_secret_key="").stripe_configured is False
    assert Settings(_env_file=None, stripe_secret_key="sk_test_1").stripe_configured is True


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTO_RELEASE_HOURS", "48")
    monkeypatch.setenv("FEE_PLATFORM_RATE", "0.10")
    s = Settings(_env_file=None)
    assert s.auto_release_hours == 48
    assert s.auto_release_delay_seconds == 48 * 3600
    assert s.fee_platform_rate == Decimal("0.10")


def test_background_loop_off_by_default() -> None:
    assert Settings(_env_file=None).auto_release_loop_enabled is False
