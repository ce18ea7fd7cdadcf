"""Tests for application settings."""

from billing_core.core.config import Settings


class TestSettings:
    def test_lifecycle_defaults(self, monkeypatch):
        for name in (
            "LIFECYCLE_GRACE_PERIOD_DAYS",
            "LIFECYCLE_RETRY_INTERVALS",
            "LIFECYCLE_UNPAID_RETENTION_DAYS",
            "PAYMENT_PROCESSOR",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = Settings(_env_file=None)

        assert settings.LIFECYCLE_GRACE_PERIOD_DAYS == 7
        assert settings.LIFECYCLE_RETRY_INTERVALS == [1, 3, 5]
        assert settings.LIFECYCLE_TRIAL_CONVERSION_DAYS == 0
        assert settings.LIFECYCLE_UNPAID_RETENTION_DAYS is None
        assert settings.PAYMENT_PROCESSOR == ""
        assert settings.PAYMENT_CIRCUIT_FAILURE_THRESHOLD == 3

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LIFECYCLE_GRACE_PERIOD_DAYS", "14")
        monkeypatch.setenv("LIFECYCLE_RETRY_INTERVALS", "[2, 4]")
        monkeypatch.setenv("LIFECYCLE_UNPAID_RETENTION_DAYS", "30")
        monkeypatch.setenv("PAYMENT_PROCESSOR", "payments.stripe:charge")

        settings = Settings(_env_file=None)

        assert settings.LIFECYCLE_GRACE_PERIOD_DAYS == 14
        assert settings.LIFECYCLE_RETRY_INTERVALS == [2, 4]
        assert settings.LIFECYCLE_UNPAID_RETENTION_DAYS == 30
        assert settings.PAYMENT_PROCESSOR == "payments.stripe:charge"
