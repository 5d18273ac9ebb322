"""Tests for settings loading."""

from aidev_pipeline.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CODE_REVIEW_DEPLOYMENT_MODE", raising=False)
        settings = Settings(_env_file=None)

        assert settings.code_review_deployment_mode == "staged"
        assert settings.intake_daily_token_budget == 0
        assert settings.stall_clarification_days == 7
        assert settings.deployment_max_retries == 3

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CODE_REVIEW_DEPLOYMENT_MODE", "auto")
        monkeypatch.setenv("ARCHITECT_DAILY_TOKEN_BUDGET", "50000")
        monkeypatch.setenv("PR_MONITOR_ENABLED", "false")

        settings = Settings(_env_file=None)

        assert settings.code_review_deployment_mode == "auto"
        assert settings.architect_daily_token_budget == 50000
        assert settings.pr_monitor_enabled is False
