"""Tests for settings validation."""

import pytest
from pydantic import ValidationError

from hackauth.config import Settings


class TestJwtSecret:
    def test_missing_secret_rejected_in_development(self):
        with pytest.raises(ValidationError) as excinfo:
            Settings(app_env="development")
        assert "JWT_SECRET must be set" in str(excinfo.value)

    def test_missing_secret_rejected_in_production(self):
        with pytest.raises(ValidationError):
            Settings(app_env="production")

    def test_test_mode_generates_secret(self):
        first = Settings(test_mode=True)
        second = Settings(test_mode=True)

        assert first.jwt_secret
        assert first.jwt_secret != second.jwt_secret

    def test_short_secret_rejected_in_production(self):
        with pytest.raises(ValidationError):
            Settings(app_env="production", jwt_secret="too-short")

    def test_configured_secret_kept(self):
        settings = Settings(jwt_secret="s" * 40)
        assert settings.jwt_secret == "s" * 40
