"""Test settings, logging and database helpers."""

import pytest
import structlog

from edgeflow.config import Settings
from edgeflow.database import DatabaseManager
from edgeflow.logging_config import setup_logging


@pytest.mark.unit
class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.app_name == "EdgeFlow"
        assert settings.max_subworkflow_depth == 10
        assert settings.execution_timeout_seconds is None
        assert settings.expressions_expose_env is False

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("EDGEFLOW_MAX_SUBWORKFLOW_DEPTH", "3")
        monkeypatch.setenv("EDGEFLOW_ENVIRONMENT", "production")

        settings = Settings(_env_file=None)

        assert settings.max_subworkflow_depth == 3
        assert settings.is_production
        assert not settings.is_testing

    def test_rejects_invalid_values(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, node_timeout_seconds=0)

    def test_environment_flags(self, test_settings):
        assert test_settings.is_testing
        assert not test_settings.is_development


@pytest.mark.unit
def test_setup_logging_configures_structlog():
    setup_logging(Settings(_env_file=None, environment="testing", log_level="debug"))

    assert structlog.is_configured()


@pytest.mark.integration
class TestDatabaseManager:

    async def test_health_check(self, db_manager):
        assert (await db_manager.health_check())["status"] == "healthy"

    async def test_health_check_without_engine(self):
        manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
        assert (await manager.health_check())["status"] == "disabled"

    async def test_session_requires_initialize(self):
        manager = DatabaseManager("sqlite+aiosqlite:///:memory:")

        with pytest.raises(RuntimeError):
            async with manager.get_session():
                pass

    def test_safe_url_masks_credentials(self):
        manager = DatabaseManager("postgresql+asyncpg://user:secret@db:5432/edgeflow")
        assert manager._safe_url() == "postgresql+asyncpg://***@db:5432/edgeflow"
