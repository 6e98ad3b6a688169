"""Unit tests for the database session manager; engines are created but never connected."""

import pytest

from artscout.database.database import DatabaseSessionManager
from artscout.main.config import Settings
from artscout.main.exceptions import NotReadyException


@pytest.mark.asyncio
async def test_uninitialized_session_manager_refuses_sessions():
    manager = DatabaseSessionManager()

    assert manager.initialized is False
    with pytest.raises(NotReadyException, match="not initialized"):
        async with manager.transaction():
            pass
    with pytest.raises(NotReadyException):
        manager.engine


def test_init_from_settings_without_postgres_leaves_manager_idle():
    settings = Settings(
        _env_file=None, postgres_user=None, postgres_host=None, postgres_db=None
    )
    manager = DatabaseSessionManager()

    assert manager.init_from_settings(settings) is False
    assert manager.initialized is False


@pytest.mark.asyncio
async def test_init_from_settings_sizes_pool(test_settings):
    settings = test_settings.model_copy(
        update={"postgres_pool_size": 3, "postgres_max_overflow": 2}
    )
    manager = DatabaseSessionManager()

    try:
        assert manager.init_from_settings(settings) is True
        assert manager.initialized is True
        assert manager.engine.pool.size() == 3
        assert manager.engine.url.database == "unit_test_db"

        # A second init keeps the first engine
        engine = manager.engine
        manager.init("postgresql+asyncpg://other@localhost/other")
        assert manager.engine is engine
    finally:
        await manager.close()

    assert manager.initialized is False
