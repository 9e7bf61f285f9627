"""
Unit Tests for the Database Keepalive

Uses a SQLite file under pytest's tmp_path.

Run with:
    pytest tests/unit/test_database.py -v
"""

from pathlib import Path

import pytest
from sqlalchemy.engine import URL
from sqlalchemy.exc import OperationalError

from core.config import DatabaseConfig, DatabaseDriver
from core.errors import StartFailedError
from services.database import DatabaseManager, build_url


class TestBuildURL:
    """Tests for build_url"""

    def test_sqlite_relative_to_data_dir(self):
        """Verify relative SQLite paths land in the data directory"""
        url = build_url(DatabaseConfig(database="bot.db"), Path("/data"))
        assert url == "sqlite:////data/bot.db"

    def test_postgres_url(self):
        """Verify a postgres URL is built from the fields"""
        url = build_url(DatabaseConfig(
            driver=DatabaseDriver.POSTGRES,
            database="hub",
            host="db",
            port=5433,
            username="u",
            password="p",
        ))
        assert isinstance(url, URL)
        assert url.drivername == "postgresql"
        assert (url.host, url.port, url.database, url.username) == ("db", 5433, "hub", "u")

    def test_connection_string_wins(self):
        """Verify connection_string overrides the other fields"""
        config = DatabaseConfig(connection_string="sqlite://", database="ignored.db")
        assert build_url(config) == "sqlite://"


class TestDatabaseManager:
    """Tests for DatabaseManager"""

    @pytest.mark.asyncio
    async def test_disabled_refuses_to_start(self, tmp_path):
        """Verify the subsystem will not start while disabled"""
        manager = DatabaseManager(DatabaseConfig(enabled=False), tmp_path)
        with pytest.raises(StartFailedError, match="disabled"):
            await manager.start()

    @pytest.mark.asyncio
    async def test_sqlite_connects(self, tmp_path):
        """Verify start opens the engine and the first ping succeeds"""
        manager = DatabaseManager(DatabaseConfig(enabled=True, database="test.db", check_interval=60.0), tmp_path)
        await manager.start()
        try:
            assert manager.connected
            assert await manager.check_connection()
        finally:
            await manager.stop()
        assert manager.engine is None
        assert not manager.connected

    @pytest.mark.asyncio
    async def test_failed_ping_then_recovery(self, tmp_path, monkeypatch):
        """Verify a failed ping flips connected and the next success restores it"""
        manager = DatabaseManager(DatabaseConfig(enabled=True, database="test.db", check_interval=60.0), tmp_path)
        await manager.start()
        try:
            def broken():
                raise OperationalError("SELECT 1", {}, Exception("gone"))

            monkeypatch.setattr(manager, "_ping", broken)
            assert not await manager.check_connection()
            assert not manager.connected

            monkeypatch.undo()
            assert await manager.check_connection()
            assert manager.connected
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_unreachable_database(self, tmp_path):
        """Verify a database that cannot be opened fails the start"""
        config = DatabaseConfig(enabled=True, database=str(tmp_path / "missing" / "dir" / "x.db"))
        manager = DatabaseManager(config, tmp_path)
        with pytest.raises(StartFailedError, match="database failed to connect"):
            await manager.start()
        assert manager.engine is None
