"""Settings and application startup"""

from pathlib import Path

import pytest
from fastapi import FastAPI

from marker_editor.app import init_services
from marker_editor.config import BASE_DIR, Settings
from marker_editor.errors import StorageError


class TestSettings:
    """Environment-driven settings"""

    def test_relative_backup_path_is_resolved(self):
        settings = Settings(BACKUP_DATABASE_PATH="Backup/actions.db")
        assert Path(settings.BACKUP_DATABASE_PATH) == (BASE_DIR / "Backup" / "actions.db").resolve()

    def test_plex_path_expands_home(self):
        settings = Settings(PLEX_DATABASE_PATH="~/plex.db")
        assert not settings.PLEX_DATABASE_PATH.startswith("~")

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("PURE_MODE", "true")
        monkeypatch.setenv("EXTENDED_MARKER_STATS", "false")
        settings = Settings()
        assert settings.PURE_MODE
        assert not settings.EXTENDED_MARKER_STATS


class TestStartup:
    """Service initialization"""

    async def test_missing_plex_database_path(self):
        with pytest.raises(StorageError):
            await init_services(FastAPI(), Settings(PLEX_DATABASE_PATH=""))

    async def test_pure_mode_leaves_thumb_url_alone(self, plex_db, tmp_path):
        app = FastAPI()
        settings = Settings(
            PLEX_DATABASE_PATH=str(plex_db),
            BACKUP_DATABASE_PATH=str(tmp_path / "actions.db"),
            PURE_MODE=True,
        )
        await init_services(app, settings)

        marker = (await app.state.plex_service.add_marker(12, 0, 5000)).marker

        assert not marker.created_by_user
        assert marker.modified_at is None
        assert app.state.marker_cache.built
        assert app.state.purge_service is not None
