"""Shared pytest fixtures."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image


@pytest.fixture
def temp_db(tmp_path):
    """Use a temporary database for the test."""
    from utils.database import close_db, init_db

    close_db()
    test_db_path = tmp_path / 'db' / 'test_image_metadata.db'
    with patch('utils.database.DB_PATH', test_db_path), \
         patch('utils.database.DB_DIR', test_db_path.parent):
        init_db()
        yield test_db_path
        close_db()


@pytest.fixture
def capture_root(tmp_path):
    """Empty capture root directory."""
    root = tmp_path / 'live_output'
    root.mkdir()
    return root


@pytest.fixture
def make_image():
    """Factory writing a small real image file."""
    def _make(path: Path, size: tuple[int, int] = (64, 48), color=(20, 40, 60)) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new('RGB', size, color).save(path)
        return path
    return _make


@pytest.fixture
def write_dataset():
    """Factory writing a SatDump dataset.json."""
    def _write(directory: Path, **fields) -> Path:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / 'dataset.json'
        path.write_text(json.dumps(fields), encoding='utf-8')
        return path
    return _write


@pytest.fixture
def age_dir():
    """Set a directory's modification time into the past."""
    def _age(path: Path, seconds: float = 3600) -> None:
        past = time.time() - seconds
        os.utime(path, (past, past))
    return _age


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    import app as app_module
    from routes import register_blueprints

    app_module.app.config['TESTING'] = True

    if 'pipeline' not in app_module.app.blueprints:
        register_blueprints(app_module.app)

    return app_module.app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()
