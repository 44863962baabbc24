"""Configuration settings for SkyArchive.

Every value can be overridden with an environment variable named
``SKYARCHIVE_<KEY>``.
"""

from __future__ import annotations

import os
from pathlib import Path

VERSION = "1.0.0"

BASE_DIR = Path(__file__).resolve().parent


def _get_env(key: str, default: str) -> str:
    """Get environment variable with SKYARCHIVE_ prefix."""
    return os.environ.get(f'SKYARCHIVE_{key}', default)


def _get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    try:
        return int(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    val = _get_env(key, '').lower()
    if val in ('true', '1', 'yes', 'on'):
        return True
    if val in ('false', '0', 'no', 'off'):
        return False
    return default


# Server settings
HOST = _get_env('HOST', '0.0.0.0')
PORT = _get_env_int('PORT', 1500)
DEBUG = _get_env_bool('DEBUG', False)

# Logging
LOG_LEVEL = _get_env('LOG_LEVEL', 'INFO').upper()
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Paths
DATA_DIR = _get_env('DATA_DIR', str(BASE_DIR / 'data'))
DATABASE_PATH = _get_env('DATABASE_PATH', str(Path(DATA_DIR) / 'image_metadata.db'))
CAPTURE_ROOT = _get_env('CAPTURE_ROOT', str(BASE_DIR / 'live_output'))
# Empty means thumbnails are written beside each original image
THUMBNAIL_DIR = _get_env('THUMBNAIL_DIR', '')

# Ingestion
INGEST_STABLE_AGE_SECONDS = _get_env_int('INGEST_STABLE_AGE_SECONDS', 15 * 60)

# Thumbnail generation
THUMBNAIL_WORKERS = _get_env_int('THUMBNAIL_WORKERS', 4)
THUMBNAIL_QUEUE_DEPTH = _get_env_int('THUMBNAIL_QUEUE_DEPTH', 1000)
THUMBNAIL_WIDTH = _get_env_int('THUMBNAIL_WIDTH', 200)
THUMBNAIL_QUALITY = _get_env_int('THUMBNAIL_QUALITY', 75)

# Pipeline runs triggered over HTTP
UPDATE_COOLDOWN_SECONDS = _get_env_int('UPDATE_COOLDOWN_SECONDS', 60)
PIPELINE_TIMEOUT_SECONDS = _get_env_int('PIPELINE_TIMEOUT_SECONDS', 10 * 60)
