"""Pass ingestion: capture directories to database rows.

Walks the capture root, classifies every pass directory, resolves the pass
metadata (satellite, downlink, acquisition time, raw capture file) and
stores the pass together with its images.

Modes:
    - update: only new directories that have stopped changing
    - repopulate: clear both tables and ingest everything
    - rebuild: drop and recreate the schema, then repopulate

Run from the command line with ``python -m utils.pass_ingest update``.
"""

from __future__ import annotations

import argparse
import os
import re
import sqlite3
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import config
from utils import database
from utils.errors import IngestError
from utils.logging import get_logger, set_level
from utils.pass_formats import DatasetSummary, PassImage, classify_pass_dir

logger = get_logger('skyarchive.ingest')

INGEST_MODES = ('update', 'repopulate', 'rebuild')

# Dataset epochs are seconds; anything past 2100-01-01 is not a real epoch
MAX_EPOCH_SECONDS = 4_102_444_800

RAW_DATA_EXTENSIONS = ('.cadu', '.raw16')
RAW_DATA_PLACEHOLDERS = {'others.cadu'}

FOLDER_TIMESTAMP_RE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})_(\d{2})-(\d{2})')

DOWNLINK_VHF = 'VHF'
DOWNLINK_L_BAND = 'L Band'
DOWNLINK_S_BAND = 'S Band'
DOWNLINK_UNKNOWN = 'Unknown'

# Satellite family -> band, or mode token -> band for families that
# transmit more than one downlink from the same bus. Checked in order.
SATELLITE_DOWNLINKS: dict[str, str | dict[str, str]] = {
    'meteor': {'lrpt': DOWNLINK_VHF, 'hrpt': DOWNLINK_L_BAND},
    'fengyun': DOWNLINK_L_BAND,
    'elektro': DOWNLINK_L_BAND,
    'aws': DOWNLINK_L_BAND,
    'proba': DOWNLINK_S_BAND,
    'uvsq': DOWNLINK_S_BAND,
    'noaa': {'apt': DOWNLINK_VHF, 'hrpt': DOWNLINK_L_BAND},
    'metop': DOWNLINK_L_BAND,
}

# Families whose declared epoch is unreliable; the folder name wins
FOLDER_TIMESTAMP_FAMILIES = ('fengyun', 'proba', 'uvsq')


@dataclass
class AssembledPass:
    """A pass ready to be written to the database."""
    name: str
    satellite: str
    timestamp: int | None
    raw_data_path: str | None
    downlink: str
    images: list[PassImage] = field(default_factory=list)


@dataclass
class IngestResult:
    """Outcome of one ingestion run."""
    mode: str
    added: int = 0
    skipped_existing: int = 0
    skipped_unstable: int = 0
    unrecognized: int = 0
    failed: int = 0
    images: int = 0
    cancelled: bool = False
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            'mode': self.mode,
            'added': self.added,
            'skipped_existing': self.skipped_existing,
            'skipped_unstable': self.skipped_unstable,
            'unrecognized': self.unrecognized,
            'failed': self.failed,
            'images': self.images,
            'cancelled': self.cancelled,
            'duration_seconds': round(self.duration_seconds, 3),
        }


# =============================================================================
# Pass assembly
# =============================================================================

def timestamp_from_folder(folder_name: str) -> int | None:
    """Parse a leading ``YYYY-MM-DD_HH-MM`` (UTC) from a pass folder name."""
    match = FOLDER_TIMESTAMP_RE.match(folder_name)
    if not match:
        return None
    try:
        date = datetime(*(int(g) for g in match.groups()), tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(date.timestamp())


def satellite_family(satellite: str, folder_name: str) -> str | None:
    """Find the downlink family from the satellite name, then the folder name."""
    for source in (satellite.lower(), folder_name.lower()):
        for family in SATELLITE_DOWNLINKS:
            if family in source:
                return family
    return None


def resolve_downlink(family: str | None, folder_name: str) -> str:
    bands = SATELLITE_DOWNLINKS.get(family) if family else None
    if bands is None:
        return DOWNLINK_UNKNOWN
    if isinstance(bands, str):
        return bands

    lowered = folder_name.lower()
    for mode, band in bands.items():
        if mode in lowered:
            return band
    return DOWNLINK_UNKNOWN


def resolve_timestamp(
    family: str | None,
    folder_name: str,
    dataset: DatasetSummary | None,
) -> int | None:
    timestamp = None
    if dataset and 1 <= dataset.timestamp <= MAX_EPOCH_SECONDS:
        timestamp = int(dataset.timestamp)

    if timestamp is None or family in FOLDER_TIMESTAMP_FAMILIES:
        timestamp = timestamp_from_folder(folder_name)
    return timestamp


def find_raw_data_file(pass_dir: Path) -> str | None:
    """Name of the first raw capture file at the top of a pass directory."""
    try:
        with os.scandir(pass_dir) as entries:
            names = sorted(entry.name for entry in entries if entry.is_file())
    except OSError as e:
        logger.debug(f"Could not list {pass_dir} for raw data: {e}")
        return None

    for name in names:
        if name.lower().endswith(RAW_DATA_EXTENSIONS) and name not in RAW_DATA_PLACEHOLDERS:
            return name
    return None


def assemble_pass(
    folder_name: str,
    pass_dir: Path,
    images: list[PassImage],
    dataset: DatasetSummary | None,
) -> AssembledPass:
    """Resolve the final pass fields from what the format extractor found."""
    satellite = dataset.satellite if dataset and dataset.satellite else 'Unknown'
    family = satellite_family(satellite, folder_name)

    return AssembledPass(
        name=folder_name,
        satellite=satellite,
        timestamp=resolve_timestamp(family, folder_name, dataset),
        raw_data_path=find_raw_data_file(pass_dir),
        downlink=resolve_downlink(family, folder_name),
        images=images,
    )


def store_pass(assembled: AssembledPass) -> int:
    """Write the pass and its images in one transaction."""
    return database.store_pass(
        name=assembled.name,
        satellite=assembled.satellite,
        timestamp=assembled.timestamp,
        raw_data_path=assembled.raw_data_path,
        downlink=assembled.downlink,
        images=[img.to_row() for img in assembled.images],
    )


# =============================================================================
# Driver
# =============================================================================

def is_directory_stable(path: Path, min_age_seconds: float, now: float | None = None) -> bool:
    """A directory is stable once it has not been modified for ``min_age_seconds``."""
    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        logger.info(f"Directory does not exist yet: {path}")
        return False
    except OSError as e:
        logger.warning(f"Failed to stat directory {path}: {e}")
        return False

    if now is None:
        now = time.time()
    return (now - mtime) > min_age_seconds


def list_pass_dirs(capture_root: Path) -> list[str]:
    try:
        with os.scandir(capture_root) as entries:
            return sorted(entry.name for entry in entries if entry.is_dir())
    except OSError as e:
        raise IngestError(f"Cannot read capture root {capture_root}: {e}") from e


def run_ingest(
    mode: str = 'update',
    capture_root: str | Path | None = None,
    stable_age_seconds: float | None = None,
    cancel_event: threading.Event | None = None,
) -> IngestResult:
    """Ingest pass directories from the capture root.

    Args:
        mode: One of 'update', 'repopulate' or 'rebuild'
        capture_root: Directory holding one folder per pass
            (default: config.CAPTURE_ROOT)
        stable_age_seconds: Minimum directory age in update mode
            (default: config.INGEST_STABLE_AGE_SECONDS)
        cancel_event: Checked between directories; when set the run stops

    Returns:
        IngestResult with per-run counts.

    Raises:
        ValueError: on an unknown mode
        IngestError: if the capture root cannot be listed
        sqlite3.Error: if the store itself fails
    """
    if mode not in INGEST_MODES:
        raise ValueError(f"Unknown ingest mode: {mode}")

    root = Path(capture_root or config.CAPTURE_ROOT)
    if stable_age_seconds is None:
        stable_age_seconds = config.INGEST_STABLE_AGE_SECONDS

    result = IngestResult(mode=mode)
    start = time.monotonic()

    pass_dirs = list_pass_dirs(root)

    if mode == 'rebuild':
        logger.info("Rebuilding database schema...")
        database.drop_tables()
    elif mode == 'repopulate':
        logger.info("Repopulating...")
        database.clear_tables()
    else:
        logger.info("Updating...")

    for name in pass_dirs:
        if cancel_event is not None and cancel_event.is_set():
            logger.warning(f"Ingestion cancelled after {result.added} passes")
            result.cancelled = True
            break

        pass_dir = root / name

        if mode == 'update':
            if database.pass_exists(name):
                result.skipped_existing += 1
                continue
            if not is_directory_stable(pass_dir, stable_age_seconds):
                logger.info(f"{name} may be updating at this time; skipping...")
                result.skipped_unstable += 1
                continue

        pass_format = classify_pass_dir(name)
        if pass_format is None:
            logger.info(f"Skipping possible pass: {name} due to not being set up.")
            result.unrecognized += 1
            continue

        try:
            images, dataset = pass_format.extract(pass_dir)
        except OSError as e:
            logger.error(f"Error processing {name}: {e}")
            result.failed += 1
            continue

        assembled = assemble_pass(name, pass_dir, images, dataset)
        try:
            store_pass(assembled)
        except sqlite3.Error as e:
            logger.error(f"Error inserting pass {name}: {e}")
            result.failed += 1
            continue

        logger.debug(
            f"Stored {name}: {assembled.satellite} ({assembled.downlink}) "
            f"with {len(images)} images via {pass_format.key}"
        )
        result.added += 1
        result.images += len(images)

    result.duration_seconds = time.monotonic() - start

    if mode == 'update':
        logger.info(
            f"Database has been updated. Added {result.added} passes "
            f"in {result.duration_seconds:.2f}s"
        )
    else:
        logger.info(
            f"Database population complete. Passes found: {result.added} "
            f"in {result.duration_seconds:.2f}s"
        )
    return result


def main() -> int:
    """Command line entry point for ingestion runs."""
    parser = argparse.ArgumentParser(
        description='Ingest SatDump capture directories into the image database',
    )
    parser.add_argument(
        'mode',
        choices=INGEST_MODES,
        help='update: new stable passes only; repopulate: clear and reload; '
             'rebuild: recreate the schema and reload',
    )
    parser.add_argument(
        '--capture-root',
        default=config.CAPTURE_ROOT,
        help=f'Directory containing pass folders (default: {config.CAPTURE_ROOT})',
    )
    parser.add_argument(
        '--thumbnails',
        action='store_true',
        help='Generate pending thumbnails after ingestion',
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging',
    )
    args = parser.parse_args()

    if args.verbose:
        set_level('DEBUG')

    try:
        database.init_db()
        run_ingest(args.mode, capture_root=args.capture_root)
        if args.thumbnails:
            from utils.thumbnails import ThumbnailGenerator, ThumbnailSettings

            settings = ThumbnailSettings.from_config(capture_root=args.capture_root)
            ThumbnailGenerator(settings).run()
    except (IngestError, sqlite3.Error) as e:
        logger.error(f"Ingestion failed: {e}")
        return 1
    finally:
        database.close_db()
    return 0


if __name__ == '__main__':
    sys.exit(main())
