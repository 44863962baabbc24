"""Thumbnail generation for ingested images.

Every image row with ``needsThumb = 1`` gets a fixed-width WebP preview.
Rows are streamed from the database into a bounded job queue served by a
small pool of worker threads; a collector thread drains the outcome queue
while the workers run. Only once every worker has exited are the successful
ids cleared in one transaction, so a row is never marked done before its
file is on disk.

An existing thumbnail is never regenerated: it counts as skipped and the row
is still cleared. Failed rows stay pending and are retried on the next run.
"""

from __future__ import annotations

import os
import queue
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from PIL import Image

import config
from utils.database import count_pending_thumbnails, iter_pending_thumbnails, mark_thumbnails_done
from utils.errors import ThumbnailError
from utils.logging import get_logger
from utils.pass_formats import THUMBNAIL_DIRNAME

logger = get_logger('skyarchive.thumbnails')


THUMBNAIL_FORMAT = 'WEBP'
THUMBNAIL_EXTENSION = '.webp'

PROGRESS_LOG_INTERVAL = 5000

OUTCOME_CREATED = 'created'
OUTCOME_SKIPPED = 'skipped'
OUTCOME_FAILED = 'failed'

_STOP = object()


@dataclass
class ThumbnailSettings:
    capture_root: Path
    thumbnail_dir: str = ''
    width: int = 200
    quality: int = 75
    workers: int = 4
    queue_depth: int = 1000

    @classmethod
    def from_config(cls, **overrides) -> ThumbnailSettings:
        values = {
            'capture_root': Path(config.CAPTURE_ROOT),
            'thumbnail_dir': config.THUMBNAIL_DIR,
            'width': config.THUMBNAIL_WIDTH,
            'quality': config.THUMBNAIL_QUALITY,
            'workers': config.THUMBNAIL_WORKERS,
            'queue_depth': config.THUMBNAIL_QUEUE_DEPTH,
        }
        values.update(overrides)
        values['capture_root'] = Path(values['capture_root'])
        # Non-positive values fall back to the defaults
        for key in ('width', 'quality', 'workers', 'queue_depth'):
            if values[key] <= 0:
                values[key] = cls.__dataclass_fields__[key].default
        return cls(**values)


@dataclass
class ThumbnailResult:
    """Counts for one generation run, owned by the collector thread."""
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    marked: int = 0
    cancelled: bool = False
    duration_seconds: float = 0.0
    done_ids: list[int] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict:
        return {
            'total': self.total,
            'processed': self.processed,
            'skipped': self.skipped,
            'failed': self.failed,
            'marked': self.marked,
            'cancelled': self.cancelled,
            'duration_seconds': round(self.duration_seconds, 3),
        }


def thumbnail_size(width: int, height: int, target_width: int) -> tuple[int, int]:
    """Output size for a source of ``width`` x ``height``, keeping aspect ratio."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid source size {width}x{height}")
    return target_width, max(1, (target_width * height) // width)


def _normalize(rel_path: str) -> PurePosixPath:
    rel = PurePosixPath(rel_path.replace('\\', '/'))
    if rel.is_absolute() or '..' in rel.parts or not rel.name:
        raise ThumbnailError(rel_path, 'path must be relative to the capture root')
    return rel


def thumbnail_path(rel_path: str, capture_root: Path, thumbnail_dir: str = '') -> Path:
    """Where the thumbnail for an image path lives.

    With no thumbnail directory configured the thumbnail sits in a
    ``thumbnails`` folder beside the original; otherwise the capture tree
    is mirrored under the thumbnail directory.
    """
    rel = _normalize(rel_path)
    if not thumbnail_dir.strip():
        return Path(capture_root).joinpath(*rel.parent.parts, THUMBNAIL_DIRNAME, rel.stem + THUMBNAIL_EXTENSION)
    return Path(thumbnail_dir).joinpath(*rel.with_suffix(THUMBNAIL_EXTENSION).parts)


def _has_alpha(img: Image.Image) -> bool:
    return 'A' in img.getbands() or 'transparency' in img.info


def derive_thumbnail(rel_path: str, settings: ThumbnailSettings) -> bool:
    """Create the thumbnail for one image.

    Returns:
        True if a thumbnail was written, False if one already existed.

    Raises:
        ThumbnailError: if the source is missing or cannot be decoded, or
            the thumbnail cannot be written.
    """
    rel = _normalize(rel_path)
    src = settings.capture_root.joinpath(*rel.parts)
    dst = thumbnail_path(rel_path, settings.capture_root, settings.thumbnail_dir)

    if dst.exists():
        return False

    if not src.is_file():
        raise ThumbnailError(rel_path, f"source image does not exist: {src}")

    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ThumbnailError(rel_path, f"failed to create thumbnail directory: {e}") from e

    # Written under a temporary name so an existing thumbnail is always complete
    tmp = dst.with_name(f'.{dst.name}.{threading.get_ident()}.tmp')
    try:
        with Image.open(src) as img:
            size = thumbnail_size(img.width, img.height, settings.width)
            # Let JPEG decode at reduced scale; no-op for other formats
            img.draft(None, size)
            frame = img
            if frame.mode not in ('RGB', 'RGBA'):
                frame = frame.convert('RGBA' if _has_alpha(frame) else 'RGB')
            thumb = frame.resize(size, Image.Resampling.LANCZOS)
            thumb.save(tmp, format=THUMBNAIL_FORMAT, quality=settings.quality)
        os.replace(tmp, dst)
    except (OSError, ValueError) as e:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise ThumbnailError(rel_path, f"processing failed: {e}") from e

    return True


class ThumbnailGenerator:
    """Bounded worker pool that derives every pending thumbnail."""

    def __init__(self, settings: ThumbnailSettings | None = None):
        self.settings = settings or ThumbnailSettings.from_config()

    def run(self, cancel_event: threading.Event | None = None) -> ThumbnailResult:
        """Process every image still flagged as needing a thumbnail.

        Setting ``cancel_event`` stops dispatch; jobs already queued are
        dropped and in-flight images finish. Work done before cancellation
        is still recorded.
        """
        settings = self.settings
        if cancel_event is None:
            cancel_event = threading.Event()

        result = ThumbnailResult()
        start = time.monotonic()

        result.total = count_pending_thumbnails()
        logger.info(
            f"Found {result.total} images to process (workers={settings.workers}, "
            f"width={settings.width}, quality={settings.quality}, "
            f"out={settings.thumbnail_dir or 'side-by-side'})"
        )

        jobs: queue.Queue = queue.Queue(maxsize=settings.queue_depth)
        outcomes: queue.Queue = queue.Queue(maxsize=settings.queue_depth)

        collector = threading.Thread(
            target=self._collect, args=(outcomes, result),
            name='thumbgen-collector', daemon=True,
        )
        workers = [
            threading.Thread(
                target=self._work, args=(jobs, outcomes, cancel_event),
                name=f'thumbgen-{i}', daemon=True,
            )
            for i in range(settings.workers)
        ]
        collector.start()
        for worker in workers:
            worker.start()

        queued = 0
        try:
            with closing(iter_pending_thumbnails()) as rows:
                for job in rows:
                    if not self._dispatch(jobs, job, cancel_event):
                        break
                    queued += 1
                    if queued % PROGRESS_LOG_INTERVAL == 0:
                        logger.info(f"Queued {queued} images...")
        finally:
            for _ in workers:
                jobs.put(_STOP)
            for worker in workers:
                worker.join()
            outcomes.put(_STOP)
            collector.join()

        if cancel_event.is_set():
            result.cancelled = True
            logger.warning(f"Thumbnail generation cancelled after queueing {queued} images")

        result.marked = mark_thumbnails_done(result.done_ids)
        if result.marked:
            logger.info(f"Marked needsThumb=0 for {result.marked} images")

        result.duration_seconds = time.monotonic() - start
        logger.info(
            f"Thumbnail generation completed in {result.duration_seconds:.2f}s: "
            f"{result.processed} processed, {result.skipped} skipped, {result.failed} failed"
        )
        return result

    @staticmethod
    def _dispatch(jobs: queue.Queue, job: tuple[int, str], cancel_event: threading.Event) -> bool:
        """Queue a job, waiting for room unless the run is cancelled."""
        while not cancel_event.is_set():
            try:
                jobs.put(job, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False

    def _work(self, jobs: queue.Queue, outcomes: queue.Queue, cancel_event: threading.Event) -> None:
        while True:
            job = jobs.get()
            if job is _STOP:
                break
            if cancel_event.is_set():
                continue

            image_id, path = job
            try:
                created = derive_thumbnail(path, self.settings)
            except ThumbnailError as e:
                logger.warning(f"[FAIL] {e}")
                outcomes.put((image_id, OUTCOME_FAILED))
                continue
            except Exception as e:
                logger.error(f"[FAIL] {path}: unexpected error: {e}")
                outcomes.put((image_id, OUTCOME_FAILED))
                continue

            if created:
                logger.debug(f"[OK] {path} (created)")
                outcomes.put((image_id, OUTCOME_CREATED))
            else:
                logger.debug(f"[SKIP] {path} (exists)")
                outcomes.put((image_id, OUTCOME_SKIPPED))

    @staticmethod
    def _collect(outcomes: queue.Queue, result: ThumbnailResult) -> None:
        while True:
            item = outcomes.get()
            if item is _STOP:
                break
            image_id, outcome = item
            if outcome == OUTCOME_FAILED:
                result.failed += 1
                continue
            if outcome == OUTCOME_CREATED:
                result.processed += 1
            else:
                result.skipped += 1
            result.done_ids.append(image_id)
