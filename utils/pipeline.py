"""Ingest-then-thumbnail runs triggered from the web API.

Only one run may be in flight at a time, and incremental updates are
rate limited by a cooldown after each successful run. Each run has a
timeout; when it expires the current phase is cancelled cooperatively and
the run is reported as failed. Work completed before that point is kept
and picked up by the next run.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import config
from utils.errors import PipelineError
from utils.logging import get_logger
from utils.pass_ingest import run_ingest
from utils.thumbnails import ThumbnailGenerator, ThumbnailSettings

logger = get_logger('skyarchive.pipeline')

STEP_GATE = 'gate'
STEP_INGEST = 'db-update'
STEP_THUMBNAILS = 'thumbgen'


@dataclass
class PipelineResult:
    """Outcome of a pipeline invocation."""
    updated: bool
    message: str = ''
    step: str = ''
    in_progress: bool = False
    cooldown_sec: int = 0
    started_at: str = ''
    duration_ms: int = 0
    ingest: dict | None = None
    thumbnails: dict | None = None

    def to_dict(self) -> dict:
        result = {
            'updated': self.updated,
            'message': self.message,
        }
        if self.step:
            result['step'] = self.step
        if self.in_progress:
            result['in_progress'] = True
        if self.cooldown_sec:
            result['cooldown_sec'] = self.cooldown_sec
        if self.started_at:
            result['started_at'] = self.started_at
        if self.duration_ms:
            result['duration_ms'] = self.duration_ms
        if self.ingest is not None:
            result['ingest'] = self.ingest
        if self.thumbnails is not None:
            result['thumbnails'] = self.thumbnails
        return result


class PipelineRunner:
    """Serialises pipeline runs and enforces the update cooldown."""

    def __init__(
        self,
        capture_root: str | Path | None = None,
        cooldown_seconds: float | None = None,
        timeout_seconds: float | None = None,
        thumbnail_settings: ThumbnailSettings | None = None,
    ):
        self.capture_root = Path(capture_root or config.CAPTURE_ROOT)
        self.cooldown_seconds = (
            config.UPDATE_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )
        self.timeout_seconds = (
            config.PIPELINE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self.thumbnail_settings = thumbnail_settings
        self._lock = threading.Lock()
        self._in_flight = False
        self._current_mode = ''
        self._last_update: float | None = None
        self._last_result: PipelineResult | None = None

    @property
    def is_running(self) -> bool:
        return self._in_flight

    def run_update(self) -> PipelineResult:
        """Ingest new stable passes, then generate pending thumbnails."""
        return self._run('update')

    def run_repopulate(self, rebuild: bool = False) -> PipelineResult:
        """Reload every pass (optionally recreating the schema), then generate thumbnails."""
        return self._run('rebuild' if rebuild else 'repopulate')

    def _reserve(self, mode: str) -> PipelineResult | None:
        """Claim the run slot, or return the rejection."""
        with self._lock:
            if self._in_flight:
                return PipelineResult(
                    updated=False,
                    message='update already in progress',
                    step=STEP_GATE,
                    in_progress=True,
                )
            if mode == 'update' and self._last_update is not None:
                since = time.monotonic() - self._last_update
                if since < self.cooldown_seconds:
                    return PipelineResult(
                        updated=False,
                        message='cooldown active',
                        step=STEP_GATE,
                        cooldown_sec=int(self.cooldown_seconds - since + 0.5),
                    )
            self._in_flight = True
            self._current_mode = mode
            return None

    def _release(self, mode: str, success: bool, result: PipelineResult) -> None:
        with self._lock:
            self._in_flight = False
            self._current_mode = ''
            self._last_result = result
            if success and mode == 'update':
                self._last_update = time.monotonic()

    def _run(self, mode: str) -> PipelineResult:
        rejected = self._reserve(mode)
        if rejected is not None:
            logger.info(f"Rejected {mode} run: {rejected.message}")
            return rejected

        started_at = datetime.now(timezone.utc).isoformat(timespec='seconds')
        start = time.monotonic()
        cancel_event = threading.Event()
        timer = threading.Timer(self.timeout_seconds, cancel_event.set)
        timer.daemon = True
        timer.start()

        result = PipelineResult(updated=False, started_at=started_at)
        try:
            result = self._execute(mode, cancel_event, result)
        finally:
            timer.cancel()
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self._release(mode, result.updated, result)

        if result.updated:
            logger.info(f"Pipeline {mode} completed in {result.duration_ms}ms")
        else:
            logger.error(f"Pipeline {mode} failed at {result.step}: {result.message}")
        return result

    def _execute(self, mode: str, cancel_event: threading.Event, result: PipelineResult) -> PipelineResult:
        try:
            ingest_result = run_ingest(mode, capture_root=self.capture_root, cancel_event=cancel_event)
        except (PipelineError, sqlite3.Error, OSError) as e:
            result.step = STEP_INGEST
            result.message = f'db-update failed: {e}'
            return result

        result.ingest = ingest_result.to_dict()
        if ingest_result.cancelled:
            result.step = STEP_INGEST
            result.message = 'db-update timed out or canceled'
            return result

        settings = self.thumbnail_settings or ThumbnailSettings.from_config(capture_root=self.capture_root)
        try:
            thumb_result = ThumbnailGenerator(settings).run(cancel_event)
        except (PipelineError, sqlite3.Error, OSError) as e:
            result.step = STEP_THUMBNAILS
            result.message = f'thumbgen failed: {e}'
            return result

        result.thumbnails = thumb_result.to_dict()
        if thumb_result.cancelled:
            result.step = STEP_THUMBNAILS
            result.message = 'thumbgen timed out or canceled'
            return result

        result.updated = True
        result.message = 'update completed'
        return result

    def get_status(self) -> dict:
        with self._lock:
            cooldown_remaining = 0
            if self._last_update is not None:
                remaining = self.cooldown_seconds - (time.monotonic() - self._last_update)
                cooldown_remaining = max(0, int(remaining + 0.5))
            return {
                'running': self._in_flight,
                'mode': self._current_mode,
                'cooldown_sec': cooldown_remaining,
                'last_result': self._last_result.to_dict() if self._last_result else None,
            }


# Global runner instance
_runner: PipelineRunner | None = None
_runner_lock = threading.Lock()


def get_pipeline_runner() -> PipelineRunner:
    """Get or create the global pipeline runner."""
    global _runner
    if _runner is None:
        with _runner_lock:
            if _runner is None:
                _runner = PipelineRunner()
    return _runner
