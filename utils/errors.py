"""Exceptions raised by the ingestion and thumbnail pipeline."""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class IngestError(PipelineError):
    """The ingestion run could not proceed (e.g. unreadable capture root)."""


class ThumbnailError(PipelineError):
    """A single thumbnail could not be produced."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
