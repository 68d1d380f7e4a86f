# ingestion/errors.py
from __future__ import annotations


class IngestionError(Exception):
    """Base class for conditions the ingestion pipeline turns into an outcome."""


class MalformedFileError(IngestionError):
    """The upload is not a usable CSV (unparseable, no header row, no data rows)."""


class PersistenceError(IngestionError):
    """A write or read against the trade store failed."""


class ServiceUnavailable(IngestionError):
    """An external dependency could not answer (unconfigured, down, bad reply)."""

    def __init__(self, service: str, detail: str = "") -> None:
        self.service = service
        self.detail = detail
        super().__init__(f"{service} unavailable: {detail}" if detail else f"{service} unavailable")
