from __future__ import annotations

"""Controlled ingestion errors for the signal ingest job.

- One malformed payload must never abort the ingest run.
- These errors are *signals* for logging and control flow, caught at the job
  boundary and counted.
"""


class IngestionError(RuntimeError):
    """Base error for ingestion; should be caught and logged, not propagated."""


class ExtractError(IngestionError):
    """Raised when a payload is not a mapping at all (fields themselves never fail)."""


class NormalizeError(IngestionError):
    """Raised when a band definition is unusable (min > max)."""


class UnknownSourceError(IngestionError):
    """Raised when a payload references a source that is not connected."""


class InsertError(IngestionError):
    """Raised when metric/score/history persistence fails."""
