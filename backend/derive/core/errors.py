from __future__ import annotations

"""Controlled errors for the recalibration pipeline.

- One failing source must not abort an entity; one failing entity must not
  abort a sweep.
- Errors are caught at the orchestration boundary, written to the audit trail
  and logged; processing continues (partial success is success).
"""


class DeriveError(RuntimeError):
    """Base error for the derive pipeline; should be caught and logged, not propagated."""


class CoefficientsLoadError(DeriveError):
    """Raised when the coefficients YAML cannot be loaded or fails validation."""


class InsufficientDataError(DeriveError):
    """Raised when a source has no metrics to calibrate from."""


class CalibrationError(DeriveError):
    """Raised when weight calibration receives unusable input."""


class PersistenceError(DeriveError):
    """Raised when a DB write fails for a derived artifact."""

    def __init__(self, message: str, *, metrics_count: int = 0) -> None:
        super().__init__(message)
        self.metrics_count = metrics_count


class ExplanationError(DeriveError):
    """Raised by explanation providers; always swallowed by the caller."""
