"""Derive core primitives for the fusion engine."""

from derive.core.coefficients import FusionCoefficients, load_coefficients
from derive.core.errors import (
    CalibrationError,
    CoefficientsLoadError,
    DeriveError,
    ExplanationError,
    InsufficientDataError,
    PersistenceError,
)
from derive.core.fusion import (
    SourceScore,
    WeightedValue,
    compute_source_score,
    derive_trend,
    entity_score,
    fusion_contribution,
)
from derive.core.maturity import MaturityTier, TierResult, classify_tier
from derive.core.variance import (
    ConfidenceEstimator,
    ConfidenceResult,
    VarianceEstimate,
    estimate_variance,
    variance_signal,
)
from derive.core.weighting import (
    CalibrationResult,
    MetricInput,
    WeightCalibrator,
    WeightResult,
    correlation_penalties,
)

__all__ = [
    "FusionCoefficients",
    "load_coefficients",
    "CalibrationError",
    "CoefficientsLoadError",
    "DeriveError",
    "ExplanationError",
    "InsufficientDataError",
    "PersistenceError",
    "SourceScore",
    "WeightedValue",
    "compute_source_score",
    "derive_trend",
    "entity_score",
    "fusion_contribution",
    "MaturityTier",
    "TierResult",
    "classify_tier",
    "ConfidenceEstimator",
    "ConfidenceResult",
    "VarianceEstimate",
    "estimate_variance",
    "variance_signal",
    "CalibrationResult",
    "MetricInput",
    "WeightCalibrator",
    "WeightResult",
    "correlation_penalties",
]
