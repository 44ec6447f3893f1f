"""Ingestion core primitives.

Signal ingestion for connected sources:
- Category extraction of raw counters from a service payload
- Normalization into four canonical 0-100 dimensions
- Append-only metric capture
"""

from ingestion.core.categories import Category, category_for_service, parse_category
from ingestion.core.extractor import RawCounters, extract_counters
from ingestion.core.normalizer import (
    DIMENSIONS,
    DimensionScores,
    backlog_responsiveness,
    completion_ratio,
    compute_dimensions,
    normalize,
)

__all__ = [
    "Category",
    "category_for_service",
    "parse_category",
    "RawCounters",
    "extract_counters",
    "DIMENSIONS",
    "DimensionScores",
    "backlog_responsiveness",
    "completion_ratio",
    "compute_dimensions",
    "normalize",
]
