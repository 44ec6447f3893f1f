"""Versioned fusion coefficients.

The calibration model (alpha, beta, gamma), the dimension blend and the
category weight table are configuration, not code. They are loaded from
`derive/rules/fusion_coefficients.yaml` into a frozen object whose `version`
is stamped into every weighting row and audit record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml

from derive.core.errors import CoefficientsLoadError
from ingestion.core.categories import Category
from ingestion.core.normalizer import DIMENSIONS


DEFAULT_PATH = Path(__file__).resolve().parents[1] / "rules" / "fusion_coefficients.yaml"


@dataclass(frozen=True, slots=True)
class FusionCoefficients:
    version: str
    alpha: float
    beta: float
    gamma: float
    dimension_blend: Mapping[str, float] = field(default_factory=dict)
    category_weights: Mapping[Category, float] = field(default_factory=dict)

    def category_weight(self, category: Category) -> float:
        return self.category_weights.get(category, self.category_weights.get(Category.GENERAL, 0.05))

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "alpha": self.alpha,
            "beta": self.beta,
            "gamma": self.gamma,
            "dimension_blend": dict(self.dimension_blend),
            "category_weights": {c.value: w for c, w in self.category_weights.items()},
        }


def _float(raw: Mapping[str, Any], key: str, where: str) -> float:
    if key not in raw:
        raise CoefficientsLoadError(f"{where}.{key} is required")
    try:
        return float(raw[key])
    except (TypeError, ValueError):
        raise CoefficientsLoadError(f"{where}.{key} must be a number (got {raw[key]!r})") from None


def parse_coefficients(raw: Any) -> FusionCoefficients:
    if not isinstance(raw, dict):
        raise CoefficientsLoadError("coefficients yaml must be a mapping")

    version = raw.get("version")
    if version is None or not str(version).strip():
        raise CoefficientsLoadError("coefficients yaml requires a non-empty 'version'")

    cal = raw.get("calibration")
    if not isinstance(cal, dict):
        raise CoefficientsLoadError("'calibration' section must be a mapping")
    alpha = _float(cal, "alpha", "calibration")
    beta = _float(cal, "beta", "calibration")
    gamma = _float(cal, "gamma", "calibration")

    blend_raw = raw.get("dimension_blend")
    if not isinstance(blend_raw, dict):
        raise CoefficientsLoadError("'dimension_blend' section must be a mapping")
    blend = {d: _float(blend_raw, d, "dimension_blend") for d in DIMENSIONS}
    if abs(sum(blend.values()) - 1.0) > 1e-6:
        raise CoefficientsLoadError(f"dimension_blend must sum to 1.0 (got {sum(blend.values()):.4f})")

    cw_raw = raw.get("category_weights")
    if not isinstance(cw_raw, dict):
        raise CoefficientsLoadError("'category_weights' section must be a mapping")
    weights: dict[Category, float] = {}
    for key in cw_raw:
        try:
            cat = Category(str(key))
        except ValueError:
            raise CoefficientsLoadError(f"unknown category in category_weights: {key!r}") from None
        w = _float(cw_raw, key, "category_weights")
        if not 0.0 <= w <= 1.0:
            raise CoefficientsLoadError(f"category_weights.{key} must be within [0, 1]")
        weights[cat] = w
    if Category.GENERAL not in weights:
        raise CoefficientsLoadError("category_weights must define the 'general' fallback")

    return FusionCoefficients(
        version=str(version),
        alpha=alpha,
        beta=beta,
        gamma=gamma,
        dimension_blend=MappingProxyType(blend),
        category_weights=MappingProxyType(weights),
    )


def load_coefficients(path: Optional[Path] = None) -> FusionCoefficients:
    p = path or DEFAULT_PATH
    try:
        raw = yaml.safe_load(Path(p).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as ex:
        raise CoefficientsLoadError(f"cannot read coefficients from {p}: {ex}") from ex
    return parse_coefficients(raw)
