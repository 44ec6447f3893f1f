"""Runtime settings for the fusion jobs (environment driven)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.core.env import env_float, env_int, load_env_if_present


DEFAULT_COEFFICIENTS_PATH = Path(__file__).resolve().parents[2] / "derive" / "rules" / "fusion_coefficients.yaml"


@dataclass(frozen=True, slots=True)
class FusionSettings:
    max_workers: int
    explain_timeout_seconds: float
    explain_provider: str
    gemini_api_key: Optional[str]
    gemini_model: str
    coefficients_path: Path


def load_settings() -> FusionSettings:
    load_env_if_present()

    max_workers = env_int("FUSION_MAX_WORKERS", 4)
    if max_workers < 1:
        raise ValueError("FUSION_MAX_WORKERS must be >= 1")

    timeout = env_float("FUSION_EXPLAIN_TIMEOUT_SECONDS", 3.0)
    if timeout <= 0:
        raise ValueError("FUSION_EXPLAIN_TIMEOUT_SECONDS must be > 0")

    provider = (os.environ.get("FUSION_EXPLAIN_PROVIDER") or "none").strip().lower()
    if provider not in ("none", "gemini"):
        raise ValueError(f"FUSION_EXPLAIN_PROVIDER must be 'none' or 'gemini' (got {provider!r})")

    coeff = os.environ.get("FUSION_COEFFICIENTS_YAML")
    return FusionSettings(
        max_workers=max_workers,
        explain_timeout_seconds=timeout,
        explain_provider=provider,
        gemini_api_key=os.environ.get("GEMINI_API_KEY") or None,
        gemini_model=os.environ.get("GEMINI_MODEL", "gemini-1.5-flash"),
        coefficients_path=Path(coeff) if coeff else DEFAULT_COEFFICIENTS_PATH,
    )
