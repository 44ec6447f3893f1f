"""Recalibration explanations.

The deterministic explanation is always built. An optional provider may
replace it with generated text, but only within a hard timeout: on timeout,
error or empty output the deterministic text is used and the run continues.
"""

from __future__ import annotations

import abc
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Optional

from derive.core.maturity import MaturityTier, allows_forward_looking


logger = logging.getLogger(__name__)

MAX_EXPLANATION_CHARS = 600


@dataclass(frozen=True)
class ExplanationContext:
    source_name: str
    metrics_count: int
    variance: float
    confidence: float
    tier: MaturityTier
    confidence_reasons: list[str] = field(default_factory=list)
    weight_changes: dict[str, dict[str, Any]] = field(default_factory=dict)
    adjustment_reason: str = ""
    uniform_fallback: bool = False


@dataclass(frozen=True)
class Explanation:
    text: str
    origin: str  # "provider" | "deterministic"


class ExplanationProvider(abc.ABC):
    """Pluggable text-generation strategy."""

    name: str = "provider"

    @abc.abstractmethod
    def explain(self, context: ExplanationContext) -> Optional[str]:
        """Return explanation text, or None to defer to the deterministic text."""


class NoOpExplanationProvider(ExplanationProvider):
    name = "none"

    def explain(self, context: ExplanationContext) -> Optional[str]:
        return None


def _largest_shifts(weight_changes: dict[str, dict[str, Any]], limit: int = 2) -> list[tuple[str, float]]:
    shifts: list[tuple[str, float]] = []
    for name, change in weight_changes.items():
        old = change.get("old")
        new = change.get("new")
        if old is None or new is None:
            continue
        delta = float(new) - float(old)
        if abs(delta) >= 0.0005:
            shifts.append((name, delta))
    shifts.sort(key=lambda s: (-abs(s[1]), s[0]))
    return shifts[:limit]


def deterministic_explanation(ctx: ExplanationContext) -> str:
    parts = [
        f"{ctx.source_name}: recalibrated {ctx.metrics_count} metric{'s' if ctx.metrics_count != 1 else ''} "
        f"with variance signal {ctx.variance:.2f} and confidence {ctx.confidence:.2f}."
    ]
    if ctx.confidence_reasons:
        parts.append("Confidence reflects: " + "; ".join(ctx.confidence_reasons[:2]) + ".")
    if ctx.uniform_fallback:
        parts.append(f"Weights were reset to uniform ({ctx.adjustment_reason}).")
    else:
        shifts = _largest_shifts(ctx.weight_changes)
        if shifts:
            parts.append(
                "Largest weight shifts: "
                + ", ".join(f"{name} {delta:+.3f}" for name, delta in shifts)
                + "."
            )
        else:
            parts.append("Weights are unchanged.")

    if allows_forward_looking(ctx.tier):
        parts.append("Signals are stable enough that upcoming scores are expected to stay within the current range.")
    elif ctx.tier is MaturityTier.OBSERVE:
        parts.append("The system is still observing this source.")
    return " ".join(parts)


_POOL_LOCK = threading.Lock()
_POOL: Optional[ThreadPoolExecutor] = None


def _explain_pool() -> ThreadPoolExecutor:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            _POOL = ThreadPoolExecutor(max_workers=4, thread_name_prefix="fusion-explain")
        return _POOL


def explain(
    ctx: ExplanationContext,
    provider: Optional[ExplanationProvider] = None,
    *,
    timeout_seconds: float = 3.0,
) -> Explanation:
    """Provider text when it arrives in time, the deterministic text otherwise."""
    fallback = Explanation(text=deterministic_explanation(ctx), origin="deterministic")
    if provider is None or isinstance(provider, NoOpExplanationProvider):
        return fallback

    future: Future = _explain_pool().submit(provider.explain, ctx)
    try:
        text = future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        logger.warning("explanation_fallback provider=%s reason=timeout after %.1fs", provider.name, timeout_seconds)
        return fallback
    except Exception as ex:  # noqa: BLE001
        logger.warning("explanation_fallback provider=%s reason=%s", provider.name, type(ex).__name__)
        return fallback

    if not text or not str(text).strip():
        return fallback
    return Explanation(text=str(text).strip()[:MAX_EXPLANATION_CHARS], origin="provider")
