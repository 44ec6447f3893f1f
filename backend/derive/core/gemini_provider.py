"""Google Gemini explanation provider.

Model configurable via .env (GEMINI_API_KEY, GEMINI_MODEL). Used only as an
enhancement: the caller bounds every call with a timeout and falls back to the
deterministic explanation.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Optional

import google.generativeai as genai

from derive.core.errors import ExplanationError
from derive.core.explain import ExplanationContext, ExplanationProvider
from derive.core.maturity import allows_forward_looking


logger = logging.getLogger(__name__)


class GeminiExplanationProvider(ExplanationProvider):
    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY not found in environment")

        self.model_name = model_name or os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

        genai.configure(api_key=self.api_key)
        self.model = genai.GenerativeModel(self.model_name)

        logger.info("Initialized Gemini explanation provider with model: %s", self.model_name)

    def explain(self, context: ExplanationContext) -> Optional[str]:
        prompt = self._build_prompt(context)
        try:
            response = self.model.generate_content(prompt)
        except Exception as ex:  # noqa: BLE001
            raise ExplanationError(f"Gemini API error: {type(ex).__name__}") from ex

        text = getattr(response, "text", None)
        if not text:
            logger.warning("Gemini returned empty explanation")
            return None
        return text.strip()

    def _build_prompt(self, ctx: ExplanationContext) -> str:
        summary = {
            "source": ctx.source_name,
            "metrics_count": ctx.metrics_count,
            "variance_signal": round(ctx.variance, 4),
            "confidence": round(ctx.confidence, 4),
            "confidence_reasons": ctx.confidence_reasons,
            "weight_changes": ctx.weight_changes,
            "maturity_tier": ctx.tier.value,
            "uniform_fallback": ctx.uniform_fallback,
        }
        tone = (
            "You may include one short forward-looking sentence."
            if allows_forward_looking(ctx.tier)
            else "Describe only what has happened. Do NOT predict or forecast anything."
        )
        return (
            "Explain this signal recalibration to a non-technical operator in at most three sentences.\n"
            f"{tone}\n"
            "Plain text only, no markdown.\n\n"
            f"{json.dumps(summary, ensure_ascii=False, sort_keys=True)}"
        )
