"""Metric normalization into the four canonical 0-100 dimensions.

Dimensions:
- activity_volume
- participation_level
- responsiveness
- throughput

Band-normalized dimensions use per-category (min, max) bands. Task-like
categories derive throughput and responsiveness from ratios instead; a ratio
over a zero total reads as 50 (neutral), never 0.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from ingestion.core.categories import Category, parse_category
from ingestion.core.errors import NormalizeError


NEUTRAL = 50.0

DIMENSIONS = ("activity_volume", "participation_level", "responsiveness", "throughput")

# Configuration (Locked): (min, max) bands per category and dimension.
DIMENSION_BANDS: dict[Category, dict[str, tuple[float, float]]] = {
    Category.COMMUNICATION: {"activity_volume": (0, 1000), "participation_level": (0, 50)},
    Category.MEETINGS: {"activity_volume": (0, 50), "participation_level": (0, 100), "throughput": (0, 2000)},
    Category.PROJECT_MANAGEMENT: {"activity_volume": (0, 500), "participation_level": (0, 20)},
    Category.ENGINEERING: {"activity_volume": (0, 50), "participation_level": (0, 100)},
    Category.DOCUMENTATION: {"activity_volume": (0, 500), "participation_level": (0, 20)},
    Category.SUPPORT: {"activity_volume": (0, 500)},
    Category.DESIGN: {"activity_volume": (0, 100), "participation_level": (0, 20)},
    Category.DATA: {"activity_volume": (0, 10000), "participation_level": (0, 50)},
    Category.GENERAL: {"activity_volume": (0, 100)},
}


@dataclass(frozen=True)
class DimensionScores:
    activity_volume: float = 0.0
    participation_level: float = 0.0
    responsiveness: float = NEUTRAL
    throughput: float = NEUTRAL
    signals_used: list[str] = field(default_factory=list)
    # Counter (or done/total, open/total ratio) each dimension was derived from.
    raw_inputs: dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> dict[str, float]:
        return {d: float(getattr(self, d)) for d in DIMENSIONS}

    def raw_value(self, dimension: str) -> float:
        """Raw input behind `dimension`; a neutral constant has none and reads as itself."""
        if dimension in self.raw_inputs:
            return float(self.raw_inputs[dimension])
        return float(getattr(self, dimension))


def normalize(value: float, min_value: float, max_value: float) -> float:
    """Rescale `value` from [min_value, max_value] onto [0, 100], clamped.

    A degenerate band (min == max) returns the midpoint 50.
    """
    if max_value == min_value:
        return NEUTRAL
    if min_value > max_value:
        raise NormalizeError(f"invalid band: min {min_value} > max {max_value}")
    scaled = ((value - min_value) / (max_value - min_value)) * 100.0
    return max(0.0, min(100.0, scaled))


def completion_ratio(done: float, total: float) -> float:
    """done/total*100, clamped; 50 when total is zero."""
    if total <= 0:
        return NEUTRAL
    return max(0.0, min(100.0, (done / total) * 100.0))


def backlog_responsiveness(open_items: float, total: float) -> float:
    """100 - open/total*100, clamped; 50 when total is zero."""
    if total <= 0:
        return NEUTRAL
    return max(0.0, min(100.0, 100.0 - (open_items / total) * 100.0))


def _ratio(part: float, total: float) -> float:
    return part / total if total > 0 else 0.0


def _band(category: Category, dimension: str, value: float) -> float:
    lo, hi = DIMENSION_BANDS[category][dimension]
    return normalize(value, lo, hi)


def compute_dimensions(category: Category | str, counters: Mapping[str, float]) -> DimensionScores:
    """Project raw counters for `category` onto the four canonical dimensions."""
    cat = parse_category(category)
    c = lambda name: float(counters.get(name, 0.0) or 0.0)  # noqa: E731

    if cat is Category.COMMUNICATION:
        volume = c("message_volume")
        channels = c("active_channels") or c("channel_count")
        activity = _band(cat, "activity_volume", volume)
        return DimensionScores(
            activity_volume=activity,
            participation_level=_band(cat, "participation_level", channels),
            responsiveness=NEUTRAL + activity / 2.0,
            throughput=activity,
            signals_used=["message_volume", "channel_activity", "member_count"],
            raw_inputs={
                "activity_volume": volume,
                "participation_level": channels,
                "responsiveness": volume,
                "throughput": volume,
            },
        )

    if cat is Category.MEETINGS:
        return DimensionScores(
            activity_volume=_band(cat, "activity_volume", c("meeting_count")),
            participation_level=_band(cat, "participation_level", c("total_participants")),
            responsiveness=NEUTRAL,
            throughput=_band(cat, "throughput", c("total_duration")),
            signals_used=["meeting_count", "duration", "participants"],
            raw_inputs={
                "activity_volume": c("meeting_count"),
                "participation_level": c("total_participants"),
                "throughput": c("total_duration"),
            },
        )

    if cat is Category.PROJECT_MANAGEMENT:
        total = c("task_count")
        return DimensionScores(
            activity_volume=_band(cat, "activity_volume", total),
            participation_level=_band(cat, "participation_level", c("project_count")),
            responsiveness=backlog_responsiveness(c("open_tasks"), total),
            throughput=completion_ratio(c("completed_tasks"), total),
            signals_used=["task_count", "completion_rate", "backlog_size"],
            raw_inputs={
                "activity_volume": total,
                "participation_level": c("project_count"),
                "responsiveness": _ratio(c("open_tasks"), total),
                "throughput": _ratio(c("completed_tasks"), total),
            },
        )

    if cat is Category.ENGINEERING:
        open_work = c("open_pull_requests") + c("open_issues")
        return DimensionScores(
            activity_volume=_band(cat, "activity_volume", c("repo_count")),
            participation_level=_band(cat, "participation_level", open_work),
            signals_used=["repo_count", "open_prs", "open_issues"],
            raw_inputs={"activity_volume": c("repo_count"), "participation_level": open_work},
        )

    if cat is Category.DOCUMENTATION:
        spaces = c("space_count") or c("database_count")
        return DimensionScores(
            activity_volume=_band(cat, "activity_volume", c("page_count")),
            participation_level=_band(cat, "participation_level", spaces),
            signals_used=["page_count", "space_count", "database_count"],
            raw_inputs={"activity_volume": c("page_count"), "participation_level": spaces},
        )

    if cat is Category.SUPPORT:
        total = c("ticket_count")
        return DimensionScores(
            activity_volume=_band(cat, "activity_volume", total),
            participation_level=NEUTRAL,
            responsiveness=backlog_responsiveness(c("open_tickets"), total),
            throughput=completion_ratio(c("resolved_tickets"), total),
            signals_used=["ticket_volume", "resolution_rate", "backlog_size"],
            raw_inputs={
                "activity_volume": total,
                "responsiveness": _ratio(c("open_tickets"), total),
                "throughput": _ratio(c("resolved_tickets"), total),
            },
        )

    if cat is Category.DESIGN:
        files = c("file_count") or c("board_count")
        projects = c("project_count") or c("team_count")
        return DimensionScores(
            activity_volume=_band(cat, "activity_volume", files),
            participation_level=_band(cat, "participation_level", projects),
            signals_used=["file_count", "board_count", "project_count"],
            raw_inputs={"activity_volume": files, "participation_level": projects},
        )

    if cat is Category.DATA:
        return DimensionScores(
            activity_volume=_band(cat, "activity_volume", c("record_count")),
            participation_level=_band(cat, "participation_level", c("base_count")),
            signals_used=["record_count", "table_count", "base_count"],
            raw_inputs={"activity_volume": c("record_count"), "participation_level": c("base_count")},
        )

    return DimensionScores(
        activity_volume=_band(Category.GENERAL, "activity_volume", c("event_count")),
        signals_used=["event_count"],
        raw_inputs={"activity_volume": c("event_count")},
    )
