"""Category metric extraction.

Maps one raw event payload from a connected service onto the flat set of raw
counters its category understands. Services name the same thing differently
(Jira issues, Trello cards, Basecamp todos), so every counter lists the aliases
it accepts, first non-zero alias wins.

Nothing here is fatal: absent, null or non-numeric fields read as zero.
"""

from __future__ import annotations

from typing import Any, Mapping

from ingestion.core.categories import Category, parse_category
from ingestion.core.errors import ExtractError


RawCounters = dict[str, float]


# counter name -> accepted payload fields, in priority order
_COUNTER_ALIASES: dict[Category, dict[str, tuple[str, ...]]] = {
    Category.COMMUNICATION: {
        "message_volume": ("message_volume", "message_count", "chat_count"),
        "channel_count": ("channel_count",),
        "active_channels": ("active_channels",),
        "member_count": ("member_count",),
        "guild_count": ("guild_count",),
        "meeting_count": ("meeting_count",),
    },
    Category.MEETINGS: {
        "meeting_count": ("meeting_count",),
        "total_participants": ("total_participants", "attendee_count"),
        "total_duration": ("total_duration", "total_duration_minutes"),
        "event_count": ("event_count",),
        "upcoming_meetings": ("upcoming_meetings",),
        "past_meetings": ("past_meetings",),
    },
    Category.PROJECT_MANAGEMENT: {
        "task_count": ("task_count", "issue_count", "item_count", "card_count", "todo_count"),
        "completed_tasks": ("completed_tasks", "done_issues", "closed_cards", "completed_todos"),
        "open_tasks": ("open_tasks", "open_issues", "open_cards", "incomplete_tasks"),
        "in_progress_tasks": ("in_progress_tasks", "in_progress_issues"),
        "project_count": ("project_count", "board_count", "space_count", "plan_count", "todolist_count"),
        "backlog_issues": ("backlog_issues",),
    },
    Category.ENGINEERING: {
        "repo_count": ("repo_count", "project_count"),
        "open_issues": ("open_issues",),
        "open_pull_requests": ("open_pull_requests", "open_merge_requests"),
    },
    Category.DOCUMENTATION: {
        "page_count": ("page_count",),
        "space_count": ("space_count",),
        "database_count": ("database_count",),
    },
    Category.SUPPORT: {
        "ticket_count": ("ticket_count", "conversation_count", "incident_count"),
        "open_tickets": ("open_tickets", "open_conversations", "new_incidents"),
        "pending_tickets": ("pending_tickets", "snoozed_conversations", "in_progress_incidents"),
        "resolved_tickets": ("resolved_tickets", "closed_conversations", "resolved_incidents", "solved_tickets"),
    },
    Category.DESIGN: {
        "file_count": ("file_count",),
        "board_count": ("board_count",),
        "project_count": ("project_count",),
        "team_count": ("team_count",),
    },
    Category.DATA: {
        "record_count": ("record_count", "row_count"),
        "base_count": ("base_count", "workspace_count", "sheet_count"),
        "table_count": ("table_count", "sheet_count"),
    },
}


def _num(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        v = float(value)
    elif isinstance(value, str):
        try:
            v = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if v != v or v < 0:  # NaN or negative
        return 0.0
    return v


def _first_positive(payload: Mapping[str, Any], keys: tuple[str, ...]) -> float:
    for k in keys:
        v = _num(payload.get(k))
        if v > 0:
            return v
    return 0.0


def _event_count(payload: Mapping[str, Any]) -> float:
    explicit = _first_positive(payload, ("event_count", "events_count"))
    if explicit > 0:
        return explicit
    events = payload.get("events")
    if isinstance(events, list):
        return float(len(events))
    return 0.0


def extract_counters(category: Category | str, payload: Mapping[str, Any] | None) -> RawCounters:
    """Return the raw counters for `category` read from `payload`.

    GENERAL (and any unknown tag) yields a single `event_count` signal.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ExtractError(f"payload must be a mapping (got {type(payload).__name__})")

    cat = parse_category(category)
    aliases = _COUNTER_ALIASES.get(cat)
    if aliases is None:
        return {"event_count": _event_count(payload)}
    return {name: _first_positive(payload, keys) for name, keys in aliases.items()}
