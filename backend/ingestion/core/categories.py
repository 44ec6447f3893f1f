"""Service categories for connected sources.

Closed set of categories with a GENERAL fallback arm. Every connected service
maps to exactly one category; unknown services are GENERAL.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class Category(str, Enum):
    COMMUNICATION = "communication"
    MEETINGS = "meetings"
    PROJECT_MANAGEMENT = "project_management"
    ENGINEERING = "engineering"
    DOCUMENTATION = "documentation"
    SUPPORT = "support"
    DESIGN = "design"
    DATA = "data"
    GENERAL = "general"


SERVICE_CATEGORIES: dict[str, Category] = {
    "slack": Category.COMMUNICATION,
    "microsoft_teams": Category.COMMUNICATION,
    "discord": Category.COMMUNICATION,
    "zoom": Category.MEETINGS,
    "google_calendar": Category.MEETINGS,
    "google_meet": Category.MEETINGS,
    "jira": Category.PROJECT_MANAGEMENT,
    "asana": Category.PROJECT_MANAGEMENT,
    "trello": Category.PROJECT_MANAGEMENT,
    "linear": Category.PROJECT_MANAGEMENT,
    "monday": Category.PROJECT_MANAGEMENT,
    "clickup": Category.PROJECT_MANAGEMENT,
    "basecamp": Category.PROJECT_MANAGEMENT,
    "microsoft_planner": Category.PROJECT_MANAGEMENT,
    "github": Category.ENGINEERING,
    "gitlab": Category.ENGINEERING,
    "bitbucket": Category.ENGINEERING,
    "notion": Category.DOCUMENTATION,
    "confluence": Category.DOCUMENTATION,
    "zendesk": Category.SUPPORT,
    "intercom": Category.SUPPORT,
    "freshdesk": Category.SUPPORT,
    "servicenow": Category.SUPPORT,
    "figma": Category.DESIGN,
    "miro": Category.DESIGN,
    "airtable": Category.DATA,
    "smartsheet": Category.DATA,
}


def category_for_service(service_name: Optional[str]) -> Category:
    if not service_name:
        return Category.GENERAL
    return SERVICE_CATEGORIES.get(service_name.strip().lower(), Category.GENERAL)


def parse_category(value: object) -> Category:
    """Coerce a tag into a Category; anything unrecognised is GENERAL."""
    if isinstance(value, Category):
        return value
    try:
        return Category(str(value).strip().lower())
    except ValueError:
        return Category.GENERAL
