from __future__ import annotations

import pytest

from ingestion.core.categories import Category, category_for_service, parse_category
from ingestion.core.errors import ExtractError, NormalizeError
from ingestion.core.extractor import extract_counters
from ingestion.core.normalizer import (
    NEUTRAL,
    backlog_responsiveness,
    completion_ratio,
    compute_dimensions,
    normalize,
)


def test_service_registry_maps_known_services_and_falls_back_to_general():
    assert category_for_service("Slack") is Category.COMMUNICATION
    assert category_for_service("jira") is Category.PROJECT_MANAGEMENT
    assert category_for_service("github") is Category.ENGINEERING
    assert category_for_service("some_new_tool") is Category.GENERAL
    assert category_for_service(None) is Category.GENERAL
    assert parse_category("not-a-category") is Category.GENERAL


def test_project_management_aliases_map_to_canonical_counters():
    counters = extract_counters(Category.PROJECT_MANAGEMENT, {"issue_count": 40, "done_issues": 30, "open_issues": 10})
    assert counters["task_count"] == 40
    assert counters["completed_tasks"] == 30
    assert counters["open_tasks"] == 10
    assert counters["project_count"] == 0


def test_first_positive_alias_wins():
    counters = extract_counters(Category.PROJECT_MANAGEMENT, {"task_count": 0, "card_count": 12, "item_count": 99})
    assert counters["task_count"] == 99


def test_bad_field_values_read_as_zero():
    counters = extract_counters(
        Category.SUPPORT,
        {"ticket_count": "abc", "open_tickets": -4, "resolved_tickets": True, "pending_tickets": None},
    )
    assert counters == {"ticket_count": 0.0, "open_tickets": 0.0, "pending_tickets": 0.0, "resolved_tickets": 0.0}


def test_numeric_strings_are_accepted():
    counters = extract_counters(Category.COMMUNICATION, {"message_count": " 250 "})
    assert counters["message_volume"] == 250.0


def test_unknown_category_falls_back_to_event_count():
    assert extract_counters("unheard_of", {"events": [1, 2, 3]}) == {"event_count": 3.0}
    assert extract_counters(Category.GENERAL, {"event_count": 7}) == {"event_count": 7.0}
    assert extract_counters(Category.GENERAL, None) == {"event_count": 0.0}


def test_non_mapping_payload_is_rejected():
    with pytest.raises(ExtractError):
        extract_counters(Category.SUPPORT, ["not", "a", "mapping"])  # type: ignore[arg-type]


def test_normalize_bounds_and_degenerate_band():
    assert normalize(5, 5, 5) == 50.0
    assert normalize(25, 0, 100) == 25.0
    assert normalize(150, 0, 100) == 100.0
    assert normalize(-1, 0, 100) == 0.0
    with pytest.raises(NormalizeError):
        normalize(1, 10, 0)


def test_normalize_is_monotone():
    values = [normalize(v, 0, 500) for v in range(-50, 600, 25)]
    assert values == sorted(values)
    assert all(0.0 <= v <= 100.0 for v in values)


def test_ratios_are_neutral_without_total():
    assert completion_ratio(3, 0) == NEUTRAL
    assert backlog_responsiveness(0, 0) == NEUTRAL
    assert completion_ratio(30, 40) == 75.0
    assert backlog_responsiveness(10, 40) == 75.0
    assert backlog_responsiveness(80, 40) == 0.0


def test_project_management_dimensions():
    dims = compute_dimensions(
        Category.PROJECT_MANAGEMENT,
        {"task_count": 40, "completed_tasks": 30, "open_tasks": 10, "project_count": 2},
    )
    assert dims.activity_volume == pytest.approx(8.0)
    assert dims.participation_level == pytest.approx(10.0)
    assert dims.responsiveness == pytest.approx(75.0)
    assert dims.throughput == pytest.approx(75.0)


def test_general_dimensions_default_to_neutral_where_unknown():
    dims = compute_dimensions(Category.GENERAL, {"event_count": 50})
    assert dims.as_dict() == {
        "activity_volume": 50.0,
        "participation_level": 0.0,
        "responsiveness": NEUTRAL,
        "throughput": NEUTRAL,
    }


def test_every_category_yields_dimensions_in_range():
    for cat in Category:
        dims = compute_dimensions(cat, extract_counters(cat, {}))
        assert all(0.0 <= v <= 100.0 for v in dims.as_dict().values()), cat


def test_dimensions_keep_their_raw_inputs():
    dims = compute_dimensions(
        Category.SUPPORT,
        {"ticket_count": 200, "open_tickets": 50, "resolved_tickets": 120},
    )
    assert dims.raw_value("activity_volume") == pytest.approx(200.0)
    assert dims.raw_value("responsiveness") == pytest.approx(0.25)
    assert dims.raw_value("throughput") == pytest.approx(0.6)
    # participation has no counter for support and reads as its neutral value
    assert dims.raw_value("participation_level") == NEUTRAL


def test_ratio_raw_inputs_are_zero_without_total():
    dims = compute_dimensions(Category.PROJECT_MANAGEMENT, {"project_count": 3})
    assert dims.throughput == NEUTRAL
    assert dims.raw_value("throughput") == 0.0
    assert dims.raw_value("participation_level") == 3.0
