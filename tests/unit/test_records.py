from __future__ import annotations

from datetime import datetime, timezone

import pytest

from issue_metrics.records import UNASSIGNED, map_row, parse_timestamp


def _raw(**overrides: str) -> dict:
    row = {
        "Summary": "Checkout fails",
        "Issue key": "SHOP-12",
        "Issue id": "10012",
        "Issue Type": "Bug",
        "Status": "Open",
        "Priority": "High",
        "Assignee": "dana",
        "Created": "2026-10-03 10:15",
        "Updated": "2026-10-04 08:00",
        "Resolved": "",
        "Project key": "SHOP",
        "Project name": "Storefront",
    }
    row.update(overrides)
    return row


def test_map_row_recognized_fields() -> None:
    record = map_row(_raw())

    assert record.issue_key == "SHOP-12"
    assert record.issue_id == "10012"
    assert record.issue_type == "Bug"
    assert record.status == "Open"
    assert record.priority == "High"
    assert record.assignee == "dana"
    assert record.project_key == "SHOP"
    assert record.project_name == "Storefront"
    assert record.summary == "Checkout fails"
    assert record.resolved is None
    assert record.extra == {}


def test_map_row_defaults_blank_assignee() -> None:
    record = map_row(_raw(Assignee=""))

    assert record.assignee == UNASSIGNED
    assert record.is_unassigned


def test_map_row_passes_through_unrecognized_columns() -> None:
    record = map_row(_raw(**{"Story Points": "5", "Custom field (Team)": "Payments"}))

    assert record.extra == {"Story Points": "5", "Custom field (Team)": "Payments"}
    assert record.field_value("story points") == "5"
    assert record.field_value("Missing", "custom field (team)") == "Payments"
    assert record.to_document()["extra"] == {
        "Story Points": "5",
        "Custom field (Team)": "Payments",
    }


def test_map_row_missing_columns_become_empty_strings() -> None:
    record = map_row({"Issue key": "ONLY-1"})

    assert record.issue_key == "ONLY-1"
    assert record.status == ""
    assert record.created == ""
    assert record.assignee == UNASSIGNED


def test_structured_record_is_immutable() -> None:
    record = map_row(_raw())

    with pytest.raises(AttributeError):
        record.status = "Done"  # type: ignore[misc]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2026-10-03T10:15:00Z", datetime(2026, 10, 3, 10, 15, tzinfo=timezone.utc)),
        ("2026-10-03 10:15", datetime(2026, 10, 3, 10, 15, tzinfo=timezone.utc)),
        ("03/Oct/26 10:15 AM", datetime(2026, 10, 3, 10, 15, tzinfo=timezone.utc)),
        ("03/Oct/26 2:05 PM", datetime(2026, 10, 3, 14, 5, tzinfo=timezone.utc)),
        ("10/03/2026", datetime(2026, 10, 3, tzinfo=timezone.utc)),
    ],
)
def test_parse_timestamp_formats(raw: str, expected: datetime) -> None:
    assert parse_timestamp(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", None, "not a date"])
def test_parse_timestamp_returns_none_for_unparseable(raw) -> None:
    assert parse_timestamp(raw) is None
