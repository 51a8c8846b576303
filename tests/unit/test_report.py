from __future__ import annotations

from datetime import datetime

import pytest

from issue_metrics.errors import MissingAggregate
from issue_metrics.metrics import MetricsAggregate, merge
from issue_metrics.records import map_row
from issue_metrics.report import build_report, classify_trend, finalize, mean, rate
from issue_metrics.schemas import STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING, SourceRef


def _bug(key: str, status: str, *, priority: str = "High", created: str, resolved: str = ""):
    return map_row(
        {
            "Issue key": key,
            "Issue Type": "Bug",
            "Status": status,
            "Priority": priority,
            "Assignee": "",
            "Created": created,
            "Resolved": resolved,
        }
    )


def test_mean_and_rate_are_zero_safe() -> None:
    assert mean([]) == 0.0
    assert mean([1.0, 2.0, 4.0]) == 2.3
    assert rate(3, 0) == 0
    assert rate(1, 3) == 33
    assert rate(2, 3) == 67
    assert rate(1, 8) == 13
    assert rate(3, 8) == 38
    assert rate(1, 200) == 1


@pytest.mark.parametrize(
    "created, closed, trend",
    [(1, 3, "improving"), (4, 1, "degrading"), (2, 2, "stable"), (0, 0, "stable")],
)
def test_classify_trend(created: int, closed: int, trend: str) -> None:
    assert classify_trend(created, closed) == trend


def test_build_report_on_empty_aggregate(fixed_now: datetime) -> None:
    report = build_report(MetricsAggregate(), now=fixed_now)

    assert report.total_issues == 0
    assert report.unassigned_rate == 0
    assert report.defects.avg_age_days == 0.0
    assert report.defects.avg_resolution_days == 0.0
    assert report.defects.open_rate == 0
    assert report.epics.avg_cycle_time_days == 0.0
    assert report.stories.throughput_per_week == 0.0
    assert report.spikes.avg_duration_days == 0.0
    assert report.escalations.avg_resolution_days == 0.0
    assert report.this_month.trend == "stable"
    assert report.top_open_defects == []


def test_build_report_derives_rates_and_trims_lists(monkeypatch, fixed_now: datetime) -> None:
    import issue_metrics.report as report_module

    monkeypatch.setattr(report_module.settings, "top_open_defects_size", 2)
    batch = [
        _bug("SHOP-1", "Open", created="2026-10-01 09:00"),
        _bug("SHOP-2", "Open", priority="Highest", created="2026-10-05 09:00"),
        _bug("SHOP-3", "In Progress", created="2026-10-10 09:00"),
        _bug("SHOP-4", "Done", created="2026-10-01 09:00", resolved="2026-10-03 09:00"),
    ]
    aggregate = merge(None, batch, now=fixed_now)

    report = build_report(aggregate, now=fixed_now)

    assert report.total_issues == 4
    assert report.unassigned == 4
    assert report.unassigned_rate == 100
    assert report.defects.open == 3
    assert report.defects.open_rate == 75
    assert report.defects.avg_resolution_days == 2.0
    assert report.defects.created_this_month == 4
    assert report.defects.closed_this_month == 1
    assert report.defects.trend == "degrading"
    assert [item.issue_key for item in report.top_open_defects] == ["SHOP-2", "SHOP-1"]
    assert len(aggregate.top_open_defects) == 3


def test_finalize_completes_job_with_report(job_store, fixed_now: datetime) -> None:
    job = job_store.create(SourceRef(container="exports", key="jira.csv"), window_size=10)
    job_store.mark_processing(job.job_id)
    aggregate = merge(
        None, [_bug("SHOP-1", "Open", created="2026-10-01 09:00")], now=fixed_now
    )

    report = finalize(
        job.job_id, aggregate.model_dump(mode="json"), job_store=job_store, now=fixed_now
    )

    stored = job_store.get(job.job_id)
    assert stored.status == STATUS_COMPLETED
    assert stored.total_records == 1
    assert stored.report == report.model_dump(mode="json")
    assert stored.report["defects"]["open"] == 1


def test_finalize_without_aggregate_marks_job_failed(job_store) -> None:
    job = job_store.create(SourceRef(container="exports", key="jira.csv"))
    job_store.mark_processing(job.job_id)

    with pytest.raises(MissingAggregate):
        finalize(job.job_id, None, job_store=job_store)

    stored = job_store.get(job.job_id)
    assert stored.status == STATUS_FAILED
    assert "aggregate" in stored.error_detail
    assert stored.report is None


def test_finalize_rejects_malformed_aggregate(job_store) -> None:
    job = job_store.create(SourceRef(container="exports", key="jira.csv"))
    job_store.mark_processing(job.job_id)
    assert job_store.get(job.job_id).status == STATUS_PROCESSING

    with pytest.raises(MissingAggregate, match="malformed"):
        finalize(job.job_id, {"total_processed": "many"}, job_store=job_store)

    assert job_store.get(job.job_id).status == STATUS_FAILED
