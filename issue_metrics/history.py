from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from .report import mean
from .schemas import STATUS_COMPLETED, IngestionJob


class HistoryModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class HistoryPoint(HistoryModel):
    job_id: UUID
    file_name: str
    date: Optional[datetime]
    total_issues: int
    total_defects: int
    open_defects: int
    created_this_month: int
    closed_this_month: int
    unassigned: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]


class HistorySummary(HistoryModel):
    total_uploads: int
    average_issues_per_upload: float
    average_defects_per_upload: float
    oldest: Optional[HistoryPoint]
    latest: Optional[HistoryPoint]


class IssueHistory(HistoryModel):
    points: List[HistoryPoint]
    summary: HistorySummary


def _section(report: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    return report.get(name) or {}


def history_point(job: IngestionJob) -> HistoryPoint:
    report = job.report or {}
    defects = _section(report, "defects")
    this_month = _section(report, "this_month")
    return HistoryPoint(
        job_id=job.job_id,
        file_name=job.file_name,
        date=job.created_at,
        total_issues=int(report.get("total_issues", 0)),
        total_defects=int(defects.get("total", 0)),
        open_defects=int(defects.get("open", 0)),
        created_this_month=int(this_month.get("created", 0)),
        closed_this_month=int(this_month.get("closed", 0)),
        unassigned=int(report.get("unassigned", 0)),
        by_status=dict(report.get("by_status") or {}),
        by_priority=dict(report.get("by_priority") or {}),
    )


def build_history(jobs: Sequence[IngestionJob]) -> IssueHistory:
    """Trend points for completed jobs, oldest first.

    Only finalized reports are read; jobs that are not completed, or that
    carry no report, are left out.
    """
    completed = [job for job in jobs if job.status == STATUS_COMPLETED and job.report is not None]
    points = [history_point(job) for job in completed]
    summary = HistorySummary(
        total_uploads=len(points),
        average_issues_per_upload=mean([float(point.total_issues) for point in points]),
        average_defects_per_upload=mean([float(point.total_defects) for point in points]),
        oldest=points[0] if points else None,
        latest=points[-1] if points else None,
    )
    return IssueHistory(points=points, summary=summary)
