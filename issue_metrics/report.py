from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import settings
from .errors import MissingAggregate
from .logging_utils import get_logger
from .metrics import THROUGHPUT_WINDOW_DAYS, IssueSummary, MetricsAggregate
from .stores import JobStore

TREND = Literal["improving", "degrading", "stable"]
TOP_PARENTS = 5
logger = get_logger(__name__)


def mean(samples: Sequence[float]) -> float:
    if not samples:
        return 0.0
    return round(sum(samples) / len(samples), 1)


def rate(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    # Halves round up: 1 of 8 is 13%.
    return int(100 * part / whole + 0.5)


def classify_trend(created: int, closed: int) -> TREND:
    net_change = created - closed
    if net_change < 0:
        return "improving"
    if net_change > 0:
        return "degrading"
    return "stable"


class ReportModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class MonthlyReport(ReportModel):
    created: int
    closed: int
    defects_created: int
    defects_closed: int
    net_change: int
    trend: TREND


class DefectReport(ReportModel):
    total: int
    open: int
    open_rate: int
    escaped: int
    by_priority: Dict[str, int]
    by_severity: Dict[str, int]
    open_by_severity: Dict[str, int]
    avg_age_days: float
    avg_resolution_days: float
    created_this_month: int
    closed_this_month: int
    trend: TREND


class EpicReport(ReportModel):
    total: int
    completed: int
    in_progress: int
    blocked: int
    to_do: int
    completion_rate: int
    avg_cycle_time_days: float
    health: Dict[str, int]


class StoryReport(ReportModel):
    total: int
    completed: int
    in_progress: int
    blocked: int
    to_do: int
    completion_rate: int
    story_points_delivered: float
    throughput_per_week: float
    avg_cycle_time_days: float


class TaskReport(ReportModel):
    total: int
    completed: int
    in_progress: int
    blocked: int
    to_do: int
    overdue: int
    completion_rate: int
    top_parents: Dict[str, int]
    avg_cycle_time_days: float


class SpikeReport(ReportModel):
    total: int
    completed: int
    in_flight: int
    pending: int
    completion_rate: int
    avg_duration_days: float
    outcomes: Dict[str, int]


class RiskReport(ReportModel):
    total: int
    new: int
    active: int
    mitigated: int
    mitigation_rate: int
    by_severity: Dict[str, int]
    avg_age_days: float


class DecisionReport(ReportModel):
    total: int
    approved: int
    pending_review: int
    in_progress: int
    approval_rate: int
    avg_decision_days: float


class EscalationReport(ReportModel):
    total: int
    active: int
    resolved: int
    by_severity: Dict[str, int]
    avg_age_days: float
    avg_resolution_days: float


class MetricsReport(ReportModel):
    generated_at: datetime
    total_issues: int
    unassigned: int
    unassigned_rate: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]
    by_type: Dict[str, int]
    by_assignee: Dict[str, int]
    this_month: MonthlyReport
    defects: DefectReport
    epics: EpicReport
    stories: StoryReport
    tasks: TaskReport
    spikes: SpikeReport
    risks: RiskReport
    decisions: DecisionReport
    escalations: EscalationReport
    top_open_defects: List[IssueSummary]
    top_unassigned: List[IssueSummary]
    top_recent: List[IssueSummary]


def _top_counts(counter: Mapping[str, int], limit: int) -> Dict[str, int]:
    ranked = sorted(counter.items(), key=lambda item: item[1], reverse=True)
    return dict(ranked[:limit])


def build_report(aggregate: MetricsAggregate, *, now: Optional[datetime] = None) -> MetricsReport:
    generated_at = now or datetime.now(timezone.utc)
    month = aggregate.this_month
    defects = aggregate.defects
    epics = aggregate.epics
    stories = aggregate.stories
    tasks = aggregate.tasks
    spikes = aggregate.spikes
    risks = aggregate.risks
    decisions = aggregate.decisions
    escalations = aggregate.escalations

    return MetricsReport(
        generated_at=generated_at,
        total_issues=aggregate.total_processed,
        unassigned=aggregate.unassigned,
        unassigned_rate=rate(aggregate.unassigned, aggregate.total_processed),
        by_status=dict(aggregate.by_status),
        by_priority=dict(aggregate.by_priority),
        by_type=dict(aggregate.by_type),
        by_assignee=dict(aggregate.by_assignee),
        this_month=MonthlyReport(
            created=month.created,
            closed=month.closed,
            defects_created=month.defects_created,
            defects_closed=month.defects_closed,
            net_change=month.created - month.closed,
            trend=classify_trend(month.created, month.closed),
        ),
        defects=DefectReport(
            total=defects.total,
            open=defects.open,
            open_rate=rate(defects.open, defects.total),
            escaped=defects.escaped,
            by_priority=dict(defects.by_priority),
            by_severity=dict(defects.by_severity),
            open_by_severity=dict(defects.open_by_severity),
            avg_age_days=mean(defects.age_days),
            avg_resolution_days=mean(defects.resolution_days),
            created_this_month=month.defects_created,
            closed_this_month=month.defects_closed,
            trend=classify_trend(month.defects_created, month.defects_closed),
        ),
        epics=EpicReport(
            total=epics.total,
            completed=epics.completed,
            in_progress=epics.in_progress,
            blocked=epics.blocked,
            to_do=epics.to_do,
            completion_rate=rate(epics.completed, epics.total),
            avg_cycle_time_days=mean(epics.cycle_time_days),
            health={
                "on_track": epics.on_track,
                "at_risk": epics.at_risk,
                "delayed": epics.delayed,
            },
        ),
        stories=StoryReport(
            total=stories.total,
            completed=stories.completed,
            in_progress=stories.in_progress,
            blocked=stories.blocked,
            to_do=stories.to_do,
            completion_rate=rate(stories.completed, stories.total),
            story_points_delivered=round(stories.story_points_delivered, 1),
            throughput_per_week=round(
                stories.completed_recently / (THROUGHPUT_WINDOW_DAYS / 7), 1
            ),
            avg_cycle_time_days=mean(stories.cycle_time_days),
        ),
        tasks=TaskReport(
            total=tasks.total,
            completed=tasks.completed,
            in_progress=tasks.in_progress,
            blocked=tasks.blocked,
            to_do=tasks.to_do,
            overdue=tasks.overdue,
            completion_rate=rate(tasks.completed, tasks.total),
            top_parents=_top_counts(tasks.by_parent, TOP_PARENTS),
            avg_cycle_time_days=mean(tasks.cycle_time_days),
        ),
        spikes=SpikeReport(
            total=spikes.total,
            completed=spikes.completed,
            in_flight=spikes.in_flight,
            pending=spikes.pending,
            completion_rate=rate(spikes.completed, spikes.total),
            avg_duration_days=mean(spikes.duration_days),
            outcomes={
                "led_to_story": spikes.led_to_story,
                "no_action": spikes.no_action,
                "blocked": spikes.blocked,
            },
        ),
        risks=RiskReport(
            total=risks.total,
            new=risks.new,
            active=risks.active,
            mitigated=risks.mitigated,
            mitigation_rate=rate(risks.mitigated, risks.total),
            by_severity=dict(risks.by_severity),
            avg_age_days=mean(risks.age_days),
        ),
        decisions=DecisionReport(
            total=decisions.total,
            approved=decisions.approved,
            pending_review=decisions.pending_review,
            in_progress=decisions.in_progress,
            approval_rate=rate(decisions.approved, decisions.total),
            avg_decision_days=mean(decisions.decision_days),
        ),
        escalations=EscalationReport(
            total=escalations.total,
            active=escalations.active,
            resolved=escalations.resolved,
            by_severity=dict(escalations.by_severity),
            avg_age_days=mean(escalations.age_days),
            avg_resolution_days=mean(escalations.resolution_days),
        ),
        top_open_defects=list(aggregate.top_open_defects[: settings.top_open_defects_size]),
        top_unassigned=list(aggregate.top_unassigned[: settings.top_unassigned_size]),
        top_recent=list(aggregate.top_recent[: settings.top_recent_size]),
    )


def load_aggregate(
    aggregate: Union[MetricsAggregate, Mapping[str, Any], None],
) -> MetricsAggregate:
    if aggregate is None:
        raise MissingAggregate("finalize invoked without an accumulated aggregate")
    if isinstance(aggregate, MetricsAggregate):
        return aggregate
    try:
        return MetricsAggregate.model_validate(aggregate)
    except ValidationError as exc:
        raise MissingAggregate(f"aggregate payload is malformed: {exc.error_count()} errors") from exc


def finalize(
    job_id: UUID,
    aggregate: Union[MetricsAggregate, Mapping[str, Any], None],
    *,
    job_store: JobStore,
    now: Optional[datetime] = None,
) -> MetricsReport:
    try:
        accumulated = load_aggregate(aggregate)
    except MissingAggregate as exc:
        job_store.mark_failed(job_id, str(exc))
        logger.error("finalize.missing_aggregate job_id=%s error=%s", job_id, str(exc))
        raise

    report = build_report(accumulated, now=now)
    job_store.complete(
        job_id,
        report=report.model_dump(mode="json"),
        total_records=accumulated.total_processed,
    )
    logger.info(
        "finalize.complete job_id=%s total_issues=%s open_defects=%s",
        job_id,
        report.total_issues,
        report.defects.open,
    )
    return report
