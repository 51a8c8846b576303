from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .config import settings
from .records import StructuredRecord, parse_timestamp

PHASE_DONE = "done"
PHASE_BLOCKED = "blocked"
PHASE_IN_PROGRESS = "in_progress"
PHASE_TO_DO = "to_do"

DONE_STATUSES = ("done", "closed", "resolved", "complete", "approved", "mitigated")
BLOCKED_STATUSES = ("blocked", "impeded", "on hold")
IN_PROGRESS_STATUSES = ("in progress", "review", "testing", "in development", "active")

BUCKET_DEFECTS = "defects"
BUCKET_EPICS = "epics"
BUCKET_STORIES = "stories"
BUCKET_TASKS = "tasks"
BUCKET_SPIKES = "spikes"
BUCKET_RISKS = "risks"
BUCKET_DECISIONS = "decisions"
BUCKET_ESCALATIONS = "escalations"
DEFECT_BUCKETS = frozenset({BUCKET_DEFECTS, BUCKET_ESCALATIONS})

PRIORITY_RANK: Dict[str, int] = {
    "blocker": 5,
    "highest": 5,
    "critical": 5,
    "high": 4,
    "major": 4,
    "medium": 3,
    "normal": 3,
    "low": 2,
    "minor": 2,
    "lowest": 1,
    "trivial": 1,
}
SEVERITY_BY_RANK = {5: "critical", 4: "high", 3: "medium", 2: "low", 1: "low"}
ESCALATION_LEVEL_BY_RANK = {5: "p0", 4: "p1", 3: "p2", 2: "p2", 1: "p2"}

EPIC_AT_RISK_AGE_DAYS = 60.0
THROUGHPUT_WINDOW_DAYS = 28

STORY_POINT_FIELDS = (
    "Story Points",
    "Custom field (Story Points)",
    "Custom field (Story point estimate)",
)
DUE_DATE_FIELDS = ("Due date", "Due Date", "Due")
PARENT_FIELDS = ("Parent", "Parent summary", "Parent id", "Custom field (Epic Link)")
ESCAPE_FIELDS = ("Environment", "Labels", "Found in")
LINK_FIELD_PREFIX = "outward issue link"


def _severity_counts(*names: str) -> Dict[str, int]:
    return {name: 0 for name in names}


class IssueSummary(BaseModel):
    issue_key: str
    summary: str = ""
    issue_type: str = ""
    status: str = ""
    priority: str = ""
    assignee: str = ""
    created: str = ""
    resolved: Optional[str] = None
    priority_rank: int = 0
    created_sort: str = ""


class DefectMetrics(BaseModel):
    total: int = 0
    open: int = 0
    escaped: int = 0
    by_priority: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)
    open_by_severity: Dict[str, int] = Field(
        default_factory=lambda: _severity_counts("critical", "high", "medium", "low")
    )
    resolution_days: List[float] = Field(default_factory=list)
    age_days: List[float] = Field(default_factory=list)


class EpicMetrics(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    blocked: int = 0
    to_do: int = 0
    on_track: int = 0
    at_risk: int = 0
    delayed: int = 0
    cycle_time_days: List[float] = Field(default_factory=list)


class StoryMetrics(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    blocked: int = 0
    to_do: int = 0
    story_points_delivered: float = 0.0
    completed_recently: int = 0
    cycle_time_days: List[float] = Field(default_factory=list)


class TaskMetrics(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    blocked: int = 0
    to_do: int = 0
    overdue: int = 0
    by_parent: Dict[str, int] = Field(default_factory=dict)
    cycle_time_days: List[float] = Field(default_factory=list)


class SpikeMetrics(BaseModel):
    total: int = 0
    completed: int = 0
    in_flight: int = 0
    pending: int = 0
    blocked: int = 0
    led_to_story: int = 0
    no_action: int = 0
    duration_days: List[float] = Field(default_factory=list)


class RiskMetrics(BaseModel):
    total: int = 0
    new: int = 0
    active: int = 0
    mitigated: int = 0
    by_severity: Dict[str, int] = Field(
        default_factory=lambda: _severity_counts("high", "medium", "low")
    )
    age_days: List[float] = Field(default_factory=list)


class DecisionMetrics(BaseModel):
    total: int = 0
    approved: int = 0
    pending_review: int = 0
    in_progress: int = 0
    decision_days: List[float] = Field(default_factory=list)


class EscalationMetrics(BaseModel):
    total: int = 0
    active: int = 0
    resolved: int = 0
    by_severity: Dict[str, int] = Field(
        default_factory=lambda: _severity_counts("p0", "p1", "p2")
    )
    age_days: List[float] = Field(default_factory=list)
    resolution_days: List[float] = Field(default_factory=list)


class MonthlyCounts(BaseModel):
    created: int = 0
    closed: int = 0
    defects_created: int = 0
    defects_closed: int = 0


class MetricsAggregate(BaseModel):
    total_processed: int = 0
    unassigned: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_assignee: Dict[str, int] = Field(default_factory=dict)
    this_month: MonthlyCounts = Field(default_factory=MonthlyCounts)
    defects: DefectMetrics = Field(default_factory=DefectMetrics)
    epics: EpicMetrics = Field(default_factory=EpicMetrics)
    stories: StoryMetrics = Field(default_factory=StoryMetrics)
    tasks: TaskMetrics = Field(default_factory=TaskMetrics)
    spikes: SpikeMetrics = Field(default_factory=SpikeMetrics)
    risks: RiskMetrics = Field(default_factory=RiskMetrics)
    decisions: DecisionMetrics = Field(default_factory=DecisionMetrics)
    escalations: EscalationMetrics = Field(default_factory=EscalationMetrics)
    top_open_defects: List[IssueSummary] = Field(default_factory=list)
    top_unassigned: List[IssueSummary] = Field(default_factory=list)
    top_recent: List[IssueSummary] = Field(default_factory=list)

    def combine(
        self, other: "MetricsAggregate", *, candidate_cap: Optional[int] = None
    ) -> "MetricsAggregate":
        """Fold ``other`` into this aggregate; candidate lists are re-sorted, never concatenated."""
        cap = candidate_cap or settings.candidate_list_size
        _combine_into(self, other, skip=CANDIDATE_LIST_NAMES)
        for candidates in CANDIDATE_LISTS:
            items: List[IssueSummary] = getattr(self, candidates.name)
            items.extend(item.model_copy() for item in getattr(other, candidates.name))
            _sort_and_trim(items, candidates.sort_key, cap)
        return self

    def scalar_snapshot(self) -> Dict[str, Any]:
        """Every counter and distribution, without sample arrays or candidate lists."""
        return _scalars(self)


@dataclass(frozen=True)
class CandidateList:
    name: str
    predicate: Callable[[StructuredRecord, Optional[str], str], bool]
    sort_key: Callable[[IssueSummary], Any]


CANDIDATE_LISTS: Tuple[CandidateList, ...] = (
    CandidateList(
        name="top_open_defects",
        predicate=lambda record, bucket, phase: bucket in DEFECT_BUCKETS and phase != PHASE_DONE,
        sort_key=lambda item: item.priority_rank,
    ),
    CandidateList(
        name="top_unassigned",
        predicate=lambda record, bucket, phase: record.is_unassigned,
        sort_key=lambda item: item.priority_rank,
    ),
    CandidateList(
        name="top_recent",
        predicate=lambda record, bucket, phase: True,
        sort_key=lambda item: item.created_sort,
    ),
)
CANDIDATE_LIST_NAMES = frozenset(candidates.name for candidates in CANDIDATE_LISTS)


def _combine_into(target: BaseModel, other: BaseModel, *, skip: Iterable[str] = ()) -> None:
    skipped = set(skip)
    for name in type(target).model_fields:
        if name in skipped:
            continue
        mine = getattr(target, name)
        theirs = getattr(other, name)
        if isinstance(mine, BaseModel):
            _combine_into(mine, theirs)
        elif isinstance(mine, (int, float)):
            setattr(target, name, mine + theirs)
        elif isinstance(mine, dict):
            for key, value in theirs.items():
                mine[key] = mine.get(key, 0) + value
        elif isinstance(mine, list):
            mine.extend(theirs)


def _scalars(model: BaseModel) -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {}
    for name in type(model).model_fields:
        value = getattr(model, name)
        if isinstance(value, BaseModel):
            snapshot[name] = _scalars(value)
        elif isinstance(value, dict):
            snapshot[name] = dict(value)
        elif isinstance(value, (int, float)):
            snapshot[name] = value
    return snapshot


def _sort_and_trim(items: List[IssueSummary], sort_key: Callable[[IssueSummary], Any], cap: int) -> None:
    # list.sort is stable with reverse=True, so ties keep insertion order.
    items.sort(key=sort_key, reverse=True)
    del items[cap:]


def status_phase(status: str) -> str:
    lowered = (status or "").lower()
    if any(token in lowered for token in DONE_STATUSES):
        return PHASE_DONE
    if any(token in lowered for token in BLOCKED_STATUSES):
        return PHASE_BLOCKED
    if any(token in lowered for token in IN_PROGRESS_STATUSES):
        return PHASE_IN_PROGRESS
    return PHASE_TO_DO


def classify_work_type(issue_type: str) -> Optional[str]:
    lowered = (issue_type or "").strip().lower()
    if not lowered:
        return None
    if "escalat" in lowered:
        return BUCKET_ESCALATIONS
    if "bug" in lowered or "defect" in lowered:
        return BUCKET_DEFECTS
    if lowered == "epic":
        return BUCKET_EPICS
    if lowered in {"story", "user story"}:
        return BUCKET_STORIES
    if lowered in {"task", "sub-task", "subtask"}:
        return BUCKET_TASKS
    if "spike" in lowered:
        return BUCKET_SPIKES
    if "risk" in lowered:
        return BUCKET_RISKS
    if "adr" in lowered or "decision" in lowered:
        return BUCKET_DECISIONS
    return None


def priority_rank(priority: str) -> int:
    return PRIORITY_RANK.get((priority or "").strip().lower(), 0)


def _days_between(start: datetime, end: datetime) -> float:
    return round(max(0.0, (end - start).total_seconds() / 86400.0), 2)


def _same_month(value: Optional[datetime], now: datetime) -> bool:
    return value is not None and value.year == now.year and value.month == now.month


def _increment(counter: Dict[str, int], key: str) -> None:
    if key:
        counter[key] = counter.get(key, 0) + 1


def _story_points(record: StructuredRecord) -> float:
    raw = record.field_value(*STORY_POINT_FIELDS)
    try:
        return float(raw) if raw else 0.0
    except ValueError:
        return 0.0


def _is_overdue(record: StructuredRecord, now: datetime) -> bool:
    due = parse_timestamp(record.field_value(*DUE_DATE_FIELDS))
    return due is not None and due < now


def _has_outward_link(record: StructuredRecord) -> bool:
    return any(
        name.lower().startswith(LINK_FIELD_PREFIX) and value
        for name, value in record.extra.items()
    )


def _summarize(record: StructuredRecord) -> IssueSummary:
    created_at = record.created_at
    return IssueSummary(
        issue_key=record.issue_key,
        summary=record.summary,
        issue_type=record.issue_type,
        status=record.status,
        priority=record.priority,
        assignee=record.assignee,
        created=record.created,
        resolved=record.resolved,
        priority_rank=priority_rank(record.priority),
        created_sort=created_at.astimezone(timezone.utc).isoformat() if created_at else "",
    )


@dataclass(frozen=True)
class _Timing:
    created: Optional[datetime]
    resolved: Optional[datetime]
    now: datetime

    @property
    def elapsed_days(self) -> Optional[float]:
        if self.created is None or self.resolved is None:
            return None
        return _days_between(self.created, self.resolved)

    @property
    def age_days(self) -> Optional[float]:
        if self.created is None:
            return None
        return _days_between(self.created, self.now)


def _closing_sample(phase: str, timing: _Timing, samples: List[float]) -> None:
    if phase == PHASE_DONE and timing.elapsed_days is not None:
        samples.append(timing.elapsed_days)


def _opening_sample(phase: str, timing: _Timing, samples: List[float]) -> None:
    if phase != PHASE_DONE and timing.resolved is None and timing.age_days is not None:
        samples.append(timing.age_days)


def _merge_defect(agg: DefectMetrics, record: StructuredRecord, phase: str, timing: _Timing) -> None:
    agg.total += 1
    _increment(agg.by_priority, record.priority)
    _increment(agg.by_severity, record.field_value("Severity"))
    escape_markers = " ".join(
        record.field_value(name) for name in ESCAPE_FIELDS
    ).lower()
    if "escaped" in escape_markers or "prod" in escape_markers:
        agg.escaped += 1
    if phase != PHASE_DONE:
        agg.open += 1
        severity = SEVERITY_BY_RANK.get(priority_rank(record.priority))
        if severity:
            agg.open_by_severity[severity] = agg.open_by_severity.get(severity, 0) + 1
    _closing_sample(phase, timing, agg.resolution_days)
    _opening_sample(phase, timing, agg.age_days)


def _merge_epic(agg: EpicMetrics, record: StructuredRecord, phase: str, timing: _Timing) -> None:
    agg.total += 1
    if phase == PHASE_DONE:
        agg.completed += 1
    elif phase == PHASE_BLOCKED:
        agg.blocked += 1
    elif phase == PHASE_IN_PROGRESS:
        agg.in_progress += 1
    else:
        agg.to_do += 1

    if phase != PHASE_DONE:
        age = timing.age_days
        if phase == PHASE_BLOCKED or _is_overdue(record, timing.now):
            agg.delayed += 1
        elif age is not None and age > EPIC_AT_RISK_AGE_DAYS:
            agg.at_risk += 1
        else:
            agg.on_track += 1
    _closing_sample(phase, timing, agg.cycle_time_days)


def _merge_story(agg: StoryMetrics, record: StructuredRecord, phase: str, timing: _Timing) -> None:
    agg.total += 1
    if phase == PHASE_DONE:
        agg.completed += 1
        agg.story_points_delivered += _story_points(record)
        if (
            timing.resolved is not None
            and timing.now - timing.resolved <= timedelta(days=THROUGHPUT_WINDOW_DAYS)
        ):
            agg.completed_recently += 1
    elif phase == PHASE_BLOCKED:
        agg.blocked += 1
    elif phase == PHASE_IN_PROGRESS:
        agg.in_progress += 1
    else:
        agg.to_do += 1
    _closing_sample(phase, timing, agg.cycle_time_days)


def _merge_task(agg: TaskMetrics, record: StructuredRecord, phase: str, timing: _Timing) -> None:
    agg.total += 1
    if phase == PHASE_DONE:
        agg.completed += 1
    elif phase == PHASE_BLOCKED:
        agg.blocked += 1
    elif phase == PHASE_IN_PROGRESS:
        agg.in_progress += 1
    else:
        agg.to_do += 1
    if phase != PHASE_DONE and _is_overdue(record, timing.now):
        agg.overdue += 1
    _increment(agg.by_parent, record.field_value(*PARENT_FIELDS))
    _closing_sample(phase, timing, agg.cycle_time_days)


def _merge_spike(agg: SpikeMetrics, record: StructuredRecord, phase: str, timing: _Timing) -> None:
    agg.total += 1
    if phase == PHASE_DONE:
        agg.completed += 1
        if _has_outward_link(record):
            agg.led_to_story += 1
        else:
            agg.no_action += 1
    elif phase == PHASE_BLOCKED:
        agg.blocked += 1
    elif phase == PHASE_IN_PROGRESS:
        agg.in_flight += 1
    else:
        agg.pending += 1
    _closing_sample(phase, timing, agg.duration_days)


def _merge_risk(agg: RiskMetrics, record: StructuredRecord, phase: str, timing: _Timing) -> None:
    agg.total += 1
    if phase == PHASE_DONE:
        agg.mitigated += 1
    elif phase == PHASE_TO_DO:
        agg.new += 1
    else:
        agg.active += 1
    rank = priority_rank(record.priority)
    if rank:
        severity = "high" if rank >= 4 else "medium" if rank == 3 else "low"
        agg.by_severity[severity] = agg.by_severity.get(severity, 0) + 1
    _opening_sample(phase, timing, agg.age_days)


def _merge_decision(agg: DecisionMetrics, record: StructuredRecord, phase: str, timing: _Timing) -> None:
    agg.total += 1
    if phase == PHASE_DONE:
        agg.approved += 1
    elif phase == PHASE_TO_DO or "review" in record.status.lower():
        agg.pending_review += 1
    else:
        agg.in_progress += 1
    _closing_sample(phase, timing, agg.decision_days)


def _merge_escalation(
    agg: EscalationMetrics, record: StructuredRecord, phase: str, timing: _Timing
) -> None:
    agg.total += 1
    if phase == PHASE_DONE:
        agg.resolved += 1
    else:
        agg.active += 1
        level = ESCALATION_LEVEL_BY_RANK.get(priority_rank(record.priority))
        if level:
            agg.by_severity[level] = agg.by_severity.get(level, 0) + 1
    _closing_sample(phase, timing, agg.resolution_days)
    _opening_sample(phase, timing, agg.age_days)


_BUCKET_MERGERS: Dict[str, Callable[[Any, StructuredRecord, str, _Timing], None]] = {
    BUCKET_DEFECTS: _merge_defect,
    BUCKET_EPICS: _merge_epic,
    BUCKET_STORIES: _merge_story,
    BUCKET_TASKS: _merge_task,
    BUCKET_SPIKES: _merge_spike,
    BUCKET_RISKS: _merge_risk,
    BUCKET_DECISIONS: _merge_decision,
    BUCKET_ESCALATIONS: _merge_escalation,
}


def merge_record(
    aggregate: MetricsAggregate,
    record: StructuredRecord,
    *,
    now: datetime,
    candidate_cap: int,
) -> None:
    aggregate.total_processed += 1
    _increment(aggregate.by_status, record.status)
    _increment(aggregate.by_priority, record.priority)
    _increment(aggregate.by_type, record.issue_type)
    if record.is_unassigned:
        aggregate.unassigned += 1
    else:
        _increment(aggregate.by_assignee, record.assignee)

    phase = status_phase(record.status)
    bucket = classify_work_type(record.issue_type)
    timing = _Timing(created=record.created_at, resolved=record.resolved_at, now=now)
    if bucket is not None:
        _BUCKET_MERGERS[bucket](getattr(aggregate, bucket), record, phase, timing)

    is_defect = bucket in DEFECT_BUCKETS
    if _same_month(timing.created, now):
        aggregate.this_month.created += 1
        if is_defect:
            aggregate.this_month.defects_created += 1
    if _same_month(timing.resolved, now):
        aggregate.this_month.closed += 1
        if is_defect:
            aggregate.this_month.defects_closed += 1

    summary: Optional[IssueSummary] = None
    for candidates in CANDIDATE_LISTS:
        if not candidates.predicate(record, bucket, phase):
            continue
        summary = summary or _summarize(record)
        items: List[IssueSummary] = getattr(aggregate, candidates.name)
        items.append(summary.model_copy())
        _sort_and_trim(items, candidates.sort_key, candidate_cap)


def merge(
    aggregate: Optional[MetricsAggregate],
    batch: Iterable[StructuredRecord],
    *,
    now: Optional[datetime] = None,
    candidate_cap: Optional[int] = None,
) -> MetricsAggregate:
    """Fold one batch into the running aggregate and return it.

    ``now`` anchors the "this month" counters and age samples; it defaults
    to the wall clock of this invocation, not of the job.
    """
    target = aggregate if aggregate is not None else MetricsAggregate()
    reference = now or datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    cap = candidate_cap or settings.candidate_list_size
    for record in batch:
        merge_record(target, record, now=reference, candidate_cap=cap)
    return target
