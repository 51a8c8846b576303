from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

UNASSIGNED = "Unassigned"

# Source column -> StructuredRecord attribute.
RECOGNIZED_COLUMNS: Dict[str, str] = {
    "Summary": "summary",
    "Issue key": "issue_key",
    "Issue id": "issue_id",
    "Issue Type": "issue_type",
    "Status": "status",
    "Priority": "priority",
    "Assignee": "assignee",
    "Created": "created",
    "Updated": "updated",
    "Resolved": "resolved",
    "Project key": "project_key",
    "Project name": "project_name",
}

_TIMESTAMP_FORMATS = (
    "%d/%b/%y %I:%M %p",
    "%d/%b/%Y %I:%M %p",
    "%d/%b/%y %H:%M",
    "%d/%b/%y",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


@dataclass(frozen=True)
class StructuredRecord:
    issue_key: str
    issue_id: str
    issue_type: str
    status: str
    priority: str
    assignee: str
    created: str
    updated: str
    resolved: Optional[str]
    project_key: str
    project_name: str
    summary: str
    extra: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_unassigned(self) -> bool:
        return not self.assignee or self.assignee == UNASSIGNED

    @property
    def created_at(self) -> Optional[datetime]:
        return parse_timestamp(self.created)

    @property
    def resolved_at(self) -> Optional[datetime]:
        return parse_timestamp(self.resolved)

    def field_value(self, *names: str) -> str:
        """First non-empty pass-through value among ``names`` (case-insensitive)."""
        lowered = {name.lower(): value for name, value in self.extra.items()}
        for name in names:
            value = lowered.get(name.lower(), "")
            if value:
                return value
        return ""

    def to_document(self) -> Dict[str, Any]:
        return {
            "issue_key": self.issue_key,
            "issue_id": self.issue_id,
            "issue_type": self.issue_type,
            "status": self.status,
            "priority": self.priority,
            "assignee": self.assignee,
            "created": self.created,
            "updated": self.updated,
            "resolved": self.resolved,
            "project_key": self.project_key,
            "project_name": self.project_name,
            "summary": self.summary,
            "extra": dict(self.extra),
        }


def map_row(raw: Mapping[str, Optional[str]]) -> StructuredRecord:
    values = {attr: (raw.get(column) or "") for column, attr in RECOGNIZED_COLUMNS.items()}
    extra = {
        column: value or ""
        for column, value in raw.items()
        if column not in RECOGNIZED_COLUMNS
    }
    return StructuredRecord(
        issue_key=values["issue_key"],
        issue_id=values["issue_id"],
        issue_type=values["issue_type"],
        status=values["status"],
        priority=values["priority"],
        assignee=values["assignee"] or UNASSIGNED,
        created=values["created"],
        updated=values["updated"],
        resolved=values["resolved"] or None,
        project_key=values["project_key"],
        project_name=values["project_name"],
        summary=values["summary"],
        extra=extra,
    )


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    value = (raw or "").strip()
    if not value:
        return None
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
