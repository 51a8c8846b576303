from datetime import datetime
from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

JOB_STATUS = Literal["pending", "processing", "completed", "failed"]
STATUS_PENDING: JOB_STATUS = "pending"
STATUS_PROCESSING: JOB_STATUS = "processing"
STATUS_COMPLETED: JOB_STATUS = "completed"
STATUS_FAILED: JOB_STATUS = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


class SourceRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    container: str = Field(min_length=1)
    key: str = Field(min_length=1)

    @property
    def file_name(self) -> str:
        return self.key.rsplit("/", 1)[-1]


class IngestionJob(BaseModel):
    job_id: UUID
    source: SourceRef
    file_name: str
    status: JOB_STATUS
    window_size: int
    total_records: int = 0
    processed_records: int = 0
    next_start_row: Optional[int] = None
    aggregate: Optional[Dict[str, Any]] = None
    error_detail: Optional[str] = None
    report: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percent(self) -> int:
        if self.status == STATUS_COMPLETED:
            return 100
        if self.total_records <= 0:
            return 0
        return min(100, round(100 * self.processed_records / self.total_records))


class RegisterJobRequest(BaseModel):
    source: SourceRef
    window_size: Optional[int] = Field(default=None, ge=1, le=100_000)
    enqueue: bool = True
