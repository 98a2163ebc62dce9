from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class TargetKind(str, Enum):
    HOSTS = "hosts"
    TAGS = "tags"
    CAPABILITIES = "capabilities"
    ALL = "all"


class TargetSpec(BaseModel):
    kind: TargetKind = TargetKind.ALL
    values: list[Any] = Field(default_factory=list)


class TriggerJobRequest(BaseModel):
    target: Optional[TargetSpec] = None
    variables: dict[str, Any] = Field(default_factory=dict)


class TriggerJobResponse(BaseModel):
    job_run_id: int


class StepResultRead(BaseModel):
    id: int
    step_order: int
    step_name: str
    command_template_id: Optional[int] = None
    command: Optional[str] = None
    status: str
    output: str = ""
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class HostResultRead(BaseModel):
    id: int
    host_id: int
    host_name: Optional[str] = None
    status: str
    output: str = ""
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: list[StepResultRead] = Field(default_factory=list)


class JobRunSummary(BaseModel):
    id: int
    job_template_id: int
    schedule_id: Optional[int] = None
    status: str
    trigger: str
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None


class JobRunDetail(JobRunSummary):
    target: TargetSpec
    variables: dict[str, Any] = Field(default_factory=dict)
    notification_sent: bool = False
    notification_error: Optional[str] = None
    hosts: list[HostResultRead] = Field(default_factory=list)


class JobRunPage(BaseModel):
    items: list[JobRunSummary]
    total: int
    page: int
    limit: int
