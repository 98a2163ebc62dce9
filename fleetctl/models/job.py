from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from datetime import datetime
from typing import Optional, Any
from enum import Enum
from fleetctl.utils.time import utcnow


class JobRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobRunStatus.PENDING, JobRunStatus.RUNNING)


IN_FLIGHT_STATUSES = [JobRunStatus.PENDING.value, JobRunStatus.RUNNING.value]


class HostResultStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"  # step results only


class JobType(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: Optional[str] = None
    required_capabilities: list[str] = Field(default_factory=list, sa_column=Column(JSON))


class CommandTemplate(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    job_type_id: int = Field(foreign_key="jobtype.id", index=True)
    name: str = Field(index=True)  # variants of one command share a name
    command: str
    os_filter: list[str] = Field(default_factory=list, sa_column=Column(JSON))  # empty = any OS
    required_capabilities: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    variables: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    timeout_seconds: Optional[int] = None
    working_directory: Optional[str] = None
    environment: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))


class JobTemplate(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    job_type_id: int = Field(foreign_key="jobtype.id")
    is_composite: bool = Field(default=False)
    command_template_id: Optional[int] = Field(default=None, foreign_key="commandtemplate.id")
    variables: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    retry_count: int = Field(default=0)
    retry_delay_seconds: int = Field(default=0)
    retryable_exit_codes: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    timeout_seconds: Optional[int] = None  # overall run deadline
    notification_policy_id: Optional[int] = Field(default=None, foreign_key="notificationpolicy.id")


class JobTemplateStep(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    job_template_id: int = Field(foreign_key="jobtemplate.id", index=True)
    step_order: int
    name: str
    command_template_id: int = Field(foreign_key="commandtemplate.id")
    variables: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    continue_on_failure: bool = Field(default=False)
    timeout_seconds: Optional[int] = None


class JobSchedule(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    job_template_id: int = Field(foreign_key="jobtemplate.id")
    target_kind: str = Field(default="all")  # hosts, tags, capabilities, all
    target_values: list[Any] = Field(default_factory=list, sa_column=Column(JSON))
    cron_expression: str
    timezone: str = Field(default="UTC")
    enabled: bool = Field(default=True)
    healthy: bool = Field(default=True)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    next_run_at: Optional[datetime] = None
    success_count: int = Field(default=0)
    failure_count: int = Field(default=0)
    version: int = Field(default=0)  # bumped by every claim


class JobRun(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    schedule_id: Optional[int] = Field(default=None, foreign_key="jobschedule.id", index=True)
    job_template_id: int = Field(foreign_key="jobtemplate.id", index=True)
    status: str = Field(default=JobRunStatus.PENDING.value, index=True)
    trigger: str = "manual"  # manual, schedule
    target_kind: str = Field(default="all")
    target_values: list[Any] = Field(default_factory=list, sa_column=Column(JSON))
    variables: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    notification_sent: bool = Field(default=False)
    notification_error: Optional[str] = None
    version: int = Field(default=0)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class HostJobResult(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    job_run_id: int = Field(foreign_key="jobrun.id", index=True)
    host_id: int = Field(foreign_key="host.id", index=True)
    status: str = Field(default=HostResultStatus.PENDING.value)
    output: str = ""
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = Field(default=0)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class StepExecutionResult(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    host_result_id: int = Field(foreign_key="hostjobresult.id", index=True)
    step_order: int
    step_name: str
    command_template_id: Optional[int] = Field(default=None, foreign_key="commandtemplate.id")
    command: Optional[str] = None  # rendered
    status: str = Field(default=HostResultStatus.PENDING.value)
    output: str = ""
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
