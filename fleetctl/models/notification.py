from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from datetime import datetime
from typing import Optional, Any
from enum import Enum
from fleetctl.utils.time import utcnow


class NotificationOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    THROTTLED = "throttled"


class NotificationChannel(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    kind: str  # gotify, ntfy, slack, discord, email, webhook
    enabled: bool = Field(default=True)
    default_priority: int = Field(default=3)  # 1-5
    config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))  # {"url": "ntfy://..."}


class NotificationPolicy(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    enabled: bool = Field(default=True)
    on_success: bool = Field(default=False)
    on_failure: bool = Field(default=True)
    on_partial: bool = Field(default=True)
    on_timeout: bool = Field(default=True)
    job_type_filter: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    host_filter: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    tag_filter: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    min_severity: int = Field(default=1)
    max_per_hour: Optional[int] = None  # None = unthrottled
    title_template: Optional[str] = None
    body_template: Optional[str] = None


class NotificationPolicyChannel(SQLModel, table=True):
    policy_id: int = Field(foreign_key="notificationpolicy.id", primary_key=True)
    channel_id: int = Field(foreign_key="notificationchannel.id", primary_key=True)
    position: int = Field(default=0)
    priority_override: Optional[int] = None


class NotificationLogEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    policy_id: int = Field(foreign_key="notificationpolicy.id", index=True)
    channel_id: Optional[int] = Field(default=None, foreign_key="notificationchannel.id")
    job_run_id: Optional[int] = Field(default=None, foreign_key="jobrun.id", index=True)  # unset once the run is pruned
    title: str = ""
    body: str = ""
    priority: Optional[int] = None
    outcome: str  # delivered, failed, throttled
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
