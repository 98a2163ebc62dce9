from .host import Host, Credential
from .job import (
    JobRunStatus,
    HostResultStatus,
    IN_FLIGHT_STATUSES,
    JobType,
    CommandTemplate,
    JobTemplate,
    JobTemplateStep,
    JobSchedule,
    JobRun,
    HostJobResult,
    StepExecutionResult,
)
from .notification import (
    NotificationOutcome,
    NotificationChannel,
    NotificationPolicy,
    NotificationPolicyChannel,
    NotificationLogEntry,
)
