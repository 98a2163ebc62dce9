"""Typed failures raised by the scheduling, execution and notification core.

Every error carries a ``kind`` string. The kind is what gets persisted on
runs, host results and log entries, so callers can tell ``NoTargets`` from
``UnresolvedVariable`` without parsing messages.
"""
from typing import Optional


class FleetError(Exception):
    kind: str = "Error"

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        if kind:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class TargetResolutionError(FleetError):
    NO_TARGETS = "NoTargets"
    kind = NO_TARGETS


class TemplateSelectionError(FleetError):
    NO_APPLICABLE_TEMPLATE = "NoApplicableTemplate"
    kind = NO_APPLICABLE_TEMPLATE


class VariableError(FleetError):
    UNRESOLVED_VARIABLE = "UnresolvedVariable"
    kind = UNRESOLVED_VARIABLE

    def __init__(self, message: str, names: Optional[list[str]] = None):
        super().__init__(message)
        self.names = names or []


class ExecutionError(FleetError):
    CONNECTION_FAILED = "ConnectionFailed"
    TIMED_OUT = "TimedOut"
    NON_ZERO_EXIT = "NonZeroExit"

    def __init__(
        self,
        message: str,
        kind: str,
        exit_code: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message, kind)
        self.exit_code = exit_code
        self.output = output

    @property
    def transient(self) -> bool:
        """Connection failures and timeouts may succeed on a later attempt."""
        return self.kind in (self.CONNECTION_FAILED, self.TIMED_OUT)


class SchedulingError(FleetError):
    INVALID_CRON_EXPRESSION = "InvalidCronExpression"
    kind = INVALID_CRON_EXPRESSION


class NotificationError(FleetError):
    CHANNEL_UNAVAILABLE = "ChannelUnavailable"
    RENDER_ERROR = "RenderError"
    kind = CHANNEL_UNAVAILABLE
