import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import apprise
from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy import func
from sqlmodel import Session, select

from fleetctl.core.config import get_settings
from fleetctl.core.errors import NotificationError
from fleetctl.models import (
    Host,
    HostJobResult,
    JobRun,
    JobRunStatus,
    JobSchedule,
    JobTemplate,
    JobType,
    NotificationChannel,
    NotificationLogEntry,
    NotificationOutcome,
    NotificationPolicy,
    NotificationPolicyChannel,
)
from fleetctl.utils.time import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

SEVERITY = {
    JobRunStatus.SUCCEEDED.value: 1,
    JobRunStatus.CANCELLED.value: 2,
    JobRunStatus.PARTIAL.value: 3,
    JobRunStatus.TIMEOUT.value: 4,
    JobRunStatus.FAILED.value: 5,
}

# Which policy flag a terminal status answers to. Cancellation is reported
# to whoever wants to hear about failures.
TRIGGER_FLAG = {
    JobRunStatus.SUCCEEDED.value: "on_success",
    JobRunStatus.FAILED.value: "on_failure",
    JobRunStatus.CANCELLED.value: "on_failure",
    JobRunStatus.PARTIAL.value: "on_partial",
    JobRunStatus.TIMEOUT.value: "on_timeout",
}

DEFAULT_TITLE_TEMPLATE = "[{{ status | upper }}] {{ job_name }}"

DEFAULT_BODY_TEMPLATE = """\
Job: {{ job_name }} ({{ job_type }})
{% if schedule_name %}Schedule: {{ schedule_name }}
{% endif %}Status: {{ status }}
Hosts: {{ success_count }}/{{ total_hosts }} succeeded
{% if duration_seconds is not none %}Duration: {{ duration_seconds | round(1) }}s
{% endif %}{% if error %}Error: {{ error }}
{% endif %}
{% for result in host_results %}- {{ result.host_name }}: {{ result.status }}{% if result.exit_code is not none %} (exit {{ result.exit_code }}){% endif %}
{% if result.error %}  {{ result.error }}
{% endif %}{% endfor %}"""


@dataclass
class NotificationMessage:
    title: str
    body: str
    priority: int
    severity: int


def severity_for(status: str) -> int:
    return SEVERITY.get(status, 0)


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "..."


class ChannelProvider:
    """Delivers one message through one channel.

    Implementations raise NotificationError(ChannelUnavailable) on failure.
    """
    async def send(self, channel: NotificationChannel, message: NotificationMessage) -> None:
        raise NotImplementedError


class AppriseChannelProvider(ChannelProvider):
    """Sends through apprise. The channel config holds an apprise ``url`` or a list of ``urls``."""

    @staticmethod
    def notify_type(severity: int) -> apprise.NotifyType:
        if severity <= 1:
            return apprise.NotifyType.SUCCESS
        if severity <= 3:
            return apprise.NotifyType.WARNING
        return apprise.NotifyType.FAILURE

    async def send(self, channel: NotificationChannel, message: NotificationMessage) -> None:
        config = channel.config or {}
        urls = config.get("urls") or ([config["url"]] if config.get("url") else [])
        if not urls:
            raise NotificationError(f"Channel '{channel.name}' has no delivery URL configured")

        apobj = apprise.Apprise()
        for url in urls:
            if not apobj.add(url):
                raise NotificationError(f"Channel '{channel.name}' has an invalid apprise URL")

        delivered = await apobj.async_notify(
            body=message.body,
            title=message.title,
            notify_type=self.notify_type(message.severity),
        )
        if not delivered:
            raise NotificationError(f"Delivery through channel '{channel.name}' failed")


class NotificationService:
    """Evaluates notification policies against a finished run and delivers them.

    Every delivery attempt, and every throttled evaluation, leaves exactly
    one NotificationLogEntry behind. A failing channel never prevents the
    others from being tried.
    """
    def __init__(self, db: Session, provider: Optional[ChannelProvider] = None):
        self.db = db
        self.provider = provider or AppriseChannelProvider()
        self.env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)

    async def dispatch(self, run_id: int) -> bool:
        """Sends notifications for a terminal run.

        Returns:
            True if at least one message was delivered.
        """
        run = self.db.get(JobRun, run_id)
        if not run or not JobRunStatus(run.status).is_terminal:
            logger.debug(f"Job run {run_id} is not terminal, nothing to notify")
            return False

        context, host_ids, tags, job_type_name = self.build_context(run)
        policies = self.matching_policies(run, job_type_name, host_ids, tags)
        if not policies:
            logger.debug(f"No notification policy matched job run {run_id}")
            return False

        sent = False
        errors = []
        for policy in policies:
            delivered, policy_errors = await self._dispatch_policy(policy, run, context)
            sent = sent or delivered
            errors.extend(policy_errors)

        run = self.db.get(JobRun, run_id)
        run.notification_sent = sent
        run.notification_error = "; ".join(errors) if errors else None
        self.db.add(run)
        self.db.commit()
        return sent

    async def _dispatch_policy(self, policy: NotificationPolicy, run: JobRun, context: dict[str, Any]) -> tuple[bool, list[str]]:
        if self.is_throttled(policy):
            logger.info(f"Policy '{policy.name}' reached {policy.max_per_hour} notifications/hour, throttling")
            self._log(policy, None, run, "", "", None, NotificationOutcome.THROTTLED, "Rate limit reached")
            return False, []

        channels = self.channels_for(policy)
        if not channels:
            logger.warning(f"Policy '{policy.name}' has no enabled channels")
            return False, []

        try:
            title, body = self.render(policy, context)
        except NotificationError as e:
            logger.error(f"Policy '{policy.name}': {e}")
            for link, channel in channels:
                self._log(policy, channel, run, "", "", None, NotificationOutcome.FAILED, str(e))
            return False, [f"{policy.name}: {e}"]

        delivered = False
        errors = []
        for link, channel in channels:
            priority = link.priority_override if link.priority_override is not None else channel.default_priority
            message = NotificationMessage(title=title, body=body, priority=priority, severity=context["severity"])
            try:
                await self.provider.send(channel, message)
            except NotificationError as e:
                logger.warning(f"Channel '{channel.name}' failed for job run {run.id}: {e}")
                self._log(policy, channel, run, title, body, priority, NotificationOutcome.FAILED, str(e))
                errors.append(f"{channel.name}: {e}")
            except Exception as e:
                logger.exception(f"Channel '{channel.name}' raised unexpectedly for job run {run.id}")
                self._log(policy, channel, run, title, body, priority, NotificationOutcome.FAILED, str(e))
                errors.append(f"{channel.name}: {e}")
            else:
                logger.info(f"Notification for job run {run.id} delivered via '{channel.name}'")
                self._log(policy, channel, run, title, body, priority, NotificationOutcome.DELIVERED, None)
                delivered = True
        return delivered, errors

    def build_context(self, run: JobRun) -> tuple[dict[str, Any], set[int], set[str], Optional[str]]:
        """Collects everything templates and filters need to know about a run."""
        template = self.db.get(JobTemplate, run.job_template_id)
        job_type = self.db.get(JobType, template.job_type_id) if template else None
        schedule = self.db.get(JobSchedule, run.schedule_id) if run.schedule_id else None

        rows = self.db.exec(
            select(HostJobResult, Host)
            .join(Host, Host.id == HostJobResult.host_id)
            .where(HostJobResult.job_run_id == run.id)
            .order_by(HostJobResult.id)
        ).all()

        limit = settings.NOTIFICATION_SNIPPET_LENGTH
        host_results = []
        tags: set[str] = set()
        for result, host in rows:
            tags.update(host.tags or [])
            host_results.append({
                "host_name": host.name,
                "status": result.status,
                "exit_code": result.exit_code,
                "output": truncate(result.output, limit),
                "error": truncate(result.error, limit),
            })
        success_count = sum(1 for r in host_results if r["status"] == JobRunStatus.SUCCEEDED.value)

        context = {
            "job_name": template.name if template else f"template {run.job_template_id}",
            "job_type": job_type.name if job_type else None,
            "schedule_name": schedule.name if schedule else None,
            "status": run.status,
            "severity": severity_for(run.status),
            "host_names": [r["host_name"] for r in host_results],
            "total_hosts": len(host_results),
            "success_count": success_count,
            "failure_count": len(host_results) - success_count,
            "started_at": run.started_at,
            "finished_at": run.finished_at,
            "duration_seconds": run.duration_seconds,
            "error": truncate(run.error, limit),
            "host_results": host_results,
        }
        host_ids = {result.host_id for result, _ in rows}
        return context, host_ids, tags, context["job_type"]

    def matching_policies(
        self,
        run: JobRun,
        job_type_name: Optional[str],
        host_ids: set[int],
        tags: set[str],
    ) -> list[NotificationPolicy]:
        """Returns the enabled policies a run should be reported to, in id order.

        A policy referenced by the run's job template is included even if its
        filters do not match; its trigger flags and severity floor still apply.
        """
        flag = TRIGGER_FLAG.get(run.status)
        if flag is None:
            return []
        severity = severity_for(run.status)
        template = self.db.get(JobTemplate, run.job_template_id)
        pinned_id = template.notification_policy_id if template else None

        matched = []
        policies = self.db.exec(
            select(NotificationPolicy).where(NotificationPolicy.enabled == True).order_by(NotificationPolicy.id)  # noqa: E712
        ).all()
        for policy in policies:
            if not getattr(policy, flag) or severity < policy.min_severity:
                continue
            if policy.id != pinned_id:
                if policy.job_type_filter and job_type_name not in policy.job_type_filter:
                    continue
                if policy.host_filter and not host_ids.intersection(policy.host_filter):
                    continue
                if policy.tag_filter and not tags.intersection(policy.tag_filter):
                    continue
            matched.append(policy)
        return matched

    def is_throttled(self, policy: NotificationPolicy) -> bool:
        if policy.max_per_hour is None:
            return False
        since = utcnow() - timedelta(hours=1)
        sent = self.db.exec(
            select(func.count(NotificationLogEntry.id))
            .where(NotificationLogEntry.policy_id == policy.id)
            .where(NotificationLogEntry.created_at >= since)
            .where(NotificationLogEntry.outcome.in_([
                NotificationOutcome.DELIVERED.value,
                NotificationOutcome.FAILED.value,
            ]))
        ).one()
        return sent >= policy.max_per_hour

    def channels_for(self, policy: NotificationPolicy) -> list[tuple[NotificationPolicyChannel, NotificationChannel]]:
        rows = self.db.exec(
            select(NotificationPolicyChannel, NotificationChannel)
            .join(NotificationChannel, NotificationChannel.id == NotificationPolicyChannel.channel_id)
            .where(NotificationPolicyChannel.policy_id == policy.id)
            .where(NotificationChannel.enabled == True)  # noqa: E712
            .order_by(NotificationPolicyChannel.position, NotificationChannel.id)
        ).all()
        return [(link, channel) for link, channel in rows]

    def render(self, policy: NotificationPolicy, context: dict[str, Any]) -> tuple[str, str]:
        """Renders the policy's title and body.

        Raises:
            NotificationError: RenderError for syntax errors or unknown names.
        """
        try:
            title = self.env.from_string(policy.title_template or DEFAULT_TITLE_TEMPLATE).render(**context)
            body = self.env.from_string(policy.body_template or DEFAULT_BODY_TEMPLATE).render(**context)
        except TemplateError as e:
            raise NotificationError(f"Template rendering failed: {e}", NotificationError.RENDER_ERROR) from e
        return title.strip(), body.strip()

    def _log(
        self,
        policy: NotificationPolicy,
        channel: Optional[NotificationChannel],
        run: JobRun,
        title: str,
        body: str,
        priority: Optional[int],
        outcome: NotificationOutcome,
        error: Optional[str],
    ) -> None:
        self.db.add(NotificationLogEntry(
            policy_id=policy.id,
            channel_id=channel.id if channel else None,
            job_run_id=run.id,
            title=title,
            body=body,
            priority=priority,
            outcome=outcome.value,
            error=error,
        ))
        self.db.commit()
