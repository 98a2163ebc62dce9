import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from fleetctl.core.config import get_settings
from fleetctl.core.errors import (
    ExecutionError,
    FleetError,
    TargetResolutionError,
)
from fleetctl.models import (
    Credential,
    Host,
    HostJobResult,
    HostResultStatus,
    JobRun,
    JobRunStatus,
    JobSchedule,
    JobTemplate,
    JobTemplateStep,
    JobType,
    StepExecutionResult,
    IN_FLIGHT_STATUSES,
)
from fleetctl.schemas.job import TargetSpec, TargetKind
from fleetctl.services.notification import NotificationService, ChannelProvider
from fleetctl.services.remote import CommandRunner, CommandOutput, HostCommandRunner
from fleetctl.services.targets import TargetResolver
from fleetctl.services.template import TemplateService, merge_variables
from fleetctl.utils.time import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

STEP_OUTPUT_SEPARATOR = "\n---\n"
TERMINAL_HOST_STATUSES = {
    HostResultStatus.SUCCEEDED.value,
    HostResultStatus.FAILED.value,
    HostResultStatus.TIMEOUT.value,
    HostResultStatus.CANCELLED.value,
}


class CancelResult(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"


@dataclass
class StepOutcome:
    status: HostResultStatus
    output: str = ""
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    contacted: bool = False  # the host answered at least once

    @property
    def succeeded(self) -> bool:
        return self.status == HostResultStatus.SUCCEEDED


def aggregate_status(host_statuses: list[str]) -> JobRunStatus:
    """Folds per-host outcomes into a run status.

    Succeeded iff every host succeeded, failed iff none did (or there were no
    hosts), partial otherwise.
    """
    if not host_statuses:
        return JobRunStatus.FAILED
    succeeded = sum(1 for s in host_statuses if s == HostResultStatus.SUCCEEDED.value)
    if succeeded == len(host_statuses):
        return JobRunStatus.SUCCEEDED
    if succeeded == 0:
        return JobRunStatus.FAILED
    return JobRunStatus.PARTIAL


def transition_run(db: Session, run_id: int, to_status: JobRunStatus, from_statuses: list[str], **values: Any) -> bool:
    """Moves a run between states with a single guarded write.

    The WHERE clause on the current status is the compare-and-set: terminal
    states are never listed as sources, so they can never change.

    Returns:
        True if this call performed the transition.
    """
    statement = (
        update(JobRun)
        .where(JobRun.id == run_id)
        .where(JobRun.status.in_(from_statuses))
        .values(status=to_status.value, version=JobRun.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = db.exec(statement)
    db.commit()
    return result.rowcount == 1


class JobExecutor:
    """Runs one JobRun across its resolved hosts.

    Each host gets its own task; tasks across every active run share one
    counting semaphore, so at most ``MAX_CONCURRENT_HOSTS`` commands are in
    flight process-wide. Results are written as they happen so a crash leaves
    an accurate partial record.

    Attributes:
        db: Session used for all reads and writes of this run.
        command_runner: Executes rendered commands on hosts.
        semaphore: Global concurrency bound shared with other executors.
        notifier: Optional dispatcher invoked once the run is terminal.
    """
    def __init__(
        self,
        db: Session,
        command_runner: CommandRunner,
        semaphore: asyncio.Semaphore,
        notifier: Optional[NotificationService] = None,
        default_timeout: Optional[int] = None,
    ):
        self.db = db
        self.command_runner = command_runner
        self.semaphore = semaphore
        self.notifier = notifier
        self.default_timeout = default_timeout or settings.DEFAULT_COMMAND_TIMEOUT
        self.templates = TemplateService(db)
        self.host_tasks: list[asyncio.Task] = []

    # --- Run lifecycle ---

    async def execute_run(self, run_id: int) -> Optional[JobRun]:
        """Executes a pending run to completion and dispatches notifications.

        Args:
            run_id: The JobRun to execute. It must be in the pending state.

        Returns:
            The refreshed JobRun, or None if it does not exist.
        """
        run = self.db.get(JobRun, run_id)
        if not run:
            logger.error(f"Job run {run_id} not found")
            return None

        if not transition_run(self.db, run_id, JobRunStatus.RUNNING, [JobRunStatus.PENDING.value], started_at=utcnow()):
            logger.info(f"Job run {run_id} is no longer pending, not starting it")
            self.db.refresh(run)
            # Cancelled before it ever started, so nothing else reports it.
            if run.status == JobRunStatus.CANCELLED.value and run.started_at is None:
                await self._notify(run_id)
            return run

        try:
            status, timed_out = await self._execute(run_id)
        except TargetResolutionError as e:
            logger.warning(f"Job run {run_id}: {e}")
            self._finish(run_id, JobRunStatus.FAILED, error_kind=e.kind, error=str(e))
        except FleetError as e:
            logger.error(f"Job run {run_id} failed: {e}")
            self._finish(run_id, JobRunStatus.FAILED, error_kind=e.kind, error=str(e))
        except Exception as e:
            logger.exception(f"Job run {run_id} crashed")
            self.db.rollback()
            self._finish(run_id, JobRunStatus.FAILED, error_kind="InternalError", error=str(e))
        else:
            if timed_out:
                self._finish(run_id, JobRunStatus.TIMEOUT, error_kind="RunTimeout", error="Overall run deadline elapsed")
            else:
                self._finish(run_id, status)

        run = self.db.get(JobRun, run_id)
        self.db.refresh(run)
        logger.info(f"Job run {run_id} finished with status {run.status}")
        await self._notify(run_id)
        return run

    async def _execute(self, run_id: int) -> tuple[JobRunStatus, bool]:
        run = self.db.get(JobRun, run_id)
        template = self.db.get(JobTemplate, run.job_template_id)
        if not template:
            raise FleetError(f"Job template {run.job_template_id} not found", "TemplateNotFound")
        job_type = self.db.get(JobType, template.job_type_id)
        if not job_type:
            raise FleetError(f"Job type {template.job_type_id} not found", "JobTypeNotFound")

        spec = TargetSpec(kind=TargetKind(run.target_kind), values=run.target_values or [])
        hosts = TargetResolver(self.db).resolve(spec)

        # The host set is fixed here and never re-resolved for this run.
        results = []
        for host in hosts:
            result = HostJobResult(job_run_id=run_id, host_id=host.id)
            self.db.add(result)
            results.append(result)
        self.db.commit()
        result_ids = [(r.id, r.host_id) for r in results]

        logger.info(
            f"Job run {run_id}: executing '{template.name}' on {len(result_ids)} host(s) "
            f"({'composite' if template.is_composite else 'simple'})"
        )
        timed_out = await self.execute_on_hosts(run_id, template, job_type, result_ids, dict(run.variables or {}))
        statuses = [s for s in self.db.exec(
            select(HostJobResult.status).where(HostJobResult.job_run_id == run_id)
        ).all()]
        return aggregate_status(statuses), timed_out

    def _finish(self, run_id: int, status: JobRunStatus, error_kind: Optional[str] = None, error: Optional[str] = None) -> bool:
        done = transition_run(
            self.db, run_id, status, [JobRunStatus.RUNNING.value],
            finished_at=utcnow(), error_kind=error_kind, error=error,
        )
        if not done:
            logger.info(f"Job run {run_id} was already terminal, keeping its status")
        return done

    async def _notify(self, run_id: int) -> None:
        if not self.notifier:
            return
        try:
            await self.notifier.dispatch(run_id)
        except Exception:
            # Notification problems never change the outcome of a run.
            logger.exception(f"Notification dispatch failed for job run {run_id}")

    def is_cancelled(self, run_id: int) -> bool:
        status = self.db.exec(select(JobRun.status).where(JobRun.id == run_id)).first()
        return status == JobRunStatus.CANCELLED.value

    def cancel_hosts(self) -> None:
        """Stops waiting on this run's host tasks. Remote processes may continue."""
        for task in self.host_tasks:
            if not task.done():
                task.cancel()

    # --- Multi-host fan-out ---

    async def execute_on_hosts(
        self,
        run_id: int,
        template: JobTemplate,
        job_type: JobType,
        result_ids: list[tuple[int, int]],
        runtime_vars: dict[str, Any],
    ) -> bool:
        """Runs every host of a run in parallel, bounded by the global semaphore.

        Returns:
            True if the overall run deadline elapsed before all hosts finished.
        """
        steps = []
        if template.is_composite:
            steps = list(self.db.exec(
                select(JobTemplateStep)
                .where(JobTemplateStep.job_template_id == template.id)
                .order_by(JobTemplateStep.step_order)
            ).all())

        self.host_tasks = [
            asyncio.create_task(self._run_host(run_id, template, job_type, steps, result_id, host_id, runtime_vars))
            for result_id, host_id in result_ids
        ]
        if not self.host_tasks:
            return False

        _, pending = await asyncio.wait(self.host_tasks, timeout=template.timeout_seconds)
        timed_out = bool(pending)
        if pending:
            logger.warning(f"Job run {run_id}: deadline of {template.timeout_seconds}s elapsed, cancelling {len(pending)} host(s)")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        # Host tasks cancelled from outside never got to record themselves.
        for result_id, _ in result_ids:
            result = self.db.get(HostJobResult, result_id)
            if result.status not in TERMINAL_HOST_STATUSES:
                self._cancel_host_result(result, "Cancelled before completion")
        return timed_out

    async def _run_host(
        self,
        run_id: int,
        template: JobTemplate,
        job_type: JobType,
        steps: list[JobTemplateStep],
        result_id: int,
        host_id: int,
        runtime_vars: dict[str, Any],
    ) -> None:
        result = self.db.get(HostJobResult, result_id)
        try:
            async with self.semaphore:
                if self.is_cancelled(run_id):
                    self._cancel_host_result(result, "Run cancelled")
                    return
                host = self.db.get(Host, host_id)
                result.status = HostResultStatus.RUNNING.value
                result.started_at = utcnow()
                self.db.add(result)
                self.db.commit()

                if template.is_composite:
                    outcome = await self.execute_composite(run_id, template, job_type, steps, host, result, runtime_vars)
                else:
                    outcome = await self.execute_simple(run_id, template, job_type, host, result, runtime_vars)
                self._finish_host(result, host, outcome)
        except asyncio.CancelledError:
            self._cancel_host_result(result, "Cancelled while running")
            raise
        except Exception as e:
            logger.exception(f"Job run {run_id}: host result {result_id} crashed")
            self.db.rollback()
            self._finish_host(result, None, StepOutcome(
                status=HostResultStatus.FAILED, error_kind="InternalError", error=str(e),
            ))

    def _finish_host(self, result: HostJobResult, host: Optional[Host], outcome: StepOutcome) -> None:
        result.status = outcome.status.value
        result.output = outcome.output
        result.exit_code = outcome.exit_code
        result.error_kind = outcome.error_kind
        result.error = outcome.error
        result.attempts = outcome.attempts
        result.finished_at = utcnow()
        self.db.add(result)

        if host is not None:
            if outcome.contacted:
                host.status = "reachable"
                host.last_seen_at = result.finished_at
            elif outcome.error_kind == ExecutionError.CONNECTION_FAILED:
                host.status = "unreachable"
                host.last_error = outcome.error
            self.db.add(host)
        self.db.commit()
        logger.info(f"Host result {result.id} (host {result.host_id}): {result.status}")

    def _cancel_host_result(self, result: HostJobResult, reason: str) -> None:
        self.db.refresh(result)
        if result.status in TERMINAL_HOST_STATUSES:
            return
        result.status = HostResultStatus.CANCELLED.value
        result.error_kind = "Cancelled"
        result.error = reason
        result.finished_at = utcnow()
        self.db.add(result)
        for step in self.db.exec(select(StepExecutionResult).where(StepExecutionResult.host_result_id == result.id)).all():
            if step.status in (HostResultStatus.PENDING.value, HostResultStatus.RUNNING.value):
                step.status = HostResultStatus.CANCELLED.value
                step.finished_at = utcnow()
                self.db.add(step)
        self.db.commit()

    # --- Per-host execution ---

    async def execute_simple(
        self,
        run_id: int,
        template: JobTemplate,
        job_type: JobType,
        host: Host,
        result: HostJobResult,
        runtime_vars: dict[str, Any],
    ) -> StepOutcome:
        """Runs a single-command job on one host as one implicit step."""
        return await self._execute_step(
            run_id=run_id,
            template=template,
            job_type=job_type,
            host=host,
            result=result,
            step_order=1,
            step_name=template.name,
            command_template_id=template.command_template_id,
            step_vars=None,
            runtime_vars=runtime_vars,
            timeout_override=None,
        )

    async def execute_composite(
        self,
        run_id: int,
        template: JobTemplate,
        job_type: JobType,
        steps: list[JobTemplateStep],
        host: Host,
        result: HostJobResult,
        runtime_vars: dict[str, Any],
    ) -> StepOutcome:
        """Runs the steps of a composite job on one host, strictly in order.

        A failed step without ``continue_on_failure`` stops the host; the
        steps after it are recorded as skipped. The host fails if any step
        failed.
        """
        if not steps:
            return StepOutcome(
                status=HostResultStatus.FAILED,
                error_kind="NoSteps",
                error="Composite job has no steps defined",
            )

        outputs = []
        first_failure: Optional[StepOutcome] = None
        last: Optional[StepOutcome] = None
        attempts = 0
        contacted = False

        for index, step in enumerate(steps):
            if self.is_cancelled(run_id):
                self._skip_steps(result, steps[index:], "Run cancelled", HostResultStatus.CANCELLED)
                return StepOutcome(
                    status=HostResultStatus.CANCELLED,
                    output=STEP_OUTPUT_SEPARATOR.join(outputs),
                    error_kind="Cancelled",
                    error="Run cancelled",
                    attempts=attempts,
                    contacted=contacted,
                )

            logger.debug(f"Job run {run_id}: host {host.name} step {step.step_order} '{step.name}'")
            last = await self._execute_step(
                run_id=run_id,
                template=template,
                job_type=job_type,
                host=host,
                result=result,
                step_order=step.step_order,
                step_name=step.name,
                command_template_id=step.command_template_id,
                step_vars=step.variables,
                runtime_vars=runtime_vars,
                timeout_override=step.timeout_seconds,
            )
            attempts += last.attempts
            contacted = contacted or last.contacted
            if last.output:
                outputs.append(last.output)

            if not last.succeeded:
                if first_failure is None:
                    first_failure = last
                if not step.continue_on_failure:
                    logger.warning(f"Job run {run_id}: host {host.name} step {step.step_order} failed, skipping remaining steps")
                    self._skip_steps(result, steps[index + 1:], f"Step {step.step_order} failed")
                    break
                logger.info(f"Job run {run_id}: host {host.name} step {step.step_order} failed, continuing")

        if first_failure is None:
            status = HostResultStatus.SUCCEEDED
        elif first_failure.status == HostResultStatus.TIMEOUT:
            status = HostResultStatus.TIMEOUT
        else:
            status = HostResultStatus.FAILED
        return StepOutcome(
            status=status,
            output=STEP_OUTPUT_SEPARATOR.join(outputs),
            exit_code=last.exit_code if last else None,
            error_kind=first_failure.error_kind if first_failure else None,
            error=first_failure.error if first_failure else None,
            attempts=attempts,
            contacted=contacted,
        )

    def _skip_steps(
        self,
        result: HostJobResult,
        steps: list[JobTemplateStep],
        reason: str,
        status: HostResultStatus = HostResultStatus.SKIPPED,
    ) -> None:
        for step in steps:
            self.db.add(StepExecutionResult(
                host_result_id=result.id,
                step_order=step.step_order,
                step_name=step.name,
                command_template_id=step.command_template_id,
                status=status.value,
                error=reason,
            ))
        self.db.commit()

    async def _execute_step(
        self,
        run_id: int,
        template: JobTemplate,
        job_type: JobType,
        host: Host,
        result: HostJobResult,
        step_order: int,
        step_name: str,
        command_template_id: Optional[int],
        step_vars: Optional[dict[str, Any]],
        runtime_vars: dict[str, Any],
        timeout_override: Optional[int],
    ) -> StepOutcome:
        step_result = StepExecutionResult(
            host_result_id=result.id,
            step_order=step_order,
            step_name=step_name,
            command_template_id=command_template_id,
            status=HostResultStatus.RUNNING.value,
            started_at=utcnow(),
        )
        self.db.add(step_result)
        self.db.commit()
        started = time.monotonic()

        try:
            command_template = self.templates.select_for_host(host, job_type, command_template_id)
            variables = merge_variables(command_template, template.variables, step_vars, runtime_vars, host)
            rendered = self.templates.render_command(command_template, variables, self.default_timeout, timeout_override)
        except FleetError as e:
            # Selection and rendering failures happen before any remote call.
            logger.warning(f"Job run {run_id}: host {host.name} step {step_order}: {e}")
            outcome = StepOutcome(status=HostResultStatus.FAILED, error_kind=e.kind, error=str(e))
        else:
            step_result.command_template_id = command_template.id
            step_result.command = rendered.command
            credential = self.db.get(Credential, host.credential_id) if host.credential_id else None
            outcome = await self._execute_with_retry(run_id, template, host, credential, rendered)

        step_result.status = outcome.status.value
        step_result.output = outcome.output
        step_result.exit_code = outcome.exit_code
        step_result.error_kind = outcome.error_kind
        step_result.error = outcome.error
        step_result.finished_at = utcnow()
        step_result.duration_ms = int((time.monotonic() - started) * 1000)
        self.db.add(step_result)
        self.db.commit()
        return outcome

    async def _execute_with_retry(self, run_id, template, host, credential, rendered) -> StepOutcome:
        """Executes a rendered command, retrying transient failures.

        Connection failures and timeouts are retried up to ``retry_count``
        times with ``retry_delay_seconds`` between attempts. A non-zero exit
        is final unless its code is listed in ``retryable_exit_codes``.
        """
        max_attempts = 1 + max(template.retry_count or 0, 0)
        retryable_codes = set(template.retryable_exit_codes or [])
        attempts = 0
        contacted = False
        while True:
            attempts += 1
            try:
                output: CommandOutput = await self.command_runner.execute(
                    host, credential, rendered.command, rendered.timeout,
                    env=rendered.env, cwd=rendered.cwd,
                )
                return StepOutcome(
                    status=HostResultStatus.SUCCEEDED,
                    output=output.output,
                    exit_code=output.exit_code,
                    attempts=attempts,
                    contacted=True,
                )
            except ExecutionError as e:
                if e.kind == ExecutionError.NON_ZERO_EXIT:
                    contacted = True
                retryable = e.transient or (e.kind == ExecutionError.NON_ZERO_EXIT and e.exit_code in retryable_codes)
                if not retryable or attempts >= max_attempts or self.is_cancelled(run_id):
                    status = HostResultStatus.TIMEOUT if e.kind == ExecutionError.TIMED_OUT else HostResultStatus.FAILED
                    return StepOutcome(
                        status=status,
                        output=e.output,
                        exit_code=e.exit_code,
                        error_kind=e.kind,
                        error=str(e),
                        attempts=attempts,
                        contacted=contacted,
                    )
                logger.warning(
                    f"Job run {run_id}: attempt {attempts}/{max_attempts} on {host.name} failed ({e.kind}), "
                    f"retrying in {template.retry_delay_seconds}s"
                )
                await asyncio.sleep(template.retry_delay_seconds or 0)


class RunnerService:
    """Creates job runs and drives them in the background.

    Manual triggers and the scheduler both end up here. Runs execute in
    their own task with their own database session so the caller (an HTTP
    request or a scheduler poll) never blocks on remote commands.

    Attributes:
        db (Session): Session of the caller, used to create and cancel runs.
    """
    _semaphore: Optional[asyncio.Semaphore] = None
    _command_runner: Optional[CommandRunner] = None
    _running: dict[int, tuple[asyncio.Task, JobExecutor]] = {}

    def __init__(
        self,
        db: Session,
        command_runner: Optional[CommandRunner] = None,
        channel_provider: Optional[ChannelProvider] = None,
    ):
        self.db = db
        self.command_runner = command_runner or RunnerService._default_command_runner()
        self.channel_provider = channel_provider

    @staticmethod
    def _default_command_runner() -> CommandRunner:
        if RunnerService._command_runner is None:
            RunnerService._command_runner = HostCommandRunner()
        return RunnerService._command_runner

    @staticmethod
    def semaphore() -> asyncio.Semaphore:
        """The global host permit shared by every active run."""
        if RunnerService._semaphore is None:
            RunnerService._semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_HOSTS)
        return RunnerService._semaphore

    def trigger_job(
        self,
        job_template_id: int,
        target_override: Optional[TargetSpec] = None,
        variable_overrides: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        """Starts a standalone run of a job template.

        Manual runs are not bound to any schedule, so they ignore the
        single-flight rule of schedules.

        Args:
            job_template_id: Template to run.
            target_override: Hosts to target; every enabled host when omitted.
            variable_overrides: Runtime variables, the highest precedence layer.

        Returns:
            The new job run id, or None if the template does not exist.
        """
        template = self.db.get(JobTemplate, job_template_id)
        if not template:
            logger.warning(f"Cannot trigger unknown job template {job_template_id}")
            return None
        target = target_override or TargetSpec(kind=TargetKind.ALL)
        run = JobRun(
            job_template_id=template.id,
            trigger="manual",
            target_kind=target.kind.value,
            target_values=list(target.values),
            variables=dict(variable_overrides or {}),
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        logger.info(f"Manual trigger of '{template.name}' created job run {run.id}")
        self.launch(run.id)
        return run.id

    def launch(self, run_id: int) -> asyncio.Task:
        """Executes an already-created pending run in a background task."""
        bind = self.db.get_bind()
        session = Session(bind)
        executor = JobExecutor(
            session,
            self.command_runner,
            RunnerService.semaphore(),
            notifier=NotificationService(session, self.channel_provider),
        )
        task = asyncio.create_task(self._execute_in_background(run_id, executor))
        RunnerService._running[run_id] = (task, executor)
        return task

    async def _execute_in_background(self, run_id: int, executor: JobExecutor) -> None:
        try:
            run = await executor.execute_run(run_id)
            if run is not None and run.schedule_id is not None:
                self._record_schedule_outcome(executor.db, run)
        except Exception:
            logger.exception(f"Background execution of job run {run_id} failed")
        finally:
            RunnerService._running.pop(run_id, None)
            executor.db.close()

    @staticmethod
    def _record_schedule_outcome(db: Session, run: JobRun) -> None:
        succeeded = run.status == JobRunStatus.SUCCEEDED.value
        counter = JobSchedule.success_count if succeeded else JobSchedule.failure_count
        db.exec(
            update(JobSchedule)
            .where(JobSchedule.id == run.schedule_id)
            .values({counter: counter + 1, JobSchedule.last_run_status: run.status})
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def cancel_job_run(self, run_id: int) -> CancelResult:
        """Requests cancellation of a pending or running run.

        The status flips to cancelled at once and no further hosts or steps
        are dispatched. Commands already sent to a host are detached from,
        not killed.
        """
        run = self.db.get(JobRun, run_id)
        if not run:
            return CancelResult.NOT_FOUND
        if not transition_run(self.db, run_id, JobRunStatus.CANCELLED, IN_FLIGHT_STATUSES, finished_at=utcnow(),
                              error_kind="Cancelled", error="Cancelled by request"):
            return CancelResult.ALREADY_TERMINAL

        entry = RunnerService._running.get(run_id)
        if entry:
            entry[1].cancel_hosts()
        logger.info(f"Job run {run_id} cancelled")
        return CancelResult.OK

    @staticmethod
    async def wait_for_run(run_id: int) -> None:
        entry = RunnerService._running.get(run_id)
        if entry:
            await asyncio.shield(entry[0])

    @staticmethod
    def running_count() -> int:
        return len(RunnerService._running)

    @staticmethod
    async def shutdown(timeout: float) -> None:
        """Waits for in-flight runs, then closes pooled connections."""
        tasks = [task for task, _ in RunnerService._running.values()]
        if tasks:
            logger.info(f"Waiting up to {timeout}s for {len(tasks)} running job(s)")
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning(f"Shutdown timeout reached with {len(pending)} job(s) still running")
        if RunnerService._command_runner is not None:
            await RunnerService._command_runner.close()

    def cleanup_started_jobs(self) -> None:
        """Force-fails runs left pending or running by a previous process.

        Without this, a schedule whose run was interrupted by a restart would
        stay blocked by its own in-flight run forever.
        """
        stale = self.db.exec(select(JobRun).where(JobRun.status.in_(IN_FLIGHT_STATUSES))).all()
        if not stale:
            return
        logger.warning(f"Found {len(stale)} interrupted job run(s), marking them failed")
        for run in stale:
            transition_run(self.db, run.id, JobRunStatus.FAILED, IN_FLIGHT_STATUSES, finished_at=utcnow(),
                           error_kind="Interrupted", error="Job interrupted by server restart")
        for result in self.db.exec(
            select(HostJobResult)
            .where(HostJobResult.job_run_id.in_([r.id for r in stale]))
            .where(HostJobResult.status.in_([HostResultStatus.PENDING.value, HostResultStatus.RUNNING.value]))
        ).all():
            result.status = HostResultStatus.CANCELLED.value
            result.error_kind = "Interrupted"
            result.finished_at = utcnow()
            self.db.add(result)
        self.db.commit()
