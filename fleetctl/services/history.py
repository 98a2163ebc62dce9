import logging
from datetime import timedelta
from typing import Optional
from sqlalchemy import update
from sqlmodel import Session, select, desc, delete, func
from fleetctl.core.config import get_settings
from fleetctl.models import (
    Host,
    HostJobResult,
    JobRun,
    NotificationLogEntry,
    StepExecutionResult,
    IN_FLIGHT_STATUSES,
)
from fleetctl.schemas.job import (
    HostResultRead,
    JobRunDetail,
    JobRunPage,
    JobRunSummary,
    StepResultRead,
    TargetSpec,
)
from fleetctl.utils.time import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)


class HistoryService:
    """Read access to past job runs and pruning of old ones."""
    def __init__(self, db: Session):
        self.db = db

    def get_job_run(self, run_id: int) -> Optional[JobRunDetail]:
        """Fetches a run with its host results and their step results.

        Args:
            run_id: The unique ID of the job run.

        Returns:
            The detailed view, or None if the run does not exist.
        """
        run = self.db.get(JobRun, run_id)
        if not run:
            return None

        rows = self.db.exec(
            select(HostJobResult, Host)
            .join(Host, Host.id == HostJobResult.host_id, isouter=True)
            .where(HostJobResult.job_run_id == run_id)
            .order_by(HostJobResult.id)
        ).all()
        result_ids = [result.id for result, _ in rows]
        steps_by_result: dict[int, list[StepResultRead]] = {rid: [] for rid in result_ids}
        if result_ids:
            steps = self.db.exec(
                select(StepExecutionResult)
                .where(StepExecutionResult.host_result_id.in_(result_ids))
                .order_by(StepExecutionResult.step_order, StepExecutionResult.id)
            ).all()
            for step in steps:
                steps_by_result[step.host_result_id].append(StepResultRead.model_validate(step, from_attributes=True))

        hosts = []
        for result, host in rows:
            read = HostResultRead.model_validate(result, from_attributes=True)
            read.host_name = host.name if host else None
            read.steps = steps_by_result[result.id]
            hosts.append(read)

        summary = JobRunSummary.model_validate(run, from_attributes=True)
        return JobRunDetail(
            **summary.model_dump(),
            target=TargetSpec(kind=run.target_kind, values=run.target_values or []),
            variables=run.variables or {},
            notification_sent=run.notification_sent,
            notification_error=run.notification_error,
            hosts=hosts,
        )

    def list_job_runs(
        self,
        status: Optional[str] = None,
        job_template_id: Optional[int] = None,
        schedule_id: Optional[int] = None,
        trigger: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> JobRunPage:
        """Lists runs newest first with optional filters.

        Args:
            status: Exact run status, or 'all'.
            job_template_id: Only runs of this template.
            schedule_id: Only runs fired by this schedule.
            trigger: 'manual' or 'schedule'.
            page: 1-based page number.
            limit: Page size.

        Returns:
            One page of summaries plus the filtered total.
        """
        query = select(JobRun).order_by(desc(JobRun.created_at), desc(JobRun.id))
        if status and status != 'all':
            query = query.where(JobRun.status == status)
        if job_template_id is not None:
            query = query.where(JobRun.job_template_id == job_template_id)
        if schedule_id is not None:
            query = query.where(JobRun.schedule_id == schedule_id)
        if trigger:
            query = query.where(JobRun.trigger == trigger)

        count_query = select(func.count()).select_from(query.subquery())
        total = self.db.exec(count_query).one()

        page = max(page, 1)
        runs = self.db.exec(query.offset((page - 1) * limit).limit(limit)).all()
        return JobRunPage(
            items=[JobRunSummary.model_validate(run, from_attributes=True) for run in runs],
            total=total,
            page=page,
            limit=limit,
        )

    def delete_runs(self, run_ids: list[int]) -> None:
        """Deletes runs along with their host and step rows."""
        if not run_ids:
            return
        result_ids = self.db.exec(select(HostJobResult.id).where(HostJobResult.job_run_id.in_(run_ids))).all()
        if result_ids:
            self.db.exec(delete(StepExecutionResult).where(StepExecutionResult.host_result_id.in_(result_ids)))
        self.db.exec(delete(HostJobResult).where(HostJobResult.job_run_id.in_(run_ids)))
        # The notification log is append-only, entries only lose their run link.
        self.db.exec(
            update(NotificationLogEntry)
            .where(NotificationLogEntry.job_run_id.in_(run_ids))
            .values(job_run_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.exec(delete(JobRun).where(JobRun.id.in_(run_ids)))

    def apply_retention_policies(
        self,
        days: Optional[int] = None,
        max_runs: Optional[int] = None,
    ) -> int:
        """Prunes finished runs by age and by count per job template.

        Pending and running runs are never pruned.

        Args:
            days: Age limit, defaults to RETENTION_DAYS.
            max_runs: Runs kept per job template, defaults to RETENTION_MAX_RUNS.

        Returns:
            The number of runs deleted.
        """
        days = settings.RETENTION_DAYS if days is None else days
        max_runs = settings.RETENTION_MAX_RUNS if max_runs is None else max_runs
        finished = JobRun.status.not_in(IN_FLIGHT_STATUSES)

        doomed: set[int] = set()
        if days > 0:
            cutoff = utcnow() - timedelta(days=days)
            doomed.update(self.db.exec(
                select(JobRun.id).where(finished).where(JobRun.created_at < cutoff)
            ).all())

        if max_runs > 0:
            template_ids = self.db.exec(select(JobRun.job_template_id).distinct()).all()
            for template_id in template_ids:
                keep_ids = self.db.exec(
                    select(JobRun.id)
                    .where(JobRun.job_template_id == template_id)
                    .order_by(desc(JobRun.created_at), desc(JobRun.id))
                    .limit(max_runs)
                ).all()
                doomed.update(self.db.exec(
                    select(JobRun.id)
                    .where(JobRun.job_template_id == template_id)
                    .where(finished)
                    .where(JobRun.id.not_in(keep_ids))
                ).all())

        if doomed:
            self.delete_runs(sorted(doomed))
            logger.info(f"Retention removed {len(doomed)} job run(s)")
        self.db.commit()
        return len(doomed)
