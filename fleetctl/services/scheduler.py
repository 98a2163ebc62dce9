from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from typing import Optional
from sqlalchemy import update
from sqlmodel import Session, select
import logging
from datetime import datetime, timedelta
from fleetctl.core.config import get_settings
from fleetctl.core.errors import SchedulingError
from fleetctl.models import JobRun, JobSchedule, IN_FLIGHT_STATUSES
from fleetctl.services.history import HistoryService
from fleetctl.services.runner import RunnerService
from fleetctl.utils.time import utcnow, as_utc, to_naive_utc

settings = get_settings()
logger = logging.getLogger(__name__)

# Schedules live in our own tables, so APScheduler only drives the poll
# loop and housekeeping; it does not persist anything itself.
scheduler = AsyncIOScheduler()

POLL_JOB_ID = "poll_schedules"
RETENTION_JOB_ID = "apply_retention"


# Standard cron numbers weekdays from 0 = Sunday (7 is Sunday too), while
# APScheduler numbers them from 0 = Monday, so numeric fields become names.
CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def translate_day_of_week(field: str) -> str:
    """Rewrites a cron day-of-week field into APScheduler weekday names.

    Ranges and steps are expanded into explicit day lists because a cron
    range such as ``0-2`` starts on Sunday, which APScheduler ranges cannot
    express. Named days and ``*`` pass through unchanged.
    """
    days: list[str] = []
    for part in field.split(","):
        value, _, step = part.partition("/")
        if value == "*":
            if not step:
                return field
            first, last = 0, 6
        elif "-" in value:
            first, _, last = value.partition("-")
            if not (first.isdigit() and last.isdigit()):
                days.append(part)
                continue
            first, last = int(first), int(last)
        elif value.isdigit():
            first = last = int(value)
            if step:
                last = 6
        else:
            days.append(part)
            continue

        if not step.isdigit() and step:
            raise ValueError(f"Invalid step '{step}' in day of week field '{field}'")
        if first > last or last > 7:
            raise ValueError(f"Invalid day of week range '{part}'")
        for number in range(first, last + 1, int(step or 1)):
            name = CRON_WEEKDAYS[number]
            if name not in days:
                days.append(name)
    return ",".join(days)


def next_occurrence(expression: str, timezone: str, after: datetime) -> datetime:
    """Returns the first fire time of a cron expression strictly after ``after``.

    Args:
        expression: Standard 5-field cron string.
        timezone: IANA timezone name the expression is evaluated in.
        after: Reference instant, naive UTC or timezone-aware.

    Returns:
        The next fire time as naive UTC.

    Raises:
        SchedulingError: If the expression or timezone is invalid.
    """
    try:
        fields = expression.split()
        if len(fields) == 5:
            fields[4] = translate_day_of_week(fields[4])
        trigger = CronTrigger.from_crontab(" ".join(fields), timezone=timezone or "UTC")
    except (ValueError, KeyError, TypeError) as e:
        raise SchedulingError(f"Invalid cron expression '{expression}' ({timezone}): {e}") from e
    # Cron fires on whole seconds, so nudging past `after` makes the result strictly later.
    fire_time = trigger.get_next_fire_time(None, as_utc(after) + timedelta(microseconds=1))
    if fire_time is None:
        raise SchedulingError(f"Cron expression '{expression}' never fires")
    return to_naive_utc(fire_time)


async def periodic_schedule_poll() -> None:
    """Scheduler entry point running one poll cycle with a fresh session."""
    from fleetctl.core.database import engine
    with Session(engine) as session:
        SchedulerService.poll_schedules(session)


async def periodic_retention() -> None:
    from fleetctl.core.database import engine
    logger.info("Scheduler: applying history retention")
    with Session(engine) as session:
        HistoryService(session).apply_retention_policies()


class SchedulerService:
    """Turns persisted cron schedules into job runs.

    A single APScheduler interval job polls the schedule table. Claims go
    through a version-guarded UPDATE, so two pollers sharing one database
    never start the same occurrence twice.
    """
    @staticmethod
    def start(poll_interval: Optional[int] = None) -> None:
        if scheduler.running:
            return
        scheduler.start()
        scheduler.add_job(
            periodic_schedule_poll,
            IntervalTrigger(seconds=poll_interval or settings.SCHEDULER_POLL_INTERVAL),
            id=POLL_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            periodic_retention,
            IntervalTrigger(days=1),
            id=RETENTION_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"Scheduler started, polling every {poll_interval or settings.SCHEDULER_POLL_INTERVAL}s")

    @staticmethod
    async def shutdown(timeout: Optional[float] = None) -> None:
        """Stops polling, then gives running jobs up to ``timeout`` seconds to finish."""
        if scheduler.running:
            scheduler.shutdown(wait=False)
        await RunnerService.shutdown(timeout if timeout is not None else settings.SCHEDULER_SHUTDOWN_TIMEOUT)
        logger.info("Scheduler stopped")

    @staticmethod
    def is_running() -> bool:
        return scheduler.running

    @staticmethod
    def poll_schedules(
        db: Session,
        now: Optional[datetime] = None,
        runner: Optional[RunnerService] = None,
    ) -> list[int]:
        """Runs one poll cycle over every enabled schedule.

        A broken schedule is flagged unhealthy and skipped; it never stops
        the rest of the cycle.

        Args:
            db: Session used for claims.
            now: Reference time (naive UTC), defaults to the current time.
            runner: Service that launches claimed runs.

        Returns:
            Ids of the job runs created by this cycle.
        """
        now = now or utcnow()
        runner = runner or RunnerService(db)
        created = []
        schedules = db.exec(
            select(JobSchedule).where(JobSchedule.enabled == True).order_by(JobSchedule.id)  # noqa: E712
        ).all()
        for schedule in schedules:
            try:
                run_id = SchedulerService._poll_one(db, schedule, now)
            except Exception:
                db.rollback()
                logger.exception(f"Scheduler: polling schedule {schedule.id} failed")
                continue
            if run_id is not None:
                created.append(run_id)
                runner.launch(run_id)
        return created

    @staticmethod
    def _poll_one(db: Session, schedule: JobSchedule, now: datetime) -> Optional[int]:
        schedule_id = schedule.id
        try:
            due = schedule.next_run_at or next_occurrence(
                schedule.cron_expression, schedule.timezone, schedule.last_run_at or schedule.created_at
            )
            following = next_occurrence(schedule.cron_expression, schedule.timezone, now)
        except SchedulingError as e:
            logger.error(f"Scheduler: schedule '{schedule.name}' ({schedule_id}) is unhealthy: {e}")
            if schedule.healthy or schedule.last_error != str(e):
                schedule.healthy = False
                schedule.last_error = str(e)
                db.add(schedule)
                db.commit()
            return None

        if not schedule.healthy:
            logger.info(f"Scheduler: schedule '{schedule.name}' ({schedule_id}) is healthy again")
            schedule.healthy = True
            schedule.last_error = None
            db.add(schedule)
            db.commit()

        if due > now:
            if schedule.next_run_at is None:
                schedule.next_run_at = due
                db.add(schedule)
                db.commit()
            return None

        in_flight = db.exec(
            select(JobRun.id)
            .where(JobRun.schedule_id == schedule_id)
            .where(JobRun.status.in_(IN_FLIGHT_STATUSES))
        ).first()
        if in_flight is not None:
            logger.info(f"Scheduler: schedule '{schedule.name}' is due but run {in_flight} is still in flight, skipping")
            return None

        claimed = db.exec(
            update(JobSchedule)
            .where(JobSchedule.id == schedule_id)
            .where(JobSchedule.version == schedule.version)
            .values(version=JobSchedule.version + 1, last_run_at=now, next_run_at=following)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            logger.info(f"Scheduler: schedule '{schedule.name}' was claimed by another poller")
            return None

        run = JobRun(
            schedule_id=schedule_id,
            job_template_id=schedule.job_template_id,
            trigger="schedule",
            target_kind=schedule.target_kind,
            target_values=list(schedule.target_values or []),
        )
        db.add(run)
        db.commit()
        db.refresh(run)
        logger.info(f"Scheduler: schedule '{schedule.name}' fired, created job run {run.id}, next at {following}")
        return run.id
