import asyncio

import pytest
from sqlmodel import Session, create_engine

from fleetctl.core.database import create_db_and_tables
from fleetctl.models import (
    CommandTemplate,
    Host,
    JobRun,
    JobSchedule,
    JobTemplate,
    JobTemplateStep,
    JobType,
    NotificationChannel,
    NotificationPolicy,
    NotificationPolicyChannel,
)
from fleetctl.services import JobExecutor, NotificationService, RunnerService
from tests.fakes import FakeChannelProvider, FakeCommandRunner


class Factory:
    def __init__(self, session: Session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def host(self, name, **kwargs):
        kwargs.setdefault("hostname", f"{name}.example.com")
        kwargs.setdefault("os_family", "debian")
        return self._save(Host(name=name, **kwargs))

    def job_type(self, name="docker", **kwargs):
        return self._save(JobType(name=name, **kwargs))

    def command(self, job_type, command, name="default", **kwargs):
        return self._save(CommandTemplate(job_type_id=job_type.id, name=name, command=command, **kwargs))

    def job(self, job_type, command=None, name="job", **kwargs):
        return self._save(JobTemplate(
            name=name,
            job_type_id=job_type.id,
            command_template_id=command.id if command else None,
            **kwargs,
        ))

    def step(self, job, command, step_order, name=None, **kwargs):
        return self._save(JobTemplateStep(
            job_template_id=job.id,
            command_template_id=command.id,
            step_order=step_order,
            name=name or f"step {step_order}",
            **kwargs,
        ))

    def schedule(self, job, cron="*/5 * * * *", name="every five", **kwargs):
        return self._save(JobSchedule(name=name, job_template_id=job.id, cron_expression=cron, **kwargs))

    def run(self, job, **kwargs):
        return self._save(JobRun(job_template_id=job.id, **kwargs))

    def channel(self, name, **kwargs):
        kwargs.setdefault("kind", "webhook")
        kwargs.setdefault("config", {"url": f"json://{name}.example.com"})
        return self._save(NotificationChannel(name=name, **kwargs))

    def policy(self, name="alerts", channels=(), **kwargs):
        policy = self._save(NotificationPolicy(name=name, **kwargs))
        for position, channel in enumerate(channels):
            self._save(NotificationPolicyChannel(policy_id=policy.id, channel_id=channel.id, position=position))
        return policy


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def factory(session):
    return Factory(session)


@pytest.fixture
def command_runner():
    return FakeCommandRunner()


@pytest.fixture
def channel_provider():
    return FakeChannelProvider()


@pytest.fixture
def executor(session, command_runner, channel_provider):
    return JobExecutor(
        session,
        command_runner,
        asyncio.Semaphore(5),
        notifier=NotificationService(session, channel_provider),
    )


@pytest.fixture(autouse=True)
def reset_runner_state():
    """RunnerService keeps process-wide handles; each test gets fresh ones."""
    RunnerService._semaphore = None
    RunnerService._command_runner = None
    RunnerService._running.clear()
    yield
    RunnerService._running.clear()
