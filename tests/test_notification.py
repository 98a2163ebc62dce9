from datetime import timedelta

import pytest
from sqlmodel import select

from fleetctl.models import HostJobResult, NotificationLogEntry
from fleetctl.services import NotificationService
from fleetctl.services.notification import AppriseChannelProvider, severity_for
from fleetctl.utils.time import utcnow
from tests.fakes import FakeChannelProvider


@pytest.fixture
def docker(factory):
    return factory.job_type("docker")


@pytest.fixture
def job(factory, docker):
    return factory.job(docker, factory.command(docker, "docker ps"), name="container check")


def finished_run(factory, job, status, hosts, outcomes=None):
    started = utcnow() - timedelta(seconds=42)
    run = factory.run(job, status=status, started_at=started, finished_at=started + timedelta(seconds=42))
    outcomes = outcomes or [status if status in ("succeeded", "failed") else "failed"] * len(hosts)
    for host, outcome in zip(hosts, outcomes):
        factory._save(HostJobResult(
            job_run_id=run.id,
            host_id=host.id,
            status=outcome,
            exit_code=0 if outcome == "succeeded" else 1,
            output="x" * 500,
            error=None if outcome == "succeeded" else "container exited",
        ))
    return run


def log_entries(session, run_id=None):
    session.expire_all()
    query = select(NotificationLogEntry).order_by(NotificationLogEntry.id)
    if run_id is not None:
        query = query.where(NotificationLogEntry.job_run_id == run_id)
    return session.exec(query).all()


def test_severity_order():
    assert severity_for("failed") > severity_for("timeout") > severity_for("partial") > severity_for("succeeded")
    assert severity_for("cancelled") == 2


@pytest.mark.asyncio
async def test_failure_is_delivered_and_logged(session, factory, job):
    host = factory.host("web1")
    ops = factory.channel("ops", default_priority=4)
    factory.policy(channels=[ops])
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "failed", [host])

    assert await NotificationService(session, provider).dispatch(run.id) is True

    [(channel_name, message)] = provider.sent
    assert channel_name == "ops"
    assert message.priority == 4
    assert message.severity == 5
    assert "container check" in message.title
    assert "web1" in message.body
    [entry] = log_entries(session, run.id)
    assert entry.outcome == "delivered"
    assert entry.channel_id == ops.id
    session.refresh(run)
    assert run.notification_sent is True
    assert run.notification_error is None


@pytest.mark.asyncio
async def test_throttle_after_max_per_hour(session, factory, job):
    host = factory.host("web1")
    ops = factory.channel("ops")
    policy = factory.policy(channels=[ops], max_per_hour=1)
    provider = FakeChannelProvider()
    service = NotificationService(session, provider)

    first = finished_run(factory, job, "failed", [host])
    second = finished_run(factory, job, "failed", [host])
    await service.dispatch(first.id)
    await service.dispatch(second.id)

    assert len(provider.sent) == 1
    [delivered] = log_entries(session, first.id)
    [throttled] = log_entries(session, second.id)
    assert delivered.outcome == "delivered"
    assert throttled.outcome == "throttled"
    assert throttled.channel_id is None
    assert throttled.policy_id == policy.id


@pytest.mark.asyncio
async def test_throttle_window_is_one_hour(session, factory, job):
    host = factory.host("web1")
    ops = factory.channel("ops")
    policy = factory.policy(channels=[ops], max_per_hour=1)
    old_run = finished_run(factory, job, "failed", [host])
    factory._save(NotificationLogEntry(
        policy_id=policy.id, channel_id=ops.id, job_run_id=old_run.id,
        outcome="delivered", created_at=utcnow() - timedelta(hours=2),
    ))
    provider = FakeChannelProvider()

    run = finished_run(factory, job, "failed", [host])
    await NotificationService(session, provider).dispatch(run.id)

    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_failing_channel_does_not_block_others(session, factory, job):
    host = factory.host("web1")
    broken = factory.channel("broken")
    ops = factory.channel("ops")
    factory.policy(channels=[broken, ops])
    provider = FakeChannelProvider(failing={"broken"})
    run = finished_run(factory, job, "failed", [host])

    assert await NotificationService(session, provider).dispatch(run.id) is True

    assert [name for name, _ in provider.sent] == ["ops"]
    entries = log_entries(session, run.id)
    assert [(e.channel_id, e.outcome) for e in entries] == [(broken.id, "failed"), (ops.id, "delivered")]
    assert "broken is down" in entries[0].error
    session.refresh(run)
    assert run.notification_sent is True
    assert "broken" in run.notification_error


@pytest.mark.asyncio
async def test_success_not_reported_by_default(session, factory, job):
    host = factory.host("web1")
    factory.policy(channels=[factory.channel("ops")])
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "succeeded", [host])

    assert await NotificationService(session, provider).dispatch(run.id) is False
    assert provider.sent == []
    assert log_entries(session) == []


@pytest.mark.asyncio
async def test_cancelled_runs_use_failure_trigger(session, factory, job):
    host = factory.host("web1")
    factory.policy(channels=[factory.channel("ops")], on_failure=True)
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "cancelled", [host], outcomes=["cancelled"])

    await NotificationService(session, provider).dispatch(run.id)
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_min_severity_filters_partial_runs(session, factory, job):
    a = factory.host("a")
    b = factory.host("b")
    factory.policy(channels=[factory.channel("ops")], min_severity=4)
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "partial", [a, b], outcomes=["succeeded", "failed"])

    await NotificationService(session, provider).dispatch(run.id)
    assert provider.sent == []


@pytest.mark.asyncio
async def test_filters_match_job_type_hosts_and_tags(session, factory, job):
    host = factory.host("web1", tags=["prod"])
    ops = factory.channel("ops")
    factory.policy("by type", channels=[ops], job_type_filter=["docker"])
    factory.policy("other type", channels=[ops], job_type_filter=["apt"])
    factory.policy("by tag", channels=[ops], tag_filter=["prod", "edge"])
    factory.policy("other tag", channels=[ops], tag_filter=["staging"])
    factory.policy("by host", channels=[ops], host_filter=[host.id])
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "failed", [host])

    await NotificationService(session, provider).dispatch(run.id)
    assert len(provider.sent) == 3


@pytest.mark.asyncio
async def test_template_policy_bypasses_filters(session, factory, docker):
    host = factory.host("web1")
    pinned = factory.policy("pinned", channels=[factory.channel("ops")], job_type_filter=["apt"])
    job = factory.job(docker, factory.command(docker, "docker ps"), notification_policy_id=pinned.id)
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "failed", [host])

    await NotificationService(session, provider).dispatch(run.id)
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_disabled_channels_are_skipped(session, factory, job):
    host = factory.host("web1")
    off = factory.channel("off", enabled=False)
    on = factory.channel("on")
    factory.policy(channels=[off, on])
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "failed", [host])

    await NotificationService(session, provider).dispatch(run.id)
    assert [name for name, _ in provider.sent] == ["on"]
    assert len(log_entries(session, run.id)) == 1


@pytest.mark.asyncio
async def test_custom_templates_and_snippet_truncation(session, factory, job):
    host = factory.host("web1")
    factory.policy(
        channels=[factory.channel("ops")],
        title_template="{{ job_name }}: {{ failure_count }}/{{ total_hosts }} failed",
        body_template="{% for r in host_results %}{{ r.host_name }}={{ r.output | length }}{% endfor %}",
    )
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "failed", [host])

    await NotificationService(session, provider).dispatch(run.id)
    [(_, message)] = provider.sent
    assert message.title == "container check: 1/1 failed"
    # 200 characters plus the ellipsis
    assert message.body == "web1=203"


@pytest.mark.asyncio
async def test_render_error_is_logged_per_channel(session, factory, job):
    host = factory.host("web1")
    factory.policy(channels=[factory.channel("a"), factory.channel("b")], body_template="{{ no_such_field }}")
    provider = FakeChannelProvider()
    run = finished_run(factory, job, "failed", [host])

    assert await NotificationService(session, provider).dispatch(run.id) is False
    assert provider.sent == []
    entries = log_entries(session, run.id)
    assert [e.outcome for e in entries] == ["failed", "failed"]
    assert all("no_such_field" in e.error for e in entries)


@pytest.mark.asyncio
async def test_non_terminal_runs_are_ignored(session, factory, job):
    factory.policy(channels=[factory.channel("ops")])
    run = factory.run(job, status="running")
    assert await NotificationService(session, FakeChannelProvider()).dispatch(run.id) is False


def test_apprise_notify_types():
    import apprise
    assert AppriseChannelProvider.notify_type(1) == apprise.NotifyType.SUCCESS
    assert AppriseChannelProvider.notify_type(3) == apprise.NotifyType.WARNING
    assert AppriseChannelProvider.notify_type(5) == apprise.NotifyType.FAILURE


@pytest.mark.asyncio
async def test_apprise_channel_without_url_is_unavailable(factory):
    from fleetctl.core.errors import NotificationError
    from fleetctl.services.notification import NotificationMessage
    channel = factory.channel("empty", config={})
    with pytest.raises(NotificationError) as exc:
        await AppriseChannelProvider().send(channel, NotificationMessage("t", "b", 3, 5))
    assert exc.value.kind == "ChannelUnavailable"
