import asyncio

import pytest
from sqlmodel import select

from fleetctl.core.errors import ExecutionError
from fleetctl.models import HostJobResult, JobRun, StepExecutionResult
from fleetctl.services import CancelResult, JobExecutor, RunnerService
from fleetctl.services.remote import CommandOutput
from fleetctl.services.runner import aggregate_status
from tests.fakes import FakeChannelProvider, FakeCommandRunner


def host_results(session, run_id):
    session.expire_all()
    return session.exec(
        select(HostJobResult).where(HostJobResult.job_run_id == run_id).order_by(HostJobResult.id)
    ).all()


def step_results(session, host_result_id):
    return session.exec(
        select(StepExecutionResult)
        .where(StepExecutionResult.host_result_id == host_result_id)
        .order_by(StepExecutionResult.step_order)
    ).all()


@pytest.fixture
def docker(factory):
    return factory.job_type("docker")


def test_aggregation_law():
    assert aggregate_status(["succeeded", "succeeded"]) == "succeeded"
    assert aggregate_status(["succeeded", "failed"]) == "partial"
    assert aggregate_status(["succeeded", "cancelled"]) == "partial"
    assert aggregate_status(["failed", "timeout"]) == "failed"
    assert aggregate_status([]) == "failed"


@pytest.mark.asyncio
async def test_simple_job_succeeds_on_every_host(session, factory, executor, command_runner, docker):
    ps = factory.command(docker, "docker ps")
    job = factory.job(docker, ps)
    for name in ("a", "b", "c"):
        factory.host(name)
    run = factory.run(job)

    run = await executor.execute_run(run.id)

    assert run.status == "succeeded"
    assert run.started_at is not None and run.finished_at is not None
    results = host_results(session, run.id)
    assert len(results) == 3
    assert all(r.status == "succeeded" and r.attempts == 1 for r in results)
    assert sorted(c["host"] for c in command_runner.calls) == ["a", "b", "c"]
    steps = step_results(session, results[0].id)
    assert len(steps) == 1
    assert steps[0].step_order == 1
    assert steps[0].command == "docker ps"


@pytest.mark.asyncio
async def test_mixed_outcomes_are_partial_and_update_reachability(session, factory, executor, command_runner, docker):
    def handler(host, command):
        if host.name == "down":
            raise ExecutionError("connection refused", ExecutionError.CONNECTION_FAILED)
        return CommandOutput(exit_code=0, stdout="up")

    command_runner.handler = handler
    job = factory.job(docker, factory.command(docker, "uptime"))
    up = factory.host("up")
    down = factory.host("down")
    run = factory.run(job)

    run = await executor.execute_run(run.id)

    assert run.status == "partial"
    by_host = {r.host_id: r for r in host_results(session, run.id)}
    assert by_host[up.id].status == "succeeded"
    assert by_host[down.id].status == "failed"
    assert by_host[down.id].error_kind == "ConnectionFailed"
    session.refresh(up)
    session.refresh(down)
    assert up.status == "reachable" and up.last_seen_at is not None
    assert down.status == "unreachable"


@pytest.mark.asyncio
async def test_all_hosts_failing_fails_the_run(session, factory, executor, command_runner, docker):
    def handler(host, command):
        raise ExecutionError("exit 1", ExecutionError.NON_ZERO_EXIT, exit_code=1, output="boom")

    command_runner.handler = handler
    job = factory.job(docker, factory.command(docker, "false"))
    factory.host("a")
    factory.host("b")
    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "failed"
    results = host_results(session, run.id)
    assert all(r.exit_code == 1 and r.output == "boom" for r in results)


@pytest.mark.asyncio
async def test_no_targets_fails_without_host_results(session, factory, executor, command_runner, docker):
    job = factory.job(docker, factory.command(docker, "docker ps"))
    factory.host("a", tags=["web"])
    run = factory.run(job, target_kind="tags", target_values=["db"])

    run = await executor.execute_run(run.id)

    assert run.status == "failed"
    assert run.error_kind == "NoTargets"
    assert host_results(session, run.id) == []
    assert command_runner.calls == []


@pytest.mark.asyncio
async def test_unresolved_variable_never_reaches_the_host(session, factory, executor, command_runner, docker):
    job = factory.job(docker, factory.command(docker, "docker restart {{ container }}"))
    factory.host("a")
    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "failed"
    assert command_runner.calls == []
    result = host_results(session, run.id)[0]
    assert result.error_kind == "UnresolvedVariable"
    assert "container" in result.error


@pytest.mark.asyncio
async def test_runtime_variables_win(session, factory, executor, command_runner, docker):
    cmd = factory.command(docker, "docker restart {{ container }}", variables={"container": "web"})
    job = factory.job(docker, cmd, variables={"container": "api"})
    factory.host("a")
    run = factory.run(job, variables={"container": "worker"})

    await executor.execute_run(run.id)
    assert command_runner.commands_for("a") == ["docker restart worker"]


@pytest.mark.asyncio
async def test_no_applicable_template_fails_only_that_host(session, factory, executor, command_runner, docker):
    cmd = factory.command(docker, "apt-get upgrade -y", os_filter=["debian"])
    job = factory.job(docker, cmd)
    factory.host("deb", os_family="debian")
    factory.host("rh", os_family="fedora")
    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "partial"
    failed = [r for r in host_results(session, run.id) if r.status == "failed"]
    assert len(failed) == 1
    assert failed[0].error_kind == "NoApplicableTemplate"


@pytest.mark.asyncio
async def test_transient_errors_are_retried(session, factory, executor, command_runner, docker):
    attempts = {"n": 0}

    def handler(host, command):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ExecutionError("timed out", ExecutionError.TIMED_OUT)
        return CommandOutput(exit_code=0, stdout="done")

    command_runner.handler = handler
    job = factory.job(docker, factory.command(docker, "docker pull nginx"), retry_count=2, retry_delay_seconds=0)
    factory.host("a")
    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "succeeded"
    assert host_results(session, run.id)[0].attempts == 3


@pytest.mark.asyncio
async def test_retries_are_bounded(session, factory, executor, command_runner, docker):
    def handler(host, command):
        raise ExecutionError("refused", ExecutionError.CONNECTION_FAILED)

    command_runner.handler = handler
    job = factory.job(docker, factory.command(docker, "docker ps"), retry_count=1, retry_delay_seconds=0)
    factory.host("a")
    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "failed"
    assert len(command_runner.calls) == 2
    assert host_results(session, run.id)[0].attempts == 2


@pytest.mark.asyncio
async def test_non_zero_exit_retried_only_when_listed(session, factory, executor, command_runner, docker):
    def handler(host, command):
        code = 75 if host.name == "a" else 1
        raise ExecutionError(f"exit {code}", ExecutionError.NON_ZERO_EXIT, exit_code=code)

    command_runner.handler = handler
    job = factory.job(
        docker,
        factory.command(docker, "docker pull nginx"),
        retry_count=2,
        retry_delay_seconds=0,
        retryable_exit_codes=[75],
    )
    factory.host("a")
    factory.host("b")
    await executor.execute_run(factory.run(job).id)

    assert len(command_runner.commands_for("a")) == 3
    assert len(command_runner.commands_for("b")) == 1


@pytest.mark.asyncio
async def test_failed_step_skips_the_rest(session, factory, executor, command_runner, docker):
    def handler(host, command):
        if command == "step-a":
            raise ExecutionError("exit 2", ExecutionError.NON_ZERO_EXIT, exit_code=2)
        return CommandOutput(exit_code=0, stdout=command)

    command_runner.handler = handler
    job = factory.job(docker, is_composite=True)
    factory.step(job, factory.command(docker, "step-a", name="a"), 1, name="A")
    factory.step(job, factory.command(docker, "step-b", name="b"), 2, name="B")
    factory.host("h")

    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "failed"
    result = host_results(session, run.id)[0]
    assert result.status == "failed"
    steps = step_results(session, result.id)
    assert [(s.step_name, s.status) for s in steps] == [("A", "failed"), ("B", "skipped")]
    assert command_runner.commands_for("h") == ["step-a"]


@pytest.mark.asyncio
async def test_continue_on_failure_runs_later_steps(session, factory, executor, command_runner, docker):
    def handler(host, command):
        if command == "step-a":
            raise ExecutionError("exit 2", ExecutionError.NON_ZERO_EXIT, exit_code=2, output="a broke")
        return CommandOutput(exit_code=0, stdout="b ok")

    command_runner.handler = handler
    job = factory.job(docker, is_composite=True)
    factory.step(job, factory.command(docker, "step-a", name="a"), 1, continue_on_failure=True)
    factory.step(job, factory.command(docker, "step-b", name="b"), 2)
    factory.host("h")

    run = await executor.execute_run(factory.run(job).id)

    result = host_results(session, run.id)[0]
    assert command_runner.commands_for("h") == ["step-a", "step-b"]
    assert result.status == "failed"
    assert result.output == "a broke\n---\nb ok"
    assert [s.status for s in step_results(session, result.id)] == ["failed", "succeeded"]


@pytest.mark.asyncio
async def test_steps_run_in_order(session, factory, executor, command_runner, docker):
    job = factory.job(docker, is_composite=True)
    factory.step(job, factory.command(docker, "third", name="c"), 3)
    factory.step(job, factory.command(docker, "first", name="a"), 1)
    factory.step(job, factory.command(docker, "second", name="b"), 2)
    factory.host("h")

    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "succeeded"
    assert command_runner.commands_for("h") == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_composite_without_steps_fails(session, factory, executor, command_runner, docker):
    job = factory.job(docker, is_composite=True)
    factory.host("h")
    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "failed"
    assert host_results(session, run.id)[0].error_kind == "NoSteps"
    assert command_runner.calls == []


@pytest.mark.asyncio
async def test_run_deadline_times_out_and_cancels_slow_hosts(session, factory, executor, command_runner, docker):
    async def handler(host, command):
        if host.name == "slow":
            await asyncio.sleep(30)
        return CommandOutput(exit_code=0, stdout="ok")

    command_runner.handler = handler
    job = factory.job(docker, factory.command(docker, "backup"), timeout_seconds=1)
    fast = factory.host("fast")
    slow = factory.host("slow")

    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "timeout"
    by_host = {r.host_id: r for r in host_results(session, run.id)}
    assert by_host[fast.id].status == "succeeded"
    assert by_host[slow.id].status == "cancelled"


@pytest.mark.asyncio
async def test_concurrency_is_bounded_by_semaphore(session, factory, command_runner, docker):
    state = {"active": 0, "peak": 0}

    async def handler(host, command):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(0.05)
        state["active"] -= 1
        return CommandOutput(exit_code=0)

    command_runner.handler = handler
    job = factory.job(docker, factory.command(docker, "docker ps"))
    for i in range(5):
        factory.host(f"h{i}")

    executor = JobExecutor(session, command_runner, asyncio.Semaphore(2))
    run = await executor.execute_run(factory.run(job).id)

    assert run.status == "succeeded"
    assert state["peak"] == 2


@pytest.mark.asyncio
async def test_terminal_run_is_not_restarted(session, factory, executor, command_runner, docker):
    job = factory.job(docker, factory.command(docker, "docker ps"))
    factory.host("a")
    run = factory.run(job, status="cancelled")

    run = await executor.execute_run(run.id)

    assert run.status == "cancelled"
    assert command_runner.calls == []


@pytest.mark.asyncio
async def test_run_cancelled_before_start_still_notifies(session, factory, executor, command_runner, channel_provider, docker):
    job = factory.job(docker, factory.command(docker, "docker ps"))
    factory.host("a")
    factory.policy(channels=[factory.channel("ops")], on_failure=True)
    run = factory.run(job)

    assert RunnerService(session, command_runner=command_runner).cancel_job_run(run.id) == CancelResult.OK
    run = await executor.execute_run(run.id)

    assert run.status == "cancelled"
    assert command_runner.calls == []
    assert [name for name, _ in channel_provider.sent] == ["ops"]


@pytest.mark.asyncio
async def test_database_error_on_a_host_is_rolled_back(session, factory, executor, command_runner, docker):
    def handler(host, command):
        # NOT NULL violation leaves the session needing a rollback
        session.add(StepExecutionResult(host_result_id=1, step_order=1, step_name=None))
        session.flush()

    command_runner.handler = handler
    job = factory.job(docker, factory.command(docker, "docker ps"))
    factory.host("a")
    run = factory.run(job)

    run = await executor.execute_run(run.id)

    assert run.status == "failed"
    [result] = host_results(session, run.id)
    assert result.status == "failed"
    assert result.error_kind == "InternalError"


@pytest.mark.asyncio
async def test_trigger_and_cancel_through_runner_service(session, factory, docker):
    started = asyncio.Event()

    async def handler(host, command):
        started.set()
        await asyncio.sleep(30)
        return CommandOutput(exit_code=0)

    runner = FakeCommandRunner(handler)
    service = RunnerService(session, command_runner=runner, channel_provider=FakeChannelProvider())
    job = factory.job(docker, factory.command(docker, "sleep 30"))
    factory.host("a")

    run_id = service.trigger_job(job.id, variable_overrides={"reason": "test"})
    await asyncio.wait_for(started.wait(), timeout=5)

    assert service.cancel_job_run(run_id) == CancelResult.OK
    await asyncio.wait_for(RunnerService.wait_for_run(run_id), timeout=5)

    session.expire_all()
    run = session.get(JobRun, run_id)
    assert run.status == "cancelled"
    assert run.trigger == "manual"
    assert run.schedule_id is None
    assert run.variables == {"reason": "test"}
    assert host_results(session, run_id)[0].status == "cancelled"

    assert service.cancel_job_run(run_id) == CancelResult.ALREADY_TERMINAL
    assert service.cancel_job_run(12345) == CancelResult.NOT_FOUND


@pytest.mark.asyncio
async def test_trigger_unknown_template_returns_none(session):
    service = RunnerService(session, command_runner=FakeCommandRunner())
    assert service.trigger_job(999) is None


def test_cleanup_marks_interrupted_runs_failed(session, factory, docker):
    job = factory.job(docker, factory.command(docker, "docker ps"))
    stale = factory.run(job, status="running")
    done = factory.run(job, status="succeeded")

    RunnerService(session, command_runner=FakeCommandRunner()).cleanup_started_jobs()

    session.expire_all()
    assert session.get(JobRun, stale.id).status == "failed"
    assert session.get(JobRun, stale.id).error_kind == "Interrupted"
    assert session.get(JobRun, done.id).status == "succeeded"
