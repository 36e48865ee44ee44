"""Tests for ServiceSupervisor: state machine, restart policies, stop.

Processes and probes come from FakeLauncher, so every scenario runs in
milliseconds and failures are scripted per service.
"""

import asyncio

import pytest

from corchestra.schemas import TRANSITIONS, BackoffPolicy, RestartPolicy, ServiceState
from corchestra.supervisor import ServiceSupervisor

from conftest import eventually


@pytest.fixture
def fatal_calls():
    return []


@pytest.fixture
def supervisor(launcher, recorder, fatal_calls):
    return ServiceSupervisor(
        launcher=launcher,
        event_sink=recorder,
        on_fatal=lambda instance, error: fatal_calls.append((instance.name, error.kind)),
    )


def assert_transitions_legal(recorder):
    for event in recorder.events:
        assert event.to_state in TRANSITIONS[event.from_state], (
            f"{event.service_name}: {event.from_state.value} -> {event.to_state.value}"
        )


class TestStartup:
    @pytest.mark.asyncio
    async def test_becomes_healthy(self, supervisor, launcher, recorder, make_spec):
        instance = supervisor.start(make_spec("db"))

        assert await supervisor.wait_settled(instance) is True
        assert instance.state == ServiceState.HEALTHY
        assert instance.attempts == 1
        assert instance.pid == launcher.latest("db").pid
        assert recorder.states("db") == [
            ServiceState.STARTING,
            ServiceState.HEALTH_CHECKING,
            ServiceState.HEALTHY,
        ]

        await supervisor.stop(instance)
        assert instance.state == ServiceState.STOPPED
        assert launcher.latest("db").signals == ["TERM"]
        assert instance.pid is None
        assert_transitions_legal(recorder)

    @pytest.mark.asyncio
    async def test_no_health_check_is_healthy_on_start(self, supervisor, launcher, make_spec):
        instance = supervisor.start(make_spec("web", probe=False))
        assert await supervisor.wait_settled(instance) is True
        assert launcher.probes == []
        await supervisor.stop(instance)

    @pytest.mark.asyncio
    async def test_environment_reaches_process(self, supervisor, launcher, make_spec):
        instance = supervisor.start(make_spec("api", environment={"DATABASE_URL": "postgresql://localhost/app"}))
        await supervisor.wait_settled(instance)
        assert launcher.environments["api"]["DATABASE_URL"] == "postgresql://localhost/app"
        await supervisor.stop(instance)

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, supervisor, make_spec):
        spec = make_spec("db")
        instance = supervisor.start(spec)
        with pytest.raises(RuntimeError, match="already running"):
            supervisor.start(spec)
        await supervisor.stop(instance)

    @pytest.mark.asyncio
    async def test_recovers_after_launch_failures(self, supervisor, launcher, make_spec):
        launcher.spawn_failures["db"] = 2
        instance = supervisor.start(make_spec("db"))

        assert await supervisor.wait_settled(instance) is True
        assert instance.attempts == 3
        assert instance.restart_count == 2
        assert instance.last_error.kind == "StartupFailure"
        await supervisor.stop(instance)


class TestRestartPolicies:
    @pytest.mark.asyncio
    async def test_never_stops_after_one_attempt(self, supervisor, launcher, recorder, fatal_calls, make_spec):
        launcher.spawn_failures["db"] = -1
        instance = supervisor.start(make_spec("db", restart_policy=RestartPolicy.NEVER))

        assert await supervisor.wait_settled(instance) is False
        assert instance.state == ServiceState.STOPPED
        assert instance.attempts == 1
        assert instance.restart_count == 0
        assert instance.backoff_history == []
        assert instance.last_error.kind == "StartupFailure"
        assert recorder.states("db") == [ServiceState.STARTING, ServiceState.FAILED, ServiceState.STOPPED]
        assert fatal_calls == [("db", "StartupFailure")]

    @pytest.mark.asyncio
    async def test_on_failure_bounded_by_max_attempts(self, supervisor, launcher, fatal_calls, make_spec):
        launcher.spawn_failures["db"] = -1
        instance = supervisor.start(
            make_spec(
                "db",
                max_attempts=3,
                backoff=BackoffPolicy(base=0.01, cap=1.0, multiplier=2.0, jitter=0.0),
            )
        )

        assert await supervisor.wait_settled(instance) is False
        assert instance.state == ServiceState.STOPPED
        assert instance.attempts == 3
        assert instance.restart_count == 2
        assert instance.backoff_history == pytest.approx([0.01, 0.02])
        assert fatal_calls == [("db", "StartupFailure")]

    @pytest.mark.asyncio
    async def test_backoff_strictly_increases(self, supervisor, launcher, make_spec):
        launcher.spawn_failures["db"] = -1
        instance = supervisor.start(
            make_spec(
                "db",
                max_attempts=5,
                backoff=BackoffPolicy(base=0.001, cap=1.0, multiplier=2.0, jitter=0.1),
            )
        )

        await supervisor.wait_settled(instance)
        history = instance.backoff_history
        assert len(history) == 4
        assert all(earlier < later for earlier, later in zip(history, history[1:]))

    @pytest.mark.asyncio
    async def test_failed_health_check_is_startup_failure(self, supervisor, launcher, make_spec):
        launcher.probe_results["db"] = [1]
        instance = supervisor.start(
            make_spec(
                "db",
                max_attempts=3,
                backoff=BackoffPolicy(base=0.01, cap=1.0, multiplier=2.0, jitter=0.1),
            )
        )

        assert await supervisor.wait_settled(instance) is False
        assert instance.state == ServiceState.STOPPED
        assert instance.attempts == 3
        assert len(launcher.processes["db"]) == 3
        first, second = instance.backoff_history
        assert first < second
        assert instance.last_error.kind == "HealthCheckFailure"
        # Every unhealthy process was terminated
        assert all(p.returncode is not None for p in launcher.processes["db"])

    @pytest.mark.asyncio
    async def test_always_ignores_max_attempts(self, supervisor, launcher, fatal_calls, make_spec):
        launcher.spawn_failures["db"] = -1
        instance = supervisor.start(make_spec("db", restart_policy=RestartPolicy.ALWAYS, max_attempts=1))

        await eventually(lambda: instance.attempts >= 4)
        assert instance.state != ServiceState.STOPPED

        await supervisor.stop(instance)
        assert instance.state == ServiceState.STOPPED
        assert fatal_calls == []

    @pytest.mark.asyncio
    async def test_crash_after_healthy_restarts(self, supervisor, launcher, make_spec):
        launcher.exit_after["api"] = (0.02, 3)
        instance = supervisor.start(make_spec("api", max_attempts=2))

        assert await supervisor.wait_settled(instance) is True
        # Each attempt reaches Healthy, so the consecutive-failure bound never trips
        await eventually(lambda: instance.restart_count >= 3)
        assert instance.last_exit_code == 3
        assert instance.last_error.kind == "RuntimeCrash"

        await supervisor.stop(instance)
        assert instance.state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_clean_exit_under_on_failure_stops(self, supervisor, launcher, recorder, fatal_calls, make_spec):
        launcher.exit_after["job"] = (0.02, 0)
        instance = supervisor.start(make_spec("job"))

        await eventually(lambda: instance.is_terminal)
        assert instance.restart_count == 0
        assert instance.last_exit_code == 0
        assert instance.last_error is None
        assert recorder.states("job")[-3:] == [ServiceState.HEALTHY, ServiceState.FAILED, ServiceState.STOPPED]
        assert fatal_calls == []

    @pytest.mark.asyncio
    async def test_clean_exit_under_always_restarts(self, supervisor, launcher, make_spec):
        launcher.exit_after["worker"] = (0.02, 0)
        instance = supervisor.start(make_spec("worker", restart_policy=RestartPolicy.ALWAYS))

        await eventually(lambda: instance.restart_count >= 2)
        assert len(launcher.processes["worker"]) >= 2

        await supervisor.stop(instance)
        assert instance.state == ServiceState.STOPPED


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_interrupts_backoff(self, supervisor, launcher, make_spec):
        launcher.spawn_failures["db"] = -1
        instance = supervisor.start(
            make_spec("db", backoff=BackoffPolicy(base=30.0, cap=30.0, jitter=0.0))
        )
        await eventually(lambda: instance.backoff_history)

        await asyncio.wait_for(supervisor.stop(instance), timeout=1.0)

        assert instance.state == ServiceState.STOPPED
        assert instance.attempts == 1

    @pytest.mark.asyncio
    async def test_stop_interrupts_health_checking(self, supervisor, launcher, make_spec):
        launcher.probe_gates["db"] = asyncio.Event()
        instance = supervisor.start(make_spec("db"))
        await eventually(lambda: instance.state == ServiceState.HEALTH_CHECKING)

        await supervisor.stop(instance)

        assert instance.state == ServiceState.STOPPED
        assert launcher.latest("db").returncode is not None
        assert await supervisor.wait_settled(instance) is False

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, supervisor, recorder, make_spec):
        instance = supervisor.start(make_spec("db"))
        await supervisor.wait_settled(instance)

        await supervisor.stop(instance)
        await supervisor.stop(instance)

        assert recorder.states("db").count(ServiceState.STOPPED) == 1

    @pytest.mark.asyncio
    async def test_concurrent_stops(self, supervisor, recorder, make_spec):
        instance = supervisor.start(make_spec("db"))
        await supervisor.wait_settled(instance)

        await asyncio.gather(supervisor.stop(instance), supervisor.stop(instance))

        assert instance.state == ServiceState.STOPPED
        assert recorder.states("db").count(ServiceState.STOPPED) == 1

    @pytest.mark.asyncio
    async def test_stop_before_first_step(self, supervisor, launcher, recorder, make_spec):
        instance = supervisor.start(make_spec("db"))
        await supervisor.stop(instance)

        assert instance.state == ServiceState.STOPPED
        assert_transitions_legal(recorder)

    @pytest.mark.asyncio
    async def test_stop_escalates_to_kill(self, supervisor, launcher, make_spec):
        launcher.ignore_sigterm.add("db")
        instance = supervisor.start(make_spec("db", stop_timeout=0.05))
        await supervisor.wait_settled(instance)

        await supervisor.stop(instance)

        assert launcher.latest("db").signals == ["TERM", "KILL"]
        assert instance.last_exit_code == -9


class TestRedeploy:
    @pytest.mark.asyncio
    async def test_redeploy_resets_counters(self, supervisor, launcher, make_spec):
        launcher.spawn_failures["db"] = 2
        instance = supervisor.start(make_spec("db"))
        await supervisor.wait_settled(instance)
        assert instance.restart_count == 2

        fresh = await supervisor.redeploy(instance)

        assert fresh is not instance
        assert instance.state == ServiceState.STOPPED
        assert await supervisor.wait_settled(fresh) is True
        assert fresh.restart_count == 0
        assert fresh.attempts == 1
        assert supervisor.instances() == [fresh]
        await supervisor.stop(fresh)

    @pytest.mark.asyncio
    async def test_old_instance_is_no_longer_supervised(self, supervisor, make_spec):
        instance = supervisor.start(make_spec("db"))
        await supervisor.wait_settled(instance)
        fresh = await supervisor.redeploy(instance)

        with pytest.raises(KeyError):
            supervisor.process_of(instance)
        await supervisor.stop(fresh)
