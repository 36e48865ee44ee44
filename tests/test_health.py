"""Tests for HealthChecker probing rules."""

import asyncio

import pytest

from corchestra.health import HealthChecker, HealthResult
from corchestra.schemas import HealthCheckSpec, ServiceInstance

from conftest import FakeProcess


def check(name, **kwargs):
    kwargs.setdefault("interval", 0.01)
    kwargs.setdefault("timeout", 0.1)
    kwargs.setdefault("retries", 3)
    return HealthCheckSpec(command=("probe", name), **kwargs)


class TestWaitHealthy:
    @pytest.mark.asyncio
    async def test_no_health_check_is_healthy(self, launcher, make_spec):
        instance = ServiceInstance(spec=make_spec("web", probe=False))
        result = await HealthChecker(launcher).wait_healthy(instance, None)
        assert result == HealthResult.HEALTHY
        assert launcher.probes == []

    @pytest.mark.asyncio
    async def test_first_probe_passes(self, launcher, make_spec):
        instance = ServiceInstance(spec=make_spec("db"))
        result = await HealthChecker(launcher).wait_healthy(instance, check("db", ceiling=5.0))
        assert result == HealthResult.HEALTHY
        assert launcher.probes == ["db"]

    @pytest.mark.asyncio
    async def test_passes_after_failures(self, launcher, make_spec):
        launcher.probe_results["db"] = [1, 1, 0]
        instance = ServiceInstance(spec=make_spec("db"))

        result = await HealthChecker(launcher).wait_healthy(instance, check("db", retries=3, ceiling=5.0))

        assert result == HealthResult.HEALTHY
        assert launcher.probes == ["db", "db", "db"]

    @pytest.mark.asyncio
    async def test_unhealthy_after_retries(self, launcher, make_spec):
        launcher.probe_results["db"] = [1]
        instance = ServiceInstance(spec=make_spec("db"))

        result = await HealthChecker(launcher).wait_healthy(instance, check("db", retries=4, ceiling=5.0))

        assert result == HealthResult.UNHEALTHY
        assert len(launcher.probes) == 4

    @pytest.mark.asyncio
    async def test_probe_timeouts_count_as_failures(self, launcher, make_spec):
        launcher.probe_results["db"] = [None]
        instance = ServiceInstance(spec=make_spec("db"))

        result = await HealthChecker(launcher).wait_healthy(instance, check("db", retries=2, ceiling=5.0))

        assert result == HealthResult.UNHEALTHY
        assert len(launcher.probes) == 2

    @pytest.mark.asyncio
    async def test_timed_out_at_ceiling(self, launcher, make_spec):
        launcher.probe_results["db"] = [1]
        instance = ServiceInstance(spec=make_spec("db"))

        result = await HealthChecker(launcher).wait_healthy(
            instance, check("db", interval=0.02, retries=1000, ceiling=0.1)
        )

        assert result == HealthResult.TIMED_OUT
        assert 1 <= len(launcher.probes) < 1000

    @pytest.mark.asyncio
    async def test_exited_process_is_unhealthy(self, launcher, make_spec):
        process = FakeProcess("db")
        process.exit(1)
        instance = ServiceInstance(spec=make_spec("db"))

        result = await HealthChecker(launcher).wait_healthy(instance, check("db"), process)

        assert result == HealthResult.UNHEALTHY
        assert launcher.probes == []

    @pytest.mark.asyncio
    async def test_exit_during_probing_is_unhealthy(self, launcher, make_spec):
        process = FakeProcess("db")
        launcher.probe_results["db"] = [1]
        instance = ServiceInstance(spec=make_spec("db"))
        asyncio.get_running_loop().call_later(0.03, process.exit, 2)

        result = await HealthChecker(launcher).wait_healthy(
            instance, check("db", interval=0.01, retries=1000, ceiling=5.0), process
        )

        assert result == HealthResult.UNHEALTHY

    @pytest.mark.asyncio
    async def test_probe_gets_service_environment(self, launcher, make_spec):
        seen = {}

        async def run_check(argv, env, cwd, timeout):
            seen.update(env=env, cwd=cwd, timeout=timeout)
            return 0

        launcher.run_check = run_check
        instance = ServiceInstance(spec=make_spec("db", environment={"PGPORT": "5433"}))

        await HealthChecker(launcher).wait_healthy(instance, check("db", timeout=0.5, ceiling=5.0))

        assert seen["env"]["PGPORT"] == "5433"
        assert seen["cwd"] == instance.spec.working_dir
        assert seen["timeout"] == pytest.approx(0.5)
