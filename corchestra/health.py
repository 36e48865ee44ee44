"""
Health checker - poll a service until it is ready, unhealthy, or timed out.

Probing rules:
- No health check configured: healthy as soon as the process has started.
- Otherwise the probe runs immediately, then every `interval` seconds.
- A probe passes on exit status 0. A probe that exceeds `timeout` fails.
- `retries` consecutive failures -> UNHEALTHY.
- Cumulative wait beyond the ceiling (interval * (retries + 1) unless
  overridden) -> TIMED_OUT.
- The service process exiting while probes run -> UNHEALTHY.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from corchestra.process import ProcessHandle, ProcessLauncher, build_environment
from corchestra.schemas import HealthCheckSpec, ServiceInstance

logger = logging.getLogger(__name__)


class HealthResult(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed-out"


class HealthChecker:
    """Runs health probes through a ProcessLauncher."""

    def __init__(self, launcher: Optional[ProcessLauncher] = None):
        self._launcher = launcher or ProcessLauncher()

    async def wait_healthy(
        self,
        instance: ServiceInstance,
        health_check: Optional[HealthCheckSpec],
        process: Optional[ProcessHandle] = None,
    ) -> HealthResult:
        """
        Block until the instance is healthy or has definitively failed.

        Args:
            instance: The instance being probed (supplies environment and cwd)
            health_check: Probe definition; None means trust the start command
            process: The service process, watched for early exit

        Returns:
            HEALTHY, UNHEALTHY or TIMED_OUT
        """
        name = instance.name
        if process is not None and process.returncode is not None:
            logger.info(f"{name}: exited with {process.returncode} before becoming healthy")
            return HealthResult.UNHEALTHY

        if health_check is None:
            return HealthResult.HEALTHY

        loop = asyncio.get_running_loop()
        deadline = loop.time() + health_check.effective_ceiling
        env = build_environment(instance.spec.environment)
        failures = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info(f"{name}: health check timed out after {health_check.effective_ceiling}s")
                return HealthResult.TIMED_OUT

            status = await self._launcher.run_check(
                health_check.command,
                env,
                instance.spec.working_dir,
                min(health_check.timeout, remaining),
            )

            if process is not None and process.returncode is not None:
                logger.info(f"{name}: exited with {process.returncode} during health check")
                return HealthResult.UNHEALTHY

            if status == 0:
                logger.debug(f"{name}: health probe passed")
                return HealthResult.HEALTHY

            failures += 1
            outcome = "timed out" if status is None else f"exit {status}"
            logger.debug(f"{name}: health probe failed ({outcome}), {failures}/{health_check.retries}")
            if failures >= health_check.retries:
                return HealthResult.UNHEALTHY

            remaining = deadline - loop.time()
            if remaining <= 0:
                return HealthResult.TIMED_OUT
            if remaining < health_check.interval:
                await asyncio.sleep(remaining)
                logger.info(f"{name}: health check timed out after {health_check.effective_ceiling}s")
                return HealthResult.TIMED_OUT
            await asyncio.sleep(health_check.interval)
