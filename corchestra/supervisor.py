"""
Service supervisor - start, monitor and restart service instances.

Each started ServiceInstance gets its own asyncio task that drives the
state machine:

    Pending -> Starting -> HealthChecking -> Healthy
    Starting/HealthChecking --launch or health failure--> Failed
    Healthy --process exit--> Failed
    Failed --restart policy--> Starting | Stopped

Restart policy on Failed:
- never: Stopped, failure reported, no retry
- on-failure: retry with exponential backoff until max_attempts consecutive
  failures, then Stopped and a fatal report. A clean exit (status 0) after
  becoming healthy ends in Stopped without a restart.
- always: retry forever, whatever the exit status; only stop() ends it

The consecutive-failure count behind backoff and the on-failure bound
resets whenever an attempt reaches Healthy. restart_count does not.

stop() cancels the instance task. Cancellation interrupts health polling
and backoff sleeps; the process then gets SIGTERM, stop_timeout seconds of
grace, and SIGKILL.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from corchestra.errors import CorchestraError, HealthCheckFailure, RuntimeCrash, StartupFailure
from corchestra.events import EventSink
from corchestra.health import HealthChecker, HealthResult
from corchestra.process import ProcessHandle, ProcessLauncher, build_environment, terminate_process
from corchestra.schemas import (
    ErrorInfo,
    LifecycleEvent,
    RestartPolicy,
    ServiceInstance,
    ServiceSpec,
    ServiceState,
)
from corchestra.utils import utcnow

logger = logging.getLogger(__name__)

FatalCallback = Callable[[ServiceInstance, CorchestraError], None]


@dataclass
class _Supervision:
    """Bookkeeping for one supervised instance."""
    instance: ServiceInstance
    settled: asyncio.Future
    task: Optional[asyncio.Task] = None
    process: Optional[ProcessHandle] = None
    stopping: bool = False

    def settle(self, healthy: bool) -> None:
        if not self.settled.done():
            self.settled.set_result(healthy)


class ServiceSupervisor:
    """
    Supervises service instances, one asyncio task each.

    Args:
        launcher: Starts service processes
        health_checker: Probes readiness; defaults to one sharing launcher
        event_sink: Receives a LifecycleEvent for every transition
        on_fatal: Called when an instance gives up (Stopped after a failure)
    """

    def __init__(
        self,
        launcher: Optional[ProcessLauncher] = None,
        health_checker: Optional[HealthChecker] = None,
        event_sink: Optional[EventSink] = None,
        on_fatal: Optional[FatalCallback] = None,
    ):
        self._launcher = launcher or ProcessLauncher()
        self._health = health_checker or HealthChecker(self._launcher)
        self._event_sink = event_sink
        self._on_fatal = on_fatal
        self._runs: dict[str, _Supervision] = {}

    def start(self, spec: ServiceSpec) -> ServiceInstance:
        """
        Start supervising a new instance of spec.

        Must be called from a running event loop. Returns immediately; use
        wait_settled() to block until the instance is healthy or has given up.

        Raises:
            RuntimeError: If an instance of the same service is still supervised
        """
        current = self._runs.get(spec.name)
        if current is not None and not current.instance.is_terminal:
            raise RuntimeError(f"{spec.name} is already running; stop or redeploy it first")

        loop = asyncio.get_running_loop()
        instance = ServiceInstance(spec=spec)
        run = _Supervision(instance=instance, settled=loop.create_future())
        run.task = asyncio.create_task(self._supervise(run), name=f"supervise:{spec.name}")
        self._runs[spec.name] = run
        return instance

    async def wait_settled(self, instance: ServiceInstance) -> bool:
        """
        Wait until the instance first becomes Healthy (True) or ends its
        startup in Stopped (False).
        """
        run = self._run_for(instance)
        return await asyncio.shield(run.settled)

    async def stop(self, instance: ServiceInstance) -> None:
        """
        Stop an instance. Idempotent; a Stopped instance is left as is.
        """
        run = self._run_for(instance)
        if instance.is_terminal and (run.task is None or run.task.done()):
            return

        if not run.stopping:
            run.stopping = True
            logger.info(f"{instance.name}: stopping")
            if run.task is not None:
                run.task.cancel()

        if run.task is not None:
            await asyncio.wait({run.task})
            if not run.task.cancelled() and run.task.exception() is not None:
                raise run.task.exception()

        # A task cancelled before its first step never ran its cleanup
        if run.process is not None:
            await self._terminate(run)
        if instance.state != ServiceState.STOPPED:
            self._transition(run, ServiceState.STOPPED, "stopped")
        run.settle(False)

    async def redeploy(self, instance: ServiceInstance) -> ServiceInstance:
        """Stop the instance and start a fresh one from the same spec (counters reset)."""
        await self.stop(instance)
        return self.start(instance.spec)

    def instances(self) -> list[ServiceInstance]:
        return [run.instance for run in self._runs.values()]

    def process_of(self, instance: ServiceInstance) -> Optional[ProcessHandle]:
        return self._run_for(instance).process

    def _run_for(self, instance: ServiceInstance) -> _Supervision:
        run = self._runs.get(instance.name)
        if run is None or run.instance is not instance:
            raise KeyError(f"{instance.name}: instance is not supervised here")
        return run

    async def _supervise(self, run: _Supervision) -> None:
        instance = run.instance
        spec = instance.spec
        failures = 0

        try:
            while True:
                instance.attempts += 1
                self._transition(run, ServiceState.STARTING, f"attempt {instance.attempts}")

                error: Optional[CorchestraError]
                try:
                    await self._launch_until_healthy(run)
                except StartupFailure as e:
                    error = e
                else:
                    failures = 0
                    exit_code = await run.process.wait()
                    self._clear_process(run, exit_code)
                    if exit_code == 0:
                        error = None
                    else:
                        error = RuntimeCrash(f"{spec.name} exited with code {exit_code}", exit_code)

                if error is None:
                    self._transition(run, ServiceState.FAILED, "exited with code 0")
                    if spec.restart_policy != RestartPolicy.ALWAYS:
                        self._transition(run, ServiceState.STOPPED, "exited cleanly")
                        return
                else:
                    instance.last_error = ErrorInfo.from_exception(error)
                    self._transition(run, ServiceState.FAILED, f"{error.kind}: {error}")

                failures += 1
                if spec.restart_policy == RestartPolicy.NEVER or (
                    spec.restart_policy == RestartPolicy.ON_FAILURE
                    and failures >= spec.max_attempts
                ):
                    self._give_up(run, error, failures)
                    return

                delay = spec.backoff.delay(failures)
                instance.backoff_history.append(delay)
                instance.restart_count += 1
                logger.warning(
                    f"{spec.name}: restarting in {delay:.2f}s "
                    f"(restart {instance.restart_count}, policy {spec.restart_policy.value})"
                )
                await asyncio.sleep(delay)

        except asyncio.CancelledError:
            # stop() cancels this task: clean up and finish normally
            if run.process is not None:
                await self._terminate(run)
            if instance.state != ServiceState.STOPPED:
                self._transition(run, ServiceState.STOPPED, "stopped")
        finally:
            run.settle(False)

    async def _launch_until_healthy(self, run: _Supervision) -> None:
        instance = run.instance
        spec = instance.spec

        run.process = await self._launcher.spawn(
            spec.name,
            spec.start_command,
            build_environment(spec.environment),
            spec.working_dir,
        )
        instance.pid = run.process.pid
        self._transition(run, ServiceState.HEALTH_CHECKING, f"pid {instance.pid}")

        result = await self._health.wait_healthy(instance, spec.health_check, run.process)
        if result != HealthResult.HEALTHY:
            await self._terminate(run)
            raise HealthCheckFailure(f"{spec.name} health check {result.value}")

        instance.ever_healthy = True
        self._transition(run, ServiceState.HEALTHY)
        run.settle(True)

    async def _terminate(self, run: _Supervision) -> None:
        process = run.process
        if process is None:
            return
        exit_code = await terminate_process(process, run.instance.spec.stop_timeout)
        self._clear_process(run, exit_code)

    def _clear_process(self, run: _Supervision, exit_code: Optional[int]) -> None:
        run.process = None
        run.instance.pid = None
        run.instance.last_exit_code = exit_code

    def _give_up(self, run: _Supervision, error: Optional[CorchestraError], failures: int) -> None:
        instance = run.instance
        spec = instance.spec
        self._transition(
            run,
            ServiceState.STOPPED,
            f"giving up after {failures} consecutive failure(s), policy {spec.restart_policy.value}",
        )
        logger.error(f"{spec.name}: {error}")
        run.settle(False)
        if self._on_fatal is not None and error is not None:
            self._on_fatal(instance, error)

    def _transition(self, run: _Supervision, to_state: ServiceState, detail: Optional[str] = None) -> None:
        instance = run.instance
        from_state = instance.state
        if not instance.can_transition(to_state):
            raise RuntimeError(
                f"{instance.name}: illegal transition {from_state.value} -> {to_state.value}"
            )
        instance.state = to_state
        if self._event_sink is not None:
            self._event_sink(
                LifecycleEvent(
                    service_name=instance.name,
                    from_state=from_state,
                    to_state=to_state,
                    timestamp=utcnow(),
                    detail=detail,
                )
            )
