"""
Orchestrator - bring a stack up layer by layer, and down in reverse.

up():
1. Resolve start layers once (configuration errors raise before anything starts)
2. For each layer:
   a. Attach every member's volumes (VolumeError halts the deployment)
   b. Start a supervisor task per member
   c. Barrier: wait until every member is Healthy or has given up, racing
      an external stop request and the optional startup timeout
   d. Any member not Healthy -> halt, later layers never start
3. Return a DeploymentReport listing every service's outcome

Services that did become healthy are left running after a halt; callers
decide whether to call down().

down() stops layers in reverse dependency order, so dependents stop before
their dependencies.

While running, a service that exhausts its restart policy after having been
healthy stops its transitive dependents (halt_dependents_on_failure).
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path
from typing import Optional

from corchestra.config import StackConfig
from corchestra.errors import CorchestraError, HealthCheckFailure, VolumeError
from corchestra.events import EventBus, JsonlEventSink, LoggingEventSink
from corchestra.health import HealthChecker
from corchestra.process import ProcessLauncher
from corchestra.resolver import DependencyResolver
from corchestra.schemas import (
    DeploymentReport,
    ErrorInfo,
    ServiceInstance,
    ServiceReport,
    ServiceSpec,
    ServiceState,
)
from corchestra.supervisor import ServiceSupervisor
from corchestra.volumes import VolumeManager

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Drives a stack of services through its lifecycle.

    Args:
        specs: The stack's service specs
        volumes: Volume registry owned by this orchestrator
        name: Stack name used in reports
        launcher: Process launcher shared by supervisor and health checker
        event_bus: Receives every lifecycle event
        startup_timeout: Per-layer barrier limit in seconds (None = wait
            until every member settles)
        halt_dependents_on_failure: Stop dependents of a service that gives
            up after having been healthy

    Raises:
        ConfigurationError: If the dependency graph is invalid
    """

    def __init__(
        self,
        specs: Iterable[ServiceSpec],
        volumes: VolumeManager,
        *,
        name: str = "stack",
        launcher: Optional[ProcessLauncher] = None,
        event_bus: Optional[EventBus] = None,
        startup_timeout: Optional[float] = None,
        halt_dependents_on_failure: bool = True,
    ):
        specs = list(specs)
        self.name = name
        self.resolver = DependencyResolver(specs)
        self.specs: dict[str, ServiceSpec] = {spec.name: spec for spec in specs}
        self.volumes = volumes
        self.events = event_bus or EventBus()
        self.startup_timeout = startup_timeout
        self.halt_dependents_on_failure = halt_dependents_on_failure

        launcher = launcher or ProcessLauncher()
        self.supervisor = ServiceSupervisor(
            launcher=launcher,
            health_checker=HealthChecker(launcher),
            event_sink=self.events,
            on_fatal=self._on_fatal,
        )

        self._instances: dict[str, ServiceInstance] = {}
        self._errors: dict[str, ErrorInfo] = {}
        self._stop_requested = asyncio.Event()
        self._shutting_down = False
        self._halt_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: StackConfig, event_bus: Optional[EventBus] = None) -> "Orchestrator":
        """Build an orchestrator, its volume registry and event sinks from a stack file."""
        bus = event_bus or EventBus()
        bus.subscribe(LoggingEventSink())
        events_path = config.get_events_path()
        if events_path is not None:
            bus.subscribe(JsonlEventSink(events_path))

        return cls(
            config.services.values(),
            VolumeManager(config.volumes_root),
            name=config.name,
            launcher=ProcessLauncher(log_dir=config.log_dir),
            event_bus=bus,
            startup_timeout=config.startup_timeout,
            halt_dependents_on_failure=config.halt_dependents_on_failure,
        )

    @property
    def instances(self) -> dict[str, ServiceInstance]:
        return dict(self._instances)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        """Ask a running up()/run() to stop; safe to call from a signal handler."""
        if not self._stop_requested.is_set():
            logger.info(f"Stop requested for stack {self.name}")
        self._stop_requested.set()

    async def up(self) -> DeploymentReport:
        """
        Start the stack layer by layer.

        Returns:
            DeploymentReport with every service's outcome
        """
        layers = self.resolver.resolve_layers()
        report = DeploymentReport(stack=self.name, layers=layers)
        start_time = time.monotonic()

        logger.info(f"Starting stack: {self.name}")
        logger.info(f"  layers: {len(layers)}, services: {len(self.specs)}")

        for index, layer in enumerate(layers, start=1):
            if self._stop_requested.is_set():
                report.cancelled = True
                break

            logger.info(f"  Layer {index}/{len(layers)}: {', '.join(layer)}")

            if not await self._attach_layer_volumes(layer):
                report.halted = True
                break

            report.layers_started += 1
            layer_instances = [self.supervisor.start(self.specs[name]) for name in layer]
            for instance in layer_instances:
                self._instances[instance.name] = instance

            outcome = await self._layer_barrier(layer_instances)
            if outcome == "cancelled":
                report.cancelled = True
                break
            if outcome == "failed":
                report.halted = True
                break

        if report.cancelled:
            logger.warning(f"Startup of {self.name} cancelled, stopping started services")
            await self.down()

        report.services = self._service_reports()
        report.duration_ms = int((time.monotonic() - start_time) * 1000)

        if report.success:
            logger.info(f"Stack {self.name} is up ({len(report.started)} services, {report.duration_ms}ms)")
        else:
            logger.error(
                f"Stack {self.name}: started={report.started}, failed={report.failed}, "
                f"not_started={report.not_started}"
            )
        return report

    async def down(self) -> list[str]:
        """
        Stop every started service, dependents first.

        Returns:
            Service names in the order they were stopped
        """
        self._shutting_down = True
        for task in list(self._halt_tasks):
            task.cancel()

        order: list[str] = []
        for layer in self.resolver.shutdown_layers():
            names = [name for name in layer if name in self._instances]
            if not names:
                continue
            await asyncio.gather(*(self.supervisor.stop(self._instances[name]) for name in names))
            order.extend(names)

        logger.info(f"Stack {self.name} stopped: {', '.join(order) or 'nothing was running'}")
        return order

    async def run(self, on_ready: Optional[Callable[[DeploymentReport], None]] = None) -> DeploymentReport:
        """
        up(), then wait for request_stop(), then down().

        Returns immediately after tearing down if startup did not succeed.
        """
        report = await self.up()
        if on_ready is not None:
            on_ready(report)
        if report.success:
            await self._stop_requested.wait()
        await self.down()
        return report

    def report(self) -> DeploymentReport:
        """Snapshot of current service states."""
        report = DeploymentReport(stack=self.name, layers=self.resolver.resolve_layers())
        report.services = self._service_reports()
        return report

    async def _attach_layer_volumes(self, layer: list[str]) -> bool:
        ok = True
        for name in layer:
            spec = self.specs[name]
            base_dir = Path(spec.working_dir) if spec.working_dir else None
            try:
                for mount in spec.volumes:
                    await self.volumes.attach(mount.volume_name, mount.mount_path, base_dir)
            except VolumeError as e:
                logger.error(f"    {name}: {e}")
                self._errors[name] = ErrorInfo.from_exception(e)
                ok = False
        return ok

    async def _layer_barrier(self, layer_instances: list[ServiceInstance]) -> str:
        """Wait for the layer to settle. Returns 'healthy', 'failed' or 'cancelled'."""
        settle_all = asyncio.ensure_future(
            asyncio.gather(*(self.supervisor.wait_settled(i) for i in layer_instances))
        )
        stop_wait = asyncio.ensure_future(self._stop_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {settle_all, stop_wait},
                timeout=self.startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_wait.cancel()

        if settle_all not in done:
            settle_all.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await settle_all
            if stop_wait in done:
                return "cancelled"
            await self._fail_unsettled(layer_instances)
            return "failed"

        results = settle_all.result()
        for instance, healthy in zip(layer_instances, results):
            if healthy:
                logger.info(f"    ok {instance.name}")
            else:
                logger.error(f"    FAIL {instance.name}: {instance.last_error}")
        return "healthy" if all(results) else "failed"

    async def _fail_unsettled(self, layer_instances: list[ServiceInstance]) -> None:
        error = HealthCheckFailure(f"not healthy within startup timeout of {self.startup_timeout}s")
        for instance in layer_instances:
            # Members that already gave up keep their own error
            if instance.state == ServiceState.HEALTHY or instance.is_terminal:
                continue
            await self.supervisor.stop(instance)
            self._errors[instance.name] = ErrorInfo.from_exception(error)
            logger.error(f"    FAIL {instance.name}: {error}")

    def _service_reports(self) -> list[ServiceReport]:
        reports = []
        for name in self.resolver.resolve_order():
            instance = self._instances.get(name)
            if instance is None:
                reports.append(ServiceReport(name=name, state=ServiceState.PENDING, error=self._errors.get(name)))
                continue
            report = ServiceReport.from_instance(instance)
            if name in self._errors and not report.healthy:
                report = replace(report, error=self._errors[name])
            reports.append(report)
        return reports

    def _on_fatal(self, instance: ServiceInstance, error: CorchestraError) -> None:
        if self._shutting_down or not self.halt_dependents_on_failure or not instance.ever_healthy:
            return
        dependents = [
            name for name in self.resolver.shutdown_order()
            if name in self.resolver.dependents_of(instance.name) and name in self._instances
        ]
        if not dependents:
            return
        logger.error(f"{instance.name} gave up ({error.kind}); stopping dependents: {', '.join(dependents)}")
        task = asyncio.ensure_future(self._halt_dependents(dependents))
        self._halt_tasks.add(task)
        task.add_done_callback(self._halt_tasks.discard)

    async def _halt_dependents(self, dependents: list[str]) -> None:
        for name in dependents:
            await self.supervisor.stop(self._instances[name])
