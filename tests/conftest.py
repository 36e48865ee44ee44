import asyncio
import itertools
from collections import defaultdict
from typing import Optional

import pytest

from corchestra.errors import StartupFailure
from corchestra.events import EventBus, EventRecorder
from corchestra.schemas import BackoffPolicy, HealthCheckSpec, ServiceSpec
from corchestra.volumes import VolumeManager


class FakeProcess:
    """In-memory stand-in for asyncio.subprocess.Process."""

    _pids = itertools.count(4000)

    def __init__(self, name: str, ignore_sigterm: bool = False):
        self.name = name
        self.pid = next(FakeProcess._pids)
        self.returncode: Optional[int] = None
        self.ignore_sigterm = ignore_sigterm
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.ignore_sigterm:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)


class FakeLauncher:
    """
    Scripted launcher with the ProcessLauncher interface.

    Health probes are expected to be ("probe", <service>); results are
    looked up by the last argv element.

    Attributes:
        spawn_failures: service -> number of spawns that raise StartupFailure
            (-1 = every spawn)
        exit_after: service -> (delay, exit code) applied to every process
        probe_results: service -> probe statuses consumed in order; the last
            one repeats. Services without an entry pass their probes.
        probe_gates: service -> Event every probe waits on
        ignore_sigterm: services whose processes only die on SIGKILL
    """

    def __init__(self):
        self.spawned: list[str] = []
        self.probes: list[str] = []
        self.processes: dict[str, list[FakeProcess]] = defaultdict(list)
        self.spawn_failures: dict[str, int] = {}
        self.exit_after: dict[str, tuple[float, int]] = {}
        self.probe_results: dict[str, list[Optional[int]]] = {}
        self.probe_gates: dict[str, asyncio.Event] = {}
        self.ignore_sigterm: set[str] = set()
        self.environments: dict[str, dict[str, str]] = {}

    async def spawn(self, service_name, argv, env, cwd=None):
        await asyncio.sleep(0)
        self.spawned.append(service_name)
        self.environments[service_name] = dict(env)

        remaining = self.spawn_failures.get(service_name, 0)
        if remaining:
            if remaining > 0:
                self.spawn_failures[service_name] = remaining - 1
            raise StartupFailure(f"{service_name}: cannot launch {argv[0]!r}")

        process = FakeProcess(service_name, ignore_sigterm=service_name in self.ignore_sigterm)
        self.processes[service_name].append(process)
        if service_name in self.exit_after:
            delay, code = self.exit_after[service_name]
            asyncio.get_running_loop().call_later(delay, process.exit, code)
        return process

    async def run_check(self, argv, env, cwd, timeout):
        name = argv[-1]
        self.probes.append(name)
        gate = self.probe_gates.get(name)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)

        results = self.probe_results.get(name)
        if not results:
            return 0
        if len(results) > 1:
            return results.pop(0)
        return results[0]

    def latest(self, service_name: str) -> FakeProcess:
        return self.processes[service_name][-1]


FAST_BACKOFF = BackoffPolicy(base=0.01, cap=0.05, multiplier=2.0, jitter=0.0)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def event_bus(recorder):
    return EventBus([recorder])


@pytest.fixture
def volume_manager(tmp_path):
    return VolumeManager(tmp_path / "volumes")


@pytest.fixture
def make_spec(tmp_path):
    """Factory for fast-cycling ServiceSpecs probed through FakeLauncher."""

    def _make(name, depends_on=(), probe=True, **overrides):
        kwargs = dict(
            name=name,
            start_command=("serve", name),
            depends_on=frozenset(depends_on),
            health_check=(
                HealthCheckSpec(command=("probe", name), interval=0.01, timeout=0.1, retries=3)
                if probe else None
            ),
            working_dir=str(tmp_path),
            stop_timeout=0.1,
            backoff=FAST_BACKOFF,
        )
        kwargs.update(overrides)
        return ServiceSpec(**kwargs)

    return _make


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until it holds; fail the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout:.1f}s")
        await asyncio.sleep(interval)
