"""
Process launcher - how corchestra runs service and health-check commands.

Service processes are opaque: they get an argv, an environment and a
working directory, and corchestra only observes their exit status.
ProcessLauncher is the seam the supervisor and health checker talk to;
tests substitute an in-memory launcher with the same interface.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence

from corchestra.errors import StartupFailure

logger = logging.getLogger(__name__)

# Exit status reported for a probe whose command could not be executed
PROBE_NOT_RUNNABLE = 127


class ProcessHandle(Protocol):
    """The subset of asyncio.subprocess.Process the supervisor relies on."""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> Optional[int]: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


def build_environment(overrides: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Parent environment (or base) with the service's variables layered on top."""
    env = dict(os.environ if base is None else base)
    env.update({k: str(v) for k, v in overrides.items()})
    return env


class ProcessLauncher:
    """
    Launches commands as asyncio subprocesses.

    Args:
        log_dir: If set, each service's stdout/stderr is appended to
            <log_dir>/<service>.log instead of being inherited
    """

    def __init__(self, log_dir: Optional[Path] = None):
        self.log_dir = Path(log_dir) if log_dir else None

    async def spawn(
        self,
        service_name: str,
        argv: Sequence[str],
        env: Mapping[str, str],
        cwd: Optional[str] = None,
    ) -> ProcessHandle:
        """
        Start a service process.

        Raises:
            StartupFailure: If the process cannot be launched
        """
        log_file = None
        try:
            if self.log_dir is not None:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                log_file = open(self.log_dir / f"{service_name}.log", "ab")
            process = await asyncio.create_subprocess_exec(
                *argv,
                env=dict(env),
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT if log_file else None,
            )
        except OSError as e:
            raise StartupFailure(f"{service_name}: cannot launch {argv[0]!r}: {e}") from e
        finally:
            # The child holds its own descriptor
            if log_file is not None:
                log_file.close()

        logger.debug(f"{service_name}: spawned pid {process.pid}: {' '.join(argv)}")
        return process

    async def run_check(
        self,
        argv: Sequence[str],
        env: Mapping[str, str],
        cwd: Optional[str],
        timeout: float,
    ) -> Optional[int]:
        """
        Run a health probe to completion.

        Returns:
            The probe's exit status, PROBE_NOT_RUNNABLE if it could not be
            executed, or None if it exceeded timeout (it is killed)
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                env=dict(env),
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"Probe {argv[0]!r} not runnable: {e}")
            return PROBE_NOT_RUNNABLE

        try:
            return await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            await terminate_process(process, grace=0)
            return None
        except asyncio.CancelledError:
            await terminate_process(process, grace=0)
            raise


async def terminate_process(process: ProcessHandle, grace: float) -> Optional[int]:
    """
    Stop a process: SIGTERM, wait up to grace seconds, then SIGKILL.

    Returns:
        The exit status
    """
    if process.returncode is not None:
        return process.returncode

    try:
        if grace > 0:
            process.terminate()
            try:
                return await asyncio.wait_for(process.wait(), grace)
            except asyncio.TimeoutError:
                logger.warning(f"pid {process.pid} ignored SIGTERM for {grace}s, killing")
        process.kill()
    except ProcessLookupError:
        # Exited between the returncode check and the signal
        pass
    return await process.wait()
