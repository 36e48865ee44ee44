"""
Report schemas - the partial-failure report of a deployment.

A DeploymentReport never collapses to pass/fail: it lists every service
with the state it ended in, and for each non-healthy one the last error
kind and message.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .instance import ErrorInfo, ServiceInstance, ServiceState


@dataclass(frozen=True)
class ServiceReport:
    """Observed outcome for one service."""
    name: str
    state: ServiceState
    restart_count: int = 0
    attempts: int = 0
    last_exit_code: Optional[int] = None
    error: Optional[ErrorInfo] = None

    @property
    def healthy(self) -> bool:
        return self.state == ServiceState.HEALTHY

    @classmethod
    def from_instance(cls, instance: ServiceInstance) -> "ServiceReport":
        return cls(
            name=instance.name,
            state=instance.state,
            restart_count=instance.restart_count,
            attempts=instance.attempts,
            last_exit_code=instance.last_exit_code,
            error=None if instance.state == ServiceState.HEALTHY else instance.last_error,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "state": self.state.value,
            "restart_count": self.restart_count,
            "attempts": self.attempts,
        }
        if self.last_exit_code is not None:
            result["last_exit_code"] = self.last_exit_code
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


@dataclass
class DeploymentReport:
    """
    Result of bringing a stack up.

    Attributes:
        stack: Stack name
        services: Per-service outcome in start order (not-started services
            are reported as Pending)
        layers: The layers that were planned
        layers_started: How many layers were (at least partly) started
        cancelled: True if an external stop interrupted startup
        halted: True if a failure stopped later layers from starting
        duration_ms: Wall time of the startup
    """
    stack: str
    services: list[ServiceReport] = field(default_factory=list)
    layers: list[list[str]] = field(default_factory=list)
    layers_started: int = 0
    cancelled: bool = False
    halted: bool = False
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return (
            not self.cancelled
            and not self.halted
            and bool(self.services)
            and all(s.healthy for s in self.services)
        )

    @property
    def started(self) -> list[str]:
        """Services that reached Healthy."""
        return [s.name for s in self.services if s.healthy]

    @property
    def failed(self) -> list[str]:
        """Services that did not end Healthy, including ones whose volumes failed to attach."""
        return [
            s.name for s in self.services
            if not s.healthy and (s.state != ServiceState.PENDING or s.error is not None)
        ]

    @property
    def not_started(self) -> list[str]:
        """Services that were never started and have no error of their own."""
        return [
            s.name for s in self.services
            if s.state == ServiceState.PENDING and s.error is None
        ]

    def get(self, name: str) -> Optional[ServiceReport]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "stack": self.stack,
            "success": self.success,
            "started": self.started,
            "failed": self.failed,
            "not_started": self.not_started,
            "layers": self.layers,
            "layers_started": self.layers_started,
            "services": [s.to_dict() for s in self.services],
            "duration_ms": self.duration_ms,
        }
        if self.cancelled:
            result["cancelled"] = True
        if self.halted:
            result["halted"] = True
        return result
