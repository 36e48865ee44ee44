"""
Instance schemas - runtime state of a started service.

ServiceInstance is the only mutable schema: the supervisor owning it is the
single writer. LifecycleEvent records one state transition.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .service_spec import ServiceSpec


class ServiceState(str, Enum):
    """Lifecycle state of a service instance."""
    PENDING = "Pending"
    STARTING = "Starting"
    HEALTH_CHECKING = "HealthChecking"
    HEALTHY = "Healthy"
    FAILED = "Failed"
    STOPPED = "Stopped"


# Legal transitions; anything not listed is a supervisor bug
TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    ServiceState.PENDING: frozenset({ServiceState.STARTING, ServiceState.STOPPED}),
    ServiceState.STARTING: frozenset({
        ServiceState.HEALTH_CHECKING, ServiceState.FAILED, ServiceState.STOPPED,
    }),
    ServiceState.HEALTH_CHECKING: frozenset({
        ServiceState.HEALTHY, ServiceState.FAILED, ServiceState.STOPPED,
    }),
    ServiceState.HEALTHY: frozenset({ServiceState.FAILED, ServiceState.STOPPED}),
    ServiceState.FAILED: frozenset({ServiceState.STARTING, ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset(),
}


@dataclass(frozen=True)
class ErrorInfo:
    """Last error observed for an instance: kind (exception class name) and message."""
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(kind=type(exc).__name__, message=str(exc))

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


@dataclass
class ServiceInstance:
    """
    Runtime state of a running ServiceSpec.

    Attributes:
        spec: Owning ServiceSpec (exclusive reference)
        state: Current lifecycle state
        restart_count: Restarts performed; reset only by redeploy
        last_exit_code: Exit status of the most recent process, if any
        attempts: Total launch attempts
        last_error: Most recent failure, if any
        backoff_history: Delays waited between attempts, in order
        pid: Process id of the current process, if running
        ever_healthy: True once the instance has reached Healthy
    """
    spec: ServiceSpec
    state: ServiceState = ServiceState.PENDING
    restart_count: int = 0
    last_exit_code: Optional[int] = None
    attempts: int = 0
    last_error: Optional[ErrorInfo] = None
    backoff_history: list[float] = field(default_factory=list)
    pid: Optional[int] = None
    ever_healthy: bool = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def is_terminal(self) -> bool:
        return self.state == ServiceState.STOPPED

    def can_transition(self, to_state: ServiceState) -> bool:
        return to_state in TRANSITIONS[self.state]

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "state": self.state.value,
            "restart_count": self.restart_count,
            "attempts": self.attempts,
        }
        if self.last_exit_code is not None:
            result["last_exit_code"] = self.last_exit_code
        if self.last_error is not None:
            result["last_error"] = self.last_error.to_dict()
        if self.pid is not None:
            result["pid"] = self.pid
        return result


@dataclass(frozen=True)
class LifecycleEvent:
    """
    One state transition of one service.

    This is the integration point for external logging/monitoring.
    """
    service_name: str
    from_state: ServiceState
    to_state: ServiceState
    timestamp: datetime
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "serviceName": self.service_name,
            "fromState": self.from_state.value,
            "toState": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.detail is not None:
            result["detail"] = self.detail
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LifecycleEvent":
        return cls(
            service_name=data["serviceName"],
            from_state=ServiceState(data["fromState"]),
            to_state=ServiceState(data["toState"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            detail=data.get("detail"),
        )
