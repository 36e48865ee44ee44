"""
corchestra schemas.

- ServiceSpec, HealthCheckSpec, VolumeMount, BackoffPolicy, RestartPolicy: declarative stack definition
- ServiceInstance, ServiceState, LifecycleEvent, ErrorInfo: runtime state
- VolumeRecord: persistent storage record
- ServiceReport, DeploymentReport: partial-failure reports
"""

from .instance import (
    TRANSITIONS,
    ErrorInfo,
    LifecycleEvent,
    ServiceInstance,
    ServiceState,
)
from .report import DeploymentReport, ServiceReport
from .service_spec import (
    BackoffPolicy,
    HealthCheckSpec,
    RestartPolicy,
    ServiceSpec,
    VolumeMount,
    normalize_command,
)
from .volume import VolumeRecord

__all__ = [
    # service_spec
    "BackoffPolicy",
    "HealthCheckSpec",
    "RestartPolicy",
    "ServiceSpec",
    "VolumeMount",
    "normalize_command",
    # instance
    "TRANSITIONS",
    "ErrorInfo",
    "LifecycleEvent",
    "ServiceInstance",
    "ServiceState",
    # volume
    "VolumeRecord",
    # report
    "DeploymentReport",
    "ServiceReport",
]
