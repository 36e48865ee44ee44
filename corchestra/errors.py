"""
Error classes for corchestra.

These error types enable retry classification at supervision boundaries:
- TransientError: Retried according to the service's restart policy
  (launch failures, failed health checks, crashes after becoming healthy)
- PermanentError: Never retried (bad configuration, unavailable volume storage)

The supervisor catches TransientError subclasses per instance and applies
the restart policy. PermanentError subclasses abort the deployment attempt
before any dependent work proceeds.
"""

from typing import Optional, Sequence


class CorchestraError(Exception):
    """Base exception for corchestra."""

    @property
    def kind(self) -> str:
        """Short error kind used in reports (the class name)."""
        return type(self).__name__


class TransientError(CorchestraError):
    """
    Transient error - retried per restart policy.

    Examples:
    - Process could not be launched
    - Process never became healthy
    - Process exited after being healthy
    """
    pass


class PermanentError(CorchestraError):
    """
    Permanent error - do not retry.

    Examples:
    - Dependency cycle or unknown dependency
    - Invalid stack file
    - Volume backing storage unavailable
    """
    pass


class ConfigurationError(PermanentError):
    """Invalid stack configuration. Fatal at load, nothing starts."""
    pass


class CyclicDependencyError(ConfigurationError):
    """Raised when the dependsOn graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class UnknownDependencyError(ConfigurationError):
    """Raised when a dependsOn entry names a service that is not defined."""

    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(
            f"Service '{service}' depends on unknown service '{dependency}'"
        )


class DuplicateServiceError(ConfigurationError):
    """Raised when two service specs share a name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate service name: {name}")


class StartupFailure(TransientError):
    """The service process failed to launch."""
    pass


class HealthCheckFailure(StartupFailure):
    """
    The process is running but never became healthy within the ceiling.

    Treated as a StartupFailure for restart-policy purposes.
    """
    pass


class RuntimeCrash(TransientError):
    """The process exited after having been healthy."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)


class VolumeError(PermanentError):
    """
    Volume backing storage is unavailable.

    Never retried: a silently relocated data directory is worse than a
    failed deployment.
    """
    pass
