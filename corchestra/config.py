"""
Configuration management for corchestra.

Loads and validates the stack file (corchestra.yaml): a `services` mapping of
service name -> ServiceSpec fields, plus optional stack-wide `settings`.
The dependency graph is validated at load, so a bad stack never starts.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import dotenv_values

from corchestra.errors import ConfigurationError
from corchestra.resolver import DependencyResolver
from corchestra.schemas import BackoffPolicy, ServiceSpec
from corchestra.utils import parse_duration


DEFAULT_STACK_FILES = ("corchestra.yaml", "corchestra.yml")

SETTINGS_KEYS = {
    "volumesRoot", "logDir", "startupTimeout", "haltDependentsOnFailure",
    "maxAttempts", "backoff", "logging",
}


class StackConfig:
    """Complete stack configuration."""

    def __init__(self, config_path: Path, raw_config: Optional[Dict[str, Any]] = None):
        self.config_path = Path(config_path)
        self.base_dir = self.config_path.resolve().parent
        self.raw_config = raw_config if raw_config is not None else self._load_yaml()
        if not isinstance(self.raw_config, dict):
            raise ConfigurationError(f"{self.config_path}: top level must be a mapping")

        unknown = set(self.raw_config) - {"name", "settings", "services"}
        if unknown:
            raise ConfigurationError(f"Unknown top-level keys: {', '.join(sorted(unknown))}")

        self.name = str(self.raw_config.get("name") or self.base_dir.name)

        # Settings
        self.settings: Dict[str, Any] = _mapping(self.raw_config.get("settings"), "settings")
        unknown = set(self.settings) - SETTINGS_KEYS
        if unknown:
            raise ConfigurationError(f"Unknown settings keys: {', '.join(sorted(unknown))}")

        try:
            self.volumes_root = self._resolve_path(self.settings.get("volumesRoot", ".corchestra/volumes"))
            log_dir = self.settings.get("logDir")
            self.log_dir = self._resolve_path(log_dir) if log_dir else None
            self.startup_timeout = parse_duration(self.settings.get("startupTimeout"), "startupTimeout")
            self.halt_dependents_on_failure = bool(self.settings.get("haltDependentsOnFailure", True))
            self.max_attempts = int(self.settings.get("maxAttempts", 5))
            self.backoff = BackoffPolicy.from_dict(_mapping(self.settings.get("backoff"), "settings.backoff"))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e

        # Logging
        self.logging: Dict[str, Any] = _mapping(self.settings.get("logging"), "settings.logging")

        # Services
        services_data = self.raw_config.get("services")
        if not services_data or not isinstance(services_data, dict):
            raise ConfigurationError("Stack file must define at least one service under 'services'")
        self.services: Dict[str, ServiceSpec] = {}
        for service_name, service_data in services_data.items():
            self.services[str(service_name)] = self._build_spec(str(service_name), service_data)

    def _load_yaml(self) -> Dict[str, Any]:
        """Load and parse YAML stack file."""
        if not self.config_path.exists():
            raise ConfigurationError(f"Stack file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f)
                if not config:
                    raise ConfigurationError("Stack file is empty")
                return config
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}")

    def _resolve_path(self, value: str) -> Path:
        path = Path(os.path.expandvars(str(value))).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def _build_spec(self, name: str, data: Any) -> ServiceSpec:
        if not isinstance(data, dict):
            raise ConfigurationError(f"Service {name}: definition must be a mapping")

        environment: Dict[str, str] = {}
        env_file = data.get("envFile")
        if env_file:
            env_path = self._resolve_path(env_file)
            if not env_path.exists():
                raise ConfigurationError(f"Service {name}: envFile not found: {env_path}")
            environment.update({k: v for k, v in dotenv_values(env_path).items() if v is not None})
        environment.update(_parse_environment(name, data.get("environment")))

        data = dict(data)
        data["workingDir"] = str(self._resolve_path(data.get("workingDir") or "."))

        try:
            return ServiceSpec.from_dict(
                name,
                data,
                environment=environment,
                default_max_attempts=self.max_attempts,
                default_backoff=self.backoff,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e)) from e

    def resolver(self) -> DependencyResolver:
        """Dependency resolver over this stack's services (validates the graph)."""
        return DependencyResolver(self.services.values())

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path (None = no file logging)."""
        output = self.logging.get("output")
        return self._resolve_path(output) if output else None

    def get_events_path(self) -> Optional[Path]:
        """Get lifecycle event JSONL path (None = events only go to the log)."""
        events = self.logging.get("events")
        return self._resolve_path(events) if events else None

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return bool(self.logging.get("console", True))

    def validate(self) -> None:
        """
        Validate the entire configuration.

        Raises:
            ConfigurationError: On unknown/cyclic dependencies or bad settings
        """
        if self.get_log_format() not in ("pretty", "structured"):
            raise ConfigurationError(
                f"logging.format must be 'pretty' or 'structured' (got {self.get_log_format()!r})"
            )
        self.resolver()

    def __repr__(self) -> str:
        return f"StackConfig(name={self.name}, services={len(self.services)})"


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where} must be a mapping (got {type(value).__name__})")
    return value


def _parse_environment(service: str, value: Any) -> Dict[str, str]:
    """Accept a mapping or a list of KEY=VALUE strings, as compose files do."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list):
        environment = {}
        for item in value:
            key, sep, val = str(item).partition("=")
            if not key or not sep:
                raise ConfigurationError(f"Service {service}: environment entry must be KEY=VALUE (got {item!r})")
            environment[key] = val
        return environment
    raise ConfigurationError(
        f"Service {service}: environment must be a mapping or a list of KEY=VALUE (got {type(value).__name__})"
    )


def find_stack_file(start_dir: Optional[Path] = None) -> Path:
    """
    Locate the stack file: CORCHESTRA_FILE, else corchestra.yaml/.yml in start_dir.

    Raises:
        ConfigurationError: If no stack file is found
    """
    env_file = os.environ.get("CORCHESTRA_FILE")
    if env_file:
        return Path(env_file).expanduser()

    directory = start_dir or Path.cwd()
    for filename in DEFAULT_STACK_FILES:
        candidate = directory / filename
        if candidate.exists():
            return candidate
    raise ConfigurationError(
        f"No stack file found in {directory} (looked for {', '.join(DEFAULT_STACK_FILES)})"
    )


def load_config(config_path: Optional[Path] = None) -> StackConfig:
    """
    Load and validate a stack configuration.

    Args:
        config_path: Path to the stack file. Defaults to find_stack_file()

    Returns:
        Validated StackConfig instance

    Raises:
        ConfigurationError: If the stack file is missing or invalid
    """
    if config_path is None:
        config_path = find_stack_file()

    config = StackConfig(Path(config_path))
    config.validate()
    return config
