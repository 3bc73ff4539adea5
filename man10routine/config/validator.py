"""
Schema validation for the routine configuration file.

This module validates the raw YAML document with Pydantic v2, including
cross-field validation of the ArgoCD application hierarchy, and reports
errors and warnings in a form suitable for operators.
"""

import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError as PydanticValidationError
from pydantic.config import ConfigDict


_DURATION_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$')
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600, None: 1}
_DNS_LABEL = re.compile(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$')


def parse_duration(value: Any) -> timedelta:
    """Parse `90`, `90s`, `1.5m`, `2h`, `500ms` or a timedelta into a timedelta."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_PATTERN.match(str(value))
        if not match:
            raise ValueError(f"Invalid duration: {value!r} (expected e.g. 30s, 10m, 1h)")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds < 0:
        raise ValueError("Duration cannot be negative")
    return timedelta(seconds=seconds)


class ValidationError:
    """Represents a single validation error or warning."""

    def __init__(self, field: str, value: Any, message: str, level: str = "error"):
        self.field = field
        self.value = value
        self.message = message
        self.level = level  # "error" or "warning"

    def __repr__(self):
        return f"ValidationError(field={self.field}, message={self.message}, level={self.level})"


class ValidationResult:
    """Container for validation results including errors and warnings."""

    def __init__(self):
        self.errors: List[ValidationError] = []
        self.warnings: List[ValidationError] = []
        self.valid: bool = True

    def add_error(self, field: str, value: Any, message: str):
        """Add a validation error."""
        self.errors.append(ValidationError(field, value, message, "error"))
        self.valid = False

    def add_warning(self, field: str, value: Any, message: str):
        """Add a validation warning."""
        self.warnings.append(ValidationError(field, value, message, "warning"))

    def format_result(self) -> str:
        """Format the validation result for display."""
        output = []

        if self.valid:
            output.append("Configuration is valid")
        else:
            output.append(f"Configuration validation failed with {len(self.errors)} error(s):\n")
            for error in self.errors:
                output.append(f"  - {error.field}: {error.message}")
                if error.value is not None and error.value != "":
                    output.append(f"     Current value: {error.value}")

        if self.warnings:
            output.append(f"\n{len(self.warnings)} warning(s):")
            for warning in self.warnings:
                output.append(f"  - {warning.field}: {warning.message}")

        return "\n".join(output)


class ValidatedPollingConfig(BaseModel):
    """Bounded polling settings."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    initial_wait: timedelta = Field(default=timedelta(seconds=10))
    poll_interval: timedelta = Field(default=timedelta(seconds=5))
    max_wait: timedelta = Field(default=timedelta(seconds=600))
    error_wait: timedelta = Field(default=timedelta(seconds=10))
    max_errors: int = Field(default=5, ge=1, description="Consecutive API errors tolerated")

    @field_validator('initial_wait', 'poll_interval', 'max_wait', 'error_wait', mode='before')
    @classmethod
    def validate_duration(cls, v):
        return parse_duration(v)

    @model_validator(mode='after')
    def validate_interval(self):
        if self.poll_interval.total_seconds() <= 0:
            raise ValueError("poll_interval must be positive")
        if self.max_wait < self.initial_wait:
            raise ValueError("max_wait must not be shorter than initial_wait")
        return self


class ValidatedArgoCDConfig(BaseModel):
    """ArgoCD API connection."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    server: str = Field(..., min_length=1, description="ArgoCD API server URL")
    token: str = Field(default="", description="ArgoCD bearer token")
    app_namespace: str = Field(default="argocd")
    verify_ssl: bool = Field(default=True)
    timeout: timedelta = Field(default=timedelta(seconds=30))

    @field_validator('server')
    @classmethod
    def validate_server(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError("ArgoCD server must be an http(s) URL")
        return v.rstrip('/')

    @field_validator('timeout', mode='before')
    @classmethod
    def validate_timeout(cls, v):
        return parse_duration(v)


class ValidatedKubernetesConfig(BaseModel):
    """Kubernetes client configuration."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    kubeconfig: str = Field(default="", description="Path to kubeconfig; empty means in-cluster first")
    context: str = Field(default="")
    request_timeout: timedelta = Field(default=timedelta(seconds=30), description="Bound on every Kubernetes API request")

    @field_validator('request_timeout', mode='before')
    @classmethod
    def validate_request_timeout(cls, v):
        timeout = parse_duration(v)
        if timeout <= timedelta(0):
            raise ValueError("Kubernetes request timeout must be positive")
        return timeout


class ValidatedConsoleConfig(BaseModel):
    """Remote console settings shared by every server."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    password: str = Field(default="")
    timeout: timedelta = Field(default=timedelta(seconds=10))
    connect_timeout: timedelta = Field(default=timedelta(seconds=5))
    retry_backoff: timedelta = Field(default=timedelta(seconds=2))
    restart_warning: str = Field(
        default="The server is restarting for daily maintenance.",
        min_length=1,
    )
    flush_command: str = Field(default="save-all flush", min_length=1)

    @field_validator('timeout', 'connect_timeout', 'retry_backoff', mode='before')
    @classmethod
    def validate_duration(cls, v):
        return parse_duration(v)


class ValidatedConsoleTarget(BaseModel):
    """Console endpoint of a single server."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    host: str = Field(..., min_length=1)
    port: int = Field(default=25575, gt=0, lt=65536)


class ValidatedWorkload(BaseModel):
    """A proxy or server workload."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    name: Optional[str] = Field(default=None, description="StatefulSet name")
    argocd: str = Field(..., min_length=1, description="ArgoCD application path")
    console: Optional[ValidatedConsoleTarget] = None
    volume: Optional[str] = Field(default=None, description="PVC holding the world data")
    reset_on_daily: bool = Field(default=False)
    reset_commands: List[str] = Field(default_factory=list)

    @field_validator('argocd')
    @classmethod
    def validate_argocd_path(cls, v):
        segments = v.split('/')
        for segment in segments:
            if not _DNS_LABEL.match(segment):
                raise ValueError(f"Invalid ArgoCD application name '{segment}' in path '{v}'")
        return v

    @model_validator(mode='after')
    def validate_reset(self):
        if self.reset_on_daily and not self.reset_commands:
            raise ValueError("reset_on_daily requires at least one reset command")
        return self


class ValidatedStorageConfig(BaseModel):
    """Backup upload destination."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    type: str = Field(default="http", pattern="^(http|directory)$")
    endpoint: str = Field(default="")
    bucket: str = Field(default="minecraft-backups")
    token: str = Field(default="")
    directory: str = Field(default="")
    prefix: str = Field(default="")
    timeout: timedelta = Field(default=timedelta(seconds=300))

    @field_validator('timeout', mode='before')
    @classmethod
    def validate_timeout(cls, v):
        return parse_duration(v)

    @model_validator(mode='after')
    def validate_destination(self):
        if self.type == 'http' and not self.endpoint.startswith(('http://', 'https://')):
            raise ValueError("http storage requires an http(s) endpoint")
        if self.type == 'directory' and not self.directory:
            raise ValueError("directory storage requires a directory")
        return self


class ValidatedBackupConfig(BaseModel):
    """Backup configuration."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    enabled: bool = Field(default=True)
    snapshot_class: str = Field(default="")
    storage: Optional[ValidatedStorageConfig] = None

    @model_validator(mode='after')
    def validate_storage(self):
        if self.enabled and self.storage is None:
            raise ValueError("storage is required when backups are enabled")
        return self


class ValidatedJobConfig(BaseModel):
    """Ancillary job declaration."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    name: str = Field(..., min_length=1)
    template: str = Field(..., min_length=1, description="Path to a Jinja2 Job manifest template")
    polling: ValidatedPollingConfig = Field(default_factory=ValidatedPollingConfig)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not _DNS_LABEL.match(v):
            raise ValueError(f"Job name '{v}' is not a valid Kubernetes name")
        return v


class ValidatedPollingSet(BaseModel):
    """Polling settings per operation kind."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    restart: ValidatedPollingConfig = Field(default_factory=lambda: ValidatedPollingConfig(
        initial_wait=timedelta(seconds=10),
        poll_interval=timedelta(seconds=10),
        max_wait=timedelta(minutes=15),
    ))
    snapshot: ValidatedPollingConfig = Field(default_factory=ValidatedPollingConfig)


class ValidatedExecutionConfig(BaseModel):
    """Concurrency settings."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    max_parallel: int = Field(default=0, ge=0, description="0 means one worker per server")


class ValidatedLoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    level: str = Field(default="info")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        if v.lower() not in ('debug', 'info', 'warning', 'error', 'critical'):
            raise ValueError(f"Unknown log level '{v}'")
        return v.lower()


class ValidatedObservabilityConfig(BaseModel):
    """Observability configuration."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    logging: ValidatedLoggingConfig = Field(default_factory=ValidatedLoggingConfig)


class ValidatedRoutineConfig(BaseModel):
    """Complete routine configuration."""
    model_config = ConfigDict(validate_default=True, extra='forbid')

    namespace: str = Field(..., min_length=1)
    argocd: ValidatedArgoCDConfig
    kubernetes: ValidatedKubernetesConfig = Field(default_factory=ValidatedKubernetesConfig)
    console: ValidatedConsoleConfig = Field(default_factory=ValidatedConsoleConfig)
    mcproxy: ValidatedWorkload
    mcservers: Dict[str, ValidatedWorkload] = Field(default_factory=dict)
    backup: ValidatedBackupConfig = Field(default_factory=lambda: ValidatedBackupConfig(enabled=False))
    jobs: List[ValidatedJobConfig] = Field(default_factory=list)
    polling: ValidatedPollingSet = Field(default_factory=ValidatedPollingSet)
    execution: ValidatedExecutionConfig = Field(default_factory=ValidatedExecutionConfig)
    observability: ValidatedObservabilityConfig = Field(default_factory=ValidatedObservabilityConfig)

    @model_validator(mode='after')
    def validate_proxy(self):
        if not self.mcproxy.name:
            raise ValueError("mcproxy must have a name defined")
        if self.mcproxy.reset_on_daily:
            raise ValueError("mcproxy cannot be reset on daily")
        return self

    @model_validator(mode='after')
    def validate_servers(self):
        for key, server in self.mcservers.items():
            if server.console is None:
                raise ValueError(f"mcservers.{key}.console is required")
        return self


def build_argocd_hierarchy(paths: List[str]) -> Dict[str, Optional[str]]:
    """Map every ArgoCD application named in `paths` to its parent.

    `apps/minecraft/lobby` yields `apps -> None`, `minecraft -> apps` and
    `lobby -> minecraft`.

    Raises:
        ValueError: If an application is reached through two different
            parents, or if two paths end at the same application
    """
    parents: Dict[str, Optional[str]] = {}
    leaves = set()
    for path in paths:
        segments = path.split('/')
        parent = None
        for index, name in enumerate(segments):
            is_leaf = index == len(segments) - 1
            if is_leaf and (name in leaves or name in parents):
                raise ValueError(f"ArgoCD app '{name}' has multiple workloads assigned")
            if not is_leaf and name in leaves:
                raise ValueError(f"ArgoCD app '{name}' is both a workload application and a parent")
            if name in parents and parents[name] != parent:
                raise ValueError(
                    f"Parent mismatch for ArgoCD app '{name}': first defined parent "
                    f"'{parents[name] or 'None'}', but afterwards defined parent '{parent or 'None'}'"
                )
            parents[name] = parent
            if is_leaf:
                leaves.add(name)
            parent = name
    return parents


class ConfigValidator:
    """Validates a raw configuration dictionary."""

    def __init__(self, config_dict: Dict[str, Any], base_dir: Optional[Path] = None):
        self.config_dict = config_dict or {}
        self.base_dir = base_dir
        self.result = ValidationResult()
        self.validated: Optional[ValidatedRoutineConfig] = None

    def validate(self) -> ValidationResult:
        """Run schema and cross-field validation."""
        try:
            self.validated = ValidatedRoutineConfig(**self.config_dict)
        except PydanticValidationError as e:
            for error in e.errors():
                field = ".".join(str(loc) for loc in error['loc']) or "config"
                self.result.add_error(field, error.get('input') if error['loc'] else None, error['msg'])
            return self.result

        self._validate_hierarchy()
        self._validate_jobs()
        self._collect_warnings()
        return self.result

    def _validate_hierarchy(self):
        """Validate workload names and that ArgoCD paths form a consistent tree."""
        names = {self.validated.mcproxy.name}
        for key, server in self.validated.mcservers.items():
            name = server.name or key
            if name in names:
                self.result.add_error(f"mcservers.{key}.name", name, "Duplicate workload name")
            names.add(name)

        paths = [self.validated.mcproxy.argocd] + [s.argocd for s in self.validated.mcservers.values()]
        try:
            build_argocd_hierarchy(paths)
        except ValueError as e:
            self.result.add_error("argocd", None, str(e))

    def _validate_jobs(self):
        """Validate job names and templates."""
        seen = set()
        for index, job in enumerate(self.validated.jobs):
            if job.name in seen:
                self.result.add_error(f"jobs.{index}.name", job.name, "Duplicate job name")
            seen.add(job.name)

            template = Path(job.template)
            if self.base_dir is not None and not template.is_absolute():
                template = self.base_dir / template
            if not template.exists():
                self.result.add_warning(
                    f"jobs.{index}.template",
                    job.template,
                    "Template file does not exist yet; the job will fail when the routine runs"
                )

    def _collect_warnings(self):
        """Warnings that do not prevent a run."""
        if not self.validated.mcservers:
            self.result.add_warning("mcservers", None, "No servers configured; only the proxy will be maintained")
        if not self.validated.argocd.token:
            self.result.add_warning("argocd.token", "", "No ArgoCD token configured")
        if not self.validated.console.password:
            self.result.add_warning("console.password", "", "No console password configured")
        if self.validated.backup.enabled and not self.validated.backup.snapshot_class:
            self.result.add_warning(
                "backup.snapshot_class",
                "",
                "No VolumeSnapshotClass set; the cluster default class will be used"
            )


def validate_config(config_dict: Dict[str, Any], base_dir: Optional[Path] = None) -> ValidationResult:
    """
    Main entry point for configuration validation.

    Args:
        config_dict: Dictionary containing the configuration to validate
        base_dir: Directory that relative template paths are resolved against

    Returns:
        ValidationResult object containing errors and warnings
    """
    return ConfigValidator(config_dict, base_dir).validate()


def validate_config_file(config_path: Union[str, Path]) -> ValidationResult:
    """
    Validate a configuration file.

    Args:
        config_path: Path to the configuration file

    Returns:
        ValidationResult object containing errors and warnings
    """
    config_path = Path(config_path)
    if not config_path.exists():
        result = ValidationResult()
        result.add_error("file", str(config_path), "Configuration file does not exist")
        return result

    try:
        with open(config_path, 'r') as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        result = ValidationResult()
        result.add_error("file", str(config_path), f"Failed to parse YAML: {e}")
        return result

    return validate_config(config_dict or {}, config_path.parent)
