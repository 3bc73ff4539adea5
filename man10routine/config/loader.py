"""
Configuration loader for the maintenance routine.

The YAML file describes the namespace, the ArgoCD API, the proxy and
server workloads, backup storage and ancillary jobs. Environment
variables override secrets and endpoints so the same file can be
mounted from a ConfigMap while tokens come from a Secret.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from man10routine.errors.errors import new_configuration_error
from .validator import ValidatedPollingConfig, ValidatedRoutineConfig, ValidatedWorkload, build_argocd_hierarchy, validate_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/man10routine/config.yaml"


@dataclass
class PollingConfig:
    """Bounded polling settings."""
    initial_wait: timedelta = timedelta(seconds=10)
    poll_interval: timedelta = timedelta(seconds=5)
    max_wait: timedelta = timedelta(seconds=600)
    error_wait: timedelta = timedelta(seconds=10)
    max_errors: int = 5


@dataclass(frozen=True)
class ConsoleTarget:
    """Address of a server's remote console."""
    host: str
    port: int = 25575


class WorkloadRole(Enum):
    PROXY = "proxy"
    SERVER = "server"


@dataclass(frozen=True)
class ServerEndpoint:
    """A proxy or game server maintained by the routine."""
    name: str
    role: WorkloadRole
    argocd_path: str
    console: Optional[ConsoleTarget] = None
    volume: str = ""
    reset_on_daily: bool = False
    reset_commands: Tuple[str, ...] = ()

    @property
    def argocd_app(self) -> str:
        """Name of the ArgoCD application that owns this workload."""
        return self.argocd_path.split('/')[-1]

    @property
    def is_proxy(self) -> bool:
        return self.role == WorkloadRole.PROXY

    @property
    def data_volume(self) -> str:
        """PVC that holds the world data."""
        return self.volume or f"data-{self.name}-0"


@dataclass
class ArgoCDConfig:
    """ArgoCD API configuration."""
    server: str = ""
    token: str = ""
    app_namespace: str = "argocd"
    verify_ssl: bool = True
    timeout: timedelta = timedelta(seconds=30)


@dataclass
class KubernetesConfig:
    """Kubernetes client configuration."""
    kubeconfig: str = ""
    context: str = ""
    request_timeout: timedelta = timedelta(seconds=30)


@dataclass
class ConsoleConfig:
    """Remote console settings."""
    password: str = ""
    timeout: timedelta = timedelta(seconds=10)
    connect_timeout: timedelta = timedelta(seconds=5)
    retry_backoff: timedelta = timedelta(seconds=2)
    restart_warning: str = "The server is restarting for daily maintenance."
    flush_command: str = "save-all flush"


@dataclass
class StorageConfig:
    """Backup upload destination."""
    type: str = "http"
    endpoint: str = ""
    bucket: str = "minecraft-backups"
    token: str = ""
    directory: str = ""
    prefix: str = ""
    timeout: timedelta = timedelta(seconds=300)


@dataclass
class BackupConfig:
    """Backup configuration."""
    enabled: bool = False
    snapshot_class: str = ""
    storage: StorageConfig = field(default_factory=StorageConfig)


@dataclass
class JobConfig:
    """Ancillary batch job."""
    name: str
    template: str
    polling: PollingConfig = field(default_factory=PollingConfig)


@dataclass
class PollingSet:
    """Polling settings per operation kind."""
    restart: PollingConfig = field(default_factory=lambda: PollingConfig(
        poll_interval=timedelta(seconds=10),
        max_wait=timedelta(minutes=15),
    ))
    snapshot: PollingConfig = field(default_factory=PollingConfig)


@dataclass
class ExecutionConfig:
    """Concurrency configuration."""
    max_parallel: int = 0


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "info"


@dataclass
class ObservabilityConfig:
    """Observability configuration."""
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class RoutineConfig:
    """Complete routine configuration."""
    namespace: str
    argocd: ArgoCDConfig
    proxy: ServerEndpoint
    servers: List[ServerEndpoint] = field(default_factory=list)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    console: ConsoleConfig = field(default_factory=ConsoleConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    jobs: List[JobConfig] = field(default_factory=list)
    polling: PollingSet = field(default_factory=PollingSet)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def endpoints(self) -> List[ServerEndpoint]:
        """The proxy followed by every server."""
        return [self.proxy] + list(self.servers)

    def server(self, name: str) -> ServerEndpoint:
        for endpoint in self.endpoints():
            if endpoint.name == name:
                return endpoint
        raise KeyError(name)

    def argocd_hierarchy(self) -> Dict[str, Optional[str]]:
        """Map of ArgoCD application name to its parent application."""
        return build_argocd_hierarchy([e.argocd_path for e in self.endpoints()])

    def max_parallel(self) -> int:
        """Effective concurrency limit for per-server work."""
        return self.execution.max_parallel or max(len(self.servers), 1)


class ConfigLoader:
    """Configuration loader for the routine configuration file."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path or os.getenv('ROUTINE_CONFIG', DEFAULT_CONFIG_PATH))

    def load(self) -> RoutineConfig:
        """Load, override, validate and build the configuration.

        Returns:
            RoutineConfig: Loaded and validated configuration

        Raises:
            RoutineError: CONFIGURATION if the file is missing or invalid
        """
        data = self._load_file()
        data = self._apply_environment_overrides(data)
        data = self._expand_environment_variables(data)
        return self.from_dict(data, self.config_path.parent)

    def _load_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise new_configuration_error("load", f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise new_configuration_error("load", f"Failed to read {self.config_path}", e)

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise new_configuration_error("load", f"{self.config_path} must contain a mapping at the top level")
        return data

    def _apply_environment_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides.

        Args:
            data: Raw configuration mapping

        Returns:
            Dict[str, Any]: Mapping with environment overrides applied
        """
        if os.getenv('ROUTINE_NAMESPACE'):
            data['namespace'] = os.getenv('ROUTINE_NAMESPACE')

        argocd = data.setdefault('argocd', {}) or {}
        data['argocd'] = argocd
        if os.getenv('ARGOCD_SERVER'):
            argocd['server'] = os.getenv('ARGOCD_SERVER')
        if os.getenv('ARGOCD_AUTH_TOKEN'):
            argocd['token'] = os.getenv('ARGOCD_AUTH_TOKEN')

        if os.getenv('RCON_PASSWORD'):
            console = data.get('console') or {}
            console['password'] = os.getenv('RCON_PASSWORD')
            data['console'] = console

        storage = (data.get('backup') or {}).get('storage')
        if isinstance(storage, dict):
            storage['endpoint'] = os.getenv('STORAGE_ENDPOINT', storage.get('endpoint', ''))
            storage['token'] = os.getenv('STORAGE_TOKEN', storage.get('token', ''))

        if os.getenv('LOG_LEVEL'):
            observability = data.get('observability') or {}
            logging_config = observability.get('logging') or {}
            logging_config['level'] = os.getenv('LOG_LEVEL')
            observability['logging'] = logging_config
            data['observability'] = observability

        return data

    def _expand_environment_variables(self, value: Any) -> Any:
        """Expand `$VAR` and `${VAR}` references in every string value."""
        if isinstance(value, str):
            return os.path.expandvars(value)
        if isinstance(value, dict):
            return {k: self._expand_environment_variables(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand_environment_variables(v) for v in value]
        return value

    @staticmethod
    def from_dict(data: Dict[str, Any], base_dir: Optional[Path] = None) -> RoutineConfig:
        """Validate a raw mapping and build the configuration.

        Raises:
            RoutineError: CONFIGURATION with the formatted validation report
        """
        result = validate_config(data, base_dir)
        if not result.valid:
            raise new_configuration_error("validate", f"Configuration validation failed:\n{result.format_result()}")
        if result.warnings:
            logger.warning(f"Configuration loaded with warnings:\n{result.format_result()}")

        return _build(ValidatedRoutineConfig(**data), base_dir)


def _polling(validated: ValidatedPollingConfig) -> PollingConfig:
    return PollingConfig(
        initial_wait=validated.initial_wait,
        poll_interval=validated.poll_interval,
        max_wait=validated.max_wait,
        error_wait=validated.error_wait,
        max_errors=validated.max_errors,
    )


def _endpoint(name: str, role: WorkloadRole, workload: ValidatedWorkload) -> ServerEndpoint:
    console = None
    if workload.console is not None:
        console = ConsoleTarget(host=workload.console.host, port=workload.console.port)
    return ServerEndpoint(
        name=name,
        role=role,
        argocd_path=workload.argocd,
        console=console,
        volume=workload.volume or "",
        reset_on_daily=workload.reset_on_daily,
        reset_commands=tuple(workload.reset_commands),
    )


def _build(validated: ValidatedRoutineConfig, base_dir: Optional[Path]) -> RoutineConfig:
    jobs = []
    for job in validated.jobs:
        template = Path(job.template)
        if base_dir is not None and not template.is_absolute():
            template = base_dir / template
        jobs.append(JobConfig(name=job.name, template=str(template), polling=_polling(job.polling)))

    backup = BackupConfig(enabled=validated.backup.enabled, snapshot_class=validated.backup.snapshot_class)
    if validated.backup.storage is not None:
        storage = validated.backup.storage
        backup.storage = StorageConfig(
            type=storage.type,
            endpoint=storage.endpoint.rstrip('/'),
            bucket=storage.bucket,
            token=storage.token,
            directory=storage.directory,
            prefix=storage.prefix.strip('/'),
            timeout=storage.timeout,
        )

    return RoutineConfig(
        namespace=validated.namespace,
        argocd=ArgoCDConfig(
            server=validated.argocd.server,
            token=validated.argocd.token,
            app_namespace=validated.argocd.app_namespace,
            verify_ssl=validated.argocd.verify_ssl,
            timeout=validated.argocd.timeout,
        ),
        proxy=_endpoint(validated.mcproxy.name, WorkloadRole.PROXY, validated.mcproxy),
        servers=[
            _endpoint(server.name or key, WorkloadRole.SERVER, server)
            for key, server in validated.mcservers.items()
        ],
        kubernetes=KubernetesConfig(
            kubeconfig=validated.kubernetes.kubeconfig,
            context=validated.kubernetes.context,
            request_timeout=validated.kubernetes.request_timeout,
        ),
        console=ConsoleConfig(
            password=validated.console.password,
            timeout=validated.console.timeout,
            connect_timeout=validated.console.connect_timeout,
            retry_backoff=validated.console.retry_backoff,
            restart_warning=validated.console.restart_warning,
            flush_command=validated.console.flush_command,
        ),
        backup=backup,
        jobs=jobs,
        polling=PollingSet(
            restart=_polling(validated.polling.restart),
            snapshot=_polling(validated.polling.snapshot),
        ),
        execution=ExecutionConfig(max_parallel=validated.execution.max_parallel),
        observability=ObservabilityConfig(
            logging=LoggingConfig(level=validated.observability.logging.level),
        ),
    )
