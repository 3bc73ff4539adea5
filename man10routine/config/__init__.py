from .loader import (
    ArgoCDConfig,
    BackupConfig,
    ConfigLoader,
    ConsoleConfig,
    ConsoleTarget,
    JobConfig,
    PollingConfig,
    RoutineConfig,
    ServerEndpoint,
    StorageConfig,
    WorkloadRole,
)
from .validator import ValidationResult, validate_config, validate_config_file
