from .errors import (
    ErrorCode,
    ErrorHandler,
    MultiError,
    RoutineError,
    Severity,
    new_configuration_error,
    new_not_found_error,
    new_protocol_error,
    new_restoration_error,
    new_timeout_error,
    new_transient_error,
    retry_transient,
)
