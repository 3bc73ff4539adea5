from .models import (
    Outcome,
    Phase,
    RoutineRun,
    RoutineState,
    RoutineStep,
    RunSealedError,
    RunStatus,
    StepStatus,
    new_run_id,
)
from .orchestrator import RoutineOrchestrator
