"""
Data model of a routine run: step outcomes, steps and the run record.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from man10routine.errors.errors import ErrorCode, RoutineError


class StepStatus(Enum):
    """Outcome kinds, ordered from least to most severe."""
    SUCCESS = "Success"
    SKIPPED = "Skipped"
    FAILED = "Failed"


@dataclass(frozen=True)
class Outcome:
    """Result of one step."""
    status: StepStatus
    reason: str = ""
    error_code: Optional[ErrorCode] = None

    @classmethod
    def success(cls) -> 'Outcome':
        return cls(StepStatus.SUCCESS)

    @classmethod
    def skipped(cls, reason: str) -> 'Outcome':
        return cls(StepStatus.SKIPPED, reason)

    @classmethod
    def failed(cls, reason: str, error_code: ErrorCode = ErrorCode.UNKNOWN) -> 'Outcome':
        return cls(StepStatus.FAILED, reason, error_code)

    @classmethod
    def from_error(cls, error: Exception) -> 'Outcome':
        if isinstance(error, RoutineError):
            return cls.failed(str(error), error.code)
        return cls.failed(f"{type(error).__name__}: {error}")

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}({self.reason})"
        return self.status.value


class Phase(Enum):
    """Phases of the daily routine, in execution order."""
    SUSPEND_GITOPS = "suspend-gitops"
    STOP_ROUTING = "stop-routing"
    RESTART = "restart"
    RESUME_ROUTING = "resume-routing"
    BACKUP = "backup"
    JOBS = "job"
    RESET = "reset"
    RESUME_GITOPS = "resume-gitops"


@dataclass(frozen=True)
class RoutineStep:
    """A completed step. Never mutated once recorded."""
    name: str
    phase: Phase
    targets: Tuple[str, ...]
    outcome: Outcome
    started_at: datetime
    finished_at: datetime

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase.value,
            "targets": list(self.targets),
            "status": self.outcome.status.value,
            "reason": self.outcome.reason,
            "error_code": self.outcome.error_code.value if self.outcome.error_code else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }


class RunStatus(Enum):
    """Final status of a run; later members dominate earlier ones."""
    SUCCESS = "Success"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    RESTORATION_FAILURE = "RestorationFailure"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.SKIPPED: 0,
    RunStatus.FAILED: 1,
    RunStatus.RESTORATION_FAILURE: 3,
}

_STEP_TO_RUN_STATUS = {
    StepStatus.SUCCESS: RunStatus.SUCCESS,
    StepStatus.SKIPPED: RunStatus.SKIPPED,
    StepStatus.FAILED: RunStatus.FAILED,
}

_DOMINANCE = [RunStatus.SUCCESS, RunStatus.SKIPPED, RunStatus.FAILED, RunStatus.RESTORATION_FAILURE]


class RoutineState(Enum):
    """Orchestrator lifecycle states."""
    IDLE = "Idle"
    GITOPS_SUSPENDING = "GitOpsSuspending"
    SUSPENDED = "Suspended"
    EXECUTING = "Executing"
    RESTORING = "Restoring"
    SEALED = "Sealed"


_TRANSITIONS = {
    RoutineState.IDLE: {RoutineState.GITOPS_SUSPENDING, RoutineState.RESTORING},
    RoutineState.GITOPS_SUSPENDING: {RoutineState.SUSPENDED, RoutineState.RESTORING},
    RoutineState.SUSPENDED: {RoutineState.EXECUTING, RoutineState.RESTORING},
    RoutineState.EXECUTING: {RoutineState.EXECUTING, RoutineState.RESTORING},
    RoutineState.RESTORING: {RoutineState.SEALED},
    RoutineState.SEALED: set(),
}


class RunSealedError(RuntimeError):
    """Raised when a sealed run is modified."""


def new_run_id(now: Optional[datetime] = None) -> str:
    """Run identifier usable inside Kubernetes resource names."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%d-%H%M%S")


def reduce_status(statuses: List[RunStatus]) -> RunStatus:
    """Most severe of the given statuses; Success for an empty list."""
    return max(statuses, key=_DOMINANCE.index, default=RunStatus.SUCCESS)


class RoutineRun:
    """One execution of a named routine.

    Steps are appended from concurrent tasks under a lock. Once the run is
    sealed the step list is frozen.
    """

    def __init__(self, routine: str, run_id: Optional[str] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.routine = routine
        self.started_at = self.clock()
        self.run_id = run_id or new_run_id(self.started_at)
        self.finished_at: Optional[datetime] = None
        self.state = RoutineState.IDLE
        self.step_index = 0
        self.alerts: List[str] = []
        self._steps: List[RoutineStep] = []
        self._lock = threading.Lock()

    @property
    def sealed(self) -> bool:
        return self.state == RoutineState.SEALED

    @property
    def steps(self) -> Tuple[RoutineStep, ...]:
        with self._lock:
            return tuple(self._steps)

    def transition(self, state: RoutineState) -> None:
        with self._lock:
            if state not in _TRANSITIONS[self.state]:
                raise RuntimeError(f"invalid transition {self.state.value} -> {state.value}")
            if state == RoutineState.EXECUTING:
                self.step_index += 1
            self.state = state

    def record(self, step: RoutineStep) -> None:
        with self._lock:
            if self.state == RoutineState.SEALED:
                raise RunSealedError(f"run {self.run_id} is sealed; cannot record {step.name}")
            self._steps.append(step)

    def alert(self, message: str) -> None:
        with self._lock:
            self.alerts.append(message)

    def seal(self) -> None:
        self.transition(RoutineState.SEALED)
        self.finished_at = self.clock()

    def steps_for(self, phase: Phase) -> List[RoutineStep]:
        return [step for step in self.steps if step.phase == phase]

    def step(self, name: str) -> RoutineStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    @property
    def status(self) -> RunStatus:
        statuses = []
        for step in self.steps:
            if step.outcome.error_code == ErrorCode.RESTORATION_FAILURE:
                statuses.append(RunStatus.RESTORATION_FAILURE)
            else:
                statuses.append(_STEP_TO_RUN_STATUS[step.outcome.status])
        return reduce_status(statuses)

    def summary(self) -> Dict[str, Any]:
        return {
            "routine": self.routine,
            "run_id": self.run_id,
            "status": self.status.value,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [step.to_dict() for step in self.steps],
            "alerts": list(self.alerts),
        }
