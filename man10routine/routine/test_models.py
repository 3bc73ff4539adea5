"""
Tests for the routine run data model.
"""

import threading
from datetime import datetime, timezone

import pytest

from man10routine.errors.errors import ErrorCode, RoutineError
from .models import (
    Outcome, Phase, RoutineRun, RoutineState, RoutineStep, RunSealedError, RunStatus,
    StepStatus, new_run_id, reduce_status
)

NOW = datetime(2026, 10, 18, 4, 0, tzinfo=timezone.utc)


def step(name, outcome, phase=Phase.RESTART):
    return RoutineStep(name, phase, (name,), outcome, NOW, NOW)


def open_run():
    run = RoutineRun("daily", clock=lambda: NOW)
    run.transition(RoutineState.GITOPS_SUSPENDING)
    run.transition(RoutineState.SUSPENDED)
    run.transition(RoutineState.EXECUTING)
    return run


class TestOutcome:

    def test_from_routine_error(self):
        error = RoutineError(ErrorCode.TIMEOUT, "workload", "poll", "lobby never ready")
        outcome = Outcome.from_error(error)

        assert outcome.status == StepStatus.FAILED
        assert outcome.error_code == ErrorCode.TIMEOUT
        assert "lobby never ready" in outcome.reason

    def test_from_unexpected_error(self):
        outcome = Outcome.from_error(KeyError("shigen"))

        assert outcome.error_code == ErrorCode.UNKNOWN
        assert outcome.reason.startswith("KeyError")

    def test_str(self):
        assert str(Outcome.success()) == "Success"
        assert str(Outcome.skipped("restart failed")) == "Skipped(restart failed)"


class TestRunStatus:

    def test_dominance(self):
        assert reduce_status([]) == RunStatus.SUCCESS
        assert reduce_status([RunStatus.SUCCESS, RunStatus.SKIPPED]) == RunStatus.SKIPPED
        assert reduce_status([RunStatus.SKIPPED, RunStatus.FAILED, RunStatus.SUCCESS]) == RunStatus.FAILED
        assert reduce_status([RunStatus.RESTORATION_FAILURE, RunStatus.FAILED]) == RunStatus.RESTORATION_FAILURE

    @pytest.mark.parametrize("status,code", [
        (RunStatus.SUCCESS, 0),
        (RunStatus.SKIPPED, 0),
        (RunStatus.FAILED, 1),
        (RunStatus.RESTORATION_FAILURE, 3),
    ])
    def test_exit_codes(self, status, code):
        assert status.exit_code == code


class TestRoutineRun:

    def test_status_reduces_steps(self):
        run = open_run()
        run.record(step("restart:lobby", Outcome.success()))
        assert run.status == RunStatus.SUCCESS

        run.record(step("backup:shigen", Outcome.skipped("restart failed")))
        assert run.status == RunStatus.SKIPPED

        run.record(step("restart:shigen", Outcome.failed("timeout", ErrorCode.TIMEOUT)))
        assert run.status == RunStatus.FAILED

        run.record(step("resume-gitops:lobby", Outcome.failed("patch rejected", ErrorCode.RESTORATION_FAILURE),
                        phase=Phase.RESUME_GITOPS))
        assert run.status == RunStatus.RESTORATION_FAILURE

    def test_sealed_run_rejects_steps(self):
        run = open_run()
        run.transition(RoutineState.RESTORING)
        run.seal()

        assert run.sealed
        assert run.finished_at == NOW
        with pytest.raises(RunSealedError):
            run.record(step("restart:lobby", Outcome.success()))

    def test_state_machine(self):
        run = RoutineRun("daily")
        with pytest.raises(RuntimeError):
            run.transition(RoutineState.EXECUTING)

        run = open_run()
        run.transition(RoutineState.EXECUTING)
        assert run.step_index == 2

        run.transition(RoutineState.RESTORING)
        with pytest.raises(RuntimeError):
            run.transition(RoutineState.EXECUTING)

    def test_concurrent_appends(self):
        run = open_run()

        def append(worker):
            for i in range(100):
                run.record(step(f"{worker}-{i}", Outcome.success()))

        threads = [threading.Thread(target=append, args=(w,)) for w in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(run.steps) == 400

    def test_summary(self):
        run = open_run()
        run.record(step("restart:lobby", Outcome.failed("timeout", ErrorCode.TIMEOUT)))

        summary = run.summary()

        assert summary["status"] == "Failed"
        assert summary["steps"][0]["error_code"] == "TIMEOUT"
        assert summary["run_id"] == "20261018-040000"

    def test_step_lookup(self):
        run = open_run()
        run.record(step("reset:shigen", Outcome.success(), phase=Phase.RESET))

        assert run.step("reset:shigen").phase == Phase.RESET
        assert run.steps_for(Phase.RESET)[0].name == "reset:shigen"
        with pytest.raises(KeyError):
            run.step("reset:lobby")


def test_new_run_id():
    assert new_run_id(NOW) == "20261018-040000"
