"""
Routine Orchestrator.

Sequences GitOps suspension, proxy and server restarts, backups, jobs and
resets into named routines. GitOps reconciliation is resumed for every
suspended application on every exit path before the run is sealed.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from man10routine.backup.coordinator import BackupCoordinator
from man10routine.config.loader import RoutineConfig, ServerEndpoint
from man10routine.errors.errors import ErrorCode, ErrorHandler, RoutineError, new_configuration_error
from man10routine.gitops.guard import GitOpsGuard, GuardHandle
from man10routine.integration.console_client import ConsoleClient
from man10routine.triggers.job_trigger import JobTrigger
from man10routine.workloads.controller import WorkloadController
from .models import Outcome, Phase, RoutineRun, RoutineState, RoutineStep, StepStatus

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "shutdown requested"


class RoutineOrchestrator:
    """Runs named maintenance routines against the configured fleet."""

    def __init__(
        self,
        config: RoutineConfig,
        guard: GitOpsGuard,
        console: ConsoleClient,
        controller: WorkloadController,
        jobs: JobTrigger,
        backup: Optional[BackupCoordinator] = None,
        run_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.guard = guard
        self.console = console
        self.controller = controller
        self.jobs = jobs
        self.backup = backup
        self.run_id = run_id
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.error_handler = ErrorHandler("orchestrator", logger)
        self.shutdown_requested = False
        self.routines: Dict[str, Callable[[RoutineRun], Awaitable[None]]] = {
            "daily": self._daily,
        }

    def request_shutdown(self) -> None:
        """Stop starting new steps; in-flight steps and GitOps resume still run."""
        if not self.shutdown_requested:
            logger.warning("Shutdown requested; remaining steps will be skipped")
        self.shutdown_requested = True

    async def run(self, routine: str) -> RoutineRun:
        """Execute a named routine and return its sealed run.

        Raises:
            RoutineError: CONFIGURATION if the routine name is unknown
        """
        sequence = self.routines.get(routine)
        if sequence is None:
            raise new_configuration_error(
                "run", f"unknown routine '{routine}' (available: {', '.join(sorted(self.routines))})"
            )

        run = RoutineRun(routine, self.run_id, clock=self.clock)
        logger.info(f"Starting routine {routine} (run {run.run_id})")
        handles: List[GuardHandle] = []
        try:
            run.transition(RoutineState.GITOPS_SUSPENDING)
            if await self._phase_suspend(run, handles):
                run.transition(RoutineState.SUSPENDED)
                await sequence(run)
            elif run.steps_for(Phase.SUSPEND_GITOPS)[-1].outcome.status == StepStatus.SKIPPED:
                logger.warning(f"GitOps suspension stopped: {SHUTDOWN_REASON}; no restart work was started")
            else:
                logger.error("GitOps suspension failed; aborting routine before any restart work")
        finally:
            run.transition(RoutineState.RESTORING)
            await self._phase_resume(run, handles)
            run.seal()

        logger.info(f"Routine {routine} finished with status {run.status.value} (run {run.run_id})")
        return run

    async def _daily(self, run: RoutineRun) -> None:
        run.transition(RoutineState.EXECUTING)
        restarted = await self._phase_restart(run)
        run.transition(RoutineState.EXECUTING)
        await self._phase_backup(run, restarted)
        run.transition(RoutineState.EXECUTING)
        await self._phase_jobs(run)
        run.transition(RoutineState.EXECUTING)
        await self._phase_reset(run, restarted)

    async def _step(self, run: RoutineRun, name: str, phase: Phase, targets: Iterable[str],
                    operation: Callable[[], Awaitable[object]]) -> Outcome:
        """Run one step and record its outcome. Exceptions never escape."""
        started = self.clock()
        try:
            await operation()
            outcome = Outcome.success()
        except Exception as e:
            outcome = Outcome.from_error(self.error_handler.handle(e, name))
        run.record(RoutineStep(name, phase, tuple(targets), outcome, started, self.clock()))
        if outcome.ok:
            logger.info(f"Step {name}: {outcome}")
        return outcome

    def _skip(self, run: RoutineRun, name: str, phase: Phase, targets: Iterable[str], reason: str) -> Outcome:
        now = self.clock()
        outcome = Outcome.skipped(reason)
        run.record(RoutineStep(name, phase, tuple(targets), outcome, now, now))
        logger.info(f"Step {name}: {outcome}")
        return outcome

    async def _phase_suspend(self, run: RoutineRun, handles: List[GuardHandle]) -> bool:
        """Suspend every managed application sequentially. False aborts the routine."""
        for endpoint in self.config.endpoints():
            app = endpoint.argocd_app
            name = f"suspend-gitops:{app}"
            if self.shutdown_requested:
                self._skip(run, name, Phase.SUSPEND_GITOPS, [endpoint.name], SHUTDOWN_REASON)
                return False

            async def suspend(app=app):
                handles.append(await self.guard.suspend(app))

            outcome = await self._step(run, name, Phase.SUSPEND_GITOPS, [endpoint.name], suspend)
            if not outcome.ok:
                return False
        return True

    async def _warn(self, endpoint: ServerEndpoint) -> None:
        if endpoint.console is None:
            return
        try:
            await self.console.broadcast_warning(endpoint, self.config.console.restart_warning)
        except RoutineError as e:
            logger.warning(f"[{endpoint.name}] Restart warning not delivered: {e}")

    async def _phase_restart(self, run: RoutineRun) -> Set[str]:
        """Stop routing, restart servers concurrently, resume routing.

        Returns the names of the servers whose restart succeeded.
        """
        proxy = self.config.proxy
        servers = self.config.servers

        if self.shutdown_requested:
            stopped = self._skip(run, "stop-routing", Phase.STOP_ROUTING, [proxy.name], SHUTDOWN_REASON)
        else:
            async def stop_routing():
                await self._warn(proxy)
                await self.controller.stop(proxy.name)

            stopped = await self._step(run, "stop-routing", Phase.STOP_ROUTING, [proxy.name], stop_routing)

        restarted: Set[str] = set()
        if stopped.ok:
            semaphore = asyncio.Semaphore(self.config.max_parallel())
            results = await asyncio.gather(*(self._restart_server(run, s, semaphore) for s in servers))
            restarted = {s.name for s, ok in zip(servers, results) if ok}
        else:
            reason = SHUTDOWN_REASON if self.shutdown_requested else f"proxy {proxy.name} did not stop routing"
            for server in servers:
                self._skip(run, f"restart:{server.name}", Phase.RESTART, [server.name], reason)

        # Always attempted so the proxy is not left down.
        await self._step(run, "resume-routing", Phase.RESUME_ROUTING, [proxy.name],
                         lambda: self.controller.start(proxy.name))
        return restarted

    async def _restart_server(self, run: RoutineRun, endpoint: ServerEndpoint,
                              semaphore: asyncio.Semaphore) -> bool:
        name = f"restart:{endpoint.name}"
        async with semaphore:
            if self.shutdown_requested:
                self._skip(run, name, Phase.RESTART, [endpoint.name], SHUTDOWN_REASON)
                return False

            async def restart():
                await self._warn(endpoint)
                await self.controller.restart(endpoint.name)

            outcome = await self._step(run, name, Phase.RESTART, [endpoint.name], restart)
            return outcome.ok

    async def _phase_backup(self, run: RoutineRun, restarted: Set[str]) -> None:
        """Back up every restarted server concurrently."""
        if self.backup is None or not self.config.backup.enabled:
            logger.info("Backups disabled; skipping backup phase")
            return

        semaphore = asyncio.Semaphore(self.config.max_parallel())

        async def backup_server(endpoint: ServerEndpoint) -> None:
            name = f"backup:{endpoint.name}"
            if endpoint.name not in restarted:
                self._skip(run, name, Phase.BACKUP, [endpoint.name], f"restart of {endpoint.name} did not succeed")
                return
            async with semaphore:
                if self.shutdown_requested:
                    self._skip(run, name, Phase.BACKUP, [endpoint.name], SHUTDOWN_REASON)
                    return
                await self._step(run, name, Phase.BACKUP, [endpoint.name], lambda: self.backup.backup(endpoint))

        await asyncio.gather(*(backup_server(s) for s in self.config.servers))

    async def _phase_jobs(self, run: RoutineRun) -> None:
        """Run ancillary jobs in declared order."""
        for job in self.config.jobs:
            name = f"job:{job.name}"
            if self.shutdown_requested:
                self._skip(run, name, Phase.JOBS, [job.name], SHUTDOWN_REASON)
                continue
            await self._step(run, name, Phase.JOBS, [job.name], lambda job=job: self.jobs.run(job))

    async def _phase_reset(self, run: RoutineRun, restarted: Set[str]) -> None:
        for endpoint in self.config.servers:
            if not endpoint.reset_on_daily:
                continue
            name = f"reset:{endpoint.name}"
            if endpoint.name not in restarted:
                self._skip(run, name, Phase.RESET, [endpoint.name], f"restart of {endpoint.name} did not succeed")
                continue
            if self.shutdown_requested:
                self._skip(run, name, Phase.RESET, [endpoint.name], SHUTDOWN_REASON)
                continue
            await self._step(run, name, Phase.RESET, [endpoint.name],
                             lambda endpoint=endpoint: self.console.run(endpoint, list(endpoint.reset_commands)))

    async def _phase_resume(self, run: RoutineRun, handles: List[GuardHandle]) -> None:
        """Release every handle, children first, then anything left on the guard.

        Never skipped, not even on shutdown.
        """
        for handle in reversed(handles):
            await self._step(run, f"resume-gitops:{handle.app}", Phase.RESUME_GITOPS, [handle.app], handle.release)

        pending = self.guard.pending()
        if pending:
            await self._step(run, "resume-gitops:remaining", Phase.RESUME_GITOPS, pending, self.guard.release_all)

        for step in run.steps_for(Phase.RESUME_GITOPS):
            if step.outcome.error_code == ErrorCode.RESTORATION_FAILURE:
                message = (f"ALERT: GitOps reconciliation could not be restored for "
                           f"{', '.join(step.targets)}; manual intervention required ({step.outcome.reason})")
                run.alert(message)
                logger.critical(message)
