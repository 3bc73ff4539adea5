"""
Command line entry point.

    man10routine [--config PATH] [--verbose] daily
    man10routine [--config PATH] validate

Exit codes: 0 success, 1 failed steps, 2 configuration or usage error,
3 GitOps restoration failed.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from man10routine.backup.coordinator import BackupCoordinator
from man10routine.config.loader import ConfigLoader, RoutineConfig
from man10routine.errors.errors import ErrorCode, RoutineError
from man10routine.gitops.guard import GitOpsGuard
from man10routine.integration.argocd_client import ArgoCDClient
from man10routine.integration.console_client import ConsoleClient
from man10routine.integration.kube_client import KubeClient
from man10routine.integration.upload_sink import create_sink
from man10routine.routine.models import RoutineRun, RunStatus, new_run_id
from man10routine.routine.orchestrator import RoutineOrchestrator
from man10routine.triggers.job_trigger import JobTrigger
from man10routine.workloads.controller import WorkloadController

logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def create_argument_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI usage."""
    parser = argparse.ArgumentParser(
        prog='man10routine',
        description="Maintenance routines for Minecraft servers managed by ArgoCD"
    )

    parser.add_argument(
        '--config', '-c',
        help='Path to the routine configuration file (default: $ROUTINE_CONFIG or /etc/man10routine/config.yaml)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True
    subparsers.add_parser('daily', help='Run the daily maintenance routine')
    subparsers.add_parser('validate', help='Validate the configuration and exit')

    return parser


def setup_logging(verbose: bool, level: str = "info") -> None:
    log_level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(log_level)


def install_signal_handlers(orchestrator: RoutineOrchestrator) -> None:
    """Turn SIGINT and SIGTERM into a graceful shutdown request."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
        except NotImplementedError:
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")


async def run_routine(config: RoutineConfig, routine: str) -> RoutineRun:
    """Build the collaborators from configuration and run one routine."""
    run_id = new_run_id()
    kube = KubeClient.from_config(config.kubernetes, config.namespace)
    console = ConsoleClient(config.console)
    sink = create_sink(config.backup.storage) if config.backup.enabled else None

    async with ArgoCDClient(config.argocd) as argocd:
        try:
            backup = None
            if sink is not None:
                backup = BackupCoordinator(
                    namespace=config.namespace,
                    console=console,
                    kube=kube,
                    sink=sink,
                    polling=config.polling.snapshot,
                    snapshot_class=config.backup.snapshot_class,
                    prefix=config.backup.storage.prefix,
                    retry_backoff=config.console.retry_backoff.total_seconds(),
                )
            orchestrator = RoutineOrchestrator(
                config=config,
                guard=GitOpsGuard(argocd, config.argocd_hierarchy()),
                console=console,
                controller=WorkloadController(kube, config.polling.restart),
                jobs=JobTrigger(kube, config.namespace, run_id),
                backup=backup,
                run_id=run_id,
            )
            install_signal_handlers(orchestrator)
            return await orchestrator.run(routine)
        finally:
            if sink is not None:
                await sink.close()


def report(run: RoutineRun) -> None:
    """Log one line per step and the final status."""
    for step in run.steps:
        targets = ','.join(step.targets)
        logger.info(f"  {step.name:<32} {str(step.outcome):<40} [{targets}] {step.duration:.1f}s")
    for alert in run.alerts:
        logger.critical(alert)
    if run.status == RunStatus.RESTORATION_FAILURE:
        logger.critical(f"Run {run.run_id}: GitOps restoration failed; check ArgoCD sync policies manually")
    else:
        logger.info(f"Run {run.run_id}: {run.status.value}")


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for CLI usage."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    try:
        config = ConfigLoader(args.config).load()
    except RoutineError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    if args.command == 'validate':
        print(f"Configuration is valid: {len(config.servers)} server(s), {len(config.jobs)} job(s)")
        return

    setup_logging(args.verbose, config.observability.logging.level)

    try:
        run = asyncio.run(run_routine(config, args.command))
    except RoutineError as e:
        logger.error(f"Routine {args.command} could not start: {e}")
        sys.exit(EXIT_CONFIG_ERROR if e.code == ErrorCode.CONFIGURATION else EXIT_FAILED)

    report(run)
    sys.exit(run.status.exit_code)


if __name__ == '__main__':
    main()
