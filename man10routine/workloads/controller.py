"""
Workload controller.

Restarts StatefulSets by scaling them to zero and back to one replica,
waiting for each transition under a bounded poll.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from man10routine.config.loader import PollingConfig
from man10routine.errors.errors import new_timeout_error
from man10routine.integration.kube_client import KubeClient
from .polling import poll_until

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkloadController:
    """Stops, starts and restarts single-replica StatefulSets."""

    def __init__(self, kube: KubeClient, polling: PollingConfig):
        self.kube = kube
        self.polling = polling

    async def _bounded(self, call: Awaitable[T], description: str) -> T:
        max_wait = self.polling.max_wait.total_seconds()
        try:
            return await asyncio.wait_for(call, max_wait)
        except asyncio.TimeoutError as e:
            raise new_timeout_error("workload", "scale", f"{description} did not complete within {max_wait:.0f}s", e)

    async def _scale(self, name: str, replicas: int) -> None:
        status = await self._bounded(self.kube.get_statefulset(name), f"reading {name}")
        if status.desired == replicas:
            logger.warning(f"StatefulSet {name} already has {replicas} desired replica(s); not scaling")
            return
        await self._bounded(self.kube.scale_statefulset(name, replicas), f"scaling {name} to {replicas}")

    async def stop(self, name: str) -> None:
        """Scale to zero and wait until no replica is running."""
        logger.info(f"Stopping {name}")
        await self._scale(name, 0)

        async def stopped() -> Optional[bool]:
            status = await self.kube.get_statefulset(name)
            return True if status.current == 0 else None

        await poll_until(stopped, self.polling, f"{name} to stop")
        logger.info(f"{name} stopped")

    async def start(self, name: str) -> None:
        """Scale to one replica and wait until it is ready."""
        logger.info(f"Starting {name}")
        await self._scale(name, 1)

        async def ready() -> Optional[bool]:
            status = await self.kube.get_statefulset(name)
            return True if status.ready >= 1 else None

        await poll_until(ready, self.polling, f"{name} to become ready")
        logger.info(f"{name} is ready")

    async def restart(self, name: str) -> None:
        """Graceful restart: stop, then start."""
        await self.stop(name)
        await self.start(name)
