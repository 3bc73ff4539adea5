"""
GitOps guard.

Suspends ArgoCD automated sync for the applications the routine touches
and guarantees it is put back. Application paths form an app-of-apps
tree, so a child is only suspended after its parents, and a parent shared
by several children is resumed once, after the last of them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from man10routine.errors.errors import (
    MultiError, RoutineError, new_restoration_error, retry_transient
)
from man10routine.integration.argocd_client import ArgoCDClient

logger = logging.getLogger(__name__)

SUSPENDED = "Suspended"
SYNCED = "Synced"


@dataclass
class _Suspension:
    app: str
    original_policy: Dict[str, Any]
    # False when the app was already suspended before the routine touched it
    transitioned: bool
    refcount: int = 1


class GuardHandle:
    """Proof of a suspension; its only capability is `release()`."""

    def __init__(self, guard: 'GitOpsGuard', app: str):
        self._guard = guard
        self.app = app
        self.released = False

    async def release(self) -> None:
        """Resume reconciliation. Later calls are no-ops."""
        if self.released:
            return
        self.released = True
        await self._guard._release_chain(self.app)


class GitOpsGuard:
    """Owns every ArgoCD suspension made during one run."""

    def __init__(self, client: ArgoCDClient, hierarchy: Optional[Dict[str, Optional[str]]] = None,
                 retry_backoff: float = 1.0):
        self.client = client
        self.hierarchy = hierarchy or {}
        self.retry_backoff = retry_backoff
        self._suspensions: Dict[str, _Suspension] = {}
        self._order: List[str] = []
        self._handles: List[GuardHandle] = []
        self.transitions: List[Tuple[str, str]] = []

    def _chain(self, app: str) -> List[str]:
        """The application followed by its ancestors, nearest first."""
        chain = [app]
        parent = self.hierarchy.get(app)
        while parent is not None and parent not in chain:
            chain.append(parent)
            parent = self.hierarchy.get(parent)
        return chain

    async def suspend(self, app: str) -> GuardHandle:
        """Disable automated sync for `app` and its ancestors.

        Raises:
            RoutineError: If the current policy cannot be read or the patch
                fails. A patch that was attempted stays recorded so
                `release_all()` still tries to resume it.
        """
        for name in reversed(self._chain(app)):
            await self._acquire(name)
        handle = GuardHandle(self, app)
        self._handles.append(handle)
        return handle

    async def _acquire(self, app: str) -> None:
        existing = self._suspensions.get(app)
        if existing is not None:
            existing.refcount += 1
            return

        policy = await retry_transient(
            lambda: self.client.get_sync_policy(app),
            backoff=self.retry_backoff,
            description=f"read sync policy of {app}",
        )
        if not policy.get("automated"):
            logger.info(f"ArgoCD app {app} is already suspended; leaving it as is")
            self._suspensions[app] = _Suspension(app, policy, transitioned=False)
            self._order.append(app)
            return

        self._suspensions[app] = _Suspension(app, policy, transitioned=True)
        self._order.append(app)
        self.transitions.append((app, SUSPENDED))
        await self.client.suspend_auto_sync(app)

    async def _restore(self, suspension: _Suspension) -> None:
        if not suspension.transitioned:
            return
        app = suspension.app
        try:
            await retry_transient(
                lambda: self.client.restore_sync_policy(app, suspension.original_policy),
                backoff=self.retry_backoff,
                description=f"restore sync policy of {app}",
            )
        except RoutineError as e:
            raise new_restoration_error(app, f"failed to resume automated sync for {app}", e)
        self.transitions.append((app, SYNCED))

    async def _release_chain(self, app: str) -> None:
        errors = MultiError("gitops", "release")
        for name in self._chain(app):
            suspension = self._suspensions.get(name)
            if suspension is None:
                continue
            suspension.refcount -= 1
            if suspension.refcount > 0:
                continue
            self._forget(name)
            try:
                await self._restore(suspension)
            except RoutineError as e:
                errors.add(e)
        self._raise_if_failed(app, errors)

    def _forget(self, app: str) -> None:
        del self._suspensions[app]
        self._order.remove(app)

    async def release_all(self) -> None:
        """Resume every remaining suspension, children before parents.

        Raises:
            RoutineError: RESTORATION_FAILURE naming every application that
                could not be resumed.
        """
        for handle in self._handles:
            handle.released = True
        errors = MultiError("gitops", "release_all")
        for name in list(reversed(self._order)):
            suspension = self._suspensions[name]
            self._forget(name)
            try:
                await self._restore(suspension)
            except RoutineError as e:
                errors.add(e)
        self._raise_if_failed(None, errors)

    @staticmethod
    def _raise_if_failed(app: Optional[str], errors: MultiError) -> None:
        if not errors.has_errors():
            return
        failed = [e.context.get("application") for e in errors.errors]
        if len(errors.errors) == 1:
            raise errors.errors[0]
        raise new_restoration_error(
            app or failed[0], f"failed to resume automated sync for {', '.join(failed)}", errors
        ).with_context("applications", failed)

    def pending(self) -> List[str]:
        """Applications whose suspension has not been released yet."""
        return list(self._order)

    def is_balanced(self) -> bool:
        """True when every recorded suspension has a matching resume."""
        suspended = [app for app, state in self.transitions if state == SUSPENDED]
        synced = [app for app, state in self.transitions if state == SYNCED]
        return sorted(suspended) == sorted(synced)
