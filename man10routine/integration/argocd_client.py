"""
ArgoCD REST client.

Reads and patches the sync policy of ArgoCD applications so automated
reconciliation can be suspended for the duration of the routine and put
back afterwards.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from man10routine.config.loader import ArgoCDConfig
from man10routine.errors.errors import ErrorCode, RoutineError, new_not_found_error, new_transient_error

logger = logging.getLogger(__name__)

COMPONENT = "argocd"


class ArgoCDClient:
    """Client for the ArgoCD application API."""

    def __init__(self, config: ArgoCDConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.base_url = config.server.rstrip('/')
        self._session = session
        self._owns_session = session is None

        logger.info(f"ArgoCD client initialized - server: {self.base_url}")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout.total_seconds())
            connector = None if self.config.verify_ssl else aiohttp.TCPConnector(ssl=False)
            headers = {"Content-Type": "application/json"}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector, headers=headers)
        return self._session

    async def close(self):
        """Close the HTTP session"""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _app_url(self, app: str) -> str:
        return f"{self.base_url}/api/v1/applications/{app}"

    def _params(self) -> Dict[str, str]:
        if self.config.app_namespace:
            return {"appNamespace": self.config.app_namespace}
        return {}

    async def get_application(self, app: str) -> Dict[str, Any]:
        """Fetch an application resource."""
        return await self._request("GET", app, "get_application")

    async def get_sync_policy(self, app: str) -> Dict[str, Any]:
        """Return the application's current sync policy (empty when unset)."""
        application = await self.get_application(app)
        return (application.get("spec") or {}).get("syncPolicy") or {}

    async def suspend_auto_sync(self, app: str) -> None:
        """Remove the automated sync policy so ArgoCD stops reconciling the app."""
        patch = {"spec": {"syncPolicy": {"automated": None}}}
        await self._patch(app, patch, "suspend")
        logger.info(f"Suspended automated sync for ArgoCD app {app}")

    async def restore_sync_policy(self, app: str, sync_policy: Dict[str, Any]) -> None:
        """Put back a previously recorded sync policy."""
        patch = {"spec": {"syncPolicy": sync_policy}}
        await self._patch(app, patch, "resume")
        logger.info(f"Restored sync policy for ArgoCD app {app}")

    async def _patch(self, app: str, patch: Dict[str, Any], operation: str) -> Dict[str, Any]:
        body = {
            "name": app,
            "patch": json.dumps(patch),
            "patchType": "merge",
        }
        if self.config.app_namespace:
            body["appNamespace"] = self.config.app_namespace
        return await self._request("PATCH", app, operation, body)

    async def _request(
        self,
        method: str,
        app: str,
        operation: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = self._get_session()
        try:
            async with session.request(method, self._app_url(app), params=self._params(), json=body) as response:
                if response.status == 200:
                    return await response.json(content_type=None)
                text = await response.text()
                raise self._status_error(response.status, text, app, operation)
        except RoutineError:
            raise
        except asyncio.TimeoutError as e:
            raise new_transient_error(COMPONENT, operation, f"ArgoCD request for {app} timed out", e) \
                .with_context("application", app)
        except aiohttp.ClientError as e:
            raise new_transient_error(COMPONENT, operation, f"ArgoCD request for {app} failed", e) \
                .with_context("application", app)

    @staticmethod
    def _status_error(status: int, text: str, app: str, operation: str) -> RoutineError:
        message = f"ArgoCD returned {status} for {app}: {text.strip()[:200]}"
        if status == 404:
            error = new_not_found_error(COMPONENT, operation, message)
        elif status in (401, 403):
            error = RoutineError(ErrorCode.AUTHENTICATION, COMPONENT, operation, message)
        elif status >= 500:
            error = new_transient_error(COMPONENT, operation, message)
        else:
            error = RoutineError(ErrorCode.GITOPS_API, COMPONENT, operation, message)
        return error.with_context("application", app).with_context("status", status)
