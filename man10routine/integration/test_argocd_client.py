"""
Tests for the ArgoCD REST client against an in-process HTTP server.
"""

import copy
import json
import unittest
from datetime import timedelta

from aiohttp import test_utils, web

from man10routine.config.loader import ArgoCDConfig
from man10routine.errors.errors import ErrorCode, RoutineError
from .argocd_client import ArgoCDClient


def merge_patch(target, patch):
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeArgoCD:
    """Minimal stand-in for the ArgoCD application API."""

    def __init__(self):
        self.apps = {
            "lobby": {
                "metadata": {"name": "lobby"},
                "spec": {"syncPolicy": {"automated": {"prune": True, "selfHeal": True}}},
            },
        }
        self.status_overrides = {}
        self.requests = []

    def make_app(self):
        app = web.Application()
        app.router.add_get('/api/v1/applications/{name}', self.get)
        app.router.add_patch('/api/v1/applications/{name}', self.patch)
        return app

    def _check(self, request):
        name = request.match_info['name']
        self.requests.append((request.method, name, dict(request.headers), dict(request.query)))
        if name in self.status_overrides:
            return web.Response(status=self.status_overrides[name], text="error from fake")
        if name not in self.apps:
            return web.json_response({"error": "not found"}, status=404)
        return None

    async def get(self, request):
        failure = self._check(request)
        if failure is not None:
            return failure
        return web.json_response(self.apps[request.match_info["name"]])

    async def patch(self, request):
        failure = self._check(request)
        if failure is not None:
            return failure
        body = await request.json()
        assert body["patchType"] == "merge"
        app = self.apps[body["name"]]
        merge_patch(app, json.loads(body["patch"]))
        return web.json_response(app)


class TestArgoCDClient(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.fake = FakeArgoCD()
        self.server = test_utils.TestServer(self.fake.make_app())
        await self.server.start_server()
        config = ArgoCDConfig(
            server=str(self.server.make_url('')),
            token="argocd-token",
            app_namespace="argocd",
            timeout=timedelta(seconds=5),
        )
        self.client = ArgoCDClient(config)

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_get_sync_policy(self):
        policy = await self.client.get_sync_policy("lobby")

        self.assertEqual(policy, {"automated": {"prune": True, "selfHeal": True}})
        method, name, headers, query = self.fake.requests[0]
        self.assertEqual(headers["Authorization"], "Bearer argocd-token")
        self.assertEqual(query["appNamespace"], "argocd")

    async def test_suspend_and_restore(self):
        original = await self.client.get_sync_policy("lobby")

        await self.client.suspend_auto_sync("lobby")
        self.assertNotIn("automated", self.fake.apps["lobby"]["spec"]["syncPolicy"])

        await self.client.restore_sync_policy("lobby", original)
        self.assertEqual(self.fake.apps["lobby"]["spec"]["syncPolicy"], original)

    async def test_not_found(self):
        with self.assertRaises(RoutineError) as ctx:
            await self.client.get_sync_policy("missing")
        self.assertEqual(ctx.exception.code, ErrorCode.RESOURCE_NOT_FOUND)
        self.assertEqual(ctx.exception.context["application"], "missing")

    async def test_authentication_failure(self):
        self.fake.status_overrides["lobby"] = 403
        with self.assertRaises(RoutineError) as ctx:
            await self.client.suspend_auto_sync("lobby")
        self.assertEqual(ctx.exception.code, ErrorCode.AUTHENTICATION)

    async def test_server_error_is_transient(self):
        self.fake.status_overrides["lobby"] = 503
        with self.assertRaises(RoutineError) as ctx:
            await self.client.get_sync_policy("lobby")
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSIENT_NETWORK)
        self.assertTrue(ctx.exception.retryable)

    async def test_bad_request_is_gitops_error(self):
        self.fake.status_overrides["lobby"] = 400
        with self.assertRaises(RoutineError) as ctx:
            await self.client.get_sync_policy("lobby")
        self.assertEqual(ctx.exception.code, ErrorCode.GITOPS_API)


class TestArgoCDClientConnection(unittest.IsolatedAsyncioTestCase):

    async def test_connection_refused_is_transient(self):
        client = ArgoCDClient(ArgoCDConfig(server="http://127.0.0.1:1", timeout=timedelta(seconds=2)))
        try:
            with self.assertRaises(RoutineError) as ctx:
                await client.get_sync_policy("lobby")
            self.assertEqual(ctx.exception.code, ErrorCode.TRANSIENT_NETWORK)
        finally:
            await client.close()


if __name__ == '__main__':
    unittest.main()
