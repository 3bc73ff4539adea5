"""
Tests for the job trigger.
"""

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from man10routine.config.loader import JobConfig, PollingConfig
from man10routine.errors.errors import ErrorCode, RoutineError
from man10routine.integration.kube_client import JobStatus
from .job_trigger import JobTrigger

TEMPLATE = """\
apiVersion: batch/v1
kind: Job
metadata:
  name: {{ job_name }}-{{ run_id }}
  labels:
    team: man10
spec:
  template:
    spec:
      restartPolicy: Never
      containers:
        - name: reset
          image: ghcr.io/man10/ranking-reset:latest
          args: ["--namespace", "{{ namespace }}", "--date", "{{ date }}"]
"""


class FakeKube:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.created = []

    async def create_job(self, body):
        self.created.append(body)
        return body["metadata"]["name"]

    async def get_job_status(self, name):
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


def fast_polling(max_wait=1.0):
    return PollingConfig(
        initial_wait=timedelta(0),
        poll_interval=timedelta(seconds=0.01),
        max_wait=timedelta(seconds=max_wait),
        error_wait=timedelta(seconds=0.01),
        max_errors=3,
    )


class TestJobTrigger(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.template = Path(self.tmp.name) / "ranking.yaml.j2"
        self.template.write_text(TEMPLATE)
        self.job = JobConfig(name="ranking-reset", template=str(self.template), polling=fast_polling())
        self.clock = lambda: datetime(2026, 10, 18, 4, 0, tzinfo=timezone.utc)

    def tearDown(self):
        self.tmp.cleanup()

    def make_trigger(self, statuses):
        self.kube = FakeKube(statuses)
        return JobTrigger(self.kube, "minecraft", "20261018-040000", clock=self.clock)

    def test_render(self):
        manifest = self.make_trigger([]).render(self.job)

        self.assertEqual(manifest["metadata"]["name"], "ranking-reset-20261018-040000")
        self.assertEqual(manifest["metadata"]["namespace"], "minecraft")
        self.assertEqual(manifest["metadata"]["labels"]["team"], "man10")
        self.assertEqual(manifest["metadata"]["labels"]["man10routine/run-id"], "20261018-040000")
        args = manifest["spec"]["template"]["spec"]["containers"][0]["args"]
        self.assertEqual(args, ["--namespace", "minecraft", "--date", "2026-10-18"])

    def test_render_undefined_variable(self):
        self.template.write_text("kind: Job\nmetadata:\n  name: {{ missing }}\n")

        with self.assertRaises(RoutineError) as ctx:
            self.make_trigger([]).render(self.job)
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIGURATION)

    def test_render_requires_job_kind(self):
        self.template.write_text("kind: Deployment\nmetadata:\n  name: x\n")

        with self.assertRaises(RoutineError):
            self.make_trigger([]).render(self.job)

    def test_missing_template(self):
        job = JobConfig(name="ghost", template=str(Path(self.tmp.name) / "missing.j2"))

        with self.assertRaises(RoutineError) as ctx:
            self.make_trigger([]).render(job)
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIGURATION)

    async def test_run_until_complete(self):
        trigger = self.make_trigger([
            JobStatus(name="x", active=1),
            JobStatus(name="x", active=0, succeeded=1, conditions={"Complete": "True"}),
        ])

        result = await trigger.run(self.job)

        self.assertEqual(result.job_name, "ranking-reset-20261018-040000")
        self.assertEqual(result.succeeded, 1)
        self.assertEqual(len(self.kube.created), 1)

    async def test_failed_job(self):
        trigger = self.make_trigger([JobStatus(name="x", active=0, failed=3, conditions={"Failed": "True"})])

        with self.assertRaises(RoutineError) as ctx:
            await trigger.run(self.job)
        self.assertEqual(ctx.exception.code, ErrorCode.JOB_FAILED)
        self.assertEqual(ctx.exception.context["job"], "ranking-reset")

    async def test_job_deadline(self):
        trigger = self.make_trigger([JobStatus(name="x", active=1)])
        job = JobConfig(name="ranking-reset", template=str(self.template), polling=fast_polling(max_wait=0.05))

        with self.assertRaises(RoutineError) as ctx:
            await trigger.run(job)
        self.assertEqual(ctx.exception.code, ErrorCode.TIMEOUT)


if __name__ == '__main__':
    unittest.main()
