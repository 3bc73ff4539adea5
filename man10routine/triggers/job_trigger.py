"""
Job trigger.

Renders a batch Job manifest from a Jinja2 template, creates it in the
routine's namespace and waits for it to complete or fail.

Templates receive `namespace`, `job_name`, `run_id` and `date`.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from jinja2 import StrictUndefined, Template, TemplateError

from man10routine.config.loader import JobConfig
from man10routine.errors.errors import ErrorCode, RoutineError, new_configuration_error
from man10routine.integration.kube_client import JobStatus, KubeClient
from man10routine.workloads.polling import poll_until

logger = logging.getLogger(__name__)

COMPONENT = "jobs"


@dataclass
class JobResult:
    """Represents the result of a finished job."""
    name: str
    job_name: str
    duration: float
    succeeded: int = 0
    failed: int = 0


class JobTrigger:
    """Launches configured jobs and waits for their terminal state."""

    def __init__(self, kube: KubeClient, namespace: str, run_id: str,
                 clock: Optional[Callable[[], datetime]] = None):
        self.kube = kube
        self.namespace = namespace
        self.run_id = run_id
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def render(self, job: JobConfig) -> Dict[str, Any]:
        """Render the job's template into a Job manifest.

        Raises:
            RoutineError: CONFIGURATION if the template is missing, does not
                render or is not a batch/v1 Job
        """
        try:
            source = Path(job.template).read_text()
            rendered = Template(source, undefined=StrictUndefined).render(
                namespace=self.namespace,
                job_name=job.name,
                run_id=self.run_id,
                date=self.clock().strftime("%Y-%m-%d"),
            )
            manifest = yaml.safe_load(rendered)
        except OSError as e:
            raise new_configuration_error("render", f"cannot read job template {job.template}", e)
        except TemplateError as e:
            raise new_configuration_error("render", f"cannot render job template {job.template}", e)
        except yaml.YAMLError as e:
            raise new_configuration_error("render", f"job template {job.template} is not valid YAML", e)

        if not isinstance(manifest, dict) or manifest.get("kind") != "Job":
            raise new_configuration_error("render", f"job template {job.template} must render a single Job")

        metadata = manifest.setdefault("metadata", {})
        metadata.setdefault("name", f"{job.name}-{self.run_id}")
        metadata["namespace"] = self.namespace
        labels = metadata.setdefault("labels", {})
        labels.setdefault("app.kubernetes.io/managed-by", "man10routine")
        labels["man10routine/run-id"] = self.run_id
        return manifest

    async def run(self, job: JobConfig) -> JobResult:
        """Create the job and wait until it completes.

        Raises:
            RoutineError: JOB_FAILED if the job fails, TIMEOUT if it does not
                finish within the job's polling window
        """
        start_time = time.monotonic()
        manifest = self.render(job)
        job_name = await self.kube.create_job(manifest)
        logger.info(f"Created job {self.namespace}/{job_name} for {job.name}")

        async def finished() -> Optional[JobStatus]:
            status = await self.kube.get_job_status(job_name)
            if status.is_complete() or status.is_failed():
                return status
            return None

        status = await poll_until(finished, job.polling, f"job {job_name} to finish", COMPONENT)
        duration = time.monotonic() - start_time

        if status.is_failed():
            raise RoutineError(
                ErrorCode.JOB_FAILED, COMPONENT, "run",
                f"job {job_name} failed ({status.failed} failed pod(s))"
            ).with_context("job", job.name)

        logger.info(f"Job {job_name} completed in {duration:.1f}s")
        return JobResult(
            name=job.name,
            job_name=job_name,
            duration=duration,
            succeeded=status.succeeded,
            failed=status.failed,
        )
