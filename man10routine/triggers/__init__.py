from .job_trigger import JobResult, JobTrigger
