from warden.jobs.handler import UnknownJobTypeError, handle_jobs, process_job, run_jobs
from warden.jobs.memory import InMemoryJobQueue
from warden.jobs.models import JOB_BULK_REVOKE_GRANTS, JOB_REVOKE_EXPIRED_GRANTS, JobMessage

__all__ = [
    "InMemoryJobQueue",
    "JOB_BULK_REVOKE_GRANTS",
    "JOB_REVOKE_EXPIRED_GRANTS",
    "JobMessage",
    "UnknownJobTypeError",
    "handle_jobs",
    "process_job",
    "run_jobs",
]
