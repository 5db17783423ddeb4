from deferjob.jobs.callbacks import CallbackRegistry, add_callback, remove_callback, run_callbacks
from deferjob.jobs.service import (
    ALLOWED_TRANSITIONS,
    InvalidJobStateError,
    create_job,
    duplicate_job,
    job_to_dict,
)
from deferjob.jobs.types import Job, JobStatus, SetupProcedure

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CallbackRegistry",
    "InvalidJobStateError",
    "Job",
    "JobStatus",
    "SetupProcedure",
    "add_callback",
    "create_job",
    "duplicate_job",
    "job_to_dict",
    "remove_callback",
    "run_callbacks",
]
