from deferjob.worker.launcher import WorkerLaunchError, WorkerLauncher, run_job
from deferjob.worker.monitor import CompletionMonitor, ResultParseError, extract_trailing_value
from deferjob.worker.serializer import JobSerializationError, serialize_job, write_artifact

__all__ = [
    "WorkerLauncher",
    "WorkerLaunchError",
    "run_job",
    "CompletionMonitor",
    "ResultParseError",
    "extract_trailing_value",
    "JobSerializationError",
    "serialize_job",
    "write_artifact",
]
