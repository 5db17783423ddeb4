from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from deferjob.core.config import Settings, get_settings
from deferjob.core.logging import configure_logging
from deferjob.jobs.service import enforce_transition, next_timestamp
from deferjob.jobs.types import Job, JobStatus
from deferjob.worker.monitor import CompletionMonitor
from deferjob.worker.serializer import write_artifact

logger = logging.getLogger(__name__)

# Runs the init file, then the artifact as __main__, in one interpreter.
INIT_FILE_LOADER = (
    "import runpy, sys; "
    "runpy.run_path(sys.argv[1], run_name='__init_file__'); "
    "runpy.run_path(sys.argv[2], run_name='__main__')"
)


class WorkerLaunchError(RuntimeError):
    pass


class WorkerLauncher:
    def __init__(self, settings: Settings, monitor: CompletionMonitor | None = None):
        self._settings = settings
        self._monitor = monitor or CompletionMonitor(settings)
        configure_logging(settings.log_level)

    def build_command(self, artifact_path: Path) -> list[str]:
        executable = self._settings.executable.as_posix()
        if self._settings.init_file is None:
            return [executable, "-u", artifact_path.as_posix()]
        return [
            executable,
            "-I",
            "-u",
            "-c",
            INIT_FILE_LOADER,
            self._settings.init_file.as_posix(),
            artifact_path.as_posix(),
        ]

    async def start(self, job: Job) -> Job:
        enforce_transition(job.status, JobStatus.RUNNING)
        artifact_path = write_artifact(
            job,
            self._settings.effective_artifact_dir,
            prefix=self._settings.artifact_prefix,
        )
        command = self.build_command(artifact_path)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            if not self._settings.debug:
                artifact_path.unlink(missing_ok=True)
                job.artifact_path = None
            raise WorkerLaunchError(f"Failed to start worker for job {job.id}: {exc}") from exc

        job.process = process
        job.status = JobStatus.RUNNING
        job.result = None
        job.returncode = None
        job.output = None
        job.error_output = None
        job.started_at = next_timestamp()
        job.finished_at = None
        job.completion = asyncio.create_task(self._monitor.watch(job, process), name=f"deferjob-{job.id}")
        logger.info("job %s: started worker %s for %s", job.id, process.pid, artifact_path.as_posix())
        return job


async def run_job(job: Job, settings: Settings | None = None) -> Job:
    """Start ``job`` and wait for its completion monitor to finish."""
    launcher = WorkerLauncher(settings or get_settings())
    await launcher.start(job)
    if job.completion is None:
        raise WorkerLaunchError(f"No completion monitor attached to job {job.id}")
    return await job.completion
