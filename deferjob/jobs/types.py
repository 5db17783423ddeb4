from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Union

from deferjob.jobs.callbacks import CallbackRegistry

# Source text of a function body, or a zero-argument importable callable.
Procedure = Union[str, Callable[[], Any]]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SetupProcedure:
    """Origin state captured by value, replayed inside the worker."""

    contents: str | None = None
    variables: tuple[tuple[str, Any], ...] = ()
    extra: Procedure | None = None


@dataclass(slots=True)
class Job:
    origin: str
    encoding: str
    setup_procedure: SetupProcedure
    work_procedure: Procedure
    created_at: datetime
    id: str
    callbacks: CallbackRegistry = field(default_factory=CallbackRegistry)
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    artifact_path: Path | None = None
    process: asyncio.subprocess.Process | None = None
    completion: asyncio.Task[Job] | None = None
    returncode: int | None = None
    output: str | None = None
    error_output: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
