from __future__ import annotations

import ast
import codecs
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
from uuid import uuid4

from deferjob.core.config import get_settings
from deferjob.jobs.types import Job, JobStatus, Procedure, SetupProcedure


class InvalidJobStateError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.EXITED, JobStatus.FAILED, JobStatus.UNKNOWN},
    JobStatus.EXITED: {JobStatus.RUNNING},
    JobStatus.FAILED: {JobStatus.RUNNING},
    JobStatus.UNKNOWN: {JobStatus.RUNNING},
}

_last_timestamp: datetime | None = None


def next_timestamp() -> datetime:
    # Strictly increasing so a duplicate never shares its source's timestamp.
    global _last_timestamp
    now = datetime.now(tz=timezone.utc)
    if _last_timestamp is not None and now <= _last_timestamp:
        now = _last_timestamp + timedelta(microseconds=1)
    _last_timestamp = now
    return now


def enforce_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")


def _capture_variables(variables: Mapping[str, Any] | None) -> tuple[tuple[str, Any], ...]:
    if not variables:
        return ()
    captured: list[tuple[str, Any]] = []
    for name, value in variables.items():
        if not isinstance(name, str) or not name.isidentifier():
            raise ValueError(f"Variable name must be an identifier: {name!r}")
        try:
            restored = ast.literal_eval(repr(value))
        except (ValueError, SyntaxError) as exc:
            raise ValueError(f"Variable {name} is not a literal value: {value!r}") from exc
        captured.append((name, restored))
    return tuple(captured)


def create_job(
    origin: str,
    work_procedure: Procedure,
    *,
    contents: str | None = None,
    variables: Mapping[str, Any] | None = None,
    setup: Procedure | None = None,
    encoding: str | None = None,
) -> Job:
    if not isinstance(work_procedure, str) and not callable(work_procedure):
        raise TypeError("work_procedure must be source text or a zero-argument callable")
    if setup is not None and not isinstance(setup, str) and not callable(setup):
        raise TypeError("setup must be source text or a zero-argument callable")

    raw_encoding = encoding or get_settings().default_encoding
    try:
        normalized_encoding = codecs.lookup(raw_encoding).name
    except LookupError as exc:
        raise ValueError(f"Unknown encoding: {raw_encoding}") from exc

    return Job(
        origin=origin,
        encoding=normalized_encoding,
        setup_procedure=SetupProcedure(
            contents=contents,
            variables=_capture_variables(variables),
            extra=setup,
        ),
        work_procedure=work_procedure,
        created_at=next_timestamp(),
        id=uuid4().hex,
    )


def duplicate_job(job: Job) -> Job:
    return Job(
        origin=job.origin,
        encoding=job.encoding,
        setup_procedure=job.setup_procedure,
        work_procedure=job.work_procedure,
        created_at=next_timestamp(),
        id=uuid4().hex,
        callbacks=job.callbacks.copy(),
    )


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "origin": job.origin,
        "encoding": job.encoding,
        "status": job.status.value,
        "result": job.result,
        "artifact_path": job.artifact_path.as_posix() if job.artifact_path is not None else None,
        "pid": job.process.pid if job.process is not None else None,
        "returncode": job.returncode,
        "callbacks": len(job.callbacks),
        "created_at": job.created_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
    }
