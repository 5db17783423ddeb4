from __future__ import annotations

import ast
import asyncio
import logging
from typing import Any

from deferjob.core.config import Settings
from deferjob.jobs.service import enforce_transition, job_to_dict, next_timestamp
from deferjob.jobs.types import Job, JobStatus

logger = logging.getLogger(__name__)

_CLOSERS = {")": "(", "]": "[", "}": "{"}
_OPENERS = frozenset(_CLOSERS.values())
_QUOTES = frozenset("'\"")
_STRING_PREFIXES = frozenset("bBrRuU")
_ATOM_STOPS = frozenset("()[]{}'\",")
_STDERR_TAIL_CHARS = 2000


class ResultParseError(ValueError):
    pass


def _is_escaped(text: str, index: int) -> bool:
    backslashes = 0
    index -= 1
    while index >= 0 and text[index] == "\\":
        backslashes += 1
        index -= 1
    return backslashes % 2 == 1


def _string_start(text: str, end: int) -> int:
    quote = text[end]
    index = end - 1
    while index >= 0:
        if text[index] == quote and not _is_escaped(text, index):
            return index
        index -= 1
    raise ResultParseError("Unterminated string literal at end of output")


def _bracket_start(text: str, end: int) -> int:
    expected: list[str] = []
    index = end
    while index >= 0:
        char = text[index]
        if char in _QUOTES:
            index = _string_start(text, index)
        elif char in _CLOSERS:
            expected.append(_CLOSERS[char])
        elif char in _OPENERS:
            if not expected or expected.pop() != char:
                raise ResultParseError(f"Unbalanced {char!r} at offset {index}")
            if not expected:
                return index
        index -= 1
    raise ResultParseError("Unbalanced brackets at end of output")


def _atom_start(text: str, index: int) -> int:
    while index > 0 and not text[index - 1].isspace() and text[index - 1] not in _ATOM_STOPS:
        index -= 1
    return index


def trailing_expression_span(text: str) -> tuple[int, int]:
    """Locate the last balanced expression in ``text``, scanning backward.

    Diagnostics printed before the value (including ones that mention "end" or
    contain brackets of their own) are never consulted.
    """
    end = len(text.rstrip()) - 1
    if end < 0:
        raise ResultParseError("Worker produced no output")

    last = text[end]
    if last in _CLOSERS:
        # A name glued to the brackets makes it a call, which must not parse.
        start = _atom_start(text, _bracket_start(text, end))
    elif last in _QUOTES:
        start = _string_start(text, end)
        prefix = 0
        while start > 0 and prefix < 2 and text[start - 1] in _STRING_PREFIXES:
            start -= 1
            prefix += 1
    elif last in _OPENERS or last == ",":
        raise ResultParseError(f"Output ends with a dangling {last!r}")
    else:
        start = _atom_start(text, end)
    return start, end + 1


def extract_trailing_value(text: str) -> Any:
    start, end = trailing_expression_span(text)
    expression = text[start:end]
    try:
        return ast.literal_eval(expression)
    except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError) as exc:
        raise ResultParseError(f"Trailing output is not a literal value: {expression[:200]!r}") from exc


def classify_exit(returncode: int | None) -> JobStatus:
    if returncode == 0:
        return JobStatus.EXITED
    if returncode is not None and returncode > 0:
        return JobStatus.FAILED
    return JobStatus.UNKNOWN


class CompletionMonitor:
    def __init__(self, settings: Settings):
        self._settings = settings

    async def watch(self, job: Job, process: asyncio.subprocess.Process) -> Job:
        try:
            stdout, stderr = await process.communicate()
            job.returncode = process.returncode
            job.finished_at = next_timestamp()
            job.output = stdout.decode(job.encoding, errors="replace")
            job.error_output = stderr.decode(job.encoding, errors="replace")

            status = classify_exit(process.returncode)
            enforce_transition(job.status, status)
            job.status = status

            if status == JobStatus.EXITED:
                job.result = extract_trailing_value(job.output)
                logger.info("job %s: worker %s exited cleanly", job.id, process.pid)
                job.callbacks.run_all(job)
            else:
                self._report_abnormal_exit(job, process)
        finally:
            logger.debug("job %s: final state %s", job.id, job_to_dict(job))
            self._cleanup(job)
        return job

    def _report_abnormal_exit(self, job: Job, process: asyncio.subprocess.Process) -> None:
        details = (job.error_output or "").strip()[-_STDERR_TAIL_CHARS:] or "no output on stderr"
        logger.error(
            "job %s: worker process %s (origin %s) exited abnormally with %s [%s]: %s",
            job.id,
            process.pid,
            job.origin,
            process.returncode,
            job.status.value,
            details,
        )

    def _cleanup(self, job: Job) -> None:
        if self._settings.debug:
            logger.info(
                "job %s: debug mode, keeping artifact %s and worker output",
                job.id,
                job.artifact_path,
            )
            return

        job.output = None
        job.error_output = None
        if job.artifact_path is None:
            return
        try:
            job.artifact_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("job %s: could not remove artifact %s: %s", job.id, job.artifact_path, exc)
        else:
            logger.debug("job %s: removed artifact %s", job.id, job.artifact_path)
