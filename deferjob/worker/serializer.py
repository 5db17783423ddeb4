"""Render a job into a standalone worker script.

The script must run in a fresh interpreter with no access to the parent's
memory, so everything a job refers to is captured by value: procedure bodies
as source text, callables as importable ``module:qualname`` references, and
data as Python literals. Anything else is rejected up front.
"""

from __future__ import annotations

import ast
import functools
import importlib
import os
import sys
import tempfile
import textwrap
from pathlib import Path
from string import Template
from typing import Any, Sequence

from deferjob.jobs.types import Job, Procedure


class JobSerializationError(RuntimeError):
    pass


_ARTIFACT_TEMPLATE = Template(
    '''\
# -*- coding: $encoding -*-
# Generated worker for job $job_id.
import ast
import builtins
import getpass
import importlib
import os
import sys

ENCODING = $encoding_literal
sys.stdout.reconfigure(encoding=ENCODING, errors="backslashreplace")
sys.stderr.reconfigure(encoding=ENCODING, errors="backslashreplace")

IMPORT_PATH = $import_path_literal
for _entry in IMPORT_PATH:
    if _entry not in sys.path:
        sys.path.append(_entry)


class Workspace:
    def __init__(self, origin, encoding):
        self.origin = origin
        self.encoding = encoding
        self.text = ""
        self.variables = {}
        self.modified = False

    def insert(self, text):
        self.text += text
        self.modified = True

    def set_modified(self, flag):
        self.modified = bool(flag)


def _refuse_prompt(*args, **kwargs):
    raise EOFError("interactive prompts are disabled in batch workers")


builtins.input = _refuse_prompt
getpass.getpass = _refuse_prompt
os.environ["PYTHONBREAKPOINT"] = "0"
sys.breakpointhook = lambda *args, **kwargs: None


def _resolve(module_name, qualname):
    target = importlib.import_module(module_name)
    for part in qualname.split("."):
        target = getattr(target, part)
    return target


workspace = Workspace($origin_literal, ENCODING)


$setup_function


$work_function


def main():
$setup_steps
    workspace.set_modified(False)
    result = _work()
    text = repr(result)
    ast.literal_eval(text)
    sys.stdout.write("\\n" + text + "\\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
'''
)


def _is_literal(value: Any) -> bool:
    try:
        return ast.literal_eval(ascii(value)) == value
    except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
        return False


def _importable_reference(func: Any) -> tuple[str, str]:
    module_name = getattr(func, "__module__", None)
    qualname = getattr(func, "__qualname__", None)
    if not module_name or not qualname:
        raise JobSerializationError(f"Callable has no importable name: {func!r}")
    if module_name == "__main__":
        raise JobSerializationError(f"Callable defined in __main__ cannot be imported by a worker: {qualname}")
    if "<lambda>" in qualname or "<locals>" in qualname:
        raise JobSerializationError(f"Lambdas and nested functions cannot be captured: {qualname}")
    if getattr(func, "__closure__", None):
        raise JobSerializationError(f"Closures cannot be captured by value: {qualname}")

    try:
        target: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as exc:
        raise JobSerializationError(f"Cannot resolve {module_name}:{qualname}") from exc
    if target is not func:
        raise JobSerializationError(f"{module_name}:{qualname} does not resolve to the given callable")
    return module_name, qualname


def _render_source(name: str, source: str) -> str:
    body = textwrap.dedent(source).strip("\n")
    if not body.strip():
        body = "return None"
    return f"def {name}():\n{textwrap.indent(body, '    ')}"


def _render_callable(name: str, func: Any) -> str:
    args: tuple[Any, ...] = ()
    keywords: dict[str, Any] = {}
    if isinstance(func, functools.partial):
        args, keywords, func = func.args, dict(func.keywords), func.func
        for value in (*args, *keywords.values()):
            if not _is_literal(value):
                raise JobSerializationError(f"Partial argument is not a literal value: {value!r}")

    module_name, qualname = _importable_reference(func)
    call = f"_resolve({ascii(module_name)}, {ascii(qualname)})(*{ascii(args)}, **{ascii(keywords)})"
    return f"def {name}():\n    return {call}"


def render_procedure(name: str, procedure: Procedure | None) -> str:
    if procedure is None:
        return f"def {name}():\n    return None"
    if isinstance(procedure, str):
        return _render_source(name, procedure)
    if callable(procedure):
        return _render_callable(name, procedure)
    raise JobSerializationError(f"Unsupported procedure type: {type(procedure).__name__}")


def _render_setup_steps(job: Job) -> str:
    setup = job.setup_procedure
    steps: list[str] = []
    if setup.contents is not None:
        steps.append(f"workspace.insert({ascii(setup.contents)})")
    if setup.variables:
        for name, value in setup.variables:
            if not _is_literal(value):
                raise JobSerializationError(f"Variable {name} is not a literal value: {value!r}")
        steps.append(f"workspace.variables.update({ascii(dict(setup.variables))})")
    if setup.extra is not None:
        steps.append("_setup()")
    return textwrap.indent("\n".join(steps) or "pass", "    ")


def _check_encoding(encoding: str) -> None:
    # Python only accepts source files in ASCII-compatible encodings.
    marker = "# -*- coding -*-\n"
    try:
        compatible = marker.encode(encoding) == marker.encode("ascii")
    except LookupError as exc:
        raise JobSerializationError(f"Unknown encoding: {encoding}") from exc
    if not compatible:
        raise JobSerializationError(f"Encoding {encoding} is not ASCII-compatible")


def parent_import_path() -> list[str]:
    # The worker starts from its own sys.path; modules the parent can import
    # must stay importable there.
    entries: list[str] = []
    for entry in sys.path:
        if not isinstance(entry, str):
            continue
        resolved = os.path.abspath(entry or os.curdir)
        if resolved not in entries:
            entries.append(resolved)
    return entries


def serialize_job(job: Job, *, import_path: Sequence[str] | None = None) -> str:
    _check_encoding(job.encoding)
    entries = parent_import_path() if import_path is None else [str(entry) for entry in import_path]
    text = _ARTIFACT_TEMPLATE.substitute(
        encoding=job.encoding,
        encoding_literal=ascii(job.encoding),
        job_id=job.id,
        import_path_literal=ascii(entries),
        origin_literal=ascii(job.origin),
        setup_function=render_procedure("_setup", job.setup_procedure.extra),
        work_function=render_procedure("_work", job.work_procedure),
        setup_steps=_render_setup_steps(job),
    )
    try:
        compile(text, f"<job {job.id}>", "exec")
    except SyntaxError as exc:
        raise JobSerializationError(f"Job {job.id} does not compile: {exc.msg} (line {exc.lineno})") from exc
    try:
        text.encode(job.encoding)
    except UnicodeEncodeError as exc:
        raise JobSerializationError(f"Job {job.id} cannot be encoded as {job.encoding}") from exc
    return text


def write_artifact(job: Job, directory: Path, *, prefix: str = "deferjob-") -> Path:
    text = serialize_job(job)
    directory.mkdir(parents=True, exist_ok=True)
    fd, raw_path = tempfile.mkstemp(prefix=f"{prefix}{job.id[:12]}-", suffix=".py", dir=directory)
    with os.fdopen(fd, "w", encoding=job.encoding, newline="\n") as handle:
        handle.write(text)
    job.artifact_path = Path(raw_path)
    return job.artifact_path
