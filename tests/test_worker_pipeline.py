from __future__ import annotations

import asyncio
import functools
import signal
import sys
from pathlib import Path

import pytest

from deferjob.core.config import Settings
from deferjob.jobs.callbacks import add_callback
from deferjob.jobs.service import InvalidJobStateError, create_job, duplicate_job
from deferjob.jobs.types import Job, JobStatus
from deferjob.worker.launcher import WorkerLaunchError, WorkerLauncher, run_job
from deferjob.worker.monitor import ResultParseError


def summarize_range() -> list[int]:
    return [sum(range(5)), len("abc")]


def make_settings(tmp_path: Path, **overrides: object) -> Settings:
    values: dict[str, object] = {"artifact_dir": tmp_path / "artifacts", "debug": False}
    values.update(overrides)
    return Settings(**values)


def test_one_plus_one_end_to_end(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    job = create_job("scratch", "return 1+1")
    observed: list[Job] = []
    add_callback(job, observed.append)

    finished = asyncio.run(run_job(job, settings))

    assert finished is job
    assert job.status == JobStatus.EXITED
    assert job.result == 2
    assert job.returncode == 0
    assert job.artifact_path is not None
    assert not job.artifact_path.exists()
    assert job.output is None
    assert observed == [job]
    assert observed[0].result == 2


def test_round_trip_matches_in_process_result(tmp_path: Path) -> None:
    work = functools.partial(sorted, [3, 1, 2])
    job = create_job("scratch", work)

    asyncio.run(run_job(job, make_settings(tmp_path)))

    assert job.status == JobStatus.EXITED
    assert job.result == work() == [1, 2, 3]


def test_setup_reconstructs_workspace_before_work(tmp_path: Path) -> None:
    job = create_job(
        "notes.txt",
        """
        print("diagnostic from work: the end (")
        return {
            "text": workspace.text,
            "variables": workspace.variables,
            "modified": workspace.modified,
            "origin": workspace.origin,
            "encoding": workspace.encoding,
        }
        """,
        contents="line one\nnul\x00 byte and snow ☃",
        variables={"title": "Notes"},
        setup="print('setup says [end')\nworkspace.variables['extra'] = 1",
    )

    asyncio.run(run_job(job, make_settings(tmp_path)))

    assert job.status == JobStatus.EXITED
    assert job.result == {
        "text": "line one\nnul\x00 byte and snow ☃",
        "variables": {"title": "Notes", "extra": 1},
        "modified": False,
        "origin": "notes.txt",
        "encoding": "utf-8",
    }


def test_prompts_never_block_the_worker(tmp_path: Path) -> None:
    job = create_job(
        "scratch",
        """
        import getpass
        refused = []
        for prompt in (input, getpass.getpass):
            try:
                prompt("continue? ")
            except EOFError:
                refused.append(prompt.__name__)
        breakpoint()
        return refused
        """,
    )

    asyncio.run(run_job(job, make_settings(tmp_path)))

    assert job.status == JobStatus.EXITED
    assert job.result == ["_refuse_prompt", "_refuse_prompt"]


def test_non_zero_exit_leaves_result_unset_and_skips_callbacks(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    job = create_job("scratch", "import sys\nsys.stderr.write('boom\\n')\nraise SystemExit(3)")
    calls: list[Job] = []
    add_callback(job, calls.append)

    with caplog.at_level("ERROR", logger="deferjob"):
        asyncio.run(run_job(job, make_settings(tmp_path)))

    assert job.status == JobStatus.FAILED
    assert job.returncode == 3
    assert job.result is None
    assert calls == []
    assert job.artifact_path is not None and not job.artifact_path.exists()
    assert job.error_output is None
    assert any(job.id in record.getMessage() and "boom" in record.getMessage() for record in caplog.records)


def test_unrepresentable_result_fails_the_worker(tmp_path: Path) -> None:
    job = create_job("scratch", "return object()")
    asyncio.run(run_job(job, make_settings(tmp_path)))
    assert job.status == JobStatus.FAILED
    assert job.result is None


@pytest.mark.skipif(sys.platform == "win32", reason="signals are POSIX-only")
def test_signal_death_is_classified_unknown(tmp_path: Path) -> None:
    job = create_job("scratch", f"import os\nos.kill(os.getpid(), {int(signal.SIGKILL)})")
    asyncio.run(run_job(job, make_settings(tmp_path)))
    assert job.status == JobStatus.UNKNOWN
    assert job.returncode == -signal.SIGKILL
    assert job.result is None


def test_malformed_output_propagates_and_still_cleans_up(tmp_path: Path) -> None:
    job = create_job(
        "scratch",
        "import os, sys\nsys.stdout.write('not a value (')\nsys.stdout.flush()\nos._exit(0)",
    )
    calls: list[Job] = []
    add_callback(job, calls.append)

    with pytest.raises(ResultParseError):
        asyncio.run(run_job(job, make_settings(tmp_path)))

    assert job.status == JobStatus.EXITED
    assert job.result is None
    assert calls == []
    assert job.artifact_path is not None and not job.artifact_path.exists()


def test_debug_mode_keeps_artifact_and_output(tmp_path: Path) -> None:
    job = create_job("scratch", "print('trace line')\nreturn 1+1")
    asyncio.run(run_job(job, make_settings(tmp_path, debug=True)))

    assert job.status == JobStatus.EXITED
    assert job.result == 2
    assert job.artifact_path is not None and job.artifact_path.exists()
    assert job.output is not None
    assert "trace line" in job.output
    assert job.output.rstrip().endswith("2")


def test_init_file_is_loaded_before_the_artifact(tmp_path: Path) -> None:
    init_file = tmp_path / "init.py"
    init_file.write_text("import builtins\nbuiltins.INIT_MARKER = 'loaded'\nprint('init done: end (')\n", encoding="utf-8")
    settings = make_settings(tmp_path, init_file=init_file)
    launcher = WorkerLauncher(settings)

    command = launcher.build_command(Path("/tmp/artifact.py"))
    assert command[:3] == [settings.executable.as_posix(), "-I", "-u"]
    assert command[-2:] == [init_file.as_posix(), "/tmp/artifact.py"]

    job = create_job("scratch", "import builtins\nreturn builtins.INIT_MARKER")
    asyncio.run(run_job(job, settings))
    assert job.status == JobStatus.EXITED
    assert job.result == "loaded"


def test_default_command_uses_normal_initialization(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    command = WorkerLauncher(settings).build_command(Path("/tmp/artifact.py"))
    assert command == [settings.executable.as_posix(), "-u", "/tmp/artifact.py"]


def test_serialization_failure_stops_before_spawn(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    job = create_job("scratch", lambda: 1)

    async def scenario() -> None:
        await WorkerLauncher(settings).start(job)

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())
    assert job.status == JobStatus.PENDING
    assert job.process is None
    assert list((tmp_path / "artifacts").iterdir()) == []


def test_running_job_cannot_be_started_twice_but_can_be_retried(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    job = create_job("scratch", "import time\ntime.sleep(0.2)\nreturn 'done'")

    async def scenario() -> tuple[Path | None, Path | None, int, int]:
        launcher = WorkerLauncher(settings)
        await launcher.start(job)
        first_artifact = job.artifact_path
        assert job.process is not None
        first_pid = job.process.pid
        with pytest.raises(InvalidJobStateError):
            await launcher.start(job)
        assert job.completion is not None
        await job.completion

        await launcher.start(job)
        assert job.status == JobStatus.RUNNING
        assert job.result is None
        assert job.process is not None
        second_pid = job.process.pid
        second_artifact = job.artifact_path
        assert job.completion is not None
        await job.completion
        return first_artifact, second_artifact, first_pid, second_pid

    first_artifact, second_artifact, first_pid, second_pid = asyncio.run(scenario())
    assert first_artifact != second_artifact
    assert first_pid != second_pid
    assert job.status == JobStatus.EXITED
    assert job.result == "done"


def test_independent_jobs_run_concurrently(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    jobs = [create_job(f"origin-{index}", f"return {index} * 10") for index in range(4)]
    jobs.append(duplicate_job(jobs[0]))

    async def scenario() -> list[Job]:
        launcher = WorkerLauncher(settings)
        for job in jobs:
            await launcher.start(job)
        return list(await asyncio.gather(*(job.completion for job in jobs if job.completion is not None)))

    finished = asyncio.run(scenario())
    assert [job.result for job in finished] == [0, 10, 20, 30, 0]
    assert all(job.status == JobStatus.EXITED for job in finished)


def test_module_level_function_from_a_non_installed_module_runs(tmp_path: Path) -> None:
    job = create_job("scratch", summarize_range)

    asyncio.run(run_job(job, make_settings(tmp_path)))

    assert job.status == JobStatus.EXITED
    assert job.result == summarize_range() == [10, 3]


def test_module_level_function_runs_in_isolated_init_file_mode(tmp_path: Path) -> None:
    init_file = tmp_path / "init.py"
    init_file.write_text("print('init loaded')\n", encoding="utf-8")
    job = create_job("scratch", functools.partial(summarize_range))

    asyncio.run(run_job(job, make_settings(tmp_path, init_file=init_file)))

    assert job.status == JobStatus.EXITED
    assert job.result == [10, 3]


def test_raising_callback_reaches_the_completion_caller_and_cleanup_runs(tmp_path: Path) -> None:
    job = create_job("scratch", "return 1+1")
    later: list[Job] = []

    def broken(_job: Job) -> None:
        raise RuntimeError("callback exploded")

    add_callback(job, later.append)
    add_callback(job, broken)

    async def scenario() -> None:
        await WorkerLauncher(make_settings(tmp_path)).start(job)
        assert job.completion is not None
        with pytest.raises(RuntimeError, match="callback exploded"):
            await job.completion

    asyncio.run(scenario())
    assert job.status == JobStatus.EXITED
    assert job.result == 2
    assert later == []
    assert job.artifact_path is not None
    assert not job.artifact_path.exists()
    assert job.output is None


def test_spawn_failure_removes_artifact_and_clears_its_path(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, executable=tmp_path / "missing" / "python")
    job = create_job("scratch", "return 1")

    with pytest.raises(WorkerLaunchError):
        asyncio.run(run_job(job, settings))

    assert job.artifact_path is None
    assert job.process is None
    assert job.status == JobStatus.PENDING
    assert list((tmp_path / "artifacts").iterdir()) == []


def test_monitor_logs_the_final_job_view_at_debug(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    job = create_job("notes.txt", "return 'ok'")

    with caplog.at_level("DEBUG", logger="deferjob"):
        asyncio.run(run_job(job, make_settings(tmp_path, log_level="DEBUG")))

    final = [record.getMessage() for record in caplog.records if "final state" in record.getMessage()]
    assert len(final) == 1
    assert job.id in final[0]
    assert "'status': 'exited'" in final[0]
    assert "'origin': 'notes.txt'" in final[0]


def test_run_job_rejects_a_start_that_attaches_no_monitor(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def start_without_monitor(self: WorkerLauncher, job: Job) -> Job:
        return job

    monkeypatch.setattr(WorkerLauncher, "start", start_without_monitor)
    job = create_job("scratch", "return 1")

    with pytest.raises(WorkerLaunchError, match="No completion monitor"):
        asyncio.run(run_job(job, make_settings(tmp_path)))
