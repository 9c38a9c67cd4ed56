"""
Unit tests for the command-line interface.

Commands run against the in-memory controller; ``main`` is tested with the
backend wiring replaced.

Tests cover:
- Argument parsing
- start, status, pause, resume, cancel, cutover, rollback and purge output
- Exit codes for failed jobs
- Error reporting in main, including invalid job configuration
"""

import json
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import pytest

from relayout import cli
from relayout.controller import MigrationController
from relayout.engine.in_memory import InMemoryStorageEngine
from relayout.exceptions import JobNotFoundError
from tests.fixtures import SOURCE, TARGET, fast_config_dict


def write_spec(tmp_path: Path, job_id: UUID, **config: Any) -> Path:
    path = tmp_path / "job.json"
    path.write_text(
        json.dumps(
            {
                "source": SOURCE,
                "target": TARGET,
                "job_id": str(job_id),
                "created_by": "cli-tests",
                "config": fast_config_dict(**config),
            }
        ),
        encoding="utf-8",
    )
    return path


async def run(controller: MigrationController, *argv: str) -> int:
    args = cli.build_parser().parse_args(list(argv))
    return await cli.run_command(controller, args)


def output(capsys: pytest.CaptureFixture[str]) -> dict[str, Any]:
    return json.loads(capsys.readouterr().out)


# =============================================================================
# Parser
# =============================================================================


class TestParser:
    """Tests for build_parser()."""

    def test_start(self) -> None:
        args = cli.build_parser().parse_args(["start", "job.json", "--no-wait"])

        assert args.command == "start"
        assert args.spec == Path("job.json")
        assert args.no_wait is True
        assert args.log_level == "INFO"

    def test_job_id_is_parsed(self) -> None:
        job_id = uuid4()

        args = cli.build_parser().parse_args(["status", str(job_id)])

        assert args.job_id == job_id

    def test_purge_force(self) -> None:
        job_id = str(uuid4())

        assert cli.build_parser().parse_args(["purge", job_id, "--force"]).force is True
        assert cli.build_parser().parse_args(["purge", job_id]).force is False

    def test_invalid_job_id(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["status", "not-a-uuid"])

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_force_only_on_purge(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["rollback", str(uuid4()), "--force"])


# =============================================================================
# Commands
# =============================================================================


class TestCommands:
    """Tests for run_command()."""

    @pytest.mark.asyncio
    async def test_start_waits_for_completion(
        self,
        controller: MigrationController,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        code = await run(controller, "start", str(write_spec(tmp_path, job_id)))

        assert code == 0
        report = output(capsys)
        assert report["job"]["id"] == str(job_id)
        assert report["job"]["status"] == "completed"
        assert report["job"]["created_by"] == "cli-tests"
        assert report["progress"]["units_done"] == 5
        assert report["enumerated_at"] is not None

    @pytest.mark.asyncio
    async def test_start_no_wait_leaves_job_paused(
        self,
        controller: MigrationController,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        code = await run(controller, "start", str(write_spec(tmp_path, job_id)), "--no-wait")

        assert code == 0
        report = output(capsys)
        assert report["job"]["status"] == "paused"
        assert report["job"]["pause_reason"] == "operator requested"
        assert report["progress"]["units_in_flight"] == 0

    @pytest.mark.asyncio
    async def test_resume_after_no_wait(
        self,
        controller: MigrationController,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await run(controller, "start", str(write_spec(tmp_path, job_id)), "--no-wait")
        capsys.readouterr()

        code = await run(controller, "resume", str(job_id))

        assert code == 0
        assert output(capsys)["job"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_failed_job_exits_one(
        self,
        controller: MigrationController,
        engine: InMemoryStorageEngine,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        engine.fail_next("copy_partition", partition_id="p5", times=2)
        spec = write_spec(tmp_path, job_id, max_attempts=2)

        assert await run(controller, "start", str(spec)) == 1
        report = output(capsys)
        assert report["job"]["status"] == "failed"
        assert report["failing_units"][0]["unit_id"] == "p5"

        assert await run(controller, "status", str(job_id)) == 1

    @pytest.mark.asyncio
    async def test_cutover_rollback(
        self,
        controller: MigrationController,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await run(controller, "start", str(write_spec(tmp_path, job_id)))
        capsys.readouterr()

        assert await run(controller, "cutover", str(job_id)) == 0
        record = output(capsys)
        assert record["outcome"] == "success"
        assert record["retained_name"] == TARGET
        assert record["rollback_available"] is True

        assert await run(controller, "rollback", str(job_id)) == 0
        assert output(capsys)["rolled_back_at"] is not None

    @pytest.mark.asyncio
    async def test_failed_cutover_exits_one(
        self,
        controller: MigrationController,
        engine: InMemoryStorageEngine,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await run(controller, "start", str(write_spec(tmp_path, job_id)))
        capsys.readouterr()
        engine.fail_next("exchange")

        assert await run(controller, "cutover", str(job_id)) == 1
        record = output(capsys)
        assert record["outcome"] == "failure"
        assert record["error_message"] == "Injected exchange failure"

    @pytest.mark.asyncio
    async def test_purge(
        self,
        controller: MigrationController,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await run(controller, "start", str(write_spec(tmp_path, job_id, auto_cutover=True)))
        capsys.readouterr()

        assert await run(controller, "purge", str(job_id), "--force") == 0
        assert output(capsys)["retained_purged_at"] is not None

    @pytest.mark.asyncio
    async def test_cancel_paused_job(
        self,
        controller: MigrationController,
        tmp_path: Path,
        job_id: UUID,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await run(controller, "start", str(write_spec(tmp_path, job_id)), "--no-wait")
        capsys.readouterr()

        assert await run(controller, "cancel", str(job_id)) == 0
        report = output(capsys)
        assert report["job"]["status"] == "failed"
        assert report["job"]["last_error"] == "Cancelled by operator"

    @pytest.mark.asyncio
    async def test_status_unknown_job(self, controller: MigrationController) -> None:
        with pytest.raises(JobNotFoundError):
            await run(controller, "status", str(uuid4()))


# =============================================================================
# main
# =============================================================================


class TestMain:
    """Tests for main() error handling."""

    def test_migration_error_reported(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        job_id = uuid4()

        async def fake_run(args: Any) -> int:
            raise JobNotFoundError(job_id)

        monkeypatch.setattr(cli, "_run", fake_run)

        assert cli.main(["status", str(job_id)]) == 1
        error = json.loads(capsys.readouterr().err)["error"]
        assert error["job_id"] == str(job_id)
        assert error["error_code"] == "JOB_NOT_FOUND"

    def test_invalid_spec(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        path = tmp_path / "job.json"
        path.write_text(json.dumps({"source": SOURCE, "target": SOURCE}), encoding="utf-8")

        async def fake_run(args: Any) -> int:
            return await cli.run_command(UnusedController(), args)

        monkeypatch.setattr(cli, "_run", fake_run)

        assert cli.main(["start", str(path)]) == 1

    def test_misspelled_config_key(
        self,
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        spec = write_spec(tmp_path, uuid4(), max_atempts=3)

        async def fake_run(args: Any) -> int:
            return await cli.run_command(UnusedController(), args)

        monkeypatch.setattr(cli, "_run", fake_run)

        assert cli.main(["start", str(spec)]) == 1
        assert "Invalid job spec" in caplog.text
        assert "max_atempts" in caplog.text

    def test_invalid_config_value(
        self,
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        spec = write_spec(tmp_path, uuid4(), parallelism=0)

        async def fake_run(args: Any) -> int:
            return await cli.run_command(UnusedController(), args)

        monkeypatch.setattr(cli, "_run", fake_run)

        assert cli.main(["start", str(spec)]) == 1
        assert "parallelism must be >= 1" in caplog.text

    def test_exit_code_passed_through(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_run(args: Any) -> int:
            assert args.command == "pause"
            return 0

        monkeypatch.setattr(cli, "_run", fake_run)

        assert cli.main(["--log-level", "DEBUG", "pause", str(uuid4())]) == 0


class UnusedController:
    """Controller stand-in for commands that fail before reaching it."""

    async def start_job(self, spec: Any) -> Any:
        raise AssertionError("start_job must not be called with an invalid spec")
