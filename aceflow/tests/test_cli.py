"""
Tests for the command line interface.

Each command must print a machine-parsable summary line and exit with the
taxonomy exit code on failure.
"""

import logging
import shlex
import sys
from pathlib import Path

import pytest

from ..cli import create_parser, main
from ..errors import ExitCode


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("print('v1')\n")
    (root / "README.md").write_text("# demo\n")
    return root


def run_cli(project: Path, *args: str) -> int:
    command, *rest = args
    return main([command, "--project-root", str(project), "--quiet", *rest])


def summary(capsys) -> dict[str, str]:
    """Parse the aceflow summary line from captured stdout."""
    out = capsys.readouterr().out
    line = next(line for line in out.splitlines() if line.startswith("aceflow: "))
    return dict(part.split("=", 1) for part in shlex.split(line[len("aceflow: "):]))


class TestCheckpointCommands:
    """list / create / validate / restore / export / cleanup / delete."""

    def test_create_list_restore(self, project: Path, capsys):
        assert run_cli(project, "create", "--description", "first cut") == 0
        created = summary(capsys)
        assert created["status"] == "ok"
        assert created["command"] == "create"
        checkpoint_id = created["checkpoint"]

        assert run_cli(project, "list") == 0
        assert summary(capsys)["count"] == "1"

        (project / "src" / "app.py").write_text("print('broken')\n")
        assert run_cli(project, "restore", checkpoint_id) == 0
        restored = summary(capsys)
        assert restored["files"] == "1"
        assert (project / "src" / "app.py").read_text() == "print('v1')\n"

    def test_validate_all_and_corruption(self, project: Path, capsys):
        run_cli(project, "create")
        checkpoint_id = summary(capsys)["checkpoint"]

        assert run_cli(project, "validate") == 0
        assert summary(capsys)["invalid"] == "0"

        payload = project / ".ace-flow" / "checkpoints" / checkpoint_id / "files" / "README.md"
        payload.write_text("# tampered\n")
        assert run_cli(project, "validate", checkpoint_id) == ExitCode.CHECKSUM_MISMATCH
        result = summary(capsys)
        assert result["status"] == "error"
        assert result["code"] == "checksum_mismatch"

        assert run_cli(project, "restore", checkpoint_id) == ExitCode.CHECKSUM_MISMATCH
        assert summary(capsys)["exit_code"] == str(int(ExitCode.CHECKSUM_MISMATCH))

    def test_not_found(self, project: Path, capsys):
        assert run_cli(project, "restore", "cp-unknown") == ExitCode.CHECKPOINT_NOT_FOUND
        assert summary(capsys)["code"] == "checkpoint_not_found"

    def test_snapshot_incomplete(self, project: Path, capsys):
        assert run_cli(project, "create", "--component", "frontend=built") == ExitCode.SNAPSHOT_INCOMPLETE
        assert summary(capsys)["code"] == "snapshot_incomplete"

    def test_export(self, project: Path, tmp_path: Path, capsys):
        run_cli(project, "create")
        checkpoint_id = summary(capsys)["checkpoint"]

        assert run_cli(project, "export", checkpoint_id, "--output", str(tmp_path)) == 0
        assert (tmp_path / f"{checkpoint_id}.tar.gz").exists()

    def test_cleanup_and_delete(self, project: Path, capsys):
        for _ in range(3):
            run_cli(project, "create", "--trigger", "auto-pre-operation")
        capsys.readouterr()

        assert run_cli(project, "cleanup", "--keep", "1") == 0
        result = summary(capsys)
        assert result["deleted"] == "2"
        assert result["kept"] == "1"

        run_cli(project, "list")
        out = capsys.readouterr().out
        remaining = next(line for line in out.splitlines() if line.startswith("cp-"))
        assert run_cli(project, "delete", remaining) == 0
        run_cli(project, "list")
        assert summary(capsys)["count"] == "0"

    def test_config_error(self, project: Path, capsys):
        config = project / ".ace-flow" / "config.yaml"
        config.parent.mkdir(parents=True)
        config.write_text("timeouts:\n  max_retries: 0\n")
        assert run_cli(project, "list") == ExitCode.CONFIGURATION_ERROR

    def test_verbose_from_config_file(self, project: Path, capsys):
        """verbose: true in config.yaml turns on debug logging without --verbose."""
        config = project / ".ace-flow" / "config.yaml"
        config.parent.mkdir(parents=True)
        config.write_text("verbose: true\n")

        assert main(["list", "--project-root", str(project)]) == 0
        assert logging.getLogger().level == logging.DEBUG

        assert main(["list", "--project-root", str(project), "--quiet"]) == 0
        assert logging.getLogger().level == logging.WARNING


@pytest.mark.skipif(sys.platform == "win32", reason="uses sh")
class TestRunCommand:
    """aceflow run -- <command>."""

    def test_run_success_records_ledger(self, project: Path, capsys):
        assert run_cli(project, "run", "--name", "ok", "--", "sh", "-c", "exit 0") == 0
        result = summary(capsys)
        assert result["outcome"] == "succeeded"
        assert result["attempts"] == "1"

        assert run_cli(project, "stats") == 0
        stats = summary(capsys)
        assert stats["records"] == "1"
        assert stats["success_rate"] == "1"

    def test_run_fatal_exit_code(self, project: Path, capsys):
        code = run_cli(project, "run", "--fatal-exit-code", "4", "--", "sh", "-c", "exit 4")
        assert code == ExitCode.FATAL_EXECUTION_FAILURE
        result = summary(capsys)
        assert result["code"] == "fatal_execution_failure"
        assert result["attempts"] == "1"

    def test_run_restore_on_failure(self, project: Path, capsys):
        """A failed run rolls the project back to the pre-operation checkpoint."""
        script = "echo broken > src/app.py; exit 9"
        code = run_cli(project, "run", "--restore-on-failure", "--", "sh", "-c", script)

        assert code == ExitCode.FATAL_EXECUTION_FAILURE
        result = summary(capsys)
        assert result["restored"] == "true"
        assert result["checkpoint"].startswith("cp-")
        assert (project / "src" / "app.py").read_text() == "print('v1')\n"

    def test_run_failed_restore_keeps_run_summary(self, project: Path, capsys):
        """A restore that fails after a failed run is reported alongside the run outcome."""
        script = "for f in .ace-flow/checkpoints/cp-*/files/README.md; do echo tampered > \"$f\"; done; exit 9"
        code = run_cli(project, "run", "--restore-on-failure", "--", "sh", "-c", script)

        assert code == ExitCode.FATAL_EXECUTION_FAILURE
        result = summary(capsys)
        assert result["command"] == "run"
        assert result["code"] == "fatal_execution_failure"
        assert result["outcome"] == "failed"
        assert result["restored"] == "false"
        assert result["restore_error"] == "checksum_mismatch"

    def test_run_requires_command(self, project: Path, capsys):
        assert run_cli(project, "run") == ExitCode.USAGE_ERROR

    def test_stats_empty(self, project: Path, capsys):
        assert run_cli(project, "stats") == 0
        stats = summary(capsys)
        assert stats["success_rate"] == "nan"
        assert stats["health"] == "unknown"


class TestParser:
    def test_no_command(self, capsys):
        assert main([]) == ExitCode.USAGE_ERROR

    def test_run_remainder(self):
        args = create_parser().parse_args(["run", "--name", "x", "--", "npm", "test", "--watch=false"])
        assert args.argv[-3:] == ["npm", "test", "--watch=false"]
        assert args.name == "x"
