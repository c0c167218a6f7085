"""
Unit tests for command output capture.

Tests cover:
- Trivial command detection
- Running commands with combined output and exit status
- Timeouts and missing executables
- Recording into the Entry Store with retention
"""

import io
import sys
from pathlib import Path

import pytest

from logtrains.capture import (
    exit_status_line,
    is_trivial_command,
    read_input,
    record,
    run_and_capture,
)
from logtrains.schema import RetentionPolicy
from logtrains.store import EntryStore


class TestTrivialCommands:
    """Tests for trivial command detection."""

    @pytest.mark.parametrize("command", ["ls", "ls -la", "cd /tmp", "pwd", "/bin/ls", "LC_ALL=C ls"])
    def test_trivial(self, command: str) -> None:
        assert is_trivial_command(command)

    @pytest.mark.parametrize("command", ["make", "cargo build", "lsblk", "git status", None, "", "  "])
    def test_not_trivial(self, command) -> None:
        assert not is_trivial_command(command)

    def test_unbalanced_quotes(self) -> None:
        assert not is_trivial_command("echo 'oops")


class TestRunAndCapture:
    """Tests for running commands."""

    def test_combines_stdout_and_stderr(self) -> None:
        result = run_and_capture([
            sys.executable,
            "-c",
            "import sys; print('out'); sys.stdout.flush(); print('err', file=sys.stderr)",
        ])
        assert "out" in result.body
        assert "err" in result.body
        assert result.exit_code == 0
        assert result.body.endswith("[exit status: 0]")

    def test_nonzero_exit(self) -> None:
        result = run_and_capture([sys.executable, "-c", "import sys; print('boom'); sys.exit(3)"])
        assert result.exit_code == 3
        assert result.body == "boom\n[exit status: 3]"

    def test_command_text_is_quoted(self) -> None:
        result = run_and_capture([sys.executable, "-c", "pass"])
        assert result.command_text.startswith(sys.executable)
        assert result.command_text.split()[-2:] == ["-c", "pass"]

    def test_missing_executable(self) -> None:
        result = run_and_capture(["definitely-not-a-real-command-xyz"])
        assert result.exit_code == 127
        assert "command not found" in result.body

    def test_timeout(self) -> None:
        result = run_and_capture(
            [sys.executable, "-c", "import time; time.sleep(10)"],
            timeout=0.5,
        )
        assert result.exit_code is None
        assert "timed out" in result.body
        assert result.body.endswith(exit_status_line(None))

    def test_keeps_newest_output(self) -> None:
        result = run_and_capture(
            [sys.executable, "-c", "print('a' * 100 + 'TAIL')"],
            max_output_bytes=20,
        )
        assert result.output_truncated
        assert "TAIL" in result.body
        assert "a" * 50 not in result.body

    def test_working_directory(self, temp_dir: Path) -> None:
        result = run_and_capture([sys.executable, "-c", "import os; print(os.getcwd())"], cwd=temp_dir)
        assert temp_dir.resolve().name in result.body

    def test_empty_command(self) -> None:
        with pytest.raises(ValueError):
            run_and_capture([])


class TestReadInput:
    """Tests for explicit input."""

    def test_reads_file(self, temp_dir: Path) -> None:
        path = temp_dir / "build.log"
        path.write_bytes(b"error\n")
        assert read_input(path) == "error\n"

    def test_replaces_invalid_bytes(self, temp_dir: Path) -> None:
        path = temp_dir / "binary.log"
        path.write_bytes(b"ok \xff\xfe done")
        assert read_input(path) == "ok �� done"

    def test_reads_stdin(self, monkeypatch: pytest.MonkeyPatch) -> None:
        stdin = io.TextIOWrapper(io.BytesIO("piped ✓\n".encode()))
        monkeypatch.setattr(sys, "stdin", stdin)
        assert read_input() == "piped ✓\n"


class TestRecord:
    """Tests for recording captures."""

    def test_records_entry(self, store: EntryStore) -> None:
        entry = record(store, "error: boom\n", command_text="make", exit_code=2)
        assert entry is not None
        assert store.load(entry.identifier) == entry

    def test_skips_trivial(self, store: EntryStore) -> None:
        assert record(store, "file1 file2", command_text="ls") is None
        assert store.count() == 0

    def test_piped_input_recorded(self, store: EntryStore) -> None:
        entry = record(store, "raw log")
        assert entry is not None
        assert entry.command_text is None

    def test_applies_retention(self, store: EntryStore) -> None:
        policy = RetentionPolicy(max_entries=2, max_age_days=None)
        for i in range(4):
            record(store, f"run {i}", command_text="make", retention=policy)
        assert [store.load_body(i) for i in store.identifiers()] == ["run 2", "run 3"]
