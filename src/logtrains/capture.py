"""
Command output capture.

Produces the raw material for the Entry Store: runs a command (or takes
text that was piped or read from a file), combines its output, and records
it unless the command is too trivial to be worth explaining later.

Security Note:
    Commands are always passed as an argument list, never through a shell.
"""

import logging
import shlex
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from logtrains.schema import Entry, RetentionPolicy
from logtrains.store import EntryStore

logger = logging.getLogger(__name__)

# Navigation and listing commands whose output is not worth keeping
TRIVIAL_COMMANDS = frozenset({
    "cd",
    "ls",
    "ll",
    "la",
    "dir",
    "pwd",
    "clear",
    "reset",
    "history",
    "exit",
    "logout",
    "pushd",
    "popd",
    "logtrains",
})

DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024  # 1 MB


@dataclass
class CaptureResult:
    """
    Output of one captured command.

    Attributes:
        command_text: The command line as typed
        body: Combined stdout/stderr followed by the exit status line
        exit_code: Exit status, or None if the command never finished
        output_truncated: Whether older output was cut to the size limit
    """

    command_text: str
    body: str
    exit_code: int | None
    output_truncated: bool = False


def is_trivial_command(command_text: str | None) -> bool:
    """Whether ``command_text`` is a navigation/listing command."""
    if not command_text or not command_text.strip():
        return False
    try:
        words = shlex.split(command_text)
    except ValueError:
        words = command_text.split()
    # Skip leading VAR=value assignments
    while words and "=" in words[0] and not words[0].startswith("="):
        words = words[1:]
    if not words:
        return False
    return Path(words[0]).name in TRIVIAL_COMMANDS


def exit_status_line(exit_code: int | None) -> str:
    if exit_code is None:
        return "[exit status: unknown]"
    return f"[exit status: {exit_code}]"


def _decode_tail(raw: bytes, max_bytes: int) -> tuple[str, bool]:
    """Decode output, keeping only the newest ``max_bytes`` bytes."""
    truncated = len(raw) > max_bytes
    if truncated:
        raw = raw[len(raw) - max_bytes:]
    return raw.decode("utf-8", errors="replace"), truncated


def run_and_capture(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> CaptureResult:
    """
    Run ``cmd`` and capture its combined output.

    Args:
        cmd: Command as a list of strings; first element is the executable
        cwd: Working directory (defaults to the current one)
        timeout: Seconds before the command is killed
        max_output_bytes: Keep at most this many trailing bytes of output

    Returns:
        CaptureResult with the output and exit status appended
    """
    if not cmd:
        raise ValueError("cmd cannot be empty")

    command_text = shlex.join(cmd)
    exit_code: int | None
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            shell=False,
        )
        output, truncated = _decode_tail(result.stdout, max_output_bytes)
        exit_code = result.returncode
    except subprocess.TimeoutExpired as e:
        output, truncated = _decode_tail(e.stdout or b"", max_output_bytes)
        output += f"\n[timed out after {timeout} seconds]"
        exit_code = None
    except FileNotFoundError:
        output, truncated = f"{cmd[0]}: command not found", False
        exit_code = 127
    except PermissionError:
        output, truncated = f"{cmd[0]}: permission denied", False
        exit_code = 126

    if output and not output.endswith("\n"):
        output += "\n"
    body = output + exit_status_line(exit_code)
    return CaptureResult(
        command_text=command_text,
        body=body,
        exit_code=exit_code,
        output_truncated=truncated,
    )


def read_input(path: Path | None = None) -> str:
    """
    Read explicit input: the file at ``path``, or all of stdin.

    Undecodable bytes are replaced rather than rejected, since logs often
    carry stray binary output.
    """
    if path is not None:
        return path.read_bytes().decode("utf-8", errors="replace")
    return sys.stdin.buffer.read().decode("utf-8", errors="replace")


def record(
    store: EntryStore,
    body: str,
    command_text: str | None = None,
    exit_code: int | None = None,
    retention: RetentionPolicy | None = None,
) -> Entry | None:
    """
    Append captured output to the store, then apply retention.

    Returns:
        The persisted Entry, or None when the command was trivial
    """
    if is_trivial_command(command_text):
        logger.debug("Not recording trivial command: %s", command_text)
        return None

    entry = store.add(body, command_text=command_text, exit_code=exit_code)
    if retention is not None:
        store.apply_retention(retention)
    return entry
