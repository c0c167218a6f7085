"""
CLI entry point for LogTrains.

This module provides the Typer-based command-line interface for LogTrains.
All user interactions flow through these commands.

Commands:
    explain     Explain a file, piped input, or captured history
    run         Run a command and record its output
    record      Record piped output as a history entry
    history     List recorded entries
    show        Print one recorded entry
    prune       Apply the retention policy
    doctor      Check the environment and the inference engine

Architecture Note:
    The CLI is intentionally thin - it parses arguments and delegates to the
    engine module. It is also the only place that retries inference or
    configures logging.
"""

import json
import logging
import sys
import time
import traceback
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from logtrains import __version__
from logtrains.capture import read_input, record, run_and_capture
from logtrains.engine import AnalysisResult, Engine, PreparedPrompt
from logtrains.errors import (
    InferenceCancelledError,
    InferenceError,
    LogTrainsError,
)
from logtrains.gateway import OllamaGateway
from logtrains.schema import ModelPreset, RetentionPolicy, Settings, resolve_settings
from logtrains.selector import (
    AnalysisRequest,
    AtOffset,
    ExplicitText,
    HistorySelector,
    MostRecent,
)
from logtrains.store import EntryStore

# Initialize Typer app with metadata
app = typer.Typer(
    name="logtrains",
    help="Explain command output and logs with a local language model.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich consoles: answers go to stdout, everything else to stderr
console = Console()
err_console = Console(stderr=True)

RETRY_DELAY_SECONDS = 2.0

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        help="Path to a settings YAML file.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]logtrains[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    LogTrains - specialized AI log interpreter.

    Capture command output, then ask a local model what went wrong.
    """
    pass


# =============================================================================
# Helpers
# =============================================================================


def _configure_logging(verbose: bool = False, debug: bool = False) -> None:
    """Route library logging to stderr through rich."""
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=debug)],
        force=True,
    )


def _load_settings(config: Optional[Path], json_output: bool = False) -> Settings:
    try:
        return resolve_settings(config)
    except LogTrainsError as e:
        _report_error(e, json_output, debug=False)
        raise typer.Exit(code=1)


def _report_error(error: Exception, json_output: bool, debug: bool) -> None:
    """Print an error in the requested format."""
    if json_output:
        payload: dict[str, Any]
        if isinstance(error, LogTrainsError):
            payload = {"ok": False, "error": error.to_dict()}
        else:
            payload = {"ok": False, "error": {"error_type": type(error).__name__, "message": str(error)}}
        if debug:
            payload["traceback"] = traceback.format_exc()
        print(json.dumps(payload, indent=2, default=str))
    else:
        err_console.print(f"[red]{escape(str(error))}[/red]", highlight=False)
        if debug:
            err_console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")


def _window_summary(prepared: PreparedPrompt) -> dict[str, Any]:
    window = prepared.window
    return {
        "request": prepared.request.describe(),
        "entries": prepared.selection.identifiers if prepared.selection else [],
        "token_count": window.token_count,
        "original_token_count": window.original_token_count,
        "usable_tokens": window.usable_tokens,
        "max_tokens": prepared.budget.max_tokens,
        "reserved_for_preamble": prepared.budget.reserved_for_preamble,
        "truncated": window.truncated,
        "dropped_entry_count": window.dropped_entry_count,
        "omitted_bytes": window.omitted_bytes,
        "omitted_lines": window.omitted_lines,
    }


def _resolve_request(
    file: Optional[Path],
    last: Optional[int],
    offset: Optional[int],
) -> AnalysisRequest | None:
    """Turn CLI arguments into a request; None means input was blank."""
    if file is not None or (last is None and offset is None and not sys.stdin.isatty()):
        text = read_input(file)
        if not text.strip():
            return None
        return ExplicitText(text=text, label=str(file) if file else None)
    if offset is not None:
        return AtOffset(offset)
    return MostRecent(last or 1)


def _apply_overrides(
    settings: Settings,
    preset: Optional[ModelPreset],
    model_tag: Optional[str],
    max_tokens: Optional[int],
    head_fraction: Optional[float],
    template: Optional[Path],
) -> Settings:
    model_updates: dict[str, Any] = {}
    if preset is not None:
        model_updates["preset"] = preset
    if model_tag is not None:
        model_updates["model"] = model_tag

    updates: dict[str, Any] = {}
    if model_updates:
        updates["model"] = settings.model.model_copy(update=model_updates)
    if max_tokens is not None:
        updates["budget"] = settings.budget.model_copy(update={"max_tokens": max_tokens})
    if head_fraction is not None:
        updates["head_fraction"] = head_fraction
    if template is not None:
        updates["prompt_template"] = template
    return settings.model_copy(update=updates) if updates else settings


# =============================================================================
# explain
# =============================================================================


@app.command()
def explain(
    file: Annotated[
        Optional[Path],
        typer.Argument(
            help="Log file to explain (reads stdin or history if omitted).",
            exists=True,
            readable=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    last: Annotated[
        Optional[int],
        typer.Option(
            "--last",
            "-n",
            help="Explain the N most recent captures together.",
            min=1,
        ),
    ] = None,
    offset: Annotated[
        Optional[int],
        typer.Option(
            "--offset",
            "-k",
            help="Explain only the capture K steps back (0 = most recent).",
            min=0,
        ),
    ] = None,
    preset: Annotated[
        Optional[ModelPreset],
        typer.Option(
            "--model",
            "-m",
            help="Model preset.",
            case_sensitive=False,
        ),
    ] = None,
    model_tag: Annotated[
        Optional[str],
        typer.Option(
            "--model-tag",
            help="Exact engine model tag (overrides --model).",
        ),
    ] = None,
    max_tokens: Annotated[
        Optional[int],
        typer.Option(
            "--max-tokens",
            help="Token budget for the whole prompt.",
            min=1,
        ),
    ] = None,
    head_fraction: Annotated[
        Optional[float],
        typer.Option(
            "--head-fraction",
            help="Share of the budget kept from the start of the oldest text.",
            min=0.0,
            max=0.95,
        ),
    ] = None,
    template: Annotated[
        Optional[Path],
        typer.Option(
            "--template",
            help="Prompt template file containing {{LOG_TEXT}}.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Print the assembled prompt instead of calling the model.",
        ),
    ] = False,
    update_model: Annotated[
        bool,
        typer.Option(
            "--update-model",
            help="Ask the engine to download or verify the model first.",
        ),
    ] = False,
    retries: Annotated[
        int,
        typer.Option(
            "--retries",
            help="Retry transient inference failures this many times.",
            min=0,
        ),
    ] = 0,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output results in JSON format.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Enable verbose output.",
        ),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug mode with full error tracebacks.",
        ),
    ] = False,
    config: ConfigOption = None,
) -> None:
    """
    Explain captured output with the local model.

    Example:
        $ cargo build 2>&1 | logtrains explain
        $ logtrains explain build.log --model medium
        $ logtrains explain --last 3
        $ logtrains explain --offset 1 --dry-run
    """
    _configure_logging(verbose, debug)

    if last is not None and offset is not None:
        _report_error(ValueError("Use either --last or --offset, not both."), json_output, False)
        raise typer.Exit(code=2)

    settings = _apply_overrides(
        _load_settings(config, json_output),
        preset,
        model_tag,
        max_tokens,
        head_fraction,
        template,
    )

    request = _resolve_request(file, last, offset)
    if request is None:
        _report_error(
            ValueError("Error: No input provided. Pipe logs or provide a filename."),
            json_output,
            False,
        )
        raise typer.Exit(code=1)

    store = EntryStore(settings.history_dir)
    gateway = None if dry_run else OllamaGateway.from_model_config(settings.model)

    try:
        with Engine(store, settings, gateway) as engine:
            if dry_run:
                prepared = engine.prepare(request)
                _display_prepared(prepared, json_output)
                raise typer.Exit(code=0)

            if update_model:
                model = settings.model.resolved_model()
                if not json_output:
                    err_console.print(f"[yellow]Checking model {model}...[/yellow]")
                gateway.pull_model(
                    model,
                    on_status=None if json_output else lambda s: err_console.print(f"[dim]{s}[/dim]"),
                )

            result = _explain_with_retries(engine, request, retries, json_output)
    except typer.Exit:
        raise
    except InferenceCancelledError as e:
        _report_error(e, json_output, debug)
        raise typer.Exit(code=130)
    except LogTrainsError as e:
        _report_error(e, json_output, debug)
        raise typer.Exit(code=1)

    if json_output:
        print(json.dumps(
            {
                "ok": True,
                "model": result.model,
                "answer": result.answer,
                "duration_seconds": round(result.duration_seconds, 3),
                "window": _window_summary(result.prepared),
            },
            indent=2,
        ))
    else:
        typer.echo()
        console.print("[green bold]===================[/green bold]")
        if verbose:
            err_console.print(f"[dim]{result.model} in {result.duration_seconds:.2f}s[/dim]")


def _explain_with_retries(
    engine: Engine,
    request: AnalysisRequest,
    retries: int,
    json_output: bool,
) -> AnalysisResult:
    """Run the engine, retrying only inference errors marked retryable."""
    prepared = engine.prepare(request)
    if prepared.window.truncated and not json_output:
        err_console.print(
            f"[yellow]Warning: Input too long ({prepared.window.original_token_count} tokens). "
            f"Truncating to safe limit ({prepared.window.usable_tokens} tokens).[/yellow]"
        )

    if not json_output:
        err_console.print("[cyan bold]LogTrains: Analyzing input...[/cyan bold]")
        console.print("\n[green bold]=== Explanation ===[/green bold]")

    on_token = None if json_output else (lambda fragment: typer.echo(fragment, nl=False))

    for attempt in range(retries + 1):
        try:
            return engine.explain(prepared, on_token=on_token)
        except InferenceError as e:
            if not e.retryable or attempt >= retries:
                raise
            if not json_output:
                err_console.print(
                    f"[yellow]{escape(e.message)}; retrying ({attempt + 1}/{retries})...[/yellow]"
                )
            time.sleep(RETRY_DELAY_SECONDS)

    raise AssertionError("unreachable")


def _display_prepared(prepared: PreparedPrompt, json_output: bool) -> None:
    if json_output:
        print(json.dumps(
            {
                "ok": True,
                "window": _window_summary(prepared),
                "messages": prepared.prompt.messages(),
            },
            indent=2,
        ))
        return

    summary = _window_summary(prepared)
    err_console.print(
        f"[dim]{summary['request']}: {summary['token_count']}/{summary['usable_tokens']} tokens, "
        f"truncated={summary['truncated']}, dropped={summary['dropped_entry_count']}[/dim]"
    )
    typer.echo(prepared.prompt.text)


# =============================================================================
# Capture commands
# =============================================================================


@app.command("run")
def run_command(
    cmd: Annotated[
        list[str],
        typer.Argument(help="Command to run, after `--`."),
    ],
    timeout: Annotated[
        Optional[float],
        typer.Option(
            "--timeout",
            help="Kill the command after this many seconds.",
        ),
    ] = None,
    config: ConfigOption = None,
) -> None:
    """
    Run a command, show its output, and record it in history.

    The command's exit status is passed through.

    Example:
        $ logtrains run -- npm test
        $ logtrains explain
    """
    _configure_logging()
    settings = _load_settings(config)

    captured = run_and_capture(cmd, timeout=timeout)
    typer.echo(captured.body)

    try:
        record(
            EntryStore(settings.history_dir),
            captured.body,
            command_text=captured.command_text,
            exit_code=captured.exit_code,
            retention=settings.retention,
        )
    except LogTrainsError as e:
        _report_error(e, False, False)

    raise typer.Exit(code=captured.exit_code if captured.exit_code is not None else 1)


@app.command("record")
def record_command(
    command: Annotated[
        Optional[str],
        typer.Option(
            "--command",
            "-c",
            help="The command line that produced the piped output.",
        ),
    ] = None,
    exit_code: Annotated[
        Optional[int],
        typer.Option(
            "--exit-code",
            help="Exit status of the command.",
        ),
    ] = None,
    config: ConfigOption = None,
) -> None:
    """
    Record output piped on stdin as a history entry.

    Example:
        $ make 2>&1 | logtrains record --command make
    """
    _configure_logging()
    settings = _load_settings(config)

    body = read_input()
    if not body.strip():
        err_console.print("[yellow]Nothing to record (empty input).[/yellow]")
        raise typer.Exit(code=0)

    try:
        entry = record(
            EntryStore(settings.history_dir),
            body,
            command_text=command,
            exit_code=exit_code,
            retention=settings.retention,
        )
    except LogTrainsError as e:
        _report_error(e, False, False)
        raise typer.Exit(code=1)

    if entry is None:
        err_console.print(f"[dim]Skipped trivial command: {command}[/dim]")
    else:
        err_console.print(f"[dim]Recorded entry {entry.identifier} ({entry.byte_length} bytes)[/dim]")


# =============================================================================
# History commands
# =============================================================================


@app.command("history")
def history(
    limit: Annotated[
        int,
        typer.Option(
            "--limit",
            "-n",
            help="Maximum number of entries to show.",
            min=1,
        ),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output results in JSON format.",
        ),
    ] = False,
    config: ConfigOption = None,
) -> None:
    """
    List recorded entries, most recent first.

    The Offset column is the value to pass to `explain --offset`.
    """
    settings = _load_settings(config, json_output)
    store = EntryStore(settings.history_dir)

    try:
        identifiers = store.identifiers()
        newest = list(reversed(identifiers))[:limit]
        refs = [store.get(identifier) for identifier in newest]
    except LogTrainsError as e:
        _report_error(e, json_output, False)
        raise typer.Exit(code=1)

    if json_output:
        print(json.dumps(
            [dict(ref.model_dump(mode="json"), offset=k) for k, ref in enumerate(refs)],
            indent=2,
        ))
        return

    if not refs:
        console.print("[dim]No entries recorded.[/dim]")
        raise typer.Exit(code=0)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Offset", style="dim", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Captured")
    table.add_column("Exit", justify="right")
    table.add_column("Bytes", justify="right")
    table.add_column("Command")

    for k, ref in enumerate(refs):
        if ref.exit_code is None:
            exit_display = "[dim]-[/dim]"
        elif ref.exit_code == 0:
            exit_display = "[green]0[/green]"
        else:
            exit_display = f"[red]{ref.exit_code}[/red]"

        command = ref.command_text or "[dim](piped input)[/dim]"
        if len(command) > 60:
            command = command[:57] + "..."

        table.add_row(
            str(k),
            str(ref.identifier),
            ref.captured_at.strftime("%Y-%m-%d %H:%M:%S"),
            exit_display,
            str(ref.byte_length),
            command,
        )

    console.print(table)
    if len(identifiers) > limit:
        console.print(f"[dim]... and {len(identifiers) - limit} older entries[/dim]")


@app.command("show")
def show(
    offset: Annotated[
        int,
        typer.Argument(help="Entry offset (0 = most recent).", min=0),
    ] = 0,
    config: ConfigOption = None,
) -> None:
    """
    Print one recorded entry.

    Example:
        $ logtrains show 1
    """
    settings = _load_settings(config)
    store = EntryStore(settings.history_dir)

    try:
        selection = HistorySelector(store).select(AtOffset(offset))
        entry = store.load(selection.refs[0])
    except LogTrainsError as e:
        _report_error(e, False, False)
        raise typer.Exit(code=1)

    err_console.print(
        f"[bold]$ {entry.command_text or '(piped input)'}[/bold] "
        f"[dim]{entry.captured_at:%Y-%m-%d %H:%M:%S}[/dim]"
    )
    typer.echo(entry.body)


@app.command("prune")
def prune(
    max_entries: Annotated[
        Optional[int],
        typer.Option(
            "--max-entries",
            help="Keep at most this many newest entries.",
            min=0,
        ),
    ] = None,
    max_age_days: Annotated[
        Optional[float],
        typer.Option(
            "--max-age-days",
            help="Remove entries older than this many days.",
        ),
    ] = None,
    remove_all: Annotated[
        bool,
        typer.Option(
            "--all",
            help="Remove every entry.",
        ),
    ] = False,
    config: ConfigOption = None,
) -> None:
    """
    Apply the retention policy now.

    Without options the configured policy is used.

    Example:
        $ logtrains prune --max-entries 50
    """
    settings = _load_settings(config)
    store = EntryStore(settings.history_dir)

    if max_age_days is not None and max_age_days <= 0:
        _report_error(ValueError("--max-age-days must be positive"), False, False)
        raise typer.Exit(code=2)

    try:
        if remove_all:
            removed = store.clear()
        else:
            policy = settings.retention
            if max_entries is not None or max_age_days is not None:
                policy = RetentionPolicy(
                    max_entries=max_entries if max_entries is not None else policy.max_entries,
                    max_age_days=max_age_days if max_age_days is not None else policy.max_age_days,
                )
            removed = store.apply_retention(policy)
    except LogTrainsError as e:
        _report_error(e, False, False)
        raise typer.Exit(code=1)

    console.print(f"Removed {removed} entr{'y' if removed == 1 else 'ies'}.")


# =============================================================================
# doctor
# =============================================================================


@app.command()
def doctor(
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output results in JSON format.",
        ),
    ] = False,
    config: ConfigOption = None,
) -> None:
    """
    Check system environment and dependencies.

    Verifies that:
    - Python version is 3.11+
    - Ollama is reachable and the configured model is pulled
    - The history directory is usable

    Example:
        $ logtrains doctor
    """
    settings = _load_settings(config, json_output)
    checks = []
    all_ok = True

    # Check 1: Python version
    py_version = sys.version_info
    py_version_str = f"{py_version.major}.{py_version.minor}.{py_version.micro}"
    py_ok = py_version >= (3, 11)
    checks.append({
        "name": "Python version",
        "ok": py_ok,
        "value": py_version_str,
        "message": "OK" if py_ok else "Requires Python 3.11+",
    })
    all_ok = all_ok and py_ok

    # Check 2: Inference engine and model
    model = settings.model.resolved_model()
    with OllamaGateway.from_model_config(settings.model) as gateway:
        engine_ok, engine_message = gateway.check_connection(model)
    checks.append({
        "name": "Ollama",
        "ok": engine_ok,
        "value": settings.model.base_url,
        "message": engine_message,
    })
    all_ok = all_ok and engine_ok

    # Check 3: History directory
    history_dir = settings.history_dir
    try:
        if history_dir.exists():
            count = EntryStore(history_dir).count()
            history_ok = history_dir.is_dir()
            history_message = f"{count} entries" if history_ok else "Not a directory"
        else:
            history_ok = True
            history_message = "Not found (will be created on first capture)"
    except (OSError, LogTrainsError) as e:
        history_ok = False
        history_message = f"Error: {e}"
    checks.append({
        "name": "History",
        "ok": history_ok,
        "value": str(history_dir),
        "message": history_message,
    })
    all_ok = all_ok and history_ok

    # Output results
    if json_output:
        print(json.dumps({"ok": all_ok, "version": __version__, "checks": checks}, indent=2))
    else:
        console.print(f"[bold]LogTrains Doctor[/bold] v{__version__}")
        console.print()

        for check in checks:
            icon = "[green]✓[/green]" if check["ok"] else "[red]✗[/red]"
            if check["ok"]:
                console.print(f"{icon} {check['name']}: [dim]{check['value']}[/dim] - {check['message']}")
            else:
                console.print(f"{icon} {check['name']}: [dim]{check['value']}[/dim]")
                console.print(f"    [red]{check['message']}[/red]")

        console.print()
        if all_ok:
            console.print("[green]All checks passed![/green]")
        else:
            console.print("[yellow]Some checks failed. See above for details.[/yellow]")

    raise typer.Exit(code=0 if all_ok else 1)


if __name__ == "__main__":
    app()
