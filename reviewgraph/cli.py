"""Typer-based CLI for reviewgraph indexing and taint verification."""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__, config

app = typer.Typer(
    help="Code graph indexing and data-flow verification for pull-request review.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

PHASE_COLORS = {
    "complete": "green",
    "failed": "red",
    "queued": "dim",
}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"reviewgraph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
):
    """reviewgraph: index repositories into a code graph and trace tainted data through it."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
        )


# ===================================================================
# Store wiring
# ===================================================================

def _status_store():
    from .status_store import StatusStore
    config.ensure_base_dirs()
    return StatusStore(config.STATUS_DB)


def _graph_store():
    from .storage import GraphStore
    config.ensure_base_dirs()
    return GraphStore(config.GRAPH_DB)


def _orchestrator(status_store, graph_store):
    from .orchestrator import IndexOrchestrator
    return IndexOrchestrator(status_store, graph_store=graph_store, clone_base_dir=config.CLONE_BASE_DIR)


def _print_status(status) -> None:
    color = PHASE_COLORS.get(status.phase.value, "cyan")
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Job", status.id)
    table.add_row("Repository", status.repo_id or "-")
    table.add_row("Phase", f"[{color}]{status.phase.value}[/{color}]")
    table.add_row("Progress", f"{status.percentage}%")
    if status.framework:
        table.add_row("Framework", status.framework)
    table.add_row("Files", f"{status.files_processed}/{status.total_files}")
    table.add_row("Embeddings", str(status.functions_indexed))
    if status.error:
        table.add_row("Error", f"[red]{status.error}[/red]")
    if status.cancelled:
        table.add_row("Cancelled", "yes")
    console.print(table)


# ===================================================================
# Indexing
# ===================================================================

@app.command("index")
def index_repo(
    repo_url: str = typer.Argument(..., help="Clone URL of the repository."),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch to index."),
    token: Optional[str] = typer.Option(None, "--token", help="Access token for private repositories.", envvar="REVIEWGRAPH_GIT_TOKEN"),
    framework: Optional[str] = typer.Option(None, "--framework", "-f", help="Skip detection and use this framework."),
    incremental: bool = typer.Option(False, "--incremental", help="Only re-index the changed files."),
    changed_file: Optional[List[str]] = typer.Option(None, "--changed-file", "-c", help="Changed file (repeatable)."),
    no_embeddings: bool = typer.Option(False, "--no-embeddings", help="Build the graph only."),
):
    """Clone and index a repository, waiting for the job to finish."""
    from .models import IndexJob, IndexPhase
    from .worker import IndexWorker

    status_store = _status_store()
    graph_store = _graph_store()
    try:
        job = IndexJob(
            id=str(uuid.uuid4()),
            repo_url=repo_url,
            branch=branch,
            framework=framework,
            incremental=incremental,
            changed_files=list(changed_file or []),
            include_embeddings=not no_embeddings,
            token=token,
        )
        worker = IndexWorker.from_config(status_store, _orchestrator(status_store, graph_store))
        worker.submit(job)
        with console.status(f"Indexing {repo_url}@{branch}..."):
            worker.run_until_idle()
        status = status_store.get_status(job.id)
    finally:
        graph_store.close()
        status_store.close()

    if status is None:
        console.print(f"[red]No status recorded for job {job.id}.[/red]")
        raise typer.Exit(code=1)
    _print_status(status)
    if status.phase is IndexPhase.FAILED:
        raise typer.Exit(code=1)


@app.command("index-local")
def index_local(
    path: Path = typer.Argument(..., exists=True, file_okay=False, help="Path to a local checkout."),
    repo_id: Optional[str] = typer.Option(None, "--repo-id", "-r", help="Repository id (default: directory name)."),
    framework: Optional[str] = typer.Option(None, "--framework", "-f", help="Skip detection and use this framework."),
    no_embeddings: bool = typer.Option(False, "--no-embeddings", help="Build the graph only."),
):
    """Index an existing checkout in place."""
    status_store = _status_store()
    graph_store = _graph_store()
    try:
        orchestrator = _orchestrator(status_store, graph_store)
        try:
            status = orchestrator.run_local(
                path, repo_id=repo_id, framework=framework, include_embeddings=not no_embeddings,
            )
        except Exception as exc:
            console.print(f"[red]Indexing failed:[/red] {exc}")
            raise typer.Exit(code=1)
    finally:
        graph_store.close()
        status_store.close()
    _print_status(status)


# ===================================================================
# Jobs
# ===================================================================

@app.command("status")
def job_status(job_id: str = typer.Argument(..., help="Index job id.")):
    """Show the status of an index job."""
    store = _status_store()
    try:
        status = store.get_status(job_id)
    finally:
        store.close()
    if status is None:
        console.print(f"[red]Job '{job_id}' not found.[/red]")
        raise typer.Exit(code=1)
    _print_status(status)


@app.command("jobs")
def list_jobs(limit: int = typer.Option(20, "--limit", "-n", help="Maximum jobs to list.")):
    """List recent index jobs."""
    store = _status_store()
    try:
        statuses = store.list_statuses(limit=limit)
    finally:
        store.close()
    if not statuses:
        typer.echo("No index jobs recorded yet.")
        raise typer.Exit(code=0)

    table = Table(title="Index jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Repository")
    table.add_column("Phase")
    table.add_column("%", justify="right")
    table.add_column("Started")
    for s in statuses:
        color = PHASE_COLORS.get(s.phase.value, "cyan")
        table.add_row(s.id, s.repo_id or "-", f"[{color}]{s.phase.value}[/{color}]", str(s.percentage), s.started_at)
    console.print(table)


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Index job id.")):
    """Request cancellation of a running or queued job."""
    from .cancellation import CancellationToken

    store = _status_store()
    try:
        CancellationToken(job_id, store).cancel()
    finally:
        store.close()
    typer.echo(f"Cancellation requested for job '{job_id}'.")


# ===================================================================
# Search
# ===================================================================

@app.command("search")
def search_code(
    repo_id: str = typer.Argument(..., help="Repository id."),
    query: str = typer.Argument(..., help="Natural-language or code query."),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum results."),
    file: Optional[str] = typer.Option(None, "--file", help="Restrict to one file."),
    min_score: Optional[float] = typer.Option(None, "--min-score", help="Drop results below this score."),
):
    """Semantic search over a repository's embedded functions."""
    from .embedding_pipeline import search

    results = search(repo_id, query, limit=limit, filters={"file": file} if file else None, score_threshold=min_score)
    if not results:
        typer.echo("No results.")
        raise typer.Exit(code=0)

    table = Table(title=f"Results for '{query}'")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Function", style="cyan")
    table.add_column("Location")
    for r in results:
        table.add_row(f"{r.score:.3f}", r.name, f"{r.file}:{r.start_line}-{r.end_line}")
    console.print(table)


@app.command("peek")
def peek_vectors(
    repo_id: str = typer.Argument(..., help="Repository id."),
    limit: int = typer.Option(10, "--limit", "-n", help="Rows to show."),
):
    """Show stored embedding payloads for a repository."""
    from .vector_store import VectorStore

    rows = VectorStore(config.VECTOR_DIR).peek(repo_id, limit=limit)
    if not rows:
        typer.echo(f"No embeddings stored for '{repo_id}'.")
        raise typer.Exit(code=0)
    table = Table(title=f"Embeddings for {repo_id}")
    table.add_column("Function", style="cyan")
    table.add_column("File")
    table.add_column("Lines", justify="right")
    for row in rows:
        table.add_row(row["name"], row["file"], f"{row['start_line']}-{row['end_line']}")
    console.print(table)


# ===================================================================
# Taint tracing
# ===================================================================

@app.command("trace")
def trace(
    file: str = typer.Argument(..., help="File containing the variable."),
    variable: str = typer.Argument(..., help="Variable to trace."),
    line: Optional[int] = typer.Option(None, "--line", "-l", help="Line where the variable is used."),
    repo_path: str = typer.Option("", "--repo-path", help="Repository root the file is relative to."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw trace as JSON."),
):
    """Trace a variable to its source and sinks within one file."""
    from dataclasses import asdict

    from .data_flow import trace_data_flow

    result = trace_data_flow(file, variable, line=line, repo_path=repo_path)
    if as_json:
        payload = asdict(result)
        payload["source_type"] = result.source_type.value
        payload["is_dangerous"] = result.is_dangerous
        typer.echo(json.dumps(payload, indent=2))
        return

    console.print(f"[bold]{variable}[/bold] ({result.language}) source: [cyan]{result.source_type.value}[/cyan]")
    for step in result.source_path:
        console.print(f"  {step.file}:{step.line} [{step.description}] {step.code}")
    for sink in result.sinks:
        mark = "[red]dangerous[/red]" if sink.is_dangerous else "[green]sanitized[/green]"
        console.print(f"  sink {sink.sink_type} at {sink.file}:{sink.line} {mark}")
    console.print(
        f"validation={result.validation_found} sanitization={result.sanitization_found} "
        f"confidence={result.confidence}"
    )
    if result.is_dangerous:
        console.print("[bold red]User-controlled data reaches a dangerous sink.[/bold red]")


@app.command("verify-flow")
def verify_flow(
    repo_id: str = typer.Argument(..., help="Repository id."),
    function: str = typer.Argument(..., help="Suspected sink function."),
    file: Optional[str] = typer.Option(None, "--file", help="File containing the sink function."),
    max_hops: int = typer.Option(3, "--max-hops", help="Maximum call-chain length."),
):
    """Decide whether user input reaches a function without validation."""
    from .graph_flow import trace_cross_file

    store = _graph_store()
    try:
        verdict = trace_cross_file(store, repo_id, function, file, max_hops=max_hops)
    finally:
        store.close()

    console.print(
        f"[bold]{verdict.recommendation.value}[/bold] (confidence {verdict.confidence}) "
        f"all paths exploitable: {verdict.all_paths_exploitable}"
    )
    console.print(verdict.reasoning)
    if not verdict.call_chains:
        return
    table = Table(title="Call chains")
    table.add_column("Entry", style="cyan")
    table.add_column("Source")
    table.add_column("Path")
    table.add_column("Validation")
    for chain in verdict.call_chains:
        table.add_row(
            f"{chain.entry_point.file}:{chain.entry_point.function}",
            chain.entry_point.source_type.value,
            " -> ".join(step.function for step in chain.path),
            chain.validation_location or "-",
        )
    console.print(table)


@app.command("entry-points")
def entry_points(
    repo_id: str = typer.Argument(..., help="Repository id."),
    function: str = typer.Argument(..., help="Target function."),
    file: Optional[str] = typer.Option(None, "--file", help="File containing the target."),
    max_hops: int = typer.Option(5, "--max-hops", help="Maximum hops to search."),
):
    """List caller-less functions that can reach a function."""
    from .graph_flow import find_entry_points

    store = _graph_store()
    try:
        found = find_entry_points(store, repo_id, function, file, max_hops=max_hops)
    finally:
        store.close()
    if not found:
        typer.echo(f"No entry points reach '{function}'.")
        raise typer.Exit(code=0)
    table = Table(title=f"Entry points reaching {function}")
    table.add_column("Function", style="cyan")
    table.add_column("Location")
    table.add_column("Hops", justify="right")
    table.add_column("User input")
    for ep in found:
        table.add_row(
            ep["function"], f"{ep['file']}:{ep['line']}", str(ep["hops_to_target"]),
            "yes" if ep["likely_user_input"] else "",
        )
    console.print(table)


# ===================================================================
# Diagnostics and config
# ===================================================================

@app.command("detect")
def detect(path: Path = typer.Argument(..., exists=True, file_okay=False, help="Repository directory.")):
    """Detect the frameworks used by a checkout."""
    from .framework_detector import detect_frameworks

    detections = detect_frameworks(path)
    if not detections:
        typer.echo("No known framework detected.")
        raise typer.Exit(code=0)
    table = Table(title="Detected frameworks")
    table.add_column("Framework", style="cyan")
    table.add_column("Confidence", justify="right")
    table.add_column("Evidence")
    for d in detections:
        table.add_row(d.framework, f"{d.confidence:.2f}", ", ".join(d.file_patterns))
    console.print(table)


@app.command("breakers")
def breakers(reset: bool = typer.Option(False, "--reset", help="Force every breaker closed.")):
    """Show circuit breaker health."""
    from .breakers import get_registry

    registry = get_registry()
    if reset:
        registry.reset()

    table = Table(title="Circuit breakers")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Recent failures", justify="right")
    for name, stats in sorted(registry.get_all_stats().items()):
        state = stats["state"]
        color = "green" if state == "CLOSED" else "red" if state == "OPEN" else "yellow"
        table.add_row(name, f"[{color}]{state}[/{color}]", str(stats["failures"]))
    console.print(table)
    console.print("Healthy" if registry.healthy() else "[red]Degraded[/red]")


@app.command("set-config")
def set_config(
    section: str = typer.Argument(..., help="Config section, e.g. embeddings."),
    key: str = typer.Argument(..., help="Key within the section."),
    value: str = typer.Argument(..., help="Value (numbers and true/false are converted)."),
):
    """Persist a single config value to the TOML config file."""
    from .config_manager import set_value

    parsed: object = value
    if value.lower() in ("true", "false"):
        parsed = value.lower() == "true"
    else:
        try:
            parsed = int(value)
        except ValueError:
            try:
                parsed = float(value)
            except ValueError:
                parsed = value
    if not set_value(section, key, parsed):
        console.print(f"[red]Could not write {config.CONFIG_FILE}.[/red]")
        raise typer.Exit(code=1)
    typer.echo(f"Set {section}.{key} = {parsed!r}")


if __name__ == "__main__":
    app()
