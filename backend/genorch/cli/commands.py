"""CLI commands for genorch using Typer and Rich.

Implements:
- submit: Run a JSON file of prompts through a generation session
- backoff: Print the retry schedule for the configured policy
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from genorch import validate_provider_settings
from genorch.config import settings
from genorch.orchestrator.session import GenerationSession
from genorch.schemas.generation import GenerationRequest, PartialResults, RateLimitSnapshot
from genorch.services.provider import get_provider
from genorch.services.retry import backoff_delay

app = typer.Typer(name="genorch", help="Resilient batch orchestration for AI image and video generation")
console = Console()

_SEVERITIES = ("low", "medium", "high", "critical")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override logging.level"),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=(log_level or settings.logging.level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def load_requests(path: Path, default_type: str, config_id: str) -> list[GenerationRequest]:
    """Read a JSON array of {prompt, scene_id?, type?} objects."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array")

    requests = []
    for i, item in enumerate(data):
        if isinstance(item, str):
            item = {"prompt": item}
        if not isinstance(item, dict):
            raise ValueError(f"Entry {i} must be an object or a prompt string")
        requests.append(
            GenerationRequest(
                prompt=item.get("prompt", ""),
                scene_id=item.get("scene_id"),
                type=item.get("type", default_type),
                config_id=item.get("config_id", config_id),
            )
        )
    return requests


@app.command()
def submit(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON array of prompts"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, help="Requests per batch"),
    generation_type: str = typer.Option("image", "--type", "-t", help="Default type: image or video"),
    config_id: str = typer.Option("default", "--config-id", help="Configuration id recorded on each task"),
):
    """Submit every prompt in FILE and wait for the results.

    Requests are grouped by type; each group is batched, throttled and
    retried independently.
    """
    if generation_type not in ("image", "video"):
        console.print(f"[red]Error:[/red] Invalid type: {generation_type}")
        raise typer.Exit(code=1)

    try:
        validate_provider_settings(settings.provider)
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    try:
        requests = load_requests(file, generation_type, config_id)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    if not requests:
        console.print("[yellow]No prompts found[/yellow]")
        return

    asyncio.run(_submit_async(requests, concurrency))


async def _submit_async(requests: list[GenerationRequest], concurrency: Optional[int]):
    """Async implementation of submit command."""
    session = GenerationSession(get_provider())
    groups: dict[str, list[GenerationRequest]] = {}
    for request in requests:
        groups.setdefault(request.type, []).append(request)

    all_results: list[PartialResults] = []
    try:
        with console.status("[bold green]Submitting...") as status:

            def on_update(view):
                counts = {s: sum(1 for t in view if t.status == s) for s in ("pending", "processing", "completed", "failed")}
                status.update(
                    f"[bold green]{counts['processing']} processing, {counts['pending']} pending, "
                    f"{counts['completed']} completed, {counts['failed']} failed"
                )

            session.on_update = on_update
            for generation_type, group in groups.items():
                status.update(f"[bold green]Submitting {len(group)} {generation_type} request(s)...")
                all_results.append(await session.submit(group, concurrency_cap=concurrency))
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Interrupted. In-flight provider tasks are not cancelled remotely.[/yellow]")
        raise typer.Exit(code=130)
    finally:
        await session.close()

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Prompt")
    table.add_column("Status")
    table.add_column("Result / Error")

    for task in session.get_reconciled_statuses():
        prompt = task.prompt or ""
        prompt_display = prompt if len(prompt) <= 40 else prompt[:37] + "..."
        color = _get_status_color(task.status)
        if task.status == "completed":
            detail = (task.result or {}).get("url") or ""
        else:
            detail = (task.error or "").split("\n")[0]
        table.add_row(
            task.id[:8] + "...",
            task.type,
            prompt_display,
            f"[{color}]{task.status}[/{color}]",
            detail,
        )
    console.print(table)

    failed = False
    for results in all_results:
        if results.aborted:
            failed = True
            console.print(f"[red]✗ Aborted:[/red] {results.abort_reason}")
            console.print(f"[yellow]Not dispatched:[/yellow] {len(results.skipped_ids)} request(s)")
        if results.failed:
            failed = True

    stats = session.rate_limit_stats()
    console.print(
        f"Rate-limit events (last 5 min): {stats['recent_events']} "
        f"{stats['severity_breakdown']}"
    )
    if failed:
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] All requests completed")


@app.command()
def backoff(
    severity: str = typer.Option("low", "--severity", "-s", help="Severity to schedule for"),
    retries: Optional[int] = typer.Option(None, "--retries", "-r", min=0, help="Override retry.max_retries"),
):
    """Print the jitter-free backoff schedule of the configured retry policy."""
    if severity not in _SEVERITIES:
        console.print(f"[red]Error:[/red] Invalid severity: {severity}")
        console.print(f"Allowed: {', '.join(_SEVERITIES)}")
        raise typer.Exit(code=1)

    config = settings.retry
    count = config.max_retries if retries is None else retries
    snapshot = RateLimitSnapshot(is_rate_limited=severity != "low", severity=severity)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Retry", justify="right")
    table.add_column("Delay (s)", justify="right")
    table.add_column("Jitter range (s)", justify="right")
    table.add_column("Elapsed (s)", justify="right")

    elapsed = 0.0
    for attempt in range(count):
        delay = backoff_delay(attempt, snapshot, config) / 1000
        if config.jitter:
            low = delay * 0.75
            high = min(delay * 1.25, config.max_delay_ms / 1000)
            jitter_display = f"{low:.1f} - {high:.1f}"
        else:
            jitter_display = "-"
        elapsed += delay
        table.add_row(str(attempt + 1), f"{delay:.1f}", jitter_display, f"{elapsed:.1f}")

    console.print(table)


def _get_status_color(status: str) -> str:
    """Get Rich color for a task status."""
    color_map = {
        "pending": "yellow",
        "processing": "blue",
        "completed": "green",
        "failed": "red",
    }
    return color_map.get(status, "white")


if __name__ == "__main__":
    app()
