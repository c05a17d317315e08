"""
LeakGuard command line interface.

Usage:
    leakguard scan https://github.com/org/repo
    leakguard scan https://gitlab.com/org/repo --json
    leakguard --config leakguard.yaml serve --port 8080
    leakguard invalidate https://github.com/org/repo
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .api import run_server
from .core.config import Settings, load_settings
from .core.logging import configure_logging
from .core.service import LeakGuardService
from .errors import LeakGuardError
from .scanners.models import Finding, Provider, ScanResult
from .scanners.trufflehog import TruffleHogScanner
from .storage.repository import HistoryQuery


console = Console()
err_console = Console(stderr=True)


@click.group()
@click.version_option(version=__version__, prog_name="LeakGuard")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML settings file",
)
@click.option("--log-level", default=None, help="Override the configured log level")
@click.option("--json-logs/--no-json-logs", default=None, help="Render logs as JSON lines")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str], json_logs: Optional[bool]):
    """
    LeakGuard - Repository Secret Scanner

    Scans Git repositories for leaked credentials with TruffleHog.
    """
    settings = load_settings(config_path)
    configure_logging(
        level=log_level or settings.logging.level,
        json_logs=settings.logging.json_logs if json_logs is None else json_logs,
    )
    ctx.obj = settings


@cli.command()
@click.argument("repository_url")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in Provider]),
    help="Provider label (detected from the URL when omitted)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), help="Save the result to a JSON file")
@click.pass_obj
def scan(settings: Settings, repository_url: str, provider: Optional[str], as_json: bool, output: Optional[Path]):
    """
    Scan one repository for secrets.

    Cached results are reused; the scan itself obeys the same concurrency
    limit and timeout as the server.

    Example:
        leakguard scan https://github.com/org/repo
    """
    code = asyncio.run(run_scan(settings, repository_url, provider, as_json, output))
    if code:
        sys.exit(code)


async def run_scan(
    settings: Settings,
    repository_url: str,
    provider: Optional[str],
    as_json: bool,
    output: Optional[Path],
) -> int:
    """
    Run one scan through the orchestrator.

    Returns:
        Process exit code
    """
    service = LeakGuardService.from_settings(settings)
    try:
        target = service.orchestrator.build_target(repository_url, provider)

        if as_json:
            outcome = await service.orchestrator.scan(target)
        else:
            console.print(f"\n[green]Repository:[/green] {target.repository_url}")
            console.print(f"[green]Provider:[/green] {target.provider.value}")
            console.print(f"[green]Timeout:[/green] {settings.scanner.timeout:.0f}s\n")

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                task = progress.add_task("[cyan]Scanning repository...", total=None)
                outcome = await service.orchestrator.scan(target)
                progress.update(task, description="[green]Scan complete!")

        if as_json:
            click.echo(outcome.result.model_dump_json(indent=2))
        else:
            print_result(outcome.result, outcome.cached)

        if output:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(outcome.result.model_dump_json(indent=2), encoding="utf-8")
            err_console.print(f"[green]Results saved to:[/green] {output}")

        return 1 if outcome.result.total_count else 0

    except LeakGuardError as e:
        err_console.print(f"[bold red]Scan failed:[/bold red] {e.message} [dim]({e.kind})[/dim]")
        return 2

    finally:
        await service.close()


def _mask(finding: Finding) -> str:
    if finding.redacted:
        return finding.redacted
    if len(finding.raw) <= 8:
        return "****"
    return f"{finding.raw[:4]}****"


def print_result(result: ScanResult, cached: bool):
    """Render a result as a rich table"""
    source = "[yellow]cache[/yellow]" if cached else "[green]fresh scan[/green]"
    console.print(
        f"\n[bold]{result.total_count}[/bold] finding(s), "
        f"[bold red]{result.verified_count}[/bold red] verified "
        f"({source}, {result.duration_ms} ms)\n"
    )
    if not result.findings:
        console.print("[bold green]No secrets found.[/bold green]\n")
        return

    table = Table(title="Findings")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Detector", style="cyan", no_wrap=True)
    table.add_column("Verified")
    table.add_column("File", style="yellow")
    table.add_column("Line", justify="right")
    table.add_column("Commit", style="dim", no_wrap=True)
    table.add_column("Secret", style="magenta")

    for i, finding in enumerate(result.findings, 1):
        table.add_row(
            str(i),
            finding.detector_name or "unknown",
            "[red]yes[/red]" if finding.verified else "no",
            finding.file or "-",
            str(finding.line) if finding.line is not None else "-",
            (finding.commit or "-")[:12],
            _mask(finding),
        )

    console.print(table)
    console.print()


@cli.command()
@click.option("--host", default=None, help="Bind address (default from settings)")
@click.option("--port", default=None, type=int, help="Port (default from settings)")
@click.pass_obj
def serve(settings: Settings, host: Optional[str], port: Optional[int]):
    """Run the HTTP API"""
    console.print(f"\n[bold cyan]LeakGuard API v{__version__}[/bold cyan]")
    console.print(
        f"[cyan]Listening on {host or settings.server.host}:{port or settings.server.port}"
        f"{settings.server.api_prefix}[/cyan]\n"
    )
    run_server(settings, host=host, port=port)


@cli.command()
@click.argument("repository_url")
@click.pass_obj
def invalidate(settings: Settings, repository_url: str):
    """Drop cached results of a repository"""

    async def _invalidate() -> int:
        service = LeakGuardService.from_settings(settings)
        try:
            return await service.orchestrator.invalidate_repository(repository_url)
        finally:
            await service.close()

    deleted = asyncio.run(_invalidate())
    console.print(f"[green]Removed {deleted} cache entr{'y' if deleted == 1 else 'ies'}[/green]")


@cli.command()
@click.option("--repo-url", default=None, help="Only scans of this repository")
@click.option("--limit", default=20, type=click.IntRange(1, 100), help="Number of scans (default: 20)")
@click.pass_obj
def history(settings: Settings, repo_url: Optional[str], limit: int):
    """List recent scans"""

    async def _history():
        service = LeakGuardService.from_settings(settings)
        try:
            return await service.orchestrator.history(HistoryQuery(repository_url=repo_url, limit=limit))
        finally:
            await service.close()

    page = asyncio.run(_history())

    table = Table(title=f"Scan History ({page.total} total)")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Repository", style="cyan")
    table.add_column("Provider")
    table.add_column("Findings", justify="right")
    table.add_column("Verified", justify="right", style="red")
    table.add_column("Scanned At", style="yellow")

    for record in page.data:
        table.add_row(
            record.id,
            record.repository_url,
            record.provider.value,
            str(record.result.total_count),
            str(record.result.verified_count),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


@cli.command()
@click.pass_obj
def health(settings: Settings):
    """Check scanner, cache and record store"""

    async def _health():
        service = LeakGuardService.from_settings(settings)
        try:
            return await service.orchestrator.health()
        finally:
            await service.close()

    report = asyncio.run(_health())

    colors = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
    console.print(f"\n[bold {colors[report.status]}]{report.status.upper()}[/bold {colors[report.status]}]\n")

    table = Table(title="Service Status")
    table.add_column("Service", style="cyan", no_wrap=True)
    table.add_column("Status")
    for name, up in report.services.items():
        table.add_row(name, "[green]up[/green]" if up else "[red]down[/red]")
    console.print(table)

    if report.scanner_version:
        console.print(f"\n[dim]{report.scanner_version}[/dim]")
    console.print()

    if report.status == "unhealthy":
        sys.exit(1)


@cli.command()
@click.pass_obj
def version(settings: Settings):
    """Show version information and scanner availability"""
    console.print(f"\n[bold cyan]LeakGuard v{__version__}[/bold cyan]")
    console.print("[cyan]Repository Secret Scanner[/cyan]\n")

    scanner = TruffleHogScanner(
        binary=settings.scanner.binary,
        version_timeout=settings.scanner.version_timeout,
    )
    scanner_version = asyncio.run(scanner.version())

    table = Table(title="Environment")
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Status", style="green")
    table.add_column("Notes", style="yellow")

    if scanner_version:
        table.add_row("TruffleHog", "[green]available[/green]", scanner_version)
    else:
        table.add_row("TruffleHog", "[red]missing[/red]", f"'{settings.scanner.binary}' not runnable")
    table.add_row("Max concurrent scans", str(settings.scanner.max_concurrent_scans), "")
    table.add_row("Scan timeout", f"{settings.scanner.timeout:.0f}s", "")
    table.add_row("Cache TTL", f"{settings.cache.ttl:.0f}s", "")

    console.print(table)
    console.print()


if __name__ == "__main__":
    cli()
