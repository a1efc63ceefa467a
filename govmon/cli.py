import asyncio

import typer
from rich.console import Console
from rich.table import Table

console = Console()
cli_app = typer.Typer(name="govmon-admin", help="Government systems monitor operator CLI")


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


async def _ensure_db():
    from govmon.core.database import init_db
    await init_db()


def _store():
    from govmon.core.database import async_session
    from govmon.services.store import SystemStore
    return SystemStore(async_session)


def _aggregator():
    from govmon.main import build_aggregator
    return build_aggregator(_store())


def _status_style(status: str) -> str:
    return {"Up": "green", "Down": "red", "Maintenance": "yellow"}.get(status, "white")


@cli_app.command("run-check")
def run_check():
    """Run one health check cycle now and print the summary."""
    async def _run():
        await _ensure_db()
        from govmon.config import settings
        from govmon.core.database import close_db
        from govmon.main import build_aggregator, build_scheduler
        from govmon.services.probe import ProbeEngine, build_probe_client

        store = _store()
        async with build_probe_client(settings) as client:
            engine = ProbeEngine(client, timeout=settings.govmon_probe_timeout_seconds)
            scheduler = build_scheduler(store, engine, build_aggregator(store))
            try:
                return await scheduler.run_manual()
            finally:
                await close_db()

    from govmon.core.exceptions import MonitorError

    try:
        summary = _run_async(_run())
    except MonitorError as exc:
        console.print(f"[bold red]{exc.message}[/bold red]")
        raise typer.Exit(code=1)

    table = Table(title="Health Check Cycle")
    table.add_column("Total", justify="right")
    table.add_column("Checked", justify="right")
    table.add_column("Up", justify="right", style="green")
    table.add_column("Down", justify="right", style="red")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_row(
        str(summary.total),
        str(summary.checked),
        str(summary.up),
        str(summary.down),
        str(summary.skipped),
    )
    console.print(table)


@cli_app.command("test-url")
def test_url(
    url: str = typer.Argument(help="URL to probe"),
):
    """Probe a single URL without touching the database."""
    async def _probe():
        from govmon.config import settings
        from govmon.services.probe import ProbeEngine, build_probe_client

        async with build_probe_client(settings) as client:
            engine = ProbeEngine(client, timeout=settings.govmon_probe_timeout_seconds)
            return await engine.probe_url(url)

    console.print(f"\n[bold]Testing URL:[/bold] {url}\n")
    outcome = _run_async(_probe())

    style = _status_style(outcome.status)
    console.print(f"  Status:        [{style}]{outcome.status}[/{style}]")
    console.print(f"  HTTP Status:   {outcome.http_status if outcome.http_status is not None else '—'}")
    console.print(f"  Response Time: {outcome.elapsed_ms if outcome.elapsed_ms is not None else '—'}ms")
    if outcome.final_url:
        console.print(f"  Final URL:     {outcome.final_url}")
    for name, value in outcome.headers.items():
        console.print(f"  {name}: {value}")
    if outcome.error:
        console.print(f"  [red]Error: {outcome.error}[/red]")
        if outcome.error_code:
            console.print(f"  [dim]Code: {outcome.error_code}[/dim]")
    console.print()

    if outcome.status != "Up":
        raise typer.Exit(code=1)


@cli_app.command("uptime")
def uptime(
    system_id: int = typer.Argument(help="System id"),
):
    """Show uptime statistics for a system."""
    async def _stats():
        await _ensure_db()
        return await _aggregator().get_uptime_stats(system_id)

    from govmon.core.exceptions import MonitorError

    try:
        stats = _run_async(_stats())
    except MonitorError as exc:
        console.print(f"[yellow]{exc.message}[/yellow]")
        raise typer.Exit(code=1)

    state = "[red]DOWN[/red]" if stats.currently_down else "[green]UP[/green]"
    console.print(f"\n[bold]System {system_id}[/bold] {state}\n")
    console.print(f"  Uptime:          {stats.uptime_percentage:.2f}%")
    console.print(f"  Incidents:       {stats.total_incidents}")
    console.print(
        f"  Total downtime:  {stats.total_downtime_minutes} min ({stats.total_downtime_hours} h)\n"
    )

    if not stats.recent_incidents:
        console.print("[dim]No incidents in the window.[/dim]")
        return

    table = Table(title="Recent Incidents")
    table.add_column("Down", style="red")
    table.add_column("Up", style="green")
    table.add_column("Minutes", justify="right")
    table.add_column("Transition")
    table.add_column("Error", style="dim")
    for incident in stats.recent_incidents:
        table.add_row(
            incident.down_time.strftime("%Y-%m-%d %H:%M"),
            incident.up_time.strftime("%Y-%m-%d %H:%M") if incident.up_time else "ongoing",
            str(incident.duration_minutes) if incident.duration_minutes is not None else "—",
            incident.state_transition or "",
            incident.error_message or "",
        )
    console.print(table)


@cli_app.command("trend")
def trend(
    system_id: int = typer.Argument(help="System id"),
    days: int = typer.Option(7, "--days", min=1, max=365, help="Number of days"),
):
    """Show the daily uptime trend for a system."""
    async def _trend():
        await _ensure_db()
        return await _aggregator().get_uptime_trend(system_id, days)

    from govmon.core.exceptions import MonitorError

    try:
        result = _run_async(_trend())
    except MonitorError as exc:
        console.print(f"[yellow]{exc.message}[/yellow]")
        raise typer.Exit(code=1)

    table = Table(title=f"System {system_id} — last {days} day(s)")
    table.add_column("Date", style="cyan")
    table.add_column("Uptime", justify="right")
    table.add_column("Downtime (min)", justify="right")
    for point in result.points:
        style = "green" if point.uptime >= 99.0 else "yellow" if point.uptime >= 95.0 else "red"
        table.add_row(point.date, f"[{style}]{point.uptime:.2f}%[/{style}]", str(point.downtime))
    console.print(table)


@cli_app.command("add-system")
def add_system(
    name: str = typer.Option(..., "--name", help="Display name"),
    url: str = typer.Option(None, "--url", help="URL to probe (omit to register without probing)"),
    system_type: str = typer.Option(None, "--type", help="System type, e.g. 'portal'"),
    agency: str = typer.Option(None, "--agency", help="Owning agency name (created if missing)"),
):
    """Register a system to monitor."""
    async def _create():
        await _ensure_db()
        return await _store().create_system(
            name=name, url=url, system_type=system_type, agency_name=agency
        )

    system = _run_async(_create())
    console.print(f"\n[bold green]System registered.[/bold green]\n")
    console.print(f"  ID:   {system.id}")
    console.print(f"  Name: {system.name}")
    console.print(f"  URL:  {system.url or '[dim]none (not probed)[/dim]'}\n")


@cli_app.command("list-systems")
def list_systems():
    """List monitored systems with their cached status and uptime."""
    async def _list():
        await _ensure_db()
        return await _store().list_systems()

    systems = _run_async(_list())

    if not systems:
        console.print("[dim]No systems registered.[/dim]")
        return

    table = Table(title="Monitored Systems")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Name")
    table.add_column("URL", style="dim")
    table.add_column("Status")
    table.add_column("Uptime", justify="right")
    table.add_column("Last Check")

    for system in systems:
        style = _status_style(system.status)
        last_check = system.last_check.strftime("%Y-%m-%d %H:%M") if system.last_check else "never"
        table.add_row(
            str(system.id),
            system.name,
            system.url or "—",
            f"[{style}]{system.status}[/{style}]",
            f"{system.uptime_percentage:.2f}%",
            last_check,
        )

    console.print(table)


@cli_app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Run the API server and the check scheduler."""
    import uvicorn

    uvicorn.run("govmon.main:app", host=host, port=port)


def main():
    cli_app()


if __name__ == "__main__":
    main()
