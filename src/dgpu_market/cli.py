"""dGPU market CLI for operators and local testing."""

import asyncio
from typing import Optional
import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.live import Live

from .config import get_settings
from .log import setup_logging

app = typer.Typer(name="dgpu-market", help="dGPU Market - rent AI agents by the hour")
console = Console()


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


@app.callback()
def main(log_level: str = typer.Option("WARNING", help="Log level")):
    setup_logging(log_level)


def _services():
    from .services import build_services
    return build_services()


def _format_remaining(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


# ============================================================
# Setup Commands
# ============================================================

@app.command()
def setup():
    """Create database indexes."""
    from .db import setup_indexes, close_db

    async def _setup():
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task("Creating indexes...", total=None)
            await setup_indexes()
        await close_db()
        console.print("[bold green]Setup complete![/]")

    run_async(_setup())


@app.command()
def seed():
    """Register the built-in agents."""

    async def _seed():
        services = _services()
        created = await services.catalog.seed_defaults()
        if not created:
            console.print("[yellow]Catalog already seeded.[/]")
            return

        table = Table(title="Seeded Agents")
        table.add_column("Slug", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Category")
        table.add_column("USD/hour", justify="right")
        for agent in created:
            table.add_row(agent.slug, agent.name, agent.category, f"${agent.price:.2f}")
        console.print(table)

    run_async(_seed())


# ============================================================
# Pricing Commands
# ============================================================

@app.command()
def price():
    """Show the live oracle price and the cached fallback."""
    from .cache import PRICE_CACHE_KEY

    async def _price():
        services = _services()
        live = await services.oracle.get_token_price_usd()
        cached = services.cache.get(PRICE_CACHE_KEY)

        live_str = f"${live:.7f}" if live > 0 else "[red]unavailable[/]"
        cached_str = f"${cached:.7f}" if cached else "[yellow]none[/]"
        console.print(Panel(
            f"[bold]Oracle:[/] {live_str}\n[bold]Cached:[/] {cached_str}",
            title="dGPU / USD",
        ))

    run_async(_price())


@app.command()
def quote(
    agent: str = typer.Argument(..., help="Agent slug"),
    hours: int = typer.Option(1, min=1, help="Rental length in hours"),
):
    """Quote the dGPU cost of renting an agent."""
    from .exceptions import PricingUnavailableError

    async def _quote():
        services = _services()
        try:
            q = await services.calculator.quote(agent, hours)
        except PricingUnavailableError as e:
            console.print(f"[red]{e}[/]")
            raise typer.Exit(1)

        console.print(Panel(
            f"""[bold]Agent:[/] {q.agent_slug}
[bold]Hours:[/] {q.hours}
[bold]Rate:[/] ${q.usd_rate:.2f}/hour (${q.usd_total:.2f} total)
[bold]dGPU price:[/] ${q.token_price_usd:.7f} ({q.price_source.value})
[bold]Amount:[/] {q.dgpu_amount:.4f} dGPU""",
            title="[green]Rental Quote[/]",
        ))

    run_async(_quote())


# ============================================================
# Rental Commands
# ============================================================

@app.command()
def rent(
    agent: str = typer.Argument(..., help="Agent slug"),
    hours: int = typer.Option(1, min=1, help="Rental length in hours"),
    keypair: str = typer.Option("~/.config/solana/id.json", help="Solana keypair file"),
):
    """Pay for and record a rental using a local keypair."""
    from .exceptions import PricingUnavailableError, TransferError, RentalPersistenceError
    from .payments.transfer import KeypairWallet

    async def _rent():
        services = _services()
        wallet = KeypairWallet.from_file(keypair)

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task("Waiting for transfer confirmation...", total=None)
                rental = await services.flow.rent(wallet, agent, hours)
        except PricingUnavailableError as e:
            console.print(f"[red]Pricing unavailable:[/] {e}. Nothing was charged.")
            raise typer.Exit(1)
        except TransferError as e:
            console.print(f"[red]Transfer failed:[/] {e}. Nothing was charged.")
            raise typer.Exit(1)
        except RentalPersistenceError as e:
            console.print(Panel(
                f"""Payment was submitted but the rental was NOT recorded.
[bold]Transaction:[/] {e.tx_signature}
[bold]Reason:[/] {e.reason}

Keep this signature and contact support.""",
                title="[red]Rental Not Recorded[/]",
            ))
            raise typer.Exit(2)

        console.print(Panel(
            f"""[bold]Agent:[/] {rental.agent_slug}
[bold]Wallet:[/] {rental.user_wallet}
[bold]Start:[/] {rental.start_time.isoformat()}
[bold]End:[/] {rental.end_time.isoformat()}
[bold]Transaction:[/] {rental.tx_signature}""",
            title="[green]Rental Active[/]",
        ))

    run_async(_rent())


@app.command()
def status(
    wallet: str = typer.Argument(..., help="Renter wallet address"),
    agent: str = typer.Argument(..., help="Agent slug"),
):
    """Show whether a rental is active and how long is left."""

    async def _status():
        services = _services()
        view = await services.flow.status(wallet, agent)
        color = {"active": "green", "expired": "yellow", "none": "red"}[view.status.value]
        body = f"[bold]Status:[/] [{color}]{view.status.value}[/]"
        if view.rental:
            body += (
                f"\n[bold]Remaining:[/] {_format_remaining(view.remaining_seconds)}"
                f"\n[bold]Ends:[/] {view.rental.end_time.isoformat()}"
            )
        console.print(Panel(body, title=f"Rental: {agent}"))

    run_async(_status())


@app.command()
def countdown(
    wallet: str = typer.Argument(..., help="Renter wallet address"),
    agent: str = typer.Argument(..., help="Agent slug"),
):
    """Live countdown until the rental expires."""
    from .rentals.countdown import Countdown

    async def _countdown():
        services = _services()
        rental = await services.rentals.latest(wallet, agent)
        if rental is None:
            console.print("[red]No rental found.[/]")
            raise typer.Exit(1)

        timer = Countdown(rental.end_time, services.clock)
        with Live(console=console, refresh_per_second=4) as live:
            async for left in timer.ticks():
                live.update(f"[bold]{agent}[/] {_format_remaining(left)}")
        console.print("[yellow]Rental expired. Rent again to keep chatting.[/]")

    run_async(_countdown())


@app.command()
def config():
    """Show the active pricing configuration."""
    settings = get_settings()
    table = Table(title="Agent Rates (USD/hour)")
    table.add_column("Agent", style="cyan")
    table.add_column("Rate", justify="right")
    for slug, rate in sorted(settings.agent_prices_usd.items()):
        table.add_row(slug, f"${rate:.2f}")
    table.add_row("[dim](default)[/]", f"${settings.default_rate_usd:.2f}")
    console.print(table)


if __name__ == "__main__":
    app()
