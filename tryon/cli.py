"""
Virtual Try-On CLI Tool

Admin and smoke-test command-line interface for the try-on service.

Usage:
    tryon init-db                      - Create database tables
    tryon create-store NAME            - Onboard a store on trial (or a plan)
    tryon renew STORE_ID PLAN          - Apply a subscription renewal (via the API)
    tryon add-credits STORE_ID AMOUNT  - Add purchased extra credits (via the API)
    tryon balance STORE_ID             - Show a store's balance
    tryon generate STORE_ID PERSON GARMENT - Run a try-on through the API
    tryon serve                        - Start the API server
"""
import asyncio
import base64
import os
import sys
from pathlib import Path

import click
import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tryon import __version__
from tryon.config import EXTRA_CREDIT_PACKAGES, Plan, get_settings
from tryon.credits import BalanceView, LedgerStore, build_balance_view
from tryon.credits.eligibility import utcnow
from tryon.errors import InvalidInput
from tryon.images import decode_image

# Load environment variables
load_dotenv()

console = Console()

# API Configuration
API_BASE = os.getenv("API_BASE_URL", "http://localhost:8000")


async def _with_ledger(action):
    """Run ``action(ledger)`` against the configured database."""
    from tryon.database import close_db, get_session_factory, init_db

    await init_db()
    try:
        return await action(LedgerStore(get_session_factory()))
    finally:
        await close_db()


def _post_api(path: str, payload: dict, timeout: float = 30.0) -> dict:
    """POST to the running API server, exiting with its error on failure."""
    try:
        response = httpx.post(f"{API_BASE}/api/v1/{path}", json=payload, timeout=timeout)
    except httpx.RequestError as e:
        console.print(f"[red]✗ Could not connect to API server: {e}[/red]")
        sys.exit(1)

    if response.status_code != 200:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        message = data.get("error") or data.get("detail") or response.text
        console.print(f"[red]✗ {data.get('code') or response.status_code}: {message}[/red]")
        sys.exit(1)
    return response.json()


def _print_account(snapshot, title: str) -> None:
    _print_view(
        build_balance_view(
            snapshot,
            now=utcnow(),
            low_credits_threshold=get_settings().LOW_CREDITS_THRESHOLD,
        ),
        title,
    )


def _print_view(view: BalanceView, title: str) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Store", view.store_id)
    table.add_row("Plan", view.plan_name)
    table.add_row("Plan credits", str(view.plan_credits))
    table.add_row("Extra credits", str(view.extra_credits))
    table.add_row("Total", f"[bold]{view.total_credits}[/bold]")
    if view.trial_ends_at:
        table.add_row("Trial ends", f"{view.trial_ends_at:%Y-%m-%d} ({view.days_to_trial_end} days)")
    if view.plan_renews_at:
        table.add_row("Renews", f"{view.plan_renews_at:%Y-%m-%d} ({view.days_to_renew} days)")
    if view.is_blocked:
        table.add_row("Status", f"[red]Blocked: {view.block_reason.value}[/red]")
    elif view.is_low_credits:
        table.add_row("Status", "[yellow]Low credits[/yellow]")
    else:
        table.add_row("Status", "[green]Active[/green]")
    console.print(table)


@click.group()
@click.version_option(version=__version__, prog_name="Virtual Try-On")
def cli():
    """
    Virtual Try-On - credit-gated try-on image generation

    Manage store credits and run try-on requests.
    """
    pass


@cli.command("init-db")
def init_db_command():
    """Create all database tables."""
    from tryon.database import close_db, init_db

    async def run():
        await init_db()
        await close_db()

    asyncio.run(run())
    console.print("[green]✓[/green] Database initialized")


@cli.command("create-store")
@click.argument("name")
@click.option("--store-id", default=None, help="Use a specific store id")
@click.option(
    "--plan",
    type=click.Choice([p.value for p in Plan]),
    default=Plan.TRIAL.value,
    help="Starting plan",
)
def create_store(name: str, store_id: str | None, plan: str):
    """
    Onboard a store.

    Example:
        tryon create-store "Loja Fit" --plan starter
    """
    snapshot = asyncio.run(
        _with_ledger(lambda ledger: ledger.create_store(name=name, store_id=store_id, plan=Plan(plan)))
    )
    console.print(f"[green]✓[/green] Store created: [cyan]{snapshot.store_id}[/cyan]")
    _print_account(snapshot, name)


@cli.command()
@click.argument("store_id")
@click.argument("plan", type=click.Choice([p.value for p in Plan if p != Plan.TRIAL]))
def renew(store_id: str, plan: str):
    """Apply a subscription renewal through the API, resetting plan credits.

    Runs on the server so live balance streams see the change.
    """
    data = _post_api(f"stores/{store_id}/renew", {"plan": plan})
    console.print(f"[green]✓[/green] Renewed on {plan}")
    _print_view(BalanceView.model_validate(data), store_id)


@cli.command("add-credits")
@click.argument("store_id")
@click.argument("amount")
def add_credits(store_id: str, amount: str):
    """
    Add purchased extra credits.

    AMOUNT is a number or a package name (small, medium, large). The
    purchase is applied by the API server.
    """
    if amount in EXTRA_CREDIT_PACKAGES:
        payload = {"package": amount}
        credits = EXTRA_CREDIT_PACKAGES[amount]
    elif amount.isdigit() and int(amount) > 0:
        payload = {"amount": int(amount)}
        credits = int(amount)
    else:
        raise click.BadParameter(
            f"expected a positive number or one of {', '.join(EXTRA_CREDIT_PACKAGES)}",
            param_hint="AMOUNT",
        )

    data = _post_api(f"stores/{store_id}/credits", payload)
    console.print(f"[green]✓[/green] Added {credits} extra credits")
    _print_view(BalanceView.model_validate(data), store_id)


@cli.command()
@click.argument("store_id")
def balance(store_id: str):
    """Show a store's balance."""
    snapshot = asyncio.run(_with_ledger(lambda ledger: ledger.get_account(store_id)))
    if snapshot is None:
        console.print(f"[red]✗ Store not found: {store_id}[/red]")
        sys.exit(1)
    _print_account(snapshot, store_id)


@cli.command()
@click.argument("store_id")
@click.argument("person", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("garment", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(path_type=Path), default=Path("tryon-result.png"))
@click.option("--timeout", default=300.0, help="Request timeout in seconds")
def generate(store_id: str, person: Path, garment: Path, output: Path, timeout: float):
    """
    Run a try-on through the running API server.

    Example:
        tryon generate store-1 me.jpg shirt.png -o result.png
    """

    def encode(path: Path) -> str:
        try:
            return decode_image(path.read_bytes(), str(path)).to_data_url()
        except InvalidInput as e:
            raise click.BadParameter(e.detail) from e

    console.print(Panel(
        f"[bold]Store:[/bold] {store_id}\n[bold]Person:[/bold] {person}\n[bold]Garment:[/bold] {garment}",
        title="Try-on",
    ))

    payload = {
        "store_id": store_id,
        "client_image": encode(person),
        "clothing_image": encode(garment),
    }
    with console.status("Generating..."):
        data = _post_api("tryon", payload, timeout=timeout)

    _, _, encoded = data["result_image"].partition(",")
    output.write_bytes(base64.b64decode(encoded))
    console.print(f"[green]✓[/green] Saved to [cyan]{output}[/cyan]")
    console.print(f"{data['description']}")
    console.print(
        f"[dim]{data['provider']}:{data['model']} | "
        f"credits remaining: {data['credits_remaining']}[/dim]"
    )
    if not data["consumed"]:
        console.print("[yellow]⚠ Credit was not recorded for this generation[/yellow]")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind")
@click.option("--port", default=8000, help="Port to run server on")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str, port: int, reload: bool):
    """Start the API server."""
    import uvicorn

    console.print(Panel(
        f"[bold]API:[/bold] http://{host}:{port}\n[bold]Docs:[/bold] http://{host}:{port}/docs",
        title=f"Virtual Try-On v{__version__}",
    ))
    uvicorn.run("tryon.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
