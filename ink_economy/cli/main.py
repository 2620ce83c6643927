"""
CLI interface for the INK economy.

Operator access to tiers, pricing and individual account ledgers.
"""

import logging
import sys
from datetime import datetime
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ink_economy.config.loader import DEFAULT_POLICY, EconomyPolicy, load_economy_policy
from ink_economy.core.errors import EconomyError
from ink_economy.core.pricing import (
    MODEL_COST_TABLE,
    DetailLevel,
    ModelSelection,
    format_ink_balance,
)
from ink_economy.core.store import EconomyStore
from ink_economy.core.tiers import tier_label
from ink_economy.storage.db import DEFAULT_DB_PATH
from ink_economy.storage.models import TransactionType
from ink_economy.storage.repository import LedgerRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_REJECTED = 2  # deduction refused for balance or tier


class _Settings:
    db_path: str = DEFAULT_DB_PATH
    policy_path: Optional[str] = None


settings = _Settings()


def _load_policy() -> EconomyPolicy:
    if settings.policy_path is None:
        return DEFAULT_POLICY
    return load_economy_policy(settings.policy_path)


def get_store() -> EconomyStore:
    """Build a store over the configured database and policy."""
    repository = LedgerRepository(settings.db_path)
    repository.initialize()
    return EconomyStore(repository, _load_policy())


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the ledger database"),
    policy: Optional[str] = typer.Option(
        None, "--policy", "-p", help="YAML economy policy overriding the defaults"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
):
    """INK economy CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings.db_path = db
    settings.policy_path = policy
    if ctx.invoked_subcommand is None:
        console.print("INK Economy - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    try:
        initialize_schema(settings.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def tiers():
    """Show the subscription tiers."""
    policy = _load_policy()
    table = Table(title="Subscription Tiers")
    table.add_column("Tier")
    table.add_column("Monthly INK", justify="right")
    table.add_column("Carry cap", justify="right")
    table.add_column("Models")
    table.add_column("Price", justify="right")
    for tier, features in policy.catalog.tiers.items():
        table.add_row(
            tier.value,
            str(features.monthly_ink),
            str(policy.rollover_cap(tier)),
            ", ".join(m for m in MODEL_COST_TABLE.models if m in features.models),
            f"${features.price_monthly_usd:,.2f}/mo",
        )
    console.print(table)


@app.command()
def models():
    """Show generation models and their INK cost."""
    table = Table(title="Generation Models")
    table.add_column("Model")
    table.add_column("INK", justify="right")
    table.add_column("Time")
    table.add_column("Quality")
    table.add_column("Min tier")
    for config in MODEL_COST_TABLE.models.values():
        low, high = config.estimated_time_seconds
        table.add_row(
            config.id, str(config.base_ink_cost), f"{low}-{high}s", config.quality,
            config.min_tier.value,
        )
    console.print(table)


@app.command()
def balance(user_id: str = typer.Argument(..., help="Account identifier")):
    """Show an account's stored balance."""
    try:
        store = get_store()
        if store.repository.fetch_snapshot(user_id) is None:
            console.print(f"[yellow]No ledger stored for {user_id}[/]")
            sys.exit(EXIT_CODE_FAIL)
        state = store.load_engine(user_id).state
    except EconomyError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]{user_id}[/bold] ({tier_label(state.tier)})")
    console.print(format_ink_balance(state.balance, state.tier))
    console.print(f"Streak: {state.streak_days} days")
    console.print(f"Renews: {state.renewal_date.isoformat()}")
    if state.pending_tier is not None:
        console.print(f"Pending change to: {tier_label(state.pending_tier)}")


@app.command()
def tick(
    user_id: str = typer.Argument(..., help="Account identifier"),
    at: Optional[datetime] = typer.Option(None, "--at", help="Time to tick at (default: now)"),
):
    """Run the daily login tick for an account."""
    try:
        result = get_store().transact(user_id, lambda engine: engine.apply_daily_tick(at))
    except EconomyError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Streak: {result.streak_days} days (+{result.streak_bonus} INK)")
    if result.rolled_over:
        console.print(
            f"Rolled over: carried {result.carried}, forfeited {result.forfeited}, "
            f"granted {result.granted}"
        )


@app.command()
def quote(
    user_id: str = typer.Argument(..., help="Account identifier"),
    model: str = typer.Argument("auto", help="Model id, or 'auto'"),
    detail: DetailLevel = typer.Option(
        DetailLevel.STANDARD, "--detail", "-d", help="Detail level for auto selection"
    ),
    control: List[str] = typer.Option([], "--control", "-c", help="Control tool (repeatable)"),
):
    """Quote a generation for an account without charging it."""
    try:
        selection = ModelSelection.auto(detail) if model == "auto" else ModelSelection.explicit(model)
        result = get_store().load_engine(user_id).gate().quote_generation(selection, control)
    except (EconomyError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_REJECTED)

    console.print(f"Model: {result.model}")
    console.print(f"Cost: {result.cost} INK")
    if result.affordable:
        console.print("[green]Affordable[/]")
    else:
        console.print(f"[yellow]Short by {result.shortfall} INK[/]")


@app.command()
def deduct(
    user_id: str = typer.Argument(..., help="Account identifier"),
    amount: int = typer.Argument(..., help="INK to deduct"),
    type: str = typer.Option(TransactionType.GENERATION.value, "--type", "-t"),
):
    """Deduct INK from an account."""
    try:
        result = get_store().transact(user_id, lambda engine: engine.deduct_ink(amount, type))
    except (EconomyError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.success:
        console.print(f"[red]Rejected:[/] short by {result.shortfall} INK")
        sys.exit(EXIT_CODE_REJECTED)
    console.print(f"[green]✓[/] Deducted {amount} INK, balance {result.new_balance}")


@app.command()
def credit(
    user_id: str = typer.Argument(..., help="Account identifier"),
    amount: int = typer.Argument(..., help="INK to credit"),
    type: str = typer.Option(TransactionType.PURCHASE.value, "--type", "-t"),
):
    """Credit INK to an account."""
    try:
        new_balance = get_store().transact(user_id, lambda engine: engine.credit_ink(amount, type))
    except (EconomyError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Credited {amount} INK, balance {new_balance}")


if __name__ == "__main__":
    app()
