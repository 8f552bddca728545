"""
CLI interface for the try-on ledger.

Provides command-line access to the ledger and the try-on pipeline.
"""

import asyncio
import base64
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from supabase import create_client

from tryon_ledger.config.loader import AuthProvider, StorageBackend, TryOnConfig, load_config
from tryon_ledger.core.error_handler import ErrorClassifier
from tryon_ledger.core.errors import TryOnError
from tryon_ledger.core.image_validator import is_remote_reference
from tryon_ledger.core.ledger import GemLedger
from tryon_ledger.core.orchestrator import TryOnOrchestrator
from tryon_ledger.core.rate_limiter import RateLimiter
from tryon_ledger.sdk.identity import IdentityProvider, StaticIdentityProvider, SupabaseIdentityProvider
from tryon_ledger.sdk.inference_client import PredictionClient
from tryon_ledger.sdk.object_store import LocalObjectStore, ObjectStore, SupabaseObjectStore
from tryon_ledger.storage.db import DEFAULT_DB_PATH
from tryon_ledger.storage.repository import JobRepository, LedgerRepository, initialize_schema

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

API_TOKEN_ENV = "REPLICATE_API_TOKEN"
DEFAULT_CONFIG_PATH = "tryon.yaml"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Try-on ledger CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
        force=True,
    )
    if ctx.invoked_subcommand is None:
        console.print("Try-on ledger - Use --help to see available commands")


@app.command()
def init(db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")):
    """Initialize the ledger database."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")):
    """Check whether the ledger database is initialized."""
    if not Path(db).exists():
        console.print(f"[yellow]![/] No database at {db}. Run `tryon-ledger init` first.")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Ledger database found at {db}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def grant(
    identity: str = typer.Argument(..., help="Account identity"),
    amount: int = typer.Argument(..., help="Initial gem balance"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
):
    """Open an account with an initial gem balance."""
    try:
        ledger = GemLedger(LedgerRepository(db))
        ledger.open_account(identity, amount)
        console.print(f"[green]✓[/] Opened account {identity} with {amount} gems")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(
    identity: str = typer.Argument(..., help="Account identity"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
):
    """Show an account's gem balance."""
    try:
        gems = GemLedger(LedgerRepository(db)).balance(identity)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"{identity}: [bold]{gems}[/] gems")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ledger(
    identity: str = typer.Argument(..., help="Account identity"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of transactions to show"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
):
    """List an account's gem transactions, newest first."""
    try:
        transactions = GemLedger(LedgerRepository(db)).transactions(identity, limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not transactions:
        console.print(f"[dim]No transactions for {identity}.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Gem transactions for {identity}")
    table.add_column("Time")
    table.add_column("Kind")
    table.add_column("Amount", justify="right")
    table.add_column("Job")
    for tx in transactions:
        color = "red" if tx.amount < 0 else "green"
        table.add_row(
            tx.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            tx.kind.value,
            f"[{color}]{tx.amount:+d}[/]",
            tx.job_id,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def tryon(
    model: str = typer.Option(..., "--model", "-m", help="Model image path or URL"),
    clothing: List[str] = typer.Option([], "--clothing", "-c", help="Clothing item as category=path_or_url"),
    token: str = typer.Option(..., "--token", "-t", help="Bearer token"),
    quality: str = typer.Option("standard", "--quality", "-q", help="standard or hd"),
    edit: Optional[str] = typer.Option(None, "--edit", "-e", help="Edit instruction (switches to edit mode)"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="YAML configuration file"),
):
    """Run one try-on (or edit) job and print the result."""
    try:
        config = load_config(config_path)
        payload = {
            "model_image": _image_reference(model),
            "clothing_images": [_clothing_item(value) for value in clothing],
            "quality": quality,
            "edit_mode": edit is not None,
            "edit_prompt": edit,
        }
        orchestrator = _build_orchestrator(config, require_inference=True)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    status_code, body = asyncio.run(orchestrator.handle(token, payload))
    console.print_json(data=body)
    sys.exit(EXIT_CODE_PASS if status_code == 200 else EXIT_CODE_FAIL)


@app.command()
def job(
    job_id: str = typer.Argument(..., help="Job id"),
    token: str = typer.Option(..., "--token", "-t", help="Bearer token"),
    config_path: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="YAML configuration file"),
):
    """Show the status of one of your jobs."""
    try:
        orchestrator = _build_orchestrator(load_config(config_path), require_inference=False)
        view = asyncio.run(orchestrator.job_status(token, job_id))
    except TryOnError as e:
        response = ErrorClassifier().classify(e)
        console.print(f"[red]{response.kind.value}:[/] {response.user_message}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print_json(data=view.to_dict())
    sys.exit(EXIT_CODE_PASS)


def _image_reference(value: str) -> str:
    """URLs pass through; local files are read and base64 encoded."""
    if is_remote_reference(value):
        return value
    path = Path(value)
    if not path.is_file():
        raise FileNotFoundError(f"Image file not found: {value}")
    return base64.b64encode(path.read_bytes()).decode("ascii")


def _clothing_item(value: str) -> dict:
    category, sep, reference = value.partition("=")
    if not sep or not category or not reference:
        raise ValueError(f"Clothing must be given as category=path_or_url, got: {value}")
    return {
        "category": category.strip().lower(),
        "image": _image_reference(reference.strip()),
        "name": Path(reference).stem if not is_remote_reference(reference) else None,
    }


def _build_orchestrator(config: TryOnConfig, require_inference: bool) -> TryOnOrchestrator:
    """Wire the pipeline from configuration."""
    db_path = config.database_path
    initialize_schema(db_path)

    supabase = None
    if config.storage.backend is StorageBackend.SUPABASE or config.auth.provider is AuthProvider.SUPABASE:
        supabase = create_client(config.storage.supabase_url, config.storage.supabase_key)

    object_store: ObjectStore
    if config.storage.backend is StorageBackend.SUPABASE:
        object_store = SupabaseObjectStore(supabase, config.storage.bucket)
    else:
        object_store = LocalObjectStore(config.storage.base_dir, config.storage.public_url)

    identity_provider: IdentityProvider
    if config.auth.provider is AuthProvider.SUPABASE:
        identity_provider = SupabaseIdentityProvider(supabase)
    else:
        identity_provider = StaticIdentityProvider(config.auth.tokens)

    client = None
    api_key = config.inference.api_key or os.environ.get(API_TOKEN_ENV)
    if api_key:
        client = PredictionClient(
            api_key=api_key,
            model=config.inference.model,
            base_url=config.inference.base_url,
            wait_seconds=config.inference.wait_seconds,
            request_timeout=config.inference.request_timeout,
            retry_policy=config.retry.policy(),
        )
    elif require_inference:
        raise ValueError(f"No inference API key: set inference.api_key or {API_TOKEN_ENV}")

    ledger = GemLedger(LedgerRepository(db_path))
    return TryOnOrchestrator(
        identity_provider=identity_provider,
        ledger=ledger,
        jobs=JobRepository(db_path),
        object_store=object_store,
        client=client,
        rate_limiter=RateLimiter(),
        classifier=ErrorClassifier(ledger),
        pricing=config.pricing,
        rate_limit=config.rate_limit.limit,
        rate_window_seconds=config.rate_limit.window_seconds,
        poll_interval=config.inference.poll_interval,
        poll_timeout=config.inference.poll_timeout,
    )


if __name__ == "__main__":
    app()
