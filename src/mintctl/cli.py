"""CLI entry point for mintctl.

Provides commands:
  - upload: Upload assets and register them in a config account
  - verify: Re-check cached items against the config account
  - create: Initialize the candy machine for a fully registered cache
  - update: Change price and/or go-live date
  - mint: Mint one token
  - withdraw: Withdraw config rent (or sweep a key list)
  - show: Display on-chain state for a cache
  - config: Manage stored IPFS credentials

Options shared by every command (``--env``, ``--keypair``, ``--cache-name``,
``--rpc-url``, ``--log-level``, ``--cache-dir``) go before the command name::

    mintctl -e devnet -k ~/.config/solana/id.json upload ./assets
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from mintctl.assets import discover_items
from mintctl.cache import CacheStore
from mintctl.config import (
    SERVICE_NAME,
    get_ipfs_credentials,
    load_keypair,
    load_upload_config,
    remove_ipfs_credentials,
    resolve_rpc_url,
    set_ipfs_credentials,
)
from mintctl.constants import CACHE_PATH, LAMPORTS_PER_SOL
from mintctl.exceptions import LedgerFatalError, MintctlError
from mintctl.models import PassReport, StorageKind

logger = logging.getLogger(__name__)

EXIT_INCOMPLETE = 2

app = typer.Typer(
    help="mintctl - Upload assets and run a candy machine on Solana",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage stored credentials")
app.add_typer(config_app, name="config")


@dataclass
class CliState:
    """Options shared by every command."""

    env: str
    keypair: Path
    cache_name: str
    rpc_url: str | None
    cache_dir: Path

    @property
    def store(self) -> CacheStore:
        return CacheStore(self.cache_dir)


@app.callback()
def app_callback(
    ctx: typer.Context,
    env: Annotated[
        str,
        typer.Option("--env", "-e", help="Solana cluster env name (devnet, testnet, mainnet-beta)"),
    ] = "devnet",
    keypair: Annotated[
        Path,
        typer.Option("--keypair", "-k", help="Solana wallet location"),
    ] = Path("~/.config/solana/id.json"),
    cache_name: Annotated[
        str,
        typer.Option("--cache-name", "-c", help="Cache file name"),
    ] = "temp",
    rpc_url: Annotated[
        Optional[str],
        typer.Option("--rpc-url", "-r", help="Custom RPC url (recommended for large uploads)"),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option("--log-level", "-l", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
    ] = "INFO",
    cache_dir: Annotated[
        Path,
        typer.Option("--cache-dir", help="Directory holding cache files"),
    ] = Path(CACHE_PATH),
) -> None:
    """Set up logging and shared options."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    ctx.obj = CliState(
        env=env,
        keypair=keypair,
        cache_name=cache_name,
        rpc_url=rpc_url,
        cache_dir=cache_dir,
    )


def _fail(exc: Exception) -> typer.Exit:
    console.print(f"[red]Error:[/red] {exc}")
    return typer.Exit(code=1)


def _ledger_components(state: CliState):
    """Build the keypair, ledger client, program and submitter for *state*.

    Ledger tunables (attempts, confirm timeout, backoff) come from
    ``config/upload_config.json`` like they do for ``upload``.
    """
    from mintctl.ledger import CandyMachineProgram, SolanaLedgerClient, TransactionSubmitter

    payer = load_keypair(state.keypair)
    config = load_upload_config()
    ledger = SolanaLedgerClient(resolve_rpc_url(state.env, state.rpc_url))
    submitter = TransactionSubmitter(ledger, config)
    return payer, ledger, CandyMachineProgram(), submitter


def _operator(state: CliState):
    from mintctl.lifecycle import CandyMachineOperator

    payer, ledger, program, submitter = _ledger_components(state)
    operator = CandyMachineOperator(
        store=state.store,
        cache_name=state.cache_name,
        env=state.env,
        program=program,
        submitter=submitter,
        ledger=ledger,
        payer=payer,
    )
    return operator, ledger


def _run_operation(state: CliState, operation):
    """Run ``operation(operator)`` and close the ledger client afterwards."""
    operator, ledger = _operator(state)

    async def _run():
        try:
            return await operation(operator)
        finally:
            await ledger.close()

    return asyncio.run(_run())


# ---------------------------------------------------------------------------
# upload
# ---------------------------------------------------------------------------


@app.command()
def upload(
    ctx: typer.Context,
    directory: Annotated[
        Path,
        typer.Argument(help="Directory containing images named from 0-n"),
    ],
    number: Annotated[
        Optional[int],
        typer.Option("--number", "-n", help="Number of images to upload (config capacity)"),
    ] = None,
    storage: Annotated[
        Optional[str],
        typer.Option("--storage", "-s", help="Database to use for storage (arweave, ipfs, aws)"),
    ] = None,
    ipfs_project_id: Annotated[
        Optional[str],
        typer.Option("--ipfs-infura-project-id", help="Infura IPFS project id (required if using IPFS)"),
    ] = None,
    ipfs_secret: Annotated[
        Optional[str],
        typer.Option("--ipfs-infura-secret", help="Infura IPFS secret key (required if using IPFS)"),
    ] = None,
    aws_bucket: Annotated[
        Optional[str],
        typer.Option("--aws-s3-bucket", help="(existing) AWS S3 bucket name (required if using aws)"),
    ] = None,
    retain_authority: Annotated[
        Optional[bool],
        typer.Option("--retain-authority/--no-retain-authority", help="Retain authority to update metadata"),
    ] = None,
    mutable: Annotated[
        Optional[bool],
        typer.Option("--mutable/--no-mutable", help="Metadata will be editable"),
    ] = None,
    chunk_size: Annotated[
        Optional[int],
        typer.Option("--chunk-size", help="Items planned per chunk"),
    ] = None,
    concurrency: Annotated[
        Optional[int],
        typer.Option("--concurrency", help="Max uploads in flight"),
    ] = None,
    chunks_per_pass: Annotated[
        Optional[int],
        typer.Option("--chunks-per-pass", help="Upload at most this many chunks per pass"),
    ] = None,
    max_passes: Annotated[
        Optional[int],
        typer.Option("--max-passes", help="Stop after this many passes (default: until done)"),
    ] = None,
    verify: Annotated[
        Optional[bool],
        typer.Option("--verify/--no-verify", help="Check the config account on every scan"),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", help="Upload tunables JSON (default: config/upload_config.json)"),
    ] = None,
) -> None:
    """Upload assets to storage and register their links on chain.

    Reruns passes until every item is registered.  Safe to interrupt and
    rerun: committed items are never uploaded or written twice.
    """
    from mintctl.ledger import CandyMachineProgram, SolanaLedgerClient, TransactionSubmitter
    from mintctl.reconcile import ReconciliationLoop
    from mintctl.upload import BatchScheduler, StorageSettings, UploadProgressTracker, build_storage

    state: CliState = ctx.obj
    try:
        assets = discover_items(directory, number)
        config = load_upload_config(
            config_path,
            storage=storage,
            chunk_size=chunk_size,
            max_concurrency=concurrency,
            chunks_per_pass=chunks_per_pass,
            verify_on_chain=verify,
            is_mutable=mutable,
            retain_authority=retain_authority,
        )
        payer = load_keypair(state.keypair)
        rpc_url = resolve_rpc_url(state.env, state.rpc_url)
        if config.storage == StorageKind.IPFS:
            ipfs_project_id, ipfs_secret = get_ipfs_credentials(ipfs_project_id, ipfs_secret)
        storage_backend = build_storage(
            StorageSettings(
                kind=config.storage,
                env=state.env,
                ipfs_project_id=ipfs_project_id,
                ipfs_secret=ipfs_secret,
                aws_bucket=aws_bucket,
            )
        )
    except MintctlError as exc:
        raise _fail(exc) from None

    console.print(
        Panel(
            f"Beginning the upload for [bold]{len(assets)}[/bold] (png+json) pairs\n"
            f"Storage: {config.storage.value} | Env: {state.env} | "
            f"Chunk: {config.chunk_size} | Concurrency: {config.max_concurrency}",
            title="Upload Pipeline",
        )
    )

    progress = UploadProgressTracker()
    ledger = SolanaLedgerClient(rpc_url)
    loop = ReconciliationLoop(
        store=state.store,
        cache_name=state.cache_name,
        env=state.env,
        scheduler=BatchScheduler(storage_backend, config, progress=progress),
        program=CandyMachineProgram(),
        submitter=TransactionSubmitter(ledger, config),
        ledger=ledger,
        payer=payer,
        config=config,
        progress=progress,
    )

    async def _run_passes() -> tuple[PassReport, int]:
        passes = 0
        stalled = 0
        try:
            while True:
                passes += 1
                report = await loop.run_pass(assets)
                if report.complete:
                    return report, passes
                if max_passes is not None and passes >= max_passes:
                    return report, passes
                if report.uploaded or report.registered or report.corrected:
                    stalled = 0
                elif not report.failed or report.only_fatal_failures:
                    logger.warning(
                        "Pass %d made no progress and no failure can clear on retry, stopping",
                        passes,
                    )
                    return report, passes
                else:
                    stalled += 1
                    delay = min(config.pass_backoff_seconds * 2 ** (stalled - 1), 60.0)
                    logger.warning(
                        "Pass %d made no progress (%d item(s) failed transiently), "
                        "retrying in %.0fs",
                        passes,
                        len(set(report.failed) - report.fatal),
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.warning("upload was not successful, rerunning")
        finally:
            await storage_backend.aclose()
            await ledger.close()

    try:
        report, passes = asyncio.run(_run_passes())
    except LedgerFatalError as exc:
        console.print(f"[red]Transaction rejected:[/red] {exc.reason}")
        console.print("[dim]Progress so far is saved in the cache.[/dim]")
        raise typer.Exit(code=1) from None
    except MintctlError as exc:
        raise _fail(exc) from None

    _print_pass_report(report, passes)
    if not report.complete:
        console.print("[yellow]not all images have been uploaded, rerun this step.[/yellow]")
        raise typer.Exit(code=EXIT_INCOMPLETE)


def _print_pass_report(report: PassReport, passes: int) -> None:
    summary_table = Table(title="Upload Summary")
    summary_table.add_column("Metric", style="bold")
    summary_table.add_column("Count", justify="right")

    summary_table.add_row("Total items", str(report.total))
    summary_table.add_row("Passes", str(passes))
    summary_table.add_row("Uploaded (last pass)", f"[green]{report.uploaded}[/green]")
    summary_table.add_row("Registered (last pass)", f"[green]{report.registered}[/green]")
    summary_table.add_row("Corrected from chain", str(report.corrected))
    summary_table.add_row("Failed", f"[red]{len(report.failed)}[/red]")
    summary_table.add_row("Remaining", f"[yellow]{report.remaining}[/yellow]")
    console.print(Panel(summary_table, title=f"Upload {report.state}"))

    if report.failed:
        failed_table = Table(title="Failed Items")
        failed_table.add_column("Index", justify="right")
        failed_table.add_column("Reason", style="red")
        for index, reason in sorted(report.failed.items())[:20]:
            failed_table.add_row(str(index), reason)
        console.print(failed_table)


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------


@app.command()
def verify(ctx: typer.Context) -> None:
    """Re-check every cached item against the config account and fix the cache."""
    from mintctl.ledger import SolanaLedgerClient
    from mintctl.reconcile import verify_cache

    state: CliState = ctx.obj

    async def _run():
        ledger = SolanaLedgerClient(resolve_rpc_url(state.env, state.rpc_url))
        try:
            return await verify_cache(state.store, state.cache_name, state.env, ledger)
        finally:
            await ledger.close()

    try:
        doc, corrected = asyncio.run(_run())
    except MintctlError as exc:
        raise _fail(exc) from None

    if corrected:
        console.print(
            f"[yellow]{len(corrected)} item(s) corrected:[/yellow] {corrected[:20]}"
        )
    if doc.is_fully_on_chain:
        console.print(f"[green]All {len(doc.items)} items are registered on chain.[/green]")
    else:
        pending = [i for i in doc.indexes() if not doc.get(i).on_chain]
        console.print(
            f"[yellow]{len(pending)} item(s) not registered; rerun 'mintctl upload'.[/yellow]"
        )
        raise typer.Exit(code=EXIT_INCOMPLETE)


# ---------------------------------------------------------------------------
# create / update / mint
# ---------------------------------------------------------------------------


@app.command()
def create(
    ctx: typer.Context,
    price: Annotated[
        str,
        typer.Option("--price", "-p", help="Price denominated in SOL or spl-token"),
    ] = "1",
    spl_token: Annotated[
        Optional[str],
        typer.Option("--spl-token", "-t", help="SPL token used to price NFT mint. To use SOL leave this empty."),
    ] = None,
    spl_token_account: Annotated[
        Optional[str],
        typer.Option("--spl-token-account", "-a", help="SPL token account that receives mint payments"),
    ] = None,
    sol_treasury_account: Annotated[
        Optional[str],
        typer.Option("--sol-treasury-account", "-s", help="SOL account that receives mint payments"),
    ] = None,
    go_live: Annotated[
        Optional[str],
        typer.Option("--go-live", help="Go-live date: 'now' or ISO-8601"),
    ] = None,
) -> None:
    """Create the candy machine for a fully registered cache."""
    state: CliState = ctx.obj
    try:
        address = _run_operation(
            state,
            lambda op: op.create(
                price,
                spl_token=spl_token,
                spl_token_account=spl_token_account,
                sol_treasury_account=sol_treasury_account,
                go_live=go_live,
            ),
        )
    except MintctlError as exc:
        raise _fail(exc) from None
    console.print(f"[green]✓[/green] Candy machine pubkey: [bold]{address}[/bold]")


@app.command()
def update(
    ctx: typer.Context,
    price: Annotated[
        Optional[str],
        typer.Option("--price", "-p", help="New price"),
    ] = None,
    go_live: Annotated[
        Optional[str],
        typer.Option("--go-live", help="New go-live date: 'now' or ISO-8601"),
    ] = None,
) -> None:
    """Update the candy machine's price and/or go-live date."""
    state: CliState = ctx.obj
    try:
        _run_operation(state, lambda op: op.update(price=price, go_live=go_live))
    except MintctlError as exc:
        raise _fail(exc) from None
    console.print("[green]✓[/green] Candy machine updated")


@app.command()
def mint(ctx: typer.Context) -> None:
    """Mint one token from the candy machine."""
    state: CliState = ctx.obj
    try:
        token = _run_operation(state, lambda op: op.mint_one_token())
    except MintctlError as exc:
        raise _fail(exc) from None
    console.print(f"[green]✓[/green] Minted token [bold]{token}[/bold]")


# ---------------------------------------------------------------------------
# withdraw
# ---------------------------------------------------------------------------


@app.command()
def withdraw(
    ctx: typer.Context,
    dry: Annotated[
        bool,
        typer.Option("--dry", "-d", help="Show withdraw amount without withdrawing"),
    ] = False,
    key_list: Annotated[
        Optional[Path],
        typer.Option("--key-list", help="getProgramAccounts JSON; sweep every config listed"),
    ] = None,
    min_balance: Annotated[
        float,
        typer.Option("--min-balance", help="Sweep only configs holding more than this many SOL"),
    ] = 10.0,
    charity: Annotated[
        Optional[str],
        typer.Option("--charity", help="Address receiving a share of each withdrawal"),
    ] = None,
    charity_percent: Annotated[
        int,
        typer.Option("--charity-percent", help="Percent forwarded to --charity (0-100)"),
    ] = 0,
) -> None:
    """Withdraw the config account's funds (or sweep a key list)."""
    state: CliState = ctx.obj
    if not 0 <= charity_percent <= 100:
        console.print("[red]Error:[/red] Charity percentage needs to be between 0 and 100")
        raise typer.Exit(code=1)

    try:
        if key_list is None:
            lamports = _run_operation(
                state,
                lambda op: op.withdraw(dry, charity=charity, charity_percent=charity_percent),
            )
            verb = "Withdrawable" if dry else "Withdrew"
            console.print(f"{verb}: [bold]{lamports / LAMPORTS_PER_SOL:.9f}[/bold] SOL")
            return

        report = _run_operation(
            state,
            lambda op: op.sweep_withdraw(
                key_list,
                min_balance=int(min_balance * LAMPORTS_PER_SOL),
                charity=charity,
                charity_percent=charity_percent,
                dry=dry,
            ),
        )
    except MintctlError as exc:
        raise _fail(exc) from None

    table = Table(title="Dry Run" if dry else "Sweep Withdraw")
    table.add_column("Config", style="cyan", no_wrap=True)
    table.add_column("SOL", justify="right")
    for address, lamports in report.withdrawn.items():
        table.add_row(address, f"{lamports / LAMPORTS_PER_SOL:.4f}")
    console.print(table)
    console.print(
        f"{len(report.withdrawn)} of {report.scanned} configs, "
        f"{report.total_lamports / LAMPORTS_PER_SOL:.4f} SOL; "
        f"{len(report.skipped)} skipped, {len(report.errors)} errors"
    )
    if report.donated:
        console.print(f"Forwarded {report.donated / LAMPORTS_PER_SOL:.4f} SOL to {charity}")
    if report.errors:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# show
# ---------------------------------------------------------------------------


@app.command()
def show(ctx: typer.Context) -> None:
    """Show the config account and candy machine recorded in the cache."""
    state: CliState = ctx.obj
    try:
        info = _run_operation(state, lambda op: op.show())
    except MintctlError as exc:
        raise _fail(exc) from None

    table = Table(title=f"{state.env}-{state.cache_name}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Config", info.config)
    table.add_row("UUID", info.uuid or "-")
    table.add_row("Authority", info.authority or "[red]missing on chain[/red]")
    table.add_row("Lines registered", f"{info.lines_registered} / {info.items_cached}")

    machine = info.candy_machine
    if machine is None:
        table.add_row("Candy machine", "[dim]not created[/dim]")
    else:
        table.add_row("Candy machine", info.candy_machine_address)
        table.add_row("Wallet", str(machine.wallet))
        table.add_row("Token mint", str(machine.token_mint) if machine.token_mint else "SOL")
        table.add_row("Price", str(machine.price))
        table.add_row("Redeemed", f"{machine.items_redeemed} / {machine.items_available}")
        table.add_row("Go live", str(machine.go_live_date) if machine.go_live_date else "-")
    console.print(table)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("set-ipfs-credentials")
def set_ipfs_credentials_cmd(
    project_id: Annotated[str, typer.Argument(help="Infura IPFS project id")],
    secret: Annotated[str, typer.Argument(help="Infura IPFS secret key")],
) -> None:
    """Store Infura IPFS credentials in the system keyring (service: mintctl)."""
    if not project_id.strip() or not secret.strip():
        console.print("[red]Error:[/red] Project id and secret cannot be empty")
        raise typer.Exit(code=1)
    try:
        set_ipfs_credentials(project_id, secret)
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to store credentials: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] IPFS credentials stored in system keyring (service: {SERVICE_NAME})"
    )


@config_app.command("get-ipfs-credentials")
def get_ipfs_credentials_cmd() -> None:
    """Display the stored IPFS credentials (secret masked)."""
    project_id, secret = get_ipfs_credentials()
    if not project_id or not secret:
        console.print(
            "[yellow]No IPFS credentials found.[/yellow]\n"
            "Set them with: [bold]mintctl config set-ipfs-credentials PROJECT_ID SECRET[/bold]"
        )
        raise typer.Exit(code=1)
    masked = secret[:4] + "*" * max(1, len(secret) - 4)
    console.print(f"[green]Project id:[/green] {project_id}")
    console.print(f"[green]Secret:[/green] {masked}")


@config_app.command("remove-ipfs-credentials")
def remove_ipfs_credentials_cmd() -> None:
    """Delete the stored IPFS credentials from the system keyring."""
    try:
        remove_ipfs_credentials()
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to remove credentials: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] IPFS credentials removed from system keyring (service: {SERVICE_NAME})"
    )
