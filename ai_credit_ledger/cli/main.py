"""
CLI interface for AI Credit Ledger.

Provides command-line access to accounts, the transaction log and
credited generation.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_credit_ledger.config.loader import LedgerConfig, default_config, load_config
from ai_credit_ledger.core.errors import CreditLedgerError, ErrorCode
from ai_credit_ledger.core.ledger import CreditLedger
from ai_credit_ledger.core.pipeline import GenerationPipeline, GenerationRequest
from ai_credit_ledger.core.pricing import Tool
from ai_credit_ledger.core.quality import QualityGate
from ai_credit_ledger.core.reconciliation import CreditedGenerator
from ai_credit_ledger.core.similarity import SimilarityCache
from ai_credit_ledger.sdk.openai_client import OpenAITextGenerator
from ai_credit_ledger.sdk.originality_client import API_KEY_ENV, OriginalityDetector
from ai_credit_ledger.storage.db import DEFAULT_DB_PATH
from ai_credit_ledger.storage.repository import ContentRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ERROR_HINTS = {
    ErrorCode.INVALID_AMOUNT: "Amounts must be positive whole numbers within your plan's limits.",
    ErrorCode.ACCOUNT_NOT_FOUND: "Create the account first with `open-account`.",
    ErrorCode.ACCOUNT_EXISTS: "Use `balance` to inspect the existing account.",
    ErrorCode.INSUFFICIENT_FUNDS: "Wait for the monthly refresh or request fewer words.",
    ErrorCode.QUOTA_EXCEEDED: "The plan's monthly word limit resets next month.",
    ErrorCode.TRANSACTION_CONFLICT: "The ledger was busy; retry the command.",
    ErrorCode.TRANSACTION_NOT_FOUND: "Check the id with `history`.",
    ErrorCode.TRANSACTION_ALREADY_SETTLED: "The transaction was already reversed.",
    ErrorCode.GENERATION_FAILURE: "No credits were charged for the failed request.",
    ErrorCode.GENERATION_CANCELLED: "No credits were charged for the cancelled request.",
    ErrorCode.DETECTION_FAILURE: "Content detection is unavailable.",
    ErrorCode.RECONCILIATION_FAILURE: "The request was rolled back; retry later.",
}


class State:
    db_path: str = DEFAULT_DB_PATH
    config: LedgerConfig = default_config()


state = State()


def _fail(error: Exception) -> None:
    """Print an error and exit non-zero."""
    console.print(f"[red]Error:[/] {error}")
    if isinstance(error, CreditLedgerError):
        console.print(f"[dim]{ERROR_HINTS[error.code]}[/]")
    sys.exit(EXIT_CODE_FAIL)


def _ledger() -> CreditLedger:
    return CreditLedger(state.db_path, state.config)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the ledger database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """AI Credit Ledger CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    state.db_path = db
    try:
        state.config = load_config(config) if config else default_config()
    except (OSError, ValueError) as e:
        _fail(e)
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Ledger - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    try:
        initialize_schema(state.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status():
    """Check initialization status and show configured plans."""
    if not Path(state.db_path).exists():
        console.print(f"[yellow]![/] No database at {state.db_path}; run `init` first")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] AI Credit Ledger is initialized ({state.db_path})")

    table = Table(title="Plans")
    table.add_column("Plan")
    table.add_column("Chunk limit", justify="right")
    table.add_column("Monthly credits", justify="right")
    table.add_column("Word cap", justify="right")
    table.add_column("Accumulates")
    for plan in state.config.plans.values():
        table.add_row(
            plan.name,
            str(plan.chunk_limit),
            str(plan.monthly_credits),
            str(plan.monthly_word_cap) if plan.is_quota_limited else "-",
            "yes" if plan.accumulate else "no"
        )
    console.print(table)


@app.command("open-account")
def open_account(
    user_id: str = typer.Argument(..., help="Account owner"),
    plan: str = typer.Option("freemium", "--plan", "-p", help="Plan tier"),
    credits: Optional[int] = typer.Option(None, "--credits", help="Initial credits (defaults to the plan allowance)")
):
    """Open a credit account."""
    try:
        account = _ledger().open_account(user_id, plan, credits)
    except CreditLedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/] Opened {account.plan_tier} account for {user_id} with {account.balance} credits")


@app.command()
def balance(user_id: str = typer.Argument(..., help="Account owner")):
    """Show balance and this month's usage."""
    try:
        ledger = _ledger()
        account = ledger.get_balance(user_id)
        usage = ledger.get_monthly_usage(user_id)
    except CreditLedgerError as e:
        _fail(e)

    console.print(f"\n[bold]{account.user_id}[/bold] ({account.plan_tier})")
    console.print("-" * 40)
    console.print(f"Balance: {account.balance:,} credits")
    console.print(f"Total credits used: {account.total_credits_used:,}")
    console.print(f"Total words generated: {account.total_words_generated:,}")
    plan = state.config.get_plan(account.plan_tier)
    cap = f" / {plan.monthly_word_cap:,}" if plan.is_quota_limited else ""
    console.print(f"{usage.month_key}: {usage.words_generated:,}{cap} words, "
                  f"{usage.credits_used:,} credits, {usage.request_count} request(s)")


@app.command()
def history(
    user_id: str = typer.Argument(..., help="Account owner"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of transactions to show")
):
    """Show recent transactions, newest first."""
    try:
        transactions = _ledger().get_history(user_id, limit)
    except (CreditLedgerError, ValueError) as e:
        _fail(e)

    table = Table(title=f"Transactions for {user_id}")
    table.add_column("Time")
    table.add_column("Kind")
    table.add_column("Amount", justify="right")
    table.add_column("Words", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Status")
    table.add_column("Id")
    for txn in transactions:
        table.add_row(
            txn.timestamp.strftime("%Y-%m-%d %H:%M"),
            txn.kind.value,
            str(txn.amount),
            str(txn.word_count),
            f"{txn.previous_balance} -> {txn.new_balance}",
            txn.status.value,
            txn.transaction_id
        )
    console.print(table)


@app.command()
def refresh(user_id: str = typer.Argument(..., help="Account owner")):
    """Apply this month's credit allowance."""
    try:
        result = _ledger().refresh_monthly_credits(user_id)
    except CreditLedgerError as e:
        _fail(e)
    if result.skipped:
        console.print(f"[yellow]![/] {user_id} was already refreshed this month")
        return
    console.print(
        f"[green]✓[/] Balance {result.previous_balance} -> {result.new_balance} "
        f"({result.settled_charges} unsettled charge(s) applied)"
    )


@app.command()
def unsettled(user_id: str = typer.Argument(..., help="Account owner")):
    """Show reconciliation charges awaiting the next refresh."""
    charges = _ledger().get_unsettled(user_id)
    if not charges:
        console.print(f"No unsettled charges for {user_id}")
        return
    table = Table(title=f"Unsettled charges for {user_id}")
    table.add_column("Created")
    table.add_column("Credits", justify="right")
    table.add_column("Reason")
    for charge in charges:
        table.add_row(charge.created_at.strftime("%Y-%m-%d %H:%M"), f"{charge.credits:+d}", charge.reason)
    console.print(table)


@app.command()
def generate(
    user_id: str = typer.Argument(..., help="Account owner"),
    prompt: str = typer.Argument(..., help="Assignment prompt"),
    words: int = typer.Option(500, "--words", "-w", help="Requested word count"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan tier (defaults to the account's)"),
    style: str = typer.Option("Academic", "--style"),
    tone: str = typer.Option("Formal", "--tone"),
    quality: str = typer.Option("standard", "--quality", help="standard, enhanced or premium"),
    research_depth: Optional[int] = typer.Option(None, "--research-depth", help="Use the research tool at this depth"),
    model: str = typer.Option("gpt-4o-mini", "--model", help="Model for drafts"),
    refine_model: str = typer.Option("gpt-4o", "--refine-model", help="Model for rewrites"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write content to this file")
):
    """Generate content against the account's credits."""
    try:
        ledger = _ledger()
        tier = plan or ledger.get_balance(user_id).plan_tier
        request = GenerationRequest(
            prompt=prompt,
            requested_word_count=words,
            style=style,
            tone=tone,
            plan_tier=tier,
            quality_tier=quality,
            tool=Tool.RESEARCH if research_depth else Tool.WRITING,
            depth=research_depth
        )
        detector = OriginalityDetector() if os.environ.get(API_KEY_ENV) else None
        if detector is None:
            console.print(f"[dim]{API_KEY_ENV} not set; content detection disabled[/]")
        pipeline = GenerationPipeline(
            OpenAITextGenerator(model=model, refine_model=refine_model),
            QualityGate(detector, state.config.quality),
            state.config,
            similarity=SimilarityCache(ContentRepository(state.db_path), state.config.generation)
        )
        receipt = CreditedGenerator(ledger, pipeline).reserve_and_generate(user_id, request)
    except (CreditLedgerError, ValueError) as e:
        _fail(e)

    if output:
        output.write_text(receipt.content, encoding="utf-8")
        console.print(f"[green]✓[/] Wrote {receipt.word_count} words to {output}")
    else:
        console.print(receipt.content)

    summary = receipt.detection_summary
    console.print("\n[bold]Generation Result[/bold]")
    console.print("-" * 40)
    console.print(f"Words: {receipt.word_count} in {receipt.chunks_generated} chunk(s), "
                  f"{receipt.refinement_cycles} refinement(s)")
    console.print(f"Credits: estimated {receipt.reconciliation.estimated_credits}, "
                  f"charged {receipt.credits_used}")
    if receipt.unsettled_credits:
        console.print(f"[yellow]Unsettled:[/] {receipt.unsettled_credits:+d} credits at next refresh")
    if summary.full_scan_succeeded:
        console.print(f"Quality score: {summary.quality_score} (AI {summary.ai_detection_score:g}%, "
                      f"plagiarism {summary.plagiarism_score:g}%)")
        if summary.requires_review:
            console.print("[yellow]![/] Content should be reviewed before use")
    elif summary.requires_review:
        console.print("[yellow]![/] Detection unavailable, manual review recommended")


if __name__ == "__main__":
    app()
