"""CLI entry point for SpendLens.

Commands:
    spendlens upload FILE [--no-wait]   Upload a statement and process it
    spendlens process STATEMENT_ID      Run (or retry) processing
    spendlens statements                List statements, newest first
    spendlens transactions STATEMENT_ID Show a statement's transactions
    spendlens delete STATEMENT_ID       Delete a statement and its data
    spendlens insights [--refresh]      Show (or regenerate) spending insights
    spendlens watch                     Start drop-folder watcher daemon
    spendlens status                    Statement and cache counts

All commands act for the user given by --user or SPENDLENS_USER_ID.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_USER = "local"


def _setup_logging() -> None:
    """Configure logging based on SPENDLENS_LOG_LEVEL env var."""
    level = os.environ.get("SPENDLENS_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from spendlens.config import Config

    config_dir = os.environ.get("SPENDLENS_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, migrated."""
    from spendlens.database.repository import Repository

    db_path = os.environ.get("SPENDLENS_DB_PATH", "spendlens.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_store():
    from spendlens.storage.documents import LocalDocumentStore

    return LocalDocumentStore(os.environ.get("SPENDLENS_STORAGE_DIR", "storage"))


def _get_watch_dir() -> Path:
    """Get the watch directory from env or default."""
    return Path(os.environ.get("SPENDLENS_WATCH_DIR", "inbox"))


def _get_migrations_dir() -> Path:
    """Get the migrations directory path. Defaults to the packaged migrations."""
    from spendlens.database.repository import MIGRATIONS_DIR

    override = os.environ.get("SPENDLENS_MIGRATIONS_DIR")
    return Path(override) if override else MIGRATIONS_DIR


def _get_user(args: argparse.Namespace) -> str:
    return args.user or os.environ.get("SPENDLENS_USER_ID") or DEFAULT_USER


def _missing_api_key(*_args) -> str:
    from spendlens.errors import ExtractionServiceError

    raise ExtractionServiceError("ANTHROPIC_API_KEY is not set")


def _build_pipeline(config, repo, dispatch: bool = False):
    """Wire a StatementPipeline, optionally with a background dispatcher.

    Without an API key the pipeline still uploads; processing then ends in
    "error" with a message saying the key is missing.
    """
    from spendlens.ai import make_document_fn
    from spendlens.extraction.client import ExtractionClient
    from spendlens.processing.dispatcher import PipelineDispatcher
    from spendlens.processing.pipeline import StatementPipeline

    document_fn = make_document_fn(config) or _missing_api_key
    pipeline = StatementPipeline(
        repo=repo,
        store=_get_store(),
        extraction=ExtractionClient(document_fn, categories=config.categories),
        currency_policy=config.currency_policy,
        stale_after=config.pipeline_stale_after,
    )
    if dispatch:
        pipeline.dispatcher = PipelineDispatcher(
            pipeline, max_workers=config.pipeline_max_workers,
        )
    return pipeline


def _print_statement(stmt) -> None:
    line = (
        f"  {stmt.id}  {stmt.uploaded_at[:19]}  {stmt.processing_status:<10}"
        f"  {(stmt.currency or '-'):<4}  {stmt.file_name}"
    )
    print(line)
    if stmt.error_message:
        print(f"      error: {stmt.error_message}")


# ── Command handlers ─────────────────────────────────────


def cmd_upload(args: argparse.Namespace) -> int:
    """Upload a statement document; process it unless --no-wait."""
    from spendlens.errors import SpendLensError

    filepath = args.file.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return 1

    config = _get_config()
    repo = _get_repo()
    user_id = _get_user(args)
    pipeline = _build_pipeline(config, repo, dispatch=not args.no_wait)

    try:
        try:
            stmt = pipeline.upload_statement(user_id, filepath.name, filepath.read_bytes())
        except SpendLensError as e:
            print(f"Error: {e}")
            return 1

        print(f"Uploaded {stmt.file_name} as {stmt.id}")
        if args.no_wait:
            return 0

        pipeline.dispatcher.wait()
        stmt = pipeline.get_statement(stmt.id, user_id)
        _print_statement(stmt)
        return 0 if stmt.processing_status == "processed" else 1
    finally:
        if pipeline.dispatcher is not None:
            pipeline.dispatcher.shutdown()
        repo.close()


def cmd_process(args: argparse.Namespace) -> int:
    """Run extraction for an uploaded or failed statement."""
    config = _get_config()
    repo = _get_repo()
    pipeline = _build_pipeline(config, repo)

    try:
        result = pipeline.process_statement(args.statement_id, _get_user(args))
        if result.status == "processed":
            print(
                f"{result.statement_id}: processed"
                f" ({result.transaction_count} transactions, {result.currency})"
            )
            return 0
        print(f"{result.statement_id}: {result.status} ({result.error_message})")
        return 1
    finally:
        repo.close()


def cmd_statements(args: argparse.Namespace) -> int:
    """List the user's statements, newest first."""
    repo = _get_repo()
    try:
        statements = repo.list_statements(_get_user(args))
        if not statements:
            print("No statements uploaded.")
            return 0

        print(f"Statements ({len(statements)}):")
        print("-" * 80)
        for stmt in statements:
            _print_statement(stmt)
        return 0
    finally:
        repo.close()


def cmd_transactions(args: argparse.Namespace) -> int:
    """Show one statement's summary and transactions."""
    from spendlens.database.queries import get_statement_totals
    from spendlens.formatting import format_amount

    repo = _get_repo()
    user_id = _get_user(args)
    try:
        stmt = repo.get_statement(args.statement_id, user_id)
        if stmt is None:
            print(f"Error: Statement not found: {args.statement_id}")
            return 1

        currency = stmt.currency
        print(f"{stmt.file_name} [{stmt.processing_status}]")

        summary = repo.get_statement_summary(stmt.id, user_id)
        if summary is not None:
            if summary.period_start or summary.period_end:
                print(f"  Period:   {summary.period_start or '?'} to {summary.period_end or '?'}")
            if summary.opening_balance is not None:
                print(f"  Opening:  {format_amount(summary.opening_balance, currency)}")
            if summary.closing_balance is not None:
                print(f"  Closing:  {format_amount(summary.closing_balance, currency)}")

        bill = (stmt.metadata or {}).get("total_bill_amount")
        if bill is not None:
            print(f"  Bill:     {format_amount(bill, currency)}")
            diff = stmt.metadata.get("bill_difference")
            if diff:
                print(f"  Bill differs from transaction total by {format_amount(diff, currency)}")

        txns = repo.get_transactions_by_statement(stmt.id, user_id)
        if not txns:
            print("No transactions.")
            return 0

        print("-" * 80)
        for t in txns:
            print(
                f"  {t.transaction_date}  {format_amount(t.amount, t.currency):>14}"
                f"  {(t.category or ''):<22}  {t.description[:36]}"
            )

        totals = get_statement_totals(repo.conn, stmt.id, user_id)
        print("-" * 80)
        print(
            f"  {totals['count']} transactions:"
            f" out {format_amount(totals['debits'], currency)},"
            f" in {format_amount(totals['credits'], currency)},"
            f" net {format_amount(totals['net'], currency)}"
        )
        return 0
    finally:
        repo.close()


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a statement, its transactions and its stored document."""
    from spendlens.errors import InvalidTransitionError, StatementNotFoundError
    from spendlens.processing.pipeline import StatementPipeline

    config = _get_config()
    repo = _get_repo()
    try:
        # Deletion never calls the inference service
        pipeline = StatementPipeline(
            repo=repo, store=_get_store(), extraction=None,
            stale_after=config.pipeline_stale_after,
        )
        try:
            stmt = pipeline.delete_statement(args.statement_id, _get_user(args))
        except StatementNotFoundError as e:
            print(f"Error: {e}")
            return 1
        except InvalidTransitionError:
            print("Error: Statement is being processed; try again when it finishes")
            return 1

        print(f"Deleted {stmt.file_name} ({stmt.id})")
        return 0
    finally:
        repo.close()


def cmd_insights(args: argparse.Namespace) -> int:
    """Show cached insights, generating them when missing or --refresh."""
    from spendlens.ai import make_text_fn
    from spendlens.errors import SpendLensError
    from spendlens.formatting import format_amount
    from spendlens.insights.cache import InsightsCacheManager
    from spendlens.insights.client import InsightsClient

    config = _get_config()
    repo = _get_repo()
    user_id = _get_user(args)

    try:
        # A valid cached entry is shown even without an API key
        text_fn = make_text_fn(config) or _missing_api_key
        manager = InsightsCacheManager(
            repo, InsightsClient(text_fn),
            ttl=config.insights_ttl,
            baseline_currency=config.baseline_currency,
        )
        try:
            if args.refresh:
                entry = manager.regenerate(user_id)
            else:
                entry = manager.get_or_generate(user_id)
        except SpendLensError as e:
            print(f"Error: {e}")
            return 1

        if entry is None:
            print("No transactions yet. Upload a statement first.")
            return 0

        data = entry.insights_data
        currency = data.get("currency")
        print(f"Insights (generated {entry.generated_at[:19]}, expires {entry.expires_at[:19]})")
        print("=" * 60)

        print("Top categories:")
        for c in data["topCategories"]:
            print(f"  {c['category']:<24} {format_amount(c['amount'], currency):>14}  {c['percentage']:.0f}%")

        m = data["monthlySummary"]
        print("\nSummary:")
        print(f"  Income:    {format_amount(m['totalIncome'], currency)}")
        print(f"  Expenses:  {format_amount(m['totalExpenses'], currency)}")
        print(f"  Net:       {format_amount(m['netCashFlow'], currency)}")

        if data["unusualActivity"]:
            print("\nUnusual activity:")
            for u in data["unusualActivity"]:
                amount = u.get("amount")
                suffix = f" ({format_amount(amount, currency)})" if amount is not None else ""
                print(f"  - {u['description']}{suffix}")

        print(f"\nTrends: {data['spendingTrends']}")

        print("\nRecommendations:")
        for r in data["recommendations"]:
            print(f"  - {r}")
        return 0
    finally:
        repo.close()


def _now_iso() -> str:
    from spendlens.database.models import to_iso, utc_now

    return to_iso(utc_now())


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the drop-folder watcher daemon."""
    from spendlens.watcher.observer import StatementWatcher

    config = _get_config()
    repo = _get_repo()
    pipeline = _build_pipeline(config, repo, dispatch=True)

    watcher = StatementWatcher(
        watch_dir=_get_watch_dir(),
        pipeline=pipeline,
        user_id=_get_user(args),
        stability_seconds=config.watch_stability_seconds,
        poll_interval=config.watch_poll_interval,
    )

    print(f"Watching {watcher.watch_dir} for statements... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        pipeline.dispatcher.shutdown()
        repo.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display statement and cache counts."""
    from spendlens.database.queries import get_status_counts

    repo = _get_repo()
    user_id = _get_user(args)
    try:
        counts = get_status_counts(repo.conn, user_id)
        insights = repo.get_latest_valid_insights(user_id, _now_iso())

        print(f"SpendLens Status ({user_id})")
        print("=" * 40)
        print(f"  Total statements:    {counts['total_statements']:,}")
        print(f"  Uploaded:            {counts['uploaded']:,}")
        print(f"  Processing:          {counts['processing']:,}")
        print(f"  Processed:           {counts['processed']:,}")
        print(f"  Errors:              {counts['error']:,}")
        print(f"  Total transactions:  {counts['total_txns']:,}")
        if insights is not None:
            print(f"\n  Insights valid until {insights.expires_at[:19]}")
        else:
            print("\n  No valid insights cached")
        return 0
    finally:
        repo.close()


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "upload": cmd_upload,
    "process": cmd_process,
    "statements": cmd_statements,
    "transactions": cmd_transactions,
    "delete": cmd_delete,
    "insights": cmd_insights,
    "watch": cmd_watch,
    "status": cmd_status,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="spendlens",
        description="SpendLens statement analyser",
    )
    parser.add_argument("--user", help="Acting user ID (default: SPENDLENS_USER_ID)")
    subparsers = parser.add_subparsers(dest="command")

    # upload
    upload_p = subparsers.add_parser("upload", help="Upload a statement document")
    upload_p.add_argument("file", type=Path, help="PDF or image of the statement")
    upload_p.add_argument(
        "--no-wait", action="store_true",
        help="Only upload; run 'process' later",
    )

    # process
    process_p = subparsers.add_parser("process", help="Process or retry a statement")
    process_p.add_argument("statement_id", help="Statement ID")

    # statements
    subparsers.add_parser("statements", help="List statements")

    # transactions
    txn_p = subparsers.add_parser("transactions", help="Show a statement's transactions")
    txn_p.add_argument("statement_id", help="Statement ID")

    # delete
    delete_p = subparsers.add_parser("delete", help="Delete a statement")
    delete_p.add_argument("statement_id", help="Statement ID")

    # insights
    insights_p = subparsers.add_parser("insights", help="Show spending insights")
    insights_p.add_argument(
        "--refresh", action="store_true", help="Regenerate even if cached",
    )

    # watch
    subparsers.add_parser("watch", help="Start drop-folder watcher daemon")

    # status
    subparsers.add_parser("status", help="Show statement and cache counts")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
