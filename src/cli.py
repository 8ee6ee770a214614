"""CLI entry point for SpendSort.

Commands:
    spendsort upload FILE [FILE ...]          Upload statement file(s)
    spendsort upload                          Upload all files in the watch dir
    spendsort watch                           Start drop-folder watcher daemon
    spendsort review [--limit N]              List transactions pending review
    spendsort recategorize TXN_ID CATEGORY    Correct one transaction's category
    spendsort bulk-apply MERCHANT CATEGORY    Categorize all pending for a merchant
    spendsort accept TXN_ID                   Approve a suggested category
    spendsort accept-all                      Approve every pending suggestion
    spendsort rules                           List learned merchant rules
    spendsort status                          Counts, uploads, spending by category
    spendsort categories                      List configured categories

The acting user comes from --user or FINANCE_USER_ID.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "default"


def _setup_logging() -> None:
    """Configure logging based on FINANCE_LOG_LEVEL env var."""
    level = os.environ.get("FINANCE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from src.config import Config

    config_dir = os.environ.get("FINANCE_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, migrated."""
    from src.database.repository import Repository

    db_path = os.environ.get("FINANCE_DB_PATH", "finance.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_user_id(args: argparse.Namespace) -> str:
    return getattr(args, "user", None) or os.environ.get("FINANCE_USER_ID", DEFAULT_USER_ID)


def _make_claude_fn(config=None):
    """Create a Claude API callback for categorization.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    from src.config import DEFAULT_AI_MODEL, DEFAULT_AI_TIMEOUT_SECONDS

    model = config.ai_model if config is not None else DEFAULT_AI_MODEL
    timeout = config.ai_timeout_seconds if config is not None else DEFAULT_AI_TIMEOUT_SECONDS

    try:
        import anthropic

        client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model=model,
                max_tokens=1024,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text

        return claude_fn
    except Exception as e:
        logging.getLogger(__name__).warning("Claude API not available: %s", e)
        return None


def _get_watch_dir() -> Path:
    """Get the watch directory from env or default."""
    return Path(os.environ.get("FINANCE_WATCH_DIR", "import"))


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("FINANCE_MIGRATIONS_DIR", str(default)))


def _build_pipeline(repo, config, user_id: str):
    from src.watcher.observer import UploadPipeline

    return UploadPipeline(
        repo=repo, config=config, user_id=user_id,
        claude_fn=_make_claude_fn(config),
    )


def _print_file_result(result) -> None:
    line = f"  {result.file_name}: {result.status} - {result.message}"
    if result.success:
        line += (
            f" (${result.total_spending:,.2f} spending, {result.approved_count} approved,"
            f" {result.pending_review_count} pending review,"
            f" {result.skipped_count} skipped, convention={result.convention}"
            f" via {result.convention_branch})"
        )
    print(line)
    for err in result.errors:
        print(f"      {err}")


# ── Command handlers ─────────────────────────────────────


def cmd_upload(args: argparse.Namespace) -> int:
    """Upload statement file(s) via the UploadPipeline."""
    from src.watcher.observer import SUPPORTED_EXTENSIONS

    config = _get_config()
    repo = _get_repo()
    try:
        if args.files:
            files = []
            for f in args.files:
                filepath = f.resolve()
                if not filepath.exists():
                    print(f"Error: File not found: {filepath}")
                    return 1
                files.append(filepath)
        else:
            watch_dir = _get_watch_dir()
            if not watch_dir.exists():
                print(f"Watch directory not found: {watch_dir}")
                return 1
            files = [
                f for f in sorted(watch_dir.iterdir())
                if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS
            ]
            if not files:
                print("No pending files found.")
                return 0

        pipeline = _build_pipeline(repo, config, _get_user_id(args))
        batch = pipeline.process_files(files)
        for result in batch.per_file:
            _print_file_result(result)
        print(f"\n{batch.message}")
        return 0 if batch.success else 1
    finally:
        repo.close()


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the file watcher daemon."""
    from src.watcher.observer import FileWatcher

    config = _get_config()
    repo = _get_repo()
    pipeline = _build_pipeline(repo, config, _get_user_id(args))

    watcher = FileWatcher(
        watch_dir=_get_watch_dir(),
        pipeline=pipeline,
    )

    print(f"Watching {watcher.watch_dir} for statement files... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        repo.close()

    return 0


def cmd_review(args: argparse.Namespace) -> int:
    """List transactions pending review."""
    from src.database.queries import get_review_queue

    repo = _get_repo()
    try:
        rows = get_review_queue(repo.conn, _get_user_id(args), limit=args.limit)
        if not rows:
            print("No transactions pending review.")
            return 0

        print(f"Transactions pending review ({len(rows)}):")
        print("-" * 100)
        for r in rows:
            conf = f"{r['confidence']:.0%}" if r["confidence"] is not None else "n/a"
            suggestion = r["category_name"] or "-"
            print(
                f"  {r['id'][:8]}  {r['date']}  {r['amount_spending']:>10.2f}"
                f"  {r['merchant'][:30]:<30}  {suggestion:<16}  {conf}"
            )
        return 0
    finally:
        repo.close()


def cmd_recategorize(args: argparse.Namespace) -> int:
    """Change one transaction's category and learn a manual rule."""
    from src.categorize.corrections import change_category

    config = _get_config()
    repo = _get_repo()
    try:
        repo.sync_categories(config.categories)
        txn = change_category(
            repo, _resolve_txn_id(repo, args.txn_id), args.category,
            boost=config.learning["correction_boost"],
        )
        print(f"{txn.merchant}: {txn.category_id} (approved)")
        return 0
    except (LookupError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()


def cmd_bulk_apply(args: argparse.Namespace) -> int:
    """Apply a category to every pending transaction for a merchant."""
    from src.categorize.corrections import bulk_apply_category

    config = _get_config()
    repo = _get_repo()
    try:
        repo.sync_categories(config.categories)
        count = bulk_apply_category(
            repo, _get_user_id(args), args.merchant, args.category,
            boost=config.learning["correction_boost"],
        )
        print(f"Updated {count} transaction(s) for '{args.merchant}' → {args.category}")
        return 0
    except (LookupError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()


def cmd_accept(args: argparse.Namespace) -> int:
    """Approve a transaction's suggested category."""
    from src.categorize.corrections import accept_transaction

    config = _get_config()
    repo = _get_repo()
    try:
        txn = accept_transaction(
            repo, _resolve_txn_id(repo, args.txn_id),
            boost=config.learning["accept_boost"],
        )
        print(f"{txn.merchant}: {txn.category_id} (approved)")
        return 0
    except (LookupError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()


def cmd_accept_all(args: argparse.Namespace) -> int:
    """Approve every pending suggestion."""
    from src.categorize.corrections import accept_all

    config = _get_config()
    repo = _get_repo()
    try:
        count = accept_all(repo, _get_user_id(args), boost=config.learning["accept_boost"])
        print(f"Successfully approved {count} transaction(s)")
        return 0
    finally:
        repo.close()


def cmd_rules(args: argparse.Namespace) -> int:
    """List learned merchant rules."""
    repo = _get_repo()
    try:
        rules = repo.get_merchant_rules(_get_user_id(args))
        if not rules:
            print("No merchant rules learned yet.")
            return 0
        print(f"Merchant rules ({len(rules)}):")
        for rule in rules:
            origin = "manual" if rule.created_from_manual_override else "auto"
            print(
                f"  {rule.merchant_normalized[:40]:<40}  {rule.category_id:<16}"
                f"  +{rule.confidence_boost:.2f}  {origin}"
            )
        return 0
    finally:
        repo.close()


def cmd_status(args: argparse.Namespace) -> int:
    """Display status counts, recent uploads and spending by category."""
    from src.database.queries import (
        get_spending_by_category,
        get_status_counts,
        get_upload_summaries,
    )

    user_id = _get_user_id(args)
    repo = _get_repo()
    try:
        counts = get_status_counts(repo.conn, user_id)

        print("SpendSort Status")
        print("=" * 40)
        print(f"  Total transactions:  {counts['total_txns']:,}")
        print(f"  Approved:            {counts['approved']:,}")
        print(f"  Pending review:      {counts['pending_review']:,}")
        print(f"  Uploads:             {counts['total_uploads']:,}")
        print(f"  Merchant rules:      {counts['total_rules']:,}")

        uploads = get_upload_summaries(repo.conn, user_id)[:10]
        if uploads:
            print("\nRecent uploads:")
            for u in uploads:
                print(
                    f"  {u['uploaded_at'][:16]}  {u['file_name'][:30]:<30}"
                    f"  {u['transaction_count']:>5} txns  ${u['total_spending']:>10,.2f}"
                    f"  {u['credit_count']} credits  ({u['convention']})"
                )

        spending = get_spending_by_category(repo.conn, user_id)
        if spending:
            print("\nSpending by category:")
            for s in spending:
                name = s["category_name"] or "Uncategorized"
                print(f"  {name:<20}  ${s['total']:>10,.2f}  ({s['txn_count']} txns)")
        return 0
    finally:
        repo.close()


def cmd_categories(args: argparse.Namespace) -> int:
    """List configured categories."""
    config = _get_config()
    for cat in config.categories:
        print(f"  {cat['id']:<16}  {cat['name']}")
    return 0


def _resolve_txn_id(repo, prefix: str) -> str:
    """Expand a short id prefix (as shown by `review`) to a full transaction id."""
    if repo.get_transaction(prefix) is not None:
        return prefix
    rows = repo.conn.execute(
        "SELECT id FROM transactions WHERE id LIKE ? || '%' LIMIT 2", (prefix,)
    ).fetchall()
    if len(rows) == 1:
        return rows[0]["id"]
    if len(rows) > 1:
        raise LookupError(f"Ambiguous transaction id prefix: {prefix}")
    raise LookupError(f"Transaction not found: {prefix}")


_COMMANDS = {
    "upload": cmd_upload,
    "watch": cmd_watch,
    "review": cmd_review,
    "recategorize": cmd_recategorize,
    "bulk-apply": cmd_bulk_apply,
    "accept": cmd_accept,
    "accept-all": cmd_accept_all,
    "rules": cmd_rules,
    "status": cmd_status,
    "categories": cmd_categories,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="spendsort",
        description="SpendSort statement ingest and categorization",
    )
    parser.add_argument("--user", help="User id (default: $FINANCE_USER_ID)")
    subparsers = parser.add_subparsers(dest="command")

    # upload
    upload_p = subparsers.add_parser("upload", help="Upload statement file(s)")
    upload_p.add_argument("files", nargs="*", type=Path, help="CSV/Excel files (default: watch dir)")

    # watch
    subparsers.add_parser("watch", help="Start file watcher daemon")

    # review
    review_p = subparsers.add_parser("review", help="List transactions pending review")
    review_p.add_argument("--limit", type=int, default=50, help="Max rows to show")

    # recategorize
    recat_p = subparsers.add_parser("recategorize", help="Change a transaction's category")
    recat_p.add_argument("txn_id", help="Transaction ID (or unique prefix)")
    recat_p.add_argument("category", help="Category ID")

    # bulk-apply
    bulk_p = subparsers.add_parser("bulk-apply", help="Categorize all pending for a merchant")
    bulk_p.add_argument("merchant", help="Merchant name")
    bulk_p.add_argument("category", help="Category ID")

    # accept
    accept_p = subparsers.add_parser("accept", help="Approve a suggested category")
    accept_p.add_argument("txn_id", help="Transaction ID (or unique prefix)")

    # accept-all
    subparsers.add_parser("accept-all", help="Approve every pending suggestion")

    # rules
    subparsers.add_parser("rules", help="List learned merchant rules")

    # status
    subparsers.add_parser("status", help="Show counts, uploads and spending by category")

    # categories
    subparsers.add_parser("categories", help="List configured categories")

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
