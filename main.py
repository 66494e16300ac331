"""
main.py - CLI orchestration for spreadsheet imports.

This module is orchestration-only:
1. load the sheet
2. reconcile every row against the store and catalog
3. print the summary
4. optionally commit new transactions
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from explain import format_batch_json, format_batch_summary
from logging_config import get_logger, setup_logging
from normalize import load_sheet, rows_from_dataframe
from reconcile import reconcile_batch, transactions_to_commit
from store import JsonMappingStore, JsonProductCatalog, JsonTransactionStore

logger = get_logger("reconcile-cli")


def _configure_stdout() -> None:
    """Prefer UTF-8 output so bullet characters survive Windows consoles."""
    reconfigure = getattr(sys.stdout, "reconfigure", None)
    if reconfigure is not None:
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except ValueError:
            pass


def run_import(
    file_path: str,
    store: JsonTransactionStore,
    catalog: JsonProductCatalog,
    mappings: JsonMappingStore,
    commit: bool = False,
    include_probable: bool = False,
    source: str = "excel",
) -> tuple[dict, str, int | None]:
    """Reconcile a sheet and optionally commit. Returns (json payload, text summary, committed)."""
    df = load_sheet(file_path)
    rows = rows_from_dataframe(df)

    result = reconcile_batch(
        rows,
        existing=store.list_transactions(),
        catalog=catalog.list_active(),
        overrides=mappings.overrides(),
        source=source,
    )

    committed = None
    if commit:
        to_commit = transactions_to_commit(result, include_probable=include_probable)
        committed = len(store.upsert_many(to_commit)) if to_commit else 0
        logger.info("import_committed | file=%s | committed=%s", file_path, committed)

    return (
        format_batch_json(result, committed),
        format_batch_summary(result, committed),
        committed,
    )


def main() -> None:
    """CLI entry point for the import reconciler."""
    parser = argparse.ArgumentParser(
        prog="reconcile",
        description=(
            "Transaction import reconciler\n"
            "Classifies spreadsheet rows, skips transactions already stored, "
            "matches products and derives tax, tip, discount and profit."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --file sales.xlsx\n"
            "  %(prog)s --file sales.csv --store data/transactions.json --commit\n"
            "  %(prog)s --file sales.xlsx --json --verbose\n"
        ),
    )
    parser.add_argument(
        "--file",
        "-f",
        type=str,
        required=True,
        help="Path to the import spreadsheet (.csv, .xlsx, .xls)",
    )
    parser.add_argument(
        "--store",
        type=str,
        default=None,
        help="Transactions JSON file (default: $TRANSACTIONS_FILE or data/transactions.json)",
    )
    parser.add_argument(
        "--catalog",
        type=str,
        default=None,
        help="Product catalog JSON file (default: $CATALOG_FILE or data/catalog.json)",
    )
    parser.add_argument(
        "--mappings",
        type=str,
        default=None,
        help="Confirmed product-name mappings JSON file (default: $MAPPINGS_FILE or data/mappings.json)",
    )
    parser.add_argument(
        "--source",
        type=str,
        default="excel",
        help="Source recorded on rows without a Source column (default: excel)",
    )
    parser.add_argument(
        "--commit",
        action="store_true",
        help="Write new transactions to the store (default: preview only)",
    )
    parser.add_argument(
        "--include-probable",
        action="store_true",
        help="With --commit, also write rows reported as probable duplicates",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON instead of formatted text",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args()
    setup_logging(
        level=logging.DEBUG if args.verbose else None,
        json_format=args.log_json,
    )
    _configure_stdout()

    if args.include_probable and not args.commit:
        parser.error("--include-probable only applies together with --commit")

    try:
        logger.info("cli_mode | file=%s | commit=%s", args.file, args.commit)
        payload, summary, _ = run_import(
            args.file,
            JsonTransactionStore(args.store),
            JsonProductCatalog(args.catalog),
            JsonMappingStore(args.mappings),
            commit=args.commit,
            include_probable=args.include_probable,
            source=args.source,
        )
        if args.json:
            print(json.dumps(payload, indent=2))
        else:
            print(summary)
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
