"""Command line entry points for the Customer DNA engine."""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd

from customer_dna.analyses.summary import format_summary_markdown, summarize_dna
from customer_dna.config import DNAConfig
from customer_dna.exceptions import MissingDataError
from customer_dna.foundation.transactions import ALL_SCOPES
from customer_dna.logging_config import configure_logging
from customer_dna.models.value import CLVConfig
from customer_dna.orchestration.batch import BatchResult, run_dna_batch
from customer_dna.orchestration.persistence import CSVProfileSink
from customer_dna.pandas.dna import dataframe_to_transactions, profiles_to_dataframe

logger = logging.getLogger(__name__)


MAX_INPUT_BYTES = 25 * 1024 * 1024  # 25 MiB cap to avoid accidental OOM

CLV_PRESETS = {
    "basic": CLVConfig.basic,
    "repeat_buyer": CLVConfig.repeat_buyer,
}


def _load_transactions_frame(path: Path) -> pd.DataFrame:
    resolved = path.resolve()
    size = resolved.stat().st_size
    if size > MAX_INPUT_BYTES:
        raise ValueError(
            f"Input file {resolved} is {size} bytes; exceeds limit of {MAX_INPUT_BYTES} bytes"
        )
    if path.suffix.lower() == ".json":
        with path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
        if not isinstance(payload, list):
            raise ValueError("Expected a list of transactions in the input file")
        return pd.DataFrame.from_records(payload)
    return pd.read_csv(path)


def _parse_reference_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _build_report(batch: BatchResult, input_path: Path, transaction_count: int) -> str:
    run = batch.run
    accuracy = (
        f"{run.churn_accuracy:.1%}" if run.churn_accuracy is not None else "n/a"
    )

    report_lines = []
    report_lines.append("# Customer DNA Report\n")
    report_lines.append(
        f"**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
    )
    report_lines.append(f"**Input:** {input_path.name} ({transaction_count} transactions)")
    report_lines.append(f"**Reference Time:** {run.reference_time.isoformat()}")
    report_lines.append(f"**Run ID:** {run.run_id}\n")

    report_lines.append("## Run Summary\n")
    summary = run.summary()
    report_lines.append(f"- **Scopes Attempted:** {summary['scopes_attempted']}")
    report_lines.append(f"- **Scopes Succeeded:** {summary['scopes_succeeded']}")
    report_lines.append(f"- **Total Customers:** {summary['total_customers']}")
    report_lines.append(f"- **Churn Accuracy:** {accuracy}\n")

    report_lines.append("## Scopes\n")
    report_lines.append("| Scope | Status | Customers | Skipped | Churn Accuracy | Error |")
    report_lines.append("|---|---|---|---|---|---|")
    for outcome in batch.outcomes:
        scope_accuracy = (
            f"{outcome.churn_accuracy:.1%}" if outcome.churn_accuracy is not None else "-"
        )
        status = "ok" if outcome.succeeded else "failed"
        error = f"{outcome.error_type}: {outcome.error_message}" if outcome.error_type else ""
        report_lines.append(
            f"| {outcome.scope_key} | {status} | {outcome.customers_processed} | "
            f"{outcome.customers_failed} | {scope_accuracy} | {error} |"
        )
    report_lines.append("")

    if batch.persistence_errors:
        report_lines.append("## Persistence Errors\n")
        for scope_key, message in batch.persistence_errors.items():
            report_lines.append(f"- **{scope_key}:** {message}")
        report_lines.append("")

    for outcome in batch.outcomes:
        if not outcome.succeeded:
            continue
        result = batch.results[outcome.scope_key]
        report_lines.append(
            format_summary_markdown(
                summarize_dna(result.profiles), title=f"Scope: {outcome.scope_key}"
            )
        )

    return "\n".join(report_lines)


def score_dna_cli(argv: list[str] | None = None) -> int:
    """Score customer DNA profiles from transaction data and export to CSV.

    This command processes transaction data through the DNA pipeline:
    1. Loads transactions from CSV or JSON
    2. Builds per-customer timelines and population fallback statistics
    3. Classifies NES lifecycle status and estimates still-alive probability
    4. Projects CLV and assigns value segments and loyalty tiers
    5. Exports one row per (customer, scope) with the stable profile columns

    Args:
        argv: Command line arguments (defaults to sys.argv)

    Returns:
        Exit code: 0 when at least one scope succeeded and every write
        succeeded, 1 otherwise
    """
    parser = argparse.ArgumentParser(
        description="Score customer DNA profiles from transaction data"
    )
    parser.add_argument(
        "input", type=Path, help="Path to CSV or JSON file with transactions"
    )
    parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Path for output CSV file with DNA profiles",
    )
    parser.add_argument(
        "--scope",
        dest="scopes",
        action="append",
        help=f"Scope key to analyse; repeatable (default: {ALL_SCOPES})",
    )
    parser.add_argument(
        "--reference-time",
        type=str,
        help="Reference time (ISO format). Defaults to the latest transaction.",
    )
    parser.add_argument("--customer-id-col", default="customer_id")
    parser.add_argument("--date-col", default="date")
    parser.add_argument("--amount-col", default="amount")
    parser.add_argument("--scope-col", default="scope_key")
    parser.add_argument(
        "--default-scope",
        help="Scope assigned to every row when the input has no scope column",
    )
    parser.add_argument(
        "--platform-id", help="Platform identifier attached to persisted rows"
    )
    parser.add_argument(
        "--no-population-fallback",
        action="store_true",
        help="Do not replace undefined individual IPT statistics with population values",
    )
    parser.add_argument(
        "--population-method",
        choices=["median", "mean"],
        default="median",
        help="Aggregation of individual IPT means (default: median)",
    )
    parser.add_argument(
        "--clv-preset",
        choices=sorted(CLV_PRESETS),
        default="basic",
        help="Heuristic CLV constants (default: basic)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes for scope-level parallelism (default: 1)",
    )
    parser.add_argument(
        "--scope-timeout",
        type=float,
        help="Per-scope timeout in seconds when running with --workers > 1",
    )
    parser.add_argument(
        "--history",
        type=Path,
        help="CSV file to append versioned profile rows to",
    )
    parser.add_argument(
        "--report",
        type=Path,
        help="Optional path for a Markdown summary report",
    )

    args = parser.parse_args(argv)

    logger.info(f"Loading transactions from {args.input}")
    frame = _load_transactions_frame(args.input)
    try:
        transactions = dataframe_to_transactions(
            frame,
            customer_id_col=args.customer_id_col,
            date_col=args.date_col,
            amount_col=args.amount_col,
            scope_col=args.scope_col,
            default_scope=args.default_scope,
        )
    except MissingDataError as e:
        logger.error(f"Invalid input: {e}")
        return 1

    if not transactions:
        logger.error("No transactions found in input file")
        return 1

    reference_time = (
        _parse_reference_time(args.reference_time) if args.reference_time else None
    )
    if (
        reference_time is not None
        and reference_time.tzinfo is None
        and transactions[0].timestamp.tzinfo is not None
    ):
        reference_time = reference_time.replace(tzinfo=timezone.utc)

    config = DNAConfig(
        reference_time=reference_time,
        scope_keys=tuple(args.scopes) if args.scopes else (ALL_SCOPES,),
        use_population_fallback=not args.no_population_fallback,
        population_method=args.population_method,
        clv=CLV_PRESETS[args.clv_preset](),
        platform_id=args.platform_id,
        max_workers=args.workers,
        scope_timeout_seconds=args.scope_timeout,
    )

    sink = CSVProfileSink(args.history) if args.history else None
    logger.info(
        f"Scoring {len(transactions)} transactions across scopes {list(config.scope_keys)}"
    )
    batch = run_dna_batch(transactions, config, sink=sink)

    output_path = args.output
    output_path.parent.mkdir(parents=True, exist_ok=True)
    profiles_to_dataframe(batch.profiles).to_csv(output_path, index=False)
    logger.info(f"DNA profiles exported to {output_path}")

    if args.report:
        report_path = args.report
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with report_path.open("w", encoding="utf-8") as f:
            f.write(_build_report(batch, args.input, len(transactions)))
        logger.info(f"DNA report exported to {report_path}")

    summary = batch.run.summary()
    logger.info(
        f"Scored {summary['total_customers']} customers; "
        f"{summary['scopes_succeeded']}/{summary['scopes_attempted']} scopes succeeded"
    )

    if not batch.run.scope_keys_succeeded or batch.persistence_errors:
        return 1
    return 0


def main() -> None:
    configure_logging()
    raise SystemExit(score_dna_cli())


if __name__ == "__main__":  # pragma: no cover
    main()
