#!/usr/bin/env python3
"""
Exact Online Transactions ETL Job

Syncs financial transaction lines booked within a date window into
actual_entries. Amounts are stored as absolute values with is_expense set
for negative (foreign-currency) amounts; rows are upserted on
(organization_id, exact_id).

Usage:
    python -m flowqi.jobs.exact_transactions --org ORGANIZATION_ID --start-date YYYY-MM-DD --end-date YYYY-MM-DD
"""

import argparse
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from flowqi.adapters.exact import ExactClient, create_exact_client
from flowqi.common.etl import coerce_decimal, coerce_int, parse_iso_date, parse_odata_date
from flowqi.common.gl_accounts import normalize_code
from flowqi.config.loader import get_job_config
from flowqi.db.sync_log import complete_sync_log, fail_sync_log, start_sync_log
from flowqi.db.upserts import upsert_actual_entries
from flowqi.utils.time_windows import compute_date_window, validate_date_range

logger = logging.getLogger(__name__)

SYNC_TYPE = "transactions"


def transform_transaction(transaction: dict, organization_id: str, synced_at: datetime) -> dict:
    """Transform an Exact TransactionLine record to database format.

    Raises:
        ValueError: If ID, date or amount is missing
    """
    exact_id = transaction.get("ID")
    if not exact_id:
        raise ValueError("Transaction line has no ID")

    booked = parse_odata_date(transaction.get("Date") or transaction.get("EntryDate"))
    if booked is None:
        raise ValueError(f"Transaction line {exact_id} has no date")

    amount = coerce_decimal(transaction.get("AmountFC"))
    if amount is None:
        raise ValueError(f"Transaction line {exact_id} has no amount")

    return {
        "organization_id": organization_id,
        "exact_id": str(exact_id),
        "entry_number": coerce_int(transaction.get("EntryNumber")),
        "date": booked.date(),
        "description": transaction.get("Description"),
        "amount": abs(amount),
        "is_expense": amount < 0,
        "gl_account_code": normalize_code(transaction.get("GLAccountCode")) or None,
        "gl_account_description": transaction.get("GLAccountDescription"),
        "last_synced_at": synced_at,
    }


def run_exact_transactions_etl(
    organization_id: str,
    start_date: Any = None,
    end_date: Any = None,
    client: ExactClient | None = None,
    session: Session | None = None,
    lookback_days: int | None = None,
    **kwargs,
) -> dict[str, int]:
    """
    Run the Exact Online transactions ETL job for one organization.

    Args:
        organization_id: FlowQi organization to sync
        start_date: First booking date (date or YYYY-MM-DD), inclusive
        end_date: Last booking date (date or YYYY-MM-DD), inclusive
        client: Exact client; built from the stored token when omitted
        session: Database session for the upsert (own session when omitted)
        lookback_days: Window ending today, used only when both dates are omitted

    Returns:
        Dict with processed, created, updated and failed counts

    Raises:
        ValueError: If a date is malformed or start_date is after end_date
    """
    if start_date is None and end_date is None:
        days = lookback_days or get_job_config(SYNC_TYPE).get("lookback_days", 31)
        start, end = compute_date_window(days)
        logger.info(f"Using lookback period: {start} to {end} ({days} days)")
    else:
        start = parse_iso_date(start_date)
        end = parse_iso_date(end_date)
    validate_date_range(start, end)

    logger.info(
        f"Starting Exact transactions ETL for organization {organization_id} ({start} to {end})"
    )

    log_id = start_sync_log(organization_id, SYNC_TYPE, start_date=start, end_date=end)
    counts = {"processed": 0, "created": 0, "updated": 0, "failed": 0}

    try:
        client = client or create_exact_client(organization_id)

        transactions = client.get_transactions(start, end)
        logger.info(f"Retrieved {len(transactions)} transaction lines from Exact Online")

        synced_at = datetime.now(UTC)
        rows = {}
        for transaction in transactions:
            counts["processed"] += 1
            try:
                row = transform_transaction(transaction, organization_id, synced_at)
            except Exception as e:
                counts["failed"] += 1
                logger.error(f"Error transforming transaction line {transaction.get('ID')}: {e}")
                continue
            rows[row["exact_id"]] = row

        if rows:
            created, updated = upsert_actual_entries(list(rows.values()), session=session)
            counts["created"] = created
            counts["updated"] = updated
        else:
            logger.info("No transaction lines to upsert")

        complete_sync_log(log_id, counts)
        logger.info(
            f"Exact transactions ETL completed: {counts['created']} created, "
            f"{counts['updated']} updated, {counts['failed']} failed, "
            f"{counts['processed']} processed"
        )
        return counts

    except Exception as e:
        logger.error(f"Error in Exact transactions ETL: {e}")
        fail_sync_log(log_id, str(e), counts)
        raise


def main():
    """CLI entry point for the Exact transactions ETL job."""
    parser = argparse.ArgumentParser(description="Exact Online Transactions ETL Job")
    parser.add_argument("--org", required=True, help="Organization ID to sync")
    parser.add_argument("--start-date", help="First booking date (YYYY-MM-DD)")
    parser.add_argument("--end-date", help="Last booking date (YYYY-MM-DD)")
    parser.add_argument("--lookback-days", type=int, help="Days to sync when no dates are given")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if bool(args.start_date) != bool(args.end_date):
        logger.error("Give both --start-date and --end-date, or neither")
        return 1

    try:
        result = run_exact_transactions_etl(
            organization_id=args.org,
            start_date=args.start_date,
            end_date=args.end_date,
            lookback_days=args.lookback_days,
        )
        print(f"Transactions ETL Result: {result}")
        return 0

    except Exception as e:
        logger.error(f"Failed to run Exact transactions ETL: {e}")
        return 1


if __name__ == "__main__":
    exit(main())
