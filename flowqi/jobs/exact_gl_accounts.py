#!/usr/bin/env python3
"""
Exact Online GL Accounts ETL Job

Syncs the chart of accounts of an organization's Exact Online division into
gl_accounts. Every account is classified with the shared GL rules (level,
parent code, type) and upserted on (organization_id, code).

Usage:
    python -m flowqi.jobs.exact_gl_accounts --org ORGANIZATION_ID
"""

import argparse
import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from flowqi.adapters.exact import ExactClient, create_exact_client
from flowqi.common.gl_accounts import (
    classify_or_default,
    normalize_balans_type,
    normalize_code,
    normalize_debet_credit,
)
from flowqi.db.sync_log import complete_sync_log, fail_sync_log, start_sync_log
from flowqi.db.upserts import upsert_gl_accounts

logger = logging.getLogger(__name__)

SYNC_TYPE = "gl_accounts"


def transform_gl_account(account: dict, organization_id: str, synced_at: datetime) -> dict:
    """Transform an Exact GLAccount record to database format.

    Raises:
        ValueError: If the record has no code
    """
    code = normalize_code(account.get("Code"))
    if not code:
        raise ValueError(f"GL account {account.get('ID')} has no code")

    balans_type = normalize_balans_type(account.get("BalanceType"))
    debet_credit = normalize_debet_credit(account.get("BalanceSide"))
    classification = classify_or_default(code, balans_type, debet_credit)

    return {
        "organization_id": organization_id,
        "code": code,
        "name": (account.get("Description") or "").strip() or code,
        "parent_code": classification.parent_code,
        "level": classification.level,
        "category": account.get("TypeDescription"),
        "type": classification.account_type.value,
        "balans_type": balans_type.value if balans_type else None,
        "debet_credit": debet_credit.value if debet_credit else None,
        "is_blocked": bool(account.get("IsBlocked", False)),
        "exact_id": account.get("ID"),
        "last_synced_at": synced_at,
    }


def run_exact_gl_accounts_etl(
    organization_id: str,
    client: ExactClient | None = None,
    session: Session | None = None,
    **kwargs,
) -> dict[str, int]:
    """
    Run the Exact Online GL accounts ETL job for one organization.

    Args:
        organization_id: FlowQi organization to sync
        client: Exact client; built from the stored token when omitted
        session: Database session for the upsert (own session when omitted)

    Returns:
        Dict with processed, created, updated and failed counts
    """
    logger.info(f"Starting Exact GL accounts ETL for organization {organization_id}")

    log_id = start_sync_log(organization_id, SYNC_TYPE)
    counts = {"processed": 0, "created": 0, "updated": 0, "failed": 0}

    try:
        client = client or create_exact_client(organization_id)

        accounts = client.get_gl_accounts()
        logger.info(f"Retrieved {len(accounts)} GL accounts from Exact Online")

        synced_at = datetime.now(UTC)
        rows = {}
        for account in accounts:
            counts["processed"] += 1
            try:
                row = transform_gl_account(account, organization_id, synced_at)
            except Exception as e:
                counts["failed"] += 1
                logger.error(f"Error transforming GL account {account.get('ID')}: {e}")
                continue
            # Last one wins on duplicate codes, a single upsert cannot touch a row twice
            rows[row["code"]] = row

        if rows:
            created, updated = upsert_gl_accounts(list(rows.values()), session=session)
            counts["created"] = created
            counts["updated"] = updated
        else:
            logger.warning("No valid GL accounts to upsert after transformation")

        complete_sync_log(log_id, counts)
        logger.info(
            f"Exact GL accounts ETL completed: {counts['created']} created, "
            f"{counts['updated']} updated, {counts['failed']} failed, "
            f"{counts['processed']} processed"
        )
        return counts

    except Exception as e:
        logger.error(f"Error in Exact GL accounts ETL: {e}")
        fail_sync_log(log_id, str(e), counts)
        raise


def main():
    """CLI entry point for the Exact GL accounts ETL job."""
    parser = argparse.ArgumentParser(description="Exact Online GL Accounts ETL Job")
    parser.add_argument("--org", required=True, help="Organization ID to sync")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        result = run_exact_gl_accounts_etl(organization_id=args.org)
        print(f"GL accounts ETL Result: {result}")
        return 0

    except Exception as e:
        logger.error(f"Failed to run Exact GL accounts ETL: {e}")
        return 1


if __name__ == "__main__":
    exit(main())
