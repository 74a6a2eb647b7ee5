"""
Excel import of GL accounts.

Reads the first worksheet of an uploaded workbook, classifies every account
code with the shared GL rules and upserts the accounts in batches keyed on
(organization_id, code).

Expected columns (header row):
    Code                      required
    Omschrijving              account name
    Balans/Winst & Verlies    "Balans" or "Winst & Verlies"
    Debet/Credit              "Debet" or "Credit"
    Categorie
    Geblokkeerd               ja/nee
    Gecomprimeerd             ja/nee
"""

import logging
from dataclasses import dataclass, field
from typing import IO, Any

import pandas as pd
from sqlalchemy.orm import Session

from flowqi.common.etl import clean_cell, coerce_bool
from flowqi.common.gl_accounts import (
    InvalidAccountCode,
    classify_account,
    normalize_balans_type,
    normalize_code,
    normalize_debet_credit,
)
from flowqi.config.loader import cfg
from flowqi.db.upserts import upsert_gl_accounts

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["Code"]

COLUMN_NAME = "Omschrijving"
COLUMN_BALANS_TYPE = "Balans/Winst & Verlies"
COLUMN_DEBET_CREDIT = "Debet/Credit"
COLUMN_CATEGORY = "Categorie"
COLUMN_BLOCKED = "Geblokkeerd"
COLUMN_COMPRESSED = "Gecomprimeerd"

DEFAULT_BATCH_SIZE = 50

# Worksheet row of the first record; the header is row 1
FIRST_DATA_ROW = 2


class ExcelImportError(Exception):
    """The workbook cannot be imported at all (unreadable, empty, missing columns)."""

    pass


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    row_errors: list[dict[str, Any]] = field(default_factory=list)

    def add_error(self, row: int | None, code: str | None, reason: str, count: int = 1) -> None:
        self.errors += count
        self.row_errors.append({"row": row, "code": code, "reason": reason})

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
            "row_errors": self.row_errors,
        }


def read_workbook(source: str | IO[bytes]) -> pd.DataFrame:
    """
    Read the first worksheet of an .xlsx/.xls workbook.

    Cells are kept as read (dtype=object) so codes are never reformatted
    beyond what Excel stored.

    Raises:
        ExcelImportError: If the file is unreadable, empty or lacks a required column
    """
    try:
        df = pd.read_excel(source, sheet_name=0, dtype=object)
    except Exception as e:
        logger.error(f"Could not read Excel workbook: {e}")
        raise ExcelImportError("Kan het Excel bestand niet verwerken.") from e

    df.columns = [str(column).strip() for column in df.columns]
    df = df.dropna(how="all")

    if df.empty:
        raise ExcelImportError("Het Excel bestand bevat geen gegevens.")

    for required in REQUIRED_COLUMNS:
        if required not in df.columns:
            raise ExcelImportError(f'Vereiste kolom "{required}" ontbreekt in het Excel bestand.')

    return df


def transform_row(
    row: dict[str, Any], organization_id: str, columns: set[str]
) -> dict[str, Any] | InvalidAccountCode:
    """
    Turn one worksheet row into a gl_accounts row.

    Only optional columns present in the sheet are written, so re-importing a
    sheet without e.g. "Geblokkeerd" leaves that flag as it was.
    """
    balans_type = normalize_balans_type(clean_cell(row.get(COLUMN_BALANS_TYPE)))
    debet_credit = normalize_debet_credit(clean_cell(row.get(COLUMN_DEBET_CREDIT)))

    classification = classify_account(row.get("Code"), balans_type, debet_credit)
    if isinstance(classification, InvalidAccountCode):
        return classification

    name = clean_cell(row.get(COLUMN_NAME))
    account = {
        "organization_id": organization_id,
        "code": classification.code,
        "name": str(name) if name is not None else classification.code,
        "parent_code": classification.parent_code,
        "level": classification.level,
        "type": classification.account_type.value,
    }

    if COLUMN_BALANS_TYPE in columns:
        account["balans_type"] = balans_type.value if balans_type else None
    if COLUMN_DEBET_CREDIT in columns:
        account["debet_credit"] = debet_credit.value if debet_credit else None
    if COLUMN_CATEGORY in columns:
        category = clean_cell(row.get(COLUMN_CATEGORY))
        account["category"] = str(category) if category is not None else None
    if COLUMN_BLOCKED in columns:
        account["is_blocked"] = coerce_bool(row.get(COLUMN_BLOCKED))
    if COLUMN_COMPRESSED in columns:
        account["is_compressed"] = coerce_bool(row.get(COLUMN_COMPRESSED))

    return account


def _upsert_batch(batch: list[dict], session: Session | None) -> None:
    if session is None:
        upsert_gl_accounts(batch)
        return
    # Savepoint, so a failed batch does not abort the caller's transaction
    with session.begin_nested():
        upsert_gl_accounts(batch, session=session)


def import_gl_accounts(
    source: str | IO[bytes] | pd.DataFrame,
    organization_id: str,
    session: Session | None = None,
    batch_size: int | None = None,
) -> ImportResult:
    """
    Import GL accounts from an Excel workbook.

    Rows with a blank code are skipped (not errors). Rows whose code is not
    numeric, and repeats of a code already seen, are errors with a reason.
    A batch that fails to persist counts all its rows as errors; the import
    continues with the next batch.

    Args:
        source: Path, file object or an already loaded DataFrame whose index
            counts worksheet rows from the first data row (0)
        organization_id: Organization the accounts belong to
        session: Database session (one transaction per batch when omitted)
        batch_size: Rows per upsert (importer.batch_size, default 50)

    Raises:
        ExcelImportError: If the workbook as a whole cannot be imported
    """
    df = source if isinstance(source, pd.DataFrame) else read_workbook(source)
    batch_size = batch_size or cfg("importer.batch_size", DEFAULT_BATCH_SIZE)
    columns = set(df.columns)

    result = ImportResult()
    accounts: list[dict] = []
    seen_codes: set[str] = set()

    # Index labels survive dropna, so they still point at the worksheet row
    for index, series in df.iterrows():
        row = series.to_dict()
        excel_row = int(index) + FIRST_DATA_ROW

        if not normalize_code(row.get("Code")):
            result.skipped += 1
            continue

        account = transform_row(row, organization_id, columns)
        if isinstance(account, InvalidAccountCode):
            result.add_error(excel_row, account.code, account.reason)
            continue

        if account["code"] in seen_codes:
            result.add_error(
                excel_row, account["code"], f"Code '{account['code']}' komt meerdere keren voor"
            )
            continue

        seen_codes.add(account["code"])
        accounts.append(account)

    for start in range(0, len(accounts), batch_size):
        batch = accounts[start : start + batch_size]
        try:
            _upsert_batch(batch, session)
            result.imported += len(batch)
        except Exception as e:
            logger.error(f"Failed to import GL account batch starting at {batch[0]['code']}: {e}")
            result.add_error(None, batch[0]["code"], str(e), count=len(batch))

    logger.info(
        f"Excel GL account import for organization {organization_id}: "
        f"{result.imported} imported, {result.skipped} skipped, {result.errors} errors"
    )
    return result
