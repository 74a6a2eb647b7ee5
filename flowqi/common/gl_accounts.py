"""
General-ledger account classification for FlowQi.

Derives the hierarchy level, parent code and income/expense/balance type of a
GL account from its numeric code. The same rules serve the Excel importer and
the Exact Online sync job.

Hierarchy:
    level 1 - hoofdgroep (code ends in "00", e.g. "4300")
    level 2 - subgroep   (code ends in "0",  e.g. "4310")
    level 3 - kostenpost (anything else,     e.g. "4311")
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class AccountType(str, Enum):
    """Type of a GL account as shown to users."""

    INKOMSTEN = "Inkomsten"
    UITGAVEN = "Uitgaven"
    BALANS = "Balans"


class BalansType(str, Enum):
    WINST_VERLIES = "Winst & Verlies"
    BALANS = "Balans"


class DebetCredit(str, Enum):
    DEBET = "Debet"
    CREDIT = "Credit"


INCOME_PREFIXES = ("8", "9")
EXPENSE_PREFIXES = ("4", "5", "6", "7")

_NUMERIC_CODE_RE = re.compile(r"[0-9]+")

# Exact Online reports BalanceType as W/B and BalanceSide as D/C
_BALANS_TYPE_ALIASES = {
    "winst & verlies": BalansType.WINST_VERLIES,
    "winst en verlies": BalansType.WINST_VERLIES,
    "w": BalansType.WINST_VERLIES,
    "profit & loss": BalansType.WINST_VERLIES,
    "balans": BalansType.BALANS,
    "b": BalansType.BALANS,
    "balance sheet": BalansType.BALANS,
}

_DEBET_CREDIT_ALIASES = {
    "debet": DebetCredit.DEBET,
    "debit": DebetCredit.DEBET,
    "d": DebetCredit.DEBET,
    "credit": DebetCredit.CREDIT,
    "c": DebetCredit.CREDIT,
}


@dataclass(frozen=True)
class GLAccountClassification:
    """Derived hierarchy position and type of a GL account code."""

    code: str
    level: int
    parent_code: str | None
    account_type: AccountType

    @property
    def level_name(self) -> str:
        return {1: "hoofdgroep", 2: "subgroep"}.get(self.level, "kostenpost")


@dataclass(frozen=True)
class InvalidAccountCode:
    """A code that cannot be classified, with the reason why."""

    code: str
    reason: str


def is_numeric_code(code: str) -> bool:
    """True for a non-empty code of ASCII digits only."""
    return bool(code) and _NUMERIC_CODE_RE.fullmatch(code) is not None


def normalize_code(code: Any) -> str:
    """
    Normalize a raw account code to a string.

    Spreadsheet cells holding numbers arrive as floats ("4310.0"); those are
    turned back into their integer text. None becomes an empty string.
    """
    if code is None:
        return ""
    if isinstance(code, float):
        if code != code:  # NaN
            return ""
        if code.is_integer():
            return str(int(code))
    text = str(code).strip()
    if text.endswith(".0") and is_numeric_code(text[:-2]):
        text = text[:-2]
    return text


def normalize_balans_type(value: Any) -> BalansType | None:
    """Map a free-form balance-type value onto BalansType, or None if unknown."""
    if value is None:
        return None
    if isinstance(value, BalansType):
        return value
    return _BALANS_TYPE_ALIASES.get(str(value).strip().lower())


def normalize_debet_credit(value: Any) -> DebetCredit | None:
    """Map a free-form debit/credit value onto DebetCredit, or None if unknown."""
    if value is None:
        return None
    if isinstance(value, DebetCredit):
        return value
    return _DEBET_CREDIT_ALIASES.get(str(value).strip().lower())


def determine_level(code: str) -> int:
    """
    Determine the hierarchy level of an account code.

    Empty or non-numeric codes fall back to level 1.
    """
    if not is_numeric_code(code):
        return 1
    if code.endswith("00"):
        return 1
    if code.endswith("0"):
        return 2
    return 3


def determine_parent_code(code: str, level: int) -> str | None:
    """
    Derive the parent code for an account at the given level.

    Level 2 accounts hang under their first two digits + "00", level 3 accounts
    under their first three digits + "0". Short codes are not validated.
    """
    if level == 1:
        return None
    if level == 2:
        return code[:2] + "00"
    return code[:3] + "0"


def determine_type(
    code: str,
    balans_type: Any = None,
    debet_credit: Any = None,
) -> AccountType:
    """
    Determine whether an account is income, expense or balance sheet.

    The leading digit decides first (8/9 income, 4-7 expense). For any other
    code a profit & loss account falls back on its debit/credit side; the rest
    is balance sheet.
    """
    if code:
        if code.startswith(INCOME_PREFIXES):
            return AccountType.INKOMSTEN
        if code.startswith(EXPENSE_PREFIXES):
            return AccountType.UITGAVEN

    if normalize_balans_type(balans_type) == BalansType.WINST_VERLIES:
        side = normalize_debet_credit(debet_credit)
        if side == DebetCredit.DEBET:
            return AccountType.UITGAVEN
        if side == DebetCredit.CREDIT:
            return AccountType.INKOMSTEN

    return AccountType.BALANS


def classify_account(
    code: Any,
    balans_type: Any = None,
    debet_credit: Any = None,
) -> GLAccountClassification | InvalidAccountCode:
    """
    Classify an account code.

    Returns an InvalidAccountCode instead of raising when the code is empty or
    not all digits, leaving the caller to decide between rejecting the row and
    applying defaults (see classify_or_default).
    """
    normalized = normalize_code(code)

    if not normalized:
        return InvalidAccountCode(code=normalized, reason="Code is leeg")
    if not is_numeric_code(normalized):
        return InvalidAccountCode(
            code=normalized, reason=f"Code '{normalized}' bevat andere tekens dan cijfers"
        )

    level = determine_level(normalized)
    return GLAccountClassification(
        code=normalized,
        level=level,
        parent_code=determine_parent_code(normalized, level),
        account_type=determine_type(normalized, balans_type, debet_credit),
    )


def classify_or_default(
    code: Any,
    balans_type: Any = None,
    debet_credit: Any = None,
) -> GLAccountClassification:
    """Classify an account code, applying level 1 / no parent to invalid codes."""
    result = classify_account(code, balans_type, debet_credit)
    if isinstance(result, GLAccountClassification):
        return result

    logger.debug(f"Defaulting unclassifiable code '{result.code}': {result.reason}")
    return GLAccountClassification(
        code=result.code,
        level=determine_level(result.code),
        parent_code=None,
        account_type=determine_type(result.code, balans_type, debet_credit),
    )


# Hierarchy helpers over account dicts ({"code", "level", "parent_code", ...})


def group_by_level(accounts: list[dict]) -> dict[str, list[dict]]:
    """Split accounts into hoofdgroepen, subgroepen and kostenposten."""
    return {
        "hoofdgroepen": [a for a in accounts if a.get("level") == 1],
        "subgroepen": [a for a in accounts if a.get("level") == 2],
        "kostenposten": [a for a in accounts if a.get("level") == 3],
    }


def find_children(accounts: list[dict], parent_code: str) -> list[dict]:
    """Return the accounts directly below parent_code."""
    return [a for a in accounts if a.get("parent_code") == parent_code]


def find_orphans(accounts: list[dict]) -> list[dict]:
    """Return accounts whose parent code does not exist among the accounts."""
    codes = {a.get("code") for a in accounts}
    return [a for a in accounts if a.get("parent_code") and a["parent_code"] not in codes]


@dataclass
class HierarchyNode:
    account: dict
    children: list["HierarchyNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.account,
            "children": [child.to_dict() for child in self.children],
        }


def build_hierarchy(accounts: list[dict]) -> list[HierarchyNode]:
    """
    Build the hoofdgroep > subgroep > kostenpost tree.

    Accounts are sorted by code at every level. Orphans are left out of the
    tree; use find_orphans to report them.
    """
    ordered = sorted(accounts, key=lambda a: str(a.get("code", "")))
    nodes = {a["code"]: HierarchyNode(account=a) for a in ordered if a.get("code")}

    roots = []
    for account in ordered:
        node = nodes.get(account.get("code"))
        if node is None:
            continue
        parent_code = account.get("parent_code")
        if account.get("level") == 1 or not parent_code:
            roots.append(node)
        elif parent_code in nodes:
            nodes[parent_code].children.append(node)

    return roots
