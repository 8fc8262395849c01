"""Map extracted transactions onto stored Transaction records.

The extraction instruction already asks the model to emit negative amounts
for money leaving the account, so direction is derived from the sign alone
and never re-interpreted by statement kind.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from spendlens.database.models import StatementSummary, Transaction
from spendlens.errors import MalformedTransactionError
from spendlens.extraction.client import ExtractionSummary, RawTransaction
from spendlens.extraction.parsing import parse_number

logger = logging.getLogger(__name__)

DEBIT = "debit"
CREDIT = "credit"

STATEMENT_TYPE_BANK = "bank"
STATEMENT_TYPE_CREDIT_CARD = "credit_card"

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d")

# Bill-total differences below this are treated as rounding
BILL_TOLERANCE = 0.01


def direction_for(amount: float) -> str:
    return DEBIT if amount < 0 else CREDIT


def parse_date(value) -> str | None:
    """Return value as YYYY-MM-DD, or None if it is not a recognised date."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def normalize_statement_type(value: str | None) -> str | None:
    """Map the model's statement kind onto bank / credit_card."""
    if not value:
        return None
    key = value.strip().lower().replace("-", " ").replace("_", " ")
    if key in ("credit card", "card", "creditcard", "credit"):
        return STATEMENT_TYPE_CREDIT_CARD
    if key in ("bank", "bank account", "checking", "savings", "current account"):
        return STATEMENT_TYPE_BANK
    logger.warning("Unrecognised statement type from extraction: %r", value)
    return None


def _validate(raw: RawTransaction) -> tuple[str, str, float] | str:
    """Return (date, description, amount) or a reason string."""
    date = parse_date(raw.date)
    if date is None:
        return f"invalid date {raw.date!r}"
    if not isinstance(raw.description, str) or not raw.description.strip():
        return "missing description"
    amount = parse_number(raw.amount)
    if amount is None:
        return f"invalid amount {raw.amount!r}"
    return date, raw.description.strip(), amount


def normalize(
    raw_transactions: list[RawTransaction],
    statement_id: str,
    user_id: str,
    currency: str,
) -> list[Transaction]:
    """Validate and convert a statement's extracted transactions.

    Every item is checked before any record is built; if one or more are
    malformed, MalformedTransactionError lists all offending indices and
    nothing is returned.
    """
    validated: list[tuple[RawTransaction, str, str, float]] = []
    reasons: dict[int, str] = {}

    for i, raw in enumerate(raw_transactions):
        outcome = _validate(raw)
        if isinstance(outcome, str):
            reasons[i] = outcome
            continue
        date, description, amount = outcome
        validated.append((raw, date, description, amount))

    if reasons:
        raise MalformedTransactionError(sorted(reasons), reasons)

    txns = []
    for raw, date, description, amount in validated:
        category = raw.category.strip() if isinstance(raw.category, str) else None
        txns.append(Transaction(
            statement_id=statement_id,
            user_id=user_id,
            transaction_date=date,
            description=description,
            amount=amount,
            type=direction_for(amount),
            category=category or None,
            balance=parse_number(raw.balance),
            currency=currency,
            raw_data=json.dumps(raw.raw, ensure_ascii=False),
        ))
    return txns


def build_statement_metadata(
    summary: ExtractionSummary,
    statement_type: str | None,
    transactions: list[Transaction],
) -> dict | None:
    """Informational statement metadata.

    For card statements the reported bill total is kept for display next to
    the transaction list. It is compared with the sum of debits and any
    difference is recorded and logged, but never acted on.
    """
    if statement_type != STATEMENT_TYPE_CREDIT_CARD or summary.total_bill_amount is None:
        return None

    bill = summary.total_bill_amount
    spent = -sum(t.amount for t in transactions if t.type == DEBIT)
    difference = round(abs(bill) - spent, 2)

    metadata: dict = {
        "total_bill_amount": bill,
        "transaction_debit_total": round(spent, 2),
    }
    if abs(difference) > BILL_TOLERANCE:
        metadata["bill_difference"] = difference
        logger.warning(
            "Card statement bill total %.2f differs from transaction debits %.2f by %.2f",
            bill, spent, difference,
        )
    return metadata


def build_statement_summary(
    summary: ExtractionSummary, statement_id: str, user_id: str, currency: str,
) -> StatementSummary:
    return StatementSummary(
        statement_id=statement_id,
        user_id=user_id,
        account_number=summary.account_number,
        period_start=parse_date(summary.period_start),
        period_end=parse_date(summary.period_end),
        opening_balance=summary.opening_balance,
        total_paid_in=summary.total_paid_in,
        total_paid_out=summary.total_paid_out,
        closing_balance=summary.closing_balance,
        currency=currency,
    )
