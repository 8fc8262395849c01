"""Statement extraction via the inference service.

Sends the stored document plus a fixed instruction to the model through
an injected document_fn callback, then validates the JSON it returns into
ExtractionResult before anything else in the pipeline sees it.

document_fn has the signature (system, prompt, data, media_type) -> str and
is built from the Anthropic SDK by spendlens.ai.make_document_fn. Tests
pass plain functions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from spendlens.errors import ExtractionFormatError
from spendlens.extraction.parsing import extract_json_object, parse_number

logger = logging.getLogger(__name__)

DocumentFn = Callable[[str, str, bytes, str], str]

SYSTEM_PROMPT = (
    "You are a meticulous bookkeeping assistant. You read bank and credit "
    "card statements and return their contents as strict JSON. "
    "Return ONLY the JSON object, no other text."
)

EXTRACTION_PROMPT = """\
Extract financial transactions from this statement, and also extract the statement summary information.

First, look for statement summary information including:
1. Account number
2. Statement period (start and end dates)
3. Previous/opening balance
4. Total paid in/deposits
5. Total paid out/withdrawals
6. Closing/new balance
7. Currency (e.g. USD, EUR, JPY, GBP). Look for currency symbols like $, €, ¥, £ or currency codes.
   If amounts use '円' or '¥', or the statement is from a Japanese bank, use JPY.
8. Statement type: "bank" for bank account statements, "credit_card" for card statements.
9. For credit card statements, the single total bill amount (for Japanese cards often labelled
   "ご請求金額" or "お支払金額").

Then for each transaction, identify:
1. Date (in YYYY-MM-DD format)
2. Description (the merchant or transaction description)
3. Amount (as a number). Use NEGATIVE numbers for money leaving the account
   (withdrawals, purchases, card spending) and POSITIVE numbers for money coming in.
4. Category, chosen from this list:
{categories}
5. Running balance after the transaction (if available, otherwise null)

Do not miss any transactions: extract every line item in the transaction list.

Return a JSON object with exactly two properties:
1. "summary" - an object with the statement summary information
2. "transactions" - an array of transaction objects

Example format:
{{
  "summary": {{
    "accountNumber": "123456789",
    "period": {{"startDate": "2023-04-01", "endDate": "2023-04-30"}},
    "openingBalance": 1500.25,
    "totalPaidIn": 3000.50,
    "totalPaidOut": 2450.75,
    "closingBalance": 2050.00,
    "totalBillAmount": null,
    "currency": "USD",
    "statementType": "bank"
  }},
  "transactions": [
    {{"date": "2023-04-15", "description": "UBER EATS", "amount": -25.75,
      "category": "Eating Out", "balance": 2124.50}}
  ]
}}
"""

DEFAULT_CATEGORIES = [
    {"name": "Eating Out", "examples": ["UberEats", "DoorDash", "restaurants"]},
    {"name": "Groceries", "examples": ["Walmart", "Kroger", "Safeway"]},
    {"name": "Transportation", "examples": ["gas stations", "ride services"]},
    {"name": "Entertainment", "examples": ["Netflix", "Spotify"]},
    {"name": "Utilities", "examples": ["electric", "water", "internet"]},
    {"name": "Housing", "examples": ["rent", "mortgage"]},
    {"name": "Online Retail", "examples": ["Amazon", "Rakuten"]},
    {"name": "Software/Subscription", "examples": []},
    {"name": "Income", "examples": ["salary", "deposits"]},
    {"name": "Other", "examples": []},
]

_TOP_LEVEL_KEYS = {"summary", "transactions"}


@dataclass
class ExtractionSummary:
    """Statement-level figures reported by the model."""
    account_number: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    opening_balance: float | None = None
    total_paid_in: float | None = None
    total_paid_out: float | None = None
    closing_balance: float | None = None
    total_bill_amount: float | None = None
    currency: str | None = None
    statement_type: str | None = None
    extra: dict = field(default_factory=dict)


@dataclass
class RawTransaction:
    """One transaction as the model reported it. Validated by the normalizer."""
    date: Any
    description: Any
    amount: Any
    category: Any = None
    balance: Any = None
    raw: dict = field(default_factory=dict)


@dataclass
class ExtractionResult:
    summary: ExtractionSummary
    transactions: list[RawTransaction]


def _build_category_guide(categories: list[dict]) -> str:
    """Render the category vocabulary as a bulleted prompt section."""
    lines = []
    for cat in categories:
        name = cat.get("name", "")
        if not name:
            continue
        examples = cat.get("examples") or []
        if examples:
            lines.append(f"   - {name} (e.g. {', '.join(examples)})")
        else:
            lines.append(f"   - {name}")
    return "\n".join(lines)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_summary(data: Any) -> ExtractionSummary:
    if not isinstance(data, dict):
        raise ExtractionFormatError(
            f"'summary' must be an object, got {type(data).__name__}"
        )

    known = {
        "accountNumber", "period", "openingBalance", "totalPaidIn",
        "totalPaidOut", "closingBalance", "totalBillAmount", "currency",
        "statementType",
    }
    period = data.get("period") or {}
    if not isinstance(period, dict):
        raise ExtractionFormatError("'summary.period' must be an object")

    return ExtractionSummary(
        account_number=_optional_str(data.get("accountNumber")),
        period_start=_optional_str(period.get("startDate")),
        period_end=_optional_str(period.get("endDate")),
        opening_balance=parse_number(data.get("openingBalance")),
        total_paid_in=parse_number(data.get("totalPaidIn")),
        total_paid_out=parse_number(data.get("totalPaidOut")),
        closing_balance=parse_number(data.get("closingBalance")),
        total_bill_amount=parse_number(data.get("totalBillAmount")),
        currency=_optional_str(data.get("currency")),
        statement_type=_optional_str(data.get("statementType")),
        extra={k: v for k, v in data.items() if k not in known},
    )


def parse_extraction(data: dict) -> ExtractionResult:
    """Validate a decoded extraction object.

    Exactly "summary" (object) and "transactions" (array of objects) are
    allowed at the top level.
    """
    keys = set(data.keys())
    missing = _TOP_LEVEL_KEYS - keys
    if missing:
        raise ExtractionFormatError(
            f"Extraction response missing required field(s): {sorted(missing)}"
        )
    unknown = keys - _TOP_LEVEL_KEYS
    if unknown:
        raise ExtractionFormatError(
            f"Extraction response has unexpected field(s): {sorted(unknown)}"
        )

    items = data["transactions"]
    if not isinstance(items, list):
        raise ExtractionFormatError(
            f"'transactions' must be an array, got {type(items).__name__}"
        )

    transactions: list[RawTransaction] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ExtractionFormatError(f"Transaction #{i} is not an object")
        transactions.append(RawTransaction(
            date=item.get("date"),
            description=item.get("description"),
            amount=item.get("amount"),
            category=item.get("category"),
            balance=item.get("balance"),
            raw=item,
        ))

    return ExtractionResult(
        summary=parse_summary(data["summary"]),
        transactions=transactions,
    )


class ExtractionClient:
    """Turn a statement document into an ExtractionResult.

    One external call per extract_statement(); no retries, no caching.
    """

    def __init__(self, document_fn: DocumentFn, categories: list[dict] | None = None):
        self.document_fn = document_fn
        self.categories = categories or DEFAULT_CATEGORIES

    def build_prompt(self) -> str:
        return EXTRACTION_PROMPT.format(
            categories=_build_category_guide(self.categories)
        )

    def extract_statement(
        self, data: bytes, media_type: str = "application/pdf"
    ) -> ExtractionResult:
        """Send the document to the model and parse its answer.

        Raises:
            ExtractionServiceError: the service call failed (raised by document_fn).
            ExtractionEmptyResponseError: the model returned no text.
            ExtractionFormatError: no valid JSON object of the expected shape.
        """
        logger.info(
            "Requesting extraction for %d-byte %s document", len(data), media_type,
        )
        text = self.document_fn(SYSTEM_PROMPT, self.build_prompt(), data, media_type)
        result = parse_extraction(extract_json_object(text))
        logger.info(
            "Extraction returned %d transaction(s)", len(result.transactions),
        )
        return result
