"""Spending insights via the inference service.

Uses the same text_fn callback as the rest of the project:
(system: str, prompt: str) -> str. The model's answer is validated into an
InsightsPayload; the camelCase field names are the stored wire format.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from spendlens.database.models import Transaction
from spendlens.errors import ExtractionFormatError, NoTransactionDataError
from spendlens.extraction.parsing import extract_json_object, parse_number

logger = logging.getLogger(__name__)

TextFn = Callable[[str, str], str]

SYSTEM_PROMPT = (
    "You are a personal financial advisor. You analyse transaction histories "
    "and answer with a single JSON object. Return ONLY the JSON object, no "
    "other text."
)

INSIGHTS_PROMPT = """\
Analyze these transactions and provide financial insights.

Transaction data:
{transactions}

Please provide the following:

1. Top Spending Categories: Identify the top 3-5 categories where most money was spent, with amounts and percentages.
2. Monthly Summary: Summarize total income, expenses, and net cash flow.
3. Unusual Activity: Identify any unusually large transactions or spending patterns that seem abnormal.
4. Spending Trends: Describe any notable spending trends or patterns in a short paragraph.
5. Actionable Recommendations: Provide 2-3 specific, practical recommendations to improve financial health.

Return the data as a valid JSON object with exactly these properties:
{{
  "topCategories": [
    {{"category": "Eating Out", "amount": 450.25, "percentage": 28}}
  ],
  "monthlySummary": {{
    "totalIncome": 3000.00,
    "totalExpenses": 1600.50,
    "netCashFlow": 1399.50
  }},
  "unusualActivity": [
    {{"description": "Large withdrawal of $500 on March 15", "amount": 500.00}}
  ],
  "spendingTrends": "Spending on food delivery has increased compared to previous periods.",
  "recommendations": [
    "Consider reducing food delivery expenses by cooking at home more often"
  ]
}}
"""

_REQUIRED_KEYS = {
    "topCategories",
    "monthlySummary",
    "unusualActivity",
    "spendingTrends",
    "recommendations",
}
_ALLOWED_KEYS = _REQUIRED_KEYS | {"currency"}


@dataclass
class CategorySpend:
    category: str
    amount: float
    percentage: float


@dataclass
class MonthlySummary:
    total_income: float
    total_expenses: float
    net_cash_flow: float


@dataclass
class UnusualActivity:
    description: str
    amount: float | None = None


@dataclass
class InsightsPayload:
    top_categories: list[CategorySpend]
    monthly_summary: MonthlySummary
    unusual_activity: list[UnusualActivity]
    spending_trends: str
    recommendations: list[str] = field(default_factory=list)
    currency: str | None = None

    def to_dict(self) -> dict:
        data = {
            "topCategories": [
                {"category": c.category, "amount": c.amount, "percentage": c.percentage}
                for c in self.top_categories
            ],
            "monthlySummary": {
                "totalIncome": self.monthly_summary.total_income,
                "totalExpenses": self.monthly_summary.total_expenses,
                "netCashFlow": self.monthly_summary.net_cash_flow,
            },
            "unusualActivity": [
                {"description": u.description, "amount": u.amount}
                for u in self.unusual_activity
            ],
            "spendingTrends": self.spending_trends,
            "recommendations": list(self.recommendations),
        }
        if self.currency is not None:
            data["currency"] = self.currency
        return data

    @classmethod
    def from_dict(cls, data: Any) -> InsightsPayload:
        """Validate a decoded insights object.

        Raises:
            ExtractionFormatError: missing/unknown fields or wrong types.
        """
        if not isinstance(data, dict):
            raise ExtractionFormatError("Insights response is not a JSON object")

        missing = _REQUIRED_KEYS - data.keys()
        if missing:
            raise ExtractionFormatError(
                f"Insights response missing required field(s): {sorted(missing)}"
            )
        unknown = data.keys() - _ALLOWED_KEYS
        if unknown:
            raise ExtractionFormatError(
                f"Insights response has unexpected field(s): {sorted(unknown)}"
            )

        return cls(
            top_categories=[
                _parse_category(i, c) for i, c in enumerate(_as_list(data, "topCategories"))
            ],
            monthly_summary=_parse_monthly(data["monthlySummary"]),
            unusual_activity=[
                _parse_unusual(i, u) for i, u in enumerate(_as_list(data, "unusualActivity"))
            ],
            spending_trends=_as_str(data["spendingTrends"], "spendingTrends"),
            recommendations=[
                _as_str(r, f"recommendations[{i}]")
                for i, r in enumerate(_as_list(data, "recommendations"))
            ],
            currency=data.get("currency"),
        )


def _as_list(data: dict, key: str) -> list:
    value = data[key]
    if not isinstance(value, list):
        raise ExtractionFormatError(f"'{key}' must be an array")
    return value


def _as_str(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ExtractionFormatError(f"'{where}' must be a string")
    return value


def _required_number(value: Any, where: str) -> float:
    number = parse_number(value)
    if number is None:
        raise ExtractionFormatError(f"'{where}' must be a number, got {value!r}")
    return number


def _parse_category(i: int, item: Any) -> CategorySpend:
    if not isinstance(item, dict):
        raise ExtractionFormatError(f"'topCategories[{i}]' must be an object")
    return CategorySpend(
        category=_as_str(item.get("category"), f"topCategories[{i}].category"),
        amount=_required_number(item.get("amount"), f"topCategories[{i}].amount"),
        percentage=_required_number(item.get("percentage"), f"topCategories[{i}].percentage"),
    )


def _parse_monthly(item: Any) -> MonthlySummary:
    if not isinstance(item, dict):
        raise ExtractionFormatError("'monthlySummary' must be an object")
    return MonthlySummary(
        total_income=_required_number(item.get("totalIncome"), "monthlySummary.totalIncome"),
        total_expenses=_required_number(item.get("totalExpenses"), "monthlySummary.totalExpenses"),
        net_cash_flow=_required_number(item.get("netCashFlow"), "monthlySummary.netCashFlow"),
    )


def _parse_unusual(i: int, item: Any) -> UnusualActivity:
    if not isinstance(item, dict):
        raise ExtractionFormatError(f"'unusualActivity[{i}]' must be an object")
    return UnusualActivity(
        description=_as_str(item.get("description"), f"unusualActivity[{i}].description"),
        amount=parse_number(item.get("amount")),
    )


def simplify_transactions(transactions: Iterable[Transaction | dict]) -> list[dict]:
    """Reduce transactions to date/description/amount/category for the prompt."""
    simplified = []
    for t in transactions:
        if isinstance(t, Transaction):
            simplified.append({
                "date": t.transaction_date,
                "description": t.description,
                "amount": t.amount,
                "category": t.category,
            })
        else:
            simplified.append({
                "date": t.get("date"),
                "description": t.get("description"),
                "amount": t.get("amount"),
                "category": t.get("category"),
            })
    return simplified


class InsightsClient:
    def __init__(self, text_fn: TextFn):
        self.text_fn = text_fn

    def generate_insights(self, transactions: list[Transaction | dict]) -> InsightsPayload:
        """Ask the model for an insights summary of the given transactions.

        Raises:
            NoTransactionDataError: transactions is empty (no call is made).
            ExtractionServiceError: the service call failed (raised by text_fn).
            ExtractionEmptyResponseError: the model returned no text.
            ExtractionFormatError: no valid insights object in the response.
        """
        if not transactions:
            raise NoTransactionDataError()

        simplified = simplify_transactions(transactions)
        prompt = INSIGHTS_PROMPT.format(
            transactions=json.dumps(simplified, ensure_ascii=False)
        )
        logger.info("Requesting insights for %d transaction(s)", len(simplified))
        text = self.text_fn(SYSTEM_PROMPT, prompt)
        return InsightsPayload.from_dict(extract_json_object(text))
