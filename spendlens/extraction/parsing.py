"""Helpers for pulling structured data out of free-form model output."""

from __future__ import annotations

import json
import math
import re
from typing import Any

from spendlens.errors import ExtractionEmptyResponseError, ExtractionFormatError

_DECODER = json.JSONDecoder()

# Currency markers stripped before numeric conversion
_CURRENCY_MARKS = re.compile(r"[$€£¥円]|\b(?:USD|EUR|GBP|JPY|MYR|RM)\b", re.IGNORECASE)

# Commas are only read as thousands separators: 1,234 or 1,234,567.89
_GROUPED_NUMBER = re.compile(r"[-+]?\d{1,3}(?:,\d{3})+(?:\.\d+)?")


def extract_json_object(text: str | None) -> dict:
    """Return the first JSON object embedded in text.

    The model is asked for bare JSON but routinely wraps it in prose or
    code fences. Each '{' is tried in order as the start of an object, so
    the first decodable object wins and anything after it is ignored.

    Raises:
        ExtractionEmptyResponseError: text is None or blank.
        ExtractionFormatError: no decodable JSON object in text.
    """
    if text is None or not text.strip():
        raise ExtractionEmptyResponseError("No text returned by the model")

    start = text.find("{")
    while start != -1:
        try:
            obj, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)

    raise ExtractionFormatError(
        f"No JSON object found in model response: {text[:200]!r}"
    )


def parse_number(value: Any) -> float | None:
    """Convert numbers and numeric strings to float.

    Handles thousands separators, currency symbols, parentheses for
    negatives and trailing CR/DR markers. Returns None when the value
    cannot be read as a number, including decimal-comma formats such as
    "1.234,56". Booleans are not numbers.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    if not isinstance(value, str):
        return None

    cleaned = value.strip()
    if not cleaned:
        return None

    sign = 1.0
    upper = cleaned.upper()
    if upper.endswith("CR"):
        cleaned = cleaned[:-2].strip()
    elif upper.endswith("DR"):
        cleaned = cleaned[:-2].strip()
        sign = -1.0

    cleaned = _CURRENCY_MARKS.sub("", cleaned).replace(" ", "")

    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = cleaned[1:-1]
        sign *= -1.0

    if "," in cleaned:
        # Decimal-comma amounts (1.234,56, 12,5) are not accepted
        if not _GROUPED_NUMBER.fullmatch(cleaned):
            return None
        cleaned = cleaned.replace(",", "")

    if cleaned in ("", "-", "--"):
        return None

    try:
        number = float(cleaned) * sign
    except ValueError:
        return None
    return number if math.isfinite(number) else None
