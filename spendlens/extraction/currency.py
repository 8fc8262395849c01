"""Currency inference for an extracted statement.

The model's reported currency is the starting point, but the model is
observed to mis-detect currency on Japanese statements more often than the
file name does, so a Japanese-looking file name forces JPY when the
override is enabled.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

DEFAULT_BASELINE_CURRENCY = "USD"

DEFAULT_JAPANESE_BANK_KEYWORDS = (
    "smbc",
    "mizuho",
    "mufg",
    "resona",
    "rakuten",
    "yucho",
    "sumitomo",
    "paypay",
)

# Hiragana, Katakana (incl. phonetic extensions and half-width forms),
# and CJK unified ideographs (which covers 円 as well as kanji).
_JAPANESE_SCRIPT = re.compile(
    r"[\u3040-\u309f\u30a0-\u30ff\u31f0-\u31ff\u4e00-\u9fff\uff66-\uff9f]"
)

_CURRENCY_CODE = re.compile(r"^[A-Za-z]{3}$")

# Bare symbols the model sometimes reports instead of a code
_SYMBOL_CODES = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "円": "JPY"}


@dataclass(frozen=True)
class CurrencyPolicy:
    baseline: str = DEFAULT_BASELINE_CURRENCY
    japanese_override: bool = True
    japanese_bank_keywords: tuple[str, ...] = field(
        default=DEFAULT_JAPANESE_BANK_KEYWORDS
    )


def has_japanese_script(text: str) -> bool:
    return bool(_JAPANESE_SCRIPT.search(text))


def looks_japanese(file_name: str, keywords: tuple[str, ...]) -> bool:
    """True if file_name has Japanese script or names a known Japanese bank."""
    if has_japanese_script(file_name):
        return True
    lowered = file_name.lower()
    return any(kw.lower() in lowered for kw in keywords if kw)


def normalize_currency_code(code: str | None) -> str | None:
    """Upper-case a 3-letter currency code; anything else becomes None.

    A lone currency symbol is mapped to its code.
    """
    if not isinstance(code, str):
        return None
    code = code.strip()
    if code in _SYMBOL_CODES:
        return _SYMBOL_CODES[code]
    if not _CURRENCY_CODE.match(code):
        return None
    return code.upper()


def infer_currency(
    summary_currency: str | None,
    file_name: str,
    policy: CurrencyPolicy = CurrencyPolicy(),
) -> str:
    """Pick the currency code for a statement's transactions.

    Pure and deterministic: baseline, replaced by a well-formed summary
    code, replaced by JPY when the file name looks Japanese and the
    override is on.
    """
    currency = normalize_currency_code(summary_currency) or policy.baseline

    if policy.japanese_override and looks_japanese(
        file_name, policy.japanese_bank_keywords
    ):
        return "JPY"

    return currency
