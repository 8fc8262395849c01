"""Tests for JSON-in-text extraction and number parsing."""

import pytest

from spendlens.errors import ExtractionEmptyResponseError, ExtractionFormatError
from spendlens.extraction.parsing import extract_json_object, parse_number


class TestExtractJsonObject:
    def test_bare_object(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_code_fenced(self):
        text = 'Here you go:\n```json\n{"summary": {}, "transactions": []}\n```'
        assert extract_json_object(text) == {"summary": {}, "transactions": []}

    def test_prose_with_braces_before_object(self):
        text = 'Note {not json} then {"a": {"b": 2}} trailing {"c": 3}'
        assert extract_json_object(text) == {"a": {"b": 2}}

    def test_first_object_wins(self):
        assert extract_json_object('{"first": 1}\n{"second": 2}') == {"first": 1}

    def test_non_ascii_content(self):
        text = '{"description": "セブン-イレブン 渋谷", "amount": -540}'
        assert extract_json_object(text)["description"] == "セブン-イレブン 渋谷"

    @pytest.mark.parametrize("text", [None, "", "   \n  "])
    def test_empty(self, text):
        with pytest.raises(ExtractionEmptyResponseError):
            extract_json_object(text)

    @pytest.mark.parametrize("text", [
        "I could not read this statement.",
        "[1, 2, 3]",
        '{"truncated": [1, 2',
    ])
    def test_no_object(self, text):
        with pytest.raises(ExtractionFormatError):
            extract_json_object(text)


class TestParseNumber:
    @pytest.mark.parametrize("value,expected", [
        (12, 12.0),
        (-3.5, -3.5),
        ("1,234.56", 1234.56),
        ("$1,234.56", 1234.56),
        ("¥12,000", 12000.0),
        ("12,000円", 12000.0),
        ("(45.00)", -45.0),
        ("45.00 DR", -45.0),
        ("45.00CR", 45.0),
        ("-7", -7.0),
        ("RM 10.50", 10.5),
    ])
    def test_parses(self, value, expected):
        assert parse_number(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", [
        None, True, False, "", "  ", "-", "abc", [], {}, "nan", float("inf"),
    ])
    def test_rejects(self, value):
        assert parse_number(value) is None

    @pytest.mark.parametrize("value", ["1.234,56", "12,5", "-1234,56", "1,23,456", "€ 1.000,00"])
    def test_rejects_decimal_comma(self, value):
        assert parse_number(value) is None

    def test_grouped_negative(self):
        assert parse_number("-1,234,567.89") == pytest.approx(-1234567.89)
