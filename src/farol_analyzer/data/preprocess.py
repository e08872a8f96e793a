"""
Data preprocessing helpers for contract data.
Cleaning and normalizing text, numbers, dates and tax ids, shared by the
normalizer and the classifier. Every function here is pure.
"""

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Optional, Union

import pandas as pd


def clean_text(text: str) -> str:
    """
    Clean and normalize text data.

    Args:
        text: Input text to clean

    Returns:
        Cleaned text
    """
    if not isinstance(text, str):
        return ""

    # Collapse whitespace
    text = re.sub(r"\s+", " ", text)

    return text.strip()


def strip_accents(text: str) -> str:
    """
    Lowercase text and drop diacritics, so "Manutenção" matches "manutencao".

    Args:
        text: Input text

    Returns:
        Lowercased text without combining marks
    """
    if not isinstance(text, str):
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_value(value: Union[str, float, int, None]) -> float:
    """
    Normalize a monetary value to a float.

    Args:
        value: Contract value (number, or string such as "R$ 1.234,56")

    Returns:
        Normalized value as float, 0.0 when it cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        if pd.isna(value):
            return 0.0
        return float(value)

    if isinstance(value, str):
        value = value.replace("R$", "").strip()
        # Brazilian format uses "." for thousands and "," for decimals
        if "," in value:
            value = value.replace(".", "").replace(",", ".")

        try:
            return float(value)
        except ValueError:
            return 0.0

    return 0.0


def normalize_cnpj(value: Any) -> Optional[str]:
    """
    Keep only the digits of a tax id (CNPJ/CPF).

    Args:
        value: Raw tax id, e.g. "12.345.678/0001-90"

    Returns:
        Digits only, or None when nothing is left
    """
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits or None


def parse_date(value: Any) -> Optional[date]:
    """
    Parse registry date strings ("2024-01-15", "2024-01-15T10:30:00", "20240115").

    Args:
        value: Raw date value

    Returns:
        The date, or None for empty or invalid input
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    value = value.strip()
    if not value:
        return None

    for fmt in ("%Y-%m-%d", "%Y%m%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(value[:10] if fmt == "%Y-%m-%d" else value, fmt).date()
        except ValueError:
            continue
    return None


def truncate_text(text: str, max_length: int) -> str:
    """Cut text to max_length characters, marking the cut with "..."."""
    if len(text) <= max_length:
        return text
    return text[: max(max_length - 3, 0)] + "..."


def format_registry_date(value: date) -> str:
    """Registry query dates are sent as YYYYMMDD."""
    return value.strftime("%Y%m%d")
