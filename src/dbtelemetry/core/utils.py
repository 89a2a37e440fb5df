"""Utility functions for dbtelemetry operations.

Classes:
    SqlTextUtils: Statement text helpers (blank checks, normalization, table extraction)
    NumberUtils: Numeric coercion helpers for engine result values

Functions:
    safe_cast: Cast a value, falling back to a default
    coalesce: First non-None value
    clamp: Clamp a value into a closed range

Example:
    >>> SqlTextUtils.normalize_query("SELECT * FROM t WHERE name = 'bob'")
    "SELECT * FROM t WHERE name = '?'"
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, List, Optional, TypeVar

T = TypeVar("T")


class SqlTextUtils:
    """Helpers for working with SQL statement text."""

    STRING_LITERAL_PATTERN = re.compile(r"'(?:[^']|'')*'")
    TOKEN_SPLIT_PATTERN = re.compile(r"[\s,()]+")
    TABLE_KEYWORDS = frozenset({"from", "join"})
    CLAUSE_KEYWORDS = frozenset({
        "where", "group", "order", "having", "limit", "on", "using",
        "inner", "left", "right", "full", "cross", "outer", "select",
        "union", "lateral", "offset", "fetch", "for", "window",
    })

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        """Return True for None, empty or whitespace-only text."""
        return text is None or not text.strip()

    @classmethod
    def normalize_query(cls, query: str) -> str:
        """Replace string literals with placeholders.

        Example:
            >>> SqlTextUtils.normalize_query("WHERE a = 'x' AND b = 'it''s'")
            "WHERE a = '?' AND b = '?'"
        """
        return cls.STRING_LITERAL_PATTERN.sub("'?'", query)

    @classmethod
    def extract_tables(cls, query: str) -> List[str]:
        """Extract table names following FROM and JOIN keywords.

        Order of first appearance is kept and duplicates are dropped.

        Example:
            >>> SqlTextUtils.extract_tables("SELECT * FROM a JOIN b ON a.id = b.id")
            ['a', 'b']
        """
        tables: List[str] = []
        next_is_table = False

        for word in cls.TOKEN_SPLIT_PATTERN.split(query):
            if not word:
                continue
            lowered = word.lower()
            if lowered in cls.TABLE_KEYWORDS:
                next_is_table = True
                continue
            if next_is_table:
                next_is_table = False
                if lowered in cls.CLAUSE_KEYWORDS or word.startswith(("$", ":", "@", "?")):
                    continue
                name = word.strip().rstrip(";")
                if name and name not in tables:
                    tables.append(name)

        return tables

    @staticmethod
    def strip_terminator(statement: str) -> str:
        """Strip surrounding whitespace and one trailing semicolon."""
        clean = statement.strip()
        if clean.endswith(";"):
            clean = clean[:-1].rstrip()
        return clean

    @staticmethod
    def truncate(text: str, max_length: int = 120, *, suffix: str = "...") -> str:
        """Truncate text for log output."""
        if len(text) <= max_length:
            return text
        return text[: max(max_length - len(suffix), 0)] + suffix


class NumberUtils:
    """Coercion helpers for values read from engine result rows.

    Drivers hand back ``Decimal``, ``int``, ``float`` or ``None`` depending on
    the engine and column type.
    """

    @staticmethod
    def to_float(value: Any, default: float = 0.0) -> float:
        if value is None:
            return default
        return safe_cast(value, float, default=default)

    @staticmethod
    def to_int(value: Any, default: int = 0) -> int:
        converted = NumberUtils.to_optional_int(value)
        return default if converted is None else converted

    @staticmethod
    def to_optional_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        return safe_cast(value, float, default=None)

    @staticmethod
    def to_optional_int(value: Any) -> Optional[int]:
        """Integer value, or None for missing, unparseable or non-finite input."""
        if value is None:
            return None
        converted = safe_cast(value, float, default=None)
        if converted is None or not math.isfinite(converted):
            return None
        return int(converted)


def safe_cast(value: Any, target_type: type, *, default: Any = None) -> Any:
    """Safely cast value to target type.

    Example:
        >>> safe_cast("123", int)
        123
        >>> safe_cast("invalid", int, default=0)
        0
    """
    try:
        return target_type(value)
    except (ValueError, TypeError, ArithmeticError):
        return default


def coalesce(*values: Optional[T]) -> Optional[T]:
    """Return first non-None value."""
    for value in values:
        if value is not None:
            return value
    return None


def clamp(value: int, lower: int, upper: int) -> int:
    """Clamp value into ``[lower, upper]``."""
    return max(lower, min(value, upper))


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
