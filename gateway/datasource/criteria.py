"""
Builder for Sankhya criteria expressions (the `criteria.expression.$` string).
"""

import re
from typing import Any, Iterable

_CODE_RE = re.compile(r"^-?\d+$")


def quote(value: Any) -> str:
    """SQL string literal with embedded quotes doubled."""
    return "'" + str(value).replace("'", "''") + "'"


def code_literal(value: Any) -> str:
    """Numeric codes go in bare, anything else is quoted."""
    text = str(value).strip()
    return text if _CODE_RE.match(text) else quote(text)


class Criteria:
    """
    AND-joined filter expression.

    Usage:
        expr = (
            Criteria()
            .raw("CLIENTE = 'S'")
            .eq("CODPARC", "42")
            .contains("NOMEPARC", "acme")
            .build()
        )
        # CLIENTE = 'S' AND CODPARC = 42 AND UPPER(NOMEPARC) LIKE '%ACME%'
    """

    def __init__(self) -> None:
        self._clauses: list[str] = []

    def raw(self, clause: str) -> "Criteria":
        self._clauses.append(clause)
        return self

    def eq(self, field: str, value: Any) -> "Criteria":
        """Exact match on a numeric/code field."""
        self._clauses.append(f"{field} = {code_literal(value)}")
        return self

    def eq_text(self, field: str, value: Any) -> "Criteria":
        """Exact match on a text field."""
        self._clauses.append(f"{field} = {quote(value)}")
        return self

    def contains(self, field: str, text: str) -> "Criteria":
        """Case-insensitive substring match."""
        needle = str(text).strip().upper()
        self._clauses.append(f"UPPER({field}) LIKE {quote(f'%{needle}%')}")
        return self

    def is_in(self, field: str, values: Iterable[Any]) -> "Criteria":
        items = ", ".join(code_literal(v) for v in values)
        self._clauses.append(f"{field} IN ({items})")
        return self

    def not_null(self, field: str) -> "Criteria":
        self._clauses.append(f"{field} IS NOT NULL")
        return self

    def is_null(self, field: str) -> "Criteria":
        self._clauses.append(f"{field} IS NULL")
        return self

    def date_from(self, field: str, iso_date: str) -> "Criteria":
        self._clauses.append(f"{field} >= TO_DATE({quote(iso_date)}, 'YYYY-MM-DD')")
        return self

    def date_to(self, field: str, iso_date: str) -> "Criteria":
        self._clauses.append(f"{field} <= TO_DATE({quote(iso_date)}, 'YYYY-MM-DD')")
        return self

    def __bool__(self) -> bool:
        return bool(self._clauses)

    def build(self) -> str:
        return " AND ".join(self._clauses) if self._clauses else "1=1"
