"""Tests for criteria expression building."""

from gateway.datasource.criteria import Criteria, code_literal, quote


class TestLiterals:
    def test_quote_escapes(self):
        assert quote("O'Brien") == "'O''Brien'"

    def test_code_literal(self):
        assert code_literal("42") == "42"
        assert code_literal(7) == "7"
        assert code_literal("A1") == "'A1'"


class TestCriteria:
    def test_empty_matches_all(self):
        criteria = Criteria()
        assert not criteria
        assert criteria.build() == "1=1"

    def test_and_joined(self):
        expr = (
            Criteria()
            .eq_text("CLIENTE", "S")
            .eq("CODPARC", "42")
            .contains("NOMEPARC", " acme ")
            .build()
        )
        assert expr == "CLIENTE = 'S' AND CODPARC = 42 AND UPPER(NOMEPARC) LIKE '%ACME%'"

    def test_seller_team(self):
        expr = Criteria().is_in("CODVEND", [1, 2]).not_null("CODVEND").build()
        assert expr == "CODVEND IN (1, 2) AND CODVEND IS NOT NULL"

    def test_date_range(self):
        expr = Criteria().date_from("DTNEG", "2024-01-01").date_to("DTNEG", "2024-01-31").build()
        assert expr == (
            "DTNEG >= TO_DATE('2024-01-01', 'YYYY-MM-DD') AND "
            "DTNEG <= TO_DATE('2024-01-31', 'YYYY-MM-DD')"
        )

    def test_injection_is_quoted(self):
        expr = Criteria().contains("NOMEPARC", "x' OR '1'='1").build()
        assert expr == "UPPER(NOMEPARC) LIKE '%X'' OR ''1''=''1%'"
