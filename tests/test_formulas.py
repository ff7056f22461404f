"""Tests for formula templates and error wrapping."""

from __future__ import annotations

import pytest

from xlplan.contracts.common import FormulaBuildError
from xlplan.engine.formulas import build_formula, wrap_formula


def test_sum_and_average():
    assert build_formula("build_sum", {"column": "C"}) == "=SUM(C:C)"
    assert build_formula("build_average", {"column": "D"}) == "=AVERAGE(D:D)"
    assert build_formula("build_average", {"average_column": "D"}) == "=AVERAGE(D:D)"


def test_count_uses_counta():
    assert build_formula("build_count", {"column": "A"}) == "=COUNTA(A:A)"


def test_count_if_text_value_quoted():
    formula = build_formula("build_count_if", {"criteria_column": "E", "operator": "equals", "value": "Active"})
    assert formula == '=COUNTIF(E:E, "Active")'


def test_count_if_numeric_value_unquoted():
    formula = build_formula("build_count_if", {"criteria_column": "C", "operator": "greater_than", "value": 1000})
    assert formula == "=COUNTIF(C:C, >1000)"


def test_count_if_text_with_operator():
    formula = build_formula("build_count_if", {"criteria_column": "E", "operator": "not_equals", "value": "Active"})
    assert formula == '=COUNTIF(E:E, "<>Active")'


def test_count_ifs_exact_text():
    params = {
        "criteria": [
            {"column": "A", "operator": "equals", "value": "X"},
            {"column": "B", "operator": "greater", "value": 10},
        ]
    }
    assert build_formula("build_count_ifs", params) == '=COUNTIFS(A:A, "X", B:B, >10)'


def test_count_ifs_preserves_clause_order():
    params = {
        "criteria": [
            {"column": "B", "operator": "greater", "value": 10},
            {"column": "A", "operator": "equals", "value": "X"},
        ]
    }
    assert build_formula("build_count_ifs", params) == '=COUNTIFS(B:B, >10, A:A, "X")'


def test_sum_if_and_sum_ifs():
    assert build_formula(
        "build_sum_if", {"sum_column": "C", "criteria_column": "A", "operator": "equals", "value": "East"},
    ) == '=SUMIF(A:A, "East", C:C)'
    assert build_formula(
        "build_sum_ifs",
        {"sum_column": "C", "criteria": [
            {"column": "A", "operator": "equals", "value": "East"},
            {"column": "D", "operator": "less", "value": 800},
        ]},
    ) == '=SUMIFS(C:C, A:A, "East", D:D, <800)'


def test_per_row_templates():
    assert build_formula("build_percent_growth", {"current_cell": "C3", "previous_cell": "C2"}) == "=(C3-C2)/C2"
    assert build_formula("build_running_total", {"column": "C", "start_row": 3}) == "=SUM(C$3:C3)"
    assert build_formula("build_row_calc", {"formula": "=C3-D3"}) == "=C3-D3"


def test_missing_parameter_raises():
    with pytest.raises(FormulaBuildError, match="sum_column"):
        build_formula("build_sum_if", {"criteria_column": "A", "value": "x"})


def test_null_criterion_value_raises():
    with pytest.raises(FormulaBuildError, match="Criterion value is missing"):
        build_formula("build_count_if", {"criteria_column": "A", "operator": "equals", "value": None})
    with pytest.raises(FormulaBuildError):
        build_formula("build_count_ifs", {"criteria": [{"column": "A", "operator": "equals"}]})


def test_clause_without_column_raises():
    with pytest.raises(FormulaBuildError, match="Criterion 1"):
        build_formula("build_count_ifs", {"criteria": [{"operator": "equals", "value": 1}]})


def test_empty_criteria_raises():
    with pytest.raises(FormulaBuildError):
        build_formula("build_sum_ifs", {"sum_column": "C", "criteria": []})


def test_unknown_builder():
    with pytest.raises(FormulaBuildError, match="Unknown formula builder"):
        build_formula("build_median", {})


class TestWrap:
    def test_wraps_when_rule_set(self):
        assert wrap_formula("=SUM(C:C)", {"wrap_with_iferror": True}) == '=IFERROR(SUM(C:C), "")'

    def test_no_rule_no_wrap(self):
        assert wrap_formula("=SUM(C:C)", {}) == "=SUM(C:C)"
        assert wrap_formula("=SUM(C:C)", None) == "=SUM(C:C)"

    def test_non_formula_untouched(self):
        assert wrap_formula("42", {"wrap_with_iferror": True}) == "42"
