"""Tests for local formula evaluation."""

from __future__ import annotations

import pytest

from xlplan.adapters.recalc import FormulaEvaluator


@pytest.fixture()
def numbers(make_store):
    return make_store(
        ["Region", "Qty", "Price"],
        [["East", 2, 10], ["West", 3, 20], ["East", 5, 0], ["North", None, 5]],
    )


def test_arithmetic_and_precedence(numbers):
    ev = FormulaEvaluator(numbers)
    assert ev.evaluate("=1+2*3") == 7
    assert ev.evaluate("=(1+2)*3") == 9
    assert ev.evaluate("=2^3") == 8
    assert ev.evaluate("=-B2+1") == -1
    assert ev.evaluate("=B3*C3") == 60
    assert ev.evaluate('="a"&"b"') == "ab"


def test_non_formula_returned_unchanged(numbers):
    assert FormulaEvaluator(numbers).evaluate("plain") == "plain"


def test_aggregates_skip_text(numbers):
    ev = FormulaEvaluator(numbers)
    assert ev.evaluate("=SUM(B:B)") == 10
    assert ev.evaluate("=SUM(B2:B3, 5)") == 10
    assert ev.evaluate("=AVERAGE(C2:C5)") == pytest.approx(8.75)
    assert ev.evaluate("=MIN(C:C)") == 0
    assert ev.evaluate("=MAX(C:C)") == 20
    assert ev.evaluate("=COUNT(B:B)") == 3
    assert ev.evaluate("=COUNTA(B:B)") == 4


def test_conditional_aggregates(numbers):
    ev = FormulaEvaluator(numbers)
    assert ev.evaluate('=COUNTIF(A:A, "East")') == 2
    assert ev.evaluate("=COUNTIF(B:B, >2)") == 2
    assert ev.evaluate('=COUNTIF(A:A, "<>East")') == 3
    assert ev.evaluate('=SUMIF(A:A, "East", B:B)') == 7
    assert ev.evaluate('=SUMIFS(B:B, A:A, "East", C:C, ">5")') == 2
    assert ev.evaluate('=COUNTIFS(A:A, "East", B:B, >=5)') == 1


def test_errors_and_iferror(numbers):
    ev = FormulaEvaluator(numbers)
    assert ev.evaluate("=B2/C4") == "#DIV/0!"
    assert ev.evaluate('=IFERROR(B2/C4, "")') == ""
    assert ev.evaluate('=IFERROR(B2/C2, "")') == pytest.approx(0.2)
    assert ev.evaluate("=A2*2") == "#VALUE!"


def test_unsupported_returns_none(numbers):
    ev = FormulaEvaluator(numbers)
    assert ev.evaluate("=VLOOKUP(1, A:C, 2)") is None
    assert ev.evaluate("=SUM(B2:B3") is None


def test_cell_formulas_evaluated_through_references(make_store):
    store = make_store(["A", "B"], [[1, "=A2*10"], [2, "=B2+A3"]])
    ev = FormulaEvaluator(store)
    assert ev.cell_value(3, 2) == 12
    assert ev.evaluate("=SUM(B:B)") == 22


def test_circular_reference(make_store):
    store = make_store(["A"], [["=A3"], ["=A2"]])
    ev = FormulaEvaluator(store)
    assert ev.cell_value(2, 1) == "#REF!"


def test_store_recalculate_sees_new_values(sales_store):
    sales_store.set_formula(9, 3, "SUM(C3:C8)")
    assert sales_store.get_value(9, 3) == "=SUM(C3:C8)"
    assert sales_store.computed_value(9, 3) == 7050
    sales_store.set_value(3, 3, 200)
    sales_store.recalculate()
    assert sales_store.computed_value(9, 3) == 6050
