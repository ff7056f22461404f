"""Tests for step normalization, formula templating, and every step handler."""

from __future__ import annotations

import io
import json

import pytest

from xlplan.contracts.plans import Plan, Step
from xlplan.contracts.schema import Header
from xlplan.engine.executor import (
    StepExecutor,
    format_query_value,
    normalize_step,
    shift_formula,
    template_formula,
)
from xlplan.observe.events import EventEmitter, TraceRecorder
from xlplan.validation.policy import Policy

HEADERS = [
    Header(name="Region", column_letter="A", index=1),
    Header(name="Sales", column_letter="C", index=3),
    Header(name="Cost", column_letter="D", index=4),
]


def _run(store, registry, *steps, policy=None, **kwargs):
    plan = {"summary": "test", "steps": list(steps)}
    return StepExecutor(store, registry, policy, **kwargs).execute(plan)


def _step(action: str, **params) -> dict:
    return {"action": action, "params": params}


def _column(store, col: int, first: int = 3) -> list:
    return [store.get_value(r, col) for r in range(first, store.max_row + 1)]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------
class TestNormalizeStep:
    def test_canonical_form(self):
        step = normalize_step({"action": "sort_data", "params": {"column": "A"}, "stepNumber": 4}, 1)
        assert step == Step(step_number=4, action="SORT_DATA", params={"column": "A"})

    def test_action_keyed_fallback(self):
        raw = {"step": 2, "description": "sort it", "SORT_DATA": {"column": "Sales", "order": "desc"}}
        step = normalize_step(raw, 1)
        assert step.step_number == 2
        assert step.action == "SORT_DATA"
        assert step.description == "sort it"
        assert step.params == {"column": "Sales", "order": "desc"}

    def test_position_used_when_unnumbered(self):
        assert normalize_step({"QUERY_VALUE": {"formula": "=1"}}, 7).step_number == 7

    def test_step_instance_returned_as_is(self):
        step = Step(step_number=1, action="AGGREGATE", params={"column": "C"})
        assert normalize_step(step, 1) is step

    def test_rejects_non_objects(self):
        with pytest.raises(ValueError, match="not an object"):
            normalize_step(["SORT_DATA"], 3)
        with pytest.raises(ValueError, match="no action"):
            normalize_step({"description": "nothing"}, 3)


# ---------------------------------------------------------------------------
# Templating and value formatting
# ---------------------------------------------------------------------------
class TestTemplateFormula:
    def test_relative_refs_move_to_target_row(self):
        assert template_formula("=C3-D3", HEADERS, 7) == "=C7-D7"

    def test_absolute_rows_kept(self):
        assert template_formula("=C3/$D$3", HEADERS, 5) == "=C5/$D$3"
        assert template_formula("=C3/D$3", HEADERS, 5) == "=C5/D$3"

    def test_only_base_row_references_move(self):
        assert template_formula("=C3-C2", HEADERS, 9) == "=C9-C2"
        assert template_formula("=C3*3", HEADERS, 9) == "=C9*3"

    def test_string_literals_untouched(self):
        assert template_formula('=IF(C3>0,"A3","x")', HEADERS, 6) == '=IF(C6>0,"A3","x")'

    def test_header_placeholders(self):
        assert template_formula("=[Sales]-[cost]", HEADERS, 4) == "=C4-D4"

    def test_unknown_placeholder_ignored_for_base_row(self):
        assert template_formula("=[Q1]+C3", HEADERS, 5) == "=[Q1]+C5"

    def test_structured_reference_untouched(self):
        assert template_formula("=[@Sales]*2", HEADERS, 5) == "=[@Sales]*2"

    def test_no_relative_refs(self):
        assert template_formula("=SUM($C$3:$C$8)", HEADERS, 5) == "=SUM($C$3:$C$8)"


class TestShiftFormula:
    def test_rows_move_with_the_cell(self):
        assert shift_formula("=C7-D7+$E$1", row_delta=-4) == "=C3-D3+$E$1"

    def test_insert_moves_columns_at_or_right_of_point(self):
        formula = '=A3+SUM(C:C)+COUNTIF(B:B, "C3")'
        assert shift_formula(formula, col_from=2, col_delta=1) == '=A3+SUM(D:D)+COUNTIF(C:C, "C3")'

    def test_delete_marks_lost_references(self):
        assert shift_formula("=A3+$C$3+D3", col_from=3, col_delta=-1) == "=A3+#REF!+C3"

    def test_untouched_without_deltas(self):
        assert shift_formula("=C3*2", row_delta=0) == "=C3*2"


@pytest.mark.parametrize("value, expected", [
    (0, "0"),
    (7050, "7,050"),
    (1234.5, "1,234.5"),
    (-2500, "-2,500"),
    (1000, "1000"),
    (12.5, "12.5"),
    (2.0, "2"),
    (0.333333, "0.33"),
    ("#DIV/0!", "#DIV/0!"),
    (None, ""),
])
def test_format_query_value(value, expected):
    assert format_query_value(value) == expected


# ---------------------------------------------------------------------------
# Execution loop
# ---------------------------------------------------------------------------
class TestExecuteLoop:
    def test_failed_step_does_not_stop_plan(self, sales_store, registry):
        result = _run(
            sales_store, registry,
            _step("SORT_DATA", column="Revenue"),
            _step("QUERY_VALUE", formula='=IFERROR(SUM(C:C), "")', label="Total"),
        )
        first, second = result.step_results
        assert first.status == "error"
        assert "Column not found: Revenue" in first.error
        assert second.status == "success"
        assert second.result == "Total: 7,050"
        assert result.ok is False

    def test_unknown_action_reported(self, sales_store, registry):
        result = _run(sales_store, registry, _step("EXPLODE"))
        assert result.step_results[0].status == "error"
        assert result.step_results[0].error == "Unknown action: EXPLODE"

    def test_invalid_params_reported(self, sales_store, registry):
        result = _run(sales_store, registry, _step("AGGREGATE", function="sum"))
        assert result.step_results[0].status == "error"
        assert "column" in result.step_results[0].error

    def test_malformed_step_recorded(self, sales_store, registry):
        result = _run(sales_store, registry, "not a step", _step("QUERY_VALUE", formula="=1+1"))
        assert result.step_results[0].status == "error"
        assert result.step_results[0].step == 1
        assert result.step_results[1].result == "Result: 2"

    def test_accepts_plan_model(self, sales_store, registry):
        plan = Plan(summary="s", steps=[Step(step_number=1, action="QUERY_VALUE", params={"formula": "=COUNTA(A:A)"})])
        result = StepExecutor(sales_store, registry).execute(plan)
        # title + header + six data rows
        assert result.step_results[0].result == "Result: 8"

    def test_steps_not_a_list(self, sales_store, registry):
        with pytest.raises(ValueError, match="must be a list"):
            StepExecutor(sales_store, registry).execute({"steps": {"a": 1}})

    def test_events_and_trace(self, sales_store, registry):
        stream = io.StringIO()
        trace = TraceRecorder()
        _run(
            sales_store, registry, _step("QUERY_VALUE", formula="=1"),
            emitter=EventEmitter(enabled=True, stream=stream), trace=trace,
        )
        events = [json.loads(line) for line in stream.getvalue().splitlines()]
        assert [e["event"] for e in events] == ["step.start", "step.end"]
        assert events[1]["data"]["status"] == "success"
        assert trace.entries[0]["action"] == "QUERY_VALUE"


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------
class TestQueryValue:
    def test_sum_if(self, sales_store, registry):
        result = _run(sales_store, registry, _step("QUERY_VALUE", formula='=IFERROR(SUMIF(A:A, "East", C:C), "")', label="East"))
        assert result.step_results[0].result == "East: 2,700"

    def test_count_if_unquoted_criterion(self, sales_store, registry):
        result = _run(sales_store, registry, _step("QUERY_VALUE", formula="=COUNTIF(C:C, >1000)", label="Big"))
        assert result.step_results[0].result == "Big: 3"

    def test_average(self, sales_store, registry):
        result = _run(sales_store, registry, _step("QUERY_VALUE", formula="=AVERAGE(C:C)", label="Avg"))
        assert result.step_results[0].result == "Avg: 1,175"

    def test_scratch_cell_cleared(self, sales_store, registry):
        _run(sales_store, registry, _step("QUERY_VALUE", formula="=SUM(C:C)"))
        assert sales_store.max_column == 5
        assert sales_store.get_value(2, 105) is None

    def test_unsupported_function_fails_step(self, sales_store, registry):
        result = _run(sales_store, registry, _step("QUERY_VALUE", formula="=MEDIAN(C:C)"))
        assert result.step_results[0].status == "error"
        assert "Could not evaluate formula" in result.step_results[0].error
        assert sales_store.max_column == 5


class TestFilterAndDelete:
    def test_filter_deletes_matching_rows_by_default(self, sales_store, registry):
        result = _run(sales_store, registry, _step("FILTER_DATA", column="Status", operator="equals", value="Cancelled"))
        assert result.step_results[0].result == "Deleted 2 of 6 rows (33%)."
        assert _column(sales_store, 5) == ["Active"] * 4

    def test_filter_keep_matching_mode(self, sales_store, registry):
        policy = Policy({"filter_mode": "keep_matching"})
        result = _run(
            sales_store, registry,
            _step("FILTER_DATA", column="Status", operator="equals", value="Cancelled"),
            policy=policy,
        )
        message = result.step_results[0].result
        assert message.startswith("Deleted 4 of 6 rows (67%).")
        assert "high-impact" in message
        assert _column(sales_store, 5) == ["Cancelled", "Cancelled"]

    def test_high_impact_warning_at_ninety_percent(self, make_store, registry):
        store = make_store(["Name", "Score"], [[f"n{i}", i] for i in range(10)])
        result = _run(store, registry, _step("FILTER_DATA", column="Score", operator="less", value=9))
        message = result.step_results[0].result
        assert message == "Deleted 9 of 10 rows (90%). Warning: high-impact operation removed most of the data."
        assert _column(store, 2, first=2) == [9]

    def test_delete_rows_explicit_highest_first(self, sales_store, registry):
        result = _run(sales_store, registry, _step("DELETE_ROWS", rows=[3, 5]))
        assert result.step_results[0].status == "success"
        assert _column(sales_store, 3) == [800, 600, 2000, 950]

    def test_delete_rows_outside_data_range(self, sales_store, registry):
        result = _run(sales_store, registry, _step("DELETE_ROWS", rows=[2]))
        assert result.step_results[0].status == "error"
        assert "outside the data range 3-8" in result.step_results[0].error
        assert sales_store.max_row == 8

    def test_delete_rows_by_condition(self, sales_store, registry):
        _run(sales_store, registry, _step("DELETE_ROWS", column="Sales", operator="less", value=900))
        assert _column(sales_store, 3) == [1200, 1500, 2000, 950]


class TestCleanData:
    def test_remove_duplicates_skips_blanks(self, make_store, registry):
        store = make_store(["Email"], [["a@x.com"], [None], ["A@x.com "], [None], ["b@x.com"]])
        result = _run(store, registry, _step("CLEAN_DATA", operation="remove_duplicates", column="Email"))
        assert result.step_results[0].result == "Deleted 1 of 5 rows (20%)."
        assert _column(store, 1, first=2) == ["a@x.com", None, None, "b@x.com"]

    def test_remove_duplicates_keeps_first(self, sales_store, registry):
        _run(sales_store, registry, _step("CLEAN_DATA", operation="remove_duplicates", column="Region"))
        assert _column(sales_store, 1) == ["East", "West", "North", "South"]
        assert _column(sales_store, 3) == [1200, 800, 600, 2000]

    def test_trim_is_idempotent(self, make_store, registry):
        store = make_store(["Name"], [["  Ann "], ["Bob"], ["Cy  "]])
        first = _run(store, registry, _step("CLEAN_DATA", operation="trim_whitespace", column="Name"))
        second = _run(store, registry, _step("CLEAN_DATA", operation="trim_whitespace", column="Name"))
        assert first.step_results[0].result == "trim_whitespace: updated 2 cells in column A."
        assert second.step_results[0].result == "trim_whitespace: updated 0 cells in column A."
        assert _column(store, 1, first=2) == ["Ann", "Bob", "Cy"]

    def test_fill_empty(self, make_store, registry):
        store = make_store(["Name", "Qty"], [["a", 1], ["b", None], ["c", 3]])
        result = _run(store, registry, _step("CLEAN_DATA", operation="fill_empty", column="Qty", fillValue=0))
        assert result.step_results[0].result == "Filled 1 empty cells in column B."
        assert _column(store, 2, first=2) == [1, 0, 3]

    def test_fill_empty_needs_value(self, sales_store, registry):
        result = _run(sales_store, registry, _step("CLEAN_DATA", operation="fill_empty", column="Cost"))
        assert result.step_results[0].status == "error"

    def test_case_and_number_conversions(self, make_store, registry):
        store = make_store(["Name", "Amount"], [["ann lee", "1,200"], ["BOB", "$30"]])
        _run(
            store, registry,
            _step("CLEAN_DATA", operation="to_titlecase", column="Name"),
            _step("CLEAN_DATA", operation="convert_to_number", column="Amount"),
        )
        assert _column(store, 1, first=2) == ["Ann Lee", "Bob"]
        assert _column(store, 2, first=2) == [1200, 30]


class TestConvertDatatype:
    def test_number_conversion_reports_failures(self, make_store, registry):
        store = make_store(["Amount"], [["1,200"], ["$30"], ["abc"], ["=A2*2"]])
        result = _run(store, registry, _step("CONVERT_DATATYPE", column="Amount", targetType="number"))
        assert result.step_results[0].result == (
            "Converted 2 cells in column A to number. 1 cells could not be converted and were left unchanged."
        )
        assert _column(store, 1, first=2) == [1200, 30, "abc", "=A2*2"]

    def test_boolean_and_date(self, make_store, registry):
        store = make_store(["Flag", "When"], [["yes", "2024-03-01"], ["No", "03/15/2024"]])
        _run(
            store, registry,
            _step("CONVERT_DATATYPE", column="Flag", type="boolean"),
            _step("CONVERT_DATATYPE", column="When", target_type="date"),
        )
        assert _column(store, 1, first=2) == [True, False]
        assert [d.month for d in _column(store, 2, first=2)] == [3, 3]

    def test_unknown_target_type(self, sales_store, registry):
        result = _run(sales_store, registry, _step("CONVERT_DATATYPE", column="Sales", targetType="money"))
        assert "Unknown target type" in result.step_results[0].error


class TestColumns:
    def test_add_column_with_placeholders(self, sales_store, registry):
        result = _run(sales_store, registry, _step("ADD_COLUMN", columnName="Margin", formula="=[Sales]-[Cost]"))
        assert result.step_results[0].result == "Added column 'Margin' at F (6 rows filled)."
        assert sales_store.get_value(2, 6) == "Margin"
        assert sales_store.get_value(3, 6) == "=C3-D3"
        assert sales_store.get_value(8, 6) == "=C8-D8"

    def test_add_column_rebases_anchored_formula(self, sales_store, registry):
        _run(sales_store, registry, _step("ADD_COLUMN", columnName="Double", formula="=C3*2"))
        assert sales_store.get_value(4, 6) == "=C4*2"

    def test_add_column_after_uses_shifted_headers(self, sales_store, registry):
        _run(sales_store, registry, _step("ADD_COLUMN", columnName="Twice", formula="=[Sales]*2", position="after:Product"))
        assert sales_store.get_value(2, 3) == "Twice"
        assert sales_store.get_value(2, 4) == "Sales"
        assert sales_store.get_value(3, 3) == "=D3*2"

    def test_add_column_constant(self, sales_store, registry):
        _run(sales_store, registry, _step("ADD_COLUMN", columnName="Year", value=2024, position="before:A"))
        assert sales_store.get_value(2, 1) == "Year"
        assert _column(sales_store, 1) == [2024] * 6
        assert sales_store.get_value(2, 2) == "Region"

    def test_add_formula_to_letter_column(self, sales_store, registry):
        _run(sales_store, registry, _step("ADD_FORMULA", column="F", formula="=C3*0.1", columnName="Tax"))
        assert sales_store.get_value(2, 6) == "Tax"
        assert sales_store.get_value(5, 6) == "=C5*0.1"

    def test_inserted_column_shifts_existing_formulas(self, sales_store, registry):
        _run(
            sales_store, registry,
            _step("ADD_COLUMN", columnName="Margin", formula="=[Sales]-[Cost]"),
            _step("ADD_COLUMN", columnName="Year", value=2024, position="before:Region"),
        )
        assert sales_store.get_value(2, 7) == "Margin"
        assert sales_store.get_value(3, 7) == "=D3-E3"
        sales_store.recalculate()
        assert sales_store.computed_value(3, 7) == 500

    def test_deleted_column_shifts_existing_formulas(self, sales_store, registry):
        _run(
            sales_store, registry,
            _step("ADD_COLUMN", columnName="Margin", formula="=[Sales]-[Cost]"),
            _step("DELETE_COLUMN", column="Product"),
        )
        assert sales_store.get_value(2, 5) == "Margin"
        assert sales_store.get_value(3, 5) == "=B3-C3"
        sales_store.recalculate()
        assert sales_store.computed_value(8, 5) == 400

    def test_delete_columns(self, sales_store, registry):
        result = _run(sales_store, registry, _step("DELETE_COLUMN", columns=["Cost", "Status"]))
        assert result.step_results[0].result == "Deleted columns E, D."
        assert sales_store.read_range(2, 1, 2, sales_store.max_column) == [["Region", "Product", "Sales"]]


class TestOrganize:
    def test_sort_descending(self, sales_store, registry):
        result = _run(sales_store, registry, _step("SORT_DATA", column="Sales", order="desc"))
        assert result.step_results[0].result == "Sorted 6 rows by column C (descending)."
        assert _column(sales_store, 3) == [2000, 1500, 1200, 950, 800, 600]
        # whole rows move together
        assert sales_store.get_value(3, 1) == "South"
        assert sales_store.get_value(1, 1) == "Quarterly Sales Report"

    def test_sort_keeps_row_formulas_on_their_row(self, sales_store, registry):
        result = _run(
            sales_store, registry,
            _step("ADD_COLUMN", columnName="Margin", formula="=[Sales]-[Cost]"),
            _step("SORT_DATA", column="Sales", order="desc"),
        )
        assert all(r.status == "success" for r in result.step_results)
        assert [sales_store.get_value(r, 6) for r in range(3, 9)] == [f"=C{r}-D{r}" for r in range(3, 9)]
        sales_store.recalculate()
        assert [sales_store.computed_value(r, 6) for r in range(3, 9)] == [900, 600, 500, 400, 300, 200]

    def test_sort_puts_blanks_last(self, make_store, registry):
        store = make_store(["Name", "Score"], [["a", 3], ["b", None], ["c", 1], ["d", 2]])
        _run(store, registry, _step("SORT_DATA", column="Score", order="asc"))
        assert _column(store, 1, first=2) == ["c", "d", "a", "b"]

    def test_sort_rejects_unknown_order(self, sales_store, registry):
        result = _run(sales_store, registry, _step("SORT_DATA", column="Sales", order="sideways"))
        assert result.step_results[0].status == "error"

    def test_format_column_currency_without_decimals(self, sales_store, registry):
        result = _run(sales_store, registry, _step("FORMAT_CELLS", column="Cost", format="currency", decimals=0))
        assert result.step_results[0].result == "Applied format '$#,##0' to 6 cells in D3:D8."
        assert sales_store.ws.cell(row=3, column=4).number_format == "$#,##0"

    def test_format_range_percent(self, sales_store, registry):
        _run(sales_store, registry, _step("FORMAT_CELLS", range="c3:c4", format="percent"))
        assert sales_store.ws["C4"].number_format == "0.00%"
        assert sales_store.ws["C5"].number_format != "0.00%"


class TestSummaries:
    def test_aggregate_writes_summary_row(self, sales_store, registry):
        result = _run(sales_store, registry, _step("AGGREGATE", column="Sales", function="sum", label="Total"))
        assert result.step_results[0].result == "Total: 7,050"
        assert sales_store.get_value(9, 3) == "=SUM(C3:C8)"
        assert sales_store.get_value(9, 1) == "Total"

    def test_chained_aggregates_ignore_earlier_summary_rows(self, sales_store, registry):
        result = _run(
            sales_store, registry,
            _step("AGGREGATE", column="Sales", function="sum"),
            _step("AGGREGATE", column="Sales", function="max"),
        )
        assert [r.result for r in result.step_results] == ["Sum of C: 7,050", "Max of C: 2,000"]
        assert sales_store.get_value(9, 3) == "=SUM(C3:C8)"
        assert sales_store.get_value(10, 3) == "=MAX(C3:C8)"
        assert sales_store.get_value(10, 1) == "Max of C"

    def test_summary_row_stays_out_of_sort(self, sales_store, registry):
        result = _run(
            sales_store, registry,
            _step("AGGREGATE", column="Sales", function="sum", label="Total"),
            _step("SORT_DATA", column="Sales", order="desc"),
        )
        assert result.step_results[1].result == "Sorted 6 rows by column C (descending)."
        assert sales_store.get_value(3, 3) == 2000
        assert sales_store.get_value(9, 1) == "Total"
        assert sales_store.get_value(9, 3) == "=SUM(C3:C8)"

    def test_deletions_shrink_data_above_summary(self, sales_store, registry):
        result = _run(
            sales_store, registry,
            _step("AGGREGATE", column="Sales", function="sum"),
            _step("FILTER_DATA", column="Status", operator="equals", value="Cancelled"),
            _step("AGGREGATE", column="Sales", function="sum", label="Active total"),
        )
        assert result.step_results[1].result.startswith("Deleted 2 of 6 rows")
        assert result.step_results[2].result == "Active total: 5,650"
        assert sales_store.get_value(8, 3) == "=SUM(C3:C6)"

    def test_aggregate_unknown_function(self, sales_store, registry):
        result = _run(sales_store, registry, _step("AGGREGATE", column="Sales", function="median"))
        assert "Unknown aggregate function" in result.step_results[0].error

    def test_yoy_column(self, sales_store, registry):
        result = _run(sales_store, registry, _step("YOY_CALCULATION", column="Sales"))
        assert result.step_results[0].result == "Added growth column F for Sales (5 rows)."
        assert sales_store.get_value(2, 6) == "Sales YoY %"
        assert sales_store.get_value(3, 6) is None
        assert sales_store.get_value(4, 6) == '=IFERROR((C4-C3)/C3, "")'
        assert sales_store.ws["F4"].number_format == "0.00%"
        sales_store.recalculate()
        assert sales_store.computed_value(4, 6) == pytest.approx(-1 / 3)

    def test_create_chart(self, sales_store, registry):
        result = _run(sales_store, registry, _step(
            "CREATE_CHART", chartType="line", title="Sales", xAxisColumn="Region", seriesColumns=["Sales", "Cost"],
        ))
        assert result.step_results[0].result == "Created line chart at G2."
        assert len(sales_store.ws._charts) == 1

    def test_create_chart_unsupported_type_uses_default(self, sales_store, registry):
        result = _run(sales_store, registry, _step("CREATE_CHART", chartType="radar", seriesColumns=["Sales"]))
        assert result.step_results[0].result == "Created column chart at G2."

    def test_create_chart_needs_series(self, sales_store, registry):
        result = _run(sales_store, registry, _step("CREATE_CHART", chartType="bar", seriesColumns=[]))
        assert result.step_results[0].status == "error"
