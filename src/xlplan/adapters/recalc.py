"""Local recalculation for the closed set of formulas the planner synthesizes.

openpyxl stores formulas as text and never computes them. Value queries need a
number back, so this module evaluates the small function set produced by the
formula templates (SUM, AVERAGE, COUNT, COUNTA, MIN, MAX, COUNTIF, COUNTIFS,
SUMIF, SUMIFS, IFERROR) plus cell arithmetic. Anything outside that set
evaluates to ``None``.
"""

from __future__ import annotations

import re
from typing import Any, Callable

from openpyxl.utils import column_index_from_string

from xlplan.engine.operators import matches

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"(?:[^"]|"")*")
      | (?P<range>\$?[A-Z]{1,3}\$?\d*:\$?[A-Z]{1,3}\$?\d*)
      | (?P<func>[A-Z][A-Z0-9.]*)\(
      | (?P<ref>\$?[A-Z]{1,3}\$?\d+)
      | (?P<number>\d+(?:\.\d*)?|\.\d+)
      | (?P<crit>(?:<>|>=|<=|>|<|=)[^,)]*)
      | (?P<op>[-+*/^&(),])
    )""",
    re.VERBOSE | re.IGNORECASE,
)

_RANGE_PART_RE = re.compile(r"\$?([A-Z]{1,3})\$?(\d*)", re.IGNORECASE)
_CRITERION_RE = re.compile(r"^(<>|>=|<=|>|<|=)?(.*)$", re.DOTALL)
_CRITERION_OPERATORS = {
    "=": "equals",
    "<>": "not_equals",
    ">": "greater",
    "<": "less",
    ">=": "greater_equal",
    "<=": "less_equal",
}


class FormulaError(Exception):
    """A spreadsheet error value such as #DIV/0!."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class UnsupportedFormulaError(Exception):
    """The formula uses syntax or functions outside the supported set."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise UnsupportedFormulaError(f"Cannot parse formula near: {text[pos:]!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    """Recursive-descent parser producing a small tuple AST."""

    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise UnsupportedFormulaError("Unexpected end of formula")
        self.pos += 1
        return tok

    def expect(self, value: str) -> None:
        kind, text = self.take()
        if kind != "op" or text != value:
            raise UnsupportedFormulaError(f"Expected {value!r}, got {text!r}")

    def parse(self) -> tuple:
        node = self.expression()
        if self.peek() is not None:
            raise UnsupportedFormulaError(f"Unexpected token {self.peek()[1]!r}")
        return node

    def expression(self) -> tuple:
        node = self.term()
        while self.peek() in (("op", "+"), ("op", "-"), ("op", "&")):
            op = self.take()[1]
            node = ("bin", op, node, self.term())
        return node

    def term(self) -> tuple:
        node = self.power()
        while self.peek() in (("op", "*"), ("op", "/")):
            op = self.take()[1]
            node = ("bin", op, node, self.power())
        return node

    def power(self) -> tuple:
        node = self.unary()
        while self.peek() == ("op", "^"):
            self.take()
            node = ("bin", "^", node, self.unary())
        return node

    def unary(self) -> tuple:
        if self.peek() == ("op", "-"):
            self.take()
            return ("neg", self.unary())
        if self.peek() == ("op", "+"):
            self.take()
            return self.unary()
        return self.primary()

    def primary(self) -> tuple:
        kind, text = self.take()
        if kind == "number":
            return ("num", float(text))
        if kind == "string":
            return ("str", text[1:-1].replace('""', '"'))
        if kind == "ref":
            m = _RANGE_PART_RE.fullmatch(text)
            return ("ref", int(m.group(2)), column_index_from_string(m.group(1).upper()))
        if kind == "range":
            return ("range", *_parse_range(text))
        if kind == "crit":
            return ("crit", text)
        if kind == "func":
            return self.call(text.upper())
        if kind == "op" and text == "(":
            node = self.expression()
            self.expect(")")
            return node
        raise UnsupportedFormulaError(f"Unexpected token {text!r}")

    def call(self, name: str) -> tuple:
        args: list[tuple] = []
        if self.peek() == ("op", ")"):
            self.take()
            return ("call", name, args)
        while True:
            args.append(self.expression())
            kind, text = self.take()
            if (kind, text) == ("op", ")"):
                return ("call", name, args)
            if (kind, text) != ("op", ","):
                raise UnsupportedFormulaError(f"Expected ',' or ')' in {name}(), got {text!r}")


def _parse_range(text: str) -> tuple[int | None, int, int | None, int]:
    """Return (min_row, min_col, max_row, max_col); rows are None for whole columns."""
    start, end = text.split(":", 1)
    m1, m2 = _RANGE_PART_RE.fullmatch(start), _RANGE_PART_RE.fullmatch(end)
    if not m1 or not m2:
        raise UnsupportedFormulaError(f"Invalid range: {text}")
    min_col = column_index_from_string(m1.group(1).upper())
    max_col = column_index_from_string(m2.group(1).upper())
    min_row = int(m1.group(2)) if m1.group(2) else None
    max_row = int(m2.group(2)) if m2.group(2) else None
    return min_row, min_col, max_row, max_col


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if _is_number(value):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        raise FormulaError("#VALUE!") from None


def _criterion_test(raw: Any) -> Callable[[Any], bool]:
    if _is_number(raw):
        return lambda cell: matches(cell, "equals", raw)
    m = _CRITERION_RE.match(str(raw))
    op, operand = m.group(1) or "=", m.group(2)
    if op == "=" and operand == "":
        return lambda cell: cell is None or cell == ""
    name = _CRITERION_OPERATORS[op]
    return lambda cell: matches(cell, name, operand)


class FormulaEvaluator:
    """Evaluates formulas against a store, caching computed cells."""

    def __init__(self, store: Any) -> None:
        self._store = store
        self._cache: dict[tuple[int, int], Any] = {}
        self._active: set[tuple[int, int]] = set()

    def evaluate(self, formula: str) -> Any:
        """Evaluate a ``=...`` formula. Errors come back as their code string."""
        if not isinstance(formula, str) or not formula.startswith("="):
            return formula
        try:
            ast = _Parser(_tokenize(formula[1:])).parse()
            return self._scalar(self._eval(ast))
        except FormulaError as e:
            return e.code
        except UnsupportedFormulaError:
            return None

    def cell_value(self, row: int, col: int) -> Any:
        raw = self._store.get_value(row, col)
        if not (isinstance(raw, str) and raw.startswith("=")):
            return raw
        key = (row, col)
        if key in self._cache:
            return self._cache[key]
        if key in self._active:
            raise FormulaError("#REF!")
        self._active.add(key)
        try:
            value = self._scalar(self._eval(_Parser(_tokenize(raw[1:])).parse()))
        except FormulaError as e:
            value = e.code
        except UnsupportedFormulaError:
            value = None
        finally:
            self._active.discard(key)
        self._cache[key] = value
        return value

    def _range_values(self, node: tuple) -> list[Any]:
        _, min_row, min_col, max_row, max_col = node
        first = min_row or 1
        last = max_row or self._store.max_row
        return [
            self.cell_value(r, c)
            for r in range(first, last + 1)
            for c in range(min_col, max_col + 1)
        ]

    def _scalar(self, value: Any) -> Any:
        if isinstance(value, list):
            raise FormulaError("#VALUE!")
        if isinstance(value, str) and value.startswith("#"):
            raise FormulaError(value)
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    def _eval(self, node: tuple) -> Any:
        kind = node[0]
        if kind in ("num", "str"):
            return node[1]
        if kind == "crit":
            return node[1]
        if kind == "ref":
            return self.cell_value(node[1], node[2])
        if kind == "range":
            return self._range_values(node)
        if kind == "neg":
            return -_to_number(self._scalar(self._eval(node[1])))
        if kind == "bin":
            return self._binary(node[1], node[2], node[3])
        if kind == "call":
            return self._call(node[1], node[2])
        raise UnsupportedFormulaError(f"Unknown node {kind}")

    def _binary(self, op: str, left_node: tuple, right_node: tuple) -> Any:
        left = self._scalar(self._eval(left_node))
        right = self._scalar(self._eval(right_node))
        if op == "&":
            return f"{'' if left is None else left}{'' if right is None else right}"
        a, b = _to_number(left), _to_number(right)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            if b == 0:
                raise FormulaError("#DIV/0!")
            return a / b
        return a ** b

    def _numbers(self, args: list[tuple]) -> list[float]:
        out: list[float] = []
        for arg in args:
            value = self._eval(arg)
            if isinstance(value, list):
                for item in value:
                    if isinstance(item, str) and item.startswith("#"):
                        raise FormulaError(item)
                    if _is_number(item):
                        out.append(float(item))
            else:
                out.append(_to_number(self._scalar(value)))
        return out

    def _pairs(self, args: list[tuple]) -> list[tuple[list[Any], Callable[[Any], bool]]]:
        if len(args) % 2:
            raise FormulaError("#N/A")
        pairs = []
        for i in range(0, len(args), 2):
            values = self._eval(args[i])
            if not isinstance(values, list):
                raise FormulaError("#VALUE!")
            pairs.append((values, _criterion_test(self._scalar(self._eval(args[i + 1])))))
        return pairs

    @staticmethod
    def _matching_rows(pairs: list[tuple[list[Any], Callable[[Any], bool]]]) -> list[int]:
        size = min(len(values) for values, _ in pairs)
        return [i for i in range(size) if all(test(values[i]) for values, test in pairs)]

    def _call(self, name: str, args: list[tuple]) -> Any:
        if name == "IFERROR":
            if len(args) != 2:
                raise FormulaError("#N/A")
            try:
                return self._scalar(self._eval(args[0]))
            except FormulaError:
                return self._eval(args[1])
        if name == "SUM":
            return sum(self._numbers(args))
        if name == "AVERAGE":
            nums = self._numbers(args)
            if not nums:
                raise FormulaError("#DIV/0!")
            return sum(nums) / len(nums)
        if name == "MIN":
            nums = self._numbers(args)
            return min(nums) if nums else 0
        if name == "MAX":
            nums = self._numbers(args)
            return max(nums) if nums else 0
        if name == "COUNT":
            return len(self._numbers(args))
        if name == "COUNTA":
            count = 0
            for arg in args:
                value = self._eval(arg)
                items = value if isinstance(value, list) else [value]
                count += sum(1 for v in items if v is not None and v != "")
            return count
        if name == "COUNTIF":
            if len(args) != 2:
                raise FormulaError("#N/A")
            return len(self._matching_rows(self._pairs(args)))
        if name == "COUNTIFS":
            return len(self._matching_rows(self._pairs(args)))
        if name == "SUMIF":
            if len(args) not in (2, 3):
                raise FormulaError("#N/A")
            pairs = self._pairs(args[:2])
            sum_values = self._eval(args[2]) if len(args) == 3 else pairs[0][0]
            return sum(
                float(sum_values[i]) for i in self._matching_rows(pairs)
                if i < len(sum_values) and _is_number(sum_values[i])
            )
        if name == "SUMIFS":
            if len(args) < 3:
                raise FormulaError("#N/A")
            sum_values = self._eval(args[0])
            if not isinstance(sum_values, list):
                raise FormulaError("#VALUE!")
            pairs = self._pairs(args[1:])
            return sum(
                float(sum_values[i]) for i in self._matching_rows(pairs)
                if i < len(sum_values) and _is_number(sum_values[i])
            )
        raise UnsupportedFormulaError(f"Unsupported function: {name}")
