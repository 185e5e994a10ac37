"""
Formula language for deriving a comparable value from row columns.

A formula is column names joined by ``+ - * / ( )`` and optionally split
into a source half and a target half by ``=``. Column names are matched as
whole tokens against the known headers, then the arithmetic is evaluated by
a small recursive-descent parser. Nothing is ever passed to ``eval``.
"""

import math
import re
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from csv_parser import parse_number
from models import (
    FormulaEvaluationError,
    FormulaItem,
    ReconFormula,
    Side,
    Value,
)

log = structlog.get_logger(__name__)

OPERATORS = ("+", "-", "*", "/", "(", ")", "=")
INVALID_FORMULA = "Invalid formula"
CONCATENATION_MARKER = "(concatenation)"

# Display glyphs the relationship analyzer uses in its suggestions
_GLYPHS = {"×": "*", "÷": "/"}
_SYMBOLS = "+-*/()|"
_NUMBER_RE = re.compile(r'\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?')

Token = Tuple[str, str]


def _normalize(expression: str) -> str:
    for glyph, operator in _GLYPHS.items():
        expression = expression.replace(glyph, operator)
    return expression


def tokenize(expression: str, columns: Sequence[str]) -> List[Token]:
    """
    Split an expression into ('col', name), ('num', text) and ('op', symbol) tokens.

    Longer column names are tried first and a name only matches when it ends
    at an operator, whitespace or the end of the text, so ``A`` never matches
    inside ``AB``.

    Raises:
        FormulaEvaluationError: On text that is neither a column, a number nor an operator
    """
    expression = _normalize(expression)
    names = sorted({c for c in columns if c}, key=len, reverse=True)
    tokens: List[Token] = []
    i = 0
    n = len(expression)

    while i < n:
        ch = expression[i]
        if ch.isspace():
            i += 1
            continue
        if ch in _SYMBOLS:
            tokens.append(("op", ch))
            i += 1
            continue

        for name in names:
            end = i + len(name)
            if expression.startswith(name, i) and (
                end == n or expression[end].isspace() or expression[end] in _SYMBOLS
            ):
                tokens.append(("col", name))
                i = end
                break
        else:
            match = _NUMBER_RE.match(expression, i)
            if not match:
                raise FormulaEvaluationError(
                    f"Unexpected text at position {i}: '{expression[i:i + 20]}'"
                )
            tokens.append(("num", match.group()))
            i = match.end()

    return tokens


class _Parser:
    """Recursive-descent evaluator over a token list with column values bound."""

    def __init__(self, tokens: List[Token], values: Dict[str, float]):
        self.tokens = tokens
        self.values = values
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Token:
        token = self._peek()
        if token is None:
            raise FormulaEvaluationError("Unexpected end of formula")
        self.pos += 1
        return token

    def _expect(self, symbol: str):
        token = self._take()
        if token != ("op", symbol):
            raise FormulaEvaluationError(f"Expected '{symbol}' but found '{token[1]}'")

    def parse(self) -> float:
        if not self.tokens:
            raise FormulaEvaluationError("Empty formula")
        value = self._expression()
        if self._peek() is not None:
            raise FormulaEvaluationError(f"Unexpected '{self._peek()[1]}'")
        return value

    def _expression(self) -> float:
        value = self._term()
        while self._peek() in (("op", "+"), ("op", "-")):
            _, symbol = self._take()
            right = self._term()
            value = value + right if symbol == "+" else value - right
        return value

    def _term(self) -> float:
        value = self._factor()
        while self._peek() in (("op", "*"), ("op", "/")):
            _, symbol = self._take()
            right = self._factor()
            if symbol == "*":
                value = value * right
            else:
                if right == 0:
                    raise FormulaEvaluationError("Division by zero")
                value = value / right
        return value

    def _factor(self) -> float:
        kind, text = self._take()
        if kind == "num":
            return float(text)
        if kind == "col":
            return self.values.get(text, 0.0)
        if text in ("+", "-"):
            value = self._factor()
            return value if text == "+" else -value
        if text == "(":
            value = self._expression()
            self._expect(")")
            return value
        if text == "|":
            value = self._expression()
            self._expect("|")
            return abs(value)
        raise FormulaEvaluationError(f"Unexpected '{text}'")


def evaluate_expression(expression: str, row: Dict[str, str], columns: Sequence[str]) -> float:
    """
    Evaluate an arithmetic expression over a row.

    Each referenced column contributes its numeric value (0 when the cell is
    not a number).

    Raises:
        FormulaEvaluationError: If the expression is malformed or not finite
    """
    tokens = tokenize(expression, columns)
    values = {}
    for kind, name in tokens:
        if kind == "col":
            number = parse_number(row.get(name, ""))
            values[name] = number if number is not None else 0.0

    result = _Parser(tokens, values).parse()
    if not math.isfinite(result):
        raise FormulaEvaluationError("Formula result is not a finite number")
    return result


def referenced_columns(expression: str, headers: Sequence[str]) -> List[str]:
    """Headers named in an expression, in order of first appearance."""
    try:
        tokens = tokenize(strip_marker(expression)[0], headers)
    except FormulaEvaluationError:
        return []
    found = []
    for kind, name in tokens:
        if kind == "col" and name not in found:
            found.append(name)
    return found


def strip_marker(formula: str) -> Tuple[str, bool]:
    """Remove a trailing concatenation marker, reporting whether it was there."""
    stripped = formula.strip()
    if stripped.endswith(CONCATENATION_MARKER):
        return stripped[:-len(CONCATENATION_MARKER)].strip(), True
    return formula, False


def split_formula(formula: str) -> Tuple[str, str]:
    """
    Split a formula on its first ``=`` into (source expression, target expression).

    A formula without ``=`` applies the same expression to both sides.
    """
    if "=" in formula:
        left, right = formula.split("=", 1)
        return left.strip(), right.strip()
    return formula.strip(), formula.strip()


def _passthrough(value: str, precision: int) -> Value:
    # A blank cell reads as zero
    if value is None or not str(value).strip():
        return 0.0
    number = parse_number(value)
    if number is None:
        return value
    return round(number, precision)


def _evaluate_side(
    columns: Sequence[str],
    row: Dict[str, str],
    formula: str,
    side: Side,
    precision: int
) -> Value:
    if not columns:
        return 0.0

    if len(columns) == 1:
        return _passthrough(row.get(columns[0], ""), precision)

    body, concatenate = strip_marker(formula)
    source_expr, target_expr = split_formula(body)
    expression = target_expr if side == Side.TARGET else source_expr

    if concatenate:
        order = [c for kind, c in tokenize(expression, columns) if kind == "col"] or list(columns)
        return "".join(row.get(c, "") for c in order)

    if not expression:
        total = sum(parse_number(row.get(c, "")) or 0.0 for c in columns)
        return round(total, precision)

    return round(evaluate_expression(expression, row, columns), precision)


def evaluate_formula(
    columns: Sequence[str],
    row: Dict[str, str],
    formula: str,
    side: Side = Side.SOURCE,
    precision: int = 4
) -> Value:
    """
    Compute one side's comparable value for a row.

    Args:
        columns: Columns this side reads
        row: Row as {header: value}
        formula: Full formula string (both halves when it contains ``=``)
        side: Which half of a two-sided formula applies
        precision: Decimal places kept on numeric results

    Returns:
        0 when no columns are given, the cell itself (number or text) for a
        single column, otherwise the evaluated number. A formula that cannot
        be evaluated yields 0 for this row only.
    """
    try:
        return _evaluate_side(columns, row, formula, side, precision)
    except FormulaEvaluationError as e:
        log.warning("formula_evaluation_failed", formula=formula, side=side.value, error=str(e))
        return 0.0


def values_match(source_value: Value, target_value: Value, tolerance: float = 0.001) -> bool:
    """Numbers match within tolerance, anything else must be equal."""
    if isinstance(source_value, float) and isinstance(target_value, float):
        return abs(source_value - target_value) < tolerance
    return source_value == target_value


def preview_formula(
    recon_formula: ReconFormula,
    source_row: Dict[str, str],
    target_row: Dict[str, str],
    tolerance: float = 0.001,
    precision: int = 4
) -> Optional[dict]:
    """
    Evaluate a two-sided formula on one sample row pair.

    Returns:
        Dict with sourceResult, targetResult and matched, or None when the
        formula has no ``=`` to compare across. Errors show as "Invalid formula".
    """
    if "=" not in recon_formula.formula:
        return None
    try:
        source_result = _evaluate_side(
            recon_formula.source_columns, source_row, recon_formula.formula, Side.SOURCE, precision
        )
        target_result = _evaluate_side(
            recon_formula.target_columns, target_row, recon_formula.formula, Side.TARGET, precision
        )
    except FormulaEvaluationError:
        return {
            'sourceResult': INVALID_FORMULA,
            'targetResult': INVALID_FORMULA,
            'matched': False,
        }
    return {
        'sourceResult': source_result,
        'targetResult': target_result,
        'matched': values_match(source_result, target_result, tolerance),
    }


class FormulaBuilder:
    """
    Builds a formula item by item, source half first.

    Adding a target column while still on the source half inserts ``=``.
    """

    def __init__(self):
        self.items: List[FormulaItem] = []
        self.current_side = Side.SOURCE

    def _equals_index(self) -> int:
        for idx, item in enumerate(self.items):
            if item.kind == "operator" and item.text == "=":
                return idx
        return -1

    @property
    def has_equals(self) -> bool:
        return self._equals_index() != -1

    def _accepts_operator(self, operator: str) -> bool:
        last = self.items[-1] if self.items else None
        after_operator = last is not None and last.kind == "operator" and last.text != ")"
        if operator == "(":
            return last is None or after_operator
        return last is not None and not after_operator

    def _accepts_column(self) -> bool:
        last = self.items[-1] if self.items else None
        return last is None or (last.kind == "operator" and last.text != ")")

    def add_column(self, name: str, side: Side) -> bool:
        """
        Append a column reference from the source or target table.

        A column cannot directly follow another column or a closing bracket.

        Returns:
            True if the column was added
        """
        if side != self.current_side and not self.has_equals:
            self.add_operator("=")
        if not self._accepts_column():
            return False
        self.items.append(FormulaItem(kind="column", text=name, side=side))
        if self.has_equals:
            self.current_side = Side.TARGET
        return True

    def add_operator(self, operator: str) -> bool:
        """
        Append an operator if it can follow the current items.

        Returns:
            True if the operator was added
        """
        if operator not in OPERATORS:
            raise ValueError(f"Unsupported operator: {operator}")
        if not self._accepts_operator(operator):
            return False
        if operator == "=":
            if self.has_equals:
                return False
            self.current_side = Side.TARGET
        self.items.append(FormulaItem(kind="operator", text=operator))
        return True

    def remove_item(self, index: int) -> None:
        if not 0 <= index < len(self.items):
            return
        removed = self.items.pop(index)
        if removed.kind == "operator" and removed.text == "=" and not self.has_equals:
            self.current_side = Side.SOURCE

    def clear(self):
        self.items = []
        self.current_side = Side.SOURCE

    def render(self) -> str:
        """Formula string; the halves are separated by ' = '."""
        idx = self._equals_index()
        if idx == -1:
            return "".join(item.text for item in self.items)
        source_part = "".join(item.text for item in self.items[:idx])
        target_part = "".join(item.text for item in self.items[idx + 1:])
        return f"{source_part} = {target_part}"

    def _columns(self, items: List[FormulaItem]) -> List[str]:
        names = []
        for item in items:
            if item.kind == "column" and item.text not in names:
                names.append(item.text)
        return names

    @property
    def source_columns(self) -> List[str]:
        idx = self._equals_index()
        return self._columns(self.items if idx == -1 else self.items[:idx])

    @property
    def target_columns(self) -> List[str]:
        idx = self._equals_index()
        return self._columns(self.items if idx == -1 else self.items[idx + 1:])

    def to_formula(self) -> ReconFormula:
        return ReconFormula(
            formula=self.render(),
            source_columns=self.source_columns,
            target_columns=self.target_columns,
        )
