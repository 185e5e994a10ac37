"""Suggests how source columns relate to a target column."""

from typing import Dict, List, Optional, Tuple

import structlog

from csv_parser import parse_number
from models import FormulaSuggestion, KeyMapping, Table

log = structlog.get_logger(__name__)

TOLERANCE = 0.001

NO_MATCHING_DATA = "No matching data found"
CUSTOM_FORMULA_NEEDED = "Custom formula needed"

RowPair = Tuple[Dict[str, str], Dict[str, str]]


def find_example_match(source: Table, target: Table, key_mapping: KeyMapping) -> Optional[RowPair]:
    """
    Find the first source row whose key also appears in the target table.

    Returns:
        (source row, target row) as header->value dicts, or None
    """
    if key_mapping.source_key not in source.headers or key_mapping.target_key not in target.headers:
        return None

    source_idx = source.column_index(key_mapping.source_key)
    target_idx = target.column_index(key_mapping.target_key)

    target_by_key = {}
    for row in target.rows:
        key = row[target_idx]
        if key.strip():
            target_by_key[key] = row

    for row in source.rows:
        key = row[source_idx]
        if key and key in target_by_key:
            return source.row_dict(row), target.row_dict(target_by_key[key])
    return None


def _close(a: float, b: float) -> bool:
    return abs(a - b) < TOLERANCE


def infer_relationship(
    source_columns: List[str],
    target_columns: List[str],
    sample: Optional[RowPair]
) -> FormulaSuggestion:
    """
    Guess the operator linking the source columns to the target column.

    Only the one sample row pair is checked, so a high confidence means
    "this formula fits the first matching row", not that it holds everywhere.
    Callers should always let the user override the suggestion.

    Args:
        source_columns: Selected source columns
        target_columns: Selected target column (only a single column is analysed)
        sample: A key-matched (source row, target row) pair

    Returns:
        Suggested formula and confidence (0 when nothing fits)
    """
    if sample is None:
        log.warning("no_matching_sample_row")
        return FormulaSuggestion(NO_MATCHING_DATA, 0)

    if not source_columns or len(target_columns) != 1:
        return FormulaSuggestion(CUSTOM_FORMULA_NEEDED, 0)

    source_row, target_row = sample
    target_column = target_columns[0]
    raw_source = [source_row.get(c, "") for c in source_columns]
    raw_target = target_row.get(target_column, "")

    source_numbers = [parse_number(v) for v in raw_source]
    target_number = parse_number(raw_target)

    if target_number is not None and all(n is not None for n in source_numbers):
        if _close(sum(source_numbers), target_number):
            return FormulaSuggestion(f"{' + '.join(source_columns)} = {target_column}", 95)

        if len(source_numbers) == 2 and _close(abs(source_numbers[0] - source_numbers[1]), target_number):
            return FormulaSuggestion(
                f"|{source_columns[0]} - {source_columns[1]}| = {target_column}", 90
            )

        product = 1.0
        for number in source_numbers:
            product *= number
        if _close(product, target_number):
            return FormulaSuggestion(f"{' × '.join(source_columns)} = {target_column}", 85)

    elif "".join(raw_source) == raw_target:
        return FormulaSuggestion(
            f"{' + '.join(source_columns)} = {target_column} (concatenation)", 90
        )

    return FormulaSuggestion(CUSTOM_FORMULA_NEEDED, 0)


def suggest_formula(
    source: Table,
    target: Table,
    key_mapping: KeyMapping,
    source_columns: List[str],
    target_columns: List[str]
) -> FormulaSuggestion:
    """Sample the first key-matched row pair and infer a formula from it."""
    sample = find_example_match(source, target, key_mapping)
    suggestion = infer_relationship(source_columns, target_columns, sample)
    log.info("formula_suggested", formula=suggestion.formula, confidence=suggestion.confidence)
    return suggestion
