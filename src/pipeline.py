"""
Reconciliation workflow over an explicit session.

Stages, in order: parse both files, match headers, pick a join key,
pick a formula, reconcile. Each stage takes the ReconSession, reads what
earlier stages confirmed and stores its own outcome on it. Changing an
early choice (header row, key) clears the later ones.
"""

from typing import List, Optional, Sequence, Union

import structlog

from csv_parser import parse_lines, parse_text, reslice
from formula import preview_formula, referenced_columns, split_formula, strip_marker
from header_matcher import build_mapping_export, generate_header_mapping
from key_matcher import find_key_candidates, score_key_pair
from models import (
    FormulaSuggestion,
    KeyCandidate,
    KeyMapping,
    ReconConfig,
    ReconFormula,
    ReconResult,
    ReconSession,
    Side,
    Table,
)
from recon_engine import ReconEngine
from relationship_analyzer import find_example_match, suggest_formula as infer_formula

log = structlog.get_logger(__name__)

FileContent = Union[str, Sequence[str]]


def _parse(content: FileContent, file_name: str, config: ReconConfig) -> Table:
    if isinstance(content, str):
        return parse_text(content, file_name, config)
    return parse_lines([line.strip() for line in content], file_name, config)


def start_session(
    source_content: FileContent,
    target_content: FileContent,
    source_name: str = "source.csv",
    target_name: str = "target.csv",
    config: Optional[ReconConfig] = None
) -> ReconSession:
    """
    Parse both files and build the initial header mapping.

    Args:
        source_content: Decoded source text, or its lines
        target_content: Decoded target text, or its lines
        source_name: Label of the source file
        target_name: Label of the target file
        config: Reconciliation settings

    Returns:
        A new ReconSession
    """
    config = config or ReconConfig()
    session = ReconSession(
        source=_parse(source_content, source_name, config),
        target=_parse(target_content, target_name, config),
        config=config,
    )
    update_header_mapping(session)
    return session


def _reset_from_key(session: ReconSession):
    session.key_candidates = []
    session.key_mapping = None
    _reset_from_formula(session)


def _reset_from_formula(session: ReconSession):
    session.formula_suggestion = None
    session.formula = None
    session.result = None


def set_header_row(session: ReconSession, side: Side, header_row_index: int) -> Table:
    """
    Use a different line as one table's header row.

    Raises:
        ValueError: If the index is outside the file
    """
    if side == Side.SOURCE:
        session.source = reslice(session.source, header_row_index, session.config)
        table = session.source
    elif side == Side.TARGET:
        session.target = reslice(session.target, header_row_index, session.config)
        table = session.target
    else:
        raise ValueError(f"Unknown side: {side}")

    log.info("header_row_changed", side=side.value, header_row=header_row_index, rows=table.row_count)
    update_header_mapping(session)
    _reset_from_key(session)
    return table


def update_header_mapping(
    session: ReconSession,
    threshold: Optional[int] = None,
    max_suggestions: Optional[int] = None
):
    """
    Recompute header suggestions, optionally with a new threshold or limit.

    A match the user picked earlier is kept when it is still among the new
    suggestions; otherwise the top suggestion is selected.
    """
    config = session.config
    if threshold is not None:
        config.similarity_threshold = int(threshold)
    if max_suggestions is not None:
        config.max_suggestions = max(1, min(10, int(max_suggestions)))

    previous = {entry.source_header: entry.selected_match for entry in session.header_mapping}
    mapping = generate_header_mapping(
        session.source.headers,
        session.target.headers,
        config.similarity_threshold,
        config.max_suggestions,
    )
    for entry in mapping:
        picked = previous.get(entry.source_header)
        if picked and any(s.header == picked for s in entry.suggestions):
            entry.selected_match = picked

    session.header_mapping = mapping
    return mapping


def select_header_match(session: ReconSession, source_header: str, target_header: Optional[str]):
    """Override the selected target header for one source header."""
    if target_header is not None and target_header not in session.target.headers:
        raise ValueError(f"Unknown target header: {target_header}")
    for entry in session.header_mapping:
        if entry.source_header == source_header:
            entry.selected_match = target_header
            return entry
    raise ValueError(f"Unknown source header: {source_header}")


def suggest_keys(session: ReconSession) -> List[KeyCandidate]:
    """Rank key column pairs; an empty list means keys must be chosen by hand."""
    session.key_candidates = find_key_candidates(session.source, session.target, session.config)
    return session.key_candidates


def confirm_key(session: ReconSession, source_key: str, target_key: str) -> KeyMapping:
    """
    Confirm the join key, either a ranked candidate or a manual pair.

    Raises:
        ValueError: If either column does not exist
    """
    session.source.column_index(source_key)
    session.target.column_index(target_key)

    candidate = next(
        (c for c in session.key_candidates
         if c.source_key == source_key and c.target_key == target_key),
        None,
    )
    if candidate is None:
        candidate = score_key_pair(session.source, session.target, source_key, target_key)

    session.key_mapping = KeyMapping.from_candidate(candidate)
    _reset_from_formula(session)
    log.info("key_confirmed", **session.key_mapping.to_dict())
    return session.key_mapping


def _require_key(session: ReconSession) -> KeyMapping:
    if session.key_mapping is None:
        raise ValueError("A unique key must be confirmed first")
    return session.key_mapping


def suggest_formula(
    session: ReconSession,
    source_columns: List[str],
    target_columns: List[str]
) -> FormulaSuggestion:
    """Infer a formula relating the chosen columns from the first matching row pair."""
    key_mapping = _require_key(session)
    session.formula_suggestion = infer_formula(
        session.source, session.target, key_mapping, source_columns, target_columns
    )
    return session.formula_suggestion


def confirm_formula(
    session: ReconSession,
    formula: str,
    source_columns: Optional[List[str]] = None,
    target_columns: Optional[List[str]] = None
) -> ReconFormula:
    """
    Confirm the formula used for reconciliation.

    Column lists default to the headers each half of the formula names.
    """
    _require_key(session)
    source_expr, target_expr = split_formula(strip_marker(formula)[0])
    if source_columns is None:
        source_columns = referenced_columns(source_expr, session.source.headers)
    if target_columns is None:
        target_columns = referenced_columns(target_expr, session.target.headers)

    session.formula = ReconFormula(
        formula=formula,
        source_columns=list(source_columns),
        target_columns=list(target_columns),
    )
    session.result = None
    log.info("formula_confirmed", **session.formula.to_dict())
    return session.formula


def preview(session: ReconSession) -> Optional[dict]:
    """Evaluate the confirmed formula on the first key-matched row pair."""
    key_mapping = _require_key(session)
    if session.formula is None:
        return None
    sample = find_example_match(session.source, session.target, key_mapping)
    if sample is None:
        return None
    return preview_formula(
        session.formula,
        sample[0],
        sample[1],
        session.config.match_tolerance,
        session.config.value_precision,
    )


def run(session: ReconSession, engine: Optional[ReconEngine] = None) -> ReconResult:
    """
    Reconcile the session's tables with its confirmed key and formula.

    Raises:
        ValueError: If the key or formula has not been confirmed
    """
    key_mapping = _require_key(session)
    if session.formula is None:
        raise ValueError("A formula must be confirmed first")

    own_engine = engine is None
    engine = engine or ReconEngine(session.config)
    try:
        session.result = engine.reconcile(session.source, session.target, key_mapping, session.formula)
    finally:
        if own_engine:
            engine.close()
    return session.result


def mapping_export(session: ReconSession) -> dict:
    """The header mapping artifact for this session."""
    return build_mapping_export(
        session.header_mapping,
        session.key_mapping,
        session.source.header_row_index,
        session.target.header_row_index,
    )
