"""Ranking of join key pairs across the source and target tables."""

from typing import List, Optional

import structlog

from csv_parser import round_half_up
from header_matcher import calculate_similarity
from key_detector import detect_unique_keys
from models import KeyCandidate, ReconConfig, Table

log = structlog.get_logger(__name__)


def score_key_pair(
    source: Table,
    target: Table,
    source_key: str,
    target_key: str
) -> KeyCandidate:
    """
    Score one (source column, target column) pair.

    Value overlap weighs 70% and header-name similarity 30%.
    """
    source_values = set(source.column_values(source_key))
    target_values = set(target.column_values(target_key))

    matching_count = sum(1 for value in target_values if value in source_values)
    smallest = min(len(source_values), len(target_values))
    value_match_percentage = matching_count / smallest * 100 if smallest else 0.0
    name_similarity = calculate_similarity(source_key, target_key)

    return KeyCandidate(
        source_key=source_key,
        target_key=target_key,
        confidence=round_half_up(0.7 * value_match_percentage + 0.3 * name_similarity),
        matching_values_count=matching_count,
    )


def find_key_candidates(
    source: Table,
    target: Table,
    config: Optional[ReconConfig] = None
) -> List[KeyCandidate]:
    """
    Rank every pairing of detected key columns by confidence.

    Args:
        source: Source table
        target: Target table
        config: Reconciliation settings

    Returns:
        Candidates sorted by confidence (stable for ties). Empty when either
        table has no viable key column; the caller then picks keys by hand.
    """
    source_keys = detect_unique_keys(source, config)
    target_keys = detect_unique_keys(target, config)

    if not source_keys or not target_keys:
        log.warning(
            "no_viable_key",
            source_keys=len(source_keys),
            target_keys=len(target_keys),
        )
        return []

    candidates = [
        score_key_pair(source, target, source_key, target_key)
        for source_key in source_keys
        for target_key in target_keys
    ]
    candidates.sort(key=lambda c: c.confidence, reverse=True)

    log.info(
        "key_candidates_ranked",
        count=len(candidates),
        best=candidates[0].to_dict(),
    )
    return candidates
