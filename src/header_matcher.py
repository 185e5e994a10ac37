"""Fuzzy matching between header names of two files."""

from typing import Dict, List, Optional

from models import HeaderMappingEntry, HeaderSuggestion, KeyMapping


def calculate_similarity(str1: str, str2: str) -> int:
    """
    Score how alike two header names are, from 0 to 100.

    This is a coarse ranking signal, not an edit distance:
    - case-insensitive equality scores 100
    - one name containing the other scores up to 80 by length ratio
    - otherwise the share of the first name's characters that occur anywhere
      in the second name, relative to the longer length, scores up to 60
    """
    s1 = str1.lower()
    s2 = str2.lower()

    if s1 == s2:
        return 100

    longest = max(len(s1), len(s2))
    if not s1 or not s2:
        return 0

    if s1 in s2 or s2 in s1:
        ratio = min(len(s1), len(s2)) / longest
        return int(ratio * 80)

    matches = sum(1 for ch in s1 if ch in s2)
    return int(matches / longest * 60)


def find_best_matches(
    source_header: str,
    target_headers: List[str],
    threshold: int = 30,
    max_matches: int = 3
) -> List[HeaderSuggestion]:
    """
    Rank target headers against one source header.

    Args:
        source_header: Header to find matches for
        target_headers: Candidate headers
        threshold: Minimum similarity to keep a candidate
        max_matches: Maximum suggestions returned

    Returns:
        Suggestions sorted by similarity, highest first
    """
    matches = [
        HeaderSuggestion(header=target, similarity=calculate_similarity(source_header, target))
        for target in target_headers
    ]
    matches = [m for m in matches if m.similarity >= threshold]
    matches.sort(key=lambda m: m.similarity, reverse=True)
    return matches[:max_matches]


def generate_header_mapping(
    source_headers: List[str],
    target_headers: List[str],
    threshold: int = 30,
    max_matches: int = 3
) -> List[HeaderMappingEntry]:
    """Suggest target headers for every source header, preselecting the best."""
    mapping = []
    for source_header in source_headers:
        suggestions = find_best_matches(source_header, target_headers, threshold, max_matches)
        mapping.append(HeaderMappingEntry(
            source_header=source_header,
            suggestions=suggestions,
            selected_match=suggestions[0].header if suggestions else None,
        ))
    return mapping


def create_mapping_result(mapping: List[HeaderMappingEntry]) -> Dict[str, Optional[str]]:
    """Collapse a mapping into {source header: selected target header or None}."""
    return {entry.source_header: entry.selected_match for entry in mapping}


def build_mapping_export(
    mapping: List[HeaderMappingEntry],
    key_mapping: Optional[KeyMapping],
    source_header_row: int,
    target_header_row: int
) -> dict:
    """The exported header-matching artifact, ready for JSON serialization."""
    return {
        'mapping': create_mapping_result(mapping),
        'metadata': {
            'uniqueKey': key_mapping.to_dict() if key_mapping else None,
            'sourceHeaderRow': source_header_row,
            'targetHeaderRow': target_header_row,
        },
    }
