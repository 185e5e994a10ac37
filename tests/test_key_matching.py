from __future__ import annotations

from conftest import make_table
from key_detector import detect_unique_keys, is_key_column, uniqueness_ratio
from key_matcher import find_key_candidates, score_key_pair
from models import ReconConfig


def test_detects_unique_fully_populated_columns() -> None:
    table = make_table(
        ["TxID", "Status", "Amount", "id", "X", "Ref"],
        [
            ["A1", "open", "10", "1", "a", "r1"],
            ["A2", "open", "20", "2", "b", ""],
            ["A3", "closed", "30", "3", "c", "r3"],
        ],
    )

    # Status repeats, "id" is generic, "X" is too short, "Ref" has a blank
    assert detect_unique_keys(table) == ["TxID", "Amount"]


def test_generic_names_allowed_when_exclusion_disabled() -> None:
    table = make_table(["id"], [["1"], ["2"]])
    assert detect_unique_keys(table, ReconConfig(exclude_generic_keys=False)) == ["id"]


def test_uniqueness_threshold_is_strict() -> None:
    at_threshold = [f"v{i}" for i in range(19)] + ["v0"]          # 19/20 = 0.95
    above_threshold = [f"v{i}" for i in range(20)] + ["v0"]       # 20/21 > 0.95

    assert uniqueness_ratio(at_threshold) == 0.95
    assert not is_key_column("Ref", at_threshold)
    assert is_key_column("Ref", above_threshold)


def test_empty_table_has_no_keys() -> None:
    assert detect_unique_keys(make_table(["TxID"], [])) == []


def test_key_candidates_ranked_by_confidence() -> None:
    source = make_table(["TxID", "Amt"], [["A1", "10"], ["A2", "20"], ["A3", "30"]])
    target = make_table(["RefID", "Value"], [["A1", "10"], ["A2", "25"], ["A4", "40"]])

    candidates = find_key_candidates(source, target)

    assert [(c.source_key, c.target_key, c.confidence, c.matching_values_count) for c in candidates] == [
        ("TxID", "RefID", 54, 2),
        ("Amt", "Value", 27, 1),
        ("TxID", "Value", 0, 0),
        ("Amt", "RefID", 0, 0),
    ]


def test_score_key_pair_counts_distinct_overlap() -> None:
    source = make_table(["TxID"], [["A1"], ["A2"]])
    target = make_table(["TxID"], [["A1"], ["A2"], ["A5"], ["A6"]])

    candidate = score_key_pair(source, target, "TxID", "TxID")

    assert candidate.matching_values_count == 2
    # 100% of the smaller set overlaps and names are identical
    assert candidate.confidence == 100


def test_no_candidates_when_one_side_has_no_key() -> None:
    source = make_table(["TxID"], [["A1"], ["A2"]])
    target = make_table(["Status"], [["open"], ["open"]])

    assert find_key_candidates(source, target) == []
