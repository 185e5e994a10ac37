from __future__ import annotations

import csv

import pytest

from conftest import make_table
from exporter import Exporter
from models import KeyMapping, MatchStatus, ReconFormula, Side
from recon_engine import ReconEngine


@pytest.fixture
def engine():
    engine = ReconEngine()
    yield engine
    engine.close()


def test_end_to_end_scenario(engine, source_table, target_table, key_mapping, amount_formula) -> None:
    result = engine.reconcile(source_table, target_table, key_mapping, amount_formula)

    assert len(result.matched) == 1
    match = result.matched[0]
    assert match.key == "A1"
    assert match.source_value == 10
    assert match.target_value == 10
    assert match.difference == 0
    assert match.status == MatchStatus.MATCHED
    assert match.source_row == {"TxID": "A1", "Amt": "10"}
    assert match.target_row == {"RefID": "A1", "Value": "10"}

    assert [u.key for u in result.unmatched_source] == ["A2"]
    assert [u.key for u in result.unmatched_target] == ["A3"]
    assert result.unmatched_source[0].reason == "no matching transaction with ID 'A2' found in target data"
    assert result.unmatched_target[0].reason == "no matching transaction with ID 'A3' found in source data"

    summary = result.summary
    assert summary.total_transactions == 3
    assert summary.matched_transactions == 1
    assert summary.unmatched_transactions == 2
    assert summary.match_percentage == 33
    assert summary.perfect_matches == 1
    assert summary.value_mismatches == 0
    assert summary.total_source_value == 30
    assert summary.total_target_value == 10
    assert summary.total_difference == 0


def test_value_mismatch_scenario(engine, source_table, key_mapping, amount_formula) -> None:
    target = make_table(["RefID", "Value"], [["A1", "12"], ["A3", "5"]])

    result = engine.reconcile(source_table, target, key_mapping, amount_formula)

    match = result.matched[0]
    assert match.status == MatchStatus.VALUE_MISMATCH
    assert match.difference == -2
    assert result.summary.value_mismatches == 1
    assert result.summary.perfect_matches == 0
    assert result.summary.total_difference == -2


@pytest.mark.parametrize("target_value, status", [("10.0005", MatchStatus.MATCHED), ("10.002", MatchStatus.VALUE_MISMATCH)])
def test_numeric_tolerance(engine, key_mapping, amount_formula, target_value, status) -> None:
    source = make_table(["TxID", "Amt"], [["A1", "10"]])
    target = make_table(["RefID", "Value"], [["A1", target_value]])

    match = engine.reconcile(source, target, key_mapping, amount_formula).matched[0]

    assert match.status == status
    if status == MatchStatus.MATCHED:
        assert match.difference == 0


def test_text_values_compare_by_equality(engine, key_mapping) -> None:
    source = make_table(["TxID", "Name"], [["A1", "Bob"], ["A2", "Ann"]])
    target = make_table(["RefID", "Payee"], [["A1", "Bob"], ["A2", "Anne"]])
    formula = ReconFormula("Name = Payee", ["Name"], ["Payee"])

    result = engine.reconcile(source, target, key_mapping, formula)

    assert [m.status for m in result.matched] == [MatchStatus.MATCHED, MatchStatus.VALUE_MISMATCH]
    assert all(m.difference is None for m in result.matched)
    assert result.summary.total_source_value == 0


def test_blank_amount_reads_as_zero(engine, key_mapping, amount_formula) -> None:
    source = make_table(["TxID", "Amt"], [["A1", ""], ["A2", "  "]])
    target = make_table(["RefID", "Value"], [["A1", "0"], ["A2", "3"]])

    result = engine.reconcile(source, target, key_mapping, amount_formula)

    assert [(m.source_value, m.target_value, m.status) for m in result.matched] == [
        (0.0, 0.0, MatchStatus.MATCHED),
        (0.0, 3.0, MatchStatus.VALUE_MISMATCH),
    ]
    assert result.matched[1].difference == -3
    assert result.summary.total_target_value == 3


def test_multi_column_formula(engine, key_mapping) -> None:
    source = make_table(["TxID", "Net", "Tax"], [["A1", "100", "15"], ["A2", "50", "5"]])
    target = make_table(["RefID", "Gross"], [["A1", "115"], ["A2", "56"]])
    formula = ReconFormula("Net + Tax = Gross", ["Net", "Tax"], ["Gross"])

    result = engine.reconcile(source, target, key_mapping, formula)

    assert [(m.source_value, m.target_value, m.difference) for m in result.matched] == [
        (115, 115, 0),
        (55, 56, -1),
    ]


def test_blank_keys_are_ignored(engine, key_mapping, amount_formula) -> None:
    source = make_table(["TxID", "Amt"], [["A1", "10"], ["", "99"]])
    target = make_table(["RefID", "Value"], [["A1", "10"], ["", "1"]])

    result = engine.reconcile(source, target, key_mapping, amount_formula)

    assert result.summary.total_transactions == 1
    assert result.summary.total_source_value == 10


def test_every_keyed_row_lands_in_exactly_one_bucket(engine, key_mapping, amount_formula) -> None:
    source = make_table(["TxID", "Amt"], [["A1", "1"], ["A1", "2"], ["A2", "3"], ["A4", "4"]])
    target = make_table(["RefID", "Value"], [["A1", "1"], ["A2", "3"], ["A2", "3"], ["A5", "5"]])

    result = engine.reconcile(source, target, key_mapping, amount_formula)

    matched = len(result.matched)
    assert matched + len(result.unmatched_source) == 4
    assert matched + len(result.unmatched_target) == 4
    # the first A1 source row is consumed, the duplicate stays unmatched
    assert result.matched[0].source_row["Amt"] == "1"
    assert sorted(u.key for u in result.unmatched_source) == ["A1", "A4"]
    assert sorted(u.key for u in result.unmatched_target) == ["A2", "A5"]


def test_unmatched_target_rows_come_before_source_rows(engine, source_table, target_table, key_mapping, amount_formula) -> None:
    result = engine.reconcile(source_table, target_table, key_mapping, amount_formula)
    assert [u.side for u in result.unmatched] == [Side.TARGET, Side.SOURCE]


def test_invalid_formula_degrades_per_row(engine, source_table, target_table, key_mapping) -> None:
    formula = ReconFormula("Amt / TxID = Value", ["Amt", "TxID"], ["Value"])

    result = engine.reconcile(source_table, target_table, key_mapping, formula)

    assert result.matched[0].source_value == 0
    assert result.matched[0].status == MatchStatus.VALUE_MISMATCH


def test_empty_tables(engine, key_mapping, amount_formula) -> None:
    source = make_table(["TxID", "Amt"], [])
    target = make_table(["RefID", "Value"], [])

    result = engine.reconcile(source, target, key_mapping, amount_formula)

    assert result.matched == []
    assert result.unmatched == []
    assert result.summary.match_percentage == 0


def test_missing_key_column_raises(engine, source_table, target_table, amount_formula) -> None:
    with pytest.raises(ValueError):
        engine.reconcile(source_table, target_table, KeyMapping("Nope", "RefID"), amount_formula)


def test_result_serializes_with_consumer_field_names(engine, source_table, target_table, key_mapping, amount_formula) -> None:
    data = engine.reconcile(source_table, target_table, key_mapping, amount_formula).to_dict()

    assert data["matched"][0]["status"] == "matched"
    assert set(data["matched"][0]) == {
        "sourceRow", "targetRow", "sourceValue", "targetValue", "difference", "key", "status",
    }
    assert data["unmatched"][0]["type"] == "target"
    assert data["summary"]["matchPercentage"] == 33


def test_export_writes_result_tables(engine, source_table, target_table, key_mapping, amount_formula, tmp_path) -> None:
    result = engine.reconcile(source_table, target_table, key_mapping, amount_formula)

    exported = Exporter(engine).export_all(result, str(tmp_path), source_table.headers, target_table.headers)

    assert engine.get_row_count(ReconEngine.MATCHED_TABLE) == 1
    with open(exported[ReconEngine.MATCHED_TABLE], newline="") as f:
        rows = list(csv.DictReader(f))
    assert rows[0]["key"] == "A1"
    assert rows[0]["status"] == "matched"
    assert rows[0]["source.Amt"] == "10"

    with open(exported[ReconEngine.UNMATCHED_SOURCE_TABLE], newline="") as f:
        rows = list(csv.DictReader(f))
    assert [r["key"] for r in rows] == ["A2"]
    assert (tmp_path / Exporter.RESULT_FILE_NAME).exists()


def test_preview_table_reads_loaded_result(engine, source_table, target_table, key_mapping, amount_formula) -> None:
    result = engine.reconcile(source_table, target_table, key_mapping, amount_formula)
    engine.load_result(result, source_table.headers, target_table.headers)

    preview = engine.preview_table(ReconEngine.UNMATCHED_TARGET_TABLE, limit=1)

    assert preview["columns"] == ["key", "reason"] + target_table.headers
    assert preview["rowCount"] == len(result.unmatched_target)
    assert len(preview["rows"]) == 1
    assert preview["rows"][0][0] == result.unmatched_target[0].key
