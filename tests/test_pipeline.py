from __future__ import annotations

import pytest

import pipeline
from models import MatchStatus, ReconConfig, Side

SOURCE = """Export from ledger
TxID,Amt,Fee
A1,10,2.5
A2,20,1
A3,30,0
"""

TARGET = """RefID,Total
A1,12.5
A2,22
A4,7
"""


@pytest.fixture
def session():
    return pipeline.start_session(SOURCE, TARGET, "ledger.csv", "bank.csv")


def test_start_session_parses_both_files(session) -> None:
    assert session.source.header_row_index == 1
    assert session.source.headers == ["TxID", "Amt", "Fee"]
    assert session.target.headers == ["RefID", "Total"]
    assert [entry.source_header for entry in session.header_mapping] == ["TxID", "Amt", "Fee"]


def test_start_session_accepts_line_lists() -> None:
    session = pipeline.start_session(["TxID,Amt", "A1,10"], ["RefID,Value", "A1,10"])
    assert session.source.rows == [["A1", "10"]]
    assert session.target.file_name == "target.csv"


def test_full_workflow(session) -> None:
    candidates = pipeline.suggest_keys(session)
    best = candidates[0]
    assert (best.source_key, best.target_key) == ("TxID", "RefID")

    pipeline.confirm_key(session, best.source_key, best.target_key)
    suggestion = pipeline.suggest_formula(session, ["Amt", "Fee"], ["Total"])
    assert suggestion.formula == "Amt + Fee = Total"

    recon_formula = pipeline.confirm_formula(session, suggestion.formula)
    assert recon_formula.source_columns == ["Amt", "Fee"]
    assert recon_formula.target_columns == ["Total"]
    assert pipeline.preview(session)["matched"] is True

    result = pipeline.run(session)

    assert session.result is result
    assert [(m.key, m.status) for m in result.matched] == [
        ("A1", MatchStatus.MATCHED),
        ("A2", MatchStatus.VALUE_MISMATCH),
    ]
    assert [u.key for u in result.unmatched_target] == ["A4"]
    assert [u.key for u in result.unmatched_source] == ["A3"]
    assert result.summary.match_percentage == 50


def test_manual_key_selection_is_scored(session) -> None:
    key_mapping = pipeline.confirm_key(session, "TxID", "RefID")
    assert key_mapping.source_key == "TxID"
    assert 0 <= key_mapping.confidence <= 100


def test_confirm_key_rejects_unknown_column(session) -> None:
    with pytest.raises(ValueError):
        pipeline.confirm_key(session, "TxID", "Missing")


def test_stages_require_earlier_choices(session) -> None:
    with pytest.raises(ValueError):
        pipeline.suggest_formula(session, ["Amt"], ["Total"])
    with pytest.raises(ValueError):
        pipeline.run(session)

    pipeline.confirm_key(session, "TxID", "RefID")
    with pytest.raises(ValueError):
        pipeline.run(session)


def test_changing_header_row_clears_later_choices(session) -> None:
    pipeline.confirm_key(session, "TxID", "RefID")
    pipeline.confirm_formula(session, "Amt = Total")

    table = pipeline.set_header_row(session, Side.SOURCE, 0)

    assert table.headers == ["Export from ledger"]
    assert session.key_mapping is None
    assert session.formula is None
    assert [entry.source_header for entry in session.header_mapping] == ["Export from ledger"]


def test_threshold_change_keeps_user_pick_when_still_suggested() -> None:
    session = pipeline.start_session(
        "Amount,Date\n1,2", "AmountUSD,Amount,Date\n1,1,2", config=ReconConfig(similarity_threshold=50)
    )
    pipeline.select_header_match(session, "Amount", "AmountUSD")

    pipeline.update_header_mapping(session, threshold=40, max_suggestions=5)
    assert session.header_mapping[0].selected_match == "AmountUSD"
    assert session.config.max_suggestions == 5

    pipeline.update_header_mapping(session, threshold=90)
    assert session.header_mapping[0].selected_match == "Amount"


def test_select_header_match_validates_names(session) -> None:
    with pytest.raises(ValueError):
        pipeline.select_header_match(session, "Nope", "Total")
    with pytest.raises(ValueError):
        pipeline.select_header_match(session, "Amt", "Nope")

    entry = pipeline.select_header_match(session, "Amt", None)
    assert entry.selected_match is None


def test_mapping_export(session) -> None:
    pipeline.confirm_key(session, "TxID", "RefID")

    exported = pipeline.mapping_export(session)

    assert set(exported["mapping"]) == {"TxID", "Amt", "Fee"}
    assert exported["metadata"]["uniqueKey"]["source"] == "TxID"
    assert exported["metadata"]["sourceHeaderRow"] == 1
    assert exported["metadata"]["targetHeaderRow"] == 0
