from __future__ import annotations

import pytest

from csv_parser import slice_table
from models import KeyMapping, ReconFormula, Table


def make_table(headers: list[str], rows: list[list[str]], file_name: str = "") -> Table:
    lines = [",".join(headers)] + [",".join(row) for row in rows]
    return slice_table(lines, 0, ",", file_name)


@pytest.fixture
def source_table() -> Table:
    return make_table(["TxID", "Amt"], [["A1", "10"], ["A2", "20"]], "source.csv")


@pytest.fixture
def target_table() -> Table:
    return make_table(["RefID", "Value"], [["A1", "10"], ["A3", "5"]], "target.csv")


@pytest.fixture
def key_mapping() -> KeyMapping:
    return KeyMapping(source_key="TxID", target_key="RefID", confidence=42)


@pytest.fixture
def amount_formula() -> ReconFormula:
    return ReconFormula(formula="Amt = Value", source_columns=["Amt"], target_columns=["Value"])
