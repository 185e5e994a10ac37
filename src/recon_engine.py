"""Reconciliation engine: joins two tables by key and compares derived values."""

from collections import OrderedDict, deque
from typing import Any, Dict, List, Optional, Sequence

import duckdb
import structlog

from csv_parser import round_half_up
from formula import evaluate_formula
from models import (
    KeyMapping,
    MatchedTransaction,
    MatchStatus,
    ReconConfig,
    ReconFormula,
    ReconResult,
    ReconSummary,
    Side,
    Table,
    UnmatchedTransaction,
)

log = structlog.get_logger(__name__)


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class ReconEngine:
    """
    Reconciliation engine.

    Matching runs in Python over in-memory tables; results can then be loaded
    into an in-memory DuckDB connection for querying and CSV export.
    """

    MATCHED_TABLE = "matched"
    UNMATCHED_SOURCE_TABLE = "unmatched_source"
    UNMATCHED_TARGET_TABLE = "unmatched_target"

    def __init__(self, config: Optional[ReconConfig] = None):
        """Initialize with reconciliation settings and an in-memory DuckDB connection."""
        self.config = config or ReconConfig()
        self.conn = duckdb.connect(":memory:")

    def _evaluate(self, columns: Sequence[str], row: Dict[str, str], formula: str, side: Side):
        return evaluate_formula(columns, row, formula, side, self.config.value_precision)

    def reconcile(
        self,
        source: Table,
        target: Table,
        key_mapping: KeyMapping,
        recon_formula: ReconFormula
    ) -> ReconResult:
        """
        Pair source and target rows by key and classify each pair.

        Rows with a blank key are ignored. Every other row ends up in exactly
        one of: matched, unmatched target, unmatched source. Each target hit
        consumes the oldest unconsumed source row with that key.

        Args:
            source: Source table
            target: Target table
            key_mapping: Confirmed key columns
            recon_formula: Confirmed formula and the columns each side reads

        Returns:
            ReconResult with matched and unmatched transactions and a summary

        Raises:
            ValueError: If a key column is missing from its table
        """
        source_key_idx = source.column_index(key_mapping.source_key)
        target_key_idx = target.column_index(key_mapping.target_key)
        formula = recon_formula.formula
        tolerance = self.config.match_tolerance

        # 1. Source lookup: key -> queue of (row, value)
        source_lookup: "OrderedDict[str, deque]" = OrderedDict()
        for row in source.rows:
            key = row[source_key_idx]
            if not key.strip():
                continue
            row_obj = source.row_dict(row)
            value = self._evaluate(recon_formula.source_columns, row_obj, formula, Side.SOURCE)
            source_lookup.setdefault(key, deque()).append((row_obj, value))

        matched: List[MatchedTransaction] = []
        unmatched_target: List[UnmatchedTransaction] = []
        unmatched_source: List[UnmatchedTransaction] = []

        total_source_value = 0.0
        total_target_value = 0.0
        total_difference = 0.0
        perfect_matches = 0
        value_mismatches = 0

        # 2. Target pass
        for row in target.rows:
            key = row[target_key_idx]
            if not key.strip():
                continue
            row_obj = target.row_dict(row)
            target_value = self._evaluate(recon_formula.target_columns, row_obj, formula, Side.TARGET)

            pending = source_lookup.get(key)
            if not pending:
                unmatched_target.append(UnmatchedTransaction(
                    side=Side.TARGET,
                    row=row_obj,
                    key=key,
                    reason=f"no matching transaction with ID '{key}' found in source data",
                ))
                continue

            source_row, source_value = pending.popleft()
            if not pending:
                del source_lookup[key]

            difference = None
            status = MatchStatus.MATCHED
            if isinstance(source_value, float) and isinstance(target_value, float):
                difference = source_value - target_value
                total_source_value += source_value
                total_target_value += target_value
                total_difference += difference
                if abs(difference) < tolerance:
                    difference = 0.0
                    perfect_matches += 1
                else:
                    difference = round(difference, self.config.value_precision)
                    status = MatchStatus.VALUE_MISMATCH
                    value_mismatches += 1
            elif source_value != target_value:
                status = MatchStatus.VALUE_MISMATCH
                value_mismatches += 1
            else:
                perfect_matches += 1

            matched.append(MatchedTransaction(
                source_row=source_row,
                target_row=row_obj,
                source_value=source_value,
                target_value=target_value,
                difference=difference,
                key=key,
                status=status,
            ))

        # 3. Whatever the target pass did not consume
        for key, pending in source_lookup.items():
            for source_row, source_value in pending:
                unmatched_source.append(UnmatchedTransaction(
                    side=Side.SOURCE,
                    row=source_row,
                    key=key,
                    reason=f"no matching transaction with ID '{key}' found in target data",
                ))
                if isinstance(source_value, float):
                    total_source_value += source_value

        # 4. Summary
        unmatched = unmatched_target + unmatched_source
        total = len(matched) + len(unmatched)
        precision = self.config.value_precision
        summary = ReconSummary(
            total_transactions=total,
            matched_transactions=len(matched),
            unmatched_transactions=len(unmatched),
            match_percentage=round_half_up(len(matched) / total * 100) if total else 0,
            total_source_value=round(total_source_value, precision),
            total_target_value=round(total_target_value, precision),
            total_difference=round(total_difference, precision),
            perfect_matches=perfect_matches,
            value_mismatches=value_mismatches,
        )

        log.info(
            "reconciliation_complete",
            source_key=key_mapping.source_key,
            target_key=key_mapping.target_key,
            formula=formula,
            matched=summary.matched_transactions,
            unmatched=summary.unmatched_transactions,
            perfect_matches=perfect_matches,
            value_mismatches=value_mismatches,
        )
        return ReconResult(matched=matched, unmatched=unmatched, summary=summary)

    # =========================================================================
    # Result tables
    # =========================================================================

    def _create_table(self, table_name: str, columns: List[str], rows: List[list]) -> int:
        cols_str = ", ".join(f"{_quote_ident(col)} VARCHAR" for col in columns)
        self.conn.execute(f"CREATE OR REPLACE TABLE {table_name} ({cols_str})")
        if rows:
            placeholders = ", ".join("?" for _ in columns)
            self.conn.executemany(f"INSERT INTO {table_name} VALUES ({placeholders})", rows)
        return len(rows)

    def load_result(self, result: ReconResult, source_headers: List[str], target_headers: List[str]) -> Dict[str, int]:
        """
        Load a reconciliation result into DuckDB tables.

        Args:
            result: Output of reconcile()
            source_headers: Source table headers (columns of unmatched source rows)
            target_headers: Target table headers (columns of unmatched target rows)

        Returns:
            Dict mapping table names to row counts
        """
        def text(value):
            return None if value is None else str(value)

        matched_cols = ["key", "status", "source_value", "target_value", "difference"]
        matched_cols += [f"source.{h}" for h in source_headers]
        matched_cols += [f"target.{h}" for h in target_headers]
        matched_rows = [
            [m.key, m.status.value, text(m.source_value), text(m.target_value), text(m.difference)]
            + [m.source_row.get(h) for h in source_headers]
            + [m.target_row.get(h) for h in target_headers]
            for m in result.matched
        ]

        def unmatched_rows(side: Side, headers: List[str]) -> List[list]:
            return [
                [u.key, u.reason] + [u.row.get(h) for h in headers]
                for u in result.unmatched if u.side == side
            ]

        return {
            self.MATCHED_TABLE: self._create_table(self.MATCHED_TABLE, matched_cols, matched_rows),
            self.UNMATCHED_SOURCE_TABLE: self._create_table(
                self.UNMATCHED_SOURCE_TABLE,
                ["key", "reason"] + list(source_headers),
                unmatched_rows(Side.SOURCE, source_headers),
            ),
            self.UNMATCHED_TARGET_TABLE: self._create_table(
                self.UNMATCHED_TARGET_TABLE,
                ["key", "reason"] + list(target_headers),
                unmatched_rows(Side.TARGET, target_headers),
            ),
        }

    def get_columns(self, table_name: str) -> List[str]:
        """Get column names for a loaded table."""
        result = self.conn.execute(f"DESCRIBE {table_name}").fetchall()
        return [row[0] for row in result]

    def get_row_count(self, table_name: str) -> int:
        """Get row count for a table."""
        result = self.conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()
        return result[0] if result else 0

    def get_results(self, table_name: str, limit: int = 1000) -> List[tuple]:
        """
        Get rows from a result table.

        Args:
            table_name: Name of the result table
            limit: Maximum rows to return (for preview display)
        """
        return self.conn.execute(f"SELECT * FROM {table_name} LIMIT {int(limit)}").fetchall()

    def preview_table(self, table_name: str, limit: int = 5) -> Dict[str, Any]:
        """Column names, total row count and the first rows of a result table."""
        return {
            "columns": self.get_columns(table_name),
            "rowCount": self.get_row_count(table_name),
            "rows": [list(row) for row in self.get_results(table_name, limit)],
        }

    def export_table(self, table_name: str, output_path: str) -> int:
        """
        Export a table to CSV.

        Args:
            table_name: Name of the table to export
            output_path: Path for the output CSV file

        Returns:
            Number of rows exported
        """
        count = self.get_row_count(table_name)
        path = output_path.replace("'", "''")
        self.conn.execute(f"COPY {table_name} TO '{path}' (HEADER, DELIMITER ',')")
        return count

    def close(self):
        """Close the database connection."""
        self.conn.close()
