"""Export utilities for reconciliation results."""

import json
import os
from typing import Dict, List

import structlog

from recon_engine import ReconEngine
from models import ReconResult

log = structlog.get_logger(__name__)


class Exporter:
    """Handles exporting reconciliation results to CSV and JSON files."""

    # Mapping of table names to friendly file names
    TABLE_FILE_NAMES = {
        ReconEngine.MATCHED_TABLE: "matched_transactions.csv",
        ReconEngine.UNMATCHED_SOURCE_TABLE: "missing_in_target.csv",
        ReconEngine.UNMATCHED_TARGET_TABLE: "missing_in_source.csv",
    }

    RESULT_FILE_NAME = "reconciliation_result.json"
    MAPPING_FILE_NAME = "header_mapping.json"

    def __init__(self, engine: ReconEngine):
        """
        Initialize exporter with a reconciliation engine.

        Args:
            engine: ReconEngine whose DuckDB connection holds the result tables
        """
        self.engine = engine

    def export_table(self, table_name: str, output_dir: str) -> str:
        """
        Export a single result table to CSV.

        Args:
            table_name: Name of the table to export
            output_dir: Directory to save the CSV file

        Returns:
            Path to the exported file
        """
        os.makedirs(output_dir, exist_ok=True)
        file_name = self.TABLE_FILE_NAMES.get(table_name, f"{table_name}.csv")
        output_path = os.path.join(output_dir, file_name)

        rows = self.engine.export_table(table_name, output_path)
        log.info("table_exported", table=table_name, path=output_path, rows=rows)
        return output_path

    def export_all(
        self,
        result: ReconResult,
        output_dir: str,
        source_headers: List[str],
        target_headers: List[str]
    ) -> Dict[str, str]:
        """
        Export all result tables to CSV files plus the result as JSON.

        Args:
            result: Reconciliation result
            output_dir: Directory for the exported files
            source_headers: Source table headers
            target_headers: Target table headers

        Returns:
            Dictionary mapping table names (and "result") to exported file paths
        """
        os.makedirs(output_dir, exist_ok=True)
        self.engine.load_result(result, source_headers, target_headers)

        exported = {}
        for table_name in self.TABLE_FILE_NAMES:
            exported[table_name] = self.export_table(table_name, output_dir)

        exported["result"] = self.export_json(
            result.to_dict(), os.path.join(output_dir, self.RESULT_FILE_NAME)
        )
        return exported

    @staticmethod
    def export_json(payload: dict, output_path: str) -> str:
        """Write a JSON document (indent 2) and return its path."""
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        return output_path
