"""Detection of columns usable as unique join keys."""

from typing import List, Optional

import structlog

from models import ReconConfig, Table

log = structlog.get_logger(__name__)

# Too generic to trust as a key without a closer look
GENERIC_KEY_NAMES = {"id", "no", "num", "#"}


def uniqueness_ratio(values: List[str]) -> float:
    """Distinct values divided by value count (0 for an empty column)."""
    if not values:
        return 0.0
    return len(set(values)) / len(values)


def is_key_column(header: str, values: List[str], config: Optional[ReconConfig] = None) -> bool:
    """
    Decide whether one column can serve as a join key.

    Args:
        header: Column name
        values: Every value in the column
        config: Reconciliation settings (uniqueness threshold, stoplist switch)

    Returns:
        True if the column is populated everywhere and near-unique
    """
    config = config or ReconConfig()
    name = header.strip()
    if len(name) < 2:
        return False
    if config.exclude_generic_keys and name.lower() in GENERIC_KEY_NAMES:
        return False
    if not values or any(not v.strip() for v in values):
        return False
    return uniqueness_ratio(values) > config.uniqueness_threshold


def detect_unique_keys(table: Table, config: Optional[ReconConfig] = None) -> List[str]:
    """
    Find the columns of a table whose values are (near-)unique.

    Args:
        table: Parsed table
        config: Reconciliation settings

    Returns:
        Header names of viable key columns, in column order
    """
    config = config or ReconConfig()
    keys = [
        header for idx, header in enumerate(table.headers)
        if is_key_column(header, [row[idx] for row in table.rows], config)
    ]
    log.info("unique_keys_detected", file_name=table.file_name, keys=keys)
    return keys
