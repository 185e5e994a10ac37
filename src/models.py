"""Data models for the reconciliation app."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum


Value = Union[float, str]


class ReconError(Exception):
    """Base class for reconciliation errors."""


class FormulaEvaluationError(ReconError):
    """A formula could not be parsed or produced a non-finite result."""


class MatchStatus(str, Enum):
    """Status of a matched transaction."""
    MATCHED = "matched"
    VALUE_MISMATCH = "value_mismatch"


class Side(str, Enum):
    """Which table a row or formula item belongs to."""
    SOURCE = "source"
    TARGET = "target"
    LITERAL = "literal"


@dataclass
class ReconConfig:
    """Tunables for a reconciliation run."""
    delimiter: str = ","
    # Header detection
    header_scan_limit: int = 20
    min_lines_for_detection: int = 5
    # Header matching
    similarity_threshold: int = 50
    max_suggestions: int = 3
    # Key detection
    uniqueness_threshold: float = 0.95
    exclude_generic_keys: bool = True
    # Value comparison
    match_tolerance: float = 0.001
    value_precision: int = 4

    def __post_init__(self):
        self.max_suggestions = max(1, min(10, int(self.max_suggestions)))


@dataclass
class Table:
    """A parsed delimited file: header row plus data rows of equal width."""
    headers: List[str]
    rows: List[List[str]]
    header_row_index: int = 0
    file_name: str = ""
    # Original line list, kept so the header row can be re-chosen
    lines: List[str] = field(default_factory=list, repr=False)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_count(self) -> int:
        return len(self.headers)

    def column_index(self, header: str) -> int:
        """Index of a header, raising ValueError when it is not present."""
        try:
            return self.headers.index(header)
        except ValueError:
            raise ValueError(f"Column '{header}' not found in {self.file_name or 'table'}")

    def column_values(self, header: str) -> List[str]:
        idx = self.column_index(header)
        return [row[idx] for row in self.rows]

    def row_dict(self, row: List[str]) -> Dict[str, str]:
        """Map a data row to {header: value}."""
        return dict(zip(self.headers, row))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'headers': list(self.headers),
            'rows': [list(row) for row in self.rows],
            'headerRowIndex': self.header_row_index,
            'fileName': self.file_name,
            'rowCount': self.row_count,
            'columnCount': self.column_count,
        }


@dataclass
class HeaderSuggestion:
    """A candidate target header for one source header."""
    header: str
    similarity: int

    def to_dict(self) -> Dict[str, Any]:
        return {'header': self.header, 'similarity': self.similarity}


@dataclass
class HeaderMappingEntry:
    """Suggestions for one source header and the match currently selected."""
    source_header: str
    suggestions: List[HeaderSuggestion] = field(default_factory=list)
    selected_match: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceHeader': self.source_header,
            'suggestions': [s.to_dict() for s in self.suggestions],
            'selectedMatch': self.selected_match,
        }


@dataclass
class KeyCandidate:
    """A ranked (source column, target column) join key proposal."""
    source_key: str
    target_key: str
    confidence: int
    matching_values_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceKey': self.source_key,
            'targetKey': self.target_key,
            'confidence': self.confidence,
            'matchingValuesCount': self.matching_values_count,
        }


@dataclass
class KeyMapping:
    """The confirmed join key used for reconciliation."""
    source_key: str
    target_key: str
    confidence: int = 100

    @classmethod
    def from_candidate(cls, candidate: KeyCandidate) -> "KeyMapping":
        return cls(candidate.source_key, candidate.target_key, candidate.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source_key,
            'target': self.target_key,
            'confidence': self.confidence,
        }


@dataclass
class FormulaItem:
    """One token of a formula being built: a column or an operator."""
    kind: str  # 'column' or 'operator'
    text: str
    side: Side = Side.LITERAL

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'text': self.text, 'side': self.side.value}


@dataclass
class ReconFormula:
    """A confirmed formula string with the columns it reads on each side."""
    formula: str
    source_columns: List[str] = field(default_factory=list)
    target_columns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceColumns': list(self.source_columns),
            'targetColumns': list(self.target_columns),
            'formula': self.formula,
        }


@dataclass
class FormulaSuggestion:
    """Operator relationship inferred from a sample row pair."""
    formula: str
    confidence: int

    def to_dict(self) -> Dict[str, Any]:
        return {'formula': self.formula, 'confidence': self.confidence}


@dataclass
class MatchedTransaction:
    """A source row and a target row sharing a key."""
    source_row: Dict[str, str]
    target_row: Dict[str, str]
    source_value: Value
    target_value: Value
    difference: Optional[float]
    key: str
    status: MatchStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceRow': dict(self.source_row),
            'targetRow': dict(self.target_row),
            'sourceValue': self.source_value,
            'targetValue': self.target_value,
            'difference': self.difference,
            'key': self.key,
            'status': self.status.value,
        }


@dataclass
class UnmatchedTransaction:
    """A row whose key has no counterpart on the other side."""
    side: Side
    row: Dict[str, str]
    key: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        # Consumers read the side under "type"
        return {
            'type': self.side.value,
            'row': dict(self.row),
            'key': self.key,
            'reason': self.reason,
        }


@dataclass
class ReconSummary:
    """Summary counts and totals for reconciliation results."""
    total_transactions: int = 0
    matched_transactions: int = 0
    unmatched_transactions: int = 0
    match_percentage: int = 0
    total_source_value: float = 0.0
    total_target_value: float = 0.0
    total_difference: float = 0.0
    perfect_matches: int = 0
    value_mismatches: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalTransactions': self.total_transactions,
            'matchedTransactions': self.matched_transactions,
            'unmatchedTransactions': self.unmatched_transactions,
            'matchPercentage': self.match_percentage,
            'totalSourceValue': self.total_source_value,
            'totalTargetValue': self.total_target_value,
            'totalDifference': self.total_difference,
            'perfectMatches': self.perfect_matches,
            'valueMismatches': self.value_mismatches,
        }


@dataclass
class ReconResult:
    """Container for all reconciliation outputs."""
    matched: List[MatchedTransaction]
    unmatched: List[UnmatchedTransaction]
    summary: ReconSummary

    @property
    def unmatched_source(self) -> List[UnmatchedTransaction]:
        return [u for u in self.unmatched if u.side == Side.SOURCE]

    @property
    def unmatched_target(self) -> List[UnmatchedTransaction]:
        return [u for u in self.unmatched if u.side == Side.TARGET]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'matched': [m.to_dict() for m in self.matched],
            'unmatched': [u.to_dict() for u in self.unmatched],
            'summary': self.summary.to_dict(),
        }


@dataclass
class ReconSession:
    """
    Transient state for one reconciliation run.

    Each wizard stage reads what earlier stages confirmed and records its own
    outcome here; nothing outlives the run.
    """
    source: Table
    target: Table
    config: ReconConfig = field(default_factory=ReconConfig)
    header_mapping: List[HeaderMappingEntry] = field(default_factory=list)
    key_candidates: List[KeyCandidate] = field(default_factory=list)
    key_mapping: Optional[KeyMapping] = None
    formula_suggestion: Optional[FormulaSuggestion] = None
    formula: Optional[ReconFormula] = None
    result: Optional[ReconResult] = None
