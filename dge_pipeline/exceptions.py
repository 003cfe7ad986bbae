"""
Exceptions raised by the DGE pipeline.

Every error derives from DGEError and carries an optional ``details``
dictionary with the offending identifiers, so the CLI and callers can
report exactly which genes, samples or coefficients were at fault.
"""

from typing import Any, Dict, Optional


class DGEError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class InputFormatError(DGEError, ValueError):
    """Raised when a count, metadata or annotation table is malformed."""


class SampleAlignmentError(DGEError, ValueError):
    """
    Raised when count matrix columns and metadata samples disagree.

    ``details`` contains:
        - missing_in_metadata: samples present only in the count matrix
        - missing_in_counts: samples present only in the metadata
        - mismatched_positions: (position, count sample, metadata sample)
          tuples when both sides hold the same samples in a different order
    """


class DesignMatrixError(DGEError, ValueError):
    """Raised for invalid formulas, rank-deficient designs or bad contrasts."""


class ConfigError(DGEError, ValueError):
    """Raised when an analysis configuration file is invalid."""
