"""Enumerations shared across the invoice synthesis modules.

Centralises domain constants so that the data access layer (DAL), the
generation engine, and the command-line front-end rely on a single source of
truth for error kinds, allocation states, and workbook identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class ErrorKind(str, Enum):
    """Enumerate the stable failure kinds reported by a generation run."""

    NO_ELIGIBLE_PRODUCTS = "no_eligible_products"
    NO_PRODUCTS_FOR_RATE = "no_products_for_rate"
    INSUFFICIENT_STOCK = "insufficient_stock"
    NO_LINES_GENERATED = "no_lines_generated"
    GENERATION_ERROR = "generation_error"


class AllocationState(str, Enum):
    """Enumerate the states of the per-rate allocation loop."""

    ALLOCATING = "allocating"
    SATISFIED = "satisfied"
    EXHAUSTED = "exhausted"
    BLOCKED = "blocked"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    GENERATED_LINES = "GeneratedLines"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ErrorKind",
    "AllocationState",
    "SheetName",
]
