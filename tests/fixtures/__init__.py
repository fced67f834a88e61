"""Test fixtures for CellType-RefMatch.

Provides mock reference and query generators.
"""

from .mock_reference import (
    create_label_profiles,
    create_mock_reference,
    create_mock_query,
    write_csv_inputs,
)

__all__ = [
    "create_label_profiles",
    "create_mock_reference",
    "create_mock_query",
    "write_csv_inputs",
]
