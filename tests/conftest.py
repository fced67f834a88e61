"""Pytest configuration and shared fixtures for CellType-RefMatch tests."""

import sys
from pathlib import Path

import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    create_mock_reference,
    create_mock_query,
)


FIVE_LABELS = ("A", "B", "C", "D", "E")
MAIN_MAP = {"A": "Epithelium", "B": "Epithelium", "C": "Immune"}


# ============================================================================
# Reference Fixtures
# ============================================================================


@pytest.fixture
def reference():
    """Reference with labels A, B, C and four samples each."""
    return create_mock_reference()


@pytest.fixture
def reference_with_main():
    """Reference with fine labels A, B, C mapped to two main labels."""
    return create_mock_reference(main_map=MAIN_MAP)


@pytest.fixture
def reference_five():
    """Reference with five labels."""
    return create_mock_reference(labels=FIVE_LABELS)


# ============================================================================
# Query Fixtures
# ============================================================================


@pytest.fixture
def query_a():
    """Single query sample drawn from label A."""
    return create_mock_query(["A"])


@pytest.fixture
def query_mixed():
    """Six query samples drawn from labels A, B, C in a known order."""
    return create_mock_query(["A", "B", "C", "C", "B", "A"])


@pytest.fixture
def query_five():
    """Three query samples for the five-label reference."""
    return create_mock_query(["A", "D", "E"], all_labels=FIVE_LABELS)


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir
