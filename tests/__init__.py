"""Test suite for CellType-RefMatch.

Test organization:
- fixtures/: Mock reference and query generators
- unit/: Unit tests for individual modules

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
