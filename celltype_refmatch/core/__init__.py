"""Core computational modules for CellType-RefMatch.

This package contains the main analysis engines:
- classification: gene selection, correlation scoring, fine-tuning and
  the engine that runs them over a query set
"""
