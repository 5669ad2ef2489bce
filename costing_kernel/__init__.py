"""
Costing Kernel - persistence and infrastructure for inventory costing.

Provides the lot timeline that the FIFO engine operates on:
- Stock lots, lot consumptions and sale lines (SQLAlchemy ORM)
- Append-only cost audit log
- Per-product serialization of timeline mutations
- Structured logging and typed exceptions
"""

__version__ = "0.1.0"
