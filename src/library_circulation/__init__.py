"""
Library Circulation Package.

This package implements the circulation engine of a lending library and
exposes it as an MCP (Model Context Protocol) server.

Key Components:
- models: Pydantic models and enums for copies, loans, holds and fines
- database: SQLAlchemy schema, sessions, ledgers and the circulation orchestrator
- eligibility: Pure borrowing/renewal policy evaluation
- authz: Explicit staff/member capability checks
- config: Configuration management with Pydantic v2
- tools: MCP tools (operations with side effects)
"""

__version__ = "0.1.0"

from . import database

__all__ = [
    "__version__",
    "database",
]
