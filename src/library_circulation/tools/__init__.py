"""
MCP tools for the Library Circulation server.

Each tool is a dictionary with its name, description, JSON input schema and
async handler. Every input carries the authenticated ``actor``; handlers check
the actor's capability before calling the circulation engine.
"""

from .configuration import configuration_tools
from .fines import fine_tools
from .loans import loan_tools
from .reservations import reservation_tools

all_tools = [
    *loan_tools,
    *fine_tools,
    *reservation_tools,
    *configuration_tools,
]

__all__ = [
    "all_tools",
    "configuration_tools",
    "fine_tools",
    "loan_tools",
    "reservation_tools",
]
