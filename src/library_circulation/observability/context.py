"""Context managers for tracing database operations."""

from contextlib import contextmanager

import logfire


@contextmanager
def trace_repository_operation(repository: str, operation: str, table: str | None = None):
    """Wrap a unit of work in a Logfire span, recording the error if it fails."""
    with logfire.span(
        "db.{repository}.{operation}",
        repository=repository,
        operation=operation,
        db_table=table or repository,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.set_attribute("db.error", str(e))
            span.set_attribute("db.error_type", type(e).__name__)
            raise
