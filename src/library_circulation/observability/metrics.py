"""Custom metrics for the Library Circulation server."""

import logfire

circulation_events = logfire.metric_counter(
    "library.circulation.events",
    description="Circulation events (checkout, return, renew, fine issued, hold ready)",
)

tool_errors = logfire.metric_counter(
    "library.tools.errors", description="Tool calls that returned an error, by category"
)

sweep_updates = logfire.metric_counter(
    "library.sweeps.updated", description="Rows changed by batch sweeps"
)


def record_circulation_event(event_type: str, count: int = 1) -> None:
    if count > 0:
        circulation_events.add(count, {"event_type": event_type})


def record_tool_error(tool_name: str, category: str) -> None:
    tool_errors.add(1, {"tool": tool_name, "category": category})


def record_sweep(sweep: str, updated: int) -> None:
    if updated > 0:
        sweep_updates.add(updated, {"sweep": sweep})
