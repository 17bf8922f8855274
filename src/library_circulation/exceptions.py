"""
Error taxonomy for the circulation engine.

Every failure the engine reports to a caller belongs to one of these
categories. Tools translate them into distinct error responses; none of them
is downgraded into another category on the way out.
"""


class CirculationError(Exception):
    """Base class for all circulation errors."""

    category = "circulation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(CirculationError):
    """Unknown loan, copy, member, material, reservation or fine id."""

    category = "not_found"


class InvalidStateError(CirculationError):
    """Operation is not legal from the entity's current status."""

    category = "invalid_state"


class PolicyViolationError(CirculationError):
    """Eligibility failure. Carries every failing reason, not just the first."""

    category = "policy_violation"

    def __init__(self, message: str, reasons: list[str]):
        super().__init__(message)
        self.reasons = list(reasons)

    def __str__(self) -> str:
        return f"{self.message}: {'; '.join(self.reasons)}" if self.reasons else self.message


class ConflictError(CirculationError):
    """Copy not available at claim time, duplicate active hold, or lock contention.

    ``transient`` is set when the conflict came from concurrent activity that
    exhausted the transaction retries; retrying the request may succeed.
    """

    category = "conflict"

    def __init__(self, message: str, *, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class AuthorizationError(CirculationError):
    """Actor lacks the capability required for the operation."""

    category = "forbidden"


class RepositoryException(CirculationError):
    """Non-transient database failure."""

    category = "database_error"
