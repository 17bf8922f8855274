"""
Shared building blocks for the circulation ledgers.

Every ledger is bound to the session of the unit of work it participates in
and never commits on its own; the transaction boundary belongs to whoever
opened the session (the orchestrator or a sweep). Ledgers flush after writing
so later queries in the same unit of work see the change.
"""

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from ..exceptions import NotFoundError
from .schema import Base
from .session import safe_query

ModelType = TypeVar("ModelType", bound=Base)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)


def new_id(prefix: str) -> str:
    """Generate a unique, prefixed record id such as ``loan_3f2a...``."""
    return f"{prefix}_{uuid4().hex[:16]}"


def current_time() -> datetime:
    """The engine's clock: naive local time, the form stored in the database."""
    return datetime.now()


def naive_local(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class PaginationParams(BaseModel):
    """Standard pagination parameters for list operations."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginatedResponse(BaseModel, Generic[ResponseSchemaType]):
    """Standard paginated response for list operations."""

    items: list[ResponseSchemaType]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool


class LedgerBase:
    """Base class for ledgers bound to a unit-of-work session."""

    def __init__(self, session: Session):
        self.session = session

    def _get_row(
        self,
        model: type[ModelType],
        row_id: str,
        label: str,
        *,
        for_update: bool = False,
    ) -> ModelType:
        """Load one row by primary key, optionally locking it. Raises NotFoundError."""
        query = select(model).where(model.id == row_id)
        if for_update:
            query = query.with_for_update()
        row = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            f"Failed to get {label}",
        )
        if row is None:
            raise NotFoundError(f"{label} {row_id} not found")
        return row

    def _paginate(
        self,
        query: Select[Any],
        pagination: PaginationParams,
        to_model: type[ResponseSchemaType],
    ) -> PaginatedResponse[ResponseSchemaType]:
        count_query = select(func.count()).select_from(query.subquery())
        total = (
            safe_query(
                self.session,
                lambda s: s.execute(count_query).scalar(),
                "Failed to count total for pagination",
            )
            or 0
        )

        page_query = query.offset(pagination.offset).limit(pagination.page_size)
        rows = safe_query(
            self.session,
            lambda s: s.execute(page_query).scalars().all(),
            "Failed to get paginated results",
        )

        return PaginatedResponse[to_model](
            items=[to_model.model_validate(row) for row in rows],
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            total_pages=(total + pagination.page_size - 1) // pagination.page_size,
            has_next=pagination.page * pagination.page_size < total,
            has_previous=pagination.page > 1,
        )
