"""
Loan configuration store.

The circulation policy is a single database row. It is created from the
process configuration's policy seed the first time anything reads it, and
afterwards only changes through an explicit administrative update; the
engine itself never writes it.
"""

import logging

from pydantic import BaseModel, Field
from sqlalchemy import select

from ..config import get_config
from ..models.circulation import LoanConfiguration as LoanConfigurationModel
from .repository import LedgerBase, current_time
from .schema import CONFIGURATION_ROW_ID
from .schema import LoanConfiguration as LoanConfigurationDB
from .session import safe_query

logger = logging.getLogger(__name__)


class UpdateLoanConfigurationCommand(BaseModel):
    """Partial update of the circulation policy. Unset fields are left alone."""

    default_loan_days: int | None = Field(default=None, ge=1, le=365)
    max_active_loans: int | None = Field(default=None, ge=0, le=100)
    max_renewals: int | None = Field(default=None, ge=0, le=20)
    grace_period_days: int | None = Field(default=None, ge=0, le=90)
    daily_fine_amount: float | None = Field(default=None, ge=0.0)
    allow_loans_with_fines: bool | None = None
    reservation_hold_days: int | None = Field(default=None, ge=1, le=90)


class LoanConfigurationStore(LedgerBase):
    """Read and administer the singleton LoanConfiguration row."""

    def _load(self, *, for_update: bool = False) -> LoanConfigurationDB:
        query = select(LoanConfigurationDB).where(LoanConfigurationDB.id == CONFIGURATION_ROW_ID)
        if for_update:
            query = query.with_for_update()
        row = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to load loan configuration",
        )
        if row is None:
            row = LoanConfigurationDB(id=CONFIGURATION_ROW_ID, **get_config().policy_defaults)
            self.session.add(row)
            self.session.flush()
            logger.info("Loan configuration initialized from defaults")
        return row

    def get(self) -> LoanConfigurationModel:
        return LoanConfigurationModel.model_validate(self._load())

    def update(self, command: UpdateLoanConfigurationCommand) -> LoanConfigurationModel:
        row = self._load(for_update=True)
        changes = command.model_dump(exclude_none=True)
        for field, value in changes.items():
            setattr(row, field, value)
        row.updated_at = current_time()
        self.session.flush()
        logger.info("Loan configuration updated: %s", changes)
        return LoanConfigurationModel.model_validate(row)
