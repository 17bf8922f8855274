"""
Copy inventory for the Library Circulation server.

CopyInventory is the only writer of a copy's status. It knows nothing about
loans or holds: callers decide *why* a copy moves, the inventory enforces
*whether* it may.

    AVAILABLE --claim--> BORROWED | RESERVED
    RESERVED  --hand_off--> BORROWED
    BORROWED | RESERVED --release--> AVAILABLE
    any --retire(DAMAGED)--> UNDER_REPAIR
    any --retire(LOST)--> REMOVED
"""

import logging

from sqlalchemy import select

from ..exceptions import ConflictError, InvalidStateError
from ..models.circulation import UNLOANABLE_CONDITIONS, CopyCondition, CopyStatus
from ..models.circulation import MaterialCopy as MaterialCopyModel
from .repository import LedgerBase, current_time
from .schema import MaterialCopy as MaterialCopyDB
from .session import safe_query

logger = logging.getLogger(__name__)

_CLAIM_TARGETS = frozenset({CopyStatus.BORROWED, CopyStatus.RESERVED})
_RELEASE_TARGETS = frozenset({CopyStatus.AVAILABLE, CopyStatus.UNDER_REPAIR, CopyStatus.REMOVED})
_RETIRE_STATUS = {
    CopyCondition.DAMAGED: CopyStatus.UNDER_REPAIR,
    CopyCondition.LOST: CopyStatus.REMOVED,
}


class CopyInventory(LedgerBase):
    """Availability and condition of material copies."""

    def lock(self, copy_id: str) -> MaterialCopyDB:
        """Load and lock a copy row. Raises NotFoundError."""
        return self._get_row(MaterialCopyDB, copy_id, "Material copy", for_update=True)

    def get(self, copy_id: str) -> MaterialCopyModel:
        return MaterialCopyModel.model_validate(
            self._get_row(MaterialCopyDB, copy_id, "Material copy")
        )

    def claim(self, copy_id: str, target: CopyStatus) -> MaterialCopyDB:
        """
        Move an AVAILABLE, loanable copy to BORROWED or RESERVED.

        Raises:
            NotFoundError: Unknown copy
            ConflictError: Copy is not AVAILABLE or is DAMAGED/LOST
        """
        if target not in _CLAIM_TARGETS:
            raise ValueError(f"Cannot claim a copy into {target.value}")

        copy = self.lock(copy_id)
        self._ensure_loanable(copy)
        if copy.status != CopyStatus.AVAILABLE:
            raise ConflictError(
                f"Material copy {copy_id} is not available (current status: {copy.status.value})"
            )

        copy.status = target
        copy.updated_at = current_time()
        self.session.flush()
        logger.debug("Copy %s claimed -> %s", copy_id, target.value)
        return copy

    def hand_off(self, copy_id: str) -> MaterialCopyDB:
        """
        Move a RESERVED copy to BORROWED when its hold is picked up.

        Raises:
            ConflictError: Copy is not RESERVED or is DAMAGED/LOST
        """
        copy = self.lock(copy_id)
        self._ensure_loanable(copy)
        if copy.status != CopyStatus.RESERVED:
            raise ConflictError(
                f"Material copy {copy_id} is not held for pickup "
                f"(current status: {copy.status.value})"
            )

        copy.status = CopyStatus.BORROWED
        copy.updated_at = current_time()
        self.session.flush()
        logger.debug("Copy %s handed off to borrower", copy_id)
        return copy

    def release(
        self, copy_id: str, next_state: CopyStatus = CopyStatus.AVAILABLE
    ) -> MaterialCopyDB:
        """
        Return a BORROWED or RESERVED copy to the shelf.

        Raises:
            InvalidStateError: Copy is neither BORROWED nor RESERVED
        """
        if next_state not in _RELEASE_TARGETS:
            raise ValueError(f"Cannot release a copy into {next_state.value}")

        copy = self.lock(copy_id)
        if copy.status not in (CopyStatus.BORROWED, CopyStatus.RESERVED):
            raise InvalidStateError(
                f"Material copy {copy_id} cannot be released from {copy.status.value}"
            )

        copy.status = next_state
        copy.updated_at = current_time()
        self.session.flush()
        logger.debug("Copy %s released -> %s", copy_id, next_state.value)
        return copy

    def retire(self, copy_id: str, condition: CopyCondition) -> MaterialCopyDB:
        """Record a DAMAGED or LOST condition and take the copy out of circulation."""
        if condition not in _RETIRE_STATUS:
            raise ValueError(f"Cannot retire a copy in condition {condition.value}")

        copy = self.lock(copy_id)
        copy.condition = condition
        copy.status = _RETIRE_STATUS[condition]
        copy.updated_at = current_time()
        self.session.flush()
        logger.info("Copy %s retired as %s -> %s", copy_id, condition.value, copy.status.value)
        return copy

    def find_available(self, material_id: str) -> MaterialCopyDB | None:
        """Lock and return the first AVAILABLE, loanable copy of a material."""
        query = (
            select(MaterialCopyDB)
            .where(
                MaterialCopyDB.material_id == material_id,
                MaterialCopyDB.status == CopyStatus.AVAILABLE,
                MaterialCopyDB.condition.not_in(list(UNLOANABLE_CONDITIONS)),
            )
            .order_by(MaterialCopyDB.id)
            .limit(1)
            .with_for_update()
        )
        return safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to find an available copy",
        )

    @staticmethod
    def _ensure_loanable(copy: MaterialCopyDB) -> None:
        if copy.condition in UNLOANABLE_CONDITIONS:
            raise ConflictError(
                f"Material copy {copy.id} cannot circulate (condition: {copy.condition.value})"
            )
