"""
Capability checks for circulation tools.

Authentication happens outside this server; every tool call carries the
already-authenticated actor and each tool checks the capability it needs
before touching the engine.
"""

from enum import Enum

from pydantic import BaseModel, Field

from .exceptions import AuthorizationError


class Role(str, Enum):
    STAFF = "STAFF"
    MEMBER = "MEMBER"


class Actor(BaseModel):
    """The authenticated caller of a tool."""

    id: str = Field(..., min_length=1, description="Staff or member id of the caller")
    role: Role = Field(..., description="STAFF or MEMBER")

    @property
    def is_staff(self) -> bool:
        return self.role == Role.STAFF


def require_staff(actor: Actor, action: str) -> None:
    if not actor.is_staff:
        raise AuthorizationError(f"Only library staff can {action}")


def require_self_or_staff(actor: Actor, member_id: str, action: str) -> None:
    if not actor.is_staff and actor.id != member_id:
        raise AuthorizationError(f"Members can only {action} for themselves")


def require_member(actor: Actor, action: str) -> None:
    if actor.role != Role.MEMBER:
        raise AuthorizationError(f"Only the member who placed the reservation can {action}")


def member_scope(actor: Actor, requested_member_id: str | None) -> str | None:
    """
    Member filter to apply to a list operation.

    Staff see whatever they ask for; members only ever see their own records.
    """
    if actor.is_staff:
        return requested_member_id
    if requested_member_id is not None and requested_member_id != actor.id:
        raise AuthorizationError("Members can only list their own records")
    return actor.id
