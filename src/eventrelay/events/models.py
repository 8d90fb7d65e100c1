"""
Integration Event Models

Base class for events that cross bounded-context boundaries, plus the
identity/membership events the reconciliation sweeps watch.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .registry import EventTypeRegistry
from .serialization import model_from_wire


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class IntegrationEvent(BaseModel):
    """
    Base integration event.

    Enum fields travel by member name on the wire, at any depth; the
    validator below maps names back before field validation so both names
    and values are accepted.
    """

    model_config = ConfigDict(populate_by_name=True)

    event_id: UUID = Field(default_factory=uuid4)
    occurred_on: datetime = Field(default_factory=_utcnow)
    correlation_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    schema_version: int = 1

    @model_validator(mode="before")
    @classmethod
    def _enum_names_to_members(cls, data: Any) -> Any:
        return model_from_wire(cls, data)


class UserCreatedEvent(IntegrationEvent):
    """A user was created in the identity context."""

    user_id: UUID
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    national_id: Optional[str] = None
    phone_number: str = ""
    email: Optional[str] = None
    source_system: Optional[str] = None
    is_seeding_operation: bool = False


class MemberStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"


class MemberCreatedEvent(IntegrationEvent):
    """A member record was created in the membership context."""

    member_id: UUID
    user_id: Optional[UUID] = None
    national_id: Optional[str] = None
    membership_number: Optional[str] = None
    status: MemberStatus = MemberStatus.PENDING


class UserMemberLinkedEvent(IntegrationEvent):
    """A user and a member were linked across contexts."""

    user_id: UUID
    member_id: UUID
    linked_at: datetime = Field(default_factory=_utcnow)


IDENTITY_EVENTS = (UserCreatedEvent, MemberCreatedEvent, UserMemberLinkedEvent)


def register_identity_events(registry: EventTypeRegistry) -> EventTypeRegistry:
    """Register the identity/membership events under the "identity" module."""
    registry.register_all(IDENTITY_EVENTS, module="identity")
    return registry
