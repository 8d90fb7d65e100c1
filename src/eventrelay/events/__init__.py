"""
Integration Events

Event models, the type registry, the canonical wire format, the in-process
bus and delivery error classification.
"""

from .bus import EventBus
from .errors import (
    DeliveryError,
    ErrorClassification,
    InvalidStateError,
    OperationCancelled,
    PoisonMessageError,
    RelayError,
    TransientDeliveryError,
    TypeResolutionError,
    classify_error,
)
from .models import (
    IntegrationEvent,
    MemberCreatedEvent,
    MemberStatus,
    UserCreatedEvent,
    UserMemberLinkedEvent,
    register_identity_events,
)
from .registry import EventTypeDescriptor, EventTypeRegistry
from .serialization import canonical_dumps, deserialize_event, format_timestamp, serialize_event

__all__ = [
    "EventBus",
    "DeliveryError",
    "ErrorClassification",
    "InvalidStateError",
    "OperationCancelled",
    "PoisonMessageError",
    "RelayError",
    "TransientDeliveryError",
    "TypeResolutionError",
    "classify_error",
    "IntegrationEvent",
    "MemberCreatedEvent",
    "MemberStatus",
    "UserCreatedEvent",
    "UserMemberLinkedEvent",
    "register_identity_events",
    "EventTypeDescriptor",
    "EventTypeRegistry",
    "canonical_dumps",
    "deserialize_event",
    "format_timestamp",
    "serialize_event",
]
