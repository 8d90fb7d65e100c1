"""
Relay Errors

Delivery failures are classified explicitly instead of being inferred from
arbitrary exception classes. Handlers that know a failure is permanent raise
``PoisonMessageError`` (or any ``DeliveryError`` with
``classification=ErrorClassification.POISON``); everything unrecognised is
treated as transient and retried with backoff.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Optional

from pydantic import ValidationError


class ErrorClassification(str, Enum):
    """How the dispatcher reacts to a failed delivery."""
    TRANSIENT = "transient"
    POISON = "poison"


class RelayError(Exception):
    """Base class for eventrelay errors."""


class DeliveryError(RelayError):
    """A handler failure carrying an explicit classification."""

    classification: ErrorClassification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, classification: Optional[ErrorClassification] = None):
        super().__init__(message)
        if classification is not None:
            self.classification = classification


class TransientDeliveryError(DeliveryError):
    """Temporary failure; the message is retried after backoff."""

    classification = ErrorClassification.TRANSIENT


class PoisonMessageError(DeliveryError):
    """Permanent failure; the message goes straight to the DLQ."""

    classification = ErrorClassification.POISON


class InvalidStateError(RelayError):
    """A state transition was requested that the message cannot make."""


class TypeResolutionError(RelayError):
    """An event class has no registered type descriptor."""


class OperationCancelled(RelayError):
    """Raised at a suspension point after cancellation was requested."""


_POISON_TYPES = (ValidationError, json.JSONDecodeError, InvalidStateError, ValueError)


def classify_error(exc: BaseException) -> ErrorClassification:
    """
    Classify a delivery failure.

    Explicit ``DeliveryError`` classifications win. Validation, decoding and
    state errors can never succeed on retry and are poison. Anything else is
    transient.
    """
    if isinstance(exc, DeliveryError):
        return exc.classification
    if isinstance(exc, _POISON_TYPES):
        return ErrorClassification.POISON
    return ErrorClassification.TRANSIENT
