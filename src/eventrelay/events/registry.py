"""
Event Type Registry

Explicit map from stored type identifiers to event classes and their
(de)serializers. Each bounded context registers its integration events at
startup; the registry instance is handed to the publisher and dispatcher.

Resolution order for a stored ``(full_type_name, module_name)`` pair:

1. exact match on the full type name
2. the short class name within the message's module
3. the short class name across every module (first registration wins)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel

from .errors import TypeResolutionError
from .serialization import deserialize_event, serialize_event

logger = logging.getLogger(__name__)

Serializer = Callable[[BaseModel], str]
Deserializer = Callable[[str], BaseModel]


@dataclass(frozen=True)
class EventTypeDescriptor:
    """The type triple stored on every outbox message."""

    type_name: str
    full_type_name: str
    module_name: str


@dataclass(frozen=True)
class _Registration:
    event_cls: Type[BaseModel]
    descriptor: EventTypeDescriptor
    serializer: Serializer
    deserializer: Deserializer


def _short_name(full_type_name: str) -> str:
    return full_type_name.rsplit(".", 1)[-1]


class EventTypeRegistry:
    """
    Registry of integration event types.

    Usage:
        registry = EventTypeRegistry()
        registry.register(UserCreatedEvent, module="identity")

        descriptor = registry.descriptor_for(event)
        event_cls = registry.resolve(descriptor.full_type_name, descriptor.module_name)
        event = registry.deserialize(event_cls, content)
    """

    def __init__(self):
        self._by_class: Dict[Type[BaseModel], _Registration] = {}
        self._by_full_name: Dict[str, _Registration] = {}
        self._by_module: Dict[str, Dict[str, _Registration]] = {}
        self._ordered: List[_Registration] = []

    def register(
        self,
        event_cls: Type[BaseModel],
        module: Optional[str] = None,
        full_type_name: Optional[str] = None,
        serializer: Optional[Serializer] = None,
        deserializer: Optional[Deserializer] = None,
    ) -> EventTypeDescriptor:
        """
        Register an event class.

        Args:
            event_cls: Pydantic model class of the event
            module: Owning bounded context (defaults to the top-level package)
            full_type_name: Stable identifier stored in the outbox
                (defaults to ``<python module>.<class name>``)
            serializer: Custom content serializer
            deserializer: Custom content deserializer

        Returns:
            The descriptor written on outbox rows for this event type
        """
        descriptor = EventTypeDescriptor(
            type_name=event_cls.__name__,
            full_type_name=full_type_name or f"{event_cls.__module__}.{event_cls.__qualname__}",
            module_name=module or event_cls.__module__.split(".")[0],
        )

        existing = self._by_full_name.get(descriptor.full_type_name)
        if existing is not None and existing.event_cls is not event_cls:
            raise ValueError(
                f"Type name {descriptor.full_type_name} already registered "
                f"for {existing.event_cls.__qualname__}"
            )

        registration = _Registration(
            event_cls=event_cls,
            descriptor=descriptor,
            serializer=serializer or serialize_event,
            deserializer=deserializer or partial(deserialize_event, event_cls),
        )
        self._by_class[event_cls] = registration
        self._by_full_name[descriptor.full_type_name] = registration
        self._by_module.setdefault(descriptor.module_name, {})[descriptor.type_name] = registration
        if existing is None:
            self._ordered.append(registration)

        logger.debug(f"Registered event type {descriptor.full_type_name} ({descriptor.module_name})")
        return descriptor

    def register_all(self, event_classes: Iterable[Type[BaseModel]], module: Optional[str] = None) -> None:
        for event_cls in event_classes:
            self.register(event_cls, module=module)

    def is_registered(self, event_cls: Type[BaseModel]) -> bool:
        return event_cls in self._by_class

    def descriptor_for(self, event: BaseModel) -> EventTypeDescriptor:
        return self._registration_for(type(event)).descriptor

    def serialize(self, event: BaseModel) -> str:
        return self._registration_for(type(event)).serializer(event)

    def resolve(self, full_type_name: str, module_name: Optional[str] = None) -> Optional[Type[BaseModel]]:
        """Resolve a stored type identifier to an event class, or None."""
        if not full_type_name:
            return None

        registration = self._by_full_name.get(full_type_name)
        if registration is not None:
            return registration.event_cls

        short_name = _short_name(full_type_name)

        if module_name:
            registration = self._by_module.get(module_name, {}).get(short_name)
            if registration is not None:
                logger.debug(f"Resolved {full_type_name} by name within module {module_name}")
                return registration.event_cls

        matches = [r for r in self._ordered if r.descriptor.type_name == short_name]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                f"Type {short_name} is registered in {len(matches)} modules; "
                f"using {matches[0].descriptor.full_type_name}"
            )
        return matches[0].event_cls

    def deserialize(self, event_cls: Type[BaseModel], content: str) -> BaseModel:
        return self._registration_for(event_cls).deserializer(content)

    def _registration_for(self, event_cls: Type[BaseModel]) -> _Registration:
        registration = self._by_class.get(event_cls)
        if registration is None:
            raise TypeResolutionError(
                f"Event type {event_cls.__qualname__} is not registered"
            )
        return registration

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, event_cls: object) -> bool:
        return event_cls in self._by_class
