"""
Event Bus

In-process publish/subscribe used by the dispatcher to hand integration
events to their consumers. Handlers run one after another in
subscription order; the first handler failure aborts the publish and the
dispatcher classifies it.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Type, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Awaitable[None], None]]


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(UserCreatedEvent, create_member_for_user)
        await bus.publish(UserCreatedEvent(...))

    Handlers subscribed to a base class also receive its subclasses.
    """

    def __init__(self):
        self._handlers: Dict[Type[BaseModel], List[Handler]] = defaultdict(list)

    def subscribe(self, event_cls: Type[BaseModel], handler: Handler) -> None:
        if handler not in self._handlers[event_cls]:
            self._handlers[event_cls].append(handler)

    def unsubscribe(self, event_cls: Type[BaseModel], handler: Handler) -> None:
        handlers = self._handlers.get(event_cls, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event: BaseModel) -> List[Handler]:
        handlers: List[Handler] = []
        for cls in type(event).__mro__:
            for handler in self._handlers.get(cls, ()):
                if handler not in handlers:
                    handlers.append(handler)
        return handlers

    async def publish(self, event: BaseModel) -> int:
        """Deliver an event to every subscribed handler. Returns the handler count."""
        handlers = self.handlers_for(event)
        if not handlers:
            logger.debug(f"No handlers subscribed for {type(event).__name__}")

        for handler in handlers:
            result = handler(event)
            if inspect.isawaitable(result):
                await result

        return len(handlers)
