"""
Typed handler registry.

Each event kind is served by exactly one ``EventHandler`` subclass. ``validate``
is run at startup so a kind without a handler fails the process before any
subscription starts, instead of surfacing as an unprocessed queue later.
"""
import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Dict, Iterable, Iterator, Optional, Tuple

from dispatcher.core.events.envelope import EventEnvelope, EventKind, PAYLOAD_MODELS
from dispatcher.core.exceptions import ConfigurationException, HandlerException

logger = logging.getLogger(__name__)


class EventHandler(ABC):
    """Base class for event handlers; subclasses set ``kind`` and implement ``process``."""

    kind: ClassVar[EventKind]

    @property
    def name(self) -> str:
        return type(self).__name__

    async def __call__(self, envelope: EventEnvelope) -> None:
        if envelope.kind is not self.kind:
            raise HandlerException(
                f"{self.name} cannot handle {envelope.kind.value} events",
                kind=envelope.kind.value,
                event_id=envelope.id,
            )
        await self.process(envelope)

    @abstractmethod
    async def process(self, envelope: EventEnvelope) -> None:
        """Run the business side effects for one event; raise to have it redelivered."""


class HandlerRegistry:
    """Mapping of event kind to its single handler."""

    def __init__(self, handlers: Optional[Iterable[EventHandler]] = None):
        self._handlers: Dict[EventKind, EventHandler] = {}
        for handler in handlers or ():
            self.register(handler)

    def register(self, handler: EventHandler) -> None:
        kind = getattr(handler, "kind", None)
        if kind not in PAYLOAD_MODELS:
            raise ConfigurationException(f"{type(handler).__name__} does not declare a known event kind")
        if kind in self._handlers:
            raise ConfigurationException(
                f"Handler already registered for {kind.value}: {self._handlers[kind].name}"
            )
        self._handlers[kind] = handler
        logger.debug(f"Registered {handler.name} for {kind.value}", extra={"event_kind": kind.value})

    def get(self, kind: EventKind) -> EventHandler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise ConfigurationException(f"No handler registered for {getattr(kind, 'value', kind)}")

    def missing_kinds(self) -> list:
        return [kind for kind in EventKind if kind not in self._handlers]

    def validate(self) -> None:
        """Raise unless every event kind has a handler."""
        missing = self.missing_kinds()
        if missing:
            names = [kind.value for kind in missing]
            raise ConfigurationException(f"No handler registered for: {', '.join(names)}", missing=names)

    def items(self) -> Iterator[Tuple[EventKind, EventHandler]]:
        # Stable order: declaration order of EventKind
        for kind in EventKind:
            if kind in self._handlers:
                yield kind, self._handlers[kind]

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, kind: object) -> bool:
        return kind in self._handlers
