"""
Persona - External Event Translation

The inbound integration point: events published by other systems are turned
into person commands. Each external event type maps to a factory that reads
the external payload and returns a command, or None when the event carries
nothing to act on.

Usage:
    translator = ExternalEventTranslator()

    @translator.on("crm.ContactRenamed")
    def rename(payload):
        return UpdateName(person_id=payload["person"], legal_name_ref=payload["name"])

    command = translator.translate(ExternalEvent("crm.ContactRenamed", {...}))
    if command is not None:
        await command_service.submit(command)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from core.errors import ValidationError
from domain.commands import BaseCommand

logger = logging.getLogger(__name__)

CommandFactory = Callable[[Mapping[str, Any]], Optional[BaseCommand]]


@dataclass(frozen=True)
class ExternalEvent:
    """An event received from another system."""
    event_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    event_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExternalEvent":
        if "event_type" not in data:
            raise ValidationError("event_type", "missing from external event")
        return cls(
            event_type=data["event_type"],
            payload=dict(data.get("payload") or {}),
            source=data.get("source"),
            event_id=data.get("event_id"),
        )


class ExternalEventTranslator:
    """Registry of ``event_type -> factory(payload) -> command | None``."""

    def __init__(self) -> None:
        self._factories: Dict[str, CommandFactory] = {}

    def register(self, event_type: str, factory: CommandFactory) -> None:
        if event_type in self._factories:
            raise ValueError(f"Translator already registered for {event_type}")
        self._factories[event_type] = factory
        logger.debug(f"Registered translator for {event_type}")

    def on(self, event_type: str) -> Callable[[CommandFactory], CommandFactory]:
        """Decorator form of ``register``."""

        def decorator(factory: CommandFactory) -> CommandFactory:
            self.register(event_type, factory)
            return factory

        return decorator

    def handles(self, event_type: str) -> bool:
        return event_type in self._factories

    @property
    def event_types(self) -> List[str]:
        return sorted(self._factories)

    def translate(self, event: ExternalEvent) -> Optional[BaseCommand]:
        """
        Turn an external event into a command.

        Returns:
            The command, or None for unregistered types and for events the
            factory chose to ignore

        Raises:
            ValidationError: The payload lacks what the factory needs
        """
        factory = self._factories.get(event.event_type)
        if factory is None:
            logger.debug(f"No translator for external event {event.event_type}")
            return None

        try:
            command = factory(event.payload)
        except KeyError as e:
            raise ValidationError("payload", f"{event.event_type} is missing {e}") from e
        except (TypeError, ValueError) as e:
            raise ValidationError("payload", f"{event.event_type}: {e}") from e

        if command is not None and not isinstance(command, BaseCommand):
            raise TypeError(
                f"Translator for {event.event_type} returned {type(command).__name__}, "
                f"expected a command"
            )
        return command

    async def dispatch(
        self,
        event: ExternalEvent,
        submit: Callable[[BaseCommand], Awaitable[Any]],
    ) -> Optional[Any]:
        """Translate and, if a command results, pass it to ``submit``."""
        command = self.translate(event)
        if command is None:
            return None
        return await submit(command)
