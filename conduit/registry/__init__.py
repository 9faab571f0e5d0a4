"""Capability registry mapping (integration, action) to handlers."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..errors import ActionNotFoundError
from .models import (
    ActionHandler,
    FunctionAction,
    Integration,
    IntegrationMetadata,
    TriggerDescriptor,
)

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """Lookup of integrations populated by explicit registration at start-up.

    One registry is built per process and handed to the engine, the validator
    and the dispatcher; there is no module-level instance.
    """

    def __init__(self) -> None:
        self._integrations: Dict[str, Integration] = {}

    def register(self, integration: Integration) -> Integration:
        """Add ``integration``, replacing any earlier one with the same slug."""
        slug = integration.slug
        if slug in self._integrations:
            logger.warning("Integration %s is already registered. Overwriting", slug)
        self._integrations[slug] = integration
        logger.info(
            "Registered integration %s v%s (%d actions, %d triggers)",
            slug,
            integration.metadata.version,
            len(integration.actions),
            len(integration.triggers),
        )
        return integration

    def get(self, slug: str) -> Optional[Integration]:
        return self._integrations.get(slug)

    def list(self) -> List[Integration]:
        return list(self._integrations.values())

    def get_action(self, slug: str, action_id: str) -> Optional[ActionHandler]:
        integration = self.get(slug)
        return integration.actions.get(action_id) if integration else None

    def get_trigger(self, slug: str, trigger_id: str) -> Optional[TriggerDescriptor]:
        integration = self.get(slug)
        return integration.triggers.get(trigger_id) if integration else None

    def resolve(self, slug: str, action_id: str) -> ActionHandler:
        """Return the handler for ``(slug, action_id)`` or raise."""
        handler = self.get_action(slug, action_id)
        if handler is None:
            raise ActionNotFoundError(
                f"Action {action_id} not found in integration {slug}"
            )
        return handler

    def by_category(self, category: str) -> List[Integration]:
        return [i for i in self._integrations.values() if i.metadata.category == category]

    def search(self, query: str) -> List[Integration]:
        needle = query.lower()
        return [
            i
            for i in self._integrations.values()
            if needle in i.metadata.name.lower()
            or needle in i.metadata.description.lower()
            or needle in i.metadata.slug.lower()
        ]

    def __contains__(self, slug: object) -> bool:
        return slug in self._integrations

    def __len__(self) -> int:
        return len(self._integrations)


__all__ = [
    "ActionHandler",
    "CapabilityRegistry",
    "FunctionAction",
    "Integration",
    "IntegrationMetadata",
    "TriggerDescriptor",
]
