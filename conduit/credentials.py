"""Credential resolution for integration connections."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, Field, field_validator

from .contracts import utc_now
from .errors import ConnectionExpiredError, ConnectionNotFoundError

logger = logging.getLogger(__name__)


class ConnectionCredentials(BaseModel):
    """Decrypted credentials handed to an action handler."""

    type: str = "none"
    data: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utc_now())


class CredentialResolver(Protocol):
    """Resolves a connection reference to usable credentials."""

    async def resolve(self, connection_id: str) -> ConnectionCredentials:
        """Return credentials or raise ``ConnectionNotFoundError``/``ConnectionExpiredError``."""


Refresher = Callable[[str, ConnectionCredentials], Awaitable[Optional[ConnectionCredentials]]]


class InMemoryCredentialStore:
    """Keep connection credentials in local memory.

    Expired credentials are passed to ``refresher`` (when given); a refreshed
    copy replaces the stored one, otherwise ``ConnectionExpiredError`` is raised.
    """

    def __init__(self, refresher: Optional[Refresher] = None) -> None:
        self._connections: Dict[str, ConnectionCredentials] = {}
        self._refresher = refresher

    def add(
        self,
        connection_id: str,
        credentials: ConnectionCredentials | Dict[str, Any],
    ) -> ConnectionCredentials:
        if not isinstance(credentials, ConnectionCredentials):
            credentials = ConnectionCredentials.model_validate(credentials)
        self._connections[connection_id] = credentials
        return credentials

    def remove(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    async def resolve(self, connection_id: str) -> ConnectionCredentials:
        credentials = self._connections.get(connection_id)
        if credentials is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")

        if credentials.is_expired():
            refreshed = None
            if self._refresher is not None:
                refreshed = await self._refresher(connection_id, credentials)
            if refreshed is None or refreshed.is_expired():
                logger.warning("Connection %s expired and could not be refreshed", connection_id)
                raise ConnectionExpiredError(
                    f"Connection {connection_id} expired and could not be refreshed"
                )
            logger.info("Refreshed credentials for connection %s", connection_id)
            self._connections[connection_id] = refreshed
            credentials = refreshed

        return credentials.model_copy(deep=True)
