"""Models describing integrations, their actions and their triggers."""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Literal,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..contracts import ActionResult, ExecutionContext

if TYPE_CHECKING:
    from ..credentials import ConnectionCredentials

AuthType = Literal["oauth2", "api_key", "basic", "custom", "none"]
HandlerOutput = Union[ActionResult, Dict[str, Any]]


@runtime_checkable
class ActionHandler(Protocol):
    """Executable integration action."""

    async def execute(
        self,
        input: Dict[str, Any],
        credentials: Optional["ConnectionCredentials"],
        context: ExecutionContext,
    ) -> HandlerOutput:
        """Run the action and report the outcome."""


ActionFunc = Callable[
    [Dict[str, Any], Optional["ConnectionCredentials"], ExecutionContext],
    Awaitable[HandlerOutput],
]


class FunctionAction:
    """Adapts a plain coroutine function to the ``ActionHandler`` protocol."""

    def __init__(
        self, id: str, func: ActionFunc, name: Optional[str] = None, description: str = ""
    ) -> None:
        self.id = id
        self.name = name or id
        self.description = description
        self._func = func

    async def execute(
        self,
        input: Dict[str, Any],
        credentials: Optional["ConnectionCredentials"],
        context: ExecutionContext,
    ) -> HandlerOutput:
        return await self._func(input, credentials, context)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"FunctionAction(id={self.id!r})"


class RateLimit(BaseModel):
    max_requests: int
    window_ms: int
    retry_after_ms: Optional[int] = None


class IntegrationMetadata(BaseModel):
    """Descriptive metadata for an integration."""

    slug: str
    name: str
    version: str = "1.0.0"
    description: str = ""
    category: Optional[str] = None
    auth_type: AuthType = "none"
    website: Optional[str] = None
    rate_limit: Optional[RateLimit] = None

    @field_validator("slug")
    @classmethod
    def _ensure_slug(cls, v: str) -> str:
        if not v:
            raise ValueError("slug must be a non-empty string")
        return v


class TriggerDescriptor(BaseModel):
    """Declares a trigger an integration can fire."""

    id: str
    name: Optional[str] = None
    description: str = ""
    type: Literal["webhook", "polling", "schedule"] = "webhook"
    config_schema: Dict[str, Any] = Field(default_factory=dict)


class Integration(BaseModel):
    """An integration: metadata plus its registered actions and triggers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    metadata: IntegrationMetadata
    actions: Dict[str, Any] = Field(default_factory=dict)
    triggers: Dict[str, TriggerDescriptor] = Field(default_factory=dict)

    @property
    def slug(self) -> str:
        return self.metadata.slug

    def add_action(self, action_id: str, handler: ActionHandler) -> ActionHandler:
        if not isinstance(handler, ActionHandler):
            raise TypeError(f"Handler for {action_id!r} must define async execute()")
        self.actions[action_id] = handler
        return handler

    def action(
        self, action_id: str, name: Optional[str] = None, description: str = ""
    ) -> Callable[[ActionFunc], ActionFunc]:
        """Decorator registering a coroutine function as an action."""

        def decorator(func: ActionFunc) -> ActionFunc:
            self.add_action(
                action_id, FunctionAction(action_id, func, name=name, description=description)
            )
            return func

        return decorator

    def add_trigger(self, trigger: TriggerDescriptor) -> TriggerDescriptor:
        self.triggers[trigger.id] = trigger
        return trigger
