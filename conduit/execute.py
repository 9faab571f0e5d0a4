"""Step execution for conduit workflows."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Optional

from .contracts import ActionResult, ExecutionContext, RetryConfig, Step, StepStatus
from .credentials import ConnectionCredentials, CredentialResolver
from .errors import (
    ActionNotFoundError,
    ConduitError,
    ConnectionExpiredError,
    ConnectionNotFoundError,
    MappingError,
    TransientInfraError,
    UnrecoverableError,
)
from .mapping import apply_field_mappings
from .persistence import ExecutionRepository
from .registry import CapabilityRegistry
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

EXECUTION_ERROR = "EXECUTION_ERROR"


class StepLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with ``[execution_id:step_number]``."""

    def process(self, msg, kwargs):
        return (
            f"[{self.extra['execution_id']}:{self.extra['step_number']}] {msg}",
            kwargs,
        )


def step_logger(execution_id: str, step_number: int) -> StepLoggerAdapter:
    return StepLoggerAdapter(
        logging.getLogger("conduit.step"),
        {"execution_id": execution_id, "step_number": step_number},
    )


def retry_delay(retry: RetryConfig, attempt: int) -> float:
    """Seconds to wait after failed ``attempt`` (1-based)."""
    if retry.delay == "exponential":
        return compute_backoff(attempt - 1, base=retry.backoff_multiplier)
    return max(float(retry.delay), 0.0) / 1000.0


def _exception_result(exc: Exception) -> ActionResult:
    details: dict[str, Any] = {"type": type(exc).__name__}
    if isinstance(exc, ConduitError):
        details["code"] = exc.code
        if exc.details is not None:
            details["details"] = exc.details
    return ActionResult.failure(EXECUTION_ERROR, str(exc), details)


class StepExecutor:
    """Run one workflow step against its integration action.

    The executor owns the step log: it is created before anything else is
    resolved and finalized with the output or error, the number of handler
    attempts and the duration.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        credentials: CredentialResolver,
        repository: ExecutionRepository,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._credentials = credentials
        self._repository = repository
        self._sleep = sleep

    async def _resolve_credentials(self, step: Step) -> Optional[ConnectionCredentials]:
        if step.connection_id:
            return await self._credentials.resolve(step.connection_id)
        integration = self._registry.get(step.integration)
        if integration is not None and integration.metadata.auth_type == "none":
            return None
        raise ConnectionNotFoundError(
            f"Step {step.display_name} requires a connection for {step.integration}"
        )

    async def execute_step(
        self,
        step: Step,
        step_number: int,
        data: Any,
        *,
        execution_id: str,
        workflow_id: str,
        organization_id: str,
    ) -> ActionResult:
        """Execute ``step`` with ``data`` as the mapping source.

        Returns an ``ActionResult`` for every handled failure; only
        ``TransientInfraError`` and ``UnrecoverableError`` propagate.
        """
        if not step.integration or not step.action:
            raise UnrecoverableError(
                f"Step {step_number} is missing integration or action"
            )

        log = step_logger(execution_id, step_number)
        step_log_id = await self._repository.mark_step_started(
            execution_id,
            step_number,
            step.display_name,
            integration=step.integration,
            action=step.action,
        )
        log.info("Starting %s.%s", step.integration, step.action)

        attempts = 0
        try:
            handler = self._registry.resolve(step.integration, step.action)
            credentials = await self._resolve_credentials(step)

            step_input = step.input
            try:
                mapped = apply_field_mappings(
                    step_input.mappings if step_input else [],
                    data,
                    step_input.static if step_input else None,
                )
            except MappingError:
                raise
            except Exception as exc:
                raise MappingError(str(exc)) from exc
            await self._repository.record_step_input(step_log_id, mapped)

            context = ExecutionContext(
                organization_id=organization_id,
                workflow_id=workflow_id,
                execution_id=execution_id,
                step_number=step_number,
                logger=log,
            )
            max_attempts = max(1, step.retry.max_attempts) if step.retry else 1
            while True:
                attempts += 1
                result = await self._invoke(handler, mapped, credentials, context)
                if result.success or attempts >= max_attempts:
                    break
                delay = retry_delay(step.retry, attempts)
                log.warning(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempts,
                    max_attempts,
                    result.error.code if result.error else "unknown",
                    delay,
                )
                await self._sleep(delay)
        except (ActionNotFoundError, ConnectionNotFoundError, ConnectionExpiredError) as exc:
            log.error("%s", exc)
            result = ActionResult.failure(exc.code, str(exc))
        except MappingError as exc:
            log.error("Input mapping failed: %s", exc)
            result = _exception_result(exc)
        except TransientInfraError:
            await self._repository.mark_step_completed(
                step_log_id,
                StepStatus.FAILED,
                error={"code": TransientInfraError.code, "message": "Infrastructure unavailable"},
                attempts=attempts,
            )
            raise

        if result.success:
            await self._repository.mark_step_completed(
                step_log_id, StepStatus.SUCCESS, output=result.data, attempts=attempts
            )
            log.info("Completed after %d attempt(s)", attempts)
        else:
            await self._repository.mark_step_completed(
                step_log_id,
                StepStatus.FAILED,
                error=result.error.model_dump(mode="json") if result.error else None,
                attempts=attempts,
            )
            log.warning(
                "Failed: %s", result.error.message if result.error else "unknown error"
            )

        result.metadata = {**(result.metadata or {}), "attempts": attempts}
        return result

    async def _invoke(
        self,
        handler: Any,
        mapped: dict,
        credentials: Optional[ConnectionCredentials],
        context: ExecutionContext,
    ) -> ActionResult:
        try:
            result = await handler.execute(copy.deepcopy(mapped), credentials, context)
            if not isinstance(result, ActionResult):
                result = ActionResult.model_validate(result)
            return result
        except TransientInfraError:
            raise
        except Exception as exc:
            context.logger.exception("Handler raised %s", type(exc).__name__)
            return _exception_result(exc)
