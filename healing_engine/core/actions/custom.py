"""
Self-Healing Engine - Custom Webhook Action
===========================================

Calls an operator-registered webhook with the action, pattern and
execution context. Loopback and internal addresses are refused.
"""

from typing import Optional

import httpx

from healing_shared.constants import ActionType
from healing_shared.schemas.actions import AutomatedAction, CustomConfig, ExecutionChange, ExecutionResult
from healing_shared.utils.logging import get_correlation_id, get_logger
from healing_shared.utils.retry import CircuitBreaker, CircuitOpenError

from healing_engine.core.action_registry import ActionExecutor, ExecutionContext
from healing_engine.core.adapters import webhook_url_problem
from healing_engine.core.errors import DeliveryFailure

logger = get_logger(__name__)


class CustomExecutor(ActionExecutor):
    action_type = ActionType.CUSTOM
    can_rollback = False

    def __init__(self, client: Optional[httpx.AsyncClient] = None, breaker: Optional[CircuitBreaker] = None):
        self._client = client
        self._breaker = breaker or CircuitBreaker(failure_threshold=5, reset_timeout=60.0)

    def check(self, config: CustomConfig) -> list[str]:
        problem = webhook_url_problem(config.webhook_url)
        return [problem] if problem else []

    def _get_client(self, timeout_seconds: float) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        return self._client

    async def execute(self, action: AutomatedAction, context: ExecutionContext) -> ExecutionResult:
        config: CustomConfig = context.config
        services = context.services

        problem = webhook_url_problem(config.webhook_url, require_https=services.is_production)
        if problem:
            return ExecutionResult(success=False, error_message=problem)

        body = {
            "action": {
                "id": action.id,
                "name": action.name,
                "type": action.action_type.value,
            },
            "pattern": context.pattern.model_dump(mode="json") if context.pattern else None,
            "execution": {
                "id": context.execution.id,
                "organization_id": context.organization_id,
                "triggered_by": context.execution.triggered_by.value,
            },
            "payload": config.payload,
        }
        headers = {"Content-Type": "application/json", **config.headers}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers.setdefault("X-Correlation-ID", correlation_id)

        client = self._get_client(services.webhook_timeout_seconds)

        async def call() -> httpx.Response:
            try:
                response = await self._breaker.call(
                    client.request, config.method, config.webhook_url, json=body, headers=headers
                )
            except (httpx.HTTPError, CircuitOpenError) as e:
                raise DeliveryFailure(f"Webhook {config.method} {config.webhook_url} failed: {e}") from e
            if not 200 <= response.status_code < 300:
                raise DeliveryFailure(
                    f"Webhook {config.method} {config.webhook_url} returned {response.status_code}"
                )
            return response

        response = await context.perform(
            ExecutionChange(
                entity_type="webhook",
                entity_id=config.webhook_url,
                change_type="notify",
                after={"method": config.method},
            ),
            call,
            finalize=lambda r: ExecutionChange(
                entity_type="webhook",
                entity_id=config.webhook_url,
                change_type="notify",
                after={"method": config.method, "status_code": r.status_code},
            ),
        )

        if response is None:
            return ExecutionResult(success=True, metrics={"simulated": context.simulated})

        logger.info(
            f"Webhook {config.method} {config.webhook_url} returned {response.status_code}",
            extra={"action_id": action.id, "execution_id": context.execution.id}
        )
        return ExecutionResult(
            success=True,
            metrics={"status_code": response.status_code},
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
