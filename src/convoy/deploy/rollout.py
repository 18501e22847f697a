"""Deploy-then-verify for a single service, with rollback on a failed gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from convoy.config.defaults import SERVICE_DEPLOY_ATTEMPTS, SERVICE_DEPLOY_DELAY
from convoy.deploy.health import HealthEvaluation, evaluate_service_health
from convoy.lib.errors import ConvoyError, HealthGateError
from convoy.lib.retry import retry_with_backoff
from convoy.models.config import ServiceConfig
from convoy.runtime.containers import ContainerRuntime, DeployResult

logger = logging.getLogger(__name__)


@dataclass
class RolloutResult:
    """A deploy that passed its health gate."""

    deploy: DeployResult
    health: HealthEvaluation
    previous_image: str | None = None


async def rollback_service(
    runtime: ContainerRuntime,
    name: str,
    previous_image: str,
    service: ServiceConfig,
) -> DeployResult:
    """Redeploy ``service`` with ``previous_image`` substituted for its image.

    Errors propagate to the caller.
    """
    rollback = service.model_copy(update={"image": previous_image})
    return await runtime.deploy(name, rollback)


async def deploy_with_health_gate(
    runtime: ContainerRuntime,
    name: str,
    service: ServiceConfig,
    attempts: int = SERVICE_DEPLOY_ATTEMPTS,
    delay: float = SERVICE_DEPLOY_DELAY,
) -> RolloutResult:
    """Deploy a service and hold it to its healthcheck.

    The image running before the deploy is observed first. When the gate
    fails and a previous image exists, the service is redeployed with it.

    Raises:
        RetryExhaustedError: If every deploy attempt failed
        HealthGateError: The primary gate failure, annotated with the rollback
            outcome. A failing rollback never replaces it.
    """
    previous_image = await runtime.current_image(name)

    async def _deploy(_attempt: int) -> DeployResult:
        return await runtime.deploy(name, service)

    result = await retry_with_backoff(
        attempts, delay, f"Deploy service '{name}'", _deploy
    )

    try:
        evaluation = await evaluate_service_health(runtime, name, service)
    except ConvoyError as exc:
        evaluation = HealthEvaluation(ok=False, detail=str(exc))
    result.healthy = evaluation.ok
    if evaluation.ok:
        logger.info(evaluation.detail)
        return RolloutResult(
            deploy=result, health=evaluation, previous_image=previous_image
        )

    error = HealthGateError(name, evaluation.last_failure or evaluation.detail)
    if previous_image:
        error.rollback_attempted = True
        logger.warning(
            "Healthcheck gate failed for service '%s'; rolling back to %s",
            name,
            previous_image,
        )
        try:
            await rollback_service(runtime, name, previous_image, service)
        except ConvoyError as rollback_exc:
            error.rollback_error = rollback_exc
            logger.error("Rollback of service '%s' failed: %s", name, rollback_exc)
    else:
        logger.warning(
            "Healthcheck gate failed for service '%s'; no previous image to restore",
            name,
        )
    raise error
