"""
Staged extension deployment.

A deployment walks a list of rollout percentages. Each stage runs the
stage hook (which makes the extension visible to that share of traffic)
and then the health check, with retries. The run stops as soon as:

    - the cancellation token is set (status: cancelled)
    - failed stages reach rollback.failure_threshold (status: failed)
    - consecutive health-check failures reach
      rollback.max_health_check_failures (status: failed)

Stage plans:
    immediate: [rollout]
    gradual:   step, 2*step, ... up to rollout
    canary:    [canary, rollout]

The Deployer never touches lifecycle state; the manager commits the
deployed state only when the returned result succeeded.
"""

import logging
import threading
import time
from datetime import UTC, datetime
from typing import Callable

from rulesmith.schema import (
    DeploymentConfig,
    DeploymentResult,
    DeploymentStatus,
    DeploymentStrategy,
    TemplateExtension,
)
from rulesmith.store.db import generate_id

logger = logging.getLogger(__name__)

# (extension, stage percentage) -> stage applied
StageHook = Callable[[TemplateExtension, int], bool]
# (extension, stage percentage, timeout seconds) -> healthy
HealthCheck = Callable[[TemplateExtension, int, float], bool]


class CancellationToken:
    """Thread-safe flag a caller sets to stop an in-flight deployment."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds; True if cancelled meanwhile."""
        return self._event.wait(seconds)


def plan_stages(config: DeploymentConfig) -> list[int]:
    """Rollout percentages visited by a deployment, in order."""
    target = config.rollout_percentage
    if config.strategy == DeploymentStrategy.IMMEDIATE:
        return [target]
    if config.strategy == DeploymentStrategy.CANARY:
        canary = min(config.canary_percentage, target)
        return [canary] if canary == target else [canary, target]

    stages: list[int] = []
    pct = config.step_percentage
    while pct < target:
        stages.append(pct)
        pct += config.step_percentage
    stages.append(target)
    return stages


def _always_ok(extension: TemplateExtension, stage: int, *args: object) -> bool:
    return True


class Deployer:
    """
    Runs deployment plans.

    Args:
        stage_hook: Applies a stage; defaults to always succeeding
        health_check: Probes a stage; defaults to always healthy
    """

    def __init__(
        self,
        stage_hook: StageHook | None = None,
        health_check: HealthCheck | None = None,
    ) -> None:
        self.stage_hook = stage_hook or _always_ok
        self.health_check = health_check or _always_ok

    def run(
        self,
        extension: TemplateExtension,
        config: DeploymentConfig,
        cancel: CancellationToken | None = None,
        health_check: HealthCheck | None = None,
    ) -> DeploymentResult:
        """Execute the plan for config and return the outcome."""
        cancel = cancel or CancellationToken()
        check = health_check or self.health_check
        result = DeploymentResult(
            deployment_id=generate_id(),
            extension_id=extension.id,
            strategy=config.strategy,
            environment=config.environment,
            rollback_enabled=config.rollback.enabled,
        )
        stages = plan_stages(config)
        consecutive = 0

        logger.info(
            "Deploying %s to %s (%s, stages=%s)",
            extension.id,
            config.environment,
            config.strategy.value,
            stages,
        )

        for index, stage in enumerate(stages):
            if cancel.cancelled:
                return self._finish(result, DeploymentStatus.CANCELLED, "Deployment cancelled")

            if not self._run_stage(extension, stage):
                result.failed_stages += 1
                if result.failed_stages >= config.rollback.failure_threshold:
                    return self._finish(
                        result,
                        DeploymentStatus.FAILED,
                        f"Stage {stage}% failed ({result.failed_stages} failed stages)",
                    )
                continue

            healthy = True
            if config.health_check.enabled:
                healthy = False
                timeout_s = config.health_check.timeout_ms / 1000
                for _ in range(config.health_check.retries + 1):
                    if self._probe(check, extension, stage, timeout_s):
                        consecutive = 0
                        healthy = True
                        break
                    consecutive += 1
                    result.health_check_failures += 1
                    if consecutive >= config.rollback.max_health_check_failures:
                        return self._finish(
                            result,
                            DeploymentStatus.FAILED,
                            f"Health check failed {consecutive} times at {stage}%",
                        )

            if not healthy:
                result.failed_stages += 1
                if result.failed_stages >= config.rollback.failure_threshold:
                    return self._finish(
                        result,
                        DeploymentStatus.FAILED,
                        f"Stage {stage}% unhealthy",
                    )
                continue

            result.stages_completed.append(stage)

            is_last = index == len(stages) - 1
            if config.stage_delay_ms and not is_last:
                if cancel.wait(config.stage_delay_ms / 1000):
                    return self._finish(
                        result, DeploymentStatus.CANCELLED, "Deployment cancelled"
                    )

        if not result.stages_completed or result.stages_completed[-1] != stages[-1]:
            return self._finish(result, DeploymentStatus.FAILED, "Rollout did not complete")
        return self._finish(result, DeploymentStatus.SUCCEEDED)

    def _run_stage(self, extension: TemplateExtension, stage: int) -> bool:
        try:
            return bool(self.stage_hook(extension, stage))
        except Exception as e:
            logger.warning("Stage %s%% of %s raised: %s", stage, extension.id, e)
            return False

    @staticmethod
    def _probe(
        check: HealthCheck,
        extension: TemplateExtension,
        stage: int,
        timeout_s: float,
    ) -> bool:
        start = time.monotonic()
        try:
            ok = bool(check(extension, stage, timeout_s))
        except Exception as e:
            logger.warning("Health check of %s raised: %s", extension.id, e)
            return False
        if time.monotonic() - start > timeout_s:
            logger.warning("Health check of %s exceeded %.1fs", extension.id, timeout_s)
            return False
        return ok

    @staticmethod
    def _finish(
        result: DeploymentResult,
        status: DeploymentStatus,
        error: str | None = None,
    ) -> DeploymentResult:
        result.status = status
        result.error = error
        result.completed_at = datetime.now(UTC)
        if status == DeploymentStatus.SUCCEEDED:
            logger.info("Deployment %s of %s succeeded", result.deployment_id, result.extension_id)
        else:
            logger.warning(
                "Deployment %s of %s ended %s: %s",
                result.deployment_id,
                result.extension_id,
                status.value,
                error,
            )
        return result
