"""
Unit tests for staged deployment.

Tests cover:
- Stage plans for immediate, gradual and canary strategies
- Stage hook failures and the failure threshold
- Health check retries and consecutive-failure aborts
- Cancellation
"""

import threading

from rulesmith.extensions import CancellationToken, Deployer, plan_stages
from rulesmith.schema import (
    DeploymentConfig,
    DeploymentStatus,
    DeploymentStrategy,
    HealthCheckConfig,
    RollbackConfig,
    RulePatch,
    TemplateExtension,
)

EXTENSION = TemplateExtension(
    id="ext",
    name="Extension",
    target_template_id="team",
    rules=RulePatch(deny=["innerHTML ="]),
)


class TestPlanStages:
    """Tests for plan_stages()."""

    def test_immediate(self) -> None:
        """Immediate rollouts have one stage."""
        assert plan_stages(DeploymentConfig()) == [100]

    def test_gradual(self) -> None:
        """Gradual rollouts step up to the target."""
        config = DeploymentConfig(strategy=DeploymentStrategy.GRADUAL, step_percentage=30)
        assert plan_stages(config) == [30, 60, 90, 100]

    def test_gradual_partial_target(self) -> None:
        """The last stage is the rollout percentage."""
        config = DeploymentConfig(
            strategy=DeploymentStrategy.GRADUAL,
            step_percentage=25,
            rollout_percentage=50,
        )
        assert plan_stages(config) == [25, 50]

    def test_canary(self) -> None:
        """Canary rollouts try a small share first."""
        config = DeploymentConfig(strategy=DeploymentStrategy.CANARY, canary_percentage=5)
        assert plan_stages(config) == [5, 100]

    def test_canary_not_above_target(self) -> None:
        """A canary at or above the target collapses to one stage."""
        config = DeploymentConfig(
            strategy=DeploymentStrategy.CANARY,
            canary_percentage=50,
            rollout_percentage=20,
        )
        assert plan_stages(config) == [20]


class TestDeployer:
    """Tests for Deployer.run()."""

    def test_success(self) -> None:
        """Every stage completes."""
        config = DeploymentConfig(strategy=DeploymentStrategy.GRADUAL, step_percentage=50)
        result = Deployer().run(EXTENSION, config)
        assert result.status == DeploymentStatus.SUCCEEDED
        assert result.stages_completed == [50, 100]
        assert result.completed_at is not None
        assert result.succeeded

    def test_stage_failure_threshold(self) -> None:
        """Failed stages abort once the threshold is reached."""
        deployer = Deployer(stage_hook=lambda ext, stage: stage < 50)
        config = DeploymentConfig(
            strategy=DeploymentStrategy.GRADUAL,
            step_percentage=25,
            rollback=RollbackConfig(failure_threshold=1),
        )
        result = deployer.run(EXTENSION, config)
        assert result.status == DeploymentStatus.FAILED
        assert result.stages_completed == [25]
        assert result.failed_stages == 1

    def test_raising_stage_hook_counts_as_failure(self) -> None:
        """Exceptions from the stage hook fail the stage."""

        def explode(ext: TemplateExtension, stage: int) -> bool:
            raise RuntimeError("router down")

        result = Deployer(stage_hook=explode).run(EXTENSION, DeploymentConfig())
        assert result.status == DeploymentStatus.FAILED

    def test_health_check_retries(self) -> None:
        """A check that recovers within its retries passes the stage."""
        attempts: list[int] = []

        def flaky(ext: TemplateExtension, stage: int, timeout_s: float) -> bool:
            attempts.append(stage)
            return len(attempts) >= 2

        config = DeploymentConfig(health_check=HealthCheckConfig(retries=2))
        result = Deployer().run(EXTENSION, config, health_check=flaky)
        assert result.status == DeploymentStatus.SUCCEEDED
        assert result.health_check_failures == 1
        assert len(attempts) == 2

    def test_consecutive_health_failures_abort(self) -> None:
        """Reaching max_health_check_failures aborts the rollout."""
        config = DeploymentConfig(
            health_check=HealthCheckConfig(retries=5),
            rollback=RollbackConfig(max_health_check_failures=3),
        )
        result = Deployer(health_check=lambda ext, stage, timeout: False).run(EXTENSION, config)
        assert result.status == DeploymentStatus.FAILED
        assert result.health_check_failures == 3
        assert "3 times" in (result.error or "")

    def test_health_check_disabled(self) -> None:
        """Disabled checks are never called."""
        calls: list[int] = []

        def record(ext: TemplateExtension, stage: int, timeout_s: float) -> bool:
            calls.append(stage)
            return False

        config = DeploymentConfig(health_check=HealthCheckConfig(enabled=False))
        result = Deployer(health_check=record).run(EXTENSION, config)
        assert result.succeeded
        assert calls == []

    def test_cancel_before_start(self) -> None:
        """A cancelled token stops the run before the first stage."""
        token = CancellationToken()
        token.cancel()
        result = Deployer().run(EXTENSION, DeploymentConfig(), cancel=token)
        assert result.status == DeploymentStatus.CANCELLED
        assert result.stages_completed == []

    def test_cancel_during_stage_delay(self) -> None:
        """Cancelling while waiting between stages stops the run."""
        token = CancellationToken()
        stage_done = threading.Event()

        def hook(ext: TemplateExtension, stage: int) -> bool:
            stage_done.set()
            return True

        def cancel_soon() -> None:
            stage_done.wait(5)
            token.cancel()

        canceller = threading.Thread(target=cancel_soon)
        canceller.start()
        config = DeploymentConfig(
            strategy=DeploymentStrategy.CANARY,
            stage_delay_ms=10_000,
        )
        result = Deployer(stage_hook=hook).run(EXTENSION, config, cancel=token)
        canceller.join()

        assert result.status == DeploymentStatus.CANCELLED
        assert result.stages_completed == [10]

    def test_rollback_flag_recorded(self) -> None:
        """The result records whether rollback is enabled."""
        config = DeploymentConfig(rollback=RollbackConfig(enabled=False))
        assert Deployer().run(EXTENSION, config).rollback_enabled is False
