"""Migration plans and their step-by-step execution with rollback."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from stackwarden.provisioning.base import ProvisioningAPI
from stackwarden.state.models import Resource, ResourceKind, utcnow
from stackwarden.utils.errors import (
    ErrorContext,
    MigrationFailed,
    OperationCancelled,
    OperationTimeout,
    OrchestratorError,
)
from stackwarden.utils.logging import LogContext, get_logger
from stackwarden.utils.polling import CancellationToken, Poller

logger = get_logger(__name__)


def _normalise(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return sorted((_normalise(v) for v in value), key=str)
    return value


def values_match(declared: Any, observed: Any) -> bool:
    """Compare a declared value with an observed one.

    Lists compare without regard to order. Mappings compare only the keys
    that are declared, so provider-added keys (such as system tags) are not
    treated as divergence.
    """
    if isinstance(declared, dict):
        if not isinstance(observed, dict):
            return False
        return all(values_match(v, observed.get(k)) for k, v in declared.items())
    return _normalise(declared) == _normalise(observed)


class ResourceRef(BaseModel):
    """Reference to the resource a plan acts on."""

    stack: str
    logical_id: str
    kind: ResourceKind
    physical_id: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return f"{self.stack}/{self.logical_id} ({self.physical_id})"


class MigrationStep(BaseModel):
    """One imperative operation and the state it must leave behind."""

    operation: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    expected: Dict[str, Any] = Field(default_factory=dict, description="Post-condition on observed config")
    description: Optional[str] = None


class MigrationPlan(BaseModel):
    """Ordered imperative steps that move a resource without recreating it.

    ``rollback_steps[i]`` reverts ``steps[i]``.
    """

    target: ResourceRef
    steps: List[MigrationStep]
    rollback_steps: List[MigrationStep]
    deferred_fields: List[str] = Field(
        default_factory=list, description="Fields left for the next declarative apply"
    )
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_rollback(self):
        if not self.steps:
            raise ValueError("A migration plan needs at least one step")
        if len(self.rollback_steps) != len(self.steps):
            raise ValueError("Every migration step needs exactly one rollback step")
        return self


class MigrationStatus(Enum):
    """Terminal status of a migration."""
    SUCCEEDED = "SUCCEEDED"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


@dataclass
class MigrationResult:
    """Outcome of executing a migration plan."""

    plan: MigrationPlan
    status: MigrationStatus
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    rollback_performed: bool = False
    rollback_errors: List[str] = field(default_factory=list)
    observed_before: Dict[str, Any] = field(default_factory=dict)
    observed_after: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == MigrationStatus.SUCCEEDED

    def raise_for_status(self) -> None:
        """Raise MigrationFailed unless every step completed."""
        if self.succeeded:
            return
        raise MigrationFailed(
            f"Migration of {self.plan.target} failed at {self.failed_step}: {self.error}",
            rolled_back=self.status == MigrationStatus.ROLLED_BACK,
            context=ErrorContext(
                stack=self.plan.target.stack,
                resource_id=self.plan.target.logical_id,
                operation=self.failed_step,
            ),
        )


class MigrationExecutor:
    """Runs migration plans strictly in order.

    When a step or its post-condition fails, the rollback mirror of every
    attempted step runs in reverse order and the resource is read again, so
    the caller sees either the fully migrated resource or its original
    observed state.
    """

    def __init__(self, api: ProvisioningAPI, poller: Optional[Poller] = None):
        """Initialize migration executor.

        Args:
            api: Provisioning API used to patch and read the resource
            poller: Poller used to wait for each step's post-condition
        """
        self.api = api
        self.poller = poller or Poller(initial_interval=2.0, max_interval=15.0, timeout=300.0)

    def execute(
        self,
        plan: MigrationPlan,
        resource: Optional[Resource] = None,
        cancel: Optional[CancellationToken] = None
    ) -> MigrationResult:
        """Execute a migration plan.

        Args:
            plan: Plan to execute
            resource: Resource entity whose observed config is updated afterwards
            cancel: Stops waiting on post-conditions; triggers rollback

        Returns:
            MigrationResult with status SUCCEEDED, ROLLED_BACK or ROLLBACK_FAILED
        """
        target = plan.target
        started = time.monotonic()

        with LogContext(stack=target.stack, resource_id=target.logical_id, operation='migrate'):
            observed_before = self.api.describe_resource(target.kind, target.physical_id)
            result = MigrationResult(
                plan=plan,
                status=MigrationStatus.SUCCEEDED,
                observed_before=dict(observed_before),
            )

            attempted: List[int] = []
            for index, step in enumerate(plan.steps):
                attempted.append(index)
                try:
                    self._run_step(target, step, cancel)
                except OrchestratorError as e:
                    logger.error(f"Step {index + 1} ({step.operation}) failed: {e.message}")
                    result.failed_step = step.operation
                    result.error = e.message
                    break
                result.completed_steps.append(step.operation)

            if result.failed_step is not None:
                self._rollback(plan, attempted, result)

            observed_after = self.api.describe_resource(target.kind, target.physical_id)
            result.observed_after = dict(observed_after)
            if resource is not None:
                resource.record_observation(observed_after)

            if result.rollback_performed:
                restored = all(
                    values_match(observed_before.get(f), observed_after.get(f))
                    for step in plan.steps for f in step.expected
                )
                if result.rollback_errors or not restored:
                    result.status = MigrationStatus.ROLLBACK_FAILED
                else:
                    result.status = MigrationStatus.ROLLED_BACK

            result.duration = time.monotonic() - started
            logger.info(f"Migration of {target} finished with {result.status.value}")
        return result

    def _run_step(
        self,
        target: ResourceRef,
        step: MigrationStep,
        cancel: Optional[CancellationToken]
    ) -> None:
        logger.info(f"Running {step.operation} with {step.parameters}")
        self.api.patch_resource(target.kind, target.physical_id, step.operation, step.parameters)
        if not step.expected:
            return

        try:
            self.poller.poll(
                lambda: self.api.describe_resource(target.kind, target.physical_id),
                lambda observed: all(values_match(v, observed.get(k)) for k, v in step.expected.items()),
                description=f"post-condition of {step.operation}",
                cancel=cancel,
            )
        except (OperationTimeout, OperationCancelled) as e:
            raise MigrationFailed(
                f"Post-condition {step.expected} not reached: {e.message}", cause=e
            ) from e

    def _rollback(self, plan: MigrationPlan, attempted: List[int], result: MigrationResult) -> None:
        result.rollback_performed = True
        for index in reversed(attempted):
            mirror = plan.rollback_steps[index]
            try:
                # Rollback ignores the caller's cancellation
                self._run_step(plan.target, mirror, None)
            except OrchestratorError as e:
                logger.error(f"Rollback step {mirror.operation} failed: {e.message}")
                result.rollback_errors.append(f"{mirror.operation}: {e.message}")
