"""Drift detection and reconciliation planning."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from stackwarden.config.models import DriftPolicyConfig
from stackwarden.orchestrator.migration import (
    MigrationPlan,
    MigrationStep,
    ResourceRef,
    values_match,
)
from stackwarden.provisioning.base import ProvisioningAPI
from stackwarden.state.models import (
    DriftRecord,
    ReconcilePolicy,
    Resource,
    ResourceKind,
    utcnow,
)
from stackwarden.utils.errors import ResourceUnavailableError
from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)


class DriftReport(BaseModel):
    """Comparison of one resource's declared and observed config."""

    stack: str
    logical_id: str
    kind: ResourceKind
    physical_id: Optional[str] = None
    in_sync: bool
    divergent_fields: List[str] = Field(default_factory=list)
    declared: Dict[str, Any] = Field(default_factory=dict)
    observed: Dict[str, Any] = Field(default_factory=dict)
    detected_at: datetime = Field(default_factory=utcnow)


class DeclarativeUpdate(BaseModel):
    """The next normal apply of the owning stack reconciles these fields."""

    report: DriftReport
    fields: List[str] = Field(default_factory=list)


class ManualInterventionRequired(BaseModel):
    """The divergence needs an operator decision; nothing is changed."""

    report: DriftReport
    reasons: Dict[str, str] = Field(default_factory=dict)


Reconciliation = Union[MigrationPlan, DeclarativeUpdate, ManualInterventionRequired]

# (step, rollback step) for one divergent field, or None when the values
# cannot be restored safely
StepBuilder = Callable[[str, Any, Any, Dict[str, Any]], Optional[Tuple[MigrationStep, MigrationStep]]]


def _swap_role(field: str, declared: Any, observed: Any, observed_config: Dict[str, Any]):
    def step(to, frm):
        return MigrationStep(
            operation='replace-instance-profile-association',
            parameters={'role': to, 'from': frm},
            expected={'role': to},
            description=f"Associate instance profile {to} in place of {frm}",
        )
    return step(declared, observed), step(observed, declared)


def _set_security_groups(field: str, declared: Any, observed: Any, observed_config: Dict[str, Any]):
    if not observed:
        return None

    def step(groups):
        return MigrationStep(
            operation='modify-instance-attribute',
            parameters={'security_groups': list(groups)},
            expected={'security_groups': list(groups)},
            description=f"Set security groups to {', '.join(groups)}",
        )
    return step(declared), step(observed)


def _upsert_record(field: str, declared: Any, observed: Any, observed_config: Dict[str, Any]):
    if observed is None:
        return None
    ttl = observed_config.get('ttl')

    def step(value):
        return MigrationStep(
            operation='upsert-record',
            parameters={'value': value, 'ttl': ttl},
            expected={'value': value},
            description=f"UPSERT record value {value}",
        )
    return step(declared), step(observed)


# Non-destructive operations known for (kind, field)
IMPERATIVE_OPERATIONS: Dict[Tuple[ResourceKind, str], StepBuilder] = {
    (ResourceKind.COMPUTE, 'role'): _swap_role,
    (ResourceKind.COMPUTE, 'security_groups'): _set_security_groups,
    (ResourceKind.DNS_RECORD, 'value'): _upsert_record,
}


class DriftPolicy:
    """Policy table mapping (resource kind, field) to a reconcile policy."""

    def __init__(
        self,
        rules: Optional[Dict[Tuple[ResourceKind, str], ReconcilePolicy]] = None,
        default: ReconcilePolicy = ReconcilePolicy.MANUAL_INTERVENTION_REQUIRED
    ):
        self.rules = dict(rules or {})
        self.default = default

    @classmethod
    def from_config(cls, config: DriftPolicyConfig) -> "DriftPolicy":
        return cls(
            rules={(rule.kind, rule.field): rule.policy for rule in config.rules},
            default=config.default,
        )

    def classify(self, kind: ResourceKind, field: str) -> ReconcilePolicy:
        return self.rules.get((kind, field), self.default)


class DriftReconciler:
    """Detects drift and decides how to reconcile it.

    The reconciler never resolves an ambiguous divergence itself: any field
    classified as manual, or imperative without a known non-destructive
    operation, turns the whole report into ManualInterventionRequired.
    """

    def __init__(self, api: ProvisioningAPI):
        self.api = api

    def refresh(self, resource: Resource) -> Resource:
        """Read the live config of a resource and record it as observed.

        Raises:
            ResourceUnavailableError: If the resource has no physical id or is gone
        """
        if not resource.physical_id:
            raise ResourceUnavailableError(
                f"Resource {resource.logical_id} has no physical id; deploy its stack first"
            )
        resource.record_observation(self.api.describe_resource(resource.kind, resource.physical_id))
        return resource

    def detect(self, resource: Resource, stack: str = "") -> DriftReport:
        """Compare declared config with the last observed config.

        Only declared fields are compared.

        Raises:
            ResourceUnavailableError: If the resource was never observed
        """
        if resource.observed_at is None:
            raise ResourceUnavailableError(
                f"Resource {resource.logical_id} has not been observed yet"
            )

        divergent = sorted(
            name for name, value in resource.declared_config.items()
            if not values_match(value, resource.observed_config.get(name))
        )
        if divergent:
            logger.info(f"{resource.logical_id} diverges on {', '.join(divergent)}")

        return DriftReport(
            stack=stack,
            logical_id=resource.logical_id,
            kind=resource.kind,
            physical_id=resource.physical_id,
            in_sync=not divergent,
            divergent_fields=divergent,
            declared=dict(resource.declared_config),
            observed=dict(resource.observed_config),
        )

    def plan_reconciliation(self, report: DriftReport, policy: DriftPolicy) -> Reconciliation:
        """Choose between declarative update, migration plan and manual intervention."""
        if report.in_sync:
            return DeclarativeUpdate(report=report)

        declarative: List[str] = []
        imperative: List[Tuple[str, MigrationStep, MigrationStep]] = []
        reasons: Dict[str, str] = {}

        for field in report.divergent_fields:
            decision = policy.classify(report.kind, field)
            if decision == ReconcilePolicy.DECLARATIVE_UPDATE:
                declarative.append(field)
                continue
            if decision == ReconcilePolicy.MANUAL_INTERVENTION_REQUIRED:
                reasons[field] = "policy requires operator decision"
                continue

            builder = IMPERATIVE_OPERATIONS.get((report.kind, field))
            steps = None
            if builder is not None and report.physical_id:
                steps = builder(field, report.declared.get(field), report.observed.get(field), report.observed)
            if steps is None:
                reasons[field] = f"no non-destructive operation for {report.kind.value}.{field}"
                continue
            imperative.append((field, steps[0], steps[1]))

        if reasons:
            return ManualInterventionRequired(report=report, reasons=reasons)

        if imperative:
            return MigrationPlan(
                target=ResourceRef(
                    stack=report.stack,
                    logical_id=report.logical_id,
                    kind=report.kind,
                    physical_id=report.physical_id,
                ),
                steps=[step for _, step, _ in imperative],
                rollback_steps=[mirror for _, _, mirror in imperative],
                deferred_fields=declarative,
            )

        return DeclarativeUpdate(report=report, fields=declarative)

    def record(self, resource: Resource, report: DriftReport, resolution: str) -> DriftRecord:
        """Append the divergence and its resolution to the resource history."""
        record = DriftRecord(
            detected_at=report.detected_at,
            fields=list(report.divergent_fields),
            declared={f: report.declared.get(f) for f in report.divergent_fields},
            observed={f: report.observed.get(f) for f in report.divergent_fields},
            resolution=resolution,
        )
        resource.record_drift(record)
        return record
