"""Tests for drift detection and reconciliation planning."""

import pytest

from stackwarden.config.models import DriftPolicyConfig
from stackwarden.orchestrator.drift import (
    DeclarativeUpdate,
    DriftPolicy,
    DriftReconciler,
    ManualInterventionRequired,
)
from stackwarden.orchestrator.migration import MigrationPlan, values_match
from stackwarden.state.models import ReconcilePolicy, Resource, ResourceKind
from stackwarden.utils.errors import ResourceUnavailableError


@pytest.fixture
def policy():
    return DriftPolicy.from_config(DriftPolicyConfig(rules=[
        {"kind": "COMPUTE", "field": "role", "policy": "IMPERATIVE_PATCH"},
        {"kind": "COMPUTE", "field": "security_groups", "policy": "IMPERATIVE_PATCH"},
        {"kind": "COMPUTE", "field": "subnet_id", "policy": "IMPERATIVE_PATCH"},
        {"kind": "COMPUTE", "field": "tags", "policy": "DECLARATIVE_UPDATE"},
        {"kind": "DNS_RECORD", "field": "value", "policy": "IMPERATIVE_PATCH"},
    ]))


@pytest.fixture
def reconciler(api):
    return DriftReconciler(api)


def observed_instance(declared, observed):
    resource = Resource(
        logical_id="VpnInstance",
        kind=ResourceKind.COMPUTE,
        physical_id="i-vpn",
        declared_config=declared,
    )
    resource.record_observation(observed)
    return resource


class TestValuesMatch:
    """Test declared/observed value comparison."""

    def test_lists_ignore_order(self):
        assert values_match(["sg-2", "sg-1"], ["sg-1", "sg-2"])
        assert not values_match(["sg-1"], ["sg-1", "sg-2"])

    def test_mappings_compare_declared_keys_only(self):
        assert values_match({"Name": "vpn"}, {"Name": "vpn", "aws:cloudformation:stack-name": "app"})
        assert not values_match({"Name": "vpn"}, {"Name": "nat"})
        assert not values_match({"Name": "vpn"}, None)


class TestDetect:
    """Test drift detection."""

    def test_in_sync(self, reconciler):
        resource = observed_instance({"role": "RoleA"}, {"role": "RoleA", "instance_type": "t3.micro"})

        report = reconciler.detect(resource, "app")

        assert report.in_sync
        assert report.divergent_fields == []

    def test_divergent_fields_are_sorted(self, reconciler):
        resource = observed_instance(
            {"role": "RoleA", "instance_type": "t3.micro"},
            {"role": "RoleA-v2", "instance_type": "t3.small"},
        )

        report = reconciler.detect(resource, "app")

        assert not report.in_sync
        assert report.divergent_fields == ["instance_type", "role"]
        assert report.stack == "app"

    def test_never_observed_resource(self, reconciler):
        resource = Resource(logical_id="VpnInstance", kind=ResourceKind.COMPUTE, physical_id="i-vpn")

        with pytest.raises(ResourceUnavailableError):
            reconciler.detect(resource)

    def test_refresh_reads_live_config(self, reconciler, api):
        api.resources[(ResourceKind.COMPUTE, "i-vpn")]["role"] = "RoleA-v2"
        resource = Resource(
            logical_id="VpnInstance", kind=ResourceKind.COMPUTE, physical_id="i-vpn",
            declared_config={"role": "RoleA"},
        )

        reconciler.refresh(resource)

        assert resource.observed_config["role"] == "RoleA-v2"
        assert reconciler.detect(resource).divergent_fields == ["role"]

    def test_refresh_without_physical_id(self, reconciler):
        resource = Resource(logical_id="VpnInstance", kind=ResourceKind.COMPUTE)

        with pytest.raises(ResourceUnavailableError):
            reconciler.refresh(resource)


class TestPlanReconciliation:
    """Test the choice between declarative, imperative and manual handling."""

    def test_role_swap_becomes_migration_plan(self, reconciler, policy):
        resource = observed_instance({"role": "RoleA"}, {"role": "RoleA-v2"})

        plan = reconciler.plan_reconciliation(reconciler.detect(resource, "app"), policy)

        assert isinstance(plan, MigrationPlan)
        assert plan.target.physical_id == "i-vpn"
        assert [s.operation for s in plan.steps] == ["replace-instance-profile-association"]
        assert plan.steps[0].parameters == {"role": "RoleA", "from": "RoleA-v2"}
        assert plan.steps[0].expected == {"role": "RoleA"}
        assert plan.rollback_steps[0].parameters == {"role": "RoleA-v2", "from": "RoleA"}
        assert plan.deferred_fields == []

    def test_declarative_only(self, reconciler, policy):
        resource = observed_instance({"tags": {"Name": "vpn"}}, {"tags": {"Name": "old"}})

        decision = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert isinstance(decision, DeclarativeUpdate)
        assert decision.fields == ["tags"]

    def test_declarative_fields_are_deferred_in_migration(self, reconciler, policy):
        resource = observed_instance(
            {"role": "RoleA", "tags": {"Name": "vpn"}},
            {"role": "RoleA-v2", "tags": {"Name": "old"}},
        )

        plan = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert isinstance(plan, MigrationPlan)
        assert plan.deferred_fields == ["tags"]

    def test_unlisted_field_needs_operator(self, reconciler, policy):
        resource = observed_instance({"instance_type": "t3.micro"}, {"instance_type": "t3.small"})

        decision = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert isinstance(decision, ManualInterventionRequired)
        assert set(decision.reasons) == {"instance_type"}

    def test_any_manual_field_blocks_the_whole_plan(self, reconciler, policy):
        resource = observed_instance(
            {"role": "RoleA", "instance_type": "t3.micro"},
            {"role": "RoleA-v2", "instance_type": "t3.small"},
        )

        decision = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert isinstance(decision, ManualInterventionRequired)
        assert list(decision.reasons) == ["instance_type"]

    def test_imperative_field_without_operation_needs_operator(self, reconciler, policy):
        resource = observed_instance({"subnet_id": "subnet-1"}, {"subnet_id": "subnet-2"})

        decision = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert isinstance(decision, ManualInterventionRequired)
        assert "no non-destructive operation" in decision.reasons["subnet_id"]

    def test_security_groups_without_observed_value_needs_operator(self, reconciler, policy):
        resource = observed_instance({"security_groups": ["sg-1"]}, {"security_groups": []})

        decision = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert isinstance(decision, ManualInterventionRequired)

    def test_dns_upsert_keeps_observed_ttl(self, reconciler, policy):
        resource = Resource(
            logical_id="VpnRecord",
            kind=ResourceKind.DNS_RECORD,
            physical_id="Z1|vpn.example.com.|A",
            declared_config={"value": "198.51.100.7"},
        )
        resource.record_observation({"type": "A", "ttl": 300, "value": "203.0.113.9"})

        plan = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert plan.steps[0].parameters == {"value": "198.51.100.7", "ttl": 300}
        assert plan.rollback_steps[0].parameters == {"value": "203.0.113.9", "ttl": 300}

    def test_in_sync_report_needs_nothing(self, reconciler, policy):
        resource = observed_instance({"role": "RoleA"}, {"role": "RoleA"})

        decision = reconciler.plan_reconciliation(reconciler.detect(resource), policy)

        assert isinstance(decision, DeclarativeUpdate)
        assert decision.fields == []


class TestDriftPolicy:
    """Test policy lookups."""

    def test_default_applies_to_unknown_fields(self, policy):
        assert policy.classify(ResourceKind.COMPUTE, "role") == ReconcilePolicy.IMPERATIVE_PATCH
        assert policy.classify(ResourceKind.ROLE, "path") == ReconcilePolicy.MANUAL_INTERVENTION_REQUIRED

    def test_record_keeps_divergent_fields_only(self, reconciler):
        resource = observed_instance(
            {"role": "RoleA", "instance_type": "t3.micro"},
            {"role": "RoleA-v2", "instance_type": "t3.micro"},
        )
        report = reconciler.detect(resource, "app")

        record = reconciler.record(resource, report, "manual")

        assert record.fields == ["role"]
        assert record.declared == {"role": "RoleA"}
        assert record.observed == {"role": "RoleA-v2"}
        assert resource.drift_history == [record]
