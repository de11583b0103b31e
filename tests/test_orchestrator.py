"""End-to-end tests of the orchestrator facade against the fake provider."""

from stackwarden.config.parser import Config
from stackwarden.credentials import Credentials, CredentialStore
from stackwarden.orchestrator.lifecycle import LifecycleAction
from stackwarden.orchestrator.orchestrator import ActionStatus, StackOrchestrator
from stackwarden.provisioning.base import InstanceState, ProviderStackStatus
from stackwarden.state.models import ResourceKind, StackStatus
from stackwarden.utils.errors import DependencyError, MissingParameterError, ProviderError
from tests.fakes import config_data


def outcomes(result):
    return [(item.name, item.outcome) for item in result.results]


def submitted(api, name):
    return [call[2] for call in api.calls if call[:2] == ("submit", name)]


class TestDeploy:
    """Test the deploy action."""

    def test_deploys_single_stack(self, orchestrator, state_manager):
        result = orchestrator.deploy("network")

        assert result.status == ActionStatus.SUCCEEDED
        assert result.exit_code == 0
        assert outcomes(result) == [("network", "SUCCEEDED")]
        state = state_manager.load()
        assert state.stacks["network"].status == StackStatus.DEPLOYED
        assert state.stacks["network"].outputs == {"VpcId": "vpc-123"}

    def test_undeployed_dependency_fails_without_mutation(self, orchestrator, api):
        result = orchestrator.deploy("app")

        assert result.status == ActionStatus.FAILED
        assert result.exit_code == 1
        assert isinstance(result.error, DependencyError)
        assert result.error.dependency == "network"
        assert api.mutating_calls() == []

    def test_with_dependencies_applies_chain_in_order(self, orchestrator, api, state_manager):
        result = orchestrator.deploy("app", with_dependencies=True)

        assert result.status == ActionStatus.SUCCEEDED
        assert outcomes(result) == [("network", "SUCCEEDED"), ("app", "SUCCEEDED")]
        assert [c[1] for c in api.mutating_calls()] == ["network", "app"]
        assert submitted(api, "app") == [{"InstanceType": "t3.micro", "VpcId": "vpc-123"}]

        app = state_manager.load().stacks["app"]
        assert app.resources["VpnInstance"].physical_id == "i-vpn"
        assert app.resources["VpnInstance"].observed_config["role"] == "RoleA"

    def test_redeploy_without_changes_is_no_op(self, orchestrator, api):
        orchestrator.deploy("app", with_dependencies=True)

        result = orchestrator.deploy("app")

        assert result.status == ActionStatus.NO_OP
        assert result.exit_code == 0
        assert outcomes(result) == [("app", "NO_OP")]
        assert len(submitted(api, "app")) == 1

    def test_overrides_apply_to_requested_stack_only(self, orchestrator, api):
        orchestrator.deploy("app", {"InstanceType": "m5.large"}, with_dependencies=True)

        assert submitted(api, "network") == [{"VpcCidr": "10.0.0.0/16"}]
        assert submitted(api, "app")[0]["InstanceType"] == "m5.large"

    def test_failure_stops_the_chain(self, orchestrator, api, state_manager):
        api.apply_outcomes["network"] = ProviderStackStatus.FAILED

        result = orchestrator.deploy("app", with_dependencies=True)

        assert result.status == ActionStatus.FAILED
        assert outcomes(result) == [("network", "FAILED"), ("app", "SKIPPED")]
        assert submitted(api, "app") == []
        assert state_manager.load().stacks["network"].status == StackStatus.NOT_DEPLOYED

    def test_partial_progress_is_persisted(self, orchestrator, api, state_manager):
        api.stack_outputs["network"] = {}

        result = orchestrator.deploy("app", with_dependencies=True)

        assert result.status == ActionStatus.FAILED
        assert isinstance(result.error, MissingParameterError)
        assert outcomes(result) == [("network", "SUCCEEDED")]
        assert state_manager.load().stacks["network"].status == StackStatus.DEPLOYED

    def test_provider_is_authoritative_for_missing_stacks(self, orchestrator, api, state_manager):
        orchestrator.deploy("network")
        api.stacks.clear()

        result = orchestrator.deploy("app")

        assert result.status == ActionStatus.FAILED
        assert isinstance(result.error, DependencyError)
        assert any("no longer exists" in w for w in result.warnings)
        assert state_manager.load().stacks["network"].status == StackStatus.NOT_DEPLOYED

    def test_provider_is_authoritative_for_outputs(self, orchestrator, api):
        api.deploy_existing("network", outputs={"VpcId": "vpc-external"})

        result = orchestrator.deploy("app")

        assert result.status == ActionStatus.SUCCEEDED
        assert submitted(api, "app")[0]["VpcId"] == "vpc-external"

    def test_dry_run_previews_without_mutation(self, orchestrator, api):
        result = orchestrator.deploy("app", with_dependencies=True, dry_run=True)

        assert outcomes(result) == [("network", "WOULD_CHANGE"), ("app", "PENDING_DEPENDENCIES")]
        assert api.mutating_calls() == []

    def test_unknown_stack(self, orchestrator):
        result = orchestrator.deploy("storage")

        assert result.status == ActionStatus.FAILED
        assert isinstance(result.error, DependencyError)

    def test_waits_for_running_operation_on_dependency(self, orchestrator, api):
        orchestrator.deploy("network")
        api.in_progress_reads["network"] = 1

        result = orchestrator.deploy("app")

        assert result.status == ActionStatus.SUCCEEDED
        assert not any("in progress" in warning for warning in result.warnings)
        assert api.in_progress_reads["network"] == 0
        assert submitted(api, "app") == [{"InstanceType": "t3.micro", "VpcId": "vpc-123"}]

    def test_dependency_still_busy_fails_without_mutation(self, project_dir, state_manager, api):
        data = config_data()
        data["polling"]["timeout"] = 0.01
        config = Config.from_dict(data, str(project_dir / "stackwarden.yaml"))
        orchestrator = StackOrchestrator(config, "dev", state_manager, lambda credentials: api)
        orchestrator.deploy("network")
        api.in_progress_reads["network"] = 10 ** 6

        result = orchestrator.deploy("app")

        assert result.status == ActionStatus.FAILED
        assert isinstance(result.error, DependencyError)
        assert result.error.dependency == "network"
        assert submitted(api, "app") == []


class TestMigrate:
    """Test the migrate action."""

    def test_role_swap_is_migrated_in_place(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)
        api.resources[(ResourceKind.COMPUTE, "i-vpn")]["role"] = "RoleA-v2"

        result = orchestrator.migrate(["VpnInstance"])

        assert result.status == ActionStatus.SUCCEEDED
        assert outcomes(result) == [("app/VpnInstance", "MIGRATED")]
        assert api.resources[(ResourceKind.COMPUTE, "i-vpn")]["role"] == "RoleA"
        assert [c[1] for c in api.mutating_calls()][-1] == "replace-instance-profile-association"

        app = state_manager.load().stacks["app"]
        assert app.status == StackStatus.DEPLOYED
        history = app.resources["VpnInstance"].drift_history
        assert [record.resolution for record in history] == ["migrated"]
        assert history[0].observed == {"role": "RoleA-v2"}

    def test_manual_intervention_changes_nothing(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)
        api.resources[(ResourceKind.COMPUTE, "i-vpn")]["security_groups"] = []

        result = orchestrator.migrate(["app/VpnInstance"])

        assert result.status == ActionStatus.SUCCEEDED_WITH_WARNINGS
        assert result.exit_code == 3
        assert outcomes(result) == [("app/VpnInstance", "MANUAL_INTERVENTION_REQUIRED")]
        assert api.patch_count == 0
        app = state_manager.load().stacks["app"]
        assert app.status == StackStatus.DEPLOYED_WITH_DRIFT
        assert app.resources["VpnInstance"].drift_history[-1].resolution == "manual"

    def test_failed_migration_is_rolled_back(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)
        api.resources[(ResourceKind.COMPUTE, "i-vpn")]["role"] = "RoleA-v2"
        api.patch_errors[1] = ProviderError("IncorrectInstanceState")

        result = orchestrator.migrate(["VpnInstance"])

        assert result.status == ActionStatus.FAILED
        assert outcomes(result) == [("app/VpnInstance", "ROLLED_BACK")]
        assert api.resources[(ResourceKind.COMPUTE, "i-vpn")]["role"] == "RoleA-v2"
        app = state_manager.load().stacks["app"]
        assert app.resources["VpnInstance"].drift_history[-1].resolution == "rolled_back"
        assert app.status == StackStatus.DEPLOYED_WITH_DRIFT

    def test_in_sync_resource_is_no_op(self, orchestrator):
        orchestrator.deploy("app", with_dependencies=True)

        result = orchestrator.migrate(["VpnInstance"])

        assert result.status == ActionStatus.NO_OP
        assert outcomes(result) == [("app/VpnInstance", "IN_SYNC")]

    def test_dry_run_only_plans(self, orchestrator, api):
        orchestrator.deploy("app", with_dependencies=True)
        api.resources[(ResourceKind.COMPUTE, "i-vpn")]["role"] = "RoleA-v2"

        result = orchestrator.migrate(["VpnInstance"], dry_run=True)

        assert outcomes(result) == [("app/VpnInstance", "PLANNED")]
        assert api.patch_count == 0

    def test_unknown_resource(self, orchestrator):
        result = orchestrator.migrate(["network/Missing"])

        assert result.status == ActionStatus.FAILED
        assert outcomes(result) == [("network/Missing", "ValidationError")]

    def test_undeployed_resource(self, orchestrator):
        result = orchestrator.migrate(["VpnInstance"])

        assert result.status == ActionStatus.FAILED
        assert outcomes(result) == [("VpnInstance", "ResourceUnavailableError")]


class TestManage:
    """Test the manage action."""

    def test_stop_then_query(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)
        before = state_manager.state_path.read_text()

        stopped = orchestrator.manage("VpnInstance", LifecycleAction.STOP)
        queried = orchestrator.manage("app/VpnInstance")

        assert stopped.status == ActionStatus.SUCCEEDED
        assert outcomes(stopped) == [("app/VpnInstance", "STOPPED")]
        assert outcomes(queried) == [("app/VpnInstance", "STOPPED")]
        assert queried.status == ActionStatus.NO_OP
        assert state_manager.state_path.read_text() == before

    def test_start_running_instance_is_no_op(self, orchestrator, api):
        orchestrator.deploy("app", with_dependencies=True)

        result = orchestrator.manage("VpnInstance", LifecycleAction.START)

        assert result.status == ActionStatus.NO_OP
        assert "start_instance" not in api.call_names()

    def test_unknown_instance_state_fails(self, orchestrator, api):
        orchestrator.deploy("app", with_dependencies=True)
        api.instances["i-vpn"] = InstanceState.UNKNOWN

        result = orchestrator.manage("VpnInstance", LifecycleAction.STOP)

        assert result.status == ActionStatus.FAILED


class TestDestroy:
    """Test the destroy action."""

    def test_dependents_are_destroyed_first(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)

        result = orchestrator.destroy(["network"])

        assert result.status == ActionStatus.SUCCEEDED_WITH_WARNINGS
        assert result.details["waves"] == [["app"], ["network"]]
        deletes = [c[1] for c in api.mutating_calls() if c[0] == "delete_stack"]
        assert deletes == ["app", "network"]
        state = state_manager.load()
        assert state.stacks["app"].status == StackStatus.DELETED
        assert state.stacks["network"].status == StackStatus.DELETED
        assert state.stacks["network"].outputs == {}

    def test_destroy_leaf_only(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)

        result = orchestrator.destroy(["app"])

        assert result.status == ActionStatus.SUCCEEDED
        assert state_manager.load().stacks["network"].status == StackStatus.DEPLOYED

    def test_failed_wave_stops_teardown(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)
        api.delete_failures.add("app")

        result = orchestrator.destroy(["network"])

        assert result.status == ActionStatus.FAILED
        assert ("app", "FAILED") in outcomes(result)
        assert ("network", "SKIPPED") in outcomes(result)
        assert ("delete_stack", "network") not in api.calls
        assert state_manager.load().stacks["network"].status == StackStatus.DEPLOYED

    def test_dry_run_lists_waves(self, orchestrator, api):
        orchestrator.deploy("app", with_dependencies=True)

        result = orchestrator.destroy(["network"], dry_run=True)

        assert outcomes(result) == [("app", "WOULD_DELETE"), ("network", "WOULD_DELETE")]
        assert "delete_stack" not in api.call_names()

    def test_stack_left_by_failed_create_is_deleted(self, orchestrator, api, state_manager):
        api.apply_outcomes["network"] = ProviderStackStatus.FAILED
        orchestrator.deploy("network")

        result = orchestrator.destroy(["network"])

        assert ("delete_stack", "network") in api.calls
        assert outcomes(result) == [("network", "DELETED")]
        assert api.stacks["network"].status == ProviderStackStatus.DELETED
        assert state_manager.load().stacks["network"].stack_id is None

    def test_destroy_retries_after_failed_delete(self, orchestrator, api, state_manager):
        orchestrator.deploy("network")
        api.delete_failures.add("network")
        first = orchestrator.destroy(["network"])
        assert first.status == ActionStatus.FAILED
        assert state_manager.load().stacks["network"].stack_id == "arn:fake:stack/network"

        api.delete_failures.clear()
        second = orchestrator.destroy(["network"])

        assert [c for c in api.calls if c[0] == "delete_stack"] == [("delete_stack", "network")] * 2
        assert ("network", "DELETED") in outcomes(second)
        assert state_manager.load().stacks["network"].status == StackStatus.DELETED


class TestStatusAndDrift:
    """Test the read-mostly actions."""

    def test_status_reports_every_stack(self, orchestrator):
        orchestrator.deploy("network")

        result = orchestrator.status()

        assert outcomes(result) == [("app", "NOT_DEPLOYED"), ("network", "DEPLOYED")]
        assert result.details["state"].stacks["network"].outputs == {"VpcId": "vpc-123"}

    def test_drift_is_detected_and_recorded_once(self, orchestrator, api, state_manager):
        orchestrator.deploy("app", with_dependencies=True)
        api.resources[(ResourceKind.COMPUTE, "i-vpn")]["role"] = "RoleA-v2"

        first = orchestrator.drift()
        orchestrator.drift("app")

        assert first.status == ActionStatus.SUCCEEDED_WITH_WARNINGS
        assert outcomes(first) == [("app/VpnInstance", "DRIFTED")]
        assert "IMPERATIVE_PATCH" in first.results[0].detail
        app = state_manager.load().stacks["app"]
        assert app.status == StackStatus.DEPLOYED_WITH_DRIFT
        assert [r.resolution for r in app.resources["VpnInstance"].drift_history] == ["detected"]
        assert api.patch_count == 0

    def test_unknown_stack(self, orchestrator):
        assert orchestrator.drift("storage").status == ActionStatus.FAILED


class RecordingStore(CredentialStore):
    def __init__(self):
        self.issued = []

    def acquire(self, role):
        credentials = Credentials(role=role, access_key_id="AKIA", secret_access_key="secret")
        self.issued.append(credentials)
        return credentials


class TestCredentials:
    """Test that privileged actions run under scoped role credentials."""

    def test_role_credentials_are_handed_to_the_provider_and_cleared(self, project_dir, state_manager, api):
        data = config_data()
        data["environments"]["dev"]["role_arn"] = "arn:aws:iam::123456789012:role/deployer"
        config = Config.from_dict(data, str(project_dir / "stackwarden.yaml"))
        store = RecordingStore()
        received = []

        def factory(credentials):
            received.append(credentials)
            return api

        orchestrator = StackOrchestrator(config, "dev", state_manager, factory, credential_store=store)
        orchestrator.deploy("network")

        assert received[0].role == "arn:aws:iam::123456789012:role/deployer"
        assert received[0].cleared
        assert store.issued == received
        assert api.closed
