"""Tests for the instance lifecycle controller."""

import pytest

from stackwarden.orchestrator.lifecycle import LifecycleAction, LifecycleController
from stackwarden.provisioning.base import InstanceState
from stackwarden.state.models import Resource, ResourceKind
from stackwarden.utils.errors import ResourceUnavailableError, ValidationError


@pytest.fixture
def controller(api, poller):
    return LifecycleController(api, poller=poller)


@pytest.fixture
def instance():
    return Resource(
        logical_id="VpnInstance",
        kind=ResourceKind.COMPUTE,
        physical_id="i-vpn",
        declared_config={"role": "RoleA"},
        observed_config={"role": "RoleA"},
    )


class TestTransition:
    """Test start, stop and restart."""

    def test_stop_running_instance(self, controller, api, instance):
        result = controller.transition(instance, LifecycleAction.STOP)

        assert result.previous_state == InstanceState.RUNNING
        assert result.final_state == InstanceState.STOPPED
        assert not result.no_change
        assert api.mutating_calls() == [("stop_instance", "i-vpn")]

    def test_start_stopped_instance(self, controller, api, instance):
        api.instances["i-vpn"] = InstanceState.STOPPED

        result = controller.transition(instance, LifecycleAction.START)

        assert result.final_state == InstanceState.RUNNING
        assert api.mutating_calls() == [("start_instance", "i-vpn")]

    def test_restart_running_instance(self, controller, api, instance):
        result = controller.transition(instance, LifecycleAction.RESTART)

        assert result.final_state == InstanceState.RUNNING
        assert api.mutating_calls() == [("restart_instance", "i-vpn")]

    @pytest.mark.parametrize("state,action", [
        (InstanceState.RUNNING, LifecycleAction.START),
        (InstanceState.STOPPED, LifecycleAction.STOP),
        (InstanceState.STOPPED, LifecycleAction.RESTART),
    ])
    def test_inapplicable_action_is_a_no_op(self, controller, api, instance, state, action):
        api.instances["i-vpn"] = state

        result = controller.transition(instance, action)

        assert result.no_change
        assert result.final_state == state
        assert api.mutating_calls() == []

    def test_waits_for_transitioning_instance_first(self, controller, api, instance):
        api.instances["i-vpn"] = InstanceState.TRANSITIONING
        api.instance_targets["i-vpn"] = InstanceState.STOPPED

        result = controller.transition(instance, LifecycleAction.START)

        assert result.previous_state == InstanceState.STOPPED
        assert result.final_state == InstanceState.RUNNING

    def test_unknown_state_fails(self, controller, api, instance):
        del api.instances["i-vpn"]

        with pytest.raises(ResourceUnavailableError):
            controller.transition(instance, LifecycleAction.STOP)
        assert api.mutating_calls() == []

    def test_declared_and_observed_config_untouched(self, controller, instance):
        controller.transition(instance, LifecycleAction.STOP)

        assert instance.declared_config == {"role": "RoleA"}
        assert instance.observed_config == {"role": "RoleA"}


class TestGetState:
    """Test state queries and target validation."""

    def test_reports_live_state(self, controller, instance):
        assert controller.get_state(instance) == InstanceState.RUNNING

    def test_rejects_non_compute_resources(self, controller):
        role = Resource(logical_id="VpnRole", kind=ResourceKind.ROLE, physical_id="VpnRole")

        with pytest.raises(ValidationError):
            controller.get_state(role)

    def test_requires_physical_id(self, controller):
        resource = Resource(logical_id="VpnInstance", kind=ResourceKind.COMPUTE)

        with pytest.raises(ResourceUnavailableError):
            controller.get_state(resource)
