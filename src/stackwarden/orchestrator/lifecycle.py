"""Instance lifecycle controller: start, stop and restart compute resources."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from stackwarden.provisioning.base import InstanceState, ProvisioningAPI
from stackwarden.state.models import Resource, ResourceKind
from stackwarden.utils.errors import (
    ErrorContext,
    OperationCancelled,
    OperationTimeout,
    ResourceUnavailableError,
    ValidationError,
)
from stackwarden.utils.logging import LogContext, get_logger
from stackwarden.utils.polling import CancellationToken, Poller

logger = get_logger(__name__)


class LifecycleAction(Enum):
    """Requested instance transition."""
    START = "start"
    STOP = "stop"
    RESTART = "restart"


# action -> (state it applies to, state it ends in)
TRANSITIONS = {
    LifecycleAction.START: (InstanceState.STOPPED, InstanceState.RUNNING),
    LifecycleAction.STOP: (InstanceState.RUNNING, InstanceState.STOPPED),
    LifecycleAction.RESTART: (InstanceState.RUNNING, InstanceState.RUNNING),
}


@dataclass
class TransitionResult:
    """Outcome of a lifecycle request."""
    action: LifecycleAction
    previous_state: InstanceState
    final_state: InstanceState
    no_change: bool = False
    message: str = ""


class LifecycleController:
    """Drives live instance state for compute resources.

    Reads physical ids from the resource entity and never writes declared
    or observed config, so starting and stopping an instance is not seen as
    drift.
    """

    def __init__(self, api: ProvisioningAPI, poller: Optional[Poller] = None):
        """Initialize lifecycle controller.

        Args:
            api: Provisioning API used to read and change instance state
            poller: Poller used while an instance is transitioning
        """
        self.api = api
        self.poller = poller or Poller(initial_interval=5.0, max_interval=15.0, timeout=600.0)

    def _instance_id(self, resource: Resource) -> str:
        if resource.kind != ResourceKind.COMPUTE:
            raise ValidationError(
                f"Resource {resource.logical_id} is {resource.kind.value}, not COMPUTE",
                context=ErrorContext(resource_id=resource.logical_id, operation='manage')
            )
        if not resource.physical_id:
            raise ResourceUnavailableError(
                f"Resource {resource.logical_id} has no physical id",
                context=ErrorContext(resource_id=resource.logical_id, operation='manage'),
                suggestions=['Deploy the owning stack so the instance id is recorded']
            )
        return resource.physical_id

    def get_state(self, resource: Resource) -> InstanceState:
        """Read the live state of a compute resource."""
        return self.api.get_instance_state(self._instance_id(resource))

    def _wait_for(
        self,
        instance_id: str,
        accept,
        description: str,
        cancel: Optional[CancellationToken]
    ) -> InstanceState:
        try:
            return self.poller.poll(
                lambda: self.api.get_instance_state(instance_id),
                lambda state: state == InstanceState.UNKNOWN or accept(state),
                description=description,
                cancel=cancel,
            )
        except (OperationTimeout, OperationCancelled) as e:
            e.context.resource_id = instance_id
            raise

    def transition(
        self,
        resource: Resource,
        action: LifecycleAction,
        cancel: Optional[CancellationToken] = None
    ) -> TransitionResult:
        """Move an instance to the state the action implies.

        An action that does not apply to the current state (START on a
        running instance, STOP or RESTART on a stopped one) succeeds with
        ``no_change`` set and issues no mutating call. An instance that is
        transitioning is first waited on until it settles.

        Raises:
            ResourceUnavailableError: If the instance state is UNKNOWN
            OperationTimeout: If the instance does not settle in time
            OperationCancelled: If the caller cancelled the wait
        """
        instance_id = self._instance_id(resource)

        with LogContext(resource_id=resource.logical_id, operation=action.value):
            previous = self.api.get_instance_state(instance_id)
            if previous == InstanceState.TRANSITIONING:
                logger.info(f"{instance_id} is transitioning; waiting for it to settle")
                previous = self._wait_for(
                    instance_id, lambda s: s.is_stable, f"{instance_id} to settle", cancel
                )

            if previous == InstanceState.UNKNOWN:
                raise ResourceUnavailableError(
                    f"State of instance {instance_id} is unknown",
                    context=ErrorContext(resource_id=resource.logical_id, operation=action.value),
                    suggestions=['Check that the instance exists and was not terminated']
                )

            source, target = TRANSITIONS[action]
            if previous != source:
                message = f"Instance {instance_id} is already {previous.value.lower()}"
                logger.info(message)
                return TransitionResult(action, previous, previous, no_change=True, message=message)

            if action == LifecycleAction.START:
                self.api.start_instance(instance_id)
            elif action == LifecycleAction.STOP:
                self.api.stop_instance(instance_id)
            else:
                self.api.restart_instance(instance_id)
            logger.info(f"Requested {action.value} of {instance_id}")

            final = self._wait_for(
                instance_id, lambda s: s == target, f"{instance_id} to become {target.value}", cancel
            )
            if final == InstanceState.UNKNOWN:
                raise ResourceUnavailableError(
                    f"Instance {instance_id} disappeared during {action.value}",
                    context=ErrorContext(resource_id=resource.logical_id, operation=action.value)
                )

        return TransitionResult(
            action, previous, final,
            message=f"Instance {instance_id} {previous.value.lower()} -> {final.value.lower()}"
        )
