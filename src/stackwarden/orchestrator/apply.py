"""Apply engine: submit a stack, wait for it, classify the outcome."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Union

from stackwarden.provisioning.base import (
    ProviderStackStatus,
    ProvisioningAPI,
    ResourceChange,
    StackDescription,
)
from stackwarden.state.models import Parameter, Stack
from stackwarden.utils.errors import (
    ApplyFailed,
    ConfigurationError,
    Diagnostic,
    ErrorContext,
    ErrorKind,
    OperationCancelled,
    OperationTimeout,
    OrchestratorError,
)
from stackwarden.utils.logging import LogContext, get_logger
from stackwarden.utils.polling import CancellationToken, Poller

logger = get_logger(__name__)


class ApplyStatus(Enum):
    """Lifecycle of one apply."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    NO_OP = "NO_OP"
    ROLLED_BACK = "ROLLED_BACK"


@dataclass
class ApplyResult:
    """Outcome of applying one stack."""

    stack_name: str
    status: ApplyStatus = ApplyStatus.PENDING
    outputs: Dict[str, str] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    changes: List[ResourceChange] = field(default_factory=list)
    stack_id: Optional[str] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status in (ApplyStatus.SUCCEEDED, ApplyStatus.NO_OP)

    @property
    def changed(self) -> bool:
        return self.status == ApplyStatus.SUCCEEDED

    def raise_for_status(self) -> None:
        """Raise ApplyFailed unless the apply succeeded or was a no-op."""
        if self.succeeded:
            return
        summary = "; ".join(str(d) for d in self.diagnostics) or "no diagnostics reported"
        raise ApplyFailed(
            f"Apply of stack '{self.stack_name}' ended {self.status.value}: {summary}",
            context=ErrorContext(stack=self.stack_name, operation='apply'),
            diagnostics=list(self.diagnostics),
        )


def load_template(reference: str) -> str:
    """Read a template body from its path.

    Raises:
        ConfigurationError: If the template cannot be read
    """
    path = Path(reference)
    try:
        return path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read template {path}: {e}", cause=e)


def _values(params: Mapping[str, Union[Parameter, str]]) -> Dict[str, str]:
    return {
        key: value.value if isinstance(value, Parameter) else str(value)
        for key, value in sorted(params.items())
    }


class ApplyEngine:
    """Applies one stack at a time through the provisioning API.

    The engine never retries a submission. On any outcome other than success
    the stack passed in keeps its previous status, outputs and resources.
    """

    def __init__(
        self,
        api: ProvisioningAPI,
        poller: Optional[Poller] = None,
        template_loader: Callable[[str], str] = load_template
    ):
        """Initialize the apply engine.

        Args:
            api: Provisioning API to apply through
            poller: Poller used while the provider works on the stack
            template_loader: Reads a template body from a stack's template reference
        """
        self.api = api
        self.poller = poller or Poller()
        self.template_loader = template_loader
        self.logger = get_logger(__name__)

    def apply(
        self,
        stack: Stack,
        effective_params: Mapping[str, Union[Parameter, str]],
        cancel: Optional[CancellationToken] = None
    ) -> ApplyResult:
        """Apply a stack with its effective parameters.

        Args:
            stack: Stack to apply; updated in place only on success
            effective_params: Output of the parameter resolver, or plain values
            cancel: Stops polling early; the submitted change keeps running

        Returns:
            ApplyResult with status SUCCEEDED, NO_OP, FAILED or ROLLED_BACK
        """
        result = ApplyResult(stack_name=stack.name)
        started = time.monotonic()
        values = _values(effective_params)

        with LogContext(stack=stack.name, operation='apply'):
            try:
                self._apply(stack, values, result, cancel)
            except OrchestratorError as e:
                self.logger.error(f"Apply failed: {e.message}")
                result.status = ApplyStatus.FAILED
                result.diagnostics.append(Diagnostic(
                    kind=e.kind.value, message=e.message, operation='apply'
                ))
            result.duration = time.monotonic() - started
            self.logger.info(f"Apply finished with {result.status.value} in {result.duration:.1f}s")

        return result

    def _apply(
        self,
        stack: Stack,
        values: Dict[str, str],
        result: ApplyResult,
        cancel: Optional[CancellationToken]
    ) -> None:
        template_body = self.template_loader(stack.template)

        preview = self.api.preview_changes(stack.name, template_body, values)
        result.changes = list(preview.changes)
        if preview.is_empty:
            self.logger.info("No changes to apply")
            result.status = ApplyStatus.NO_OP
            result.outputs = dict(stack.outputs)
            result.stack_id = stack.stack_id
            if stack.is_deployed and any(not r.physical_id for r in stack.resources.values()):
                description = self.api.describe_stack(stack.name)
                result.diagnostics.extend(self._resolve_resources(stack, description))
            return

        self.logger.info(f"Submitting {len(preview.changes)} change(s)")
        result.stack_id = self.api.submit(stack.name, template_body, values)
        result.status = ApplyStatus.IN_PROGRESS

        try:
            description = self.poller.poll(
                lambda: self.api.describe_stack(stack.name),
                lambda d: d.status.is_terminal,
                description=f"apply of {stack.name}",
                cancel=cancel,
            )
        except OperationTimeout as e:
            result.status = ApplyStatus.FAILED
            result.diagnostics.append(Diagnostic(
                kind=ErrorKind.TIMEOUT.value,
                message=f"{e.message}; the change may still complete, re-query the stack",
                operation='apply',
            ))
            return
        except OperationCancelled as e:
            result.status = ApplyStatus.FAILED
            result.diagnostics.append(Diagnostic(
                kind=ErrorKind.CANCELLED.value,
                message=f"{e.message}; the submitted change was not cancelled",
                operation='apply',
            ))
            return

        self._classify(stack, values, description, result)

    def _classify(
        self,
        stack: Stack,
        values: Dict[str, str],
        description: StackDescription,
        result: ApplyResult
    ) -> None:
        if description.status == ProviderStackStatus.SUCCEEDED:
            stack.mark_deployed(description.outputs, description.stack_id or result.stack_id, values)
            result.status = ApplyStatus.SUCCEEDED
            result.outputs = dict(description.outputs)
            result.stack_id = stack.stack_id
            result.diagnostics.extend(self._resolve_resources(stack, description))
            return

        result.status = (
            ApplyStatus.ROLLED_BACK
            if description.status == ProviderStackStatus.ROLLED_BACK
            else ApplyStatus.FAILED
        )
        result.diagnostics.extend(description.failures)
        if not description.failures:
            result.diagnostics.append(Diagnostic(
                kind=ErrorKind.APPLY_FAILED.value,
                message=f"Provider reported {description.raw_status or description.status.value}",
                operation='apply',
            ))
        for diagnostic in result.diagnostics:
            self.logger.warning(str(diagnostic))

    def _resolve_resources(self, stack: Stack, description: StackDescription) -> List[Diagnostic]:
        """Fill in physical ids and capture observed config.

        Physical ids come from the provider's stack resources first; a
        resource the stack does not name is located once through its
        selector and the id is kept from then on.
        """
        diagnostics = []
        for logical_id in sorted(stack.resources):
            resource = stack.resources[logical_id]
            with LogContext(resource_id=logical_id):
                try:
                    if logical_id in description.resources:
                        resource.physical_id = description.resources[logical_id]
                    elif not resource.physical_id and resource.selector:
                        resource.physical_id = self.api.find_resource(resource.kind, resource.selector)
                        self.logger.info(f"Selector resolved to {resource.physical_id}")

                    if not resource.physical_id:
                        diagnostics.append(Diagnostic(
                            kind=ErrorKind.RESOURCE_UNAVAILABLE.value,
                            message="No physical id found in stack resources or by selector",
                            resource_id=logical_id,
                        ))
                        continue

                    resource.record_observation(
                        self.api.describe_resource(resource.kind, resource.physical_id)
                    )
                except OrchestratorError as e:
                    diagnostics.append(Diagnostic(
                        kind=e.kind.value, message=e.message, resource_id=logical_id
                    ))
        return diagnostics
