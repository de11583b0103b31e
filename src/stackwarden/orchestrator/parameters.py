"""Parameter resolver: effective parameters for one apply."""

from typing import Dict, Mapping, Optional

from stackwarden.state.models import Parameter, ParameterSource, Stack, StackStatus
from stackwarden.utils.errors import MissingParameterError


def resolve(
    stack: Stack,
    overrides: Optional[Mapping[str, str]] = None,
    dependency_outputs: Optional[Mapping[str, Mapping[str, str]]] = None,
    dependency_status: Optional[Mapping[str, StackStatus]] = None
) -> Dict[str, Parameter]:
    """Merge defaults, inherited outputs and caller overrides.

    Precedence is caller override, then inherited output, then default. An
    inherited value counts only when its source stack is deployed; when
    ``dependency_status`` is omitted, presence in ``dependency_outputs`` is
    taken as deployed. Override keys the stack does not declare are passed
    through.

    DEPLOYED_WITH_DRIFT counts as deployed here, not only DEPLOYED: drift
    concerns resource configuration, and the source stack's outputs are
    still the ones its last successful apply recorded. The resolver warns
    about drifted dependencies before this runs.

    The result depends only on the arguments and is ordered by key.

    Raises:
        MissingParameterError: If a required parameter has no value
    """
    overrides = overrides or {}
    dependency_outputs = dependency_outputs or {}
    dependency_status = dependency_status or {}

    resolved: Dict[str, Parameter] = {}
    for key in sorted(set(stack.parameters) | set(overrides)):
        if key in overrides:
            resolved[key] = Parameter(
                key=key, value=overrides[key], source=ParameterSource.CALLER_OVERRIDE
            )
            continue

        declaration = stack.parameters[key]
        source = declaration.source_stack
        if source is not None:
            status = dependency_status.get(source)
            outputs = dependency_outputs.get(source) or {}
            usable = status.is_deployed if status is not None else source in dependency_outputs
            if usable and declaration.output_key in outputs:
                resolved[key] = Parameter(
                    key=key,
                    value=outputs[declaration.output_key],
                    source=ParameterSource.INHERITED_FROM_OUTPUT,
                    source_stack=source,
                )
                continue

        if declaration.default is not None:
            resolved[key] = Parameter(
                key=key, value=declaration.default, source=ParameterSource.DEFAULT
            )
        elif declaration.required:
            raise MissingParameterError(key, stack=stack.name)

    return resolved


def parameter_values(parameters: Mapping[str, Parameter]) -> Dict[str, str]:
    """Flatten resolved parameters to the key/value mapping a template takes."""
    return {key: param.value for key, param in sorted(parameters.items())}
