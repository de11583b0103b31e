"""Error handling framework for orchestration actions."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError, BotoCoreError
from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(Enum):
    """Kinds of errors surfaced to the invoking action."""
    DEPENDENCY = "DependencyError"
    CYCLIC_DEPENDENCY = "CyclicDependencyError"
    MISSING_PARAMETER = "MissingParameterError"
    APPLY_FAILED = "ApplyFailed"
    RESOURCE_UNAVAILABLE = "ResourceUnavailableError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    MIGRATION_FAILED = "MigrationFailed"
    CONFIGURATION = "ConfigurationError"
    STATE = "StateError"
    CREDENTIAL = "CredentialError"
    PROVIDER = "ProviderError"
    VALIDATION = "ValidationError"
    UNKNOWN = "UnknownError"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Action cannot continue
    ERROR = "error"  # Operation failed
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    stack: Optional[str] = None
    resource_id: Optional[str] = None
    operation: Optional[str] = None
    provider_service: Optional[str] = None
    provider_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


@dataclass
class Diagnostic:
    """A single provider-reported detail explaining an outcome."""
    kind: str
    message: str
    resource_id: Optional[str] = None
    operation: Optional[str] = None

    def __str__(self) -> str:
        target = f" [{self.resource_id}]" if self.resource_id else ""
        return f"{self.kind}{target}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'message': self.message,
            'resource_id': self.resource_id,
            'operation': self.operation,
        }


class OrchestratorError(Exception):
    """Base exception for orchestration errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None,
        diagnostics: Optional[List[Diagnostic]] = None
    ):
        """Initialize orchestration error.

        Args:
            message: Human-readable error message
            kind: Error kind
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
            diagnostics: Provider diagnostics attached to the failure
        """
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []
        self.diagnostics = diagnostics or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.kind.value}: {self.message}"]

        if self.context.stack:
            lines.append(f"   Stack: {self.context.stack}")
        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        for diagnostic in self.diagnostics:
            lines.append(f"   - {diagnostic}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'kind': self.kind.value,
            'message': self.message,
            'severity': self.severity.value,
            'context': {
                'stack': self.context.stack,
                'resource_id': self.context.resource_id,
                'operation': self.context.operation,
                'provider_service': self.context.provider_service,
                'provider_operation': self.context.provider_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions,
            'diagnostics': [d.to_dict() for d in self.diagnostics],
        }


class ConfigurationError(OrchestratorError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CredentialError(OrchestratorError):
    """Error acquiring or using credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateError(OrchestratorError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DependencyError(OrchestratorError):
    """A prerequisite stack is missing or unhealthy."""

    def __init__(self, message: str, dependency: Optional[str] = None, **kwargs):
        kwargs.setdefault('kind', ErrorKind.DEPENDENCY)
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)
        self.dependency = dependency


class CyclicDependencyError(DependencyError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            dependency=cycle[0] if cycle else None,
            kind=ErrorKind.CYCLIC_DEPENDENCY,
            **kwargs
        )
        self.cycle = cycle


class MissingParameterError(OrchestratorError):
    """A required parameter has no value from any source."""

    def __init__(self, key: str, stack: Optional[str] = None, **kwargs):
        target = f" for stack '{stack}'" if stack else ""
        super().__init__(
            f"Required parameter '{key}' has no value{target}",
            kind=ErrorKind.MISSING_PARAMETER,
            severity=ErrorSeverity.CRITICAL,
            context=ErrorContext(stack=stack, operation='resolve-parameters'),
            **kwargs
        )
        self.key = key


class ApplyFailed(OrchestratorError):
    """An apply did not reach a successful terminal state."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.APPLY_FAILED,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ResourceUnavailableError(OrchestratorError):
    """A resource could not be found or its state could not be read."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.RESOURCE_UNAVAILABLE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class OperationTimeout(OrchestratorError):
    """Polling exceeded its overall deadline.

    The underlying operation may still complete; callers must re-query state
    rather than assume an outcome.
    """

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.TIMEOUT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class OperationCancelled(OrchestratorError):
    """Polling was stopped by the caller."""

    def __init__(self, message: str = "Operation cancelled by caller", **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.CANCELLED,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class MigrationFailed(OrchestratorError):
    """A migration plan failed; carries whether rollback restored the resource."""

    def __init__(self, message: str, rolled_back: bool = False, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.MIGRATION_FAILED,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )
        self.rolled_back = rolled_back


class ProviderError(OrchestratorError):
    """Error returned by the provisioning API."""

    def __init__(self, message: str, code: Optional[str] = None, **kwargs):
        kwargs.setdefault('kind', ErrorKind.PROVIDER)
        super().__init__(message, **kwargs)
        self.code = code


class ValidationError(OrchestratorError):
    """Invalid request, such as an action on the wrong resource kind."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.VALIDATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ErrorHandler:
    """Converts provider exceptions into orchestration errors."""

    # Mapping of AWS error codes to error kinds and suggestions
    AWS_ERROR_MAPPING = {
        'InvalidClientTokenId': {
            'kind': ErrorKind.CREDENTIAL,
            'message': 'Credentials are invalid or expired',
            'suggestions': [
                'Verify credentials using: aws sts get-caller-identity',
                'Update credentials if they have expired'
            ]
        },
        'ExpiredToken': {
            'kind': ErrorKind.CREDENTIAL,
            'message': 'Session token has expired',
            'suggestions': [
                'Re-run the command to acquire fresh role credentials',
                'Check if MFA token needs to be refreshed'
            ]
        },
        'AccessDenied': {
            'kind': ErrorKind.PROVIDER,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to the deployment role',
                'Verify you are operating in the correct region'
            ]
        },
        'UnauthorizedOperation': {
            'kind': ErrorKind.PROVIDER,
            'message': 'Operation not authorized',
            'suggestions': [
                'Add the required IAM permission for this operation'
            ]
        },
        'InsufficientCapabilitiesException': {
            'kind': ErrorKind.VALIDATION,
            'message': 'Template requires additional capabilities',
            'suggestions': [
                'Templates that create IAM resources need CAPABILITY_NAMED_IAM'
            ]
        },
        'ValidationError': {
            'kind': ErrorKind.VALIDATION,
            'message': 'Invalid parameter or template',
            'suggestions': [
                'Review the template and the effective parameter set'
            ]
        },
        'InvalidInstanceID.NotFound': {
            'kind': ErrorKind.RESOURCE_UNAVAILABLE,
            'message': 'Instance not found',
            'suggestions': [
                'Run a deploy to refresh physical ids in state',
                'Check if the instance was terminated manually'
            ]
        },
        'IncorrectInstanceState': {
            'kind': ErrorKind.PROVIDER,
            'message': 'Instance is not in a state that allows this operation',
            'suggestions': [
                'Check the instance state with: stackwarden manage <resource> status'
            ]
        },
        'NoSuchHostedZone': {
            'kind': ErrorKind.RESOURCE_UNAVAILABLE,
            'message': 'Hosted zone not found',
            'suggestions': [
                'Verify the hosted zone id in the resource selector'
            ]
        },
        'Throttling': {
            'kind': ErrorKind.PROVIDER,
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Reduce the frequency of API calls'
            ]
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> OrchestratorError:
        """Handle an exception and convert to OrchestratorError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            OrchestratorError with kind and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, OrchestratorError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                message=f'Credential error: {error}',
                context=context,
                cause=error,
                suggestions=[
                    'Configure a profile for the environment or set role_arn',
                    'Verify credentials using: aws sts get-caller-identity'
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError, BotoCoreError)):
            return ProviderError(
                message=f'Network error: {error}',
                context=context,
                cause=error,
                suggestions=['Check your network connectivity', 'Retry the command']
            )

        return OrchestratorError(
            message=str(error),
            kind=ErrorKind.UNKNOWN,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> OrchestratorError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized OrchestratorError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.provider_operation = context.provider_operation or getattr(error, 'operation_name', None)

        error_info = self.AWS_ERROR_MAPPING.get(error_code)

        if error_info is None:
            return ProviderError(
                message=f"Provider error ({error_code}): {error_message}",
                code=error_code,
                context=context,
                cause=error,
                suggestions=[f'Request ID: {context.request_id}']
            )

        message = f"{error_info['message']}: {error_message}"
        if error_info['kind'] == ErrorKind.RESOURCE_UNAVAILABLE:
            return ResourceUnavailableError(
                message, context=context, cause=error, suggestions=error_info['suggestions']
            )
        if error_info['kind'] == ErrorKind.CREDENTIAL:
            return CredentialError(
                message, context=context, cause=error, suggestions=error_info['suggestions']
            )
        return ProviderError(
            message,
            code=error_code,
            kind=error_info['kind'],
            context=context,
            cause=error,
            suggestions=error_info['suggestions']
        )

    def log_error(self, error: OrchestratorError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
