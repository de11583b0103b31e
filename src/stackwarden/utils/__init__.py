"""Utility modules for logging, errors, retries, polling and AWS clients."""

from stackwarden.utils.aws_client import AWSClientManager
from stackwarden.utils.retry import RetryStrategy
from stackwarden.utils.polling import CancellationToken, Poller
from stackwarden.utils.errors import (
    ErrorKind,
    ErrorSeverity,
    ErrorContext,
    Diagnostic,
    OrchestratorError,
    ConfigurationError,
    CredentialError,
    StateError,
    DependencyError,
    CyclicDependencyError,
    MissingParameterError,
    ApplyFailed,
    ResourceUnavailableError,
    OperationTimeout,
    OperationCancelled,
    MigrationFailed,
    ProviderError,
    ValidationError,
    ErrorHandler,
    error_handler
)
from stackwarden.utils.logging import LogContext, get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',

    # Retry and polling
    'RetryStrategy',
    'CancellationToken',
    'Poller',

    # Errors
    'ErrorKind',
    'ErrorSeverity',
    'ErrorContext',
    'Diagnostic',
    'OrchestratorError',
    'ConfigurationError',
    'CredentialError',
    'StateError',
    'DependencyError',
    'CyclicDependencyError',
    'MissingParameterError',
    'ApplyFailed',
    'ResourceUnavailableError',
    'OperationTimeout',
    'OperationCancelled',
    'MigrationFailed',
    'ProviderError',
    'ValidationError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'LogContext',
    'get_logger',
    'setup_logging',
]
