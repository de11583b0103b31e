"""Provisioning API abstraction and its CloudFormation adapter."""

from .base import (
    ChangePreview,
    ChangeType,
    InstanceState,
    ProviderStackStatus,
    ProvisioningAPI,
    ResourceChange,
    StackDescription,
)
from .cloudformation import CloudFormationProvisioningAPI

__all__ = [
    'ChangePreview',
    'ChangeType',
    'InstanceState',
    'ProviderStackStatus',
    'ProvisioningAPI',
    'ResourceChange',
    'StackDescription',
    'CloudFormationProvisioningAPI',
]
