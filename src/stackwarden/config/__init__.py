"""Configuration management for stackwarden."""

from .models import (
    DriftPolicyConfig,
    DriftRuleConfig,
    EnvironmentConfig,
    PollingConfig,
    ProjectConfig,
    ResourceConfig,
    StackConfig,
)
from .parser import Config, ConfigValidationError

__all__ = [
    "DriftPolicyConfig",
    "DriftRuleConfig",
    "EnvironmentConfig",
    "PollingConfig",
    "ProjectConfig",
    "ResourceConfig",
    "StackConfig",
    "Config",
    "ConfigValidationError",
]
