"""YAML configuration parser for stackwarden."""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from stackwarden.config.models import (
    DriftPolicyConfig,
    EnvironmentConfig,
    PollingConfig,
    ProjectConfig,
    StackConfig,
)
from stackwarden.state.models import Resource, Stack
from stackwarden.utils.errors import ConfigurationError

DEFAULT_CONFIG_FILE = "stackwarden.yaml"


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)

    def to_user_message(self) -> str:
        return str(self)


def _collect(errors: List[Dict], prefix: List, exc: ValidationError) -> None:
    for error in exc.errors():
        errors.append({"loc": prefix + list(error["loc"]), "msg": error["msg"]})


class Config:
    """Configuration manager for stackwarden."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to stackwarden.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.environments: Dict[str, EnvironmentConfig] = {}
        self.polling: PollingConfig = PollingConfig()
        self.drift_policy: DriftPolicyConfig = DriftPolicyConfig()
        self.stacks: Dict[str, StackConfig] = {}

    @classmethod
    def from_dict(cls, data: Dict, config_path: str = DEFAULT_CONFIG_FILE) -> "Config":
        """Build a validated configuration from already-parsed data."""
        config = cls(config_path)
        config.data = data or {}
        config._validate_and_parse()
        return config

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid or missing
        """
        if not self.config_path.exists():
            raise ConfigValidationError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration root must be a mapping")

        self._validate_and_parse()
        return self

    def _validate_and_parse(self) -> None:
        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        self.environments = {
            name: EnvironmentConfig(**{"name": name, **(env or {})})
            for name, env in (self.data.get("environments") or {}).items()
        }
        self.polling = PollingConfig(**(self.data.get("polling") or {}))
        self.drift_policy = DriftPolicyConfig(**(self.data.get("drift_policy") or {}))
        self.stacks = {
            name: StackConfig(**{"name": name, **(stack or {})})
            for name, stack in self.data["stacks"].items()
        }

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[Dict] = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        elif not isinstance(self.data["project"], dict):
            errors.append({"loc": ["project"], "msg": "Project must be a dictionary"})
        else:
            try:
                ProjectConfig(**self.data["project"])
            except ValidationError as e:
                _collect(errors, ["project"], e)

        environments = self.data.get("environments") or {}
        if not isinstance(environments, dict):
            errors.append({"loc": ["environments"], "msg": "Environments must be a dictionary"})
        else:
            for env_name, env_data in environments.items():
                if env_data is not None and not isinstance(env_data, dict):
                    errors.append({"loc": ["environments", env_name], "msg": "Environment must be a dictionary"})
                    continue
                try:
                    EnvironmentConfig(**{"name": env_name, **(env_data or {})})
                except ValidationError as e:
                    _collect(errors, ["environments", env_name], e)

        for section, model in (("polling", PollingConfig), ("drift_policy", DriftPolicyConfig)):
            if self.data.get(section) is None:
                continue
            if not isinstance(self.data[section], dict):
                errors.append({"loc": [section], "msg": f"{section} must be a dictionary"})
                continue
            try:
                model(**self.data[section])
            except ValidationError as e:
                _collect(errors, [section], e)

        stacks = self.data.get("stacks")
        if not stacks:
            errors.append({"loc": ["stacks"], "msg": "At least one stack must be defined"})
        elif not isinstance(stacks, dict):
            errors.append({"loc": ["stacks"], "msg": "Stacks must be a dictionary"})
        else:
            parsed = {}
            for stack_name, stack_data in stacks.items():
                if stack_data is not None and not isinstance(stack_data, dict):
                    errors.append({"loc": ["stacks", stack_name], "msg": "Stack must be a dictionary"})
                    continue
                try:
                    parsed[stack_name] = StackConfig(**{"name": stack_name, **(stack_data or {})})
                except ValidationError as e:
                    _collect(errors, ["stacks", stack_name], e)
            errors.extend(self._validate_references(parsed, set(stacks)))

        return errors

    @staticmethod
    def _validate_references(parsed: Dict[str, StackConfig], declared: set) -> List[Dict]:
        """Check depends_on and from_output point at declared stacks."""
        errors = []
        for name, stack in parsed.items():
            for dependency in stack.depends_on:
                if dependency not in declared:
                    errors.append({
                        "loc": ["stacks", name, "depends_on"],
                        "msg": f"Unknown stack '{dependency}'",
                    })
            for key, declaration in stack.parameters.items():
                source = declaration.source_stack
                if source is None:
                    continue
                if source not in declared:
                    errors.append({
                        "loc": ["stacks", name, "parameters", key, "from_output"],
                        "msg": f"Unknown stack '{source}'",
                    })
                elif source not in stack.depends_on:
                    errors.append({
                        "loc": ["stacks", name, "parameters", key, "from_output"],
                        "msg": f"Stack '{source}' must be listed in depends_on",
                    })
        return errors

    def get_environment(self, env_name: str) -> EnvironmentConfig:
        """Get environment configuration, falling back to project defaults.

        Raises:
            ConfigValidationError: If environments are declared and this one is not
        """
        if env_name in self.environments:
            env = self.environments[env_name]
            if env.region is None and self.project is not None:
                env = env.model_copy(update={"region": self.project.region})
            return env

        if self.environments:
            available = ", ".join(sorted(self.environments))
            raise ConfigValidationError(
                f"Environment '{env_name}' not found. Available environments: {available}"
            )

        region = self.project.region if self.project else None
        return EnvironmentConfig(name=env_name, region=region)

    def stack_definitions(self) -> Dict[str, Stack]:
        """Build declared Stack objects; template paths resolve against the config file."""
        base = self.config_path.parent
        definitions = {}
        for name, stack in self.stacks.items():
            template = Path(stack.template)
            if not template.is_absolute():
                template = base / template
            definitions[name] = Stack(
                name=name,
                template=str(template),
                parameters={k: v.model_copy() for k, v in stack.parameters.items()},
                dependencies=list(stack.depends_on),
                resources={
                    r.logical_id: Resource(
                        logical_id=r.logical_id,
                        kind=r.kind,
                        selector=dict(r.selector),
                        declared_config=dict(r.config),
                    )
                    for r in stack.resources
                },
            )
        return definitions

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return {
            "project": self.project.model_dump() if self.project else {},
            "environments": {name: env.model_dump() for name, env in self.environments.items()},
            "polling": self.polling.model_dump(),
            "drift_policy": self.drift_policy.model_dump(mode="json"),
            "stacks": {name: stack.model_dump(mode="json") for name, stack in self.stacks.items()},
        }
