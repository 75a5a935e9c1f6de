"""Settings file loading: the vm_shepherd YAML document."""

import logging
import os
from dataclasses import dataclass, field

import yaml

from vmshepherd.errors import ConfigurationError
from vmshepherd.redact import register_secret
from vmshepherd.retry import RetryPolicies

logger = logging.getLogger(__name__)

# Settings keys whose values are credentials
_SECRET_KEYS = {"aws_secret_key", "password", "api_key", "vm_password"}


@dataclass
class Settings:
    """Parsed settings: backend selector, environment and per-VM configs."""

    iaas_type: str
    env_config: dict = field(default_factory=dict)
    vm_configs: list[dict] = field(default_factory=list)
    retry_policies: RetryPolicies = field(default_factory=RetryPolicies)
    base_dir: str = "."

    @classmethod
    def from_dict(cls, d: dict, base_dir: str = ".") -> "Settings":
        if not isinstance(d, dict):
            raise ConfigurationError("Settings must be a YAML mapping")
        iaas_type = d.get("iaas_type")
        if not iaas_type:
            raise ConfigurationError("Missing required setting 'iaas_type'")
        section = d.get("vm_shepherd")
        if not isinstance(section, dict):
            raise ConfigurationError("Missing required setting 'vm_shepherd'")

        vm_configs = section.get("vm_configs")
        if vm_configs is None:
            raise ConfigurationError("Missing required setting 'vm_shepherd.vm_configs'")
        if not isinstance(vm_configs, list):
            raise ConfigurationError("'vm_shepherd.vm_configs' must be a list")

        _register_secrets(section)
        return cls(
            iaas_type=str(iaas_type),
            env_config=section.get("env_config") or {},
            vm_configs=vm_configs,
            retry_policies=RetryPolicies.from_dict(section.get("retry_policies")),
            base_dir=base_dir,
        )

    def resolve_path(self, path: str) -> str:
        """Resolve a path from the settings file relative to the file's directory."""
        path = os.path.expanduser(os.path.expandvars(path))
        if os.path.isabs(path):
            return path
        return os.path.join(self.base_dir, path)


def load_settings(settings_path: str) -> Settings:
    """Load and validate a settings YAML file."""
    try:
        with open(settings_path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Settings file '{settings_path}' not found") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing settings YAML '{settings_path}': {e}") from e

    settings = Settings.from_dict(data, base_dir=os.path.dirname(os.path.abspath(settings_path)))
    logger.debug(f"Loaded settings for {settings.iaas_type} with {len(settings.vm_configs)} VM(s)")
    return settings


def _register_secrets(value):
    """Walk the settings tree and register credential values for log redaction."""
    if isinstance(value, dict):
        for key, item in value.items():
            if key in _SECRET_KEYS and isinstance(item, str):
                register_secret(item)
            else:
                _register_secrets(item)
    elif isinstance(value, list):
        for item in value:
            _register_secrets(item)
