"""Environment orchestration: one backend per IaaS type, driven from settings."""

import logging
import os
from abc import ABC, abstractmethod

from vmshepherd.errors import ConfigurationError, UnknownBackend
from vmshepherd.provisioning.aws import AwsManager
from vmshepherd.provisioning.openstack import OpenstackManager
from vmshepherd.provisioning.types import (
    AwsEnvConfig,
    AwsVmConfig,
    OpenstackCreds,
    OpenstackVmConfig,
    VappConfig,
    VcloudCreds,
    VcloudLocation,
    VsphereCleanup,
    VsphereCreds,
    VsphereLocation,
    VsphereVmConfig,
)
from vmshepherd.provisioning.vcloud import VcloudManager
from vmshepherd.provisioning.vsphere import VsphereManager
from vmshepherd.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_VM_PASSWORD = "tempest"


class Backend(ABC):
    """Common capability set every IaaS backend implements."""

    iaas_type: str = ""

    def __init__(self, settings: Settings, environ=None, manager=None):
        self.settings = settings
        self.env_config = settings.env_config
        self.environ = os.environ if environ is None else environ
        self.manager = manager if manager is not None else self.build_manager()

    @abstractmethod
    def build_manager(self):
        """Construct the provider manager from ``env_config``."""

    @abstractmethod
    def prepare_environment(self, template_path=None):
        pass

    @abstractmethod
    def deploy(self, path, vm_config: dict):
        pass

    @abstractmethod
    def destroy(self, vm_config: dict):
        pass

    @abstractmethod
    def clean_environment(self):
        pass


# ── Backends ──────────────────────────────────────────────────────


class AwsBackend(Backend):
    """CloudFormation stack plus EC2 instances."""

    iaas_type = "aws"

    def build_manager(self):
        return AwsManager(AwsEnvConfig.from_dict(self.env_config), self.settings.retry_policies)

    def prepare_environment(self, template_path=None):
        template_path = template_path or self.env_config.get("json_file")
        if not template_path:
            raise ConfigurationError("No stack template given and 'vm_shepherd.env_config.json_file' is not set")
        self.manager.prepare_environment(self.settings.resolve_path(template_path))

    def deploy(self, path, vm_config):
        return self.manager.deploy(path, AwsVmConfig.from_dict(vm_config))

    def destroy(self, vm_config):
        self.manager.destroy(AwsVmConfig.from_dict(vm_config))

    def clean_environment(self):
        self.manager.clean_environment()


class OpenstackBackend(Backend):
    """Glance image plus one Nova server per VM."""

    iaas_type = "openstack"

    def build_manager(self):
        return OpenstackManager(OpenstackCreds.from_dict(self.env_config.get("creds")), self.settings.retry_policies)

    def prepare_environment(self, template_path=None):
        self.manager.prepare_environment()

    def deploy(self, path, vm_config):
        return self.manager.deploy(path, OpenstackVmConfig.from_dict(vm_config))

    def destroy(self, vm_config):
        self.manager.destroy(OpenstackVmConfig.from_dict(vm_config))

    def clean_environment(self):
        self.manager.clean_environment()


class VsphereBackend(Backend):
    """OVA linked clones in a vCenter cluster."""

    iaas_type = "vsphere"

    def build_manager(self):
        creds = VsphereCreds.from_dict(self.env_config.get("vcenter_creds"))
        return VsphereManager(
            creds.host,
            creds.username,
            creds.password,
            creds.datacenter,
            self.settings.retry_policies,
        )

    @property
    def location(self) -> VsphereLocation:
        return VsphereLocation.from_dict(self.env_config.get("vsphere") or {})

    def prepare_environment(self, template_path=None):
        self.manager.prepare_environment()

    def deploy(self, path, vm_config):
        return self.manager.deploy(path, self.vm_options(vm_config), self.location)

    def destroy(self, vm_config):
        options = VsphereVmConfig.from_dict(vm_config.get("vm") or {})
        self.manager.destroy(options.ip, self.location.resource_pool)

    def clean_environment(self):
        cleanup = VsphereCleanup.from_dict(self.env_config.get("cleanup"))
        self.manager.clean_environment(
            datacenter_folders_to_clean=cleanup.datacenter_folders_to_clean,
            datastores=cleanup.datastores,
            datastore_folders_to_clean=cleanup.datastore_folders_to_clean,
            cluster_name=cleanup.cluster_name,
            resource_pool_name=cleanup.resource_pool_name,
        )

    def vm_options(self, vm_config) -> VsphereVmConfig:
        """VM options with the guest password and SSH key resolved from the environment."""
        options = VsphereVmConfig.from_dict(vm_config.get("vm") or {})
        options.vm_password = self._vm_password(options.vm_password)
        options.public_ssh_key = self._public_ssh_key(options.public_ssh_key)
        return options

    def _vm_password(self, configured):
        if self.environ.get("PROVISION_WITH_PASSWORD") == "false":
            return None
        return configured or self.environ.get("VSPHERE_VM_PASSWORD") or DEFAULT_VM_PASSWORD

    def _public_ssh_key(self, key_path):
        if self.environ.get("PROVISION_WITH_SSH_KEY") == "false" or not key_path:
            return None
        assets_home = self.environ.get("ASSETS_HOME")
        if assets_home and not os.path.isabs(key_path):
            key_path = os.path.join(assets_home, key_path)
        else:
            key_path = self.settings.resolve_path(key_path)
        try:
            with open(key_path) as f:
                return f.read().strip()
        except FileNotFoundError:
            raise ConfigurationError(f"Public SSH key file '{key_path}' not found") from None


class VcloudBackend(Backend):
    """vApps instantiated from a catalog template in a vCloud VDC."""

    iaas_type = "vcloud"

    def build_manager(self):
        return VcloudManager(
            VcloudCreds.from_dict(self.env_config.get("creds") or {}),
            VcloudLocation.from_dict(self.env_config.get("vdc")),
            self.settings.retry_policies,
        )

    def prepare_environment(self, template_path=None):
        self.manager.prepare_environment()

    def deploy(self, path, vm_config):
        return self.manager.deploy(path, _vapp_config(vm_config))

    def destroy(self, vm_config):
        self.manager.destroy([_vapp_config(vm_config).name])

    def clean_environment(self):
        self.manager.clean_environment([_vapp_config(c).name for c in self.settings.vm_configs])


def _vapp_config(vm_config) -> VappConfig:
    return VappConfig.from_dict(vm_config.get("vapp") or {})


BACKENDS: dict[str, type[Backend]] = {
    backend.iaas_type: backend for backend in (AwsBackend, OpenstackBackend, VsphereBackend, VcloudBackend)
}


# ── Orchestrator ──────────────────────────────────────────────────


class Shepherd:
    """Runs prepare, deploy, destroy and clean for the backend named in settings."""

    def __init__(self, settings: Settings, environ=None, backend: Backend | None = None):
        self.settings = settings
        if backend is None:
            backend_cls = BACKENDS.get(settings.iaas_type)
            if backend_cls is None:
                raise UnknownBackend(settings.iaas_type)
            backend = backend_cls(settings, environ)
        self.backend = backend

    def prepare_environment(self, template_path=None):
        logger.info(f"Preparing {self.settings.iaas_type} environment")
        self.backend.prepare_environment(template_path)

    def deploy(self, paths):
        """Deploy ``paths[i]`` with ``vm_configs[i]``, in order.

        Returns:
            The per-VM result of each backend deploy (instance id, server id, IP or None).
        """
        vm_configs = self.settings.vm_configs
        if len(paths) != len(vm_configs):
            raise ConfigurationError(
                f"Got {len(paths)} artifact path(s) for {len(vm_configs)} VM config(s); they must match"
            )
        results = []
        for index, (path, vm_config) in enumerate(zip(paths, vm_configs), start=1):
            logger.info(f"Deploying {path} ({index}/{len(vm_configs)})")
            results.append(self.backend.deploy(path, vm_config))
        return results

    def destroy(self):
        for index, vm_config in enumerate(self.settings.vm_configs, start=1):
            logger.info(f"Destroying VM {index}/{len(self.settings.vm_configs)}")
            self.backend.destroy(vm_config)

    def clean_environment(self):
        logger.info(f"Cleaning {self.settings.iaas_type} environment")
        self.backend.clean_environment()
