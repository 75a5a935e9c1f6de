"""vCloud Director backend: vApp template upload, vApp deploy and teardown."""

import logging

from vmshepherd.errors import ConfigurationError, ObjectNotFoundError, VmAlreadyRunningError
from vmshepherd.provisioning import ovf
from vmshepherd.provisioning.shell import host_answers
from vmshepherd.provisioning.types import VappConfig, VcloudCreds, VcloudLocation
from vmshepherd.provisioning.vcloud_client import VcloudClient
from vmshepherd.retry import RetryPolicies

logger = logging.getLogger(__name__)

VAPP_NETWORK_NAME = "Network 1"
DEFAULT_ADMIN_PASSWORD = "tempest"


class VcloudManager:
    """Deploys vApps into one VDC and catalog of a vCloud organization."""

    def __init__(
        self,
        login_info: VcloudCreds,
        location: VcloudLocation,
        policies: RetryPolicies | None = None,
        client: VcloudClient | None = None,
    ):
        for key, label in (("vdc", "VDC"), ("catalog", "Catalog"), ("network", "Network")):
            if not getattr(location, key):
                raise ConfigurationError(f"{label} must be set")
        self.login_info = login_info
        self.location = location
        self.policies = policies or RetryPolicies()
        self._client = client
        self._vdc = None

    @property
    def client(self) -> VcloudClient:
        if self._client is None:
            self._client = VcloudClient(
                self.login_info.url,
                self.login_info.organization,
                self.login_info.user,
                self.login_info.password,
                self.policies,
            )
            self._client.login()
        return self._client

    @property
    def vdc(self):
        if self._vdc is None:
            self._vdc = self.client.find_vdc(self.location.vdc)
        return self._vdc

    # ── Deploy ─────────────────────────────────────────────────────

    def prepare_environment(self):
        logger.info("vCloud needs no environment preparation")

    def deploy(self, vapp_template_tar_path, vapp_config: VappConfig):
        """Upload the vApp template archive, instantiate it and power the vApp on."""
        self.check_vapp_status(vapp_config)
        with ovf.extracted_archive(vapp_template_tar_path) as ovf_dir:
            vapp = self.deploy_vapp(ovf_dir, vapp_config)
        self.reconfigure_vm(vapp, vapp_config)
        logger.info(f"BEGIN power on vapp={vapp_config.name}")
        self.client.power_on(vapp)
        logger.info(f"END   power on vapp={vapp_config.name}")

    def check_vapp_status(self, vapp_config: VappConfig):
        logger.info(f"BEGIN checking for VM at {vapp_config.ip}")
        if host_answers(["ping", "-c", "5", vapp_config.ip]):
            raise VmAlreadyRunningError(f"VM exists at {vapp_config.ip}")
        logger.info(f"END   checking for VM at {vapp_config.ip}")

    def deploy_vapp(self, ovf_dir, vapp_config: VappConfig):
        """Recreate the catalog, upload the template into it and instantiate the vApp."""
        catalog = self.location.catalog
        if self.client.catalog_exists(catalog):
            logger.info(f"Deleting existing catalog {catalog}")
            self.client.delete_catalog(catalog)
        self.client.create_catalog(catalog)

        logger.info(f"BEGIN upload vapp template={vapp_config.name} catalog={catalog}")
        template = self.client.upload_vapp_template(self.vdc, catalog, vapp_config.name, ovf_dir)
        logger.info(f"END   upload vapp template={vapp_config.name}")

        logger.info(f"BEGIN instantiate vapp={vapp_config.name} network={self.location.network}")
        vapp = self.client.instantiate_vapp_template(
            self.vdc,
            template,
            vapp_config.name,
            self.location.network,
            VAPP_NETWORK_NAME,
        )
        logger.info(f"END   instantiate vapp={vapp_config.name}")
        return vapp

    def reconfigure_vm(self, vapp, vapp_config: VappConfig):
        vm = self.client.find_vm(vapp, vapp_config.name)
        self.client.set_product_section_properties(vm, build_properties(vapp_config))
        return vm

    # ── Teardown ───────────────────────────────────────────────────

    def destroy(self, vapp_names):
        """Power off and delete each vApp, then delete the catalog."""
        for vapp_name in vapp_names:
            try:
                vapp = self.client.find_vapp(self.vdc, vapp_name)
            except ObjectNotFoundError as e:
                logger.debug(f"Could not delete vapp '{vapp_name}': {e}")
                continue
            logger.info(f"Deleting vapp {vapp_name}")
            self.client.power_off(vapp)
            self.client.delete(vapp)
        self.delete_catalog()

    def clean_environment(self, vapp_names):
        """Detach and delete independent disks of every VM in each vApp, then destroy."""
        for vapp_name in vapp_names:
            try:
                vapp = self.client.find_vapp(self.vdc, vapp_name)
            except ObjectNotFoundError as e:
                logger.debug(f"Could not clean vapp '{vapp_name}': {e}")
                continue
            for vm in self.client.vms(vapp):
                for disk in self.client.independent_disks(self.vdc, vm):
                    logger.info(f"Detaching and deleting disk {disk.get('name')} from {vm.get('name')}")
                    self.client.detach_disk(vm, disk)
                    self.client.delete(disk)
        self.destroy(vapp_names)

    def delete_catalog(self):
        if self.client.catalog_exists(self.location.catalog):
            logger.info(f"Deleting catalog {self.location.catalog}")
            self.client.delete_catalog(self.location.catalog)


# ── Product section ───────────────────────────────────────────────


def _property(key, value, label, description, password=False) -> dict:
    return {
        "type": "string",
        "key": key,
        "value": value,
        "password": "true" if password else "false",
        "userConfigurable": "true",
        "Label": label,
        "Description": description,
    }


def build_properties(vapp_config: VappConfig) -> list[dict]:
    """OVF product section properties carrying the guest network identity."""
    return [
        _property(
            "gateway",
            vapp_config.gateway,
            "Default Gateway",
            "The default gateway address for the VM network. Leave blank if DHCP is desired.",
        ),
        _property(
            "DNS",
            vapp_config.dns,
            "DNS",
            "The domain name servers for the VM (comma separated). Leave blank if DHCP is desired.",
        ),
        _property("ntp_servers", vapp_config.ntp, "NTP Servers", "Comma-delimited list of NTP servers"),
        _property(
            "admin_password",
            DEFAULT_ADMIN_PASSWORD,
            "Admin Password",
            'This password is used to SSH into the VM. The username is "tempest".',
            password=True,
        ),
        _property("ip0", vapp_config.ip, "IP Address", "The IP address for the VM. Leave blank if DHCP is desired."),
        _property(
            "netmask0",
            vapp_config.netmask,
            "Netmask",
            "The netmask for the VM network. Leave blank if DHCP is desired.",
        ),
    ]
