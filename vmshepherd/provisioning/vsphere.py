"""vSphere backend: OVA deploy through the template cache, folder and datastore cleanup."""

import logging
import os
import re

from pyVmomi import vim

from vmshepherd.errors import ConfigurationError, VmAlreadyRunningError
from vmshepherd.provisioning import ovf
from vmshepherd.provisioning.shell import host_answers
from vmshepherd.provisioning.template_cache import Placement, TemplateCache
from vmshepherd.provisioning.types import VsphereLocation, VsphereVmConfig
from vmshepherd.provisioning.vsphere_common import connect, find_vms, traverse, wait_for_task
from vmshepherd.retry import RetryPolicies, retry_until, transient_errors

logger = logging.getLogger(__name__)

TEMPLATE_PREFIX = "tpl"
VALID_FOLDER_REGEX = re.compile(r"^([\w-]{1,80}/)*[\w-]{1,80}/?$")
VALID_DISK_FOLDER_REGEX = re.compile(r"^[\w-]{1,80}$")
OVF_ENVIRONMENT_TRANSPORT = "com.vmware.guestInfo"


def validate_folder_name(folder_name):
    if not folder_name or not VALID_FOLDER_REGEX.match(folder_name):
        raise ConfigurationError(f"{folder_name!r} is not a valid folder name")


def validate_disk_folder_name(folder_name):
    if not folder_name or not VALID_DISK_FOLDER_REGEX.match(folder_name):
        raise ConfigurationError(f"{folder_name!r} is not a valid disk folder name")


def template_name_for(ova_path) -> str:
    """Stable template name for an image: ``tpl-<archive name without extension>``."""
    stem = os.path.splitext(os.path.basename(ova_path.strip()))[0]
    stem = re.sub(r"[^\w.-]", "-", stem)
    return f"{TEMPLATE_PREFIX}-{stem}"


class VsphereManager:
    """Deploys and removes VMs in one vCenter datacenter."""

    def __init__(
        self,
        host,
        username,
        password,
        datacenter_name,
        policies: RetryPolicies | None = None,
        service_instance=None,
        template_cache: TemplateCache | None = None,
    ):
        self.host = host
        self.username = username
        self.password = password
        self.datacenter_name = datacenter_name
        self.policies = policies or RetryPolicies()
        self._service_instance = service_instance
        self._template_cache = template_cache

    # ── Connection and lookups ─────────────────────────────────────

    @property
    def service_instance(self):
        if self._service_instance is None:
            self._service_instance = connect(self.host, self.username, self.password)
        return self._service_instance

    @property
    def content(self):
        return self.service_instance.RetrieveContent()

    @property
    def template_cache(self) -> TemplateCache:
        if self._template_cache is None:
            self._template_cache = TemplateCache(self.content, self.host, self.policies)
        return self._template_cache

    @property
    def datacenter(self):
        dc = self.content.searchIndex.FindByInventoryPath(self.datacenter_name)
        if not isinstance(dc, vim.Datacenter):
            raise ConfigurationError(f"ERROR finding datacenter {self.datacenter_name!r}")
        return dc

    def find_cluster(self, cluster_name):
        cluster = traverse(self.datacenter.hostFolder, cluster_name, vim.ComputeResource)
        if cluster is None:
            raise ConfigurationError(f"ERROR finding cluster {cluster_name!r}")
        return cluster

    def find_resource_pool(self, cluster, resource_pool_name=None):
        if not resource_pool_name:
            return cluster.resourcePool
        pool = next((rp for rp in cluster.resourcePool.resourcePool if rp.name == resource_pool_name), None)
        if pool is None:
            raise ConfigurationError(f"ERROR finding resource_pool {resource_pool_name!r}")
        return pool

    def find_datastore(self, datastore_name):
        datastore = traverse(self.datacenter.datastoreFolder, datastore_name, vim.Datastore)
        if datastore is None:
            raise ConfigurationError(f"ERROR finding datastore {datastore_name!r}")
        return datastore

    def find_network(self, network_name):
        network = traverse(self.datacenter.networkFolder, network_name, vim.Network)
        if network is None:
            raise ConfigurationError(f"ERROR finding network {network_name!r}")
        return network

    def resolve_placement(self, location: VsphereLocation) -> Placement:
        cluster = self.find_cluster(location.cluster)
        return Placement(
            cluster=cluster,
            resource_pool=self.find_resource_pool(cluster, location.resource_pool),
            folder=traverse(self.datacenter.vmFolder, location.folder, create=True),
            datastore=self.find_datastore(location.datastore),
            network=self.find_network(location.network),
        )

    # ── Deploy ─────────────────────────────────────────────────────

    def prepare_environment(self):
        logger.info("vSphere needs no environment preparation")

    def deploy(self, ova_path, vm_config: VsphereVmConfig, location: VsphereLocation):
        """Deploy an OVA as a linked clone of its cached template and power it on.

        Returns:
            The guest IP address reported once the VM is up.
        """
        validate_folder_name(location.folder)
        self.ensure_no_running_vm(vm_config)

        with ovf.extracted_archive(ova_path) as ova_dir:
            ovf_path = ovf.find_ovf(ova_dir)
            placement = self.resolve_placement(location)
            template = self.template_cache.get_or_upload(template_name_for(ova_path), ovf_path, placement)
            vm = self.template_cache.linked_clone(
                template,
                f"{template.name}-vm",
                placement,
                cpus=vm_config.cpus,
                memory_mb=vm_config.ram_mb,
            )
            self.reconfigure_vm(vm, vm_config, ovf_path)
        return self.power_on_vm(vm)

    def ensure_no_running_vm(self, vm_config: VsphereVmConfig):
        ip_port = f"{vm_config.ip} {vm_config.external_port}"
        logger.info(f"BEGIN checking for VM at {ip_port}")
        if host_answers(["nc", "-z", "-w", "1", vm_config.ip, str(vm_config.external_port)]):
            raise VmAlreadyRunningError(f"VM exists at {ip_port}")
        logger.info(f"END   checking for VM at {ip_port}")

    def reconfigure_vm(self, vm, vm_config: VsphereVmConfig, ovf_path):
        """Write the guest network identity into the VM's vApp properties."""
        spec = vapp_config_spec(ovf.property_keys(ovf_path), vapp_property_values(vm_config))
        logger.info(f"BEGIN reconfigure_vm_task vm={vm.name}")
        wait_for_task(vm.ReconfigVM_Task(spec=spec), f"reconfigure {vm.name}", self.policies.vsphere_task)
        logger.info(f"END   reconfigure_vm_task vm={vm.name}")

    def power_on_vm(self, vm):
        logger.info(f"BEGIN power_on_vm_task vm={vm.name}")
        wait_for_task(vm.PowerOnVM_Task(), f"power on {vm.name}", self.policies.vsphere_task)
        logger.info(f"END   power_on_vm_task vm={vm.name}")

        policy = self.policies.guest_ip
        ip = retry_until(policy.limit, policy.interval, lambda: vm.guest.ipAddress, f"IP address of {vm.name}")
        logger.info(f"VM {vm.name} is up at {ip}")
        return ip

    # ── Teardown ───────────────────────────────────────────────────

    def destroy(self, ip_address, resource_pool_name=None):
        """Power off and destroy every VM answering to *ip_address* (optionally in one pool)."""
        vms = self.content.searchIndex.FindAllByIp(ip=ip_address, vmSearch=True)
        if resource_pool_name:
            vms = [vm for vm in vms if vm.resourcePool.name == resource_pool_name]
        for vm in vms:
            self.power_off_vm(vm)
            self.destroy_vm(vm)

    def destroy_vm(self, vm):
        vm_name = vm.name
        logger.info(f"BEGIN vm.destroy_task vm={vm_name}")
        wait_for_task(vm.Destroy_Task(), f"destroy {vm_name}", self.policies.vsphere_task)
        logger.info(f"END   vm.destroy_task vm={vm_name}")

    def power_off_vm(self, vm):
        """Power off *vm*; a second attempt covers a stale InvalidPowerState. Templates are skipped."""
        for _ in range(2):
            if vm.runtime.powerState == "poweredOff":
                return
            try:
                logger.info(f"BEGIN vm.power_off_task vm={vm.name} power_state={vm.runtime.powerState}")
                wait_for_task(vm.PowerOffVM_Task(), f"power off {vm.name}", self.policies.vsphere_task)
                logger.info(f"END   vm.power_off_task vm={vm.name}")
                return
            except vim.fault.InvalidPowerState:
                logger.info(f"ERROR vm.power_off_task vm={vm.name}: InvalidPowerState")

    def clean_environment(
        self,
        datacenter_folders_to_clean=None,
        datastores=None,
        datastore_folders_to_clean=None,
        cluster_name=None,
        resource_pool_name=None,
    ):
        """Delete VM folders (and their VMs) and datastore folders."""
        if datacenter_folders_to_clean is None or datastores is None or datastore_folders_to_clean is None:
            logger.info("No vSphere folders configured for cleanup")
            return

        for folder_name in datacenter_folders_to_clean:
            validate_folder_name(folder_name)
            self.delete_folder_and_vms(folder_name, cluster_name, resource_pool_name)

        for folder_name in datastore_folders_to_clean:
            validate_disk_folder_name(folder_name)
            for datastore in datastores:
                self.delete_datastore_folder(datastore, folder_name)

    def delete_folder_and_vms(self, folder_name, cluster_name=None, resource_pool_name=None):
        attempt = 0

        def _delete():
            nonlocal attempt
            attempt += 1
            folder = traverse(self.datacenter.vmFolder, folder_name, vim.Folder)
            if folder is None:
                return True
            with transient_errors(_vim_fault_name):
                for vm in find_vms(folder):
                    self.power_off_vm(vm)
                    self.convert_template_to_vm(vm, cluster_name, resource_pool_name)
                logger.info(f"BEGIN folder.destroy_task folder={folder_name} attempt #{attempt}")
                wait_for_task(folder.Destroy_Task(), f"destroy folder {folder_name}", self.policies.vsphere_task)
                logger.info(f"END   folder.destroy_task folder={folder_name}")
            return traverse(self.datacenter.vmFolder, folder_name, vim.Folder) is None

        policy = self.policies.folder_delete
        retry_until(policy.limit, policy.interval, _delete, f"folder {folder_name} to be deleted")

    def convert_template_to_vm(self, vm, cluster_name, resource_pool_name):
        if not vm.config.template:
            return
        if not cluster_name:
            raise ConfigurationError(f"cluster_name is required to convert template {vm.name} back to a VM")
        pool = self.find_resource_pool(self.find_cluster(cluster_name), resource_pool_name)
        logger.info(f"Converting template {vm.name} to a VM")
        vm.MarkAsVirtualMachine(pool=pool)

    def delete_datastore_folder(self, datastore, folder_name):
        name = f"[{datastore}] {folder_name}"
        logger.info(f"BEGIN datastore_folder.destroy_task folder={name}")
        try:
            wait_for_task(
                self.content.fileManager.DeleteDatastoreFile_Task(name=name, datacenter=self.datacenter),
                f"delete {name}",
                self.policies.vsphere_task,
            )
        except vim.fault.FileNotFound:
            logger.info(f"Datastore folder {name} does not exist")
            return
        logger.info(f"END   datastore_folder.destroy_task folder={name}")


def vapp_property_values(vm_config: VsphereVmConfig) -> dict:
    return {
        "ip0": vm_config.ip,
        "netmask0": vm_config.netmask,
        "gateway": vm_config.gateway,
        "DNS": vm_config.dns,
        "ntp_servers": vm_config.ntp_servers,
        "admin_password": vm_config.vm_password,
        "public_ssh_key": vm_config.public_ssh_key,
        "custom_hostname": vm_config.custom_hostname,
    }


def vapp_config_spec(property_keys, values):
    """VM config spec editing vApp properties; keys follow the OVF ProductSection order."""
    properties = [
        vim.vApp.PropertySpec(
            operation="edit",
            info=vim.vApp.PropertyInfo(key=index, label=key, value=values.get(key)),
        )
        for index, key in enumerate(property_keys)
    ]
    return vim.vm.ConfigSpec(
        vAppConfig=vim.vApp.VmConfigSpec(
            ovfEnvironmentTransport=[OVF_ENVIRONMENT_TRANSPORT],
            property=properties,
        )
    )


def _vim_fault_name(exc):
    if isinstance(exc, vim.fault.VimFault):
        return type(exc).__name__
    return None
