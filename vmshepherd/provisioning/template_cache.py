"""Upload an OVF once per (template name, cluster) and linked-clone from it."""

import logging
import os
import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass

import httpx
from pyVmomi import vim

from vmshepherd.errors import ConfigurationError
from vmshepherd.provisioning import ovf
from vmshepherd.provisioning.vsphere_common import wait_for_task
from vmshepherd.retry import PollResult, RetryPolicies, poll

logger = logging.getLogger(__name__)

DISK_MOVE_TYPE = "moveChildMostDiskBacking"
UPLOAD_TIMEOUT = 3600
LEASE_KEEPALIVE_INTERVAL = 30

# Upload locks shared by every TemplateCache in the process, keyed by
# (vCenter, template name, cluster name)
_locks: dict[tuple[str, str, str], threading.Lock] = {}
_locks_guard = threading.Lock()


@dataclass
class Placement:
    """Resolved vCenter objects a template and its clones live on."""

    cluster: object
    resource_pool: object
    folder: object
    datastore: object
    network: object


def lost_upload_race(fault) -> bool:
    """True when an upload fault means another caller is creating the same template."""
    if isinstance(fault, vim.fault.DuplicateName):
        return True
    return isinstance(fault, vim.fault.InvalidState) and not isinstance(fault, vim.fault.InvalidHostState)


def select_upload_host(hosts, datastore):
    """Pick a random host that is connected, sees *datastore* and is not in maintenance."""
    candidates = [
        host
        for host in hosts
        if host.runtime.connectionState == "connected"
        and datastore in host.datastore
        and not host.runtime.inMaintenanceMode
    ]
    if not candidates:
        raise ConfigurationError("No host in the cluster available to upload OVF to")
    return random.choice(candidates)


@contextmanager
def lease_keepalive(lease, percent, interval=LEASE_KEEPALIVE_INTERVAL):
    """Report *percent()* on *lease* every *interval* seconds until the block exits.

    vCenter drops an import lease that sees no progress for a few minutes,
    and a single disk PUT can take much longer than that.
    """
    stop = threading.Event()

    def _run():
        while not stop.wait(interval):
            try:
                lease.HttpNfcLeaseProgress(percent=percent())
            except vim.fault.VimFault as e:
                logger.warning(f"Import lease keep-alive stopped: {e}")
                return

    thread = threading.Thread(target=_run, name="lease-keepalive", daemon=True)
    thread.start()
    try:
        yield
    finally:
        stop.set()
        thread.join()


class TemplateCache:
    """Template store keyed by (template_name, cluster).

    Only one caller uploads a given key. Callers in this process queue on
    a per-key lock shared by all caches; callers in other processes find
    the template already in the folder, or lose the create race with a
    DuplicateName fault, and then wait for the winner to mark it as a
    template. A template whose preparation fails is destroyed so the key
    never stays blocked on a VM that will not become a template.
    """

    def __init__(self, content, upload_host, policies: RetryPolicies | None = None):
        self.content = content
        self.upload_host = upload_host
        self.policies = policies or RetryPolicies()
        self.keepalive_interval = LEASE_KEEPALIVE_INTERVAL

    @staticmethod
    def vm_name(template_name, cluster_name) -> str:
        return f"{template_name}-{cluster_name}"

    def _lock_for(self, template_name, cluster_name) -> threading.Lock:
        with _locks_guard:
            return _locks.setdefault((self.upload_host, template_name, cluster_name), threading.Lock())

    def get_or_upload(self, template_name, ovf_path, placement: Placement):
        """Return the template VM for (template_name, cluster), uploading it at most once."""
        cluster_name = placement.cluster.name
        vm_name = self.vm_name(template_name, cluster_name)
        with self._lock_for(template_name, cluster_name):
            if self.content.searchIndex.FindChild(placement.folder, vm_name) is not None:
                logger.info(f"Template {vm_name} already exists, waiting for it to be ready")
                return self.wait_for_template_ready(placement.folder, vm_name)

            try:
                vm = self.upload(vm_name, ovf_path, placement)
            except vim.fault.VimFault as fault:
                if not lost_upload_race(fault):
                    raise
                logger.info(f"Template {vm_name} is being uploaded elsewhere ({type(fault).__name__}), waiting")
                return self.wait_for_template_ready(placement.folder, vm_name)

            try:
                self.add_delta_disk_layer(vm)
                vm.MarkAsTemplate()
            except BaseException:
                logger.error(f"Preparing template {vm_name} failed, destroying the unfinished VM")
                self._discard(vm, vm_name)
                raise
            logger.info(f"Marked {vm_name} as template")
            return vm

    def _discard(self, vm, vm_name):
        """Destroy a half-prepared template so the next caller uploads afresh."""
        try:
            wait_for_task(vm.Destroy_Task(), f"destroy of unfinished template {vm_name}", self.policies.vsphere_task)
        except vim.fault.VimFault as e:
            logger.error(f"Could not destroy unfinished template {vm_name}, delete it by hand: {e}")

    def wait_for_template_ready(self, folder, vm_name):
        """Wait until *vm_name* is in *folder*, placed on a host, powered off and a template."""

        def _check():
            vm = self.content.searchIndex.FindChild(folder, vm_name)
            if vm is None:
                return PollResult.pending("not in inventory yet")
            runtime = vm.runtime
            ready = runtime is not None and runtime.host is not None and runtime.powerState == "poweredOff"
            if ready and vm.config is not None and vm.config.template:
                return PollResult.done(vm)
            return PollResult.pending("not marked as template yet")

        vm = poll(self.policies.template_ready, _check, f"template {vm_name} to be ready")
        logger.info(f"Template {vm_name} is ready to be cloned")
        return vm

    # ── Upload ─────────────────────────────────────────────────────

    def upload(self, vm_name, ovf_path, placement: Placement):
        """Import the OVF as a VM named *vm_name* and return it."""
        network_mappings = [
            vim.OvfManager.NetworkMapping(name=name, network=placement.network) for name in ovf.network_names(ovf_path)
        ]
        host = select_upload_host(placement.cluster.host, placement.datastore)
        logger.info(f"BEGIN upload ovf={ovf_path} vm={vm_name} host={host.name}")

        with open(ovf_path) as f:
            descriptor = f.read()
        params = vim.OvfManager.CreateImportSpecParams(
            entityName=vm_name,
            networkMapping=network_mappings,
            hostSystem=host,
        )
        result = self.content.ovfManager.CreateImportSpec(
            ovfDescriptor=descriptor,
            resourcePool=placement.resource_pool,
            datastore=placement.datastore,
            cisp=params,
        )
        if result.error:
            raise ConfigurationError(f"OVF import rejected: {'; '.join(e.msg for e in result.error)}")

        lease = placement.resource_pool.ImportVApp(spec=result.importSpec, folder=placement.folder, host=host)
        self._wait_lease_ready(lease, vm_name)
        try:
            self._upload_disks(lease, result.fileItem, os.path.dirname(ovf_path))
        except Exception:
            lease.HttpNfcLeaseAbort()
            raise
        lease.HttpNfcLeaseComplete()
        logger.info(f"END   upload vm={vm_name}")
        return lease.info.entity

    def _wait_lease_ready(self, lease, vm_name):
        def _check():
            if lease.state == "ready":
                return PollResult.done()
            if lease.state == "error":
                raise lease.error
            return PollResult.pending(lease.state)

        poll(self.policies.vsphere_task, _check, f"import lease for {vm_name}")

    def _upload_disks(self, lease, file_items, ovf_dir):
        items = {item.deviceId: item for item in file_items or []}
        device_urls = [d for d in lease.info.deviceUrl if d.importKey in items]
        completed = 0

        def _percent():
            return int(completed * 100 / len(device_urls)) if device_urls else 100

        with lease_keepalive(lease, _percent, self.keepalive_interval), httpx.Client(
            verify=False, timeout=UPLOAD_TIMEOUT
        ) as client:
            for index, device_url in enumerate(device_urls, start=1):
                item = items[device_url.importKey]
                path = os.path.join(ovf_dir, item.path)
                url = device_url.url.replace("*", self.upload_host)
                logger.info(f"Uploading disk {item.path} ({index}/{len(device_urls)})")
                with open(path, "rb") as f:
                    response = client.put(
                        url,
                        content=f,
                        headers={
                            "Content-Type": "application/x-vnd.vmware-streamVmdk",
                            "Content-Length": str(os.path.getsize(path)),
                        },
                    )
                response.raise_for_status()
                completed = index
                lease.HttpNfcLeaseProgress(percent=_percent())

    # ── Preparing and cloning ──────────────────────────────────────

    def add_delta_disk_layer(self, vm):
        """Put a child delta disk on top of every disk so linked clones share the base."""
        changes = []
        for device in vm.config.hardware.device:
            if not isinstance(device, vim.vm.device.VirtualDisk):
                continue
            changes.extend(delta_disk_changes(device))
        if changes:
            wait_for_task(
                vm.ReconfigVM_Task(spec=vim.vm.ConfigSpec(deviceChange=changes)),
                f"delta disk layer on {vm.name}",
                self.policies.vsphere_task,
            )

    def linked_clone(self, template, vm_name, placement: Placement, cpus=2, memory_mb=4096):
        """Clone *template* into *vm_name* with child disks backed by the template's."""
        logger.info(f"BEGIN clone template={template.name} vm={vm_name}")
        spec = clone_spec(placement, cpus, memory_mb)
        try:
            vm = wait_for_task(
                template.CloneVM_Task(folder=placement.folder, name=vm_name, spec=spec),
                f"clone of {template.name}",
                self.policies.vsphere_task,
            )
        except vim.fault.DuplicateName:
            raise ConfigurationError(
                f"A VM named '{vm_name}' already exists in the target folder; destroy it before deploying again"
            ) from None
        logger.info(f"END   clone template={template.name} vm={vm_name}")
        return vm


def delta_disk_changes(disk) -> list:
    """Device changes replacing *disk* by a delta disk whose parent is its current backing."""
    backing = disk.backing
    child_backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
        diskMode=backing.diskMode,
        fileName=f"[{backing.datastore.name}]",
        parent=backing,
    )
    child = vim.vm.device.VirtualDisk(
        key=disk.key,
        controllerKey=disk.controllerKey,
        unitNumber=disk.unitNumber,
        capacityInKB=disk.capacityInKB,
        backing=child_backing,
    )
    return [
        vim.vm.device.VirtualDeviceSpec(operation="remove", device=disk),
        vim.vm.device.VirtualDeviceSpec(operation="add", fileOperation="create", device=child),
    ]


def clone_spec(placement: Placement, cpus, memory_mb):
    return vim.vm.CloneSpec(
        location=vim.vm.RelocateSpec(
            pool=placement.resource_pool,
            datastore=placement.datastore,
            diskMoveType=DISK_MOVE_TYPE,
        ),
        powerOn=False,
        template=False,
        config=vim.vm.ConfigSpec(numCPUs=cpus, memoryMB=memory_mb),
    )
