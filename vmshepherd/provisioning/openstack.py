"""OpenStack backend: qcow2 image upload, server boot and floating IP assignment."""

import logging
import os

import openstack

from vmshepherd.errors import ConfigurationError
from vmshepherd.provisioning.types import OpenstackCreds, OpenstackVmConfig
from vmshepherd.retry import PollResult, RetryPolicies, poll

logger = logging.getLogger(__name__)


class OpenstackManager:
    """Deploys one server per VM config into an OpenStack project."""

    def __init__(self, creds: OpenstackCreds, policies: RetryPolicies | None = None, connection=None):
        self.creds = creds
        self.policies = policies or RetryPolicies()
        self._conn = connection

    @property
    def conn(self):
        if self._conn is None:
            logger.debug(f"Connecting to OpenStack {self.creds.auth_url} as {self.creds.username}")
            self._conn = openstack.connect(
                auth_url=self.creds.auth_url,
                username=self.creds.username,
                password=self.creds.password,
                project_name=self.creds.project_name,
                region_name=self.creds.region,
                user_domain_name=self.creds.user_domain_name,
                project_domain_name=self.creds.project_domain_name,
            )
        return self._conn

    # ── Environment ────────────────────────────────────────────────

    def prepare_environment(self):
        logger.info("OpenStack needs no environment preparation")

    def clean_environment(self):
        logger.info("OpenStack environment cleanup is not supported, nothing to do")

    # ── Deploy ─────────────────────────────────────────────────────

    def deploy(self, qcow2_file_path, vm_config: OpenstackVmConfig):
        """Upload the image, boot a server from it and attach the configured floating IP.

        Returns:
            The server id.
        """
        logger.info(f"Uploading the image {qcow2_file_path} ({os.path.getsize(qcow2_file_path)} bytes)")
        image = self.conn.image.create_image(
            name=vm_config.name,
            filename=qcow2_file_path,
            disk_format="qcow2",
            container_format="bare",
        )
        logger.info("Finished uploading the image")

        flavor = self.find_flavor(vm_config.min_disk_size)
        network = self.conn.network.find_network(vm_config.network_name)
        if network is None:
            raise ConfigurationError(f"Network {vm_config.network_name!r} not found")

        logger.info(f"Launching instance {vm_config.name} (flavor={flavor.name})")
        server = self.conn.compute.create_server(
            name=vm_config.name,
            flavor_id=flavor.id,
            image_id=image.id,
            key_name=vm_config.key_name,
            security_groups=[{"name": name} for name in vm_config.security_group_names],
            networks=[{"uuid": network.id, "fixed_ip": vm_config.private_ip}],
        )
        self.wait_for_active(server.id)
        logger.info("Finished launching an instance")

        logger.info(f"Assigning public IP {vm_config.public_ip} to the instance")
        address = self.find_free_floating_ip(vm_config.public_ip)
        self.conn.compute.add_floating_ip_to_server(server, address.floating_ip_address)
        logger.info("Finished assigning a public IP to the instance")
        return server.id

    def find_flavor(self, min_disk_size):
        for flavor in self.conn.compute.flavors(details=True):
            if flavor.disk >= min_disk_size:
                return flavor
        raise ConfigurationError(f"No flavor with at least {min_disk_size} GB of disk")

    def find_free_floating_ip(self, public_ip):
        for address in self.conn.network.ips(floating_ip_address=public_ip):
            if address.port_id is None:
                return address
        raise ConfigurationError(f"Floating IP {public_ip} is not available")

    def wait_for_active(self, server_id):
        def _check():
            server = self.conn.compute.get_server(server_id)
            if server.status == "ACTIVE":
                return PollResult.done(server)
            if server.status == "ERROR":
                return PollResult.failed(f"server {server_id} went to ERROR: {server.fault}")
            return PollResult.pending(server.status)

        return poll(self.policies.server_active, _check, f"server {server_id} to be ACTIVE")

    # ── Destroy ────────────────────────────────────────────────────

    def destroy(self, vm_config: OpenstackVmConfig):
        """Delete the server holding the configured floating IP, then its image."""
        logger.info(f"Destroying instances at {vm_config.public_ip}")
        server = self.find_server_by_ip(vm_config.public_ip)
        if server is None:
            logger.info(f"No instance holds {vm_config.public_ip}")
            return

        image_id = (server.image or {}).get("id")
        logger.info(f"Found running instance {server.id} with image {image_id}")
        self.conn.compute.delete_server(server)
        logger.info(f"Instance {server.id} destroyed")
        if image_id:
            self.conn.image.delete_image(image_id, ignore_missing=True)
            logger.info(f"Image {image_id} destroyed")

    def find_server_by_ip(self, public_ip):
        address = next(iter(self.conn.network.ips(floating_ip_address=public_ip)), None)
        if address is None or address.port_id is None:
            return None
        port = self.conn.network.get_port(address.port_id)
        return self.conn.compute.find_server(port.device_id, ignore_missing=True)
