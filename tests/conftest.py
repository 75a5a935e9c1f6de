"""Shared pytest fixtures for all test modules."""

import tarfile
import time

import pytest
import yaml
from botocore.exceptions import ClientError

import vmshepherd.redact as redact_module


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Replace time.sleep with a recorder; polling tests run instantly."""
    recorded = []
    monkeypatch.setattr(time, "sleep", lambda seconds: recorded.append(seconds))
    return recorded


@pytest.fixture(autouse=True)
def _reset_redaction():
    """Forget secrets registered by settings loaded in a previous test."""
    yield
    redact_module._registered.clear()
    redact_module._patterns = None


@pytest.fixture
def client_error():
    """Return a factory for botocore ClientErrors with a given error code."""

    def _make(code, message="", operation="Operation"):
        return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)

    return _make


@pytest.fixture
def make_settings_file(tmp_path):
    """Return a factory that writes a settings YAML and returns its path."""

    def _make(iaas_type, env_config=None, vm_configs=None, retry_policies=None):
        section = {"env_config": env_config or {}, "vm_configs": vm_configs or []}
        if retry_policies is not None:
            section["retry_policies"] = retry_policies
        path = tmp_path / "settings.yml"
        path.write_text(yaml.dump({"iaas_type": iaas_type, "vm_shepherd": section}))
        return str(path)

    return _make


# ── Sample configurations ───────────────────────────────────────────


@pytest.fixture
def aws_env_config():
    return {
        "stack_name": "pcf-stack",
        "aws_access_key": "AKIAEXAMPLE",
        "aws_secret_key": "aws-secret-key-value",
        "region": "us-west-2",
        "json_file": "cloudformation.json",
        "parameters": {"NATKeyPair": "nat-key"},
        "outputs": {
            "security_group": "sg-123",
            "public_subnet_id": "subnet-public",
            "private_subnet_id": "subnet-private",
            "s3_bucket_names": ["bucket-a"],
            "ssh_key_name": "ops-key",
        },
        "elbs": [
            {
                "name": "web-elb",
                "port_mappings": [[80, 8080], [443, 8443]],
                "stack_output_keys": {"vpc_id": "vpc", "subnet_id": "PublicSubnet"},
                "health_check": {"ping_target": "TCP:8080"},
            }
        ],
    }


@pytest.fixture
def vsphere_env_config():
    return {
        "vcenter_creds": {
            "ip": "vcenter.example.com",
            "username": "admin",
            "password": "vcenter-password",
            "datacenter": "dc1",
        },
        "vsphere": {
            "cluster": "cluster1",
            "datastore": "ds1",
            "network": "VM Network",
            "folder": "shepherd/vms",
            "resource_pool": "pool1",
        },
        "cleanup": {
            "datacenter_folders_to_clean": ["shepherd/vms"],
            "datastores": ["ds1"],
            "datastore_folders_to_clean": ["shepherd_disks"],
            "cluster_name": "cluster1",
            "resource_pool_name": "pool1",
        },
    }


SAMPLE_OVF = """<?xml version="1.0" encoding="UTF-8"?>
<Envelope xmlns="http://schemas.dmtf.org/ovf/envelope/1"
          xmlns:ovf="http://schemas.dmtf.org/ovf/envelope/1">
  <References>
    <File ovf:id="file1" ovf:href="disk-0.vmdk"/>
  </References>
  <NetworkSection>
    <Info>Logical networks</Info>
    <Network ovf:name="Network 1"/>
  </NetworkSection>
  <VirtualSystem ovf:id="ops-manager">
    <ProductSection>
      <Info>Guest properties</Info>
      <Property ovf:key="ip0" ovf:type="string"/>
      <Property ovf:key="netmask0" ovf:type="string"/>
      <Property ovf:key="gateway" ovf:type="string"/>
      <Property ovf:key="DNS" ovf:type="string"/>
      <Property ovf:key="admin_password" ovf:type="string" ovf:password="true"/>
    </ProductSection>
  </VirtualSystem>
</Envelope>
"""


@pytest.fixture
def ova_archive(tmp_path):
    """Write a tar archive holding a sample OVF descriptor and disk; return its path."""
    source = tmp_path / "ova-src"
    source.mkdir()
    (source / "ops-manager.ovf").write_text(SAMPLE_OVF)
    (source / "disk-0.vmdk").write_bytes(b"vmdk-bytes")
    archive = tmp_path / "ops-manager-1.0.ova"
    with tarfile.open(archive, "w") as tar:
        for name in ("ops-manager.ovf", "disk-0.vmdk"):
            tar.add(source / name, arcname=name)
    return str(archive)
