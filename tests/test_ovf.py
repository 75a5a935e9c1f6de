"""Tests for vmshepherd.provisioning.ovf: archive extraction and descriptor parsing."""

import os

import pytest

from vmshepherd.errors import ConfigurationError
from vmshepherd.provisioning import ovf


def test_extracted_archive_is_removed_afterwards(ova_archive):
    with ovf.extracted_archive(ova_archive) as directory:
        assert sorted(os.listdir(directory)) == ["disk-0.vmdk", "ops-manager.ovf"]
        ovf_path = ovf.find_ovf(directory)
    assert not os.path.exists(directory)
    assert ovf_path.endswith("ops-manager.ovf")


def test_extracted_archive_removed_on_error(ova_archive):
    with pytest.raises(RuntimeError):
        with ovf.extracted_archive(ova_archive) as directory:
            raise RuntimeError("deploy failed")
    assert not os.path.exists(directory)


def test_missing_archive():
    with pytest.raises(ConfigurationError, match="not found"):
        with ovf.extracted_archive("/nonexistent/image.ova"):
            pass


def test_find_ovf_without_descriptor(tmp_path):
    with pytest.raises(ConfigurationError, match="Failed to find ovf"):
        ovf.find_ovf(str(tmp_path))


def test_descriptor_parsing(ova_archive):
    with ovf.extracted_archive(ova_archive) as directory:
        ovf_path = ovf.find_ovf(directory)
        assert ovf.network_names(ovf_path) == ["Network 1"]
        assert ovf.property_keys(ovf_path) == ["ip0", "netmask0", "gateway", "DNS", "admin_password"]


def test_malformed_descriptor(tmp_path):
    path = tmp_path / "broken.ovf"
    path.write_text("<Envelope><unclosed>")
    with pytest.raises(ConfigurationError, match="Malformed OVF"):
        ovf.network_names(str(path))
