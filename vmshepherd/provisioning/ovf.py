"""OVA archive extraction and OVF descriptor parsing."""

import glob
import logging
import os
import shutil
import tarfile
import tempfile
from contextlib import contextmanager
from xml.etree import ElementTree as ET

from vmshepherd.errors import ConfigurationError

logger = logging.getLogger(__name__)


@contextmanager
def extracted_archive(archive_path):
    """Untar *archive_path* into a temporary directory, removed on exit.

    Yields:
        The temporary directory path.
    """
    archive_path = os.path.abspath(os.path.expanduser(archive_path.strip()))
    if not os.path.isfile(archive_path):
        raise ConfigurationError(f"Image archive not found: {archive_path}")

    tmp_dir = tempfile.mkdtemp(prefix="vmshepherd-")
    try:
        logger.info(f"BEGIN extract {archive_path}")
        with tarfile.open(archive_path) as tar:
            tar.extractall(tmp_dir, filter="data")
        logger.info(f"END   extract {archive_path}")
        yield tmp_dir
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


def find_ovf(directory) -> str:
    """Return the first ``*.ovf`` file in *directory*."""
    matches = sorted(glob.glob(os.path.join(directory, "*.ovf")))
    if not matches:
        raise ConfigurationError(f"Failed to find ovf in {directory}")
    return matches[0]


def _local(tag) -> str:
    """Strip the ``{namespace}`` prefix from an element or attribute name."""
    return tag.rsplit("}", 1)[-1]


def _attr(element, name):
    for key, value in element.attrib.items():
        if _local(key) == name:
            return value
    return None


def _elements(root, parent_name, child_name):
    for parent in root.iter():
        if _local(parent.tag) != parent_name:
            continue
        for child in parent:
            if _local(child.tag) == child_name:
                yield child


def parse_ovf(ovf_path):
    try:
        return ET.parse(ovf_path).getroot()
    except ET.ParseError as e:
        raise ConfigurationError(f"Malformed OVF descriptor {ovf_path}: {e}") from e


def network_names(ovf_path) -> list[str]:
    """Names of the ``NetworkSection/Network`` entries in an OVF descriptor."""
    root = parse_ovf(ovf_path)
    return [_attr(n, "name") for n in _elements(root, "NetworkSection", "Network") if _attr(n, "name")]


def property_keys(ovf_path) -> list[str]:
    """Keys of the ``ProductSection/Property`` entries, in document order."""
    root = parse_ovf(ovf_path)
    return [_attr(p, "key") for p in _elements(root, "ProductSection", "Property")]

