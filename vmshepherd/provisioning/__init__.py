"""Provider managers: AWS, OpenStack, vSphere and vCloud, plus their shared helpers."""

from vmshepherd.provisioning.aws import AwsManager
from vmshepherd.provisioning.elb import ElbManager
from vmshepherd.provisioning.openstack import OpenstackManager
from vmshepherd.provisioning.shell import host_answers, run_shell_cmd
from vmshepherd.provisioning.stack import StackLifecycle
from vmshepherd.provisioning.template_cache import TemplateCache
from vmshepherd.provisioning.vcloud import VcloudManager
from vmshepherd.provisioning.vsphere import VsphereManager

__all__ = [
    "AwsManager",
    "ElbManager",
    "StackLifecycle",
    "OpenstackManager",
    "VsphereManager",
    "TemplateCache",
    "VcloudManager",
    "run_shell_cmd",
    "host_answers",
]
