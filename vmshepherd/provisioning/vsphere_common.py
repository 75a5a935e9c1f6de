"""pyVmomi helpers: connection, task waiting, inventory traversal."""

import logging

from pyVim.connect import SmartConnect
from pyVmomi import vim

from vmshepherd.retry import PollResult, RetryPolicies, RetryPolicy, poll

logger = logging.getLogger(__name__)

DEFAULT_TASK_POLICY = RetryPolicies().vsphere_task


def connect(host, username, password):
    """Open a vCenter session without certificate verification."""
    logger.debug(f"Connecting to vCenter {host} as {username}")
    return SmartConnect(host=host, user=username, pwd=password, disableSslCertValidation=True)


def wait_for_task(task, description="vSphere task", policy: RetryPolicy = DEFAULT_TASK_POLICY):
    """Poll a vim.Task until it finishes; raises the task's fault on error.

    Returns:
        ``task.info.result``.
    """

    def _check():
        info = task.info
        if info.state == "success":
            return PollResult.done(info.result)
        if info.state == "error":
            raise info.error
        return PollResult.pending(info.state)

    return poll(policy, _check, description)


def traverse(root, path, vim_type=None, create=False):
    """Walk a slash-separated inventory path below *root*.

    Intermediate segments must be folders. The last segment must be an
    instance of *vim_type* (any type when None). With *create*, missing
    folders along the path are created and the final object is a folder.

    Returns:
        The object at *path*, or None when it does not exist.
    """
    names = [name for name in path.split("/") if name]
    node = root
    for index, name in enumerate(names):
        last = index == len(names) - 1
        wanted = vim.Folder if (not last or create) else vim_type
        child = next(
            (c for c in node.childEntity if c.name == name and (wanted is None or isinstance(c, wanted))),
            None,
        )
        if child is None:
            if not create:
                return None
            logger.info(f"Creating folder {name} under {node.name}")
            child = node.CreateFolder(name)
        node = child
    return node


def find_vms(folder) -> list:
    """All virtual machines (templates included) below *folder*, recursively."""
    vms = []
    for child in folder.childEntity:
        if isinstance(child, vim.VirtualMachine):
            vms.append(child)
        elif isinstance(child, vim.Folder):
            vms.extend(find_vms(child))
    return vms
