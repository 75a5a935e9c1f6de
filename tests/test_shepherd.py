"""Tests for vmshepherd.shepherd: backend selection and orchestration order."""

import os
from unittest.mock import MagicMock, call, patch

import pytest

from vmshepherd import shepherd as shepherd_module
from vmshepherd.errors import ConfigurationError, UnknownBackend
from vmshepherd.settings import Settings
from vmshepherd.shepherd import (
    BACKENDS,
    DEFAULT_VM_PASSWORD,
    AwsBackend,
    Shepherd,
    VcloudBackend,
    VsphereBackend,
)


def test_backends_registry():
    assert sorted(BACKENDS) == ["aws", "openstack", "vcloud", "vsphere"]


def test_unknown_iaas_type():
    with pytest.raises(UnknownBackend, match="Unknown IaaS type: 'gce'"):
        Shepherd(Settings(iaas_type="gce"))


def test_backend_built_from_settings(aws_env_config):
    settings = Settings(iaas_type="aws", env_config=aws_env_config)
    with patch.object(shepherd_module, "AwsManager") as manager_cls:
        shepherd = Shepherd(settings)
    assert isinstance(shepherd.backend, AwsBackend)
    env, policies = manager_cls.call_args.args
    assert env.stack_name == "pcf-stack"
    assert policies is settings.retry_policies


# ── Orchestration ───────────────────────────────────────────────


def test_deploy_pairs_paths_with_vm_configs_in_order():
    settings = Settings(iaas_type="aws", vm_configs=[{"vm_name": "a"}, {"vm_name": "b"}])
    backend = MagicMock()
    backend.deploy.side_effect = ["i-1", "i-2"]

    results = Shepherd(settings, backend=backend).deploy(["ami-a.yml", "ami-b.yml"])

    assert results == ["i-1", "i-2"]
    assert backend.deploy.call_args_list == [
        call("ami-a.yml", {"vm_name": "a"}),
        call("ami-b.yml", {"vm_name": "b"}),
    ]


def test_deploy_rejects_path_count_mismatch():
    settings = Settings(iaas_type="aws", vm_configs=[{"vm_name": "a"}, {"vm_name": "b"}])
    backend = MagicMock()
    with pytest.raises(ConfigurationError, match="Got 1 artifact path"):
        Shepherd(settings, backend=backend).deploy(["ami-a.yml"])
    backend.deploy.assert_not_called()


def test_destroy_visits_every_vm_config():
    settings = Settings(iaas_type="aws", vm_configs=[{"vm_name": "a"}, {"vm_name": "b"}])
    backend = MagicMock()
    Shepherd(settings, backend=backend).destroy()
    assert [c.args[0] for c in backend.destroy.call_args_list] == [{"vm_name": "a"}, {"vm_name": "b"}]


def test_prepare_and_clean_delegate():
    backend = MagicMock()
    shepherd = Shepherd(Settings(iaas_type="vsphere"), backend=backend)
    shepherd.prepare_environment("stack.json")
    shepherd.clean_environment()
    backend.prepare_environment.assert_called_once_with("stack.json")
    backend.clean_environment.assert_called_once_with()


# ── AWS ─────────────────────────────────────────────────────────


def test_aws_prepare_defaults_to_configured_template(aws_env_config, tmp_path):
    settings = Settings(iaas_type="aws", env_config=aws_env_config, base_dir=str(tmp_path))
    manager = MagicMock()
    AwsBackend(settings, manager=manager).prepare_environment()
    manager.prepare_environment.assert_called_once_with(os.path.join(str(tmp_path), "cloudformation.json"))


def test_aws_prepare_without_any_template(aws_env_config):
    del aws_env_config["json_file"]
    settings = Settings(iaas_type="aws", env_config=aws_env_config)
    with pytest.raises(ConfigurationError, match="json_file"):
        AwsBackend(settings, manager=MagicMock()).prepare_environment()


# ── vSphere ─────────────────────────────────────────────────────


def _vsphere_backend(env_config, environ, tmp_path):
    settings = Settings(iaas_type="vsphere", env_config=env_config, base_dir=str(tmp_path))
    return VsphereBackend(settings, environ=environ, manager=MagicMock())


VM = {"vm": {"ip": "10.0.0.5"}}


def test_vsphere_password_defaults(vsphere_env_config, tmp_path):
    backend = _vsphere_backend(vsphere_env_config, {}, tmp_path)
    assert backend.vm_options(VM).vm_password == DEFAULT_VM_PASSWORD


def test_vsphere_password_from_environment(vsphere_env_config, tmp_path):
    backend = _vsphere_backend(vsphere_env_config, {"VSPHERE_VM_PASSWORD": "from-env"}, tmp_path)
    assert backend.vm_options(VM).vm_password == "from-env"


def test_vsphere_configured_password_wins(vsphere_env_config, tmp_path):
    backend = _vsphere_backend(vsphere_env_config, {"VSPHERE_VM_PASSWORD": "from-env"}, tmp_path)
    assert backend.vm_options({"vm": {"ip": "10.0.0.5", "vm_password": "configured"}}).vm_password == "configured"


def test_vsphere_password_provisioning_disabled(vsphere_env_config, tmp_path):
    backend = _vsphere_backend(vsphere_env_config, {"PROVISION_WITH_PASSWORD": "false"}, tmp_path)
    assert backend.vm_options({"vm": {"ip": "10.0.0.5", "vm_password": "configured"}}).vm_password is None


def test_vsphere_ssh_key_read_from_assets_home(vsphere_env_config, tmp_path):
    assets = tmp_path / "assets"
    assets.mkdir()
    (assets / "id_rsa.pub").write_text("ssh-rsa AAAA shepherd\n")
    backend = _vsphere_backend(vsphere_env_config, {"ASSETS_HOME": str(assets)}, tmp_path)

    options = backend.vm_options({"vm": {"ip": "10.0.0.5", "public_ssh_key": "id_rsa.pub"}})
    assert options.public_ssh_key == "ssh-rsa AAAA shepherd"


def test_vsphere_ssh_key_disabled(vsphere_env_config, tmp_path):
    backend = _vsphere_backend(vsphere_env_config, {"PROVISION_WITH_SSH_KEY": "false"}, tmp_path)
    options = backend.vm_options({"vm": {"ip": "10.0.0.5", "public_ssh_key": "id_rsa.pub"}})
    assert options.public_ssh_key is None


def test_vsphere_missing_ssh_key_file(vsphere_env_config, tmp_path):
    backend = _vsphere_backend(vsphere_env_config, {}, tmp_path)
    with pytest.raises(ConfigurationError, match="not found"):
        backend.vm_options({"vm": {"ip": "10.0.0.5", "public_ssh_key": "missing.pub"}})


def test_vsphere_deploy_destroy_and_clean(vsphere_env_config, tmp_path):
    backend = _vsphere_backend(vsphere_env_config, {}, tmp_path)

    backend.deploy("ops.ova", VM)
    path, options, location = backend.manager.deploy.call_args.args
    assert (path, options.ip, location.cluster) == ("ops.ova", "10.0.0.5", "cluster1")

    backend.destroy(VM)
    backend.manager.destroy.assert_called_once_with("10.0.0.5", "pool1")

    backend.clean_environment()
    backend.manager.clean_environment.assert_called_once_with(
        datacenter_folders_to_clean=["shepherd/vms"],
        datastores=["ds1"],
        datastore_folders_to_clean=["shepherd_disks"],
        cluster_name="cluster1",
        resource_pool_name="pool1",
    )


# ── vCloud ──────────────────────────────────────────────────────


def test_vcloud_clean_passes_every_vapp_name():
    settings = Settings(
        iaas_type="vcloud",
        vm_configs=[{"vapp": {"name": "ops", "ip": "10.0.0.5"}}, {"vapp": {"name": "director", "ip": "10.0.0.6"}}],
    )
    backend = VcloudBackend(settings, manager=MagicMock())

    backend.clean_environment()
    backend.destroy(settings.vm_configs[1])

    backend.manager.clean_environment.assert_called_once_with(["ops", "director"])
    backend.manager.destroy.assert_called_once_with(["director"])
