"""Shared data types for IaaS backends."""

from dataclasses import dataclass, field

from vmshepherd.errors import ConfigurationError


def require(d: dict, key: str, where: str):
    """Return ``d[key]``, raising ConfigurationError naming *where* if absent or empty."""
    value = d.get(key) if d else None
    if value is None or value == "":
        raise ConfigurationError(f"Missing required setting '{where}.{key}'")
    return value


# ── AWS ───────────────────────────────────────────────────────────


@dataclass
class PortMapping:
    """One balancer listener: external port forwarded to an instance port."""

    external: int
    internal: int


@dataclass
class ElbConfig:
    """An edge balancer and where to find its network in the stack outputs."""

    name: str
    port_mappings: list[PortMapping] = field(default_factory=list)
    stack_output_keys: dict[str, str] = field(default_factory=dict)
    ping_target: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "ElbConfig":
        name = require(d, "name", "elbs[]")
        mappings = [PortMapping(int(ext), int(internal)) for ext, internal in d.get("port_mappings", [])]
        health_check = d.get("health_check") or {}
        return cls(
            name=name,
            port_mappings=mappings,
            stack_output_keys=dict(d.get("stack_output_keys", {})),
            ping_target=health_check.get("ping_target"),
        )


@dataclass
class AwsOutputs:
    """Identifiers of resources created by the environment stack."""

    security_group: str | None = None
    public_subnet_id: str | None = None
    subnets: list[str] = field(default_factory=list)
    s3_bucket_names: list[str] = field(default_factory=list)
    instance_profile: str | None = None
    ssh_key_name: str | None = None

    @classmethod
    def from_dict(cls, d: dict | None) -> "AwsOutputs":
        d = d or {}
        subnets = d.get("subnets")
        if subnets is None:
            subnets = [s for s in (d.get("public_subnet_id"), d.get("private_subnet_id")) if s]
        return cls(
            security_group=d.get("security_group"),
            public_subnet_id=d.get("public_subnet_id"),
            subnets=list(subnets),
            s3_bucket_names=list(d.get("s3_bucket_names") or []),
            instance_profile=d.get("instance_profile"),
            ssh_key_name=d.get("ssh_key_name"),
        )


@dataclass
class AwsEnvConfig:
    """Credentials, stack definition and outputs for an AWS environment."""

    stack_name: str
    aws_access_key: str
    aws_secret_key: str
    region: str = "us-east-1"
    json_file: str | None = None
    parameters: dict[str, str] = field(default_factory=dict)
    update_existing: bool = False
    outputs: AwsOutputs = field(default_factory=AwsOutputs)
    elbs: list[ElbConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> "AwsEnvConfig":
        where = "vm_shepherd.env_config"
        return cls(
            stack_name=require(d, "stack_name", where),
            aws_access_key=require(d, "aws_access_key", where),
            aws_secret_key=require(d, "aws_secret_key", where),
            region=d.get("region", "us-east-1"),
            json_file=d.get("json_file"),
            parameters={k: str(v) for k, v in (d.get("parameters") or {}).items()},
            update_existing=bool(d.get("update_existing", False)),
            outputs=AwsOutputs.from_dict(d.get("outputs")),
            elbs=[ElbConfig.from_dict(e) for e in d.get("elbs") or []],
        )


@dataclass
class AwsVmConfig:
    """One EC2 instance, found again at teardown by its Name tag."""

    vm_name: str
    key_name: str | None = None
    vm_ip_address: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "AwsVmConfig":
        return cls(
            vm_name=require(d, "vm_name", "vm_shepherd.vm_configs[]"),
            key_name=d.get("key_name"),
            vm_ip_address=d.get("vm_ip_address") or None,
        )


# ── OpenStack ─────────────────────────────────────────────────────


@dataclass
class OpenstackCreds:
    auth_url: str
    username: str
    password: str
    project_name: str
    region: str | None = None
    user_domain_name: str = "Default"
    project_domain_name: str = "Default"

    @classmethod
    def from_dict(cls, d: dict) -> "OpenstackCreds":
        where = "vm_shepherd.env_config.creds"
        d = dict(d or {})
        d.setdefault("password", d.get("api_key"))
        d.setdefault("project_name", d.get("tenant"))
        return cls(
            auth_url=require(d, "auth_url", where),
            username=require(d, "username", where),
            password=require(d, "password", where),
            project_name=require(d, "project_name", where),
            region=d.get("region"),
            user_domain_name=d.get("user_domain_name", "Default"),
            project_domain_name=d.get("project_domain_name", "Default"),
        )


@dataclass
class OpenstackVmConfig:
    name: str
    min_disk_size: int
    network_name: str
    key_name: str
    public_ip: str
    security_group_names: list[str] = field(default_factory=list)
    private_ip: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "OpenstackVmConfig":
        where = "vm_shepherd.vm_configs[]"
        flavor = d.get("flavor_parameters") or {}
        min_disk = d.get("min_disk_size", flavor.get("min_disk_size"))
        if min_disk is None:
            raise ConfigurationError(f"Missing required setting '{where}.flavor_parameters.min_disk_size'")
        return cls(
            name=require(d, "name", where),
            min_disk_size=int(min_disk),
            network_name=require(d, "network_name", where),
            key_name=require(d, "key_name", where),
            public_ip=require(d, "public_ip", where),
            security_group_names=list(d.get("security_group_names") or []),
            private_ip=d.get("private_ip"),
        )


# ── vSphere ───────────────────────────────────────────────────────


@dataclass
class VsphereCreds:
    host: str
    username: str
    password: str
    datacenter: str

    @classmethod
    def from_dict(cls, d: dict) -> "VsphereCreds":
        where = "vm_shepherd.env_config.vcenter_creds"
        d = dict(d or {})
        d.setdefault("host", d.get("ip"))
        return cls(
            host=require(d, "host", where),
            username=require(d, "username", where),
            password=require(d, "password", where),
            datacenter=require(d, "datacenter", where),
        )


@dataclass
class VsphereLocation:
    """Where in vCenter templates and VMs are placed."""

    cluster: str
    datastore: str
    network: str
    folder: str
    resource_pool: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "VsphereLocation":
        where = "vm_shepherd.env_config.vsphere"
        return cls(
            cluster=require(d, "cluster", where),
            datastore=require(d, "datastore", where),
            network=require(d, "network", where),
            folder=require(d, "folder", where),
            resource_pool=d.get("resource_pool"),
        )


@dataclass
class VsphereCleanup:
    datacenter_folders_to_clean: list[str] | None = None
    datastores: list[str] | None = None
    datastore_folders_to_clean: list[str] | None = None
    cluster_name: str | None = None
    resource_pool_name: str | None = None

    @classmethod
    def from_dict(cls, d: dict | None) -> "VsphereCleanup":
        d = d or {}
        return cls(
            datacenter_folders_to_clean=d.get("datacenter_folders_to_clean"),
            datastores=d.get("datastores"),
            datastore_folders_to_clean=d.get("datastore_folders_to_clean"),
            cluster_name=d.get("cluster_name"),
            resource_pool_name=d.get("resource_pool_name"),
        )


@dataclass
class VsphereVmConfig:
    """Guest network identity and sizing pushed into the OVF environment."""

    ip: str
    gateway: str | None = None
    netmask: str | None = None
    dns: str | None = None
    ntp_servers: str | None = None
    cpus: int = 2
    ram_mb: int = 4096
    external_port: int = 443
    vm_password: str | None = None
    public_ssh_key: str | None = None
    custom_hostname: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "VsphereVmConfig":
        return cls(
            ip=require(d, "ip", "vm_shepherd.vm_configs[].vm"),
            gateway=d.get("gateway"),
            netmask=d.get("netmask"),
            dns=d.get("dns"),
            ntp_servers=d.get("ntp_servers"),
            cpus=int(d.get("cpus") or 2),
            ram_mb=int(d.get("ram_mb") or 4096),
            external_port=int(d.get("external_port") or 443),
            vm_password=d.get("vm_password"),
            public_ssh_key=d.get("public_ssh_key"),
            custom_hostname=d.get("custom_hostname"),
        )


# ── vCloud ────────────────────────────────────────────────────────


@dataclass
class VcloudCreds:
    url: str
    organization: str
    user: str
    password: str

    @classmethod
    def from_dict(cls, d: dict) -> "VcloudCreds":
        where = "vm_shepherd.env_config.creds"
        return cls(
            url=require(d, "url", where),
            organization=require(d, "organization", where),
            user=require(d, "user", where),
            password=require(d, "password", where),
        )


@dataclass
class VcloudLocation:
    vdc: str
    catalog: str
    network: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "VcloudLocation":
        where = "vm_shepherd.env_config.vdc"
        d = dict(d or {})
        d.setdefault("vdc", d.get("name"))
        return cls(
            vdc=require(d, "vdc", where),
            catalog=require(d, "catalog", where),
            network=d.get("network"),
        )


@dataclass
class VappConfig:
    name: str
    ip: str
    gateway: str | None = None
    netmask: str | None = None
    dns: str | None = None
    ntp: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "VappConfig":
        where = "vm_shepherd.vm_configs[].vapp"
        return cls(
            name=require(d, "name", where),
            ip=require(d, "ip", where),
            gateway=d.get("gateway"),
            netmask=d.get("netmask"),
            dns=d.get("dns"),
            ntp=d.get("ntp"),
        )
