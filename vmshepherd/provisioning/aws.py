"""AWS backend: CloudFormation environment, EC2 instances, cleanup sweep."""

import logging
import os

import yaml
from botocore.exceptions import ClientError

from vmshepherd.errors import ConfigurationError
from vmshepherd.provisioning.aws_common import error_code, make_session, matching_codes
from vmshepherd.provisioning.elb import ElbManager
from vmshepherd.provisioning.stack import StackLifecycle
from vmshepherd.provisioning.types import AwsEnvConfig, AwsVmConfig
from vmshepherd.retry import PollResult, RetryPolicies, poll, retry_until, transient_errors

logger = logging.getLogger(__name__)

INSTANCE_TYPE = "m3.medium"
DO_NOT_TERMINATE_TAG_KEY = "do_not_terminate"


class AwsManager:
    """One AWS environment: its stack, its balancers and the instances in it."""

    def __init__(self, env_config: AwsEnvConfig, policies: RetryPolicies | None = None, session=None):
        self.env = env_config
        self.policies = policies or RetryPolicies()
        session = session or make_session(env_config.aws_access_key, env_config.aws_secret_key, env_config.region)
        self.cloudformation = session.client("cloudformation")
        self.ec2 = session.client("ec2")
        self.s3 = session.resource("s3")
        self.stack = StackLifecycle(self.cloudformation, env_config.stack_name, self.policies)
        self.elbs = ElbManager(self.ec2, session.client("elb"), self.policies)

    # ── Environment ────────────────────────────────────────────────

    def prepare_environment(self, template_path):
        """Create (or update) the stack from *template_path*, then its balancers."""
        with open(template_path) as f:
            template_body = f.read()

        if self.env.update_existing and self.stack.exists():
            self.stack.update(template_body, self.env.parameters)
        else:
            self.stack.create(template_body, self.env.parameters)

        if self.env.elbs:
            outputs = self.stack.outputs()
            for elb_config in self.env.elbs:
                self.elbs.create(self.env.stack_name, outputs, elb_config)

    def clean_environment(self):
        """Terminate instances in the stack subnets, then remove volumes, balancers, buckets and the stack."""
        instance_ids, volume_ids = self._terminate_subnet_instances()
        for volume_id in volume_ids:
            self._delete_volume(volume_id)
        for instance_id in instance_ids:
            self._wait_terminated(instance_id)

        for elb_config in self.env.elbs:
            self.elbs.delete(elb_config.name)

        for bucket_name in self.env.outputs.s3_bucket_names:
            if bucket_name:
                self._clear_bucket(bucket_name)

        self.stack.delete()

    # ── Instances ──────────────────────────────────────────────────

    def deploy(self, ami_file_path, vm_config: AwsVmConfig):
        """Boot an instance from the AMI for this region and give it a public address.

        Returns:
            The new instance id.
        """
        image_id = read_ami_id(ami_file_path, self.env.region)
        instance_id = self._create_instance(image_id, vm_config)
        self._wait_running(instance_id)

        allocation_id = self._resolve_address(vm_config)
        self.ec2.associate_address(InstanceId=instance_id, AllocationId=allocation_id)
        self.ec2.create_tags(Resources=[instance_id], Tags=[{"Key": "Name", "Value": vm_config.vm_name}])
        logger.info(f"Instance {instance_id} is running as {vm_config.vm_name}")
        return instance_id

    def destroy(self, vm_config: AwsVmConfig):
        """Terminate every instance tagged with the VM name, releasing owned addresses."""
        for instance in self._instances_named(vm_config.vm_name):
            instance_id = instance["InstanceId"]
            if not vm_config.vm_ip_address:
                self._release_address(instance_id)
            logger.info(f"Terminating instance {instance_id} ({vm_config.vm_name})")
            self.ec2.terminate_instances(InstanceIds=[instance_id])

    def _create_instance(self, image_id, vm_config):
        outputs = self.env.outputs
        key_name = vm_config.key_name or outputs.ssh_key_name
        if not key_name:
            raise ConfigurationError(f"No key_name configured for {vm_config.vm_name}")
        if not outputs.security_group or not outputs.public_subnet_id:
            raise ConfigurationError("outputs.security_group and outputs.public_subnet_id are required to deploy")

        request = {
            "ImageId": image_id,
            "KeyName": key_name,
            "SecurityGroupIds": [outputs.security_group],
            "SubnetId": outputs.public_subnet_id,
            "InstanceType": INSTANCE_TYPE,
            "MinCount": 1,
            "MaxCount": 1,
        }
        if outputs.instance_profile:
            request["IamInstanceProfile"] = {"Name": outputs.instance_profile}

        def _run():
            with transient_errors(matching_codes("InvalidIPAddress.InUse")):
                return self.ec2.run_instances(**request)["Instances"][0]["InstanceId"]

        logger.info(f"Launching {INSTANCE_TYPE} instance from {image_id}")
        policy = self.policies.instance_create
        return retry_until(policy.limit, policy.interval, _run, "instance creation")

    def _wait_running(self, instance_id):
        def _check():
            with transient_errors(matching_codes("InvalidInstanceID.NotFound")):
                state = self._instance_state(instance_id)
            if state == "running":
                return PollResult.done(state)
            return PollResult.pending(state)

        poll(self.policies.instance_running, _check, f"instance {instance_id} to be running")

    def _wait_terminated(self, instance_id):
        def _check():
            state = self._instance_state(instance_id)
            if state == "terminated":
                return PollResult.done(state)
            if state == "shutting-down":
                return PollResult.pending(state)
            return PollResult.failed(f"Expected instance: {instance_id} to be terminated, but was {state}")

        poll(self.policies.instance_terminated, _check, f"instance {instance_id} to terminate")

    def _instance_state(self, instance_id) -> str:
        response = self.ec2.describe_instances(InstanceIds=[instance_id])
        return response["Reservations"][0]["Instances"][0]["State"]["Name"]

    def _instances_named(self, vm_name) -> list[dict]:
        response = self.ec2.describe_instances(
            Filters=[
                {"Name": "tag:Name", "Values": [vm_name]},
                {"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped"]},
            ]
        )
        return [i for i in _instances(response) if _tags(i).get("Name") == vm_name]

    # ── Elastic IPs ────────────────────────────────────────────────

    def _resolve_address(self, vm_config) -> str:
        """Return the allocation id to bind: the configured address, or a fresh one."""
        if vm_config.vm_ip_address:
            addresses = self.ec2.describe_addresses(PublicIps=[vm_config.vm_ip_address])["Addresses"]
            return addresses[0]["AllocationId"]

        allocation_id = self.ec2.allocate_address(Domain="vpc")["AllocationId"]
        logger.info(f"Allocated elastic IP {allocation_id}")

        def _visible():
            with transient_errors(matching_codes("InvalidAllocationID.NotFound")):
                return self.ec2.describe_addresses(AllocationIds=[allocation_id])["Addresses"]

        policy = self.policies.address_visible
        retry_until(policy.limit, policy.interval, _visible, f"elastic IP {allocation_id} to exist")
        return allocation_id

    def _release_address(self, instance_id):
        addresses = self.ec2.describe_addresses(Filters=[{"Name": "instance-id", "Values": [instance_id]}])
        for address in addresses.get("Addresses", []):
            try:
                if address.get("AssociationId"):
                    self.ec2.disassociate_address(AssociationId=address["AssociationId"])
                self.ec2.release_address(AllocationId=address["AllocationId"])
                logger.info(f"Released elastic IP {address.get('PublicIp')} from {instance_id}")
            except ClientError as e:
                if error_code(e) not in ("InvalidAssociationID.NotFound", "InvalidAllocationID.NotFound"):
                    raise
                logger.info(f"Elastic IP {address.get('PublicIp')} already released")

    # ── Cleanup sweep ──────────────────────────────────────────────

    def _terminate_subnet_instances(self):
        instance_ids, volume_ids = [], []
        for subnet_id in self.env.outputs.subnets:
            response = self.ec2.describe_instances(Filters=[{"Name": "subnet-id", "Values": [subnet_id]}])
            for instance in _instances(response):
                if instance["State"]["Name"] == "terminated":
                    continue
                if DO_NOT_TERMINATE_TAG_KEY in _tags(instance):
                    logger.info(f"Skipping {instance['InstanceId']}: tagged {DO_NOT_TERMINATE_TAG_KEY}")
                    continue
                for mapping in instance.get("BlockDeviceMappings", []):
                    ebs = mapping.get("Ebs", {})
                    if ebs.get("VolumeId") and not ebs.get("DeleteOnTermination"):
                        volume_ids.append(ebs["VolumeId"])
                instance_ids.append(instance["InstanceId"])

        if instance_ids:
            logger.info(f"Terminating instances: {', '.join(instance_ids)}")
            self.ec2.terminate_instances(InstanceIds=instance_ids)
        return instance_ids, volume_ids

    def _delete_volume(self, volume_id):
        def _delete():
            with transient_errors(matching_codes("VolumeInUse")):
                self.ec2.delete_volume(VolumeId=volume_id)
            return True

        logger.info(f"Deleting volume {volume_id}")
        policy = self.policies.volume_delete
        retry_until(policy.limit, policy.interval, _delete, f"volume {volume_id} to be deletable")

    def _clear_bucket(self, bucket_name):
        bucket = self.s3.Bucket(bucket_name)
        try:
            self.s3.meta.client.head_bucket(Bucket=bucket_name)
        except ClientError as e:
            if error_code(e) in ("404", "NoSuchBucket"):
                logger.info(f"Bucket {bucket_name} does not exist")
                return
            raise
        if next(iter(bucket.object_versions.limit(1)), None) is None:
            logger.info(f"Bucket {bucket_name} is already empty")
            return
        logger.info(f"Clearing bucket {bucket_name}")
        bucket.object_versions.delete()


def read_ami_id(ami_file_path, region) -> str:
    """Read the AMI id for *region* from a YAML region map (or a bare id)."""
    if not os.path.isfile(ami_file_path):
        raise ConfigurationError(f"AMI file not found: {ami_file_path}")
    with open(ami_file_path) as f:
        data = yaml.safe_load(f)
    if isinstance(data, dict):
        if region not in data:
            raise ConfigurationError(f"AMI file {ami_file_path} has no image for region {region}")
        return str(data[region])
    if not data:
        raise ConfigurationError(f"AMI file {ami_file_path} is empty")
    return str(data).strip()


def _instances(describe_response) -> list[dict]:
    return [i for r in describe_response.get("Reservations", []) for i in r.get("Instances", [])]


def _tags(instance) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
