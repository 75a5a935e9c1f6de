"""Classic ELB edge balancers and their security groups."""

import logging

from botocore.exceptions import ClientError

from vmshepherd.errors import ConfigurationError
from vmshepherd.provisioning.aws_common import error_code
from vmshepherd.provisioning.types import ElbConfig
from vmshepherd.retry import RetryPolicies, retry_until

logger = logging.getLogger(__name__)

HEALTH_CHECK = {"HealthyThreshold": 2, "UnhealthyThreshold": 5, "Interval": 5, "Timeout": 2}
SECURITY_GROUP_DESCRIPTION = "ELB Security Group"


class ElbManager:
    """Creates and tears down load balancers together with their security group."""

    def __init__(self, ec2, elb, policies: RetryPolicies | None = None):
        self.ec2 = ec2
        self.elb = elb
        self.policies = policies or RetryPolicies()

    def create(self, stack_name, stack_outputs: dict, elb_config: ElbConfig):
        """Create the security group, its ingress rules, the balancer and its health check.

        Args:
            stack_name: prefix for the security group name.
            stack_outputs: the stack's output bindings.
            elb_config: balancer definition; ``stack_output_keys`` names the
                outputs holding the VPC and subnet ids.

        Returns:
            The balancer's DNS name.
        """
        vpc_id = _output(stack_outputs, elb_config, "vpc_id")
        subnet_id = _output(stack_outputs, elb_config, "subnet_id")

        logger.info(f"BEGIN create elb={elb_config.name}")
        group_id = self.ec2.create_security_group(
            GroupName=f"{stack_name}_{elb_config.name}",
            Description=SECURITY_GROUP_DESCRIPTION,
            VpcId=vpc_id,
        )["GroupId"]

        for mapping in elb_config.port_mappings:
            self.ec2.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[
                    {
                        "IpProtocol": "tcp",
                        "FromPort": mapping.external,
                        "ToPort": mapping.external,
                        "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                    }
                ],
            )

        listeners = [
            {
                "Protocol": "TCP",
                "LoadBalancerPort": mapping.external,
                "InstanceProtocol": "TCP",
                "InstancePort": mapping.internal,
            }
            for mapping in elb_config.port_mappings
        ]
        response = self.elb.create_load_balancer(
            LoadBalancerName=elb_config.name,
            Listeners=listeners,
            Subnets=[subnet_id],
            SecurityGroups=[group_id],
        )

        if elb_config.ping_target:
            self.elb.configure_health_check(
                LoadBalancerName=elb_config.name,
                HealthCheck={"Target": elb_config.ping_target, **HEALTH_CHECK},
            )
        logger.info(f"END   create elb={elb_config.name}")
        return response.get("DNSName")

    def find(self, name) -> dict | None:
        """Describe the balancer called *name*, or None if there is none."""
        try:
            response = self.elb.describe_load_balancers(LoadBalancerNames=[name])
        except ClientError as e:
            if error_code(e) == "LoadBalancerNotFound":
                return None
            raise
        descriptions = response.get("LoadBalancerDescriptions", [])
        return descriptions[0] if descriptions else None

    def delete(self, name):
        """Delete a balancer and its security group; absent balancers are a no-op."""
        balancer = self.find(name)
        if balancer is None:
            logger.info(f"No elb named {name}, nothing to delete")
            return

        group_ids = balancer.get("SecurityGroups", [])
        interface_ids = self._interfaces_using(group_ids)

        logger.info(f"BEGIN delete elb={name}")
        self.elb.delete_load_balancer(LoadBalancerName=name)

        policy = self.policies.edge_teardown
        retry_until(
            policy.limit,
            policy.interval,
            lambda: self.find(name) is None and not self._existing_interfaces(interface_ids),
            f"elb {name} and its network interfaces to disappear",
        )

        for group_id in group_ids:
            self.ec2.delete_security_group(GroupId=group_id)
        logger.info(f"END   delete elb={name}")

    def _interfaces_using(self, group_ids) -> list[str]:
        if not group_ids:
            return []
        response = self.ec2.describe_network_interfaces(Filters=[{"Name": "group-id", "Values": list(group_ids)}])
        return [eni["NetworkInterfaceId"] for eni in response.get("NetworkInterfaces", [])]

    def _existing_interfaces(self, interface_ids) -> list[str]:
        remaining = []
        for interface_id in interface_ids:
            try:
                self.ec2.describe_network_interfaces(NetworkInterfaceIds=[interface_id])
            except ClientError as e:
                if error_code(e) == "InvalidNetworkInterfaceID.NotFound":
                    continue
                raise
            remaining.append(interface_id)
        return remaining


def _output(stack_outputs, elb_config, key):
    output_key = elb_config.stack_output_keys.get(key)
    if not output_key:
        raise ConfigurationError(f"elb {elb_config.name} is missing stack_output_keys.{key}")
    if output_key not in stack_outputs:
        raise ConfigurationError(f"Stack has no output '{output_key}' (elb {elb_config.name} {key})")
    return stack_outputs[output_key]
