import logging
from dataclasses import dataclass

import pulumi
import pulumi_aws as aws

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Environment:
    account_id: str
    vpc_id: str
    subnet_id: str
    ami_id: str


def resolve_environment(ami_ssm_parameter: str, provider: aws.Provider = None) -> Environment:
    """Look up the default VPC, a default subnet, the node AMI and the calling account."""
    invoke_opts = pulumi.InvokeOptions(provider=provider)

    identity = aws.get_caller_identity(opts=invoke_opts)
    logger.info("Deploying into account %s", identity.account_id)

    vpc = aws.ec2.get_vpc(default=True, opts=invoke_opts)

    subnets = aws.ec2.get_subnets(
        filters=[
            {"name": "vpc-id", "values": [vpc.id]},
            {"name": "default-for-az", "values": ["true"]},
        ],
        opts=invoke_opts,
    )
    if not subnets.ids:
        raise pulumi.RunError(f"default VPC {vpc.id} has no default subnets")
    # Sorted so repeated runs land both nodes in the same subnet
    subnet_id = sorted(subnets.ids)[0]

    ami = aws.ssm.get_parameter(name=ami_ssm_parameter, opts=invoke_opts)
    logger.info("Using AMI %s from %s", ami.value, ami_ssm_parameter)

    return Environment(
        account_id=identity.account_id,
        vpc_id=vpc.id,
        subnet_id=subnet_id,
        ami_id=ami.value,
    )
