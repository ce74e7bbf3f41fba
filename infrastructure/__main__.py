import logging

import pulumi
import pulumi_aws as aws

from cluster import KubeadmCluster
from lookups import resolve_environment
from stack_config import load_config

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

config = load_config()

# Explicit provider so profile and region come from stack config
provider_args = {"region": config.region}
if config.profile:
    provider_args["profile"] = config.profile
provider = aws.Provider("aws", **provider_args)

logger.info("Resolving AWS environment in %s...", config.region)
environment = resolve_environment(config.ami_ssm_parameter, provider=provider)

try:
    cluster = KubeadmCluster(
        config.cluster_name,
        config=config,
        environment=environment,
        opts=pulumi.ResourceOptions(providers=[provider]),
    )
except Exception as e:
    logger.error(f"Failed to create cluster: {str(e)}", exc_info=True)
    raise

# Export values
pulumi.export("account_id", environment.account_id)
pulumi.export("region", config.region)
pulumi.export("ami_id", environment.ami_id)
pulumi.export("vpc_id", environment.vpc_id)
pulumi.export("subnet_id", environment.subnet_id)
pulumi.export("security_group_id", cluster.security_group.id)
pulumi.export("key_name", cluster.key_pair.key_name)
pulumi.export("kubernetes_version", config.kubernetes_version)

for key, value in cluster.node_outputs(config.private_key_path, config.ssh_user).items():
    pulumi.export(key, value)
