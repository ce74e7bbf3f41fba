import logging
import os

import pulumi
import pulumi_aws as aws
from pulumi_command import remote

from cloud_init import render_cloud_config
from lookups import Environment
from stack_config import StackConfig, common_tags

logger = logging.getLogger(__name__)

CONTROL_PLANE = "control-plane"
WORKER = "worker"
ROLES = (CONTROL_PLANE, WORKER)

# Blocks until cloud-init has finished, however long that takes
READINESS_SCRIPT = """until [ -f /var/lib/cloud/instance/boot-finished ]; do
  echo "Waiting for cloud-init..."
  sleep 5
done
kubeadm version -o short
"""


def read_key_file(path: str) -> str:
    if not os.path.exists(path):
        raise pulumi.RunError(f"key file not found: {path}")
    with open(path, "r") as f:
        return f.read().strip()


class KubeadmCluster(pulumi.ComponentResource):
    """Security group, key pair and one EC2 instance per node role"""

    def __init__(
        self,
        name: str,
        config: StackConfig,
        environment: Environment,
        opts: pulumi.ResourceOptions = None,
    ):
        super().__init__(t="kubeadm:ec2:Cluster", name=name, props=None, opts=opts)

        child_opts = pulumi.ResourceOptions(parent=self)

        # Key pair from the local public key
        logger.info("Creating key pair from %s...", config.public_key_path)
        self.key_pair = aws.ec2.KeyPair(
            f"{name}-key",
            key_name=f"{name}-key",
            public_key=read_key_file(config.public_key_path),
            tags=common_tags(config, name=f"{name}-key"),
            opts=child_opts,
        )

        logger.info("Creating security group...")
        self.security_group = aws.ec2.SecurityGroup(
            f"{name}-nodes",
            vpc_id=environment.vpc_id,
            description="Kubernetes nodes",
            ingress=[
                # Nodes talk to each other on any port
                {
                    "protocol": "-1",
                    "from_port": 0,
                    "to_port": 0,
                    "self": True,
                    "description": "intra-cluster",
                },
                {
                    "protocol": "tcp",
                    "from_port": 22,
                    "to_port": 22,
                    "cidr_blocks": [config.ssh_cidr],
                    "description": "ssh",
                },
            ],
            egress=[
                {"protocol": "-1", "from_port": 0, "to_port": 0, "cidr_blocks": ["0.0.0.0/0"]}
            ],
            tags=common_tags(config, name=f"{name}-nodes"),
            opts=child_opts,
        )

        self.nodes = {}
        self.readiness = {}
        for role in ROLES:
            hostname = f"{config.cluster_name}-{role}"
            logger.info("Creating %s node %s...", role, hostname)
            self.nodes[role] = aws.ec2.Instance(
                f"{name}-{role}",
                ami=environment.ami_id,
                instance_type=config.instance_type,
                key_name=self.key_pair.key_name,
                subnet_id=environment.subnet_id,
                vpc_security_group_ids=[self.security_group.id],
                associate_public_ip_address=True,
                user_data=render_cloud_config(hostname, config.kubernetes_version),
                user_data_replace_on_change=True,
                metadata_options={
                    "http_endpoint": "enabled",
                    "http_tokens": "required",
                    "http_put_response_hop_limit": 1,
                },
                root_block_device={
                    "volume_size": config.root_volume_size,
                    "volume_type": "gp3",
                },
                tags=common_tags(config, name=hostname, role=role),
                opts=child_opts,
            )

        if config.wait_for_ready:
            private_key = pulumi.Output.secret(read_key_file(config.private_key_path))
            for role, node in self.nodes.items():
                self.readiness[role] = self._readiness_probe(
                    f"{name}-{role}-ready", node, config.ssh_user, private_key
                )

        self.register_outputs(
            {
                "key_name": self.key_pair.key_name,
                "security_group_id": self.security_group.id,
                "instance_ids": {role: node.id for role, node in self.nodes.items()},
            }
        )

    def readiness_options(self, node) -> pulumi.ResourceOptions:
        # Each probe waits on its own node only
        return pulumi.ResourceOptions(parent=self, depends_on=[node])

    def _readiness_probe(self, name, node, user, private_key):
        logger.info("Adding readiness probe %s...", name)
        return remote.Command(
            name,
            connection=remote.ConnectionArgs(
                host=node.public_ip,
                user=user,
                private_key=private_key,
            ),
            create=READINESS_SCRIPT,
            # Re-run whenever the instance is replaced
            triggers=[node.id],
            opts=self.readiness_options(node),
        )

    def node_outputs(self, private_key_path: str, ssh_user: str) -> dict:
        """Per-role stack outputs, keyed by export name"""
        outputs = {}
        for role, node in self.nodes.items():
            prefix = role.replace("-", "_")
            outputs[f"{prefix}_instance_id"] = node.id
            outputs[f"{prefix}_public_ip"] = node.public_ip
            outputs[f"{prefix}_private_ip"] = node.private_ip
            outputs[f"{prefix}_ssh"] = node.public_ip.apply(
                lambda ip: f"ssh -i {private_key_path} {ssh_user}@{ip}"
            )
        return outputs
