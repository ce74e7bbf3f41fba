""" Stack Config """
import ipaddress
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

import pulumi

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-west-2"
DEFAULT_INSTANCE_TYPE = "t3.medium"
DEFAULT_SSH_CIDR = "0.0.0.0/0"
DEFAULT_PUBLIC_KEY_PATH = "~/.ssh/id_rsa.pub"
DEFAULT_KUBERNETES_VERSION = "v1.30"
DEFAULT_CLUSTER_NAME = "k8s"
DEFAULT_ROOT_VOLUME_SIZE = 20
DEFAULT_SSH_USER = "ubuntu"

# Canonical publishes the current Ubuntu AMI ids under this SSM path
DEFAULT_AMI_SSM_PARAMETER = (
    "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
)

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)$")


@dataclass(frozen=True)
class StackConfig:
    profile: Optional[str]
    region: str
    instance_type: str
    ssh_cidr: str
    public_key_path: str
    private_key_path: str
    kubernetes_version: str
    cluster_name: str
    ami_ssm_parameter: str
    root_volume_size: int
    wait_for_ready: bool
    ssh_user: str


def normalize_kubernetes_version(value: str) -> str:
    """Turn "1.30" or "v1.30" into the "v1.30" series used by pkgs.k8s.io"""
    match = _VERSION_RE.match(value.strip())
    if not match:
        raise pulumi.RunError(
            f"kubernetes_version must be a minor series like v1.30, got {value!r}"
        )
    return f"v{match.group(1)}.{match.group(2)}"


def validate_cidr(value: str) -> str:
    try:
        network = ipaddress.IPv4Network(value.strip(), strict=False)
    except ValueError as e:
        raise pulumi.RunError(f"ssh_cidr is not a valid IPv4 CIDR: {value!r}") from e
    return str(network)


def default_private_key_path(public_key_path: str) -> str:
    root, ext = os.path.splitext(public_key_path)
    return root if ext == ".pub" else public_key_path


def load_config(config: pulumi.Config = None) -> StackConfig:
    """Read the stack configuration, applying defaults."""
    if config is None:
        config = pulumi.Config()

    ssh_cidr = validate_cidr(config.get("ssh_cidr") or DEFAULT_SSH_CIDR)
    if ssh_cidr == DEFAULT_SSH_CIDR:
        logger.warning("ssh_cidr is %s, SSH is open to the internet", ssh_cidr)

    public_key_path = os.path.expanduser(
        config.get("public_key_path") or DEFAULT_PUBLIC_KEY_PATH
    )
    private_key_path = config.get("private_key_path")
    if private_key_path:
        private_key_path = os.path.expanduser(private_key_path)
    else:
        private_key_path = default_private_key_path(public_key_path)

    root_volume_size = config.get_int("root_volume_size")
    if root_volume_size is None:
        root_volume_size = DEFAULT_ROOT_VOLUME_SIZE
    if root_volume_size < 8:
        raise pulumi.RunError(
            f"root_volume_size must be at least 8 GiB, got {root_volume_size}"
        )

    wait_for_ready = config.get_bool("wait_for_ready")

    return StackConfig(
        profile=config.get("profile"),
        region=config.get("region") or DEFAULT_REGION,
        instance_type=config.get("instance_type") or DEFAULT_INSTANCE_TYPE,
        ssh_cidr=ssh_cidr,
        public_key_path=public_key_path,
        private_key_path=private_key_path,
        kubernetes_version=normalize_kubernetes_version(
            config.get("kubernetes_version") or DEFAULT_KUBERNETES_VERSION
        ),
        cluster_name=config.get("cluster_name") or DEFAULT_CLUSTER_NAME,
        ami_ssm_parameter=config.get("ami_ssm_parameter") or DEFAULT_AMI_SSM_PARAMETER,
        root_volume_size=root_volume_size,
        wait_for_ready=bool(wait_for_ready),
        ssh_user=config.get("ssh_user") or DEFAULT_SSH_USER,
    )


def common_tags(config: StackConfig, name: str = None, role: str = None) -> dict:
    tags = {
        "Project": pulumi.get_project(),
        "Stack": pulumi.get_stack(),
        "Cluster": config.cluster_name,
        "ManagedBy": "Pulumi",
    }
    if name:
        tags["Name"] = name
    if role:
        tags["Role"] = role
    return tags
