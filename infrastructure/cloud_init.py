"""
Boot-time configuration for the Kubernetes nodes.

Each node gets a #cloud-config document that prepares it for kubeadm.
kubelet, kubeadm and kubectl come from pkgs.k8s.io and are held at the
configured minor series. Every command is safe to re-run, but a
failure halfway through leaves the packages in whatever state apt reached.
"""
import logging

import yaml

logger = logging.getLogger(__name__)

APT_RETRY_PATH = "/usr/local/bin/apt-retry"
APT_RETRY_ATTEMPTS = 5
APT_RETRY_DELAY = 5

KEYRING_PATH = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
SOURCES_LIST_PATH = "/etc/apt/sources.list.d/kubernetes.list"
CONTAINERD_CONFIG_PATH = "/etc/containerd/config.toml"

KERNEL_MODULES = ["overlay", "br_netfilter"]

SYSCTL_SETTINGS = {
    "net.bridge.bridge-nf-call-iptables": 1,
    "net.bridge.bridge-nf-call-ip6tables": 1,
    "net.ipv4.ip_forward": 1,
}

KUBERNETES_PACKAGES = ["kubelet", "kubeadm", "kubectl"]


class _CloudConfigDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper, data):
    # Scripts and file bodies read better as literal blocks
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_CloudConfigDumper.add_representer(str, _represent_str)


def kubernetes_repo_url(kubernetes_version: str) -> str:
    return f"https://pkgs.k8s.io/core:/stable:/{kubernetes_version}/deb/"


def apt_retry_script(attempts: int = APT_RETRY_ATTEMPTS, delay: int = APT_RETRY_DELAY) -> str:
    """Shell wrapper that re-runs its arguments until they succeed or attempts run out."""
    return f"""#!/bin/sh
n=1
until "$@"; do
  if [ "$n" -ge {attempts} ]; then
    echo "apt-retry: giving up after {attempts} attempts: $*" >&2
    exit 1
  fi
  echo "apt-retry: attempt $n failed, retrying in {delay}s" >&2
  n=$((n + 1))
  sleep {delay}
done
"""


def runcmd_steps(kubernetes_version: str) -> list:
    """Ordered (step, commands) pairs run on first boot."""
    repo_url = kubernetes_repo_url(kubernetes_version)
    packages = " ".join(KUBERNETES_PACKAGES)

    return [
        (
            "disable-swap",
            [
                "swapoff -a",
                r"sed -i -E '/^[^#].*\sswap\s/ s/^/#/' /etc/fstab",
            ],
        ),
        (
            "load-kernel-modules",
            [f"modprobe {module}" for module in KERNEL_MODULES] + ["sysctl --system"],
        ),
        (
            "install-containerd",
            [
                f"{APT_RETRY_PATH} apt-get update",
                f"{APT_RETRY_PATH} apt-get install -y apt-transport-https ca-certificates curl gpg containerd",
            ],
        ),
        (
            "configure-cgroup-driver",
            [
                "mkdir -p /etc/containerd",
                f"containerd config default > {CONTAINERD_CONFIG_PATH}",
                f"sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' {CONTAINERD_CONFIG_PATH}",
                "systemctl restart containerd",
            ],
        ),
        (
            "add-kubernetes-repo",
            [
                "mkdir -p -m 755 /etc/apt/keyrings",
                f"curl -fsSL {repo_url}Release.key | gpg --dearmor --yes -o {KEYRING_PATH}",
                f"echo 'deb [signed-by={KEYRING_PATH}] {repo_url} /' > {SOURCES_LIST_PATH}",
            ],
        ),
        (
            "install-kubernetes",
            [
                f"{APT_RETRY_PATH} apt-get update",
                f"{APT_RETRY_PATH} apt-get install -y {packages}",
            ],
        ),
        ("pin-versions", [f"apt-mark hold {packages}"]),
        (
            "enable-services",
            [
                "systemctl enable --now containerd",
                "systemctl enable --now kubelet",
            ],
        ),
    ]


def render_cloud_config(hostname: str, kubernetes_version: str) -> str:
    """Render the #cloud-config document for one node."""
    runcmd = ["export DEBIAN_FRONTEND=noninteractive"]
    for step, commands in runcmd_steps(kubernetes_version):
        runcmd.append(f"echo 'cloud-init: {step}'")
        runcmd.extend(commands)

    document = {
        "hostname": hostname,
        "preserve_hostname": False,
        "manage_etc_hosts": True,
        "write_files": [
            {
                "path": "/etc/modules-load.d/k8s.conf",
                "content": "".join(f"{module}\n" for module in KERNEL_MODULES),
            },
            {
                "path": "/etc/sysctl.d/k8s.conf",
                "content": "".join(
                    f"{key} = {value}\n" for key, value in SYSCTL_SETTINGS.items()
                ),
            },
            {
                "path": APT_RETRY_PATH,
                "permissions": "0755",
                "content": apt_retry_script(),
            },
        ],
        "runcmd": runcmd,
    }

    logger.debug("Rendered cloud-init for %s (kubernetes %s)", hostname, kubernetes_version)
    body = yaml.dump(
        document,
        Dumper=_CloudConfigDumper,
        default_flow_style=False,
        sort_keys=False,
        # Keep long shell commands on one line
        width=float("inf"),
    )
    return "#cloud-config\n" + body
