"""Build a renewal configuration from a running cluster.

Control-plane nodes come from the node list, external etcd members from
kubeadm's ClusterConfiguration, and the SSH user from the cluster spec that
was written next to the kubeconfig when the cluster was created.
"""
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import yaml

from .config import NodeConfig, RenewalConfig, SSHConfig
from .constants import (
    CONTROL_PLANE_NODE_LABEL,
    KUBE_SYSTEM_NAMESPACE,
    KUBEADM_CLUSTER_CONFIG_KEY,
    KUBEADM_CONFIGMAP,
    OS_BOTTLEROCKET,
    OS_RHEL,
    OS_UBUNTU,
)
from .errors import ClusterAPIError, ConfigValidationError
from .kubernetes import KubernetesClient

logger = logging.getLogger("certctl.discovery")

DEFAULT_SSH_USER = "ec2-user"
CONTROL_PLANE_ANNOTATION = "anywhere.eks.amazonaws.com/control-plane"


def cluster_spec_path(cluster_name: str) -> Path:
    return Path(cluster_name) / f"{cluster_name}-eks-a-cluster.yaml"


def detect_node_os(os_image: str) -> str:
    """Map a node's osImage to an OS family, or '' when unknown."""
    image = os_image.lower()
    if "bottlerocket" in image:
        return OS_BOTTLEROCKET
    if "ubuntu" in image:
        return OS_UBUNTU
    if "rhel" in image or "red hat" in image:
        return OS_RHEL
    logger.debug(f"Could not detect OS from osImage: {os_image}")
    return ""


def parse_etcd_endpoints(endpoints: Iterable[str]) -> List[str]:
    """Extract hosts from ``scheme://host:port`` endpoints, skipping malformed ones."""
    hosts = []
    for endpoint in endpoints:
        parts = endpoint.split("://")
        if len(parts) != 2:
            continue
        hosts.append(parts[1].split(":")[0])
    return hosts


def determine_ssh_user(os_type: str, config_user: str) -> str:
    """Ubuntu and Bottlerocket images have fixed users; RHEL keeps the configured one."""
    if os_type == OS_UBUNTU and config_user != "ubuntu":
        logger.warning(f"Overriding SSH user from '{config_user}' to 'ubuntu' for Ubuntu nodes")
        return "ubuntu"
    if os_type == OS_BOTTLEROCKET and config_user != "ec2-user":
        logger.warning(f"Overriding SSH user from '{config_user}' to 'ec2-user' for Bottlerocket nodes")
        return "ec2-user"
    return config_user


def find_ssh_user(documents: List[dict]) -> str:
    """First user of the control-plane VSphereMachineConfig, else of any machine config."""
    machine_configs = [d for d in documents if d.get("kind") == "VSphereMachineConfig"]
    for doc in machine_configs:
        annotations = (doc.get("metadata") or {}).get("annotations") or {}
        users = (doc.get("spec") or {}).get("users") or []
        if annotations.get(CONTROL_PLANE_ANNOTATION) == "true" and users:
            return users[0].get("name", "")
    for doc in machine_configs:
        users = (doc.get("spec") or {}).get("users") or []
        if users:
            return users[0].get("name", "")
    return ""


def read_cluster_spec(path: Path) -> List[dict]:
    try:
        with open(path, "r") as f:
            return [doc for doc in yaml.safe_load_all(f) if isinstance(doc, dict)]
    except OSError as e:
        raise ConfigValidationError(f"failed to read cluster config file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"failed to parse cluster config file {path}: {e}") from e


def external_etcd_endpoints(kube: KubernetesClient) -> List[str]:
    cm = kube.get_configmap(KUBEADM_CONFIGMAP, KUBE_SYSTEM_NAMESPACE)
    if cm is None:
        raise ClusterAPIError(f"failed to get {KUBEADM_CONFIGMAP}: not found")
    raw = (cm.data or {}).get(KUBEADM_CLUSTER_CONFIG_KEY, "")
    try:
        cluster_config = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ClusterAPIError(f"failed to parse cluster configuration: {e}") from e
    external = (cluster_config.get("etcd") or {}).get("external") or {}
    return list(external.get("endpoints") or [])


def control_plane_nodes(kube: KubernetesClient) -> Tuple[List[str], str]:
    """Addresses of control-plane nodes and the OS of the first one recognised."""
    addresses: List[str] = []
    os_type = ""
    for node in kube.list_nodes(label_selector=CONTROL_PLANE_NODE_LABEL):
        address = kube.node_internal_ip(node)
        if address is None and node.status and node.status.addresses:
            address = node.status.addresses[0].address
            logger.warning(f"InternalIP not found for node {node.metadata.name}, using {address} instead")
        if address:
            addresses.append(address)
        if not os_type:
            os_type = detect_node_os(kube.node_os_image(node))
    return addresses, os_type


def build_config_from_cluster(cluster_name: str, ssh_key_path: str,
                              kube: Optional[KubernetesClient] = None,
                              spec_path: Optional[Path] = None) -> RenewalConfig:
    """Discover nodes, OS and SSH user for ``cluster_name``.

    Args:
        cluster_name: Name of the cluster
        ssh_key_path: Private key used for every node
        kube: Cluster API client (loaded from the cluster's kubeconfig if omitted)
        spec_path: Cluster spec file, defaults to ./<cluster>/<cluster>-eks-a-cluster.yaml

    Returns:
        A renewal configuration for all control-plane and etcd nodes

    Raises:
        ConfigValidationError: If the key or the cluster spec cannot be read
        ClusterAPIError: If the cluster cannot be queried
    """
    ssh_key_path = os.path.expanduser(ssh_key_path)
    if not os.path.exists(ssh_key_path):
        raise ConfigValidationError(f"SSH key file not found: {ssh_key_path}")

    kube = kube or KubernetesClient.from_kubeconfig(cluster_name=cluster_name)
    etcd_nodes = parse_etcd_endpoints(external_etcd_endpoints(kube))
    cp_nodes, os_type = control_plane_nodes(kube)

    documents = read_cluster_spec(spec_path or cluster_spec_path(cluster_name))
    config_user = find_ssh_user(documents)
    if not config_user:
        config_user = DEFAULT_SSH_USER
        logger.info(f"No SSH username found in cluster config, using default: {config_user}")
    ssh_user = determine_ssh_user(os_type, config_user)

    ssh = SSHConfig(user=ssh_user, key_path=ssh_key_path)
    cfg = RenewalConfig(
        cluster_name=cluster_name,
        control_plane=NodeConfig(nodes=cp_nodes, os=os_type, ssh=ssh),
        etcd=NodeConfig(nodes=etcd_nodes, os=os_type if etcd_nodes else "", ssh=ssh.model_copy()),
    )
    logger.info(
        f"Discovered {len(cp_nodes)} control plane node(s) and {len(etcd_nodes)} etcd node(s), "
        f"os={os_type or 'unknown'}, ssh user={ssh_user}"
    )
    return cfg
