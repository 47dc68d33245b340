"""Kubernetes API access needed during renewal."""
import logging
import os
from pathlib import Path
from typing import List, Optional, Union

from kubernetes import client
from kubernetes.client.rest import ApiException

from ...config import Config
from ...utils.kube import load_kubeconfig
from .constants import (
    KUBE_SYSTEM_NAMESPACE,
    KUBEADM_CLUSTER_CONFIG_KEY,
    KUBEADM_CONFIG_FILE,
    KUBEADM_CONFIGMAP,
)
from .errors import ClusterAPIError

logger = logging.getLogger("certctl.kubernetes")


class KubernetesClient:
    """Thin wrapper over the core API with renewal-specific helpers."""

    def __init__(self, core_api: Optional[client.CoreV1Api] = None,
                 version_api: Optional[client.VersionApi] = None,
                 request_timeout: Optional[float] = None):
        self.core = core_api or client.CoreV1Api()
        self.version = version_api or client.VersionApi()
        self.request_timeout = Config.API_REQUEST_TIMEOUT if request_timeout is None else request_timeout

    @classmethod
    def from_kubeconfig(cls, path: Optional[str] = None, cluster_name: Optional[str] = None) -> "KubernetesClient":
        used = load_kubeconfig(path, cluster_name)
        logger.debug(f"Loaded kubeconfig from {used}")
        return cls()

    def check_reachable(self) -> None:
        """Raise ClusterAPIError unless the API server answers."""
        try:
            info = self.version.get_code(_request_timeout=self.request_timeout)
        except Exception as e:
            # urllib3 raises its own exception types for refused connections
            raise ClusterAPIError(f"cluster API unreachable: {e}") from e
        logger.debug(f"Cluster API reachable, version {getattr(info, 'git_version', '?')}")

    def get_configmap(self, name: str, namespace: str) -> Optional[client.V1ConfigMap]:
        try:
            return self.core.read_namespaced_config_map(name, namespace,
                                                        _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterAPIError(f"reading configmap {namespace}/{name}: {e.reason}") from e

    def backup_bootstrap_config(self, dest_dir: Union[str, Path]) -> Path:
        """Write kubeadm's ClusterConfiguration to ``dest_dir/kubeadm-config.yaml``."""
        cm = self.get_configmap(KUBEADM_CONFIGMAP, KUBE_SYSTEM_NAMESPACE)
        if cm is None:
            raise ClusterAPIError(f"configmap {KUBE_SYSTEM_NAMESPACE}/{KUBEADM_CONFIGMAP} not found")
        data = (cm.data or {}).get(KUBEADM_CLUSTER_CONFIG_KEY)
        if not data:
            raise ClusterAPIError(f"{KUBEADM_CLUSTER_CONFIG_KEY} missing from {KUBEADM_CONFIGMAP}")

        dest = Path(dest_dir) / KUBEADM_CONFIG_FILE
        fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(data)
        return dest

    def get_secret(self, name: str, namespace: str) -> Optional[client.V1Secret]:
        """Return the secret, or None if it does not exist."""
        try:
            return self.core.read_namespaced_secret(name, namespace, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterAPIError(f"reading secret {namespace}/{name}: {e.reason}") from e

    def create_secret(self, secret: client.V1Secret) -> None:
        namespace = secret.metadata.namespace
        try:
            self.core.create_namespaced_secret(namespace, secret, _request_timeout=self.request_timeout)
        except ApiException as e:
            raise ClusterAPIError(f"creating secret {namespace}/{secret.metadata.name}: {e.reason}") from e

    def update_secret(self, secret: client.V1Secret) -> None:
        namespace = secret.metadata.namespace
        try:
            self.core.replace_namespaced_secret(secret.metadata.name, namespace, secret,
                                               _request_timeout=self.request_timeout)
        except ApiException as e:
            raise ClusterAPIError(f"updating secret {namespace}/{secret.metadata.name}: {e.reason}") from e

    def namespace_exists(self, name: str) -> bool:
        try:
            self.core.read_namespace(name, _request_timeout=self.request_timeout)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise ClusterAPIError(f"reading namespace {name}: {e.reason}") from e

    def create_namespace(self, name: str) -> None:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
        try:
            self.core.create_namespace(body, _request_timeout=self.request_timeout)
            logger.info(f"Created namespace {name}")
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"Namespace {name} already exists")
                return
            raise ClusterAPIError(f"creating namespace {name}: {e.reason}") from e

    def list_nodes(self, label_selector: str = "") -> List[client.V1Node]:
        try:
            return self.core.list_node(label_selector=label_selector,
                                       _request_timeout=self.request_timeout).items
        except ApiException as e:
            raise ClusterAPIError(f"listing nodes: {e.reason}") from e

    @staticmethod
    def node_internal_ip(node: client.V1Node) -> Optional[str]:
        for address in (node.status.addresses or []) if node.status else []:
            if address.type == "InternalIP":
                return address.address
        return None

    @staticmethod
    def node_os_image(node: client.V1Node) -> str:
        info = node.status.node_info if node.status else None
        return (info.os_image if info else "") or ""

