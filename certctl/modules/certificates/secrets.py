"""Publish the renewed etcd client pair to the cluster."""
import base64
import logging

from kubernetes import client

from .constants import ETCD_CLIENT_SECRET_SUFFIX, SYSTEM_NAMESPACE
from .kubernetes import KubernetesClient
from .staging import CertificateStaging

logger = logging.getLogger("certctl.secrets")


def etcd_client_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-{ETCD_CLIENT_SECRET_SUFFIX}"


def manual_update_hint(cluster_name: str) -> str:
    return (
        f"kubectl edit secret {etcd_client_secret_name(cluster_name)} "
        f"-n {SYSTEM_NAMESPACE}"
    )


def update_apiserver_etcd_client_secret(kube: KubernetesClient, staging: CertificateStaging,
                                        cluster_name: str) -> None:
    """Create or overwrite the TLS secret holding the apiserver's etcd client pair.

    Args:
        kube: Cluster API client
        staging: Workspace holding the freshly renewed pair
        cluster_name: Cluster the secret belongs to

    Raises:
        StagingError: If the staged pair is missing
        ClusterAPIError: If any API call fails
    """
    cert, key = staging.read_etcd_client_certs()
    data = {
        "tls.crt": base64.b64encode(cert).decode(),
        "tls.key": base64.b64encode(key).decode(),
    }

    if not kube.namespace_exists(SYSTEM_NAMESPACE):
        kube.create_namespace(SYSTEM_NAMESPACE)

    name = etcd_client_secret_name(cluster_name)
    secret = kube.get_secret(name, SYSTEM_NAMESPACE)
    if secret is None:
        secret = client.V1Secret(
            api_version="v1",
            kind="Secret",
            type="kubernetes.io/tls",
            metadata=client.V1ObjectMeta(name=name, namespace=SYSTEM_NAMESPACE),
            data=data,
        )
        kube.create_secret(secret)
        logger.info(f"✅ Created secret {SYSTEM_NAMESPACE}/{name}")
        return

    secret.data = data
    kube.update_secret(secret)
    logger.info(f"✅ Updated secret {SYSTEM_NAMESPACE}/{name}")
