import os
import tempfile
from pathlib import Path
from typing import Optional

from kubernetes import config


def default_kubeconfig_path(cluster_name: str) -> Path:
    """Location of the kubeconfig written next to the cluster's generated files."""
    return Path(cluster_name) / f"{cluster_name}-eks-a-cluster.kubeconfig"


def resolve_kubeconfig(path: Optional[str] = None, cluster_name: Optional[str] = None) -> Optional[str]:
    """
    Pick the kubeconfig to use: an explicit path, then $KUBECONFIG, then the
    cluster's generated kubeconfig. Returns None when nothing is found.
    """
    if path:
        return path
    if os.environ.get("KUBECONFIG"):
        return os.environ["KUBECONFIG"]
    if cluster_name:
        candidate = default_kubeconfig_path(cluster_name)
        if candidate.exists():
            return str(candidate)
    return None


def load_kubeconfig(path: Optional[str] = None, cluster_name: Optional[str] = None) -> str:
    """
    Load the kubeconfig from a given path or from the KUBECONFIG_CONTENT env var.
    Returns the actual path used to load the kubeconfig.
    """
    # CI/CD secret-based loading
    if "KUBECONFIG_CONTENT" in os.environ:
        fd, temp_path = tempfile.mkstemp(prefix="certctl-kubeconfig-", suffix=".yaml")
        with os.fdopen(fd, "w") as f:
            f.write(os.environ["KUBECONFIG_CONTENT"])
        config.load_kube_config(config_file=temp_path)
        return temp_path

    path = resolve_kubeconfig(path, cluster_name)
    if path:
        resolved = Path(os.path.expanduser(path)).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"❌ Kubeconfig not found: {resolved}")
        config.load_kube_config(config_file=str(resolved))
        return str(resolved)

    raise ValueError("No kubeconfig path provided and KUBECONFIG_CONTENT is not set.")
