"""Certificate renewal command.

Renews external etcd and control-plane certificates for a cluster, using
either a YAML config file or node information discovered from the cluster.
"""

import logging
import traceback
from typing import Optional

import typer
from kubernetes.config.config_exception import ConfigException

from ..config import Config
from ..modules.certificates.config import (
    RenewalConfig,
    apply_passphrase_env,
    parse_config,
    validate_component,
    validate_config,
)
from ..modules.certificates.constants import COMPONENT_CONTROL_PLANE, COMPONENT_ETCD
from ..modules.certificates.discovery import build_config_from_cluster
from ..modules.certificates.errors import CertificateError, ConfigValidationError
from ..modules.certificates.kubernetes import KubernetesClient
from ..modules.certificates.renewer import build_renewer
from ..modules.ssh import SSHError
from ..utils import redact_sensitive_data
from ..utils.context import ContextCancelled, RunContext

logger = logging.getLogger("certctl.renew")

app = typer.Typer(help="Renew cluster certificates")


def load_renewal_config(
    config_file: Optional[str],
    cluster_name: Optional[str],
    ssh_key: Optional[str],
    component: str,
    kubeconfig: Optional[str] = None,
) -> RenewalConfig:
    """Resolve the renewal config from exactly one source.

    Args:
        config_file: YAML config path
        cluster_name: Cluster to discover nodes from
        ssh_key: Private key for discovered nodes
        component: Component selector
        kubeconfig: Kubeconfig used for discovery

    Returns:
        Validated renewal configuration
    """
    if not config_file and not cluster_name:
        raise ConfigValidationError("must specify either --config or --cluster-name")

    if config_file:
        if cluster_name:
            logger.warning("Both --config and --cluster-name provided, using --config")
        return parse_config(config_file, component)

    if not ssh_key:
        raise ConfigValidationError("--ssh-key is required when using --cluster-name")

    kube = KubernetesClient.from_kubeconfig(kubeconfig, cluster_name)
    cfg = build_config_from_cluster(cluster_name, ssh_key, kube=kube)
    validate_config(cfg, component)
    return apply_passphrase_env(cfg)


@app.command("certificates")
def renew_certificates(
    config_file: Optional[str] = typer.Option(
        None, "--config", "-f", help="Config file containing node and SSH information"
    ),
    cluster_name: Optional[str] = typer.Option(
        None, "--cluster-name", help="Discover nodes from this cluster instead of a config file"
    ),
    ssh_key: Optional[str] = typer.Option(
        None, "--ssh-key", help="SSH private key for discovered nodes"
    ),
    component: str = typer.Option(
        "", "--component", "-c",
        help=f"Component to renew certificates for ({COMPONENT_ETCD} or {COMPONENT_CONTROL_PLANE}). "
             "If not specified, renews both."
    ),
    verbosity: int = typer.Option(0, "--verbosity", "-v", help="Set the verbosity level"),
    ssh_container: str = typer.Option(
        Config.SSH_CONTAINER, "--ssh-container", help="Run ssh inside this local Docker container"
    ),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to the cluster kubeconfig"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Abort the run after this many seconds"),
):
    """Renew external etcd and control plane certificates."""
    try:
        Config.validate()
        validate_component(component)
        cfg = load_renewal_config(config_file, cluster_name, ssh_key, component, kubeconfig)
        logger.debug(f"Renewal config: {redact_sensitive_data(cfg.model_dump(by_alias=True))}")
        renewer = build_renewer(
            cfg,
            verbosity=verbosity,
            ssh_container=ssh_container,
            kubeconfig=kubeconfig,
        )
    except (ConfigValidationError, CertificateError, SSHError, ConfigException,
            FileNotFoundError, ValueError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    ctx = RunContext(timeout)
    try:
        state = renewer.renew_certificates(ctx, cfg, component)
    except KeyboardInterrupt:
        ctx.cancel()
        typer.echo(f"❌ Interrupted, backup kept at {renewer.backup_dir}", err=True)
        raise typer.Exit(code=130)
    except (ConfigValidationError, CertificateError, SSHError, ContextCancelled) as e:
        logger.debug(traceback.format_exc())
        typer.echo(f"❌ Error: {e}", err=True)
        raise typer.Exit(code=1)

    if state.warnings:
        typer.echo(f"⚠️ Completed with {len(state.warnings)} warning(s)")
    typer.echo(f"✅ Renewed certificates on {len(state.nodes_renewed)} node(s)")
