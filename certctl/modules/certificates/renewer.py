"""Renewal orchestration across etcd and control-plane nodes.

Phases run in a fixed order, each gating the next::

    validate component -> check API -> back up kubeadm config
        -> renew etcd -> renew control plane -> clean up

Nodes are processed one at a time and the first node failure stops the run.
Nothing is rolled back: on failure the backup workspace is kept for manual
recovery.
"""
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from kubernetes.config.config_exception import ConfigException

from ..ssh import SSHError, SSHRunner, build_ssh_runner
from ...config import Config
from ...utils import RetryError, retry_call
from ...utils.context import ContextCancelled, RunContext
from .config import NodeConfig, RenewalConfig, SSHConfig, validate_component, validate_node_config
from .constants import COMPONENT_ALL, COMPONENT_CONTROL_PLANE, COMPONENT_ETCD
from .errors import (
    CertificateError,
    ClusterAPIError,
    ConfigValidationError,
    RenewalError,
)
from .kubernetes import KubernetesClient
from .models import RenewalPhase, RenewalState
from .renewers import OSRenewer, build_os_renewer
from .secrets import manual_update_hint, update_apiserver_etcd_client_secret
from .staging import CertificateStaging

logger = logging.getLogger("certctl.renewer")


class Renewer:
    """Runs a full renewal for one cluster."""

    def __init__(
        self,
        kube: Optional[KubernetesClient],
        ssh: SSHRunner,
        os_renewer: OSRenewer,
        staging: CertificateStaging,
        api_retries: int = None,
        api_retry_delay: float = None,
    ):
        """
        Args:
            kube: Cluster API client, or None when no kubeconfig is available
            ssh: Remote command runner shared by every node
            os_renewer: Strategy for the cluster's OS family
            staging: Backup workspace for this run
            api_retries: Attempts made to reach the API server
            api_retry_delay: Seconds between those attempts
        """
        self.kube = kube
        self.ssh = ssh
        self.os = os_renewer
        self.staging = staging
        self.api_retries = Config.API_RETRIES if api_retries is None else api_retries
        if self.api_retries < 1:
            raise ValueError("api_retries must be at least 1")
        self.api_retry_delay = Config.API_RETRY_DELAY if api_retry_delay is None else api_retry_delay
        self.state = RenewalState()
        self._ssh_configs: Dict[str, SSHConfig] = {}

    @property
    def backup_dir(self) -> Path:
        return self.staging.backup_dir

    def renew_certificates(self, ctx: RunContext, cfg: RenewalConfig, component: str = COMPONENT_ALL) -> RenewalState:
        """Renew certificates for the selected component(s).

        Args:
            ctx: Cancellation and deadline for the whole run
            cfg: Cluster nodes and credentials
            component: '', 'etcd' or 'control-plane'

        Returns:
            The final run state

        Raises:
            ConfigValidationError: If the selector or node credentials are invalid
            CertificateError: If a node, staging or cleanup step fails
            ContextCancelled: If the run was cancelled or timed out
        """
        self.state = state = RenewalState()
        try:
            state.update_phase(RenewalPhase.VALIDATE_COMPONENT)
            process_etcd, process_control_plane = self._validate(cfg, component)

            state.update_phase(RenewalPhase.CHECK_API_REACHABILITY)
            self._check_api_reachability(ctx)

            state.update_phase(RenewalPhase.BACKUP_CLUSTER_CONFIG)
            self._backup_cluster_config()

            if process_etcd:
                state.update_phase(RenewalPhase.RENEW_ETCD)
                self._renew_etcd(ctx, cfg)

            if process_control_plane:
                state.update_phase(RenewalPhase.RENEW_CONTROL_PLANE)
                self._renew_control_plane(ctx, cfg, component)

            state.update_phase(RenewalPhase.CLEANUP)
            logger.info("Cleaning up temporary files")
            self.staging.cleanup()
        except Exception as e:
            state.add_error(str(e))
            if state.failed_phase != RenewalPhase.CLEANUP and self.backup_dir.exists():
                logger.error(f"❌ Renewal failed, backup workspace kept at {self.backup_dir}")
            raise

        state.update_phase(RenewalPhase.COMPLETED)
        logger.info("✅ Certificate renewal completed successfully")
        return state

    def _validate(self, cfg: RenewalConfig, component: str) -> Tuple[bool, bool]:
        validate_component(component)
        process_etcd = component in (COMPONENT_ALL, COMPONENT_ETCD) and cfg.has_external_etcd
        process_control_plane = component in (COMPONENT_ALL, COMPONENT_CONTROL_PLANE)

        if process_control_plane and not cfg.control_plane.nodes:
            raise ConfigValidationError("no control plane nodes configured")
        if component == COMPONENT_ETCD and not process_etcd:
            logger.info("No etcd nodes configured, nothing to renew")

        if process_etcd:
            self._init_ssh(COMPONENT_ETCD, cfg.etcd)
        if process_control_plane:
            self._init_ssh(COMPONENT_CONTROL_PLANE, cfg.control_plane)
        return process_etcd, process_control_plane

    def _init_ssh(self, component: str, node_cfg: NodeConfig) -> None:
        try:
            validate_node_config(node_cfg)
        except ConfigValidationError as e:
            raise ConfigValidationError(f"validating {component} config: {e}") from e
        try:
            self.ssh.init_ssh_config(node_cfg.ssh)
        except SSHError as e:
            raise ConfigValidationError(f"initializing SSH config for {component}: {e}") from e
        # Copy holds any passphrase prompted for during init.
        self._ssh_configs[component] = self.ssh.ssh_config

    def _use_ssh(self, component: str) -> None:
        ssh_cfg = self._ssh_configs.get(component)
        if ssh_cfg is not None and self.ssh.ssh_config is not ssh_cfg:
            self.ssh.init_ssh_config(ssh_cfg)
            self._ssh_configs[component] = self.ssh.ssh_config

    def _check_api_reachability(self, ctx: RunContext) -> None:
        if self.kube is None:
            self._warn("No kubeconfig available, skipping API server reachability check")
            return
        logger.info("Checking if Kubernetes API server is reachable...")
        try:
            retry_call(
                self.kube.check_reachable,
                attempts=self.api_retries,
                delay=self.api_retry_delay,
                exceptions=(ClusterAPIError,),
                sleep=ctx.sleep,
                description="API server reachability check",
            )
        except RetryError as e:
            self._warn(f"API server unreachable, proceeding with caution: {e}")
            return
        logger.info("✅ API server is reachable")

    def _backup_cluster_config(self) -> None:
        if self.kube is None:
            self._warn("No kubeconfig available, skipping kubeadm-config backup")
            return
        logger.info("Attempting to backup kubeadm-config ConfigMap...")
        try:
            path = self.kube.backup_bootstrap_config(self.backup_dir)
        except Exception as e:
            self._warn(f"Could not backup kubeadm-config, continuing without backup: {e}")
            return
        logger.info(f"kubeadm-config backed up to {path}")

    def _renew_etcd(self, ctx: RunContext, cfg: RenewalConfig) -> None:
        logger.info("Starting etcd certificate renewal process")
        self._use_ssh(COMPONENT_ETCD)
        for node in cfg.etcd.nodes:
            self._renew_node(COMPONENT_ETCD, node, lambda n: self.os.renew_etcd_certs(ctx, n))

        self.staging.save_certs_to_persistent_storage(cfg.cluster_name)
        self._propagate_secret(cfg.cluster_name)
        logger.info("✅ Etcd certificate renewal process completed successfully")

    def _propagate_secret(self, cluster_name: str) -> None:
        if self.kube is None:
            self._warn("No kubeconfig available, apiserver-etcd-client secret not updated")
            logger.info(f"Update it once the API server is reachable: {manual_update_hint(cluster_name)}")
            return
        try:
            update_apiserver_etcd_client_secret(self.kube, self.staging, cluster_name)
        except Exception as e:
            self._warn(f"Failed to update apiserver-etcd-client secret: {e}")
            logger.info("You may need to manually update the secret after the API server is reachable")
            logger.info(f"Use kubectl edit secret to update the secret: {manual_update_hint(cluster_name)}")

    def _renew_control_plane(self, ctx: RunContext, cfg: RenewalConfig, component: str) -> None:
        logger.info("Starting control plane certificate renewal process")
        if cfg.has_external_etcd:
            self.os.ensure_etcd_client_certs()
        self._use_ssh(COMPONENT_CONTROL_PLANE)
        for node in cfg.control_plane.nodes:
            self._renew_node(
                COMPONENT_CONTROL_PLANE, node,
                lambda n: self.os.renew_control_plane_certs(ctx, n, cfg, component),
            )
        logger.info("✅ Control plane certificate renewal process completed successfully")

    def _renew_node(self, component: str, node: str, renew) -> None:
        try:
            renew(node)
        except ContextCancelled:
            raise
        except (CertificateError, SSHError, OSError) as e:
            raise RenewalError(
                f"renewing certificates for {component} node {node}: {e}",
                component=component, node=node,
            ) from e
        self.state.record_node(component, node)

    def _warn(self, message: str) -> None:
        logger.warning(f"⚠️ {message}")
        self.state.add_warning(message)


def build_renewer(
    cfg: RenewalConfig,
    verbosity: int = 0,
    ssh_container: str = "",
    kubeconfig: Optional[str] = None,
    backup_base_dir: Optional[Union[str, Path]] = None,
    persistent_dir: Optional[Union[str, Path]] = None,
) -> Renewer:
    """Wire up a Renewer for ``cfg``: workspace, SSH runner, OS strategy and API client."""
    staging = CertificateStaging.create(backup_base_dir, persistent_dir)
    ssh = build_ssh_runner(verbosity=verbosity, ssh_container=ssh_container)
    os_renewer = build_os_renewer(cfg.effective_os, ssh, staging)

    try:
        kube = KubernetesClient.from_kubeconfig(kubeconfig, cfg.cluster_name)
    except (ConfigException, FileNotFoundError, ValueError) as e:
        logger.warning(f"⚠️ Cluster API client unavailable: {e}")
        kube = None

    return Renewer(kube, ssh, os_renewer, staging)
