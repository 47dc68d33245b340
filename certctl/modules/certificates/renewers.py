"""Per-OS certificate renewal on a single node.

A renewer is chosen once per run from the configured OS family and is then
called for every node. Linux nodes (Ubuntu, RHEL) run kubeadm and etcdadm
directly under sudo. Bottlerocket nodes have an immutable root filesystem, so
the same tools run from the host's kubeadm-bootstrap image inside a sheltie
root session.
"""
import logging
from abc import ABC, abstractmethod

from ..ssh import CommandCancelledError, Commands, SSHError, SSHRunner
from ...config import Config
from ...utils.context import RunContext
from .commands import (
    BottlerocketCertReadCommands,
    BottlerocketCertTransferCommands,
    BottlerocketControlPlaneCommands,
    BottlerocketEtcdCommands,
    LinuxCertTransferCommands,
    LinuxControlPlaneCommands,
    LinuxEtcdCommands,
)
from .config import RenewalConfig
from .constants import OS_BOTTLEROCKET, OS_RHEL, OS_UBUNTU
from .errors import ConfigValidationError, RenewalError, StagingError
from .staging import CertificateStaging

logger = logging.getLogger("certctl.renewers")


def _with_newline(text: str) -> str:
    # Captured output is stripped; PEM files end with a newline.
    return text + "\n" if text else text


class OSRenewer(ABC):
    """Renews certificates on one node of a given OS family."""

    os_type = ""

    def __init__(self, ssh: SSHRunner, staging: CertificateStaging, restart_delay: int = None):
        self.ssh = ssh
        self.staging = staging
        self.restart_delay = Config.POD_RESTART_DELAY if restart_delay is None else restart_delay

    @abstractmethod
    def renew_control_plane_certs(self, ctx: RunContext, node: str, cfg: RenewalConfig,
                                  component: str) -> None:
        """Back up, renew, validate and restart a control-plane node."""

    @abstractmethod
    def renew_etcd_certs(self, ctx: RunContext, node: str) -> None:
        """Back up, renew and validate an etcd node, then stage its client pair."""

    @abstractmethod
    def transfer_certs_to_control_plane(self, ctx: RunContext, node: str) -> None:
        """Push the staged etcd client pair to a control-plane node."""

    @abstractmethod
    def copy_etcd_certs(self, ctx: RunContext, node: str) -> None:
        """Pull the renewed etcd client pair from an etcd node into staging."""

    def ensure_etcd_client_certs(self) -> None:
        """Make sure an etcd client pair is staged, falling back to the cache.

        Raises:
            StagingError: If neither this run nor the cache has the pair
        """
        if self.staging.has_etcd_client_certs():
            return
        logger.info("No etcd client certificates staged in this run, loading from persistent storage")
        try:
            self.staging.load_certs_from_persistent_storage()
        except StagingError as e:
            raise StagingError(f"loading certificates from persistent storage: {e}") from e

    def _run(self, ctx: RunContext, node: str, step: str, commands: Commands) -> None:
        try:
            self.ssh.run_command(ctx, node, commands)
        except CommandCancelledError:
            raise
        except SSHError as e:
            logger.error(f"❌ Failed to {step} on node {node}")
            raise RenewalError(f"{step}: {e}", node=node) from e

    def _output(self, ctx: RunContext, node: str, step: str, commands: Commands) -> str:
        try:
            return self.ssh.run_command_with_output(ctx, node, commands)
        except CommandCancelledError:
            raise
        except SSHError as e:
            logger.error(f"❌ Failed to {step} on node {node}")
            raise RenewalError(f"{step}: {e}", node=node) from e


class LinuxRenewer(OSRenewer):
    """kubeadm and etcdadm on Ubuntu or RHEL nodes."""

    def __init__(self, ssh: SSHRunner, staging: CertificateStaging, os_type: str = OS_UBUNTU,
                 restart_delay: int = None):
        super().__init__(ssh, staging, restart_delay)
        self.os_type = os_type

    def renew_control_plane_certs(self, ctx, node, cfg, component):
        logger.info(f"Processing control plane node ({self.os_type}): {node}")
        external_etcd = cfg.has_external_etcd
        if external_etcd:
            self.ensure_etcd_client_certs()

        cmds = LinuxControlPlaneCommands(self.staging.name, external_etcd,
                                         restart_delay=self.restart_delay)
        self._run(ctx, node, "backup certs", cmds.backup())
        self._run(ctx, node, "renew certs", cmds.renew())
        if external_etcd:
            self.transfer_certs_to_control_plane(ctx, node)
            self._run(ctx, node, "copy etcd certs", cmds.install_etcd_client_certs())
        self._run(ctx, node, "validate certs", cmds.validate())
        self._run(ctx, node, "restart pods", cmds.restart())
        logger.info(f"✅ Renewed certificates for control plane node {node}")

    def transfer_certs_to_control_plane(self, ctx, node):
        cert_b64, key_b64 = self.staging.encoded_etcd_client_certs()
        transfer = LinuxCertTransferCommands(cert_b64, key_b64)
        self._run(ctx, node, "transfer etcd certificate", transfer.write_cert())
        self._run(ctx, node, "transfer etcd key", transfer.write_key())
        logger.debug(f"Transferred etcd client certificates to {node}")

    def renew_etcd_certs(self, ctx, node):
        logger.info(f"Processing etcd node ({self.os_type}): {node}")
        cmds = LinuxEtcdCommands(self.staging.name)
        self._run(ctx, node, "backup certs", cmds.backup())
        self._run(ctx, node, "renew certs", cmds.renew())
        self._run(ctx, node, "validate certs", cmds.validate())
        self.copy_etcd_certs(ctx, node)
        logger.info(f"✅ Renewed certificates for etcd node {node}")

    def copy_etcd_certs(self, ctx, node):
        cmds = LinuxEtcdCommands(self.staging.name)
        cert = self._output(ctx, node, "read etcd certificate", cmds.read_cert())
        key = self._output(ctx, node, "read etcd key", cmds.read_key())
        self.staging.write_etcd_client_certs(_with_newline(cert), _with_newline(key))
        logger.debug(f"Copied etcd client certificates from {node} to {self.staging.etcd_certs_dir}")


class BottlerocketRenewer(OSRenewer):
    """Containerised kubeadm and etcdadm inside sheltie sessions."""

    os_type = OS_BOTTLEROCKET

    def renew_control_plane_certs(self, ctx, node, cfg, component):
        logger.info(f"Processing control plane node ({self.os_type}): {node}")
        external_etcd = cfg.has_external_etcd
        if external_etcd:
            self.ensure_etcd_client_certs()
            self.transfer_certs_to_control_plane(ctx, node)

        cmds = BottlerocketControlPlaneCommands(self.staging.name, external_etcd,
                                                restart_delay=self.restart_delay)
        self._run(ctx, node, "renew control plane certificates", cmds.session())

        if self.ssh.verbosity >= 1:
            self._check_certs(ctx, node, cmds)
        logger.info(f"✅ Renewed certificates for control plane node {node}")

    def _check_certs(self, ctx, node, cmds):
        # Informational only; kubeadm in the bootstrap image misreports some paths.
        logger.info(f"Certificate check results for node {node}:")
        try:
            self.ssh.run_command_with_output(ctx, node, cmds.check_session())
        except CommandCancelledError:
            raise
        except SSHError as e:
            logger.info(f"Certificate check failed on node {node}: {e}")

    def transfer_certs_to_control_plane(self, ctx, node):
        cert_b64, key_b64 = self.staging.encoded_etcd_client_certs()
        transfer = BottlerocketCertTransferCommands(cert_b64, key_b64)
        self._run(ctx, node, "transfer certificates", transfer.session())
        logger.debug(f"Transferred etcd client certificates to {node}")

    def renew_etcd_certs(self, ctx, node):
        logger.info(f"Processing etcd node ({self.os_type}): {node}")
        cmds = BottlerocketEtcdCommands(self.staging.name)
        self._run(ctx, node, "renew certificates", cmds.renew_session())
        self._run(ctx, node, "validate certificates", cmds.validate_session())
        self._run(ctx, node, "copy certificates to tmp", cmds.copy_session())
        self.copy_etcd_certs(ctx, node)
        self._run(ctx, node, "cleanup temporary files", cmds.cleanup_session())
        logger.info(f"✅ Renewed certificates for etcd node {node}")

    def copy_etcd_certs(self, ctx, node):
        read = BottlerocketCertReadCommands()
        self._run(ctx, node, "list certificate files", read.list_files())
        cert = self._output(ctx, node, "read certificate file", read.read_cert())
        if not cert:
            raise StagingError("certificate file is empty")
        key = self._output(ctx, node, "read key file", read.read_key())
        if not key:
            raise StagingError("key file is empty")
        self.staging.write_etcd_client_certs(_with_newline(cert), _with_newline(key))
        logger.debug(f"Copied etcd client certificates from {node} to {self.staging.etcd_certs_dir}")


def build_os_renewer(os_type: str, ssh: SSHRunner, staging: CertificateStaging,
                     restart_delay: int = None) -> OSRenewer:
    """Pick the renewer for an OS family."""
    if os_type in (OS_UBUNTU, OS_RHEL):
        return LinuxRenewer(ssh, staging, os_type=os_type, restart_delay=restart_delay)
    if os_type == OS_BOTTLEROCKET:
        return BottlerocketRenewer(ssh, staging, restart_delay=restart_delay)
    raise ConfigValidationError(f"unsupported os {os_type!r}")
