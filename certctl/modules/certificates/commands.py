"""Shell commands for each renewal step.

Every step is built by a small immutable builder so the fragments can be
checked on their own and combined into SSH calls or sheltie sessions by the
OS renewers.
"""
from dataclasses import dataclass
from typing import List

from ...config import Config
from .constants import (
    BOTTLEROCKET_ETCD_PKI_DIR,
    BOTTLEROCKET_K8S_PKI_DIR,
    BOTTLEROCKET_ROOTFS,
    BOTTLEROCKET_TMP_CERTS_DIR,
    CONTROL_PLANE_CERTS_EXTERNAL_ETCD,
    ETCD_CLIENT_CERT_NAME,
    ETCD_CLIENT_KEY_NAME,
    ETCD_CLIENT_URL,
    ETCDADM_PLACEHOLDER_URL,
    LINUX_ETCD_PKI_DIR,
    LINUX_K8S_PKI_DIR,
    LINUX_MANIFESTS_DIR,
    LINUX_TMP_MANIFESTS_DIR,
    REMOTE_TMP_DIR,
)

SHELTIE_PREFIX = "sudo sheltie << 'EOF'"
SHELTIE_SUFFIX = "EOF"

# Leaf certificates etcdadm regenerates; the CA stays in place.
ETCD_LEAF_CERTS = ("server", "peer", "apiserver-etcd-client", "etcdctl-etcd-client")

BOOTSTRAP_IMAGE_QUERY = (
    "IMAGE_ID=$(apiclient get | apiclient exec admin jq -r "
    "'.settings[\"host-containers\"][\"kubeadm-bootstrap\"].source')"
)
STATIC_PODS_QUERY = (
    "apiclient get | apiclient exec admin jq -r "
    "'.settings.kubernetes[\"static-pods\"] | keys[]'"
)


def sheltie_session(*fragments: str) -> str:
    """Wrap fragments in one root shell session on a Bottlerocket host.

    The session stops at the first failing line, so its exit status is that
    of the failed step.
    """
    body = "\n".join(["set -e"] + [f for f in fragments if f])
    return f"{SHELTIE_PREFIX}\n{body}\n{SHELTIE_SUFFIX}"


def backup_excluding_etcd(pki_dir: str, backup_dir: str, sudo: str = "") -> str:
    """Copy every file under ``pki_dir`` except ``etcd/`` into ``backup_dir``."""
    return (
        f"(cd {pki_dir} && for f in $({sudo}find . -type f ! -path './etcd/*'); do "
        f"{sudo}mkdir -p $(dirname '{backup_dir}/'$f) && {sudo}cp $f '{backup_dir}/'$f || exit 1; done)"
    )


def etcdctl_health(pki_dir: str, binary: str = "etcdctl") -> str:
    return (
        f"{binary} --cacert={pki_dir}/ca.crt "
        f"--cert={pki_dir}/etcdctl-etcd-client.crt "
        f"--key={pki_dir}/etcdctl-etcd-client.key "
        f"--endpoints={ETCD_CLIENT_URL} endpoint health"
    )


def remove_etcd_leaf_certs(pki_dir: str, sudo: str = "") -> str:
    leaves = " ".join(f"{name}.*" for name in ETCD_LEAF_CERTS)
    return f"(cd {pki_dir} && {sudo}rm -f {leaves})"


@dataclass(frozen=True)
class LinuxControlPlaneCommands:
    """Commands for a kubeadm control-plane node on Ubuntu or RHEL."""
    backup_name: str
    external_etcd: bool
    pki_dir: str = LINUX_K8S_PKI_DIR
    manifests_dir: str = LINUX_MANIFESTS_DIR
    restart_delay: int = Config.POD_RESTART_DELAY

    @property
    def backup_dir(self) -> str:
        return f"{self.pki_dir}.bak_{self.backup_name}"

    def backup(self) -> str:
        if self.external_etcd:
            return backup_excluding_etcd(self.pki_dir, self.backup_dir, sudo="sudo ")
        return f"sudo cp -r {self.pki_dir} {self.backup_dir}"

    def renew(self) -> str:
        if self.external_etcd:
            return " && ".join(f"sudo kubeadm certs renew {cert}"
                               for cert in CONTROL_PLANE_CERTS_EXTERNAL_ETCD)
        return "sudo kubeadm certs renew all"

    def install_etcd_client_certs(self) -> str:
        """Move the transferred etcd client pair into the pki directory."""
        crt = f"{REMOTE_TMP_DIR}/{ETCD_CLIENT_CERT_NAME}"
        key = f"{REMOTE_TMP_DIR}/{ETCD_CLIENT_KEY_NAME}"
        return (
            f"sudo cp {crt} {self.pki_dir}/{ETCD_CLIENT_CERT_NAME} && "
            f"sudo cp {key} {self.pki_dir}/{ETCD_CLIENT_KEY_NAME} && "
            f"sudo chmod 600 {self.pki_dir}/{ETCD_CLIENT_KEY_NAME} && "
            f"sudo rm -f {crt} {key}"
        )

    def validate(self) -> str:
        return "sudo kubeadm certs check-expiration"

    def restart(self) -> str:
        # Move out and back in a single call.
        return (
            f"sudo mkdir -p {LINUX_TMP_MANIFESTS_DIR} && "
            f"sudo mv {self.manifests_dir}/* {LINUX_TMP_MANIFESTS_DIR}/ && "
            f"sleep {self.restart_delay} && "
            f"sudo mv {LINUX_TMP_MANIFESTS_DIR}/* {self.manifests_dir}/"
        )


@dataclass(frozen=True)
class LinuxEtcdCommands:
    """Commands for an external etcd node managed by etcdadm."""
    backup_name: str
    pki_dir: str = LINUX_ETCD_PKI_DIR

    @property
    def etcd_dir(self) -> str:
        return self.pki_dir.rsplit("/", 1)[0]

    def backup(self) -> str:
        return f"cd {self.etcd_dir} && sudo cp -r pki pki.bak_{self.backup_name}"

    def renew(self) -> str:
        return (
            f"{remove_etcd_leaf_certs(self.pki_dir, sudo='sudo ')} && "
            f"sudo etcdadm join phase certificates {ETCDADM_PLACEHOLDER_URL} --init-system=systemd"
        )

    def validate(self) -> str:
        return f"sudo ETCDCTL_API=3 {etcdctl_health(self.pki_dir)}"

    def read_cert(self) -> str:
        return f"sudo cat {self.pki_dir}/{ETCD_CLIENT_CERT_NAME}"

    def read_key(self) -> str:
        return f"sudo cat {self.pki_dir}/{ETCD_CLIENT_KEY_NAME}"


@dataclass(frozen=True)
class LinuxCertTransferCommands:
    """Write the etcd client pair to a Linux control-plane node's /tmp."""
    cert_b64: str
    key_b64: str
    target_dir: str = REMOTE_TMP_DIR

    def write_cert(self) -> str:
        path = f"{self.target_dir}/{ETCD_CLIENT_CERT_NAME}"
        return f"echo '{self.cert_b64}' | base64 -d | sudo install -m 600 /dev/stdin {path}"

    def write_key(self) -> str:
        path = f"{self.target_dir}/{ETCD_CLIENT_KEY_NAME}"
        return f"echo '{self.key_b64}' | base64 -d | sudo install -m 600 /dev/stdin {path}"


def ctr_run(image: str, name: str, mounts: List[str], args: str, net_host: bool = False,
            env: List[str] = ()) -> str:
    """Run a one-off containerd task from the bootstrap image."""
    parts = ["ctr run"]
    for mount in mounts:
        src, dst = mount.split(":", 1)
        parts.append(f"--mount type=bind,src={src},dst={dst},options=rbind:rw")
    for item in env:
        parts.append(f"--env {item}")
    if net_host:
        parts.append("--net-host")
    parts.extend(["--rm", image, name, args])
    return " ".join(parts)


@dataclass(frozen=True)
class BottlerocketControlPlaneCommands:
    """Session fragments for a Bottlerocket control-plane node.

    kubeadm runs from the host's kubeadm-bootstrap container image with the
    node's kubeadm directory mounted over /etc/kubernetes.
    """
    backup_name: str
    external_etcd: bool
    pki_dir: str = BOTTLEROCKET_K8S_PKI_DIR
    tmp_certs_dir: str = BOTTLEROCKET_TMP_CERTS_DIR
    restart_delay: int = Config.POD_RESTART_DELAY

    @property
    def kubeadm_dir(self) -> str:
        return self.pki_dir.rsplit("/", 1)[0]

    @property
    def backup_dir(self) -> str:
        return f"{self.pki_dir}.bak_{self.backup_name}"

    def _kubeadm(self, name: str, args: str) -> str:
        return ctr_run("${IMAGE_ID}", name, [f"{self.kubeadm_dir}:/etc/kubernetes"],
                       f"/opt/bin/kubeadm {args}")

    def backup(self) -> str:
        if self.external_etcd:
            return backup_excluding_etcd(self.pki_dir, self.backup_dir)
        return f"cp -r {self.pki_dir} {self.backup_dir}"

    def image_pull(self) -> str:
        return f"{BOOTSTRAP_IMAGE_QUERY}\nctr image pull ${{IMAGE_ID}}"

    def renew(self) -> str:
        if self.external_etcd:
            return "\n".join(self._kubeadm("kubeadm-certs-renew", f"certs renew {cert}")
                             for cert in CONTROL_PLANE_CERTS_EXTERNAL_ETCD)
        return self._kubeadm("kubeadm-certs-renew", "certs renew all")

    def copy_certs(self) -> str:
        """Install the transferred etcd client pair; nothing to do without external etcd."""
        if not self.external_etcd:
            return ""
        src = self.tmp_certs_dir
        return (
            f"cp {src}/{ETCD_CLIENT_CERT_NAME} {self.pki_dir}/{ETCD_CLIENT_CERT_NAME}\n"
            f"cp {src}/{ETCD_CLIENT_KEY_NAME} {self.pki_dir}/{ETCD_CLIENT_KEY_NAME}\n"
            f"chmod 600 {self.pki_dir}/{ETCD_CLIENT_KEY_NAME}\n"
            f"rm -rf {src}"
        )

    def restart(self) -> str:
        toggle = "xargs -I {} apiclient set settings.kubernetes.static-pods.{}.enabled="
        return (
            f"{STATIC_PODS_QUERY} | {toggle}false\n"
            f"sleep {self.restart_delay}\n"
            f"{STATIC_PODS_QUERY} | {toggle}true"
        )

    def check_certs(self) -> str:
        return self._kubeadm("kubeadm-certs-check", "certs check-expiration")

    def session(self) -> str:
        return sheltie_session(
            self.backup(),
            self.image_pull(),
            self.renew(),
            self.copy_certs(),
            self.restart(),
        )

    def check_session(self) -> str:
        return sheltie_session(self.image_pull(), self.check_certs())


@dataclass(frozen=True)
class BottlerocketEtcdCommands:
    """Session fragments for a Bottlerocket etcd node."""
    backup_name: str
    pki_dir: str = BOTTLEROCKET_ETCD_PKI_DIR
    tmp_certs_dir: str = BOTTLEROCKET_TMP_CERTS_DIR

    def _bootstrap(self, name: str, args: str, env: List[str] = ()) -> str:
        return ctr_run("${IMAGE_ID}", name, [f"{self.pki_dir}:/etc/etcd/pki"], args,
                       net_host=True, env=env)

    def image_pull(self) -> str:
        return f"{BOOTSTRAP_IMAGE_QUERY}\nctr image pull ${{IMAGE_ID}}"

    def backup(self) -> str:
        return f"cp -r {self.pki_dir} {self.pki_dir}.bak_{self.backup_name}"

    def renew(self) -> str:
        return (
            f"{remove_etcd_leaf_certs(self.pki_dir)}\n"
            + self._bootstrap(
                "etcdadm-renew",
                f"/opt/bin/etcdadm join phase certificates {ETCDADM_PLACEHOLDER_URL} --init-system=none",
            )
        )

    def validate(self) -> str:
        return self._bootstrap("etcdctl-check", etcdctl_health("/etc/etcd/pki", "/opt/bin/etcdctl"),
                               env=["ETCDCTL_API=3"])

    def copy_certs(self) -> str:
        return (
            f"mkdir -p {self.tmp_certs_dir}\n"
            f"cp {self.pki_dir}/{ETCD_CLIENT_CERT_NAME} {self.tmp_certs_dir}/\n"
            f"cp {self.pki_dir}/{ETCD_CLIENT_KEY_NAME} {self.tmp_certs_dir}/"
        )

    def cleanup(self) -> str:
        return (
            f"rm -f {self.tmp_certs_dir}/{ETCD_CLIENT_CERT_NAME} "
            f"{self.tmp_certs_dir}/{ETCD_CLIENT_KEY_NAME}\n"
            f"rmdir {self.tmp_certs_dir} || true"
        )

    def renew_session(self) -> str:
        return sheltie_session(self.image_pull(), self.backup(), self.renew())

    def validate_session(self) -> str:
        return sheltie_session(self.image_pull(), self.validate())

    def copy_session(self) -> str:
        return sheltie_session(self.copy_certs())

    def cleanup_session(self) -> str:
        return sheltie_session(self.cleanup())


@dataclass(frozen=True)
class BottlerocketCertTransferCommands:
    """Write the etcd client pair into a Bottlerocket control-plane host's /tmp."""
    cert_b64: str
    key_b64: str
    target_dir: str = BOTTLEROCKET_TMP_CERTS_DIR

    def session(self) -> str:
        return sheltie_session(
            "umask 077",
            f"TARGET_DIR={self.target_dir}",
            "mkdir -p ${TARGET_DIR}",
            f"echo '{self.cert_b64}' | base64 -d > ${{TARGET_DIR}}/{ETCD_CLIENT_CERT_NAME}",
            f"echo '{self.key_b64}' | base64 -d > ${{TARGET_DIR}}/{ETCD_CLIENT_KEY_NAME}",
            f"chmod 600 ${{TARGET_DIR}}/{ETCD_CLIENT_CERT_NAME} ${{TARGET_DIR}}/{ETCD_CLIENT_KEY_NAME}",
        )


@dataclass(frozen=True)
class BottlerocketCertReadCommands:
    """Read files left in the host's /tmp from the admin container."""
    tmp_certs_dir: str = BOTTLEROCKET_TMP_CERTS_DIR

    @property
    def host_dir(self) -> str:
        return f"{BOTTLEROCKET_ROOTFS}{self.tmp_certs_dir}"

    def list_files(self) -> str:
        return f"sudo ls -l {self.host_dir}"

    def read_cert(self) -> str:
        return f"sudo cat {self.host_dir}/{ETCD_CLIENT_CERT_NAME}"

    def read_key(self) -> str:
        return f"sudo cat {self.host_dir}/{ETCD_CLIENT_KEY_NAME}"
