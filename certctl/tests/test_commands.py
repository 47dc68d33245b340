import os
import shutil
import stat
import subprocess

import pytest

from certctl.modules.certificates.commands import (
    BottlerocketCertReadCommands,
    BottlerocketCertTransferCommands,
    BottlerocketControlPlaneCommands,
    BottlerocketEtcdCommands,
    LinuxCertTransferCommands,
    LinuxControlPlaneCommands,
    LinuxEtcdCommands,
    backup_excluding_etcd,
    ctr_run,
    sheltie_session,
)

BACKUP = "certificate_backup_20240101_120000"


def test_sheltie_session_skips_empty_fragments():
    assert sheltie_session("echo a", "", "echo b") == "sudo sheltie << 'EOF'\nset -e\necho a\necho b\nEOF"


def test_backup_excluding_etcd():
    cmd = backup_excluding_etcd("/etc/kubernetes/pki", "/etc/kubernetes/pki.bak_x", sudo="sudo ")
    assert cmd.startswith("(cd /etc/kubernetes/pki && for f in $(sudo find . -type f ! -path './etcd/*')")
    assert cmd.endswith("sudo cp $f '/etc/kubernetes/pki.bak_x/'$f || exit 1; done)")


def test_ctr_run():
    cmd = ctr_run("${IMAGE_ID}", "check", ["/var/lib/etcd/pki:/etc/etcd/pki"], "/opt/bin/etcdctl version",
                  net_host=True, env=["ETCDCTL_API=3"])
    assert cmd == (
        "ctr run --mount type=bind,src=/var/lib/etcd/pki,dst=/etc/etcd/pki,options=rbind:rw "
        "--env ETCDCTL_API=3 --net-host --rm ${IMAGE_ID} check /opt/bin/etcdctl version"
    )


def test_linux_control_plane_stacked_etcd():
    cmds = LinuxControlPlaneCommands(BACKUP, external_etcd=False, restart_delay=5)
    assert cmds.backup() == f"sudo cp -r /etc/kubernetes/pki /etc/kubernetes/pki.bak_{BACKUP}"
    assert cmds.renew() == "sudo kubeadm certs renew all"
    assert cmds.restart() == (
        "sudo mkdir -p /tmp/manifests && "
        "sudo mv /etc/kubernetes/manifests/* /tmp/manifests/ && "
        "sleep 5 && "
        "sudo mv /tmp/manifests/* /etc/kubernetes/manifests/"
    )


def test_linux_control_plane_external_etcd():
    cmds = LinuxControlPlaneCommands(BACKUP, external_etcd=True)
    assert "! -path './etcd/*'" in cmds.backup()
    assert cmds.renew() == (
        "sudo kubeadm certs renew admin.conf && "
        "sudo kubeadm certs renew apiserver && "
        "sudo kubeadm certs renew apiserver-kubelet-client && "
        "sudo kubeadm certs renew controller-manager.conf && "
        "sudo kubeadm certs renew front-proxy-client && "
        "sudo kubeadm certs renew scheduler.conf"
    )
    install = cmds.install_etcd_client_certs()
    assert "sudo cp /tmp/apiserver-etcd-client.crt /etc/kubernetes/pki/apiserver-etcd-client.crt" in install
    assert install.endswith("sudo rm -f /tmp/apiserver-etcd-client.crt /tmp/apiserver-etcd-client.key")


def test_linux_etcd_commands():
    cmds = LinuxEtcdCommands(BACKUP)
    assert cmds.backup() == f"cd /etc/etcd && sudo cp -r pki pki.bak_{BACKUP}"
    renew = cmds.renew()
    assert renew.startswith("(cd /etc/etcd/pki && sudo rm -f server.* peer.* apiserver-etcd-client.*")
    assert renew.endswith(
        "sudo etcdadm join phase certificates http://eks-a-etcd-dumb-url --init-system=systemd"
    )
    assert "ca.crt" not in renew
    assert cmds.validate().startswith("sudo ETCDCTL_API=3 etcdctl --cacert=/etc/etcd/pki/ca.crt")
    assert cmds.validate().endswith("--endpoints=https://127.0.0.1:2379 endpoint health")
    assert cmds.read_cert() == "sudo cat /etc/etcd/pki/apiserver-etcd-client.crt"
    assert cmds.read_key() == "sudo cat /etc/etcd/pki/apiserver-etcd-client.key"


def test_linux_cert_transfer():
    cmds = LinuxCertTransferCommands("Q0VSVA==", "S0VZ")
    assert cmds.write_cert() == (
        "echo 'Q0VSVA==' | base64 -d | sudo install -m 600 /dev/stdin /tmp/apiserver-etcd-client.crt"
    )
    assert "sudo install -m 600 /dev/stdin /tmp/apiserver-etcd-client.key" in cmds.write_key()


def test_bottlerocket_control_plane_session_order():
    session = BottlerocketControlPlaneCommands(BACKUP, external_etcd=True, restart_delay=7).session()
    lines = session.splitlines()
    assert lines[:2] == ["sudo sheltie << 'EOF'", "set -e"]
    assert lines[-1] == "EOF"

    backup = session.index("(cd /var/lib/kubeadm/pki")
    pull = session.index("ctr image pull ${IMAGE_ID}")
    renew = session.index("/opt/bin/kubeadm certs renew admin.conf")
    copy = session.index("cp /tmp/etcd-client-certs/apiserver-etcd-client.crt")
    restart = session.index("static-pods.{}.enabled=false")
    assert backup < pull < renew < copy < restart
    assert "sleep 7" in session
    assert "xargs -I {} apiclient set" in session
    assert "-n 1" not in session
    assert session.count("/opt/bin/kubeadm certs renew") == 6
    assert "src=/var/lib/kubeadm,dst=/etc/kubernetes" in session


def test_bottlerocket_control_plane_without_external_etcd():
    cmds = BottlerocketControlPlaneCommands(BACKUP, external_etcd=False)
    assert cmds.copy_certs() == ""
    assert cmds.backup() == f"cp -r /var/lib/kubeadm/pki /var/lib/kubeadm/pki.bak_{BACKUP}"
    assert "/opt/bin/kubeadm certs renew all" in cmds.session()
    assert "etcd-client-certs" not in cmds.session()
    assert "certs check-expiration" in cmds.check_session()


def test_bottlerocket_etcd_sessions():
    cmds = BottlerocketEtcdCommands(BACKUP)
    renew = cmds.renew_session()
    assert renew.index("ctr image pull") < renew.index("cp -r /var/lib/etcd/pki") < renew.index("rm -f")
    assert "/opt/bin/etcdadm join phase certificates http://eks-a-etcd-dumb-url --init-system=none" in renew
    assert "--net-host" in renew

    validate = cmds.validate_session()
    assert "--env ETCDCTL_API=3" in validate
    assert "/opt/bin/etcdctl --cacert=/etc/etcd/pki/ca.crt" in validate

    assert "cp /var/lib/etcd/pki/apiserver-etcd-client.key /tmp/etcd-client-certs/" in cmds.copy_session()
    assert "rmdir /tmp/etcd-client-certs || true" in cmds.cleanup_session()


def test_bottlerocket_cert_transfer_and_read():
    session = BottlerocketCertTransferCommands("Q0VSVA==", "S0VZ").session()
    assert session.index("umask 077") < session.index("TARGET_DIR=/tmp/etcd-client-certs")
    assert "echo 'Q0VSVA==' | base64 -d > ${TARGET_DIR}/apiserver-etcd-client.crt" in session

    read = BottlerocketCertReadCommands()
    assert read.list_files() == "sudo ls -l /.bottlerocket/rootfs/tmp/etcd-client-certs"
    assert read.read_key() == "sudo cat /.bottlerocket/rootfs/tmp/etcd-client-certs/apiserver-etcd-client.key"


BASH = shutil.which("bash")
needs_bash = pytest.mark.skipif(BASH is None, reason="bash not available")


class StubShell:
    """Runs generated scripts under bash with stub binaries first on PATH."""

    def __init__(self, tmp_path):
        self.bin_dir = tmp_path / "bin"
        self.bin_dir.mkdir()
        self.log = tmp_path / "calls.log"
        self.log.touch()
        self.env = dict(os.environ, PATH=f"{self.bin_dir}{os.pathsep}{os.environ['PATH']}",
                        CALLS_LOG=str(self.log))

    def stub(self, name, body):
        path = self.bin_dir / name
        path.write_text(f'#!/bin/sh\necho "{name} $*" >> "$CALLS_LOG"\n{body}\n')
        path.chmod(0o755)

    def run(self, script):
        return subprocess.run([BASH, "-c", script], env=self.env, capture_output=True, text=True)

    def calls(self):
        return self.log.read_text().splitlines()


# sudo runs heredoc sessions through bash, logs everything else
SUDO = '[ "$1" = sheltie ] && exec bash\nexit 0'
APICLIENT = "echo kube-apiserver"


@pytest.fixture
def shell(tmp_path):
    return StubShell(tmp_path)


@pytest.fixture
def kubeadm_dir(tmp_path):
    pki = tmp_path / "kubeadm" / "pki"
    (pki / "etcd").mkdir(parents=True)
    (pki / "ca.crt").write_text("ca")
    (pki / "etcd" / "ca.crt").write_text("etcd ca")
    certs = tmp_path / "etcd-client-certs"
    certs.mkdir()
    (certs / "apiserver-etcd-client.crt").write_text("crt")
    (certs / "apiserver-etcd-client.key").write_text("key")
    return pki, certs


@needs_bash
def test_linux_renew_stops_at_first_failed_certificate(shell):
    shell.stub("sudo", 'case "$*" in\n"kubeadm certs renew apiserver") echo "apiserver renew failed" >&2; exit 1 ;;\nesac')
    result = shell.run(LinuxControlPlaneCommands(BACKUP, external_etcd=True).renew())

    assert result.returncode != 0
    assert "apiserver renew failed" in result.stderr
    assert shell.calls() == ["sudo kubeadm certs renew admin.conf", "sudo kubeadm certs renew apiserver"]


@needs_bash
def test_backup_excluding_etcd_copies_tree(tmp_path, shell, kubeadm_dir):
    pki, _ = kubeadm_dir
    backup = tmp_path / "pki.bak"
    result = shell.run(backup_excluding_etcd(str(pki), str(backup)))

    assert result.returncode == 0, result.stderr
    assert (backup / "ca.crt").read_text() == "ca"
    assert not (backup / "etcd").exists()


@needs_bash
def test_backup_excluding_etcd_fails_without_pki(tmp_path, shell):
    script = backup_excluding_etcd(str(tmp_path / "missing"), str(tmp_path / "pki.bak"))
    result = shell.run(script + " && echo after")
    assert result.returncode != 0
    assert "after" not in result.stdout


@needs_bash
def test_linux_key_transfer_is_never_world_readable(tmp_path, shell):
    if shutil.which("install") is None or shutil.which("base64") is None:
        pytest.skip("coreutils not available")
    shell.stub("sudo", 'exec "$@"')
    result = shell.run(LinuxCertTransferCommands("Q0VSVA==", "S0VZ", target_dir=str(tmp_path)).write_key())

    assert result.returncode == 0, result.stderr
    key = tmp_path / "apiserver-etcd-client.key"
    assert key.read_text() == "KEY"
    assert stat.S_IMODE(key.stat().st_mode) == 0o600


@needs_bash
def test_bottlerocket_session_runs_every_step(shell, kubeadm_dir):
    pki, certs = kubeadm_dir
    shell.stub("sudo", SUDO)
    shell.stub("apiclient", APICLIENT)
    shell.stub("ctr", "exit 0")
    cmds = BottlerocketControlPlaneCommands(BACKUP, external_etcd=True, pki_dir=str(pki),
                                            tmp_certs_dir=str(certs), restart_delay=0)
    result = shell.run(cmds.session())

    assert result.returncode == 0, result.stderr
    assert (pki / "apiserver-etcd-client.key").read_text() == "key"
    assert not certs.exists()
    calls = shell.calls()
    assert sum("/opt/bin/kubeadm certs renew" in c for c in calls) == 6
    assert any("enabled=true" in c for c in calls)


@needs_bash
def test_bottlerocket_session_stops_on_failed_renewal(shell, kubeadm_dir):
    pki, certs = kubeadm_dir
    shell.stub("sudo", SUDO)
    shell.stub("apiclient", APICLIENT)
    shell.stub("ctr", 'case "$*" in\n*"certs renew apiserver"*) echo "kubeadm renew failed" >&2; exit 1 ;;\nesac')
    cmds = BottlerocketControlPlaneCommands(BACKUP, external_etcd=True, pki_dir=str(pki),
                                            tmp_certs_dir=str(certs), restart_delay=0)
    result = shell.run(cmds.session())

    assert result.returncode != 0
    assert "kubeadm renew failed" in result.stderr
    assert not any(c.startswith("apiclient set") for c in shell.calls())
    assert not (pki / "apiserver-etcd-client.key").exists()


@needs_bash
def test_bottlerocket_session_stops_on_failed_backup(tmp_path, shell):
    shell.stub("sudo", SUDO)
    shell.stub("apiclient", APICLIENT)
    shell.stub("ctr", "exit 0")
    cmds = BottlerocketControlPlaneCommands(BACKUP, external_etcd=False, pki_dir=str(tmp_path / "missing" / "pki"),
                                            restart_delay=0)
    result = shell.run(cmds.session())

    assert result.returncode != 0
    assert not any(c.startswith("ctr") for c in shell.calls())


@needs_bash
def test_bottlerocket_etcd_keeps_leaf_certs_when_backup_fails(tmp_path, shell):
    shell.stub("sudo", SUDO)
    shell.stub("apiclient", APICLIENT)
    shell.stub("ctr", "exit 0")
    result = shell.run(BottlerocketEtcdCommands(BACKUP, pki_dir=str(tmp_path / "no-such-pki")).renew_session())

    assert result.returncode != 0
    assert not any("etcdadm" in c for c in shell.calls())
