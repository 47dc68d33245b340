from types import SimpleNamespace

import pytest
import yaml

from certctl.modules.certificates.discovery import (
    build_config_from_cluster,
    control_plane_nodes,
    detect_node_os,
    determine_ssh_user,
    find_ssh_user,
    parse_etcd_endpoints,
)
from certctl.modules.certificates.errors import ClusterAPIError, ConfigValidationError
from certctl.modules.certificates.kubernetes import KubernetesClient

CLUSTER_CONFIGURATION = """
etcd:
  external:
    endpoints:
    - https://10.0.0.20:2379
    - https://10.0.0.21:2379
"""


def node(name, os_image, *addresses):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        status=SimpleNamespace(
            addresses=[SimpleNamespace(type=t, address=a) for t, a in addresses],
            node_info=SimpleNamespace(os_image=os_image),
        ),
    )


class DiscoveryCoreApi:
    def __init__(self, nodes, cluster_configuration=CLUSTER_CONFIGURATION):
        self.nodes = nodes
        self.cluster_configuration = cluster_configuration
        self.selectors = []

    def read_namespaced_config_map(self, name, namespace, _request_timeout=None):
        return SimpleNamespace(data={"ClusterConfiguration": self.cluster_configuration})

    def list_node(self, label_selector="", _request_timeout=None):
        self.selectors.append(label_selector)
        return SimpleNamespace(items=self.nodes)


def write_spec(path, documents):
    path.write_text(yaml.safe_dump_all(documents))
    return path


def machine_config(name, user, control_plane=False):
    annotations = {"anywhere.eks.amazonaws.com/control-plane": "true"} if control_plane else {}
    return {
        "kind": "VSphereMachineConfig",
        "metadata": {"name": name, "annotations": annotations},
        "spec": {"users": [{"name": user}]},
    }


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / "id_rsa"
    path.write_text("key")
    return path


def test_detect_node_os():
    assert detect_node_os("Bottlerocket OS 1.19.2 (vmware-k8s-1.28)") == "bottlerocket"
    assert detect_node_os("Ubuntu 22.04.3 LTS") == "ubuntu"
    assert detect_node_os("Red Hat Enterprise Linux 8.8 (Ootpa)") == "rhel"
    assert detect_node_os("Flatcar Container Linux") == ""


def test_parse_etcd_endpoints():
    assert parse_etcd_endpoints(["https://10.0.0.20:2379", "garbage", "http://etcd-1"]) == ["10.0.0.20", "etcd-1"]


def test_determine_ssh_user():
    assert determine_ssh_user("ubuntu", "capv") == "ubuntu"
    assert determine_ssh_user("bottlerocket", "capv") == "ec2-user"
    assert determine_ssh_user("rhel", "capv") == "capv"


def test_find_ssh_user_prefers_control_plane():
    docs = [
        {"kind": "Cluster", "metadata": {"name": "mgmt"}},
        machine_config("workers", "worker-user"),
        machine_config("cp", "cp-user", control_plane=True),
    ]
    assert find_ssh_user(docs) == "cp-user"
    assert find_ssh_user(docs[:2]) == "worker-user"
    assert find_ssh_user(docs[:1]) == ""


def test_control_plane_nodes_falls_back_to_first_address():
    core = DiscoveryCoreApi([
        node("cp-1", "Ubuntu 22.04.3 LTS", ("InternalIP", "10.0.0.10")),
        node("cp-2", "Ubuntu 22.04.3 LTS", ("ExternalIP", "192.168.1.11")),
    ])
    addresses, os_type = control_plane_nodes(KubernetesClient(core, object()))
    assert addresses == ["10.0.0.10", "192.168.1.11"]
    assert os_type == "ubuntu"
    assert core.selectors == ["node-role.kubernetes.io/control-plane"]


def test_build_config_from_cluster(tmp_path, key_file):
    core = DiscoveryCoreApi([node("cp-1", "Red Hat Enterprise Linux 8.8", ("InternalIP", "10.0.0.10"))])
    spec = write_spec(tmp_path / "mgmt-eks-a-cluster.yaml", [machine_config("cp", "capv", control_plane=True)])

    cfg = build_config_from_cluster("mgmt", str(key_file), kube=KubernetesClient(core, object()), spec_path=spec)

    assert cfg.cluster_name == "mgmt"
    assert cfg.effective_os == "rhel"
    assert cfg.control_plane.nodes == ["10.0.0.10"]
    assert cfg.etcd.nodes == ["10.0.0.20", "10.0.0.21"]
    assert cfg.control_plane.ssh.user == "capv"
    assert cfg.etcd.ssh.key_path == str(key_file)


def test_build_config_defaults_user(tmp_path, key_file):
    core = DiscoveryCoreApi([node("cp-1", "Unknown", ("InternalIP", "10.0.0.10"))], cluster_configuration="etcd: {}\n")
    spec = write_spec(tmp_path / "spec.yaml", [{"kind": "Cluster"}])
    cfg = build_config_from_cluster("mgmt", str(key_file), kube=KubernetesClient(core, object()), spec_path=spec)
    assert cfg.control_plane.ssh.user == "ec2-user"
    assert not cfg.has_external_etcd


def test_build_config_requires_key(tmp_path):
    with pytest.raises(ConfigValidationError, match="SSH key file not found"):
        build_config_from_cluster("mgmt", str(tmp_path / "missing"), kube=object())


def test_build_config_requires_cluster_file(tmp_path, key_file):
    core = DiscoveryCoreApi([])
    with pytest.raises(ConfigValidationError, match="failed to read cluster config file"):
        build_config_from_cluster("mgmt", str(key_file), kube=KubernetesClient(core, object()),
                                  spec_path=tmp_path / "missing.yaml")


def test_unparseable_cluster_configuration(key_file):
    core = DiscoveryCoreApi([], cluster_configuration="etcd: [unclosed")
    with pytest.raises(ClusterAPIError, match="failed to parse cluster configuration"):
        build_config_from_cluster("mgmt", str(key_file), kube=KubernetesClient(core, object()))
