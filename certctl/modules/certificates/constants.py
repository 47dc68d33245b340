"""Paths, names and identifiers used during certificate renewal."""

# Component selectors
COMPONENT_ALL = ""
COMPONENT_ETCD = "etcd"
COMPONENT_CONTROL_PLANE = "control-plane"
VALID_COMPONENTS = (COMPONENT_ALL, COMPONENT_ETCD, COMPONENT_CONTROL_PLANE)

# Operating system families
OS_UBUNTU = "ubuntu"
OS_RHEL = "rhel"
OS_BOTTLEROCKET = "bottlerocket"
SUPPORTED_OS = (OS_UBUNTU, OS_RHEL, OS_BOTTLEROCKET)

# Local workspace layout
BACKUP_DIR_PREFIX = "certificate_backup"
BACKUP_DIR_TIME_FORMAT = "%Y%m%d_%H%M%S"
ETCD_CERTS_DIR = "etcd-client-certs"
ETCD_CLIENT_CERT_NAME = "apiserver-etcd-client.crt"
ETCD_CLIENT_KEY_NAME = "apiserver-etcd-client.key"
KUBEADM_CONFIG_FILE = "kubeadm-config.yaml"
PERSISTENT_ETCD_DIR = "etcd-certs"
PERSISTENT_METADATA_FILE = "metadata.yaml"

# Cluster objects
SYSTEM_NAMESPACE = "eksa-system"
KUBE_SYSTEM_NAMESPACE = "kube-system"
KUBEADM_CONFIGMAP = "kubeadm-config"
KUBEADM_CLUSTER_CONFIG_KEY = "ClusterConfiguration"
ETCD_CLIENT_SECRET_SUFFIX = "apiserver-etcd-client"
CONTROL_PLANE_NODE_LABEL = "node-role.kubernetes.io/control-plane"

# Linux node paths
LINUX_K8S_PKI_DIR = "/etc/kubernetes/pki"
LINUX_MANIFESTS_DIR = "/etc/kubernetes/manifests"
LINUX_ETCD_PKI_DIR = "/etc/etcd/pki"
LINUX_TMP_MANIFESTS_DIR = "/tmp/manifests"

# Bottlerocket node paths
BOTTLEROCKET_K8S_PKI_DIR = "/var/lib/kubeadm/pki"
BOTTLEROCKET_ETCD_PKI_DIR = "/var/lib/etcd/pki"
BOTTLEROCKET_TMP_CERTS_DIR = "/tmp/etcd-client-certs"
BOTTLEROCKET_ROOTFS = "/.bottlerocket/rootfs"

# Temporary location for etcd client certs on a Linux control-plane node
REMOTE_TMP_DIR = "/tmp"

# Certificates renewed by kubeadm when etcd runs on its own nodes
CONTROL_PLANE_CERTS_EXTERNAL_ETCD = (
    "admin.conf",
    "apiserver",
    "apiserver-kubelet-client",
    "controller-manager.conf",
    "front-proxy-client",
    "scheduler.conf",
)

# etcdadm needs an endpoint to parse but never contacts it during the certificates phase
ETCDADM_PLACEHOLDER_URL = "http://eks-a-etcd-dumb-url"
ETCD_CLIENT_URL = "https://127.0.0.1:2379"

# Passphrase environment variables
SSH_PASSPHRASE_ENV = "CERTCTL_SSH_KEY_PASSPHRASE"
SSH_PASSPHRASE_ENV_CP = "CERTCTL_SSH_KEY_PASSPHRASE_CP"
SSH_PASSPHRASE_ENV_ETCD = "CERTCTL_SSH_KEY_PASSPHRASE_ETCD"
