"""常量模块。

集中定义目录、文件名、端口、证书名称以及集群中使用的对象名称。
目录类常量可通过环境变量覆盖，因此以函数形式提供。
"""

import os
from pathlib import Path

# 工具本身对应的 Kubernetes 版本
KUBERNETES_VERSION = "v1.22.6"
MIN_KUBERNETES_VERSION = "v1.21.0"

# 配置文件 API 版本
API_VERSION = "kubeboot.k8s.io/v1beta1"

# 环境变量
KUBERNETES_DIR_ENV = "KUBEBOOT_KUBERNETES_DIR"
KUBELET_RUN_DIR_ENV = "KUBEBOOT_KUBELET_DIR"
ETCD_DATA_DIR_ENV = "KUBEBOOT_ETCD_DATA_DIR"

DEFAULT_KUBERNETES_DIR = "/etc/kubernetes"
DEFAULT_KUBELET_RUN_DIR = "/var/lib/kubelet"
DEFAULT_ETCD_DATA_DIR = "/var/lib/etcd"
DEFAULT_CNI_DIR = "/etc/cni/net.d"

MANIFESTS_SUBDIR = "manifests"
PKI_SUBDIR = "pki"
TEMP_DIR_PREFIX = "kubeboot-"

# kubeconfig 文件名
ADMIN_KUBECONFIG = "admin.conf"
KUBELET_KUBECONFIG = "kubelet.conf"
KUBELET_BOOTSTRAP_KUBECONFIG = "bootstrap-kubelet.conf"
CONTROLLER_MANAGER_KUBECONFIG = "controller-manager.conf"
SCHEDULER_KUBECONFIG = "scheduler.conf"

# kubelet 文件
KUBELET_CONFIG_FILE = "config.yaml"
KUBELET_ENV_FILE = "kubeboot-flags.env"
KUBELET_ENV_VAR = "KUBELET_KUBEBOOT_ARGS"

# 证书与密钥基础文件名
CA_CERT_AND_KEY_BASE_NAME = "ca"
APISERVER_CERT_AND_KEY_BASE_NAME = "apiserver"
APISERVER_KUBELET_CLIENT_CERT_AND_KEY_BASE_NAME = "apiserver-kubelet-client"
FRONT_PROXY_CA_CERT_AND_KEY_BASE_NAME = "front-proxy-ca"
FRONT_PROXY_CLIENT_CERT_AND_KEY_BASE_NAME = "front-proxy-client"
ETCD_CA_CERT_AND_KEY_BASE_NAME = "etcd/ca"
ETCD_SERVER_CERT_AND_KEY_BASE_NAME = "etcd/server"
ETCD_PEER_CERT_AND_KEY_BASE_NAME = "etcd/peer"
ETCD_HEALTHCHECK_CLIENT_CERT_AND_KEY_BASE_NAME = "etcd/healthcheck-client"
APISERVER_ETCD_CLIENT_CERT_AND_KEY_BASE_NAME = "apiserver-etcd-client"
SERVICE_ACCOUNT_KEY_BASE_NAME = "sa"

# 证书主体
APISERVER_CERT_COMMON_NAME = "kube-apiserver"
APISERVER_KUBELET_CLIENT_CERT_COMMON_NAME = "kube-apiserver-kubelet-client"
FRONT_PROXY_CLIENT_CERT_COMMON_NAME = "front-proxy-client"
ETCD_HEALTHCHECK_CLIENT_CERT_COMMON_NAME = "kube-etcd-healthcheck-client"
APISERVER_ETCD_CLIENT_CERT_COMMON_NAME = "kube-apiserver-etcd-client"
SYSTEM_PRIVILEGED_GROUP = "system:masters"
NODES_GROUP = "system:nodes"
NODES_USER_PREFIX = "system:node:"
CONTROLLER_MANAGER_USER = "system:kube-controller-manager"
SCHEDULER_USER = "system:kube-scheduler"
ADMIN_USER = "kubernetes-admin"

# 端口
KUBE_APISERVER_PORT = 6443
ETCD_LISTEN_CLIENT_PORT = 2379
ETCD_LISTEN_PEER_PORT = 2380
KUBELET_PORT = 10250
KUBE_CONTROLLER_MANAGER_PORT = 10257
KUBE_SCHEDULER_PORT = 10259

# 控制平面组件
ETCD = "etcd"
KUBE_APISERVER = "kube-apiserver"
KUBE_CONTROLLER_MANAGER = "kube-controller-manager"
KUBE_SCHEDULER = "kube-scheduler"
CONTROL_PLANE_COMPONENTS = (KUBE_APISERVER, KUBE_CONTROLLER_MANAGER, KUBE_SCHEDULER)

# 集群对象
KUBE_SYSTEM_NAMESPACE = "kube-system"
KUBE_PUBLIC_NAMESPACE = "kube-public"
CLUSTER_CONFIG_CONFIGMAP = "kubeboot-config"
CLUSTER_CONFIG_CONFIGMAP_KEY = "ClusterConfiguration"
KUBELET_BASE_CONFIGMAP_PREFIX = "kubelet-config-"
CLUSTER_INFO_CONFIGMAP = "cluster-info"
KUBECONFIG_CLUSTER_INFO_KEY = "kubeconfig"
JWS_SIGNATURE_KEY_PREFIX = "jws-kubeconfig-"
CERTS_SECRET = "kubeboot-certs"
BOOTSTRAP_TOKEN_SECRET_PREFIX = "bootstrap-token-"
BOOTSTRAP_TOKEN_SECRET_TYPE = "bootstrap.kubernetes.io/token"
NODE_BOOTSTRAP_TOKEN_AUTH_GROUP = "system:bootstrappers:kubeboot:default-node-token"
DEFAULT_TOKEN_USAGES = ("signing", "authentication")

# 节点标签、注解与污点
LABEL_NODE_ROLE_OLD_CONTROL_PLANE = "node-role.kubernetes.io/master"
LABEL_NODE_ROLE_CONTROL_PLANE = "node-role.kubernetes.io/control-plane"
LABEL_EXCLUDE_FROM_EXTERNAL_LB = "node.kubernetes.io/exclude-from-external-load-balancers"
ANNOTATION_CRI_SOCKET = "kubeboot.alpha.kubernetes.io/cri-socket"
ANNOTATION_ETCD_ADVERTISE_CLIENT_URLS = "kubeboot.kubernetes.io/etcd.advertise-client-urls"
TAINT_EFFECT_NO_SCHEDULE = "NoSchedule"

# 默认 CRI 套接字
DEFAULT_DOCKER_CRI_SOCKET = "/var/run/dockershim.sock"
CONTAINERD_SOCKET = "/run/containerd/containerd.sock"
CRIO_SOCKET = "/var/run/crio/crio.sock"
DOCKER_SOCKET = "/var/run/docker.sock"

# 超时与重试
DISCOVERY_RETRY_INTERVAL = 5.0
TLS_BOOTSTRAP_TIMEOUT = 300.0
API_CALL_RETRY_INTERVAL = 0.5
CONTROL_PLANE_READY_TIMEOUT = 240.0
ETCD_API_CALL_RETRIES = 10
ETCD_API_CALL_RETRY_INTERVAL = 2.0
PULL_IMAGE_RETRY = 5

DEFAULT_IMAGE_REPOSITORY = "k8s.gcr.io"
ETCD_VERSION = "3.5.0-0"
PAUSE_VERSION = "3.5"
DEFAULT_SERVICE_SUBNET = "10.96.0.0/12"
DEFAULT_DNS_DOMAIN = "cluster.local"
DEFAULT_CLUSTER_NAME = "kubernetes"
DEFAULT_CERT_VALIDITY_DAYS = 365
DEFAULT_CA_VALIDITY_DAYS = 3650


def kubernetes_dir() -> Path:
    """获取 Kubernetes 配置根目录。"""
    return Path(os.getenv(KUBERNETES_DIR_ENV, DEFAULT_KUBERNETES_DIR))


def kubelet_run_dir() -> Path:
    """获取 kubelet 运行目录。"""
    return Path(os.getenv(KUBELET_RUN_DIR_ENV, DEFAULT_KUBELET_RUN_DIR))


def etcd_data_dir() -> Path:
    """获取本地 etcd 数据目录默认值。"""
    return Path(os.getenv(ETCD_DATA_DIR_ENV, DEFAULT_ETCD_DATA_DIR))


def static_pod_dir() -> Path:
    return kubernetes_dir() / MANIFESTS_SUBDIR


def default_cert_dir() -> Path:
    return kubernetes_dir() / PKI_SUBDIR


def admin_kubeconfig_path() -> Path:
    return kubernetes_dir() / ADMIN_KUBECONFIG


def kubelet_kubeconfig_path() -> Path:
    return kubernetes_dir() / KUBELET_KUBECONFIG


def kubelet_bootstrap_kubeconfig_path() -> Path:
    return kubernetes_dir() / KUBELET_BOOTSTRAP_KUBECONFIG


def kubelet_base_configmap_name(kubernetes_version: str) -> str:
    """获取 kubelet 基础配置 ConfigMap 名称，如 kubelet-config-1.22。"""
    major, minor = kubernetes_version.lstrip("v").split(".")[:2]
    return f"{KUBELET_BASE_CONFIGMAP_PREFIX}{major}.{minor}"
