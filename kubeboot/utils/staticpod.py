"""静态 Pod 模块。

生成控制平面组件和本地 etcd 的静态 Pod 清单，并读写清单文件。
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from kubeboot import constants
from kubeboot.utils.config import InitConfiguration
from kubeboot.utils.etcd import get_client_url, get_peer_url

logger = logging.getLogger(__name__)

ETCD_DATA_VOLUME = "etcd-data"
ETCD_CERTS_VOLUME = "etcd-certs"
K8S_CERTS_VOLUME = "k8s-certs"
KUBECONFIG_VOLUME = "kubeconfig"


class StaticPodError(Exception):
    """静态 Pod 清单无效。"""


def manifest_path(component: str, manifest_dir: str | Path) -> Path:
    return Path(manifest_dir) / f"{component}.yaml"


def _host_path_volume(name: str, path: str, path_type: str = "DirectoryOrCreate") -> dict[str, Any]:
    return {"name": name, "hostPath": {"path": path, "type": path_type}}


def _mount(name: str, path: str, read_only: bool = True) -> dict[str, Any]:
    return {"name": name, "mountPath": path, "readOnly": read_only}


def component_pod(
    name: str,
    image: str,
    command: list[str],
    volumes: list[dict[str, Any]],
    mounts: list[dict[str, Any]],
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    """构建静态 Pod 对象。"""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": constants.KUBE_SYSTEM_NAMESPACE,
            "labels": {"component": name, "tier": "control-plane"},
            "annotations": annotations or {},
        },
        "spec": {
            "hostNetwork": True,
            "priorityClassName": "system-node-critical",
            "containers": [{
                "name": name,
                "image": image,
                "imagePullPolicy": "IfNotPresent",
                "command": command,
                "volumeMounts": mounts,
            }],
            "volumes": volumes,
        },
    }


def _args(defaults: dict[str, str], overrides: dict[str, str]) -> list[str]:
    merged = {**defaults, **overrides}
    return [f"--{k}={v}" for k, v in sorted(merged.items())]


def build_control_plane_pods(cfg: InitConfiguration) -> dict[str, dict[str, Any]]:
    """构建 kube-apiserver、kube-controller-manager、kube-scheduler 的静态 Pod。"""
    cluster = cfg.cluster
    pki = cluster.certificates_dir
    k8s_dir = str(constants.kubernetes_dir())
    repo = cluster.image_repository
    version = cluster.kubernetes_version
    endpoint = cfg.local_api_endpoint

    certs_volume = _host_path_volume(K8S_CERTS_VOLUME, pki)
    certs_mount = _mount(K8S_CERTS_VOLUME, pki)

    if cluster.etcd.external is not None:
        etcd_args = {
            "etcd-servers": ",".join(cluster.etcd.external.endpoints),
            "etcd-cafile": cluster.etcd.external.ca_file,
            "etcd-certfile": cluster.etcd.external.cert_file,
            "etcd-keyfile": cluster.etcd.external.key_file,
        }
    else:
        etcd_args = {
            "etcd-servers": f"https://127.0.0.1:{constants.ETCD_LISTEN_CLIENT_PORT}",
            "etcd-cafile": f"{pki}/etcd/ca.crt",
            "etcd-certfile": f"{pki}/apiserver-etcd-client.crt",
            "etcd-keyfile": f"{pki}/apiserver-etcd-client.key",
        }

    apiserver_args = {
        "advertise-address": endpoint.advertise_address,
        "secure-port": str(endpoint.bind_port),
        "allow-privileged": "true",
        "authorization-mode": "Node,RBAC",
        "client-ca-file": f"{pki}/ca.crt",
        "enable-bootstrap-token-auth": "true",
        "kubelet-client-certificate": f"{pki}/apiserver-kubelet-client.crt",
        "kubelet-client-key": f"{pki}/apiserver-kubelet-client.key",
        "proxy-client-cert-file": f"{pki}/front-proxy-client.crt",
        "proxy-client-key-file": f"{pki}/front-proxy-client.key",
        "requestheader-client-ca-file": f"{pki}/front-proxy-ca.crt",
        "service-account-issuer": f"https://kubernetes.default.svc.{cluster.networking.dns_domain}",
        "service-account-key-file": f"{pki}/sa.pub",
        "service-account-signing-key-file": f"{pki}/sa.key",
        "service-cluster-ip-range": cluster.networking.service_subnet,
        "tls-cert-file": f"{pki}/apiserver.crt",
        "tls-private-key-file": f"{pki}/apiserver.key",
        **etcd_args,
    }

    controller_manager_kubeconfig = f"{k8s_dir}/{constants.CONTROLLER_MANAGER_KUBECONFIG}"
    controller_manager_args = {
        "bind-address": "127.0.0.1",
        "kubeconfig": controller_manager_kubeconfig,
        "authentication-kubeconfig": controller_manager_kubeconfig,
        "authorization-kubeconfig": controller_manager_kubeconfig,
        "client-ca-file": f"{pki}/ca.crt",
        "cluster-name": cluster.cluster_name,
        "cluster-signing-cert-file": f"{pki}/ca.crt",
        "cluster-signing-key-file": f"{pki}/ca.key",
        "controllers": "*,bootstrapsigner,tokencleaner",
        "leader-elect": "true",
        "requestheader-client-ca-file": f"{pki}/front-proxy-ca.crt",
        "root-ca-file": f"{pki}/ca.crt",
        "service-account-private-key-file": f"{pki}/sa.key",
        "use-service-account-credentials": "true",
    }
    if cluster.networking.pod_subnet:
        controller_manager_args["allocate-node-cidrs"] = "true"
        controller_manager_args["cluster-cidr"] = cluster.networking.pod_subnet

    scheduler_kubeconfig = f"{k8s_dir}/{constants.SCHEDULER_KUBECONFIG}"
    scheduler_args = {
        "bind-address": "127.0.0.1",
        "kubeconfig": scheduler_kubeconfig,
        "authentication-kubeconfig": scheduler_kubeconfig,
        "authorization-kubeconfig": scheduler_kubeconfig,
        "leader-elect": "true",
    }

    return {
        constants.KUBE_APISERVER: component_pod(
            constants.KUBE_APISERVER,
            f"{repo}/{constants.KUBE_APISERVER}:{version}",
            [constants.KUBE_APISERVER, *_args(apiserver_args, cluster.api_server.extra_args)],
            [certs_volume],
            [certs_mount],
        ),
        constants.KUBE_CONTROLLER_MANAGER: component_pod(
            constants.KUBE_CONTROLLER_MANAGER,
            f"{repo}/{constants.KUBE_CONTROLLER_MANAGER}:{version}",
            [constants.KUBE_CONTROLLER_MANAGER, *_args(controller_manager_args, cluster.controller_manager.extra_args)],
            [certs_volume, _host_path_volume(KUBECONFIG_VOLUME, controller_manager_kubeconfig, "FileOrCreate")],
            [certs_mount, _mount(KUBECONFIG_VOLUME, controller_manager_kubeconfig)],
        ),
        constants.KUBE_SCHEDULER: component_pod(
            constants.KUBE_SCHEDULER,
            f"{repo}/{constants.KUBE_SCHEDULER}:{version}",
            [constants.KUBE_SCHEDULER, *_args(scheduler_args, cluster.scheduler.extra_args)],
            [_host_path_volume(KUBECONFIG_VOLUME, scheduler_kubeconfig, "FileOrCreate")],
            [_mount(KUBECONFIG_VOLUME, scheduler_kubeconfig)],
        ),
    }


def build_local_etcd_pod(
    cfg: InitConfiguration,
    node_name: str,
    advertise_address: str,
    initial_cluster: list[tuple[str, str]] | None = None,
) -> dict[str, Any]:
    """构建本地 etcd 静态 Pod。

    Args:
        cfg: init 配置
        node_name: etcd 成员名称
        advertise_address: 本机地址
        initial_cluster: 加入已有集群时的 (名称, peer 地址) 列表，为空时新建集群
    """
    cluster = cfg.cluster
    local = cluster.etcd.local
    if local is None:
        raise StaticPodError("local etcd is not configured")

    pki = cluster.certificates_dir
    client_url = get_client_url(advertise_address)
    peer_url = get_peer_url(advertise_address)

    args = {
        "name": node_name,
        "data-dir": local.data_dir,
        "advertise-client-urls": client_url,
        "listen-client-urls": f"https://127.0.0.1:{constants.ETCD_LISTEN_CLIENT_PORT},{client_url}",
        "initial-advertise-peer-urls": peer_url,
        "listen-peer-urls": peer_url,
        "cert-file": f"{pki}/etcd/server.crt",
        "key-file": f"{pki}/etcd/server.key",
        "trusted-ca-file": f"{pki}/etcd/ca.crt",
        "client-cert-auth": "true",
        "peer-cert-file": f"{pki}/etcd/peer.crt",
        "peer-key-file": f"{pki}/etcd/peer.key",
        "peer-trusted-ca-file": f"{pki}/etcd/ca.crt",
        "peer-client-cert-auth": "true",
        "snapshot-count": "10000",
    }
    if initial_cluster:
        args["initial-cluster"] = ",".join(f"{name}={url}" for name, url in initial_cluster)
        args["initial-cluster-state"] = "existing"
    else:
        args["initial-cluster"] = f"{node_name}={peer_url}"

    return component_pod(
        constants.ETCD,
        f"{cluster.image_repository}/etcd:{constants.ETCD_VERSION}",
        [constants.ETCD, *_args(args, local.extra_args)],
        [
            _host_path_volume(ETCD_DATA_VOLUME, local.data_dir),
            _host_path_volume(ETCD_CERTS_VOLUME, f"{pki}/etcd"),
        ],
        [
            _mount(ETCD_DATA_VOLUME, local.data_dir, read_only=False),
            _mount(ETCD_CERTS_VOLUME, f"{pki}/etcd", read_only=False),
        ],
        annotations={constants.ANNOTATION_ETCD_ADVERTISE_CLIENT_URLS: client_url},
    )


def write_static_pod_to_disk(component: str, manifest_dir: str | Path, pod: dict[str, Any]) -> Path:
    """写入静态 Pod 清单。"""
    path = manifest_path(component, manifest_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(pod, sort_keys=False), encoding="utf-8")
    logger.debug(f"Wrote static Pod manifest for component {component!r} to {path}")
    return path


def read_static_pod_from_disk(path: str | Path) -> dict[str, Any]:
    """读取静态 Pod 清单。

    Raises:
        StaticPodError: 文件无法读取或不是 Pod
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            pod = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise StaticPodError(f"failed to read manifest for {path}: {e}") from e
    if not isinstance(pod, dict) or pod.get("kind") != "Pod":
        raise StaticPodError(f"{path} is not a Pod manifest")
    return pod


def get_command_arg(pod: dict[str, Any], flag: str) -> str:
    """读取 Pod 第一个容器命令中 --flag=value 形式的参数，不存在时返回空字符串。"""
    containers = pod.get("spec", {}).get("containers", [])
    if not containers:
        return ""
    prefix = f"--{flag}="
    for arg in containers[0].get("command", []):
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return ""


def get_host_path(pod: dict[str, Any], volume_name: str) -> str:
    """读取 Pod 中 hostPath 卷的路径，不存在时返回空字符串。"""
    for volume in pod.get("spec", {}).get("volumes", []):
        if volume.get("name") == volume_name:
            return volume.get("hostPath", {}).get("path", "")
    return ""
