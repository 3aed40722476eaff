"""kubelet 模块。

生成 kubelet 配置文件与启动参数文件，并通过 init 系统启停 kubelet。
"""

import ipaddress
import logging
import socket
from pathlib import Path
from typing import Any

import click
import yaml

from kubeboot import constants
from kubeboot.utils.config import ClusterConfiguration, NodeRegistrationOptions
from kubeboot.utils.initsystem import InitSystemError, get_init_system

logger = logging.getLogger(__name__)

KUBELET_SERVICE = "kubelet"


def cluster_dns_ip(service_subnet: str) -> str:
    """集群 DNS 地址，取服务网段中的第 10 个地址。"""
    network = ipaddress.ip_network(service_subnet.split(",")[0].strip(), strict=False)
    return str(network.network_address + 10)


def build_kubelet_configuration(cluster: ClusterConfiguration) -> dict[str, Any]:
    """根据集群配置构建 KubeletConfiguration。"""
    return {
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "kind": "KubeletConfiguration",
        "authentication": {
            "anonymous": {"enabled": False},
            "webhook": {"enabled": True},
            "x509": {"clientCAFile": str(Path(cluster.certificates_dir) / "ca.crt")},
        },
        "authorization": {"mode": "Webhook"},
        "cgroupDriver": "systemd",
        "clusterDNS": [cluster_dns_ip(cluster.networking.service_subnet)],
        "clusterDomain": cluster.networking.dns_domain,
        "rotateCertificates": True,
        "staticPodPath": str(constants.static_pod_dir()),
    }


def write_config_to_disk(kubelet_config: dict[str, Any], kubelet_dir: str | Path) -> Path:
    """写入 kubelet 配置文件。"""
    path = Path(kubelet_dir) / constants.KUBELET_CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(kubelet_config, sort_keys=False), encoding="utf-8")
    return path


def build_kubelet_flags(node_registration: NodeRegistrationOptions, pause_image: str) -> dict[str, str]:
    """构建写入环境文件的 kubelet 启动参数。"""
    flags: dict[str, str] = {}
    if node_registration.cri_socket != constants.DEFAULT_DOCKER_CRI_SOCKET:
        flags["container-runtime"] = "remote"
        flags["container-runtime-endpoint"] = f"unix://{node_registration.cri_socket}"
    else:
        flags["network-plugin"] = "cni"
        flags["pod-infra-container-image"] = pause_image

    if node_registration.name and node_registration.name != socket.gethostname().lower():
        flags["hostname-override"] = node_registration.name

    # 用户指定的参数优先
    flags.update(node_registration.kubelet_extra_args)
    return flags


def write_kubelet_dynamic_env_file(
    cluster: ClusterConfiguration,
    node_registration: NodeRegistrationOptions,
    kubelet_dir: str | Path,
) -> Path:
    """写入 kubelet 启动参数环境文件。"""
    pause_image = f"{cluster.image_repository}/pause:{constants.PAUSE_VERSION}"
    flags = build_kubelet_flags(node_registration, pause_image)
    args = " ".join(f"--{k}={v}" for k, v in sorted(flags.items()))

    path = Path(kubelet_dir) / constants.KUBELET_ENV_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f'{constants.KUBELET_ENV_VAR}="{args}"\n', encoding="utf-8")
    return path


def try_start_kubelet() -> None:
    """尝试启动 kubelet，失败时只打印警告。"""
    try:
        init_system = get_init_system()
    except InitSystemError:
        click.echo("[kubelet-start] 未检测到支持的 init 系统，无法确保 kubelet 正常运行")
        return

    if not init_system.service_exists(KUBELET_SERVICE):
        click.echo("[kubelet-start] 未检测到 kubelet 服务，无法确保 kubelet 正常运行")

    try:
        init_system.service_restart(KUBELET_SERVICE)
    except InitSystemError as e:
        click.echo(f"[kubelet-start] 警告: 无法启动 kubelet 服务: [{e}]")
        click.echo("[kubelet-start] 请手动重新加载并启动 kubelet")


def try_stop_kubelet() -> None:
    """尝试暂时停止 kubelet，失败时只打印警告。"""
    try:
        init_system = get_init_system()
    except InitSystemError:
        click.echo("[kubelet-start] 未检测到支持的 init 系统，无法在写入配置期间停止 kubelet")
        return

    if not init_system.service_exists(KUBELET_SERVICE):
        click.echo("[kubelet-start] 未检测到 kubelet 服务，无法在写入配置期间停止 kubelet")

    try:
        init_system.service_stop(KUBELET_SERVICE)
    except InitSystemError as e:
        click.echo(f"[kubelet-start] 警告: 无法暂时停止 kubelet 服务: [{e}]")
