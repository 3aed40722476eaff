"""kubeconfig 文件模块。

构建、读写 kubeconfig，并为控制平面组件生成带客户端证书的 kubeconfig 文件。
"""

import base64
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
import yaml

from kubeboot import constants
from kubeboot.utils import pki

logger = logging.getLogger(__name__)


class KubeconfigError(Exception):
    """kubeconfig 无效或与现有集群不一致。"""


@dataclass
class KubeconfigSpec:
    """生成 kubeconfig 所需的客户端身份。"""

    client_name: str
    organizations: list[str] = field(default_factory=list)
    token: str = ""


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def build_kubeconfig(
    server: str,
    cluster_name: str,
    user_name: str,
    ca_cert_pem: bytes,
    client_cert_pem: bytes | None = None,
    client_key_pem: bytes | None = None,
    token: str = "",
) -> dict[str, Any]:
    """构建 kubeconfig 字典。

    Args:
        server: API Server 地址（https://host:port）
        cluster_name: 集群名称
        user_name: 用户名称
        ca_cert_pem: CA 证书
        client_cert_pem: 客户端证书
        client_key_pem: 客户端私钥
        token: 令牌，与客户端证书二选一

    Returns:
        kubeconfig 字典
    """
    user: dict[str, str] = {}
    if token:
        user["token"] = token
    if client_cert_pem is not None and client_key_pem is not None:
        user["client-certificate-data"] = _b64(client_cert_pem)
        user["client-key-data"] = _b64(client_key_pem)

    context_name = f"{user_name}@{cluster_name}"
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{
            "name": cluster_name,
            "cluster": {"server": server, "certificate-authority-data": _b64(ca_cert_pem)},
        }],
        "users": [{"name": user_name, "user": user}],
        "contexts": [{"name": context_name, "context": {"cluster": cluster_name, "user": user_name}}],
        "current-context": context_name,
        "preferences": {},
    }


def write_kubeconfig(path: str | Path, config: dict[str, Any]) -> None:
    """写入 kubeconfig 文件（权限 0600）。"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    os.chmod(path, 0o600)


def load_kubeconfig(path: str | Path) -> dict[str, Any]:
    """读取 kubeconfig 文件。

    Raises:
        KubeconfigError: 文件不存在或格式无效
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise KubeconfigError(f"failed to load kubeconfig {path}: {e}") from e

    if not isinstance(config, dict) or not config.get("clusters"):
        raise KubeconfigError(f"invalid kubeconfig {path}: no clusters defined")
    return config


def _current(config: dict[str, Any], section: str, key: str) -> dict[str, Any]:
    contexts = {c["name"]: c["context"] for c in config.get("contexts", [])}
    context = contexts.get(config.get("current-context", ""))
    items = {item["name"]: item[key] for item in config.get(section, [])}
    if context is not None and context.get(key) in items:
        return items[context[key]]
    if not items:
        raise KubeconfigError(f"kubeconfig has no {section}")
    return next(iter(items.values()))


def current_cluster(config: dict[str, Any]) -> dict[str, Any]:
    """获取当前上下文的集群信息。"""
    return _current(config, "clusters", "cluster")


def current_user(config: dict[str, Any]) -> dict[str, Any]:
    """获取当前上下文的用户信息，没有用户时返回空字典。"""
    try:
        return _current(config, "users", "user")
    except KubeconfigError:
        return {}


def cluster_ca_data(config: dict[str, Any]) -> bytes:
    """获取当前集群的 CA 证书内容。"""
    cluster = current_cluster(config)
    if "certificate-authority-data" in cluster:
        return base64.b64decode(cluster["certificate-authority-data"])
    if "certificate-authority" in cluster:
        return Path(cluster["certificate-authority"]).read_bytes()
    raise KubeconfigError("kubeconfig cluster has no certificate authority")


def user_credentials(config: dict[str, Any]) -> tuple[bytes | None, bytes | None, str]:
    """获取当前用户的 (客户端证书, 客户端私钥, 令牌)。"""
    user = current_user(config)
    cert = user.get("client-certificate-data")
    key = user.get("client-key-data")
    return (
        base64.b64decode(cert) if cert else None,
        base64.b64decode(key) if key else None,
        user.get("token", ""),
    )


def control_plane_endpoint(address: str, port: int, control_plane_endpoint: str = "") -> str:
    """计算 API Server 访问地址。

    配置了 controlPlaneEndpoint 时优先使用它，未带端口时补上 bind 端口。
    """
    if control_plane_endpoint:
        host = control_plane_endpoint
        if ":" not in host.rsplit("]", 1)[-1]:
            host = f"{host}:{port}"
        return f"https://{host}"
    if ":" in address:
        address = f"[{address}]"
    return f"https://{address}:{port}"


def kubeconfig_specs(node_name: str) -> dict[str, KubeconfigSpec]:
    """控制平面节点需要的 kubeconfig 文件及其客户端身份。"""
    return {
        constants.ADMIN_KUBECONFIG: KubeconfigSpec(
            client_name=constants.ADMIN_USER,
            organizations=[constants.SYSTEM_PRIVILEGED_GROUP],
        ),
        constants.KUBELET_KUBECONFIG: KubeconfigSpec(
            client_name=f"{constants.NODES_USER_PREFIX}{node_name}",
            organizations=[constants.NODES_GROUP],
        ),
        constants.CONTROLLER_MANAGER_KUBECONFIG: KubeconfigSpec(client_name=constants.CONTROLLER_MANAGER_USER),
        constants.SCHEDULER_KUBECONFIG: KubeconfigSpec(client_name=constants.SCHEDULER_USER),
    }


def _validate_existing(path: Path, server: str, ca_pem: bytes) -> None:
    current = load_kubeconfig(path)
    if cluster_ca_data(current).strip() != ca_pem.strip():
        raise KubeconfigError(f"a kubeconfig file {str(path)!r} exists already but has got the wrong CA cert")
    existing_server = current_cluster(current).get("server", "")
    if existing_server != server:
        # 地址不同不影响使用，只提示
        logger.warning(f"Kubeconfig {path} uses server {existing_server}, expected {server}")


def create_kubeconfig_file(
    file_name: str,
    out_dir: str | Path,
    cert_dir: str | Path,
    server: str,
    cluster_name: str,
    node_name: str,
) -> None:
    """生成单个 kubeconfig 文件。

    文件已存在时校验其 CA，一致则沿用。

    Raises:
        KubeconfigError: 未知文件名，或已存在的文件 CA 不一致
        pki.PKIError: 无法加载 CA
    """
    specs = kubeconfig_specs(node_name)
    if file_name not in specs:
        raise KubeconfigError(f"couldn't find a kubeconfig spec for {file_name}")
    spec = specs[file_name]

    ca_cert, ca_key = pki.try_load_cert_and_key_from_disk(cert_dir, constants.CA_CERT_AND_KEY_BASE_NAME)
    ca_pem = pki.encode_cert_pem(ca_cert)

    path = Path(out_dir) / file_name
    if path.exists():
        _validate_existing(path, server, ca_pem)
        click.echo(f"[kubeconfig] 使用已存在的 kubeconfig 文件: {str(path)!r}")
        return

    key = pki.new_private_key()
    cert = pki.new_signed_cert(
        pki.CertConfig(
            common_name=spec.client_name,
            organization=spec.organizations,
            usages=[pki.USAGE_CLIENT],
        ),
        key,
        ca_cert,
        ca_key,
    )
    config = build_kubeconfig(
        server,
        cluster_name,
        spec.client_name,
        ca_pem,
        client_cert_pem=pki.encode_cert_pem(cert),
        client_key_pem=pki.encode_private_key_pem(key),
    )
    click.echo(f"[kubeconfig] 写入 {file_name!r} kubeconfig 文件")
    write_kubeconfig(path, config)
