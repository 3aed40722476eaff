"""集群 API 客户端模块。

提供访问 API Server 的 HTTP 客户端、dry-run 模式下的替身客户端，
以及创建或更新常用对象的辅助函数。
"""

import copy
import logging
import ssl
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

import click
import httpx
import yaml

from kubeboot import constants
from kubeboot.utils import kubeconfig as kubeconfigutil

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """API 请求失败。"""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(message)


class AlreadyExistsError(ApiError):
    """对象已存在。"""


@runtime_checkable
class ClusterClient(Protocol):
    """集群 API 客户端接口。

    路径均为 API Server 上的资源路径，如 /api/v1/namespaces/kube-system/configmaps。
    """

    def get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any] | None: ...

    def create(self, path: str, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, path: str, obj: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, path: str) -> None: ...

    def healthy(self) -> bool: ...


def _ssl_context(ca_data: bytes | None, cert_data: bytes | None, key_data: bytes | None) -> ssl.SSLContext:
    context = ssl.create_default_context(cadata=ca_data.decode("ascii") if ca_data else None)
    if cert_data and key_data:
        # ssl 只能从文件加载客户端证书
        with tempfile.TemporaryDirectory(prefix=constants.TEMP_DIR_PREFIX) as tmp:
            cert_file = Path(tmp) / "client.crt"
            key_file = Path(tmp) / "client.key"
            cert_file.write_bytes(cert_data)
            key_file.write_bytes(key_data)
            context.load_cert_chain(str(cert_file), str(key_file))
    return context


class KubeClient:
    """基于 httpx 的 API Server 客户端。"""

    def __init__(
        self,
        server: str,
        ca_data: bytes | None = None,
        cert_data: bytes | None = None,
        key_data: bytes | None = None,
        token: str = "",
        insecure: bool = False,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """初始化客户端。

        Args:
            server: API Server 地址
            ca_data: CA 证书
            cert_data: 客户端证书
            key_data: 客户端私钥
            token: Bearer 令牌
            insecure: 不校验服务端证书
            timeout: 请求超时时间（秒）
            transport: 自定义传输层
        """
        self.server = server
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        # 自定义传输层自行处理 TLS
        verify: ssl.SSLContext | bool = False
        if not insecure and transport is None:
            verify = _ssl_context(ca_data, cert_data, key_data)

        self._client = httpx.Client(
            base_url=server,
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_kubeconfig(cls, path: str | Path, **kwargs: Any) -> "KubeClient":
        """根据 kubeconfig 文件创建客户端。"""
        return cls.from_config(kubeconfigutil.load_kubeconfig(path), **kwargs)

    @classmethod
    def from_config(cls, config: dict[str, Any], **kwargs: Any) -> "KubeClient":
        """根据 kubeconfig 字典创建客户端。"""
        server = kubeconfigutil.current_cluster(config)["server"]
        cert, key, token = kubeconfigutil.user_credentials(config)
        return cls(
            server,
            ca_data=kubeconfigutil.cluster_ca_data(config),
            cert_data=cert,
            key_data=key,
            token=token,
            **kwargs,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger.debug(f"{method} {self.server}{path}")
        response = self._client.request(method, path, **kwargs)
        if response.status_code == 409:
            raise AlreadyExistsError(409, f"{path} already exists")
        if response.status_code >= 400:
            raise ApiError(response.status_code, f"{method} {path} failed ({response.status_code}): {response.text}")
        return response

    def get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any] | None:
        try:
            return self._request("GET", path, params=params).json()
        except ApiError as e:
            if e.status_code == 404:
                return None
            raise

    def create(self, path: str, obj: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", path, json=obj).json()

    def update(self, path: str, obj: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", path, json=obj).json()

    def delete(self, path: str) -> None:
        try:
            self._request("DELETE", path)
        except ApiError as e:
            if e.status_code != 404:
                raise

    def healthy(self) -> bool:
        try:
            response = self._client.get("/healthz")
        except httpx.HTTPError as e:
            logger.debug(f"API server health check failed: {e}")
            return False
        return response.status_code == 200 and response.text.strip() == "ok"

    def close(self) -> None:
        self._client.close()


class DryRunClient:
    """dry-run 模式的客户端。

    不修改集群，只打印将要执行的写操作；读取时返回已“写入”的对象，
    对节点返回一个最小的假对象。
    """

    def __init__(self, node_name: str = "", out: Callable[[str], None] = click.echo) -> None:
        self._objects: dict[str, dict[str, Any]] = {}
        self._node_name = node_name
        self._out = out

    def _print(self, action: str, path: str, obj: dict[str, Any] | None = None) -> None:
        self._out(f"[dryrun] Would perform action {action} on resource {path}")
        if obj is not None:
            self._out(yaml.safe_dump(obj, sort_keys=False).rstrip())

    def get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any] | None:
        self._print("GET", path)
        if path in self._objects:
            return copy.deepcopy(self._objects[path])
        if path == node_path(self._node_name):
            return {
                "apiVersion": "v1",
                "kind": "Node",
                "metadata": {"name": self._node_name, "labels": {}, "annotations": {}},
                "spec": {},
            }
        return None

    def create(self, path: str, obj: dict[str, Any]) -> dict[str, Any]:
        self._print("CREATE", path, obj)
        name = obj.get("metadata", {}).get("name", "")
        self._objects[f"{path}/{name}"] = copy.deepcopy(obj)
        return obj

    def update(self, path: str, obj: dict[str, Any]) -> dict[str, Any]:
        self._print("UPDATE", path, obj)
        self._objects[path] = copy.deepcopy(obj)
        return obj

    def delete(self, path: str) -> None:
        self._print("DELETE", path)
        self._objects.pop(path, None)

    def healthy(self) -> bool:
        return True


def configmaps_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/configmaps"


def secrets_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/secrets"


def pods_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/pods"


def node_path(name: str) -> str:
    return f"/api/v1/nodes/{name}"


def roles_path(namespace: str) -> str:
    return f"/apis/rbac.authorization.k8s.io/v1/namespaces/{namespace}/roles"


def role_bindings_path(namespace: str) -> str:
    return f"/apis/rbac.authorization.k8s.io/v1/namespaces/{namespace}/rolebindings"


CLUSTER_ROLES_PATH = "/apis/rbac.authorization.k8s.io/v1/clusterroles"
CLUSTER_ROLE_BINDINGS_PATH = "/apis/rbac.authorization.k8s.io/v1/clusterrolebindings"


def create_or_update(client: ClusterClient, collection_path: str, obj: dict[str, Any]) -> None:
    """创建对象，已存在时更新。"""
    try:
        client.create(collection_path, obj)
    except AlreadyExistsError:
        client.update(f"{collection_path}/{obj['metadata']['name']}", obj)


def create_or_retain(client: ClusterClient, collection_path: str, obj: dict[str, Any]) -> None:
    """创建对象，已存在时保持不变。"""
    try:
        client.create(collection_path, obj)
    except AlreadyExistsError:
        logger.debug(f"{collection_path}/{obj['metadata']['name']} already exists, keeping it")


def new_configmap(namespace: str, name: str, data: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": data,
    }


def get_configmap_data(client: ClusterClient, namespace: str, name: str) -> dict[str, str] | None:
    configmap = client.get(f"{configmaps_path(namespace)}/{name}")
    if configmap is None:
        return None
    return configmap.get("data", {})


def patch_node(client: ClusterClient, node_name: str, mutate: Callable[[dict[str, Any]], None]) -> None:
    """读取节点对象，修改后写回。

    Raises:
        ApiError: 节点不存在或更新失败
    """
    path = node_path(node_name)
    node = client.get(path)
    if node is None:
        raise ApiError(404, f"node {node_name!r} not found")
    node.setdefault("metadata", {}).setdefault("labels", {})
    node["metadata"].setdefault("annotations", {})
    node.setdefault("spec", {})
    mutate(node)
    client.update(path, node)


def node_is_ready(node: dict[str, Any]) -> bool:
    for condition in node.get("status", {}).get("conditions", []):
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def wait_for_api(
    client: ClusterClient,
    timeout: float = constants.CONTROL_PLANE_READY_TIMEOUT,
    interval: float = constants.API_CALL_RETRY_INTERVAL,
) -> None:
    """等待 API Server 健康检查通过。

    Raises:
        TimeoutError: 超时
    """
    deadline = time.monotonic() + timeout
    while True:
        if client.healthy():
            return
        if time.monotonic() >= deadline:
            raise TimeoutError(f"timed out waiting for the condition after {timeout:.0f}s")
        time.sleep(interval)
