"""etcd 客户端模块。

通过 etcd v3 的 JSON gRPC 网关管理集群成员，检查集群健康状态。
"""

import logging
import ssl
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from kubeboot import constants
from kubeboot.utils import apiclient

logger = logging.getLogger(__name__)

ETCD_TIMEOUT = 2.0

# 成员操作的重试参数
_BACKOFF_STEPS = 18
_BACKOFF_INITIAL = 0.1
_BACKOFF_FACTOR = 1.5


class EtcdError(Exception):
    """etcd 操作失败。"""


@dataclass
class Member:
    """etcd 集群成员。"""

    name: str
    id: int
    peer_urls: list[str] = field(default_factory=list)
    client_urls: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Member":
        return cls(
            name=data.get("name", ""),
            id=int(data.get("ID", 0)),
            peer_urls=list(data.get("peerURLs", [])),
            client_urls=list(data.get("clientURLs", [])),
        )


def _format_url(host: str, port: int) -> str:
    if ":" in host:
        host = f"[{host}]"
    return f"https://{host}:{port}"


def get_client_url(advertise_address: str) -> str:
    return _format_url(advertise_address, constants.ETCD_LISTEN_CLIENT_PORT)


def get_peer_url(advertise_address: str) -> str:
    return _format_url(advertise_address, constants.ETCD_LISTEN_PEER_PORT)


def get_etcd_endpoints(client: apiclient.ClusterClient) -> list[str]:
    """从 etcd 静态 Pod 的注解中读取客户端地址。

    Raises:
        EtcdError: 没有找到任何地址
    """
    pods = client.get(
        apiclient.pods_path(constants.KUBE_SYSTEM_NAMESPACE),
        params={"labelSelector": "component=etcd,tier=control-plane"},
    ) or {}

    endpoints = []
    for pod in pods.get("items", []):
        annotations = pod.get("metadata", {}).get("annotations", {})
        url = annotations.get(constants.ANNOTATION_ETCD_ADVERTISE_CLIENT_URLS)
        if url:
            endpoints.append(url)
        else:
            logger.debug(f"etcd Pod {pod.get('metadata', {}).get('name')} is missing the client URL annotation")

    if not endpoints:
        raise EtcdError("could not retrieve the list of etcd endpoints")
    return endpoints


class EtcdClient:
    """etcd 集群客户端。"""

    def __init__(
        self,
        endpoints: list[str],
        ca_file: str = "",
        cert_file: str = "",
        key_file: str = "",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """初始化客户端。

        Args:
            endpoints: 客户端地址列表
            ca_file: CA 证书文件
            cert_file: 客户端证书文件
            key_file: 客户端私钥文件
            transport: 自定义传输层
        """
        self.endpoints = list(endpoints)

        verify: ssl.SSLContext | bool = True
        if transport is None and (ca_file or cert_file):
            verify = ssl.create_default_context(cafile=ca_file or None)
            if cert_file and key_file:
                verify.load_cert_chain(cert_file, key_file)

        self._client = httpx.Client(verify=verify, timeout=ETCD_TIMEOUT, transport=transport)

    @classmethod
    def from_cluster(cls, client: apiclient.ClusterClient, certificates_dir: str, **kwargs: Any) -> "EtcdClient":
        """根据集群中 etcd Pod 的地址创建客户端，并同步成员地址。"""
        endpoints = get_etcd_endpoints(client)
        logger.debug(f"etcd endpoints read from pods: {','.join(endpoints)}")

        pki_dir = Path(certificates_dir)
        etcd_client = cls(
            endpoints,
            ca_file=str(pki_dir / f"{constants.ETCD_CA_CERT_AND_KEY_BASE_NAME}.crt"),
            cert_file=str(pki_dir / f"{constants.ETCD_HEALTHCHECK_CLIENT_CERT_AND_KEY_BASE_NAME}.crt"),
            key_file=str(pki_dir / f"{constants.ETCD_HEALTHCHECK_CLIENT_CERT_AND_KEY_BASE_NAME}.key"),
            **kwargs,
        )
        etcd_client.sync()
        return etcd_client

    def _call(self, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        # 依次尝试各个地址，第一个成功的返回
        last_error: Exception | None = None
        for endpoint in self.endpoints:
            try:
                response = self._client.post(f"{endpoint.rstrip('/')}{path}", json=body or {})
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                logger.debug(f"etcd call {path} to {endpoint} failed: {e}")
                last_error = e
        raise EtcdError(f"etcd call {path} failed on all endpoints: {last_error}")

    def _call_with_backoff(self, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        delay = _BACKOFF_INITIAL
        for step in range(_BACKOFF_STEPS):
            try:
                return self._call(path, body)
            except EtcdError:
                if step == _BACKOFF_STEPS - 1:
                    raise
                time.sleep(delay)
                delay *= _BACKOFF_FACTOR
        raise EtcdError(f"etcd call {path} failed")

    def sync(self) -> None:
        """用成员列表中的客户端地址替换当前地址。"""
        urls = [url for m in self.list_members() for url in m.client_urls]
        if urls:
            self.endpoints = urls
        logger.debug(f"etcd endpoints synced: {','.join(self.endpoints)}")

    def list_members(self) -> list[Member]:
        data = self._call_with_backoff("/v3/cluster/member/list")
        return [Member.from_dict(m) for m in data.get("members", [])]

    def get_member_id(self, peer_url: str) -> int:
        """根据 peer 地址查找成员 ID。

        Raises:
            EtcdError: 没有匹配的成员
        """
        for member in self.list_members():
            if peer_url in member.peer_urls:
                return member.id
        raise EtcdError(f"no etcd member with peer URL {peer_url}")

    def add_member(self, name: str, peer_url: str) -> list[Member]:
        """添加成员，返回包含新成员的成员列表。

        Raises:
            EtcdError: 地址无效或添加失败
        """
        parsed = urlparse(peer_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise EtcdError(f"error parsing peer address {peer_url}")

        data = self._call_with_backoff("/v3/cluster/member/add", {"peerURLs": [peer_url]})
        new_id = int(data.get("member", {}).get("ID", 0))

        members = []
        for m in data.get("members", []):
            member = Member.from_dict(m)
            # 新成员尚未启动，没有名称
            if member.id == new_id and not member.name:
                member.name = name
            members.append(member)
        return members

    def remove_member(self, member_id: int) -> list[Member]:
        data = self._call_with_backoff("/v3/cluster/member/remove", {"ID": str(member_id)})
        return [Member.from_dict(m) for m in data.get("members", [])]

    def check_cluster_health(self) -> None:
        """检查每个地址的状态。

        Raises:
            EtcdError: 任一地址不健康
        """
        for endpoint in self.endpoints:
            try:
                response = self._client.post(f"{endpoint.rstrip('/')}/v3/maintenance/status", json={})
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise EtcdError(f"etcd cluster is not healthy: {endpoint}: {e}") from e

    def wait_for_cluster_available(
        self,
        retries: int = constants.ETCD_API_CALL_RETRIES,
        interval: float = constants.ETCD_API_CALL_RETRY_INTERVAL,
    ) -> bool:
        """等待集群可用。

        Returns:
            集群是否可用

        Raises:
            EtcdError: 重试耗尽
        """
        for attempt in range(retries):
            if attempt > 0:
                logger.info(f"[etcd] Waiting {interval}s until next retry")
                time.sleep(interval)
            logger.info(f"[etcd] Attempt {attempt + 1}/{retries} to check cluster availability")
            try:
                self.check_cluster_health()
                return True
            except EtcdError as e:
                logger.info(f"[etcd] Cluster is not available: {e}")
        raise EtcdError("timeout waiting for etcd cluster to be available")

    def close(self) -> None:
        self._client.close()
