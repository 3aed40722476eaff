"""集群发现模块。

join 时通过引导令牌或 kubeconfig 文件获取集群信息，生成 TLS 引导使用的 kubeconfig。
"""

import logging
import time
from typing import Any

import httpx
import yaml
from cryptography import x509

from kubeboot import constants
from kubeboot.utils import apiclient, pki, tokens
from kubeboot.utils import kubeconfig as kubeconfigutil
from kubeboot.utils.config import BootstrapTokenDiscovery, JoinConfiguration, parse_duration

logger = logging.getLogger(__name__)

TOKEN_USER = "tls-bootstrap-token-user"


class DiscoveryError(Exception):
    """集群发现失败。"""


def discover(cfg: JoinConfiguration, transport: httpx.BaseTransport | None = None) -> dict[str, Any]:
    """获取 TLS 引导使用的 kubeconfig。

    Args:
        cfg: join 配置
        transport: 自定义传输层

    Returns:
        使用引导令牌认证的 kubeconfig

    Raises:
        DiscoveryError: 发现失败
    """
    discovery = cfg.discovery
    if discovery.file is not None:
        return _discover_from_file(discovery.file.kube_config_path, discovery.tls_bootstrap_token)
    if discovery.bootstrap_token is not None:
        timeout = parse_duration(discovery.timeout)
        cluster_info = retrieve_validated_cluster_info(discovery.bootstrap_token, timeout, transport)
        return _token_kubeconfig(cluster_info, discovery.tls_bootstrap_token)
    raise DiscoveryError("couldn't find a valid discovery configuration")


def _discover_from_file(path: str, tls_bootstrap_token: str) -> dict[str, Any]:
    logger.info(f"[discovery] Using discovery file {path}")
    try:
        config = kubeconfigutil.load_kubeconfig(path)
    except kubeconfigutil.KubeconfigError as e:
        raise DiscoveryError(str(e)) from e

    cert, key, token = kubeconfigutil.user_credentials(config)
    if cert or token:
        return config
    if not tls_bootstrap_token:
        raise DiscoveryError(f"the discovery file {path} has no credentials and no TLS bootstrap token was given")
    return _token_kubeconfig(config, tls_bootstrap_token)


def _token_kubeconfig(cluster_info: dict[str, Any], token: str) -> dict[str, Any]:
    cluster = kubeconfigutil.current_cluster(cluster_info)
    return kubeconfigutil.build_kubeconfig(
        cluster["server"],
        constants.DEFAULT_CLUSTER_NAME,
        TOKEN_USER,
        kubeconfigutil.cluster_ca_data(cluster_info),
        token=token,
    )


def _fetch_cluster_info(client: apiclient.KubeClient, timeout: float) -> dict[str, str]:
    path = f"{apiclient.configmaps_path(constants.KUBE_PUBLIC_NAMESPACE)}/{constants.CLUSTER_INFO_CONFIGMAP}"
    deadline = time.monotonic() + timeout
    while True:
        try:
            configmap = client.get(path)
            if configmap is not None:
                return configmap.get("data", {})
            logger.info("[discovery] The cluster-info ConfigMap does not yet exist")
        except (apiclient.ApiError, httpx.HTTPError) as e:
            logger.info(f"[discovery] Failed to request cluster-info, will try again: {e}")
        if time.monotonic() >= deadline:
            raise DiscoveryError(f"couldn't validate the identity of the API Server: timed out after {timeout:.0f}s")
        time.sleep(constants.DISCOVERY_RETRY_INTERVAL)


def retrieve_validated_cluster_info(
    discovery: BootstrapTokenDiscovery,
    timeout: float,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    """读取并校验 cluster-info 中的 kubeconfig。

    先用令牌校验 JWS 签名，再用 CA 公钥指纹校验集群 CA。

    Raises:
        DiscoveryError: 签名或 CA 校验失败
    """
    token_id, token_secret = discovery.token.split(".")
    endpoint = discovery.api_server_endpoint
    if not endpoint.startswith("https://"):
        endpoint = f"https://{endpoint}"

    # 此时还不信任任何 CA，只能以不安全方式读取，随后用签名校验内容
    client = apiclient.KubeClient(endpoint, insecure=True, transport=transport)
    try:
        data = _fetch_cluster_info(client, timeout)
    finally:
        client.close()

    content = data.get(constants.KUBECONFIG_CLUSTER_INFO_KEY)
    if not content:
        raise DiscoveryError("there is no kubeconfig in the cluster-info ConfigMap")
    signature = data.get(f"{constants.JWS_SIGNATURE_KEY_PREFIX}{token_id}")
    if not signature:
        raise DiscoveryError(f"token id {token_id!r} is invalid for this cluster or it has expired")

    try:
        tokens.verify_detached_signature(content, signature, token_id, token_secret)
    except tokens.TokenError as e:
        raise DiscoveryError(str(e)) from e

    cluster_info = yaml.safe_load(content)
    ca_data = kubeconfigutil.cluster_ca_data(cluster_info)

    if discovery.unsafe_skip_ca_verification:
        logger.warning("[discovery] Skipping CA verification, the cluster identity is not validated")
        return cluster_info

    errors = []
    for cert in x509.load_pem_x509_certificates(ca_data):
        try:
            pki.verify_public_key_pins(cert, discovery.ca_cert_hashes)
            logger.info(f"[discovery] Cluster info signature and contents are valid, will use API Server {endpoint}")
            return cluster_info
        except pki.PKIError as e:
            errors.append(str(e))
    raise DiscoveryError("; ".join(errors))
