"""控制平面证书共享模块。

用证书密钥（certificate key）加密控制平面证书，并存入 kube-system 中的 Secret，
供后续加入的控制平面节点下载。
"""

import base64
import logging
import os
import secrets
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from kubeboot import constants
from kubeboot.utils import apiclient

logger = logging.getLogger(__name__)

CERTIFICATE_KEY_SIZE = 32
NONCE_SIZE = 12

# 需要共享的证书与密钥文件，相对证书目录
SHARED_CERT_FILES = (
    "ca.crt",
    "ca.key",
    "front-proxy-ca.crt",
    "front-proxy-ca.key",
    "sa.key",
    "sa.pub",
)
LOCAL_ETCD_CERT_FILES = ("etcd/ca.crt", "etcd/ca.key")
EXTERNAL_ETCD_CERT_FILES = ("external-etcd-ca.crt", "external-etcd.crt", "external-etcd.key")

CERTS_SECRET_ROLE = "kubeboot:kubeboot-certs"


class CertificateKeyError(Exception):
    """证书密钥无效，或密文无法解密。"""


def create_certificate_key() -> str:
    """生成随机证书密钥（十六进制字符串）。"""
    return secrets.token_hex(CERTIFICATE_KEY_SIZE)


def _decode_key(key: str) -> bytes:
    try:
        raw = bytes.fromhex(key)
    except ValueError as e:
        raise CertificateKeyError(f"error decoding certificate key: {e}") from e
    if len(raw) != CERTIFICATE_KEY_SIZE:
        raise CertificateKeyError(f"certificate key must be {CERTIFICATE_KEY_SIZE} bytes, got {len(raw)}")
    return raw


def encrypt(data: bytes, key: str) -> bytes:
    """AES-GCM 加密，随机 nonce 放在密文前面。"""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(_decode_key(key)).encrypt(nonce, data, None)


def decrypt(data: bytes, key: str) -> bytes:
    """解密 encrypt 的输出。

    Raises:
        CertificateKeyError: 密钥错误或数据被篡改
    """
    if len(data) < NONCE_SIZE:
        raise CertificateKeyError("encrypted data is too short")
    try:
        return AESGCM(_decode_key(key)).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise CertificateKeyError(f"error decrypting data: {e}") from e


def secret_key_for(file_name: str) -> str:
    """证书文件在 Secret 中的键名，如 etcd/ca.crt 对应 etcd-ca.crt。"""
    return file_name.replace("/", "-")


def cert_files(external_etcd: bool) -> tuple[str, ...]:
    return SHARED_CERT_FILES + (EXTERNAL_ETCD_CERT_FILES if external_etcd else LOCAL_ETCD_CERT_FILES)


def build_certs_secret(cert_dir: str | Path, key: str, external_etcd: bool = False) -> dict[str, Any]:
    """读取证书目录并构建加密后的 Secret 对象。

    不存在的文件会被跳过。
    """
    data: dict[str, str] = {}
    for file_name in cert_files(external_etcd):
        path = Path(cert_dir) / file_name
        if not path.exists():
            logger.debug(f"Certificate file {path} does not exist, skipping")
            continue
        encrypted = encrypt(path.read_bytes(), key)
        data[secret_key_for(file_name)] = base64.b64encode(encrypted).decode("ascii")

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": constants.CERTS_SECRET, "namespace": constants.KUBE_SYSTEM_NAMESPACE},
        "type": "Opaque",
        "data": data,
    }


def _certs_secret_rbac() -> tuple[dict[str, Any], dict[str, Any]]:
    namespace = constants.KUBE_SYSTEM_NAMESPACE
    role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": {"name": CERTS_SECRET_ROLE, "namespace": namespace},
        "rules": [{
            "apiGroups": [""],
            "resources": ["secrets"],
            "resourceNames": [constants.CERTS_SECRET],
            "verbs": ["get"],
        }],
    }
    binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {"name": CERTS_SECRET_ROLE, "namespace": namespace},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": CERTS_SECRET_ROLE},
        "subjects": [{"kind": "Group", "name": constants.NODE_BOOTSTRAP_TOKEN_AUTH_GROUP}],
    }
    return role, binding


def upload_certs(client: apiclient.ClusterClient, cert_dir: str | Path, key: str, external_etcd: bool = False) -> None:
    """加密控制平面证书并上传到集群。

    同时授权引导令牌读取这个 Secret，新的控制平面节点在 TLS 引导前就要下载证书。
    """
    namespace = constants.KUBE_SYSTEM_NAMESPACE
    secret = build_certs_secret(cert_dir, key, external_etcd)
    apiclient.create_or_update(client, apiclient.secrets_path(namespace), secret)

    role, binding = _certs_secret_rbac()
    apiclient.create_or_update(client, apiclient.roles_path(namespace), role)
    apiclient.create_or_update(client, apiclient.role_bindings_path(namespace), binding)


def decode_certs_secret(secret: dict[str, Any], key: str) -> dict[str, bytes]:
    """解密 Secret 中的全部证书，返回 键名 -> 明文。"""
    return {
        name: decrypt(base64.b64decode(value), key)
        for name, value in secret.get("data", {}).items()
    }


def download_certs(
    client: apiclient.ClusterClient,
    cert_dir: str | Path,
    key: str,
    external_etcd: bool = False,
) -> list[Path]:
    """下载并解密 kubeboot-certs Secret，把证书写入证书目录。

    Returns:
        写入的文件路径

    Raises:
        RuntimeError: 集群中没有这个 Secret
        CertificateKeyError: 密钥错误或数据被篡改
    """
    path = f"{apiclient.secrets_path(constants.KUBE_SYSTEM_NAMESPACE)}/{constants.CERTS_SECRET}"
    secret = client.get(path)
    if secret is None:
        raise RuntimeError(
            f"secret {constants.CERTS_SECRET!r} not found in namespace {constants.KUBE_SYSTEM_NAMESPACE}, "
            f"it may have expired. Upload the certificates again on a control plane node"
        )

    decoded = decode_certs_secret(secret, key)
    written: list[Path] = []
    for file_name in cert_files(external_etcd):
        content = decoded.get(secret_key_for(file_name))
        if content is None:
            logger.debug(f"Certificate {file_name} is not in the secret, skipping")
            continue
        dest = Path(cert_dir) / file_name
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        # 私钥只允许所有者读写
        os.chmod(dest, 0o600 if dest.suffix == ".key" else 0o644)
        written.append(dest)
    return written
