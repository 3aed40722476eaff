"""PKI 模块。

生成和读写集群使用的 CA、证书、私钥以及服务账号密钥对。
"""

import datetime
import hashlib
import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubeboot import constants

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
PUBLIC_KEY_PIN_PREFIX = "sha256:"

# 证书用途
USAGE_SERVER = "server"
USAGE_CLIENT = "client"


class PKIError(Exception):
    """证书或密钥操作失败。"""


@dataclass
class AltNames:
    """证书的 SAN 列表。"""

    dns_names: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)


@dataclass
class CertConfig:
    """证书签发参数。"""

    common_name: str
    organization: list[str] = field(default_factory=list)
    alt_names: AltNames = field(default_factory=AltNames)
    usages: list[str] = field(default_factory=list)
    validity_days: int = constants.DEFAULT_CERT_VALIDITY_DAYS


def new_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)


def _name(common_name: str, organization: list[str] | None = None) -> x509.Name:
    attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, o) for o in organization or []]
    attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    return x509.Name(attributes)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def new_self_signed_ca(common_name: str) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """生成自签名 CA 证书与私钥。

    Args:
        common_name: CA 名称

    Returns:
        (证书, 私钥)
    """
    key = new_private_key()
    name = _name(common_name)
    now = _now()
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=constants.DEFAULT_CA_VALIDITY_DAYS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=True,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    return cert, key


def new_signed_cert(
    cfg: CertConfig,
    key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
) -> x509.Certificate:
    """用 CA 签发证书。

    Args:
        cfg: 签发参数
        key: 证书私钥
        ca_cert: CA 证书
        ca_key: CA 私钥

    Returns:
        签发的证书
    """
    now = _now()
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(cfg.common_name, cfg.organization))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(ca_cert.not_valid_before_utc)
        .not_valid_after(now + datetime.timedelta(days=cfg.validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=True,
                data_encipherment=False, key_agreement=False, key_cert_sign=False,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
    )

    usages = []
    if USAGE_SERVER in cfg.usages:
        usages.append(ExtendedKeyUsageOID.SERVER_AUTH)
    if USAGE_CLIENT in cfg.usages:
        usages.append(ExtendedKeyUsageOID.CLIENT_AUTH)
    if usages:
        builder = builder.add_extension(x509.ExtendedKeyUsage(usages), critical=False)

    sans: list[x509.GeneralName] = [x509.DNSName(d) for d in cfg.alt_names.dns_names]
    sans.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in cfg.alt_names.ips)
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)

    return builder.sign(ca_key, hashes.SHA256())


def encode_cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def encode_private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def encode_public_key_pem(key: rsa.RSAPublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)


def _write(path: Path, data: bytes, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.chmod(path, mode)


def path_for_cert(pki_dir: str | Path, base_name: str) -> Path:
    return Path(pki_dir) / f"{base_name}.crt"


def path_for_key(pki_dir: str | Path, base_name: str) -> Path:
    return Path(pki_dir) / f"{base_name}.key"


def path_for_public_key(pki_dir: str | Path, base_name: str) -> Path:
    return Path(pki_dir) / f"{base_name}.pub"


def write_cert_and_key(
    pki_dir: str | Path,
    base_name: str,
    cert: x509.Certificate,
    key: rsa.RSAPrivateKey,
) -> None:
    """写入证书（0644）和私钥（0600）。"""
    _write(path_for_key(pki_dir, base_name), encode_private_key_pem(key), 0o600)
    _write(path_for_cert(pki_dir, base_name), encode_cert_pem(cert), 0o644)


def write_key_pair(pki_dir: str | Path, base_name: str, key: rsa.RSAPrivateKey) -> None:
    """写入私钥和对应公钥。"""
    _write(path_for_key(pki_dir, base_name), encode_private_key_pem(key), 0o600)
    _write(path_for_public_key(pki_dir, base_name), encode_public_key_pem(key.public_key()), 0o644)


def cert_or_key_exist(pki_dir: str | Path, base_name: str) -> bool:
    return path_for_cert(pki_dir, base_name).exists() or path_for_key(pki_dir, base_name).exists()


def try_load_cert_from_disk(pki_dir: str | Path, base_name: str) -> x509.Certificate:
    """读取证书并校验有效期。

    Raises:
        PKIError: 文件不存在、无法解析或已过期
    """
    path = path_for_cert(pki_dir, base_name)
    try:
        cert = x509.load_pem_x509_certificate(path.read_bytes())
    except (OSError, ValueError) as e:
        raise PKIError(f"couldn't load the certificate file {path}: {e}") from e

    now = _now()
    if now < cert.not_valid_before_utc:
        raise PKIError(f"the certificate {path} is not valid yet")
    if now > cert.not_valid_after_utc:
        raise PKIError(f"the certificate {path} has expired")
    return cert


def try_load_key_from_disk(pki_dir: str | Path, base_name: str) -> rsa.RSAPrivateKey:
    """读取私钥。

    Raises:
        PKIError: 文件不存在或无法解析
    """
    path = path_for_key(pki_dir, base_name)
    try:
        key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as e:
        raise PKIError(f"couldn't load the private key file {path}: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise PKIError(f"the private key file {path} is not in RSA format")
    return key


def try_load_cert_and_key_from_disk(
    pki_dir: str | Path,
    base_name: str,
) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    return try_load_cert_from_disk(pki_dir, base_name), try_load_key_from_disk(pki_dir, base_name)


def public_key_pin(cert: x509.Certificate) -> str:
    """计算证书公钥指纹，格式为 sha256:<hex>。"""
    der = cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return PUBLIC_KEY_PIN_PREFIX + hashlib.sha256(der).hexdigest()


def verify_public_key_pins(cert: x509.Certificate, pins: list[str]) -> None:
    """校验证书公钥是否匹配任一指纹。

    Raises:
        PKIError: 没有匹配的指纹
    """
    actual = public_key_pin(cert)
    normalized = {p.lower() if p.startswith(PUBLIC_KEY_PIN_PREFIX) else PUBLIC_KEY_PIN_PREFIX + p.lower() for p in pins}
    if actual not in normalized:
        raise PKIError(f"cluster CA found in cluster-info ConfigMap is invalid: none of the public keys {actual!r} are pinned")


def using_external_ca(pki_dir: str | Path, base: str = constants.CA_CERT_AND_KEY_BASE_NAME) -> bool:
    """CA 证书存在而私钥不存在时视为使用外部 CA。"""
    return path_for_cert(pki_dir, base).exists() and not path_for_key(pki_dir, base).exists()
