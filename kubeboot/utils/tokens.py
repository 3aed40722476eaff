"""引导令牌模块。

构建引导令牌 Secret，并为 cluster-info 中的 kubeconfig 计算和校验 JWS 分离签名。
"""

import base64
import datetime
import hmac
import json
from hashlib import sha256
from typing import Any

from kubeboot import constants
from kubeboot.utils.config import BootstrapToken, parse_duration


class TokenError(Exception):
    """令牌签名无效。"""


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def compute_detached_signature(content: str, token_id: str, token_secret: str) -> str:
    """计算内容的 JWS 分离签名（HS256）。

    Returns:
        header..signature 形式的签名
    """
    header = _b64url(json.dumps({"alg": "HS256", "kid": token_id}, separators=(",", ":")).encode())
    signing_input = f"{header}.{_b64url(content.encode())}"
    signature = hmac.new(token_secret.encode(), signing_input.encode(), sha256).digest()
    return f"{header}..{_b64url(signature)}"


def verify_detached_signature(content: str, detached: str, token_id: str, token_secret: str) -> None:
    """校验 JWS 分离签名。

    Raises:
        TokenError: 签名格式无效或不匹配
    """
    parts = detached.split(".")
    if len(parts) != 3 or parts[1]:
        raise TokenError("the JWS signature is not a valid detached signature")
    try:
        header = json.loads(_b64url_decode(parts[0]))
    except ValueError as e:
        raise TokenError(f"could not decode the JWS header: {e}") from e
    if header.get("kid") != token_id:
        raise TokenError(f"the JWS signature was made with token {header.get('kid')!r}, not {token_id!r}")

    expected = compute_detached_signature(content, token_id, token_secret)
    if not hmac.compare_digest(expected, detached):
        raise TokenError("failed to verify JWS signature of received cluster info object, can't trust this API Server")


def bootstrap_token_secret(token: BootstrapToken, now: datetime.datetime | None = None) -> dict[str, Any]:
    """构建引导令牌 Secret 对象。"""
    data = {
        "token-id": token.token_id,
        "token-secret": token.token_secret,
    }
    if token.description:
        data["description"] = token.description

    ttl = parse_duration(token.ttl)
    if ttl > 0:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        expiration = now + datetime.timedelta(seconds=ttl)
        data["expiration"] = expiration.strftime("%Y-%m-%dT%H:%M:%SZ")

    for usage in token.usages:
        data[f"usage-bootstrap-{usage}"] = "true"
    if token.groups:
        data["auth-extra-groups"] = ",".join(token.groups)

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": f"{constants.BOOTSTRAP_TOKEN_SECRET_PREFIX}{token.token_id}",
            "namespace": constants.KUBE_SYSTEM_NAMESPACE,
        },
        "type": constants.BOOTSTRAP_TOKEN_SECRET_TYPE,
        "stringData": data,
    }
