"""配置加载模块。

从多文档 YAML 文件、环境变量和命令行参数加载 init/join 配置，
并补全依赖运行环境的动态默认值。
"""

import ipaddress
import logging
import re
import secrets
import socket
import string
from pathlib import Path
from typing import Any, Iterable

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kubeboot import constants
from kubeboot.utils.errors import ValidationError
from kubeboot.utils.runtime import detect_cri_socket

logger = logging.getLogger(__name__)

# 加载 .env 文件
load_dotenv()

INIT_CONFIGURATION_KIND = "InitConfiguration"
CLUSTER_CONFIGURATION_KIND = "ClusterConfiguration"
JOIN_CONFIGURATION_KIND = "JoinConfiguration"

BOOTSTRAP_TOKEN_PATTERN = re.compile(r"^([a-z0-9]{6})\.([a-z0-9]{16})$")
_DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")
_TOKEN_CHARS = string.ascii_lowercase + string.digits

IGNORE_ALL_PREFLIGHT_ERRORS = "all"

# 可以和 --config 同时使用的标志
_CONFIG_COMPATIBLE_FLAGS = {
    "config",
    "ignore-preflight-errors",
    "dry-run",
    "kubeconfig",
    "node-name",
    "cri-socket",
    "upload-certs",
    "certificate-key",
    "print-join-command",
    "rootfs",
    "v",
}


class _Model(BaseModel):
    """使用 camelCase 键名的配置模型基类。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Taint(_Model):
    """节点污点。"""

    key: str
    value: str = ""
    effect: str = constants.TAINT_EFFECT_NO_SCHEDULE


class BootstrapToken(_Model):
    """引导令牌。"""

    token: str = ""
    description: str = ""
    ttl: str = "24h0m0s"
    usages: list[str] = Field(default_factory=lambda: list(constants.DEFAULT_TOKEN_USAGES))
    groups: list[str] = Field(default_factory=lambda: [constants.NODE_BOOTSTRAP_TOKEN_AUTH_GROUP])

    @property
    def token_id(self) -> str:
        return self.token.split(".")[0]

    @property
    def token_secret(self) -> str:
        return self.token.split(".")[-1]


class NodeRegistrationOptions(_Model):
    """节点注册选项。"""

    name: str = ""
    cri_socket: str = ""
    taints: list[Taint] | None = None  # None 表示使用默认污点
    kubelet_extra_args: dict[str, str] = Field(default_factory=dict)
    ignore_preflight_errors: list[str] = Field(default_factory=list)


class APIEndpoint(_Model):
    """API Server 监听地址。"""

    advertise_address: str = ""
    bind_port: int = constants.KUBE_APISERVER_PORT


class ControlPlaneComponent(_Model):
    """控制平面组件额外参数。"""

    extra_args: dict[str, str] = Field(default_factory=dict)
    cert_sans: list[str] = Field(default_factory=list, alias="certSANs")


class LocalEtcd(_Model):
    """本地 etcd 配置。"""

    data_dir: str = Field(default_factory=lambda: str(constants.etcd_data_dir()))
    extra_args: dict[str, str] = Field(default_factory=dict)
    server_cert_sans: list[str] = Field(default_factory=list, alias="serverCertSANs")
    peer_cert_sans: list[str] = Field(default_factory=list, alias="peerCertSANs")


class ExternalEtcd(_Model):
    """外部 etcd 配置。"""

    endpoints: list[str]
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""


class Etcd(_Model):
    """etcd 配置，local 与 external 二选一。"""

    local: LocalEtcd | None = None
    external: ExternalEtcd | None = None


class Networking(_Model):
    """集群网络配置。"""

    service_subnet: str = constants.DEFAULT_SERVICE_SUBNET
    pod_subnet: str = ""
    dns_domain: str = constants.DEFAULT_DNS_DOMAIN


class ClusterConfiguration(_Model):
    """集群级配置。"""

    kubernetes_version: str = constants.KUBERNETES_VERSION
    control_plane_endpoint: str = ""
    certificates_dir: str = Field(default_factory=lambda: str(constants.default_cert_dir()))
    image_repository: str = constants.DEFAULT_IMAGE_REPOSITORY
    cluster_name: str = constants.DEFAULT_CLUSTER_NAME
    networking: Networking = Field(default_factory=Networking)
    etcd: Etcd = Field(default_factory=Etcd)
    api_server: ControlPlaneComponent = Field(default_factory=ControlPlaneComponent)
    controller_manager: ControlPlaneComponent = Field(default_factory=ControlPlaneComponent)
    scheduler: ControlPlaneComponent = Field(default_factory=ControlPlaneComponent)


class InitConfiguration(_Model):
    """节点初始化配置。

    cluster 不属于 InitConfiguration 文档本身，由同一文件中的
    ClusterConfiguration 文档填充。
    """

    bootstrap_tokens: list[BootstrapToken] = Field(default_factory=lambda: [BootstrapToken()])
    node_registration: NodeRegistrationOptions = Field(default_factory=NodeRegistrationOptions)
    local_api_endpoint: APIEndpoint = Field(default_factory=APIEndpoint, alias="localAPIEndpoint")
    certificate_key: str = ""
    skip_phases: list[str] = Field(default_factory=list)
    cluster: ClusterConfiguration = Field(default_factory=ClusterConfiguration, exclude=True)


class BootstrapTokenDiscovery(_Model):
    """通过引导令牌发现集群。"""

    token: str = ""
    api_server_endpoint: str = ""
    ca_cert_hashes: list[str] = Field(default_factory=list)
    unsafe_skip_ca_verification: bool = Field(default=False, alias="unsafeSkipCAVerification")


class FileDiscovery(_Model):
    """通过 kubeconfig 文件发现集群。"""

    kube_config_path: str


class Discovery(_Model):
    """集群发现配置。"""

    bootstrap_token: BootstrapTokenDiscovery | None = None
    file: FileDiscovery | None = None
    tls_bootstrap_token: str = ""
    timeout: str = "5m0s"


class JoinControlPlane(_Model):
    """以控制平面身份加入时的附加配置。"""

    local_api_endpoint: APIEndpoint = Field(default_factory=APIEndpoint, alias="localAPIEndpoint")
    certificate_key: str = ""


class JoinConfiguration(_Model):
    """节点加入配置。"""

    ca_cert_path: str = Field(default_factory=lambda: str(constants.default_cert_dir() / "ca.crt"))
    discovery: Discovery = Field(default_factory=Discovery)
    node_registration: NodeRegistrationOptions = Field(default_factory=NodeRegistrationOptions)
    control_plane: JoinControlPlane | None = None
    skip_phases: list[str] = Field(default_factory=list)


def parse_duration(value: str) -> float:
    """解析形如 24h0m0s 的时长，返回秒数。

    Raises:
        ValidationError: 格式无效
    """
    value = value.strip()
    if value in ("0", ""):
        return 0.0
    matches = _DURATION_PATTERN.findall(value)
    if not matches or "".join(n + u for n, u in matches) != value:
        raise ValidationError(f"invalid duration {value!r}")
    factors = {"h": 3600, "m": 60, "s": 1}
    return sum(float(n) * factors[u] for n, u in matches)


def format_duration(seconds: float) -> str:
    """将秒数格式化为 24h0m0s 形式。"""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def generate_bootstrap_token() -> str:
    """生成随机引导令牌，格式为 [a-z0-9]{6}.[a-z0-9]{16}。"""
    token_id = "".join(secrets.choice(_TOKEN_CHARS) for _ in range(6))
    token_secret = "".join(secrets.choice(_TOKEN_CHARS) for _ in range(16))
    return f"{token_id}.{token_secret}"


def validate_bootstrap_token(token: str) -> None:
    if not BOOTSTRAP_TOKEN_PATTERN.match(token):
        raise ValidationError(
            f"the bootstrap token {token!r} was not of the form {BOOTSTRAP_TOKEN_PATTERN.pattern}"
        )


def validate_ignore_preflight_errors(flag_values: Iterable[str], config_values: Iterable[str]) -> set[str]:
    """合并命令行和配置文件中要忽略的预检错误。

    Args:
        flag_values: 命令行中的取值
        config_values: 配置文件中的取值

    Returns:
        小写的检查名称集合

    Raises:
        ValidationError: all 与其他取值混用
    """
    ignore_errors = {v.strip().lower() for v in [*flag_values, *config_values] if v.strip()}
    if IGNORE_ALL_PREFLIGHT_ERRORS in ignore_errors and len(ignore_errors) > 1:
        raise ValidationError(
            f"don't specify individual checks if 'all' is used: {sorted(ignore_errors)}"
        )
    return ignore_errors


def validate_mixed_arguments(changed_flags: Iterable[str]) -> None:
    """校验 --config 没有和配置类标志混用。

    Args:
        changed_flags: 用户显式设置的标志名称

    Raises:
        ValidationError: 混用了不兼容的标志
    """
    changed = set(changed_flags)
    if "config" not in changed:
        return
    mixed = sorted(
        f for f in changed
        if f not in _CONFIG_COMPATIBLE_FLAGS and not f.startswith("skip-")
    )
    if mixed:
        raise ValidationError(f"can not mix '--config' with arguments {mixed}")


def load_documents(config_path: str | Path) -> dict[str, dict[str, Any]]:
    """读取多文档 YAML 配置文件，按 kind 索引。

    Raises:
        FileNotFoundError: 配置文件不存在
        ValidationError: 文档缺少 kind 或 kind 重复
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file, "r", encoding="utf-8") as f:
        raw_documents = list(yaml.safe_load_all(f))

    documents: dict[str, dict[str, Any]] = {}
    for doc in raw_documents:
        if not doc:
            continue
        kind = doc.get("kind")
        if not kind:
            raise ValidationError(f"a document in {config_path} has no 'kind' field")
        if kind in documents:
            raise ValidationError(f"duplicate document of kind {kind!r} in {config_path}")
        documents[kind] = {k: v for k, v in doc.items() if k not in ("kind", "apiVersion")}
    return documents


def default_node_name() -> str:
    return socket.gethostname().lower()


def _default_advertise_address() -> str:
    # 通过默认路由确定本机地址，不会真正发送数据
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        try:
            s.connect(("10.255.255.255", 1))
            return s.getsockname()[0]
        except OSError:
            return "127.0.0.1"


def _set_node_registration_defaults(node_registration: NodeRegistrationOptions, control_plane: bool) -> None:
    if not node_registration.name:
        node_registration.name = default_node_name()
    if not node_registration.cri_socket:
        node_registration.cri_socket = detect_cri_socket()
        logger.debug(f"Detected CRI socket {node_registration.cri_socket}")
    if node_registration.taints is None:
        node_registration.taints = []
        if control_plane:
            node_registration.taints.append(Taint(key=constants.LABEL_NODE_ROLE_OLD_CONTROL_PLANE))


def _set_api_endpoint_defaults(endpoint: APIEndpoint) -> None:
    if not endpoint.advertise_address:
        endpoint.advertise_address = _default_advertise_address()
    try:
        ipaddress.ip_address(endpoint.advertise_address)
    except ValueError as e:
        raise ValidationError(f"invalid advertise address {endpoint.advertise_address!r}") from e
    if not 0 < endpoint.bind_port < 65536:
        raise ValidationError(f"invalid bind port {endpoint.bind_port}")


def set_init_dynamic_defaults(cfg: InitConfiguration) -> InitConfiguration:
    """补全 InitConfiguration 的动态默认值并校验。

    Raises:
        ValidationError: 配置无效
    """
    _set_node_registration_defaults(cfg.node_registration, control_plane=True)
    _set_api_endpoint_defaults(cfg.local_api_endpoint)

    for token in cfg.bootstrap_tokens:
        if not token.token:
            token.token = generate_bootstrap_token()
        validate_bootstrap_token(token.token)
        parse_duration(token.ttl)

    etcd = cfg.cluster.etcd
    if etcd.local is not None and etcd.external is not None:
        raise ValidationError("etcd.local and etcd.external are mutually exclusive")
    if etcd.local is None and etcd.external is None:
        etcd.local = LocalEtcd()

    return cfg


def set_join_dynamic_defaults(cfg: JoinConfiguration) -> JoinConfiguration:
    """补全 JoinConfiguration 的动态默认值并校验。

    Raises:
        ValidationError: 配置无效
    """
    _set_node_registration_defaults(cfg.node_registration, control_plane=cfg.control_plane is not None)
    if cfg.control_plane is not None:
        _set_api_endpoint_defaults(cfg.control_plane.local_api_endpoint)

    discovery = cfg.discovery
    if discovery.bootstrap_token is None and discovery.file is None:
        raise ValidationError("discovery: either bootstrapToken or file must be set")
    if discovery.bootstrap_token is not None and discovery.file is not None:
        raise ValidationError("discovery: bootstrapToken and file are mutually exclusive")

    bootstrap = discovery.bootstrap_token
    if bootstrap is not None:
        validate_bootstrap_token(bootstrap.token)
        if not bootstrap.api_server_endpoint:
            raise ValidationError("discovery.bootstrapToken.apiServerEndpoint must be set")
        if not bootstrap.ca_cert_hashes and not bootstrap.unsafe_skip_ca_verification:
            raise ValidationError(
                "using token-based discovery without caCertHashes can be unsafe. "
                "Set unsafeSkipCAVerification as true in your configuration to continue"
            )
        if not discovery.tls_bootstrap_token:
            discovery.tls_bootstrap_token = bootstrap.token

    parse_duration(discovery.timeout)
    return cfg


def load_init_configuration(config_path: str | None, defaults: InitConfiguration) -> InitConfiguration:
    """加载 init 配置。

    指定配置文件时完全以文件为准，否则使用命令行参数构造的默认配置。

    Args:
        config_path: 配置文件路径
        defaults: 由命令行参数填充的配置

    Returns:
        补全默认值后的配置
    """
    if config_path:
        documents = load_documents(config_path)
        if JOIN_CONFIGURATION_KIND in documents:
            logger.warning(f"Ignoring {JOIN_CONFIGURATION_KIND} document in {config_path}")
        cfg = InitConfiguration.model_validate(documents.get(INIT_CONFIGURATION_KIND, {}))
        cfg.cluster = ClusterConfiguration.model_validate(documents.get(CLUSTER_CONFIGURATION_KIND, {}))
        # 配置文件中的节点注册信息优先
        if not cfg.node_registration.name:
            cfg.node_registration.name = defaults.node_registration.name
        if not cfg.node_registration.cri_socket:
            cfg.node_registration.cri_socket = defaults.node_registration.cri_socket
    else:
        cfg = defaults.model_copy(deep=True)

    return set_init_dynamic_defaults(cfg)


def load_join_configuration(config_path: str | None, defaults: JoinConfiguration) -> JoinConfiguration:
    """加载 join 配置。"""
    if config_path:
        documents = load_documents(config_path)
        if JOIN_CONFIGURATION_KIND not in documents:
            raise ValidationError(f"no {JOIN_CONFIGURATION_KIND} document found in {config_path}")
        cfg = JoinConfiguration.model_validate(documents[JOIN_CONFIGURATION_KIND])
        if not cfg.node_registration.name:
            cfg.node_registration.name = defaults.node_registration.name
        if not cfg.node_registration.cri_socket:
            cfg.node_registration.cri_socket = defaults.node_registration.cri_socket
    else:
        cfg = defaults.model_copy(deep=True)

    return set_join_dynamic_defaults(cfg)


def cluster_configuration_to_yaml(cluster: ClusterConfiguration) -> str:
    """序列化 ClusterConfiguration 为 YAML 文档。"""
    doc = {
        "apiVersion": constants.API_VERSION,
        "kind": CLUSTER_CONFIGURATION_KIND,
        **cluster.model_dump(by_alias=True, exclude_none=True),
    }
    return yaml.safe_dump(doc, sort_keys=False)


def cluster_configuration_from_yaml(content: str) -> ClusterConfiguration:
    """从 YAML 文档解析 ClusterConfiguration。"""
    doc = yaml.safe_load(content) or {}
    doc.pop("kind", None)
    doc.pop("apiVersion", None)
    return ClusterConfiguration.model_validate(doc)
