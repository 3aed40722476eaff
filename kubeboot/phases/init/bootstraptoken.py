"""init bootstrap-token 阶段。

创建引导令牌，配置 RBAC 允许节点用令牌完成 TLS 引导，并发布带签名的 cluster-info。
"""

import logging
from typing import Any

import click
import yaml

from kubeboot import constants, options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import apiclient, tokens
from kubeboot.utils import kubeconfig as kubeconfigutil
from kubeboot.utils.config import BootstrapToken
from kubeboot.workflow import Phase

logger = logging.getLogger(__name__)

NODE_KUBELET_BOOTSTRAP = "kubeboot:kubelet-bootstrap"
NODE_AUTO_APPROVE_BOOTSTRAP = "kubeboot:node-autoapprove-bootstrap"
NODE_AUTO_APPROVE_CERTIFICATE_ROTATION = "kubeboot:node-autoapprove-certificate-rotation"
CLUSTER_INFO_ROLE = "kubeboot:bootstrap-signer-clusterinfo"
GET_NODES_CLUSTER_ROLE = "kubeboot:get-nodes"

NODE_BOOTSTRAPPER_CLUSTER_ROLE = "system:node-bootstrapper"
NODE_CLIENT_CLUSTER_ROLE = "system:certificates.k8s.io:certificatesigningrequests:nodeclient"
NODE_SELF_CLIENT_CLUSTER_ROLE = "system:certificates.k8s.io:certificatesigningrequests:selfnodeclient"
ANONYMOUS_USER = "system:anonymous"

BOOTSTRAP_TOKEN_LONG = """\
引导令牌用于在要加入集群的节点与控制平面之间建立双向信任。

此命令创建引导令牌，并完成令牌认证所需的全部配置：
写入带签名的 cluster-info，配置 RBAC 规则。"""

BOOTSTRAP_TOKEN_EXAMPLE = """\b
# 使用配置文件创建引导令牌并完成相关配置
kubeboot init phase bootstrap-token --config kubeboot-config.yaml
"""


def new_bootstrap_token_phase() -> Phase:
    return Phase(
        name="bootstrap-token",
        aliases=["bootstraptoken"],
        short="生成用于节点加入集群的引导令牌",
        long=BOOTSTRAP_TOKEN_LONG,
        example=BOOTSTRAP_TOKEN_EXAMPLE,
        inherit_flags=[options.CFG_PATH, options.KUBECONFIG_PATH, options.SKIP_TOKEN_PRINT],
        run=run_bootstrap_token,
    )


def _cluster_role_binding(name: str, role: str, subjects: list[dict[str, str]]) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": name},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": role},
        "subjects": subjects,
    }


def _group(name: str) -> dict[str, str]:
    return {"kind": "Group", "name": name}


def update_or_create_tokens(client: apiclient.ClusterClient, bootstrap_tokens: list[BootstrapToken]) -> None:
    """创建引导令牌 Secret，已存在时更新。"""
    for token in bootstrap_tokens:
        secret = tokens.bootstrap_token_secret(token)
        apiclient.create_or_update(client, apiclient.secrets_path(constants.KUBE_SYSTEM_NAMESPACE), secret)


def allow_bootstrap_tokens_to_post_csrs(client: apiclient.ClusterClient) -> None:
    click.echo("[bootstrap-token] 配置 RBAC 规则，允许节点引导令牌提交 CSR 以获取长期证书")
    apiclient.create_or_update(client, apiclient.CLUSTER_ROLE_BINDINGS_PATH, _cluster_role_binding(
        NODE_KUBELET_BOOTSTRAP,
        NODE_BOOTSTRAPPER_CLUSTER_ROLE,
        [_group(constants.NODE_BOOTSTRAP_TOKEN_AUTH_GROUP)],
    ))


def allow_bootstrap_tokens_to_get_nodes(client: apiclient.ClusterClient) -> None:
    click.echo("[bootstrap-token] 配置 RBAC 规则，允许节点引导令牌读取节点对象")
    cluster_role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": {"name": GET_NODES_CLUSTER_ROLE},
        "rules": [{"apiGroups": [""], "resources": ["nodes"], "verbs": ["get"]}],
    }
    apiclient.create_or_update(client, apiclient.CLUSTER_ROLES_PATH, cluster_role)
    apiclient.create_or_update(client, apiclient.CLUSTER_ROLE_BINDINGS_PATH, _cluster_role_binding(
        GET_NODES_CLUSTER_ROLE,
        GET_NODES_CLUSTER_ROLE,
        [_group(constants.NODE_BOOTSTRAP_TOKEN_AUTH_GROUP)],
    ))


def auto_approve_node_bootstrap_tokens(client: apiclient.ClusterClient) -> None:
    click.echo("[bootstrap-token] 配置 RBAC 规则，允许 csrapprover 控制器自动批准节点引导令牌的 CSR")
    apiclient.create_or_update(client, apiclient.CLUSTER_ROLE_BINDINGS_PATH, _cluster_role_binding(
        NODE_AUTO_APPROVE_BOOTSTRAP,
        NODE_CLIENT_CLUSTER_ROLE,
        [_group(constants.NODE_BOOTSTRAP_TOKEN_AUTH_GROUP)],
    ))


def auto_approve_node_certificate_rotation(client: apiclient.ClusterClient) -> None:
    click.echo("[bootstrap-token] 配置 RBAC 规则，允许集群中所有节点的客户端证书自动轮换")
    apiclient.create_or_update(client, apiclient.CLUSTER_ROLE_BINDINGS_PATH, _cluster_role_binding(
        NODE_AUTO_APPROVE_CERTIFICATE_ROTATION,
        NODE_SELF_CLIENT_CLUSTER_ROLE,
        [_group(constants.NODES_GROUP)],
    ))


def build_cluster_info_kubeconfig(admin_kubeconfig_path: str) -> str:
    """从管理员 kubeconfig 中提取集群地址和 CA，去掉全部用户信息。"""
    config = kubeconfigutil.load_kubeconfig(admin_kubeconfig_path)
    cluster = kubeconfigutil.current_cluster(config)
    cluster_info = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "", "cluster": dict(cluster)}],
        "contexts": [],
        "current-context": "",
        "preferences": {},
        "users": [],
    }
    return yaml.safe_dump(cluster_info, sort_keys=False)


def create_cluster_info_configmap(
    client: apiclient.ClusterClient,
    admin_kubeconfig_path: str,
    bootstrap_tokens: list[BootstrapToken],
) -> None:
    """发布 cluster-info ConfigMap，并为每个令牌写入 JWS 签名。"""
    click.echo(f'[bootstrap-token] 在 "{constants.KUBE_PUBLIC_NAMESPACE}" 命名空间中创建 "{constants.CLUSTER_INFO_CONFIGMAP}" ConfigMap')
    content = build_cluster_info_kubeconfig(admin_kubeconfig_path)
    data = {constants.KUBECONFIG_CLUSTER_INFO_KEY: content}
    for token in bootstrap_tokens:
        key = f"{constants.JWS_SIGNATURE_KEY_PREFIX}{token.token_id}"
        data[key] = tokens.compute_detached_signature(content, token.token_id, token.token_secret)

    configmap = apiclient.new_configmap(constants.KUBE_PUBLIC_NAMESPACE, constants.CLUSTER_INFO_CONFIGMAP, data)
    apiclient.create_or_update(client, apiclient.configmaps_path(constants.KUBE_PUBLIC_NAMESPACE), configmap)


def create_cluster_info_rbac_rules(client: apiclient.ClusterClient) -> None:
    """允许匿名用户读取 cluster-info。"""
    namespace = constants.KUBE_PUBLIC_NAMESPACE
    role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": {"name": CLUSTER_INFO_ROLE, "namespace": namespace},
        "rules": [{
            "apiGroups": [""],
            "resources": ["configmaps"],
            "resourceNames": [constants.CLUSTER_INFO_CONFIGMAP],
            "verbs": ["get"],
        }],
    }
    binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {"name": CLUSTER_INFO_ROLE, "namespace": namespace},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": CLUSTER_INFO_ROLE},
        "subjects": [{"kind": "User", "name": ANONYMOUS_USER}],
    }
    apiclient.create_or_update(client, apiclient.roles_path(namespace), role)
    apiclient.create_or_update(client, apiclient.role_bindings_path(namespace), binding)


def run_bootstrap_token(c: object) -> None:
    data = get_init_data(c, "bootstrap-token")
    client = data.client()
    bootstrap_tokens = data.cfg().bootstrap_tokens

    if not data.skip_token_print():
        click.echo(f"[bootstrap-token] 使用令牌: {' '.join(data.tokens())}")

    click.echo("[bootstrap-token] 配置引导令牌、cluster-info ConfigMap 和 RBAC 角色")
    update_or_create_tokens(client, bootstrap_tokens)

    allow_bootstrap_tokens_to_post_csrs(client)
    allow_bootstrap_tokens_to_get_nodes(client)
    auto_approve_node_bootstrap_tokens(client)
    auto_approve_node_certificate_rotation(client)

    create_cluster_info_configmap(client, data.kubeconfig_path(), bootstrap_tokens)
    create_cluster_info_rbac_rules(client)
