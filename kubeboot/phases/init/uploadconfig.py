"""init upload-config 阶段。

把集群配置和 kubelet 基础配置上传到集群的 ConfigMap 中，供后续 join 的节点读取。
"""

from typing import Any

import click
import yaml

from kubeboot import constants, options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import apiclient
from kubeboot.utils import kubelet as kubeletutil
from kubeboot.utils import node
from kubeboot.utils.config import cluster_configuration_to_yaml
from kubeboot.workflow import Phase

NODES_CONFIG_ROLE = "kubeboot:nodes-kubeboot-config"
KUBELET_CONFIG_ROLE_PREFIX = "kubeboot:kubelet-config-"

UPLOAD_KUBEBOOT_CONFIG_LONG = f"""\
把 ClusterConfiguration 上传到 {constants.KUBE_SYSTEM_NAMESPACE} 命名空间中名为 \
{constants.CLUSTER_CONFIG_CONFIGMAP} 的 ConfigMap，之后升级时会读取这份配置。"""

UPLOAD_KUBELET_CONFIG_LONG = f"""\
把 kubelet 组件配置上传到 {constants.KUBE_SYSTEM_NAMESPACE} 命名空间中名为 \
{constants.KUBELET_BASE_CONFIGMAP_PREFIX}1.X 的 ConfigMap，1.X 为当前集群的 Kubernetes 次版本。"""


def get_upload_config_phase_flags() -> list[str]:
    return [options.CFG_PATH, options.KUBECONFIG_PATH]


def new_upload_config_phase() -> Phase:
    return Phase(
        name="upload-config",
        aliases=["uploadconfig"],
        short="把 kubeboot 和 kubelet 的配置上传到 ConfigMap",
        long="此命令不应单独运行，请查看子命令列表",
        phases=[
            Phase(
                name="all",
                short="把全部配置上传到 ConfigMap",
                run_all_siblings=True,
                inherit_flags=get_upload_config_phase_flags(),
            ),
            Phase(
                name="kubeboot",
                short="把 kubeboot 集群配置上传到 ConfigMap",
                long=UPLOAD_KUBEBOOT_CONFIG_LONG,
                run=run_upload_kubeboot_config,
                inherit_flags=get_upload_config_phase_flags(),
            ),
            Phase(
                name="kubelet",
                short="把 kubelet 组件配置上传到 ConfigMap",
                long=UPLOAD_KUBELET_CONFIG_LONG,
                run=run_upload_kubelet_config,
                inherit_flags=get_upload_config_phase_flags(),
            ),
        ],
    )


def _configmap_reader_role(name: str, configmap: str) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": {"name": name, "namespace": constants.KUBE_SYSTEM_NAMESPACE},
        "rules": [{
            "apiGroups": [""],
            "resources": ["configmaps"],
            "resourceNames": [configmap],
            "verbs": ["get"],
        }],
    }


def _role_binding(name: str, subjects: list[dict[str, str]]) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {"name": name, "namespace": constants.KUBE_SYSTEM_NAMESPACE},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": name},
        "subjects": subjects,
    }


def _node_subjects() -> list[dict[str, str]]:
    return [
        {"kind": "Group", "name": constants.NODE_BOOTSTRAP_TOKEN_AUTH_GROUP},
        {"kind": "Group", "name": constants.NODES_GROUP},
    ]


def _create_reader_rbac(client: apiclient.ClusterClient, role_name: str, configmap: str) -> None:
    namespace = constants.KUBE_SYSTEM_NAMESPACE
    apiclient.create_or_update(client, apiclient.roles_path(namespace), _configmap_reader_role(role_name, configmap))
    apiclient.create_or_update(client, apiclient.role_bindings_path(namespace), _role_binding(role_name, _node_subjects()))


def run_upload_kubeboot_config(c: object) -> None:
    data = get_init_data(c, "upload-config")
    client = data.client()

    click.echo(
        f'[upload-config] 将 ClusterConfiguration 保存到 "{constants.KUBE_SYSTEM_NAMESPACE}" '
        f'命名空间的 ConfigMap "{constants.CLUSTER_CONFIG_CONFIGMAP}" 中'
    )
    configmap = apiclient.new_configmap(
        constants.KUBE_SYSTEM_NAMESPACE,
        constants.CLUSTER_CONFIG_CONFIGMAP,
        {constants.CLUSTER_CONFIG_CONFIGMAP_KEY: cluster_configuration_to_yaml(data.cfg().cluster)},
    )
    apiclient.create_or_update(client, apiclient.configmaps_path(constants.KUBE_SYSTEM_NAMESPACE), configmap)
    _create_reader_rbac(client, NODES_CONFIG_ROLE, constants.CLUSTER_CONFIG_CONFIGMAP)


def run_upload_kubelet_config(c: object) -> None:
    data = get_init_data(c, "upload-config")
    client = data.client()
    cluster = data.cfg().cluster

    configmap_name = constants.kubelet_base_configmap_name(cluster.kubernetes_version)
    click.echo(
        f'[kubelet] 在 "{constants.KUBE_SYSTEM_NAMESPACE}" 命名空间中创建 ConfigMap "{configmap_name}"，'
        "其中包含集群中 kubelet 的配置"
    )
    kubelet_config = kubeletutil.build_kubelet_configuration(cluster)
    configmap = apiclient.new_configmap(
        constants.KUBE_SYSTEM_NAMESPACE,
        configmap_name,
        {"kubelet": yaml.safe_dump(kubelet_config, sort_keys=False)},
    )
    apiclient.create_or_update(client, apiclient.configmaps_path(constants.KUBE_SYSTEM_NAMESPACE), configmap)
    minor_version = configmap_name[len(constants.KUBELET_BASE_CONFIGMAP_PREFIX):]
    _create_reader_rbac(client, f"{KUBELET_CONFIG_ROLE_PREFIX}{minor_version}", configmap_name)

    node_registration = data.cfg().node_registration
    node.annotate_cri_socket(client, node_registration.name, node_registration.cri_socket)
