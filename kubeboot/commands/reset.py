"""reset 命令。

尽力还原 kubeboot init 或 kubeboot join 对主机所做的更改。
"""

import logging
from typing import TextIO

import click
import httpx
import pydantic

from kubeboot import constants, options
from kubeboot.commands.common import WorkflowGroup, bind_option, workflow_args
from kubeboot.phases.reset.cleanupnode import clean_dir, new_cleanup_node_phase
from kubeboot.phases.reset.preflight import new_preflight_phase
from kubeboot.phases.reset.removeetcdmember import new_remove_etcd_member_phase
from kubeboot.phases.reset.updateclusterstatus import new_update_cluster_status_phase
from kubeboot.utils import apiclient, staticpod
from kubeboot.utils import config as configutil
from kubeboot.utils.kubeconfig import KubeconfigError
from kubeboot.utils.runtime import detect_cri_socket
from kubeboot.workflow import Runner, no_args

logger = logging.getLogger(__name__)

IPTABLES_CLEANUP_INSTRUCTIONS = """
reset 过程不会重置或清除 iptables 规则和 IPVS 表。
如果要重置 iptables，必须使用 iptables 命令手动完成。

如果集群使用了 IPVS，请运行 ipvsadm --clear 重置系统的 IPVS 表。

reset 过程不会清除 kubeconfig 文件，必须手动删除。
请检查 $HOME/.kube/config 文件的内容。
"""

CNI_CLEANUP_INSTRUCTIONS = """
reset 过程不会清除 CNI 配置。如需清除，请删除 /etc/cni/net.d
"""


class ResetOptions:
    """reset 命令的选项。"""

    def __init__(self) -> None:
        self.cert_dir = str(constants.default_cert_dir())
        self.cri_socket = ""
        self.force_reset = False
        self.ignore_preflight_errors: list[str] = []
        self.kubeconfig_path = str(constants.admin_kubeconfig_path())
        self.changed: set[str] = set()


class ResetRunData:
    """reset 工作流的运行数据。"""

    def __init__(
        self,
        cert_dir: str,
        client: apiclient.ClusterClient | None,
        cri_socket_path: str,
        force_reset: bool,
        ignore_preflight_errors: set[str],
        input_reader: TextIO,
        cfg: configutil.InitConfiguration | None,
    ) -> None:
        self._cert_dir = cert_dir
        self._client = client
        self._cri_socket_path = cri_socket_path
        self._force_reset = force_reset
        self._ignore_preflight_errors = ignore_preflight_errors
        self._input_reader = input_reader
        self._cfg = cfg
        self._dirs_to_clean: list[str] = []

    def force_reset(self) -> bool:
        return self._force_reset

    def input_reader(self) -> TextIO:
        return self._input_reader

    def ignore_preflight_errors(self) -> set[str]:
        return self._ignore_preflight_errors

    def cfg(self) -> configutil.InitConfiguration | None:
        return self._cfg

    def client(self) -> apiclient.ClusterClient | None:
        return self._client

    def add_dirs_to_clean(self, *dirs: str) -> None:
        self._dirs_to_clean.extend(dirs)

    def dirs_to_clean(self) -> list[str]:
        return list(self._dirs_to_clean)

    def cert_dir(self) -> str:
        return self._cert_dir

    def cri_socket_path(self) -> str:
        return self._cri_socket_path


def fetch_init_configuration_from_cluster(client: apiclient.ClusterClient) -> configutil.InitConfiguration:
    """从集群和本机清单中还原本节点的 init 配置。

    ClusterConfiguration 来自 kubeboot-config ConfigMap，CRI 套接字来自节点注解，
    API Server 地址来自本机的 kube-apiserver 清单（工作节点没有这个清单）。

    Raises:
        RuntimeError: 集群中没有 kubeboot-config
    """
    data = apiclient.get_configmap_data(client, constants.KUBE_SYSTEM_NAMESPACE, constants.CLUSTER_CONFIG_CONFIGMAP)
    if not data or constants.CLUSTER_CONFIG_CONFIGMAP_KEY not in data:
        raise RuntimeError(
            f"unable to fetch the {constants.CLUSTER_CONFIG_CONFIGMAP} ConfigMap from namespace "
            f"{constants.KUBE_SYSTEM_NAMESPACE}"
        )

    cfg = configutil.InitConfiguration(
        cluster=configutil.cluster_configuration_from_yaml(data[constants.CLUSTER_CONFIG_CONFIGMAP_KEY]),
    )
    cfg.node_registration.name = configutil.default_node_name()

    node = client.get(apiclient.node_path(cfg.node_registration.name))
    if node is not None:
        annotations = node.get("metadata", {}).get("annotations", {})
        cfg.node_registration.cri_socket = annotations.get(constants.ANNOTATION_CRI_SOCKET, "")

    manifest = staticpod.manifest_path(constants.KUBE_APISERVER, constants.static_pod_dir())
    if manifest.exists():
        pod = staticpod.read_static_pod_from_disk(manifest)
        cfg.local_api_endpoint.advertise_address = staticpod.get_command_arg(pod, "advertise-address")
        port = staticpod.get_command_arg(pod, "secure-port")
        if port.isdigit():
            cfg.local_api_endpoint.bind_port = int(port)

    return cfg


def new_reset_data(reset_options: ResetOptions, input_reader: TextIO) -> ResetRunData:
    """创建 reset 的运行数据。

    节点上没有可用的 kubeconfig 或无法从集群读取配置时，只清理本机。

    Raises:
        ValidationError: 忽略的预检错误无效
        ContainerRuntimeError: 无法检测 CRI 套接字
    """
    client: apiclient.ClusterClient | None = None
    cfg: configutil.InitConfiguration | None = None

    try:
        client = apiclient.KubeClient.from_kubeconfig(reset_options.kubeconfig_path)
        logger.debug(f"[reset] Loaded client set from kubeconfig file: {reset_options.kubeconfig_path}")
    except (KubeconfigError, OSError) as e:
        logger.debug(f"[reset] Could not obtain a client set from the kubeconfig file {reset_options.kubeconfig_path}: {e}")

    if client is not None:
        try:
            cfg = fetch_init_configuration_from_cluster(client)
        except (
            RuntimeError,
            apiclient.ApiError,
            httpx.HTTPError,
            staticpod.StaticPodError,
            pydantic.ValidationError,
        ) as e:
            logger.warning(f"[reset] Unable to fetch the {constants.CLUSTER_CONFIG_CONFIGMAP} ConfigMap from cluster: {e}")

    config_ignore_errors = cfg.node_registration.ignore_preflight_errors if cfg is not None else []
    ignore_preflight_errors = configutil.validate_ignore_preflight_errors(
        reset_options.ignore_preflight_errors, config_ignore_errors
    )
    if cfg is not None:
        cfg.node_registration.ignore_preflight_errors = sorted(ignore_preflight_errors)

    if reset_options.cri_socket:
        cri_socket = reset_options.cri_socket
        logger.debug(f"[reset] Using specified CRI socket: {cri_socket}")
    elif cfg is not None and cfg.node_registration.cri_socket:
        cri_socket = cfg.node_registration.cri_socket
        logger.debug(f"[reset] Using CRI socket from the cluster configuration: {cri_socket}")
    else:
        cri_socket = detect_cri_socket()
        logger.debug(f"[reset] Detected and using CRI socket: {cri_socket}")

    return ResetRunData(
        cert_dir=reset_options.cert_dir,
        client=client,
        cri_socket_path=cri_socket,
        force_reset=reset_options.force_reset,
        ignore_preflight_errors=ignore_preflight_errors,
        input_reader=input_reader,
        cfg=cfg,
    )


def clean_dirs(data: ResetRunData) -> None:
    """清空有状态目录中的内容。"""
    dirs = data.dirs_to_clean()
    click.echo(f"[reset] 删除有状态目录中的内容: {dirs}")
    for directory in dirs:
        logger.debug(f"[reset] Deleting contents of {directory}")
        try:
            clean_dir(directory)
        except OSError as e:
            logger.warning(f"[reset] Failed to delete contents of {directory!r} directory: {e}")


def _reset_options(reset_options: ResetOptions) -> list[click.Parameter]:
    changed = reset_options.changed
    return [
        bind_option(
            reset_options, "cert_dir", f"--{options.CERTIFICATES_DIR}",
            changed=changed, type=click.Path(), default=reset_options.cert_dir, show_default=True,
            help="证书的保存目录，指定时清理该目录",
        ),
        bind_option(
            reset_options, "force_reset", "-f", f"--{options.FORCE_RESET}",
            changed=changed, is_flag=True, help="不提示确认，直接重置节点",
        ),
        bind_option(
            reset_options, "kubeconfig_path", f"--{options.KUBECONFIG_PATH}",
            changed=changed, type=click.Path(), default=reset_options.kubeconfig_path, show_default=True,
            help="与集群通信使用的 kubeconfig 文件",
        ),
        bind_option(
            reset_options, "ignore_preflight_errors", f"--{options.IGNORE_PREFLIGHT_ERRORS}",
            changed=changed, multiple=True,
            help="错误仅显示为警告的检查列表，例如 'IsPrivilegedUser,Swap'。取值 'all' 忽略所有检查的错误",
        ),
        bind_option(
            reset_options, "cri_socket", f"--{options.NODE_CRI_SOCKET}",
            changed=changed, help="CRI 套接字路径，为空时自动检测",
        ),
    ]


def new_cmd_reset(
    reset_options: ResetOptions | None = None,
    input_reader: TextIO | None = None,
) -> click.Group:
    """创建 reset 命令。

    Args:
        reset_options: 命令选项，为空时使用默认值
        input_reader: 读取确认输入的流，为空时使用标准输入
    """
    if reset_options is None:
        reset_options = ResetOptions()

    runner = Runner()

    def run_reset() -> None:
        ctx = click.get_current_context()
        if ctx.invoked_subcommand is not None:
            return

        args = workflow_args(ctx)
        data = runner.init_data(args)
        runner.run(args)

        # 清空 kubelet、etcd 和 CNI 的有状态目录
        clean_dirs(data)

        click.echo(CNI_CLEANUP_INSTRUCTIONS, nl=False)
        click.echo(IPTABLES_CLEANUP_INSTRUCTIONS, nl=False)

    cmd = WorkflowGroup(
        "reset",
        help="尽力还原 kubeboot init 或 kubeboot join 对此主机所做的更改",
        short_help="尽力还原 kubeboot init 或 kubeboot join 对此主机所做的更改",
        params=_reset_options(reset_options),
        callback=run_reset,
    )

    runner.append_phase(new_preflight_phase())
    runner.append_phase(new_update_cluster_status_phase())
    runner.append_phase(new_remove_etcd_member_phase())
    runner.append_phase(new_cleanup_node_phase())

    def reset_data(ctx: click.Context | None, args: list[str]) -> ResetRunData:
        reader = input_reader if input_reader is not None else click.get_text_stream("stdin")
        return new_reset_data(reset_options, reader)

    runner.set_data_initializer(reset_data)
    runner.bind_to_command(cmd, no_args)
    return cmd
