"""join 命令。

把节点加入已有集群，作为工作节点或新的控制平面实例。
"""

import logging
from typing import Any, Callable

import click

from kubeboot import constants, options
from kubeboot.commands.common import WorkflowGroup, bind_option, workflow_args
from kubeboot.phases.join.checketcd import new_check_etcd_phase
from kubeboot.phases.join.controlplanejoin import new_control_plane_join_phase
from kubeboot.phases.join.controlplaneprepare import new_control_plane_prepare_phase
from kubeboot.phases.join.kubelet import new_kubelet_start_phase
from kubeboot.phases.join.preflight import new_preflight_phase
from kubeboot.utils import apiclient, discovery
from kubeboot.utils import config as configutil
from kubeboot.workflow import Runner, maximum_n_args

logger = logging.getLogger(__name__)

JOIN_WORKER_NODE_DONE_MSG = """
此节点已加入集群:
* 已向 API Server 发送证书签名请求并收到响应。
* Kubelet 已获知新的安全连接详细信息。

在控制平面上运行 'kubectl get nodes' 可以看到此节点加入了集群。
"""

JOIN_CONTROL_PLANE_DONE_TEMPLATE = """
此节点已加入集群，并在其上部署了新的控制平面实例:
* 已向 API Server 发送证书签名请求并收到响应。
* Kubelet 已获知新的安全连接详细信息。
* 已添加控制平面标签和污点。
* {etcd_message}

要开始管理集群，您需要作为普通用户运行以下命令:

\tmkdir -p $HOME/.kube
\tsudo cp -i {kubeconfig_path} $HOME/.kube/config
\tsudo chown $(id -u):$(id -g) $HOME/.kube/config

运行 'kubectl get nodes' 可以看到此节点加入了集群。
"""


class JoinOptions:
    """join 命令行选项。"""

    def __init__(self) -> None:
        self.cfg_path = ""
        self.token = ""
        self.control_plane = False
        self.ignore_preflight_errors: list[str] = []
        self.file_discovery = ""
        self.token_discovery = ""
        self.token_discovery_ca_hashes: list[str] = []
        self.token_discovery_skip_ca_hash = False
        self.tls_bootstrap_token = ""
        self.certificate_key = ""
        self.local_api_endpoint = configutil.APIEndpoint()
        self.node_registration = configutil.NodeRegistrationOptions()

        # 用户显式设置的标志
        self.changed: set[str] = set()


def fetch_init_configuration(
    client: apiclient.ClusterClient,
    cfg: configutil.JoinConfiguration,
) -> configutil.InitConfiguration:
    """从集群读取 ClusterConfiguration，并与本节点的注册信息组合成 init 配置。

    Raises:
        RuntimeError: 集群中没有 kubeboot-config
    """
    data = apiclient.get_configmap_data(client, constants.KUBE_SYSTEM_NAMESPACE, constants.CLUSTER_CONFIG_CONFIGMAP)
    if not data or constants.CLUSTER_CONFIG_CONFIGMAP_KEY not in data:
        raise RuntimeError(
            f"unable to fetch the {constants.CLUSTER_CONFIG_CONFIGMAP} ConfigMap from namespace "
            f"{constants.KUBE_SYSTEM_NAMESPACE}"
        )

    cluster = configutil.cluster_configuration_from_yaml(data[constants.CLUSTER_CONFIG_CONFIGMAP_KEY])
    local_api_endpoint = (
        cfg.control_plane.local_api_endpoint.model_copy(deep=True)
        if cfg.control_plane is not None
        else configutil.APIEndpoint()
    )
    return configutil.InitConfiguration(
        node_registration=cfg.node_registration.model_copy(deep=True),
        local_api_endpoint=local_api_endpoint,
        cluster=cluster,
    )


class JoinRunData:
    """join 工作流的运行数据。

    发现结果、集群配置和各个客户端都在首次使用时获取。
    """

    def __init__(
        self,
        cfg: configutil.JoinConfiguration,
        ignore_preflight_errors: set[str],
        out: Callable[[str], None] = click.echo,
    ) -> None:
        self._cfg = cfg
        self._ignore_preflight_errors = ignore_preflight_errors
        self._out = out
        self._tls_bootstrap_cfg: dict[str, Any] | None = None
        self._init_cfg: configutil.InitConfiguration | None = None
        self._bootstrap_client: apiclient.ClusterClient | None = None
        self._kubelet_client: apiclient.ClusterClient | None = None
        self._client: apiclient.ClusterClient | None = None

    def cfg(self) -> configutil.JoinConfiguration:
        return self._cfg

    def tls_bootstrap_cfg(self) -> dict[str, Any]:
        """TLS 引导使用的 kubeconfig。"""
        if self._tls_bootstrap_cfg is None:
            logger.debug("[join] Discovering cluster-info")
            self._tls_bootstrap_cfg = discovery.discover(self._cfg)
        return self._tls_bootstrap_cfg

    def init_cfg(self) -> configutil.InitConfiguration:
        if self._init_cfg is None:
            logger.debug("[join] Fetching the cluster configuration")
            self._init_cfg = fetch_init_configuration(self.bootstrap_client(), self._cfg)
        return self._init_cfg

    def bootstrap_client(self) -> apiclient.ClusterClient:
        """使用引导令牌认证的客户端。"""
        if self._bootstrap_client is None:
            self._bootstrap_client = apiclient.KubeClient.from_config(self.tls_bootstrap_cfg())
        return self._bootstrap_client

    def kubelet_client(self) -> apiclient.ClusterClient:
        """TLS 引导完成后，使用 kubelet 证书认证的客户端。"""
        if self._kubelet_client is None:
            self._kubelet_client = apiclient.KubeClient.from_kubeconfig(constants.kubelet_kubeconfig_path())
        return self._kubelet_client

    def client(self) -> apiclient.ClusterClient:
        """使用 admin.conf 的客户端，只有控制平面节点有这个文件。"""
        if self._client is None:
            self._client = apiclient.KubeClient.from_kubeconfig(constants.admin_kubeconfig_path())
        return self._client

    def ignore_preflight_errors(self) -> set[str]:
        return self._ignore_preflight_errors

    def output_writer(self) -> Callable[[str], None]:
        return self._out

    def certificate_dir(self) -> str:
        """集群配置中的证书目录，静态 Pod 清单引用的也是这个目录。"""
        return self.init_cfg().cluster.certificates_dir

    def kubeconfig_dir(self) -> str:
        return str(constants.kubernetes_dir())

    def manifest_dir(self) -> str:
        return str(constants.static_pod_dir())

    def kubelet_dir(self) -> str:
        return str(constants.kubelet_run_dir())


def new_join_data(args: list[str], join_options: JoinOptions) -> JoinRunData:
    """校验命令行选项并构建 join 运行数据。

    Raises:
        ValidationError: 参数组合或配置无效
    """
    configutil.validate_mixed_arguments(join_options.changed)

    # --token 同时用于发现和 TLS 引导，单独指定的令牌优先
    token_discovery = join_options.token_discovery or join_options.token
    tls_bootstrap_token = join_options.tls_bootstrap_token or join_options.token

    discovery_cfg = configutil.Discovery(tls_bootstrap_token=tls_bootstrap_token)
    if join_options.file_discovery:
        discovery_cfg.file = configutil.FileDiscovery(kube_config_path=join_options.file_discovery)
    else:
        api_server_endpoint = ""
        if args:
            if not join_options.cfg_path and len(args) > 1:
                click.echo(
                    f"[preflight] 警告: 命令行指定了多个 API Server 地址 {args}，只使用第一个",
                    err=True,
                )
            api_server_endpoint = args[0]
        discovery_cfg.bootstrap_token = configutil.BootstrapTokenDiscovery(
            token=token_discovery,
            api_server_endpoint=api_server_endpoint,
            ca_cert_hashes=list(join_options.token_discovery_ca_hashes),
            unsafe_skip_ca_verification=join_options.token_discovery_skip_ca_hash,
        )

    external_cfg = configutil.JoinConfiguration(
        discovery=discovery_cfg,
        node_registration=join_options.node_registration.model_copy(deep=True),
    )
    if join_options.control_plane:
        external_cfg.control_plane = configutil.JoinControlPlane(
            local_api_endpoint=join_options.local_api_endpoint.model_copy(deep=True),
            certificate_key=join_options.certificate_key,
        )

    cfg = configutil.load_join_configuration(join_options.cfg_path, external_cfg)

    ignore_preflight_errors = configutil.validate_ignore_preflight_errors(
        join_options.ignore_preflight_errors,
        cfg.node_registration.ignore_preflight_errors,
    )
    cfg.node_registration.ignore_preflight_errors = sorted(ignore_preflight_errors)

    if join_options.node_registration.name:
        cfg.node_registration.name = join_options.node_registration.name

    return JoinRunData(cfg, ignore_preflight_errors)


def print_join_done(data: JoinRunData) -> None:
    if data.cfg().control_plane is None:
        data.output_writer()(JOIN_WORKER_NODE_DONE_MSG)
        return

    if data.init_cfg().cluster.etcd.external is not None:
        etcd_message = "已使用外部 etcd 集群。"
    else:
        etcd_message = "已部署新的 etcd 成员。"
    data.output_writer()(JOIN_CONTROL_PLANE_DONE_TEMPLATE.format(
        etcd_message=etcd_message,
        kubeconfig_path=constants.admin_kubeconfig_path(),
    ))


def _join_options(join_options: JoinOptions) -> list[click.Parameter]:
    changed = join_options.changed

    return [
        bind_option(
            join_options, "cfg_path", f"--{options.CFG_PATH}",
            changed=changed, type=click.Path(), help="kubeboot 配置文件路径",
        ),
        bind_option(
            join_options, "ignore_preflight_errors", f"--{options.IGNORE_PREFLIGHT_ERRORS}",
            changed=changed, multiple=True,
            help="错误仅显示为警告的检查列表，例如 'IsPrivilegedUser,Swap'。取值 'all' 忽略所有检查的错误",
        ),
        bind_option(
            join_options.node_registration, "name", f"--{options.NODE_NAME}",
            changed=changed, help="节点名称",
        ),
        bind_option(
            join_options.node_registration, "cri_socket", f"--{options.NODE_CRI_SOCKET}",
            changed=changed, help="CRI 套接字路径，为空时自动检测",
        ),
        bind_option(
            join_options, "file_discovery", f"--{options.FILE_DISCOVERY}",
            changed=changed, help="用于发现集群信息的 kubeconfig 文件路径",
        ),
        bind_option(
            join_options, "token_discovery", f"--{options.TOKEN_DISCOVERY}",
            changed=changed, help="用于校验 API Server 集群信息的令牌",
        ),
        bind_option(
            join_options, "token_discovery_ca_hashes", f"--{options.TOKEN_DISCOVERY_CA_HASH}",
            changed=changed, multiple=True,
            help="基于令牌的发现中，校验根 CA 公钥的哈希（格式为 sha256:<hex>）",
        ),
        bind_option(
            join_options, "token_discovery_skip_ca_hash", f"--{options.TOKEN_DISCOVERY_SKIP_CA_HASH}",
            changed=changed, is_flag=True,
            help="基于令牌的发现中，不通过 --discovery-token-ca-cert-hash 固定根 CA",
        ),
        bind_option(
            join_options, "tls_bootstrap_token", f"--{options.TLS_BOOTSTRAP_TOKEN}",
            changed=changed, help="加入节点时用于与控制平面临时认证的令牌",
        ),
        bind_option(
            join_options, "token", f"--{options.TOKEN_STR}",
            changed=changed, help="未单独指定时，同时用作发现令牌和 TLS 引导令牌",
        ),
        bind_option(
            join_options, "control_plane", f"--{options.CONTROL_PLANE}",
            changed=changed, is_flag=True, help="在此节点上创建新的控制平面实例",
        ),
        bind_option(
            join_options.local_api_endpoint, "advertise_address", f"--{options.APISERVER_ADVERTISE_ADDRESS}",
            changed=changed, help="新控制平面实例的 API Server 广播地址，为空时使用默认网卡地址",
        ),
        bind_option(
            join_options.local_api_endpoint, "bind_port", f"--{options.APISERVER_BIND_PORT}",
            changed=changed, type=int, default=constants.KUBE_APISERVER_PORT, show_default=True,
            help="新控制平面实例的 API Server 绑定端口",
        ),
        bind_option(
            join_options, "certificate_key", f"--{options.CERTIFICATE_KEY}",
            changed=changed, help="解密 init 上传的证书 Secret 使用的密钥",
        ),
    ]


def new_cmd_join(join_options: JoinOptions | None = None) -> click.Group:
    """创建 join 命令。"""
    if join_options is None:
        join_options = JoinOptions()

    runner = Runner()

    def run_join() -> None:
        ctx = click.get_current_context()
        if ctx.invoked_subcommand is not None:
            return

        args = workflow_args(ctx)
        runner.run(args)
        print_join_done(runner.init_data(args))

    cmd = WorkflowGroup(
        "join",
        max_args=1,
        help="在要加入现有集群的任何机器上运行此命令",
        short_help="在要加入现有集群的任何机器上运行此命令",
        params=_join_options(join_options),
        callback=run_join,
        options_metavar="[OPTIONS] [API_SERVER_ENDPOINT]",
    )

    runner.append_phase(new_preflight_phase())
    runner.append_phase(new_control_plane_prepare_phase())
    runner.append_phase(new_check_etcd_phase())
    runner.append_phase(new_kubelet_start_phase())
    runner.append_phase(new_control_plane_join_phase())

    def join_data(ctx: click.Context | None, args: list[str]) -> JoinRunData:
        data = new_join_data(args, join_options)
        if not runner.options.skip_phases:
            runner.options.skip_phases = list(data.cfg().skip_phases)
        return data

    runner.set_data_initializer(join_data)
    runner.bind_to_command(cmd, maximum_n_args(1))
    return cmd
