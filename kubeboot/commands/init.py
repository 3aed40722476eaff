"""init 命令。

初始化 Kubernetes 控制平面节点。命令本身只负责解析参数、构建运行数据，
具体工作由各个阶段完成。
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable

import click

from kubeboot import constants, options
from kubeboot.commands.common import WorkflowGroup, bind_option, workflow_args
from kubeboot.phases.init.bootstraptoken import new_bootstrap_token_phase
from kubeboot.phases.init.certs import new_certs_phase
from kubeboot.phases.init.controlplane import new_control_plane_phase
from kubeboot.phases.init.etcd import new_etcd_phase
from kubeboot.phases.init.kubeconfig import new_kubeconfig_phase
from kubeboot.phases.init.kubelet import new_kubelet_start_phase
from kubeboot.phases.init.markcontrolplane import new_mark_control_plane_phase
from kubeboot.phases.init.preflight import new_preflight_phase
from kubeboot.phases.init.uploadcerts import new_upload_certs_phase
from kubeboot.phases.init.uploadconfig import new_upload_config_phase
from kubeboot.phases.init.waitcontrolplane import new_wait_control_plane_phase
from kubeboot.utils import apiclient, pki
from kubeboot.utils import config as configutil
from kubeboot.utils import join as joinutil
from kubeboot.utils.errors import ValidationError
from kubeboot.workflow import Runner, no_args

logger = logging.getLogger(__name__)

INIT_DRY_RUN_DIR_ENV = "KUBEBOOT_INIT_DRYRUN_DIR"

INIT_DONE_TEMPLATE = """
您的 Kubernetes 控制平面已经初始化完成!

要开始使用集群，您需要作为普通用户运行以下命令:

  mkdir -p $HOME/.kube
  sudo cp -i {kubeconfig_path} $HOME/.kube/config
  sudo chown $(id -u):$(id -g) $HOME/.kube/config

或者，如果你是 root 用户，可以运行:

  export KUBECONFIG={kubeconfig_path}

您现在应该在集群上部署一个 Pod 网络。
使用下列选项之一运行 "kubectl apply -f [podnetwork].yaml":
  https://kubernetes.io/docs/concepts/cluster-administration/addons/

{control_plane_section}然后，通过以 root 用户身份在每个节点上运行以下命令，可以加入任意数量的工作节点:

{join_worker_command}
"""

UPLOAD_CERTS_SECTION = """\
现在，您可以在每个节点上以 root 用户身份运行以下命令，加入任意数量的控制平面节点:

  {join_control_plane_command}

请注意，证书密钥允许访问集群敏感数据，请保密!
作为保障措施，上传的证书将在两小时内删除；如有必要，您可以使用
"kubeboot init phase upload-certs --upload-certs" 重新上传证书。

"""

COPY_CERTS_SECTION = """\
现在，通过复制每个节点上的证书颁发机构和服务账号密钥，然后以 root 用户身份运行以下命令，
可以加入任意数量的控制平面节点:

  {join_control_plane_command}

"""


class InitOptions:
    """init 命令行选项。

    配置类选项直接写入 external_cfg，其余选项保存在属性中。
    """

    def __init__(self) -> None:
        self.cfg_path = ""
        self.kubeconfig_dir = str(constants.kubernetes_dir())
        self.kubeconfig_path = str(constants.admin_kubeconfig_path())
        self.ignore_preflight_errors: list[str] = []
        self.dry_run = False
        self.skip_token_print = False
        self.upload_certs = False
        self.skip_certificate_key_print = False
        self.token = ""
        self.token_ttl = ""
        self.external_cfg = configutil.InitConfiguration()
        self.external_cfg.bootstrap_tokens[0].description = "kubeboot init 生成的默认引导令牌"

        # 用户显式设置的标志
        self.changed: set[str] = set()


class InitRunData:
    """init 工作流的运行数据。"""

    def __init__(
        self,
        cfg: configutil.InitConfiguration,
        ignore_preflight_errors: set[str],
        kubeconfig_dir: str,
        kubeconfig_path: str,
        dry_run: bool = False,
        dry_run_dir: str = "",
        skip_token_print: bool = False,
        external_ca: bool = False,
        upload_certs: bool = False,
        skip_certificate_key_print: bool = False,
        out: Callable[[str], None] = click.echo,
    ) -> None:
        self._cfg = cfg
        self._certificates_dir = cfg.cluster.certificates_dir
        self._ignore_preflight_errors = ignore_preflight_errors
        self._kubeconfig_dir = kubeconfig_dir
        self._kubeconfig_path = kubeconfig_path
        self._dry_run = dry_run
        self._dry_run_dir = dry_run_dir
        self._skip_token_print = skip_token_print
        self._external_ca = external_ca
        self._upload_certs = upload_certs
        self._skip_certificate_key_print = skip_certificate_key_print
        self._out = out
        self._client: apiclient.ClusterClient | None = None

    def upload_certs(self) -> bool:
        return self._upload_certs

    def certificate_key(self) -> str:
        return self._cfg.certificate_key

    def set_certificate_key(self, key: str) -> None:
        self._cfg.certificate_key = key

    def skip_certificate_key_print(self) -> bool:
        return self._skip_certificate_key_print

    def cfg(self) -> configutil.InitConfiguration:
        return self._cfg

    def dry_run(self) -> bool:
        return self._dry_run

    def skip_token_print(self) -> bool:
        return self._skip_token_print

    def ignore_preflight_errors(self) -> set[str]:
        return self._ignore_preflight_errors

    def certificate_write_dir(self) -> str:
        """证书写入目录，dry-run 时为临时目录。"""
        if self._dry_run:
            return self._dry_run_dir
        return self._certificates_dir

    def certificate_dir(self) -> str:
        return self._certificates_dir

    def kubeconfig_dir(self) -> str:
        if self._dry_run:
            return self._dry_run_dir
        return self._kubeconfig_dir

    def kubeconfig_path(self) -> str:
        if self._dry_run:
            return str(Path(self._dry_run_dir) / constants.ADMIN_KUBECONFIG)
        return self._kubeconfig_path

    def manifest_dir(self) -> str:
        if self._dry_run:
            return self._dry_run_dir
        return str(constants.static_pod_dir())

    def kubelet_dir(self) -> str:
        if self._dry_run:
            return self._dry_run_dir
        return str(constants.kubelet_run_dir())

    def external_ca(self) -> bool:
        return self._external_ca

    def output_writer(self) -> Callable[[str], None]:
        return self._out

    def client(self) -> apiclient.ClusterClient:
        """集群客户端，首次调用时创建。"""
        if self._client is None:
            if self._dry_run:
                self._client = apiclient.DryRunClient(self._cfg.node_registration.name, out=self._out)
            else:
                self._client = apiclient.KubeClient.from_kubeconfig(self.kubeconfig_path())
        return self._client

    def tokens(self) -> list[str]:
        return [token.token for token in self._cfg.bootstrap_tokens]


def new_init_data(init_options: InitOptions) -> InitRunData:
    """校验命令行选项并构建 init 运行数据。

    Raises:
        ValidationError: 参数组合或配置无效
    """
    configutil.validate_mixed_arguments(init_options.changed)

    external_cfg = init_options.external_cfg
    if init_options.token:
        configutil.validate_bootstrap_token(init_options.token)
        external_cfg.bootstrap_tokens[0].token = init_options.token
    if init_options.token_ttl:
        external_cfg.bootstrap_tokens[0].ttl = init_options.token_ttl

    cfg = configutil.load_init_configuration(init_options.cfg_path, external_cfg)

    ignore_preflight_errors = configutil.validate_ignore_preflight_errors(
        init_options.ignore_preflight_errors,
        cfg.node_registration.ignore_preflight_errors,
    )
    cfg.node_registration.ignore_preflight_errors = sorted(ignore_preflight_errors)

    # 命令行指定的节点名称优先
    if external_cfg.node_registration.name:
        cfg.node_registration.name = external_cfg.node_registration.name

    dry_run_dir = ""
    if init_options.dry_run:
        base_dir = os.getenv(INIT_DRY_RUN_DIR_ENV) or None
        try:
            dry_run_dir = tempfile.mkdtemp(prefix=f"{constants.TEMP_DIR_PREFIX}init-dryrun", dir=base_dir)
        except OSError as e:
            raise RuntimeError(f"couldn't create a temporary directory: {e}") from e

    external_ca = pki.using_external_ca(cfg.cluster.certificates_dir)
    external_front_proxy_ca = pki.using_external_ca(
        cfg.cluster.certificates_dir,
        constants.FRONT_PROXY_CA_CERT_AND_KEY_BASE_NAME,
    )
    if init_options.upload_certs and (external_ca or external_front_proxy_ca):
        raise ValidationError("can't use upload-certs with an external CA or an external front-proxy CA")

    return InitRunData(
        cfg,
        ignore_preflight_errors,
        kubeconfig_dir=init_options.kubeconfig_dir,
        kubeconfig_path=init_options.kubeconfig_path,
        dry_run=init_options.dry_run,
        dry_run_dir=dry_run_dir,
        skip_token_print=init_options.skip_token_print,
        external_ca=external_ca,
        upload_certs=init_options.upload_certs,
        skip_certificate_key_print=init_options.skip_certificate_key_print,
    )


def print_join_command(data: InitRunData, admin_kubeconfig_path: str, token: str) -> None:
    join_worker_command = joinutil.get_join_worker_command(admin_kubeconfig_path, token, data.skip_token_print())

    control_plane_section = ""
    if data.cfg().cluster.control_plane_endpoint:
        join_control_plane_command = joinutil.get_join_control_plane_command(
            admin_kubeconfig_path,
            token,
            data.certificate_key(),
            data.skip_token_print(),
            data.skip_certificate_key_print(),
        )
        template = UPLOAD_CERTS_SECTION if data.upload_certs() else COPY_CERTS_SECTION
        control_plane_section = template.format(join_control_plane_command=join_control_plane_command)

    data.output_writer()(INIT_DONE_TEMPLATE.format(
        kubeconfig_path=admin_kubeconfig_path,
        control_plane_section=control_plane_section,
        join_worker_command=join_worker_command,
    ))


def show_join_command(data: InitRunData) -> None:
    """所有阶段完成后打印 join 命令，每个令牌一份。

    Raises:
        RuntimeError: join 命令生成失败
    """
    admin_kubeconfig_path = data.kubeconfig_path()
    for token in data.tokens():
        try:
            print_join_command(data, admin_kubeconfig_path, token)
        except joinutil.JoinCommandError as e:
            raise RuntimeError(f"failed to print join command: {e}") from e


def _init_options(init_options: InitOptions) -> list[click.Parameter]:
    cfg = init_options.external_cfg
    cluster = cfg.cluster
    changed = init_options.changed

    return [
        bind_option(
            cfg.local_api_endpoint, "advertise_address", f"--{options.APISERVER_ADVERTISE_ADDRESS}",
            changed=changed, help="API Server 将要广播的监听地址，为空时使用默认网卡地址",
        ),
        bind_option(
            cfg.local_api_endpoint, "bind_port", f"--{options.APISERVER_BIND_PORT}",
            changed=changed, type=int, default=constants.KUBE_APISERVER_PORT, show_default=True,
            help="API Server 绑定的端口",
        ),
        bind_option(
            cfg.node_registration, "name", f"--{options.NODE_NAME}",
            changed=changed, help="节点名称",
        ),
        bind_option(
            cfg.node_registration, "cri_socket", f"--{options.NODE_CRI_SOCKET}",
            changed=changed, help="CRI 套接字路径，为空时自动检测",
        ),
        bind_option(
            cfg, "certificate_key", f"--{options.CERTIFICATE_KEY}",
            changed=changed, help="用于加密 kubeboot-certs Secret 中控制平面证书的密钥",
        ),
        bind_option(
            cluster, "kubernetes_version", f"--{options.KUBERNETES_VERSION}",
            changed=changed, default=constants.KUBERNETES_VERSION, show_default=True,
            help="控制平面使用的 Kubernetes 版本",
        ),
        bind_option(
            cluster, "control_plane_endpoint", f"--{options.CONTROL_PLANE_ENDPOINT}",
            changed=changed, help="控制平面的稳定地址（IP 或 DNS 名称）",
        ),
        bind_option(
            cluster.networking, "service_subnet", f"--{options.NETWORKING_SERVICE_SUBNET}",
            changed=changed, default=constants.DEFAULT_SERVICE_SUBNET, show_default=True,
            help="Service 虚拟 IP 使用的网段",
        ),
        bind_option(
            cluster.networking, "pod_subnet", f"--{options.NETWORKING_POD_SUBNET}",
            changed=changed, help="Pod 网络使用的网段",
        ),
        bind_option(
            cluster.networking, "dns_domain", f"--{options.NETWORKING_DNS_DOMAIN}",
            changed=changed, default=constants.DEFAULT_DNS_DOMAIN, show_default=True,
            help="Service 的 DNS 域名",
        ),
        bind_option(
            cluster.api_server, "cert_sans", f"--{options.APISERVER_CERT_SANS}",
            changed=changed, multiple=True, help="API Server 证书额外的 SAN（IP 或 DNS 名称）",
        ),
        bind_option(
            cluster, "certificates_dir", f"--{options.CERTIFICATES_DIR}",
            changed=changed, default=str(constants.default_cert_dir()), show_default=True,
            help="证书的保存目录",
        ),
        bind_option(
            cluster, "image_repository", f"--{options.IMAGE_REPOSITORY}",
            changed=changed, default=constants.DEFAULT_IMAGE_REPOSITORY, show_default=True,
            help="拉取控制平面镜像的镜像仓库",
        ),
        bind_option(
            init_options, "cfg_path", f"--{options.CFG_PATH}",
            changed=changed, type=click.Path(), help="kubeboot 配置文件路径",
        ),
        bind_option(
            init_options, "ignore_preflight_errors", f"--{options.IGNORE_PREFLIGHT_ERRORS}",
            changed=changed, multiple=True,
            help="错误仅显示为警告的检查列表，例如 'IsPrivilegedUser,Swap'。取值 'all' 忽略所有检查的错误",
        ),
        bind_option(
            init_options, "skip_token_print", f"--{options.SKIP_TOKEN_PRINT}",
            changed=changed, is_flag=True, help="不打印 init 生成的默认引导令牌",
        ),
        bind_option(
            init_options, "dry_run", f"--{options.DRY_RUN}",
            changed=changed, is_flag=True, help="不做任何改动，只输出将要执行的操作",
        ),
        bind_option(
            init_options, "upload_certs", f"--{options.UPLOAD_CERTS}",
            changed=changed, is_flag=True, help="把控制平面证书上传到 kubeboot-certs Secret",
        ),
        bind_option(
            init_options, "skip_certificate_key_print", f"--{options.SKIP_CERTIFICATE_KEY_PRINT}",
            changed=changed, is_flag=True, help="不打印加密控制平面证书使用的密钥",
        ),
        bind_option(
            init_options, "token", f"--{options.TOKEN_STR}",
            changed=changed, help="在控制平面和节点之间建立双向信任的令牌，格式为 [a-z0-9]{6}.[a-z0-9]{16}",
        ),
        bind_option(
            init_options, "token_ttl", f"--{options.TOKEN_TTL}",
            changed=changed, help="令牌自动删除前的有效期（如 1s、2m、3h），'0' 表示永不过期",
        ),
    ]


def new_cmd_init(init_options: InitOptions | None = None) -> click.Group:
    """创建 init 命令。"""
    if init_options is None:
        init_options = InitOptions()

    runner = Runner()

    def run_init() -> None:
        ctx = click.get_current_context()
        if ctx.invoked_subcommand is not None:
            return

        args = workflow_args(ctx)
        data = runner.init_data(args)
        click.echo(f"[init] 使用的 Kubernetes 版本: {data.cfg().cluster.kubernetes_version}")

        runner.run(args)
        show_join_command(data)

    cmd = WorkflowGroup(
        "init",
        help="运行此命令以设置 Kubernetes 控制平面",
        short_help="运行此命令以设置 Kubernetes 控制平面",
        params=_init_options(init_options),
        callback=run_init,
    )

    # init 本身不使用、但阶段子命令会继承的标志
    runner.set_additional_flags(
        bind_option(
            init_options, "kubeconfig_path", f"--{options.KUBECONFIG_PATH}",
            changed=init_options.changed, type=click.Path(),
            default=str(constants.admin_kubeconfig_path()), show_default=True,
            help="与集群通信使用的 kubeconfig 文件",
        ),
        bind_option(
            init_options, "kubeconfig_dir", f"--{options.KUBECONFIG_DIR}",
            changed=init_options.changed, type=click.Path(),
            default=str(constants.kubernetes_dir()), show_default=True,
            help="kubeconfig 文件的保存目录",
        ),
    )

    runner.append_phase(new_preflight_phase())
    runner.append_phase(new_certs_phase())
    runner.append_phase(new_kubeconfig_phase())
    runner.append_phase(new_kubelet_start_phase())
    runner.append_phase(new_control_plane_phase())
    runner.append_phase(new_etcd_phase())
    runner.append_phase(new_wait_control_plane_phase())
    runner.append_phase(new_upload_config_phase())
    runner.append_phase(new_upload_certs_phase())
    runner.append_phase(new_mark_control_plane_phase())
    runner.append_phase(new_bootstrap_token_phase())

    def init_data(ctx: click.Context | None, args: list[str]) -> InitRunData:
        data = new_init_data(init_options)
        # 命令行未指定 --skip-phases 时使用配置文件中的取值
        if not runner.options.skip_phases:
            runner.options.skip_phases = list(data.cfg().skip_phases)
        return data

    runner.set_data_initializer(init_data)
    runner.bind_to_command(cmd, no_args)
    return cmd
