"""join kubelet-start 阶段。

写入引导 kubeconfig 和 kubelet 配置后启动 kubelet，由 kubelet 完成 TLS 引导。
"""

import logging
import time
from pathlib import Path

import click

from kubeboot import constants, options
from kubeboot.phases.join.data import get_join_data
from kubeboot.utils import apiclient, node
from kubeboot.utils import kubeconfig as kubeconfigutil
from kubeboot.utils import kubelet as kubeletutil
from kubeboot.workflow import Phase

logger = logging.getLogger(__name__)

TLS_BOOTSTRAP_RETRY_INTERVAL = 5.0

JOIN_FAIL_TEMPLATE = """
很遗憾，发生了错误：
\t{error}

这个错误很可能由以下原因导致：
\t- kubelet 没有运行
\t- kubelet 因节点配置错误而不健康（例如 cgroup 被禁用）

如果使用 systemd 系统，可以通过以下命令排查：
\t- 'systemctl status kubelet'
\t- 'journalctl -xeu kubelet'
"""


def new_kubelet_start_phase() -> Phase:
    return Phase(
        name="kubelet-start [api-server-endpoint]",
        short="写入 kubelet 配置、证书并（重新）启动 kubelet",
        long="写入包含 KubeletConfiguration 的文件以及节点专属的 kubelet 参数环境文件，然后（重新）启动 kubelet。",
        run=run_kubelet_start_join_phase,
        inherit_flags=[
            options.CFG_PATH,
            options.NODE_CRI_SOCKET,
            options.NODE_NAME,
            options.FILE_DISCOVERY,
            options.TOKEN_DISCOVERY,
            options.TOKEN_DISCOVERY_CA_HASH,
            options.TOKEN_DISCOVERY_SKIP_CA_HASH,
            options.TLS_BOOTSTRAP_TOKEN,
            options.TOKEN_STR,
        ],
    )


def wait_for_tls_bootstrap(
    kubelet_kubeconfig: str | Path,
    timeout: float = constants.TLS_BOOTSTRAP_TIMEOUT,
    interval: float = TLS_BOOTSTRAP_RETRY_INTERVAL,
) -> None:
    """等待 kubelet 完成 TLS 引导并写出可用的 kubelet.conf。

    Raises:
        TimeoutError: 超时
    """
    click.echo("[kubelet-start] 等待 kubelet 完成 TLS 引导...")
    deadline = time.monotonic() + timeout
    while True:
        try:
            config = kubeconfigutil.load_kubeconfig(kubelet_kubeconfig)
            kubeconfigutil.current_cluster(config)
            return
        except kubeconfigutil.KubeconfigError as e:
            logger.debug(f"Kubelet kubeconfig not ready yet: {e}")
        if time.monotonic() >= deadline:
            raise TimeoutError("timed out waiting for the condition")
        time.sleep(interval)


def run_kubelet_start_join_phase(c: object) -> None:
    data = get_join_data(c, "kubelet-start")
    cfg = data.cfg()
    init_cfg = data.init_cfg()
    tls_bootstrap_cfg = data.tls_bootstrap_cfg()

    bootstrap_kubeconfig = Path(data.kubeconfig_dir()) / constants.KUBELET_BOOTSTRAP_KUBECONFIG
    try:
        logger.debug(f"[kubelet-start] Writing bootstrap kubelet config file at {bootstrap_kubeconfig}")
        kubeconfigutil.write_kubeconfig(bootstrap_kubeconfig, tls_bootstrap_cfg)

        # kubelet 用这份 CA 校验 API Server
        ca_cert_path = Path(cfg.ca_cert_path)
        if not ca_cert_path.exists():
            logger.debug(f"[kubelet-start] Writing CA certificate at {ca_cert_path}")
            ca_cert_path.parent.mkdir(parents=True, exist_ok=True)
            ca_cert_path.write_bytes(kubeconfigutil.cluster_ca_data(tls_bootstrap_cfg))

        # 集群中已有同名且就绪的节点时，新节点会顶替它的身份
        node_name = cfg.node_registration.name
        logger.debug(f"[kubelet-start] Checking for an existing Node in the cluster with name {node_name!r} and status Ready")
        existing = data.bootstrap_client().get(apiclient.node_path(node_name))
        if existing is not None and apiclient.node_is_ready(existing):
            raise RuntimeError(
                f"a Node with name {node_name!r} and status Ready already exists in the cluster. "
                "You must delete the existing Node or change the name of this new joining Node"
            )

        logger.debug("[kubelet-start] Stopping the kubelet")
        kubeletutil.try_stop_kubelet()

        kubeletutil.write_config_to_disk(kubeletutil.build_kubelet_configuration(init_cfg.cluster), data.kubelet_dir())
        kubeletutil.write_kubelet_dynamic_env_file(init_cfg.cluster, cfg.node_registration, data.kubelet_dir())

        click.echo("[kubelet-start] 启动 kubelet")
        kubeletutil.try_start_kubelet()

        kubelet_kubeconfig = Path(data.kubeconfig_dir()) / constants.KUBELET_KUBECONFIG
        try:
            wait_for_tls_bootstrap(kubelet_kubeconfig)
        except TimeoutError as e:
            click.echo(JOIN_FAIL_TEMPLATE.format(error=e))
            raise
    finally:
        # 引导凭据只在 TLS 引导期间需要
        bootstrap_kubeconfig.unlink(missing_ok=True)

    logger.debug("[kubelet-start] Preserving the crisocket information for the node")
    try:
        node.annotate_cri_socket(data.kubelet_client(), cfg.node_registration.name, cfg.node_registration.cri_socket)
    except apiclient.ApiError as e:
        raise RuntimeError(f"error uploading crisocket: {e}") from e
