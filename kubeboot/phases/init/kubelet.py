"""init kubelet-start 阶段。"""

import click

from kubeboot import options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import kubelet as kubeletutil
from kubeboot.workflow import Phase

KUBELET_START_EXAMPLE = """\b
# 根据 InitConfiguration 文件写入动态环境文件和 kubelet 配置文件
kubeboot init phase kubelet-start --config config.yaml
"""


def new_kubelet_start_phase() -> Phase:
    return Phase(
        name="kubelet-start",
        short="写入 kubelet 配置并（重新）启动 kubelet",
        long="写入包含 KubeletConfiguration 的文件以及节点专属的 kubelet 参数环境文件，然后（重新）启动 kubelet。",
        example=KUBELET_START_EXAMPLE,
        run=run_kubelet_start,
        inherit_flags=[options.CFG_PATH, options.NODE_CRI_SOCKET, options.NODE_NAME],
    )


def run_kubelet_start(c: object) -> None:
    data = get_init_data(c, "kubelet-start")
    cfg = data.cfg()

    # 写入配置期间先停止 kubelet，避免它读到一半的文件
    if not data.dry_run():
        kubeletutil.try_stop_kubelet()

    env_file = kubeletutil.write_kubelet_dynamic_env_file(cfg.cluster, cfg.node_registration, data.kubelet_dir())
    click.echo(f'[kubelet-start] 将 kubelet 环境文件写入 "{env_file}"')

    config_file = kubeletutil.write_config_to_disk(
        kubeletutil.build_kubelet_configuration(cfg.cluster), data.kubelet_dir()
    )
    click.echo(f'[kubelet-start] 将 kubelet 配置写入 "{config_file}"')

    if not data.dry_run():
        click.echo("[kubelet-start] 启动 kubelet")
        kubeletutil.try_start_kubelet()
