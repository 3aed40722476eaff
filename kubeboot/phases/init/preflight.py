"""init 预检阶段。"""

import click

from kubeboot import options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import preflight
from kubeboot.workflow import Phase

PREFLIGHT_EXAMPLE = """\b
# 使用配置文件为 init 运行预检
kubeboot init phase preflight --config kubeboot-config.yaml
"""


def new_preflight_phase() -> Phase:
    return Phase(
        name="preflight",
        short="运行预检",
        long="为 kubeboot init 运行预检",
        example=PREFLIGHT_EXAMPLE,
        run=run_preflight,
        inherit_flags=[options.CFG_PATH, options.IGNORE_PREFLIGHT_ERRORS],
    )


def run_preflight(c: object) -> None:
    data = get_init_data(c, "preflight")

    click.echo("[preflight] 运行预检")
    preflight.run_init_node_checks(data.cfg(), data.ignore_preflight_errors())

    if data.dry_run():
        click.echo("[preflight] 需要拉取所需的镜像")
        return

    click.echo("[preflight] 拉取创建 Kubernetes 集群所需的镜像")
    click.echo("[preflight] 这可能需要一两分钟，取决于网络连接速度")
    preflight.run_pull_images_check(data.cfg(), data.ignore_preflight_errors())
