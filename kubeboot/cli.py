"""CLI 命令模块。

使用 Click 框架组装 kubeboot 根命令。
"""

import logging
import os

import click

from kubeboot.commands.init import new_cmd_init
from kubeboot.commands.join import new_cmd_join
from kubeboot.commands.reset import new_cmd_reset
from kubeboot.commands.version import version

logger = logging.getLogger(__name__)

ROOT_HELP = """kubeboot: 轻松引导一个安全的 Kubernetes 集群。

使用示例:

\b
创建一个包含两个节点的 Kubernetes 集群：一个控制平面节点（控制集群）
和一个工作节点（运行 Pod、Deployment 等工作负载）。

\b
在第一台机器上执行:
    control-plane# kubeboot init

\b
在第二台机器上执行:
    worker# kubeboot join <kubeboot init 输出的参数>

可以在更多机器上重复第二步。
"""

_verbosity = 0


def get_verbosity() -> int:
    """获取 --v 指定的日志级别。"""
    return _verbosity


def set_verbosity(level: int) -> None:
    """设置日志级别，大于等于 1 时输出调试日志。"""
    global _verbosity
    _verbosity = level
    logging.getLogger().setLevel(logging.DEBUG if level >= 1 else logging.INFO)


def chroot(rootfs: str) -> None:
    """切换根目录。

    Raises:
        OSError: 切换失败
    """
    logger.debug(f"Changing root to {rootfs}")
    os.chroot(rootfs)
    os.chdir("/")


def new_kubeboot_command() -> click.Group:
    """创建 kubeboot 根命令。

    每次调用都会创建新的工作流命令，各自持有独立的运行器状态。
    """

    @click.group(help=ROOT_HELP)
    @click.option("--v", "verbosity", type=int, default=0, help="日志详细级别，大于等于 5 时打印错误的调用栈")
    @click.option("--rootfs", type=click.Path(), help="[实验性] 宿主机根文件系统的路径，所有路径都相对于它")
    def cli(verbosity: int, rootfs: str | None) -> None:
        set_verbosity(verbosity)
        if rootfs:
            chroot(rootfs)

    cli.add_command(new_cmd_init())
    cli.add_command(new_cmd_join())
    cli.add_command(new_cmd_reset())
    cli.add_command(version)
    return cli
