"""init 等待控制平面阶段。"""

import logging
from pathlib import Path

import click

from kubeboot import constants
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import apiclient, staticpod
from kubeboot.workflow import Phase

logger = logging.getLogger(__name__)

DOCKER_TROUBLESHOOTING = """\
\t\t- 'docker ps -a | grep kube | grep -v pause'
\t\t  找到故障容器后，可以通过以下命令查看日志：
\t\t- 'docker logs CONTAINERID'
"""

CRI_TROUBLESHOOTING = """\
\t\t- 'crictl --runtime-endpoint {socket} ps -a | grep kube | grep -v pause'
\t\t  找到故障容器后，可以通过以下命令查看日志：
\t\t- 'crictl --runtime-endpoint {socket} logs CONTAINERID'
"""

KUBELET_FAILED_TEMPLATE = """
\t很遗憾，发生了错误：
\t\t等待控制平面就绪超时

\t这个错误很可能由以下原因导致：
\t\t- kubelet 没有运行
\t\t- kubelet 因节点配置错误而不健康（例如 cgroup 被禁用）

\t如果使用 systemd 系统，可以通过以下命令排查：
\t\t- 'systemctl status kubelet'
\t\t- 'journalctl -xeu kubelet'

\t此外，控制平面组件可能在容器运行时启动后崩溃或退出。
\t可以通过以下命令列出所有 Kubernetes 容器：
{troubleshooting}"""


def new_wait_control_plane_phase() -> Phase:
    return Phase(
        name="wait-control-plane",
        run=run_wait_control_plane_phase,
        hidden=True,
    )


def kubelet_failed_message(cri_socket: str) -> str:
    if cri_socket == constants.DEFAULT_DOCKER_CRI_SOCKET:
        troubleshooting = DOCKER_TROUBLESHOOTING
    else:
        troubleshooting = CRI_TROUBLESHOOTING.format(socket=cri_socket)
    return KUBELET_FAILED_TEMPLATE.format(troubleshooting=troubleshooting)


def print_files_if_dry_running(manifest_dir: str) -> None:
    """dry-run 时打印生成的静态 Pod 清单。"""
    for component in (constants.ETCD, *constants.CONTROL_PLANE_COMPONENTS):
        path = staticpod.manifest_path(component, manifest_dir)
        if not path.exists():
            continue
        click.echo(f"[dryrun] 将写入文件 {str(constants.static_pod_dir() / path.name)!r}，内容为：")
        click.echo(Path(path).read_text(encoding="utf-8"))


def run_wait_control_plane_phase(c: object) -> None:
    data = get_init_data(c, "wait-control-plane")

    if data.dry_run():
        print_files_if_dry_running(data.manifest_dir())

    click.echo(
        f"[wait-control-plane] 等待 kubelet 以静态 Pod 方式从 {data.manifest_dir()!r} 启动控制平面。"
        f"最长需要 {constants.CONTROL_PLANE_READY_TIMEOUT:.0f}s"
    )

    try:
        apiclient.wait_for_api(data.client(), timeout=constants.CONTROL_PLANE_READY_TIMEOUT)
    except TimeoutError as e:
        logger.debug(f"Waiting for the control plane failed: {e}")
        click.echo(kubelet_failed_message(data.cfg().node_registration.cri_socket))
        raise RuntimeError("couldn't initialize a Kubernetes cluster") from e

    click.echo("[apiclient] 所有控制平面组件均已健康")
