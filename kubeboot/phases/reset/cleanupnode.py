"""reset cleanup-node 阶段。

停止 kubelet，卸载 kubelet 目录下的挂载点，删除 Kubernetes 容器，
并清理证书、静态 Pod 清单和 kubeconfig 文件。
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable

import click

from kubeboot import constants, options
from kubeboot.phases.reset.data import get_reset_data
from kubeboot.utils import initsystem
from kubeboot.utils.kubelet import KUBELET_SERVICE
from kubeboot.utils.runtime import ContainerRuntimeError, new_container_runtime
from kubeboot.workflow import Phase

logger = logging.getLogger(__name__)

# 除 kubelet 目录外需要清理的有状态目录
STATEFUL_DIRS = ["/var/lib/dockershim", "/var/run/kubernetes", "/var/lib/cni"]


def new_cleanup_node_phase() -> Phase:
    return Phase(
        name="cleanup-node",
        aliases=["cleanupnode"],
        short="执行清理节点的操作",
        run=run_cleanup_node,
        inherit_flags=[options.CERTIFICATES_DIR, options.NODE_CRI_SOCKET],
    )


def clean_dir(path: str | Path) -> None:
    """删除目录中的全部内容，保留目录本身。目录不存在时不做任何操作。

    Raises:
        OSError: 删除失败
    """
    path = Path(path)
    if not path.exists():
        return
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def unmount_kubelet_directory(
    kubelet_dir: str | Path,
    mounts_file: str | Path = "/proc/mounts",
    run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> None:
    """卸载 kubelet 目录下的所有挂载点。

    Raises:
        OSError: 无法读取挂载信息或卸载失败
    """
    prefix = str(kubelet_dir).rstrip("/") + "/"
    with open(mounts_file, "r", encoding="utf-8") as f:
        mounts = [line.split()[1] for line in f if len(line.split()) > 1]

    for mount in mounts:
        if not mount.startswith(prefix):
            continue
        logger.debug(f"[reset] Unmounting {mount!r}")
        result = run(["umount", mount], capture_output=True, text=True)
        if result.returncode != 0:
            raise OSError(f"failed to unmount mounted directory in {kubelet_dir}: {mount}: {result.stderr.strip()}")


def remove_containers(cri_socket: str) -> None:
    """删除 kubelet 创建的所有容器。

    Raises:
        ContainerRuntimeError: 运行时不可用或删除失败
    """
    runtime = new_container_runtime(cri_socket)
    runtime.is_running()
    containers = runtime.list_kube_containers()
    logger.debug(f"[reset] Removing {len(containers)} containers")
    runtime.remove_containers(containers)


def reset_config_dir(config_dir: str | Path, pki_dir: str | Path) -> None:
    """清理静态 Pod 清单、证书目录和 kubeconfig 文件。"""
    dirs_to_clean = [Path(config_dir) / constants.MANIFESTS_SUBDIR, Path(pki_dir)]
    click.echo(f"[reset] 删除以下目录中的内容: {[str(d) for d in dirs_to_clean]}")
    for directory in dirs_to_clean:
        try:
            clean_dir(directory)
        except OSError as e:
            logger.warning(f"[reset] Failed to delete contents of {str(directory)!r} directory: {e}")

    files_to_clean = [
        Path(config_dir) / name
        for name in (
            constants.ADMIN_KUBECONFIG,
            constants.KUBELET_KUBECONFIG,
            constants.KUBELET_BOOTSTRAP_KUBECONFIG,
            constants.CONTROLLER_MANAGER_KUBECONFIG,
            constants.SCHEDULER_KUBECONFIG,
        )
    ]
    click.echo(f"[reset] 删除以下文件: {[str(f) for f in files_to_clean]}")
    for path in files_to_clean:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"[reset] Failed to remove file {str(path)!r}: {e}")


def run_cleanup_node(c: object) -> None:
    data = get_reset_data(c, "cleanup-node")
    cert_dir = data.cert_dir()

    click.echo("[reset] 停止 kubelet 服务")
    try:
        initsystem.get_init_system().service_stop(KUBELET_SERVICE)
    except initsystem.InitSystemError as e:
        logger.warning(f"[reset] The kubelet service could not be stopped by kubeboot: [{e}]")
        logger.warning("[reset] Please ensure kubelet is stopped manually")

    kubelet_dir = constants.kubelet_run_dir()
    click.echo(f"[reset] 卸载 {str(kubelet_dir)!r} 中的挂载目录")
    try:
        unmount_kubelet_directory(kubelet_dir)
    except OSError as e:
        logger.warning(f"[reset] Failed to unmount mounted directories in {kubelet_dir}: {e}")

    click.echo("[reset] 删除 kubelet 创建的容器")
    try:
        remove_containers(data.cri_socket_path())
    except (ContainerRuntimeError, OSError) as e:
        logger.warning(f"[reset] Failed to remove containers: {e}")

    data.add_dirs_to_clean(str(kubelet_dir), *STATEFUL_DIRS)

    reset_config_dir(constants.kubernetes_dir(), cert_dir)
