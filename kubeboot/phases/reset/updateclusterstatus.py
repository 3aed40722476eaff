"""reset update-cluster-status 阶段（已废弃）。"""

import click

from kubeboot import constants
from kubeboot.phases.reset.data import get_reset_data
from kubeboot.utils import staticpod
from kubeboot.workflow import Phase


def new_update_cluster_status_phase() -> Phase:
    return Phase(
        name="update-cluster-status",
        short="从 ClusterStatus 对象中移除本节点（已废弃）",
        run=run_update_cluster_status,
    )


def is_control_plane() -> bool:
    """本机存在 kube-apiserver 清单时视为控制平面节点。"""
    return staticpod.manifest_path(constants.KUBE_APISERVER, constants.static_pod_dir()).exists()


def run_update_cluster_status(c: object) -> None:
    data = get_reset_data(c, "update-cluster-status")

    if is_control_plane() and data.cfg() is not None:
        click.echo("[reset] update-cluster-status 阶段已废弃，将在未来的版本中移除。目前它不执行任何操作")
