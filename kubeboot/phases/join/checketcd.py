"""join check-etcd 阶段。"""

import click

from kubeboot.phases.join.data import get_join_data
from kubeboot.utils import etcd as etcdutil
from kubeboot.workflow import Phase


def new_check_etcd_phase() -> Phase:
    return Phase(
        name="check-etcd",
        run=run_check_etcd_phase,
        hidden=True,
    )


def run_check_etcd_phase(c: object) -> None:
    data = get_join_data(c, "check-etcd")

    # 工作节点不需要检查
    if data.cfg().control_plane is None:
        return

    cfg = data.init_cfg()
    if cfg.cluster.etcd.external is not None:
        click.echo("[check-etcd] 外部 etcd 模式，跳过 etcd 检查")
        return

    click.echo("[check-etcd] 检查 etcd 集群是否健康")
    etcd_client = etcdutil.EtcdClient.from_cluster(data.client(), data.certificate_dir())
    try:
        etcd_client.check_cluster_health()
    finally:
        etcd_client.close()
