"""init etcd 阶段。"""

import click

from kubeboot import constants, options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import staticpod
from kubeboot.workflow import Phase

ETCD_LOCAL_EXAMPLE = """\b
# 根据 InitConfiguration 文件为 etcd 生成静态 Pod 清单
kubeboot init phase etcd local --config config.yaml
"""


def new_etcd_phase() -> Phase:
    return Phase(
        name="etcd",
        short="为本地 etcd 生成静态 Pod 清单",
        long="此命令不应单独运行，请查看子命令列表",
        phases=[new_etcd_local_sub_phase()],
    )


def new_etcd_local_sub_phase() -> Phase:
    return Phase(
        name="local",
        short="为本地单节点 etcd 实例生成静态 Pod 清单",
        example=ETCD_LOCAL_EXAMPLE,
        run=run_etcd_phase_local,
        inherit_flags=[options.CERTIFICATES_DIR, options.CFG_PATH, options.IMAGE_REPOSITORY],
    )


def run_etcd_phase_local(c: object) -> None:
    data = get_init_data(c, "etcd")
    cfg = data.cfg()

    if cfg.cluster.etcd.external is not None:
        click.echo("[etcd] 使用外部 etcd，跳过本地 etcd 静态 Pod 清单的生成")
        return

    # 只有新集群的第一个控制平面节点会走到这里
    click.echo(f'[etcd] 在 "{data.manifest_dir()}" 中为本地 etcd 生成静态 Pod 清单')
    pod = staticpod.build_local_etcd_pod(
        cfg,
        cfg.node_registration.name,
        cfg.local_api_endpoint.advertise_address,
    )
    staticpod.write_static_pod_to_disk(constants.ETCD, data.manifest_dir(), pod)
