"""join control-plane-join 阶段。

以控制平面身份加入时，加入本地 etcd 集群并标记节点。
每个子阶段都带有自己的运行条件，条件不会从父阶段继承。
"""

import click

from kubeboot import constants, options
from kubeboot.phases.join.data import get_join_data, is_control_plane
from kubeboot.utils import etcd as etcdutil
from kubeboot.utils import node, staticpod
from kubeboot.workflow import Phase

CONTROL_PLANE_JOIN_EXAMPLE = """\b
# 以控制平面实例身份加入
kubeboot join phase control-plane-join all
"""


def get_control_plane_join_phase_flags(name: str) -> list[str]:
    flags = [options.CFG_PATH, options.CONTROL_PLANE, options.NODE_NAME]
    if name in ("all", "etcd"):
        flags.extend([options.APISERVER_ADVERTISE_ADDRESS, options.APISERVER_BIND_PORT])
    return flags


def new_control_plane_join_phase() -> Phase:
    return Phase(
        name="control-plane-join",
        short="作为控制平面实例加入集群",
        example=CONTROL_PLANE_JOIN_EXAMPLE,
        phases=[
            Phase(
                name="all",
                short="作为控制平面实例加入集群",
                inherit_flags=get_control_plane_join_phase_flags("all"),
                run_all_siblings=True,
            ),
            new_etcd_local_sub_phase(),
            new_update_status_sub_phase(),
            new_mark_control_plane_sub_phase(),
        ],
    )


def new_etcd_local_sub_phase() -> Phase:
    return Phase(
        name="etcd",
        short="添加新的本地 etcd 成员",
        run=run_etcd_phase,
        inherit_flags=get_control_plane_join_phase_flags("etcd"),
        run_if=is_control_plane,
    )


def new_update_status_sub_phase() -> Phase:
    return Phase(
        name="update-status",
        short="注册新的控制平面节点",
        long="此阶段已弃用，保留它只是为了兼容已有的 --skip-phases 取值，执行时不做任何事情。",
        run=run_update_status_phase,
        inherit_flags=get_control_plane_join_phase_flags("update-status"),
        run_if=is_control_plane,
    )


def new_mark_control_plane_sub_phase() -> Phase:
    return Phase(
        name="mark-control-plane",
        short="将节点标记为控制平面",
        run=run_mark_control_plane_phase,
        inherit_flags=get_control_plane_join_phase_flags("mark-control-plane"),
        run_if=is_control_plane,
    )


def run_etcd_phase(c: object) -> None:
    data = get_join_data(c, "control-plane-join")
    cfg = data.cfg()
    init_cfg = data.init_cfg()

    if init_cfg.cluster.etcd.external is not None:
        click.echo("[control-plane-join] 使用外部 etcd，跳过本地 etcd 成员的添加")
        return

    node_name = cfg.node_registration.name
    advertise_address = cfg.control_plane.local_api_endpoint.advertise_address
    peer_url = etcdutil.get_peer_url(advertise_address)

    etcd_client = etcdutil.EtcdClient.from_cluster(data.client(), data.certificate_dir())
    try:
        members = etcd_client.add_member(node_name, peer_url)
        click.echo("[etcd] 已向现有 etcd 集群宣告新成员加入")

        initial_cluster = [(m.name, m.peer_urls[0]) for m in members if m.peer_urls]
        pod = staticpod.build_local_etcd_pod(init_cfg, node_name, advertise_address, initial_cluster)
        staticpod.write_static_pod_to_disk(constants.ETCD, data.manifest_dir(), pod)
        click.echo(f'[etcd] 在 "{data.manifest_dir()}" 中为本地 etcd 生成静态 Pod 清单')

        click.echo("[etcd] 等待新的 etcd 成员加入集群。这可能需要 40 秒左右")
        etcd_client.wait_for_cluster_available()
    finally:
        etcd_client.close()


def run_update_status_phase(c: object) -> None:
    get_join_data(c, "control-plane-join")


def run_mark_control_plane_phase(c: object) -> None:
    data = get_join_data(c, "control-plane-join")
    node_registration = data.cfg().node_registration
    node.mark_control_plane(data.client(), node_registration.name, node_registration.taints or [])
