"""reset remove-etcd-member 阶段。"""

import logging
from pathlib import Path

import click

from kubeboot import constants, options
from kubeboot.phases.reset.data import get_reset_data
from kubeboot.utils import apiclient, staticpod
from kubeboot.utils import etcd as etcdutil
from kubeboot.utils.config import InitConfiguration
from kubeboot.workflow import Phase

logger = logging.getLogger(__name__)


def new_remove_etcd_member_phase() -> Phase:
    return Phase(
        name="remove-etcd-member",
        short="移除本地 etcd 成员",
        long="移除控制平面节点上的本地 etcd 成员",
        run=run_remove_etcd_member_phase,
        inherit_flags=[options.KUBECONFIG_PATH],
    )


def get_etcd_data_dir(manifest_path: str | Path, cfg: InitConfiguration | None) -> str:
    """获取 etcd 数据目录。

    优先使用集群配置，没有配置时从本机的 etcd 静态 Pod 清单中读取。

    Raises:
        StaticPodError: 清单不存在或无效
    """
    if cfg is not None and cfg.cluster.etcd.local is not None:
        return cfg.cluster.etcd.local.data_dir

    logger.warning("[reset] No kubeboot config, using etcd pod spec to get data directory")
    pod = staticpod.read_static_pod_from_disk(manifest_path)
    data_dir = staticpod.get_host_path(pod, staticpod.ETCD_DATA_VOLUME)
    if not data_dir:
        raise staticpod.StaticPodError("invalid etcd pod manifest")
    return data_dir


def remove_stacked_etcd_member(
    client: apiclient.ClusterClient,
    cfg: InitConfiguration,
    certificates_dir: str,
) -> None:
    """从 etcd 集群中移除本节点的成员。

    本节点是集群中唯一的成员时不做任何操作。

    Raises:
        EtcdError: 访问 etcd 失败或找不到本节点的成员
    """
    etcd_client = etcdutil.EtcdClient.from_cluster(client, certificates_dir)
    try:
        advertise_address = cfg.local_api_endpoint.advertise_address
        members = etcd_client.list_members()
        if len(members) == 1 and etcdutil.get_client_url(advertise_address) in etcd_client.endpoints:
            logger.info("[etcd] This is the only remaining etcd member in the etcd cluster, skip removing it")
            return

        member_id = etcd_client.get_member_id(etcdutil.get_peer_url(advertise_address))
        logger.info(f"[etcd] Removing etcd member {member_id:x}")
        remaining = etcd_client.remove_member(member_id)
        logger.debug(f"[etcd] Remaining etcd members: {[m.name for m in remaining]}")
    finally:
        etcd_client.close()


def run_remove_etcd_member_phase(c: object) -> None:
    data = get_reset_data(c, "remove-etcd-member")
    cfg = data.cfg()

    # 只有本地 etcd 才需要清理数据目录
    logger.debug("[reset] Checking for etcd config")
    manifest = staticpod.manifest_path(constants.ETCD, constants.static_pod_dir())
    try:
        data_dir = get_etcd_data_dir(manifest, cfg)
    except staticpod.StaticPodError as e:
        logger.debug(f"[reset] {e}")
        click.echo("[reset] 没有找到 etcd 配置，可能使用的是外部 etcd")
        click.echo("[reset] 请手动重置 etcd，以免出现后续问题")
        return

    data.add_dirs_to_clean(data_dir)
    client = data.client()
    if cfg is None or client is None:
        return

    try:
        remove_stacked_etcd_member(client, cfg, data.cert_dir())
    except (etcdutil.EtcdError, apiclient.ApiError) as e:
        logger.warning(f"[reset] Failed to remove etcd member: {e}, please manually remove this etcd member using etcdctl")
