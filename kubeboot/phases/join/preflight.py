"""join 预检阶段。"""

import click

from kubeboot import options
from kubeboot.phases.join.data import get_join_data
from kubeboot.utils import preflight
from kubeboot.utils.errors import ValidationError
from kubeboot.workflow import Phase

PREFLIGHT_EXAMPLE = """\b
# 使用配置文件为 join 运行预检
kubeboot join phase preflight --config kubeboot-config.yaml
"""

CONTROL_PLANE_ENDPOINT_REQUIRED = """\
unable to add a new control plane instance to a cluster that doesn't have a stable controlPlaneEndpoint address

Please ensure that:
* The cluster has a stable controlPlaneEndpoint address.
* The certificates that must be shared among control plane instances are provided.
"""


def new_preflight_phase() -> Phase:
    return Phase(
        name="preflight [api-server-endpoint]",
        short="运行 join 预检",
        long="为 kubeboot join 运行预检",
        example=PREFLIGHT_EXAMPLE,
        run=run_preflight,
        inherit_flags=[
            options.CFG_PATH,
            options.IGNORE_PREFLIGHT_ERRORS,
            options.TLS_BOOTSTRAP_TOKEN,
            options.TOKEN_STR,
            options.CONTROL_PLANE,
            options.APISERVER_ADVERTISE_ADDRESS,
            options.APISERVER_BIND_PORT,
            options.NODE_CRI_SOCKET,
            options.NODE_NAME,
            options.FILE_DISCOVERY,
            options.TOKEN_DISCOVERY,
            options.TOKEN_DISCOVERY_CA_HASH,
            options.TOKEN_DISCOVERY_SKIP_CA_HASH,
            options.CERTIFICATE_KEY,
        ],
    )


def run_preflight(c: object) -> None:
    data = get_join_data(c, "preflight")
    cfg = data.cfg()

    click.echo("[preflight] 运行预检")
    preflight.run_join_node_checks(cfg, data.ignore_preflight_errors())

    if cfg.control_plane is None:
        return

    # 加入控制平面前，集群必须有稳定的地址，共享证书必须已经就位
    init_cfg = data.init_cfg()
    if not init_cfg.cluster.control_plane_endpoint:
        raise ValidationError(CONTROL_PLANE_ENDPOINT_REQUIRED)

    click.echo("[preflight] 运行控制平面实例的预检")
    preflight.run_init_node_checks(init_cfg, data.ignore_preflight_errors(), is_secondary_control_plane=True)
    # 提供了证书密钥时，共享证书由 control-plane-prepare 阶段从集群下载
    if not cfg.control_plane.certificate_key:
        preflight.run_shared_certs_checks(
            data.certificate_dir(),
            init_cfg.cluster.etcd.external is not None,
            data.ignore_preflight_errors(),
        )

    click.echo("[preflight] 拉取控制平面所需的镜像")
    preflight.run_pull_images_check(init_cfg, data.ignore_preflight_errors())
