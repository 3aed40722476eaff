"""join control-plane-prepare 阶段。

以控制平面身份加入时，在 TLS 引导之前准备好证书、kubeconfig 文件和控制平面静态 Pod 清单。
"""

import click

from kubeboot import constants, options
from kubeboot.phases.init.certs import ETCD_CA_NAME, default_cert_list, ensure_signed_cert
from kubeboot.phases.init.controlplane import CONTROL_PLANE_PHASE_PROPERTIES
from kubeboot.phases.join.data import get_join_data, is_control_plane
from kubeboot.utils import copycerts, staticpod
from kubeboot.utils import kubeconfig as kubeconfigutil
from kubeboot.workflow import Phase

CONTROL_PLANE_PREPARE_EXAMPLE = """\b
# 为新的控制平面节点准备证书、kubeconfig 和静态 Pod 清单
kubeboot join phase control-plane-prepare all
"""

# 新控制平面节点需要的 kubeconfig 文件，kubelet.conf 由 TLS 引导生成
CONTROL_PLANE_KUBECONFIG_FILES = (
    constants.ADMIN_KUBECONFIG,
    constants.CONTROLLER_MANAGER_KUBECONFIG,
    constants.SCHEDULER_KUBECONFIG,
)


def get_control_plane_prepare_phase_flags(name: str) -> list[str]:
    flags = [options.CFG_PATH, options.CONTROL_PLANE]
    if name in ("all", "download-certs"):
        flags.extend([
            options.CERTIFICATE_KEY,
            options.TLS_BOOTSTRAP_TOKEN,
            options.TOKEN_STR,
            options.FILE_DISCOVERY,
            options.TOKEN_DISCOVERY,
            options.TOKEN_DISCOVERY_CA_HASH,
            options.TOKEN_DISCOVERY_SKIP_CA_HASH,
        ])
    if name in ("all", "certs", "kubeconfig", "control-plane"):
        flags.extend([options.APISERVER_ADVERTISE_ADDRESS, options.APISERVER_BIND_PORT])
    if name in ("all", "certs"):
        flags.append(options.NODE_NAME)
    return flags


def new_control_plane_prepare_phase() -> Phase:
    return Phase(
        name="control-plane-prepare",
        short="为控制平面准备节点",
        example=CONTROL_PLANE_PREPARE_EXAMPLE,
        phases=[
            Phase(
                name="all",
                short="为控制平面准备节点",
                inherit_flags=get_control_plane_prepare_phase_flags("all"),
                run_all_siblings=True,
            ),
            new_download_certs_sub_phase(),
            new_certs_sub_phase(),
            new_kubeconfig_sub_phase(),
            new_control_plane_sub_phase(),
        ],
    )


def new_download_certs_sub_phase() -> Phase:
    return Phase(
        name="download-certs",
        short=f"从 {constants.CERTS_SECRET} Secret 下载控制平面节点共享的证书",
        long=f"从集群的 {constants.CERTS_SECRET} Secret 下载控制平面节点共享的证书，并用 --certificate-key 解密。"
             "未提供证书密钥时跳过，共享证书需要事先手动复制。",
        run=run_download_certs_phase,
        inherit_flags=get_control_plane_prepare_phase_flags("download-certs"),
        run_if=is_control_plane,
    )


def new_certs_sub_phase() -> Phase:
    return Phase(
        name="certs",
        short="为新的控制平面组件生成证书",
        run=run_certs_phase,
        inherit_flags=get_control_plane_prepare_phase_flags("certs"),
        run_if=is_control_plane,
    )


def new_kubeconfig_sub_phase() -> Phase:
    return Phase(
        name="kubeconfig",
        short="为新的控制平面组件生成 kubeconfig 文件",
        run=run_kubeconfig_phase,
        inherit_flags=get_control_plane_prepare_phase_flags("kubeconfig"),
        run_if=is_control_plane,
    )


def new_control_plane_sub_phase() -> Phase:
    return Phase(
        name="control-plane",
        short="生成新控制平面组件的静态 Pod 清单",
        run=run_control_plane_phase,
        inherit_flags=get_control_plane_prepare_phase_flags("control-plane"),
        run_if=is_control_plane,
    )


def run_download_certs_phase(c: object) -> None:
    data = get_join_data(c, "control-plane-prepare")
    certificate_key = data.cfg().control_plane.certificate_key

    if not certificate_key:
        click.echo("[download-certs] 未提供证书密钥，跳过共享证书的下载")
        return

    click.echo(f'[download-certs] 从 "{constants.CERTS_SECRET}" Secret 下载证书')
    external_etcd = data.init_cfg().cluster.etcd.external is not None
    written = copycerts.download_certs(data.bootstrap_client(), data.certificate_dir(), certificate_key, external_etcd)
    click.echo(f"[download-certs] 已将 {len(written)} 个文件写入 {data.certificate_dir()!r}")


def run_certs_phase(c: object) -> None:
    """用下载或手动复制的 CA 为本节点签发组件证书。"""
    data = get_join_data(c, "control-plane-prepare")
    init_cfg = data.init_cfg()
    external_etcd = init_cfg.cluster.etcd.external is not None

    click.echo(f"[certs] 使用证书目录 {data.certificate_dir()!r}")
    cas = {}
    for spec in default_cert_list():
        if not spec.ca_name:
            cas[spec.name] = spec
            continue
        if external_etcd and spec.ca_name == ETCD_CA_NAME:
            continue
        ensure_signed_cert(init_cfg, data.certificate_dir(), spec, cas[spec.ca_name])


def run_kubeconfig_phase(c: object) -> None:
    data = get_join_data(c, "control-plane-prepare")
    init_cfg = data.init_cfg()

    server = kubeconfigutil.control_plane_endpoint(
        init_cfg.local_api_endpoint.advertise_address,
        init_cfg.local_api_endpoint.bind_port,
        init_cfg.cluster.control_plane_endpoint,
    )
    click.echo("[kubeconfig] 生成 kubeconfig 文件")
    for file_name in CONTROL_PLANE_KUBECONFIG_FILES:
        kubeconfigutil.create_kubeconfig_file(
            file_name,
            data.kubeconfig_dir(),
            data.certificate_dir(),
            server,
            init_cfg.cluster.cluster_name,
            init_cfg.node_registration.name,
        )


def run_control_plane_phase(c: object) -> None:
    data = get_join_data(c, "control-plane-prepare")

    click.echo(f'[control-plane] 使用清单目录 "{data.manifest_dir()}"')
    pods = staticpod.build_control_plane_pods(data.init_cfg())
    for component, (name, _) in CONTROL_PLANE_PHASE_PROPERTIES.items():
        click.echo(f"[control-plane] 生成 {name} 静态 Pod 清单")
        staticpod.write_static_pod_to_disk(component, data.manifest_dir(), pods[component])
