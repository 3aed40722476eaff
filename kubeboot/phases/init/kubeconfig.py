"""init kubeconfig 阶段。"""

import shutil
from pathlib import Path
from typing import Callable

import click

from kubeboot import constants, options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import kubeconfig as kubeconfigutil
from kubeboot.workflow import Phase

KUBECONFIG_FILE_PHASES = [
    (
        "admin",
        constants.ADMIN_KUBECONFIG,
        "为管理员以及 kubeboot 自身生成 kubeconfig 文件",
    ),
    (
        "kubelet",
        constants.KUBELET_KUBECONFIG,
        "为 kubelet 生成 kubeconfig 文件，仅用于集群引导",
    ),
    (
        "controller-manager",
        constants.CONTROLLER_MANAGER_KUBECONFIG,
        "为 controller manager 生成 kubeconfig 文件",
    ),
    (
        "scheduler",
        constants.SCHEDULER_KUBECONFIG,
        "为 scheduler 生成 kubeconfig 文件",
    ),
]


def get_kubeconfig_phase_flags(name: str) -> list[str]:
    flags = [
        options.APISERVER_ADVERTISE_ADDRESS,
        options.CONTROL_PLANE_ENDPOINT,
        options.APISERVER_BIND_PORT,
        options.CERTIFICATES_DIR,
        options.CFG_PATH,
        options.KUBECONFIG_DIR,
        options.KUBERNETES_VERSION,
    ]
    if name in ("all", "kubelet"):
        flags.append(options.NODE_NAME)
    return flags


def new_kubeconfig_phase() -> Phase:
    sub_phases = [
        Phase(
            name="all",
            short="生成全部 kubeconfig 文件",
            inherit_flags=get_kubeconfig_phase_flags("all"),
            run_all_siblings=True,
        )
    ]
    for name, file_name, short in KUBECONFIG_FILE_PHASES:
        sub_phases.append(Phase(
            name=name,
            short=short,
            long=f"{short}，并保存到 {file_name} 文件。",
            run=run_kubeconfig(file_name),
            inherit_flags=get_kubeconfig_phase_flags(name),
        ))

    return Phase(
        name="kubeconfig",
        short="生成建立控制平面和管理员 kubeconfig 文件",
        long="此命令不应单独运行，请查看子命令列表",
        phases=sub_phases,
        run=run_kubeconfigs,
    )


def run_kubeconfigs(c: object) -> None:
    data = get_init_data(c, "kubeconfig")
    click.echo(f"[kubeconfig] 使用 kubeconfig 目录 {data.kubeconfig_dir()!r}")


def run_kubeconfig(file_name: str) -> Callable[[object], None]:
    def run(c: object) -> None:
        data = get_init_data(c, "kubeconfig")
        cfg = data.cfg()

        if data.external_ca():
            # 外部 CA 模式下 kubeconfig 文件由用户提供
            click.echo(f"[kubeconfig] 外部 CA 模式: 使用用户提供的 {file_name}")
            if data.dry_run():
                src = constants.kubernetes_dir() / file_name
                dst = Path(data.kubeconfig_dir()) / file_name
                shutil.copy2(src, dst)
            return

        server = kubeconfigutil.control_plane_endpoint(
            cfg.local_api_endpoint.advertise_address,
            cfg.local_api_endpoint.bind_port,
            cfg.cluster.control_plane_endpoint,
        )
        kubeconfigutil.create_kubeconfig_file(
            file_name,
            data.kubeconfig_dir(),
            data.certificate_write_dir(),
            server,
            cfg.cluster.cluster_name,
            cfg.node_registration.name,
        )

    return run
