"""init 控制平面阶段。

为 kube-apiserver、kube-controller-manager、kube-scheduler 生成静态 Pod 清单。
"""

from typing import Callable

import click

from kubeboot import constants, options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import staticpod
from kubeboot.workflow import Phase

CONTROL_PLANE_EXAMPLE = """\b
# 生成全部静态 Pod 清单
kubeboot init phase control-plane all --config config.yaml
"""

CONTROL_PLANE_PHASE_PROPERTIES = {
    constants.KUBE_APISERVER: ("apiserver", "生成 API Server 静态 Pod 清单"),
    constants.KUBE_CONTROLLER_MANAGER: ("controller-manager", "生成 controller manager 静态 Pod 清单"),
    constants.KUBE_SCHEDULER: ("scheduler", "生成 scheduler 静态 Pod 清单"),
}


def get_control_plane_phase_flags(name: str) -> list[str]:
    flags = [options.CFG_PATH, options.CERTIFICATES_DIR, options.KUBERNETES_VERSION, options.IMAGE_REPOSITORY]
    if name in ("all", constants.KUBE_APISERVER):
        flags.extend([
            options.APISERVER_ADVERTISE_ADDRESS,
            options.CONTROL_PLANE_ENDPOINT,
            options.APISERVER_BIND_PORT,
            options.NETWORKING_SERVICE_SUBNET,
        ])
    if name in ("all", constants.KUBE_CONTROLLER_MANAGER):
        flags.append(options.NETWORKING_POD_SUBNET)
    return flags


def new_control_plane_phase() -> Phase:
    sub_phases = [
        Phase(
            name="all",
            short="生成全部静态 Pod 清单",
            inherit_flags=get_control_plane_phase_flags("all"),
            example=CONTROL_PLANE_EXAMPLE,
            run_all_siblings=True,
        )
    ]
    for component, (name, short) in CONTROL_PLANE_PHASE_PROPERTIES.items():
        sub_phases.append(Phase(
            name=name,
            short=short,
            run=run_control_plane_sub_phase(component),
            inherit_flags=get_control_plane_phase_flags(component),
        ))

    return Phase(
        name="control-plane",
        short="生成建立控制平面所需的全部静态 Pod 清单",
        long="此命令不应单独运行，请查看子命令列表",
        phases=sub_phases,
        run=run_control_plane_phase,
    )


def run_control_plane_phase(c: object) -> None:
    data = get_init_data(c, "control-plane")
    click.echo(f"[control-plane] 使用清单目录 {data.manifest_dir()!r}")


def run_control_plane_sub_phase(component: str) -> Callable[[object], None]:
    def run(c: object) -> None:
        data = get_init_data(c, "control-plane")

        pods = staticpod.build_control_plane_pods(data.cfg())
        click.echo(f'[control-plane] 为 "{component}" 生成静态 Pod 清单')
        staticpod.write_static_pod_to_disk(component, data.manifest_dir(), pods[component])

    return run
