"""预检模块。

在修改节点之前检查主机环境。每项检查返回警告和错误，
被忽略的错误降级为警告，其余错误汇总为 PreflightError。
"""

import logging
import os
import shutil
import socket
from pathlib import Path
from typing import Iterable, Protocol

import click

from kubeboot import constants
from kubeboot.utils.config import InitConfiguration, JoinConfiguration, IGNORE_ALL_PREFLIGHT_ERRORS
from kubeboot.utils.copycerts import cert_files
from kubeboot.utils.errors import PreflightError
from kubeboot.utils.runtime import ContainerRuntimeError, new_container_runtime

logger = logging.getLogger(__name__)


class Checker(Protocol):
    """预检项接口。"""

    def name(self) -> str: ...

    def check(self) -> tuple[list[str], list[str]]: ...


class IsPrivilegedUserCheck:
    """检查是否以 root 运行。"""

    def name(self) -> str:
        return "IsPrivilegedUser"

    def check(self) -> tuple[list[str], list[str]]:
        if os.geteuid() != 0:
            return [], ["user is not running as root"]
        return [], []


class PortOpenCheck:
    """检查端口是否空闲。"""

    def __init__(self, port: int, label: str = "") -> None:
        self.port = port
        self.label = label

    def name(self) -> str:
        return self.label or f"Port-{self.port}"

    def check(self) -> tuple[list[str], list[str]]:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind(("", self.port))
            except OSError:
                return [], [f"Port {self.port} is in use"]
        return [], []


class FileAvailableCheck:
    """检查文件不存在。"""

    def __init__(self, path: str | Path, label: str = "") -> None:
        self.path = Path(path)
        self.label = label

    def name(self) -> str:
        return self.label or f"FileAvailable-{str(self.path).replace('/', '-')}"

    def check(self) -> tuple[list[str], list[str]]:
        if self.path.exists():
            return [], [f"{self.path} already exists"]
        return [], []


class FileExistingCheck:
    """检查文件存在。"""

    def __init__(self, path: str | Path, label: str = "") -> None:
        self.path = Path(path)
        self.label = label

    def name(self) -> str:
        return self.label or f"FileExisting-{str(self.path).replace('/', '-')}"

    def check(self) -> tuple[list[str], list[str]]:
        if not self.path.exists():
            return [], [f"{self.path} doesn't exist"]
        return [], []


class DirAvailableCheck:
    """检查目录不存在或为空。"""

    def __init__(self, path: str | Path, label: str = "") -> None:
        self.path = Path(path)
        self.label = label

    def name(self) -> str:
        return self.label or f"DirAvailable-{str(self.path).replace('/', '-')}"

    def check(self) -> tuple[list[str], list[str]]:
        if self.path.is_dir() and any(self.path.iterdir()):
            return [], [f"{self.path} is not empty"]
        return [], []


class InPathCheck:
    """检查可执行文件在 PATH 中。"""

    def __init__(self, executable: str, mandatory: bool = True) -> None:
        self.executable = executable
        self.mandatory = mandatory

    def name(self) -> str:
        return f"FileExisting-{self.executable}"

    def check(self) -> tuple[list[str], list[str]]:
        if shutil.which(self.executable) is not None:
            return [], []
        message = f"{self.executable} not found in system path"
        if self.mandatory:
            return [], [message]
        return [message], []


class NumCPUCheck:
    """检查 CPU 数量。"""

    def __init__(self, num_cpu: int = 2) -> None:
        self.num_cpu = num_cpu

    def name(self) -> str:
        return "NumCPU"

    def check(self) -> tuple[list[str], list[str]]:
        count = os.cpu_count() or 1
        if count < self.num_cpu:
            return [], [f"the number of available CPUs {count} is less than the required {self.num_cpu}"]
        return [], []


class SwapCheck:
    """检查是否关闭了 swap。"""

    def __init__(self, swaps_file: str | Path = "/proc/swaps") -> None:
        self.swaps_file = Path(swaps_file)

    def name(self) -> str:
        return "Swap"

    def check(self) -> tuple[list[str], list[str]]:
        try:
            lines = self.swaps_file.read_text().splitlines()
        except OSError as e:
            return [], [f"error reading {self.swaps_file}: {e}"]
        if len(lines) > 1:
            return [], ["running with swap on is not supported. Please disable swap"]
        return [], []


class HostnameCheck:
    """检查节点名称可以解析。"""

    def __init__(self, node_name: str) -> None:
        self.node_name = node_name

    def name(self) -> str:
        return "Hostname"

    def check(self) -> tuple[list[str], list[str]]:
        try:
            socket.getaddrinfo(self.node_name, None)
        except OSError as e:
            return [f"hostname {self.node_name!r} could not be reached: {e}"], []
        return [], []


class ContainerRuntimeCheck:
    """检查容器运行时在运行。"""

    def __init__(self, cri_socket: str) -> None:
        self.cri_socket = cri_socket

    def name(self) -> str:
        return "CRI"

    def check(self) -> tuple[list[str], list[str]]:
        try:
            new_container_runtime(self.cri_socket).is_running()
        except (ContainerRuntimeError, OSError) as e:
            return [], [str(e)]
        return [], []


class ImagePullCheck:
    """拉取控制平面所需的镜像。"""

    def __init__(self, cri_socket: str, images: list[str]) -> None:
        self.cri_socket = cri_socket
        self.images = images

    def name(self) -> str:
        return "ImagePull"

    def check(self) -> tuple[list[str], list[str]]:
        runtime = new_container_runtime(self.cri_socket)
        errors = []
        for image in self.images:
            try:
                if runtime.image_exists(image):
                    logger.debug(f"Image exists: {image}")
                    continue
                logger.debug(f"Pulling {image}")
                runtime.pull_image_with_retry(image)
            except (ContainerRuntimeError, OSError) as e:
                errors.append(f"failed to pull image {image}: {e}")
        return [], errors


def run_checks(checks: Iterable[Checker], ignore_preflight_errors: set[str]) -> None:
    """执行预检项。

    Args:
        checks: 预检项
        ignore_preflight_errors: 降级为警告的检查名称（小写），all 表示全部

    Raises:
        PreflightError: 存在未被忽略的错误
    """
    error_lines = []
    for checker in checks:
        name = checker.name()
        warnings, errors = checker.check()
        ignored = IGNORE_ALL_PREFLIGHT_ERRORS in ignore_preflight_errors or name.lower() in ignore_preflight_errors
        if ignored:
            warnings = warnings + errors
            errors = []

        for w in warnings:
            click.echo(f"\t[WARNING {name}]: {w}", err=True)
        for e in errors:
            error_lines.append(f"\t[ERROR {name}]: {e}")

    if error_lines:
        raise PreflightError(
            "[preflight] Some fatal errors occurred:\n"
            + "\n".join(error_lines)
            + "\n[preflight] If you know what you are doing, you can make a check non-fatal with "
            "`--ignore-preflight-errors=...`"
        )


def run_root_check_only(ignore_preflight_errors: set[str]) -> None:
    run_checks([IsPrivilegedUserCheck()], ignore_preflight_errors)


def _manifest_checks(manifest_dir: Path) -> list[Checker]:
    checks: list[Checker] = [
        FileAvailableCheck(manifest_dir / f"{component}.yaml")
        for component in constants.CONTROL_PLANE_COMPONENTS
    ]
    checks.append(FileAvailableCheck(manifest_dir / f"{constants.ETCD}.yaml"))
    return checks


def run_init_node_checks(
    cfg: InitConfiguration,
    ignore_preflight_errors: set[str],
    is_secondary_control_plane: bool = False,
    manifest_dir: str | Path | None = None,
) -> None:
    """执行控制平面节点的预检。

    Raises:
        PreflightError: 存在未被忽略的错误
    """
    manifest_dir = Path(manifest_dir) if manifest_dir is not None else constants.static_pod_dir()

    checks: list[Checker] = [IsPrivilegedUserCheck(), NumCPUCheck()]
    if not is_secondary_control_plane:
        checks.append(PortOpenCheck(cfg.local_api_endpoint.bind_port))
    checks.extend([
        PortOpenCheck(constants.KUBE_CONTROLLER_MANAGER_PORT),
        PortOpenCheck(constants.KUBE_SCHEDULER_PORT),
    ])
    checks.extend(_manifest_checks(manifest_dir))
    checks.extend(_node_checks(cfg.node_registration.name, cfg.node_registration.cri_socket))

    if cfg.cluster.etcd.local is not None:
        checks.append(PortOpenCheck(constants.ETCD_LISTEN_CLIENT_PORT))
        checks.append(DirAvailableCheck(cfg.cluster.etcd.local.data_dir))

    run_checks(checks, ignore_preflight_errors)


def _node_checks(node_name: str, cri_socket: str) -> list[Checker]:
    return [
        ContainerRuntimeCheck(cri_socket),
        SwapCheck(),
        HostnameCheck(node_name),
        InPathCheck("kubelet"),
        InPathCheck("crictl", mandatory=False),
        PortOpenCheck(constants.KUBELET_PORT),
        DirAvailableCheck(constants.static_pod_dir()),
        FileAvailableCheck(constants.kubelet_kubeconfig_path()),
        FileAvailableCheck(constants.kubelet_bootstrap_kubeconfig_path()),
    ]


def run_join_node_checks(cfg: JoinConfiguration, ignore_preflight_errors: set[str]) -> None:
    """执行工作节点加入前的预检。

    Raises:
        PreflightError: 存在未被忽略的错误
    """
    checks: list[Checker] = [IsPrivilegedUserCheck()]
    checks.append(FileAvailableCheck(cfg.ca_cert_path))
    checks.extend(_node_checks(cfg.node_registration.name, cfg.node_registration.cri_socket))
    run_checks(checks, ignore_preflight_errors)


def control_plane_images(cfg: InitConfiguration) -> list[str]:
    """控制平面需要的镜像列表。"""
    cluster = cfg.cluster
    repo = cluster.image_repository
    images = [f"{repo}/{c}:{cluster.kubernetes_version}" for c in constants.CONTROL_PLANE_COMPONENTS]
    images.append(f"{repo}/pause:{constants.PAUSE_VERSION}")
    if cluster.etcd.local is not None:
        images.append(f"{repo}/etcd:{constants.ETCD_VERSION}")
    return images


def run_pull_images_check(cfg: InitConfiguration, ignore_preflight_errors: set[str]) -> None:
    run_checks(
        [ImagePullCheck(cfg.node_registration.cri_socket, control_plane_images(cfg))],
        ignore_preflight_errors,
    )


def run_shared_certs_checks(
    cert_dir: str | Path,
    external_etcd: bool,
    ignore_preflight_errors: set[str],
) -> None:
    """检查以控制平面身份加入且未提供证书密钥时，手动复制的共享证书是否齐全。

    Raises:
        PreflightError: 存在未被忽略的错误
    """
    checks: list[Checker] = [
        FileExistingCheck(Path(cert_dir) / file_name) for file_name in cert_files(external_etcd)
    ]
    run_checks(checks, ignore_preflight_errors)
