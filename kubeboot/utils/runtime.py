"""容器运行时模块。

通过 docker 或 crictl 命令行与容器运行时交互，并探测节点上的 CRI 套接字。
"""

import logging
import os
import subprocess
from typing import Callable, Sequence

from kubeboot import constants

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]

# 探测顺序即优先级
KNOWN_CRI_SOCKETS = {
    constants.DOCKER_SOCKET: constants.DEFAULT_DOCKER_CRI_SOCKET,
    constants.CONTAINERD_SOCKET: constants.CONTAINERD_SOCKET,
    constants.CRIO_SOCKET: constants.CRIO_SOCKET,
}


class ContainerRuntimeError(Exception):
    """容器运行时操作失败。"""


def _is_socket(path: str) -> bool:
    return os.path.exists(path) and not os.path.isfile(path)


def detect_cri_socket(exists: Callable[[str], bool] = _is_socket) -> str:
    """探测节点上的 CRI 套接字。

    同时存在多个运行时时报错；一个都没有时使用 docker 默认套接字。

    Args:
        exists: 判断套接字是否存在的函数

    Returns:
        CRI 套接字路径

    Raises:
        ContainerRuntimeError: 探测到多个运行时
    """
    found = [cri for sock, cri in KNOWN_CRI_SOCKETS.items() if exists(sock)]

    # docker 通过 containerd 运行时，两者同时存在不算冲突
    if constants.DEFAULT_DOCKER_CRI_SOCKET in found and constants.CONTAINERD_SOCKET in found:
        found.remove(constants.CONTAINERD_SOCKET)

    if len(found) > 1:
        raise ContainerRuntimeError(
            f"found multiple CRI sockets, please use --cri-socket to select one: {', '.join(found)}"
        )
    if not found:
        return constants.DEFAULT_DOCKER_CRI_SOCKET
    return found[0]


class ContainerRuntime:
    """容器运行时基类。"""

    def __init__(self, run: CommandRunner = subprocess.run) -> None:
        self._run = run

    def _exec(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        logger.debug(f"Running {' '.join(args)}")
        return self._run(list(args), capture_output=True, text=True)

    def _check(self, args: Sequence[str], action: str) -> str:
        result = self._exec(args)
        if result.returncode != 0:
            raise ContainerRuntimeError(f"{action} failed: {(result.stderr or result.stdout).strip()}")
        return result.stdout

    def is_docker(self) -> bool:
        return False

    def is_running(self) -> None:
        raise NotImplementedError

    def list_kube_containers(self) -> list[str]:
        raise NotImplementedError

    def remove_containers(self, containers: Sequence[str]) -> None:
        raise NotImplementedError

    def pull_image(self, image: str) -> None:
        raise NotImplementedError

    def image_exists(self, image: str) -> bool:
        raise NotImplementedError

    def pull_image_with_retry(self, image: str, retries: int = constants.PULL_IMAGE_RETRY) -> None:
        """拉取镜像，失败时重试。

        Raises:
            ContainerRuntimeError: 重试耗尽后仍失败
        """
        last_error: Exception | None = None
        for attempt in range(retries):
            try:
                self.pull_image(image)
                return
            except ContainerRuntimeError as e:
                last_error = e
                logger.debug(f"Pulling {image} failed (attempt {attempt + 1}/{retries}): {e}")
        raise ContainerRuntimeError(f"failed to pull image {image}: {last_error}")


class CRIRuntime(ContainerRuntime):
    """通过 crictl 访问的 CRI 运行时。"""

    def __init__(self, cri_socket: str, run: CommandRunner = subprocess.run) -> None:
        super().__init__(run)
        self.cri_socket = cri_socket

    def _crictl(self, *args: str) -> list[str]:
        return ["crictl", "-r", self.cri_socket, *args]

    def is_running(self) -> None:
        self._check(self._crictl("info"), "container runtime is not running")

    def list_kube_containers(self) -> list[str]:
        output = self._check(self._crictl("pods", "-q"), "listing pods")
        return [line for line in output.split() if line]

    def remove_containers(self, containers: Sequence[str]) -> None:
        errors = []
        for container in containers:
            for action in ("stopp", "rmp"):
                result = self._exec(self._crictl(action, container))
                if result.returncode != 0:
                    errors.append(f"failed to {action} pod {container}: {result.stderr.strip()}")
                    break
        if errors:
            raise ContainerRuntimeError("; ".join(errors))

    def pull_image(self, image: str) -> None:
        self._check(self._crictl("pull", image), f"pulling image {image}")

    def image_exists(self, image: str) -> bool:
        return self._exec(self._crictl("inspecti", image)).returncode == 0


class DockerRuntime(ContainerRuntime):
    """docker 运行时。"""

    def is_docker(self) -> bool:
        return True

    def is_running(self) -> None:
        self._check(["docker", "info"], "container runtime is not running")

    def list_kube_containers(self) -> list[str]:
        output = self._check(["docker", "ps", "-a", "--filter", "name=k8s_", "-q"], "listing containers")
        return [line for line in output.split() if line]

    def remove_containers(self, containers: Sequence[str]) -> None:
        errors = []
        for container in containers:
            result = self._exec(["docker", "rm", "--force", "--volumes", container])
            if result.returncode != 0:
                errors.append(f"failed to remove container {container}: {result.stderr.strip()}")
        if errors:
            raise ContainerRuntimeError("; ".join(errors))

    def pull_image(self, image: str) -> None:
        self._check(["docker", "pull", image], f"pulling image {image}")

    def image_exists(self, image: str) -> bool:
        return self._exec(["docker", "inspect", image]).returncode == 0


def new_container_runtime(cri_socket: str, run: CommandRunner = subprocess.run) -> ContainerRuntime:
    """根据 CRI 套接字创建运行时。"""
    if cri_socket == constants.DEFAULT_DOCKER_CRI_SOCKET:
        return DockerRuntime(run)
    return CRIRuntime(cri_socket, run)
