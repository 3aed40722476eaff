"""init 系统模块。

通过 systemctl 控制节点上的服务。
"""

import logging
import shutil
import subprocess
from typing import Callable

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]


class InitSystemError(Exception):
    """init 系统不可用或服务操作失败。"""


class SystemdInitSystem:
    """systemd 服务管理。"""

    def __init__(self, run: CommandRunner = subprocess.run) -> None:
        self._run = run

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess:
        logger.debug(f"Running systemctl {' '.join(args)}")
        return self._run(["systemctl", *args], capture_output=True, text=True)

    def _service_action(self, action: str, service: str) -> None:
        # 先 daemon-reload，使最新的 unit 文件生效
        self._systemctl("daemon-reload")
        result = self._systemctl(action, service)
        if result.returncode != 0:
            raise InitSystemError(f"failed to {action} service {service}: {result.stderr.strip()}")

    def enable_command(self, service: str) -> str:
        return f"systemctl enable {service}.service"

    def service_start(self, service: str) -> None:
        self._service_action("start", service)

    def service_stop(self, service: str) -> None:
        self._service_action("stop", service)

    def service_restart(self, service: str) -> None:
        self._service_action("restart", service)

    def service_exists(self, service: str) -> bool:
        result = self._systemctl("status", service)
        return "could not be found" not in (result.stderr + result.stdout)

    def service_is_enabled(self, service: str) -> bool:
        return self._systemctl("is-enabled", service).returncode == 0

    def service_is_active(self, service: str) -> bool:
        result = self._systemctl("is-active", service)
        return result.stdout.strip() == "active"


def get_init_system(run: CommandRunner = subprocess.run) -> SystemdInitSystem:
    """获取节点的 init 系统。

    Raises:
        InitSystemError: 没有可用的 init 系统
    """
    if shutil.which("systemctl") is None:
        raise InitSystemError("no supported init system detected")
    return SystemdInitSystem(run)
