"""reset 阶段运行数据接口。"""

from typing import Protocol, TextIO, runtime_checkable

from kubeboot.utils.apiclient import ClusterClient
from kubeboot.utils.config import InitConfiguration


@runtime_checkable
class ResetData(Protocol):
    """reset 阶段需要的运行数据。

    cfg 和 client 在节点上没有可用的 kubeconfig 或集群中没有配置时为 None。
    """

    def force_reset(self) -> bool: ...

    def input_reader(self) -> TextIO: ...

    def ignore_preflight_errors(self) -> set[str]: ...

    def cfg(self) -> InitConfiguration | None: ...

    def client(self) -> ClusterClient | None: ...

    def add_dirs_to_clean(self, *dirs: str) -> None: ...

    def dirs_to_clean(self) -> list[str]: ...

    def cert_dir(self) -> str: ...

    def cri_socket_path(self) -> str: ...


def get_reset_data(c: object, phase: str) -> ResetData:
    """检查运行数据是否满足 reset 阶段的需要。

    Raises:
        TypeError: 运行数据类型不匹配
    """
    if not isinstance(c, ResetData):
        raise TypeError(f"{phase} phase invoked with an invalid data struct")
    return c
