"""join 阶段运行数据接口。"""

from typing import Any, Callable, Protocol, runtime_checkable

from kubeboot.utils.apiclient import ClusterClient
from kubeboot.utils.config import InitConfiguration, JoinConfiguration


@runtime_checkable
class JoinData(Protocol):
    """join 阶段需要的运行数据。"""

    def cfg(self) -> JoinConfiguration: ...

    def tls_bootstrap_cfg(self) -> dict[str, Any]: ...

    def init_cfg(self) -> InitConfiguration: ...

    def bootstrap_client(self) -> ClusterClient: ...

    def kubelet_client(self) -> ClusterClient: ...

    def client(self) -> ClusterClient: ...

    def ignore_preflight_errors(self) -> set[str]: ...

    def output_writer(self) -> Callable[[str], None]: ...

    def certificate_dir(self) -> str: ...

    def kubeconfig_dir(self) -> str: ...

    def manifest_dir(self) -> str: ...

    def kubelet_dir(self) -> str: ...


def get_join_data(c: object, phase: str) -> JoinData:
    """检查运行数据是否满足 join 阶段的需要。

    Raises:
        TypeError: 运行数据类型不匹配
    """
    if not isinstance(c, JoinData):
        raise TypeError(f"{phase} phase invoked with an invalid data struct")
    return c


def is_control_plane(c: object) -> bool:
    """节点是否以控制平面身份加入，用作阶段的运行条件。"""
    return get_join_data(c, "control-plane-join").cfg().control_plane is not None
