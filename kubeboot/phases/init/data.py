"""init 阶段运行数据接口。"""

from typing import Callable, Protocol, runtime_checkable

from kubeboot.utils.apiclient import ClusterClient
from kubeboot.utils.config import InitConfiguration


@runtime_checkable
class InitData(Protocol):
    """init 阶段需要的运行数据。"""

    def upload_certs(self) -> bool: ...

    def certificate_key(self) -> str: ...

    def set_certificate_key(self, key: str) -> None: ...

    def skip_certificate_key_print(self) -> bool: ...

    def cfg(self) -> InitConfiguration: ...

    def dry_run(self) -> bool: ...

    def skip_token_print(self) -> bool: ...

    def ignore_preflight_errors(self) -> set[str]: ...

    def certificate_write_dir(self) -> str: ...

    def certificate_dir(self) -> str: ...

    def kubeconfig_dir(self) -> str: ...

    def kubeconfig_path(self) -> str: ...

    def manifest_dir(self) -> str: ...

    def kubelet_dir(self) -> str: ...

    def external_ca(self) -> bool: ...

    def output_writer(self) -> Callable[[str], None]: ...

    def client(self) -> ClusterClient: ...

    def tokens(self) -> list[str]: ...


def get_init_data(c: object, phase: str) -> InitData:
    """检查运行数据是否满足 init 阶段的需要。

    Raises:
        TypeError: 运行数据类型不匹配
    """
    if not isinstance(c, InitData):
        raise TypeError(f"{phase} phase invoked with an invalid data struct")
    return c
