"""Pytest 配置和共享 fixtures。"""

import copy
from pathlib import Path
from typing import Any

import pytest

from kubeboot import constants
from kubeboot.utils import apiclient
from kubeboot.utils.config import (
    APIEndpoint,
    InitConfiguration,
    NodeRegistrationOptions,
    set_init_dynamic_defaults,
)


class FakeClusterClient:
    """内存中的集群客户端。

    对象按 "<集合路径>/<名称>" 保存，create 遇到同名对象时抛出 AlreadyExistsError。
    """

    def __init__(self, objects: dict[str, dict[str, Any]] | None = None, healthy: bool = True):
        self.objects: dict[str, dict[str, Any]] = dict(objects or {})
        self.requests: list[tuple[str, str]] = []
        self.is_healthy = healthy

    def get(self, path, params=None):
        self.requests.append(("GET", path))
        if path in self.objects:
            return copy.deepcopy(self.objects[path])
        # 集合查询返回该路径下的所有对象
        prefix = path.rstrip("/") + "/"
        items = [copy.deepcopy(obj) for key, obj in self.objects.items() if key.startswith(prefix)]
        if params is not None:
            return {"items": items}
        return None

    def create(self, path, obj):
        self.requests.append(("POST", path))
        key = f"{path}/{obj['metadata']['name']}"
        if key in self.objects:
            raise apiclient.AlreadyExistsError(409, f"{key} already exists")
        self.objects[key] = copy.deepcopy(obj)
        return obj

    def update(self, path, obj):
        self.requests.append(("PUT", path))
        self.objects[path] = copy.deepcopy(obj)
        return obj

    def delete(self, path):
        self.requests.append(("DELETE", path))
        self.objects.pop(path, None)

    def healthy(self):
        return self.is_healthy


@pytest.fixture
def kube_dirs(tmp_path, monkeypatch):
    """把 Kubernetes、kubelet 和 etcd 目录重定向到临时目录。"""
    dirs = {
        "kubernetes": tmp_path / "etc-kubernetes",
        "kubelet": tmp_path / "var-lib-kubelet",
        "etcd": tmp_path / "var-lib-etcd",
    }
    for d in dirs.values():
        d.mkdir()
    monkeypatch.setenv(constants.KUBERNETES_DIR_ENV, str(dirs["kubernetes"]))
    monkeypatch.setenv(constants.KUBELET_RUN_DIR_ENV, str(dirs["kubelet"]))
    monkeypatch.setenv(constants.ETCD_DATA_DIR_ENV, str(dirs["etcd"]))
    return dirs


@pytest.fixture
def fake_client():
    """空的内存集群客户端。"""
    return FakeClusterClient()


@pytest.fixture
def init_cfg(kube_dirs):
    """补全了默认值的 init 配置，证书目录位于临时目录中。"""
    cfg = InitConfiguration(
        node_registration=NodeRegistrationOptions(
            name="node-1",
            cri_socket=constants.CONTAINERD_SOCKET,
        ),
        local_api_endpoint=APIEndpoint(advertise_address="10.0.0.10"),
    )
    cfg.bootstrap_tokens[0].token = "abcdef.0123456789abcdef"
    cfg.cluster.certificates_dir = str(Path(kube_dirs["kubernetes"]) / constants.PKI_SUBDIR)
    return set_init_dynamic_defaults(cfg)
