"""测试 reset 各阶段。"""

import io
import logging
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from kubeboot import constants
from kubeboot.phases.reset import cleanupnode, removeetcdmember, updateclusterstatus
from kubeboot.phases.reset import preflight as preflightphase
from kubeboot.phases.reset.data import get_reset_data
from kubeboot.utils import staticpod
from kubeboot.utils.etcd import EtcdError, Member
from kubeboot.utils.initsystem import InitSystemError
from kubeboot.utils.runtime import ContainerRuntimeError


class FakeResetData:
    """reset 阶段的内存运行数据。"""

    def __init__(self, cfg=None, client=None, force=True, answer=""):
        self._cfg = cfg
        self._client = client
        self.force = force
        self.reader = io.StringIO(answer)
        self.dirs: list[str] = []
        self.certs = ""

    def force_reset(self):
        return self.force

    def input_reader(self):
        return self.reader

    def ignore_preflight_errors(self):
        return {"all"}

    def cfg(self):
        return self._cfg

    def client(self):
        return self._client

    def add_dirs_to_clean(self, *dirs):
        self.dirs.extend(dirs)

    def dirs_to_clean(self):
        return self.dirs

    def cert_dir(self):
        return self.certs

    def cri_socket_path(self):
        return constants.CONTAINERD_SOCKET


def write_etcd_manifest(kube_dirs, data_dir):
    pod = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "etcd"},
        "spec": {
            "containers": [{"name": "etcd", "command": ["etcd"]}],
            "volumes": [{"name": staticpod.ETCD_DATA_VOLUME, "hostPath": {"path": data_dir}}],
        },
    }
    staticpod.write_static_pod_to_disk(constants.ETCD, constants.static_pod_dir(), pod)


def test_get_reset_data_rejects_other_types():
    with pytest.raises(TypeError, match="cleanup-node phase invoked with an invalid data struct"):
        get_reset_data(object(), "cleanup-node")


class TestResetPreflight:
    """测试 reset 预检阶段。"""

    def test_aborted_without_confirmation(self):
        data = FakeResetData(force=False, answer="n\n")

        with pytest.raises(preflightphase.ResetAbortedError, match="aborted reset operation"):
            preflightphase.run_preflight(data)

    def test_empty_answer_aborts(self):
        with pytest.raises(preflightphase.ResetAbortedError):
            preflightphase.run_preflight(FakeResetData(force=False, answer=""))

    def test_confirmed(self):
        data = FakeResetData(force=False, answer="Y\n")

        with patch.object(preflightphase.preflight, "run_root_check_only") as root_check:
            preflightphase.run_preflight(data)

        root_check.assert_called_once_with({"all"})

    def test_force_skips_prompt(self, capsys):
        with patch.object(preflightphase.preflight, "run_root_check_only"):
            preflightphase.run_preflight(FakeResetData(force=True))

        assert "[y/N]" not in capsys.readouterr().out


class TestRemoveEtcdMember:
    """测试 remove-etcd-member 阶段。"""

    def test_data_dir_from_config(self, init_cfg, tmp_path):
        assert removeetcdmember.get_etcd_data_dir(tmp_path / "etcd.yaml", init_cfg) == init_cfg.cluster.etcd.local.data_dir

    def test_data_dir_from_manifest(self, kube_dirs):
        write_etcd_manifest(kube_dirs, "/data/etcd")
        manifest = staticpod.manifest_path(constants.ETCD, constants.static_pod_dir())

        assert removeetcdmember.get_etcd_data_dir(manifest, None) == "/data/etcd"

    def test_data_dir_without_manifest(self, tmp_path):
        with pytest.raises(staticpod.StaticPodError):
            removeetcdmember.get_etcd_data_dir(tmp_path / "etcd.yaml", None)

    def test_external_etcd_notice(self, kube_dirs, capsys):
        data = FakeResetData()

        removeetcdmember.run_remove_etcd_member_phase(data)

        assert data.dirs == []
        assert "外部 etcd" in capsys.readouterr().out

    def test_without_cluster_only_cleans_data_dir(self, kube_dirs):
        write_etcd_manifest(kube_dirs, "/data/etcd")
        data = FakeResetData()

        removeetcdmember.run_remove_etcd_member_phase(data)

        assert data.dirs == ["/data/etcd"]

    def test_removes_member(self, init_cfg, fake_client):
        etcd_client = MagicMock()
        etcd_client.endpoints = ["https://10.0.0.10:2379", "https://10.0.0.11:2379"]
        etcd_client.list_members.return_value = [Member(name="node-1", id=1), Member(name="node-2", id=2)]
        etcd_client.get_member_id.return_value = 1
        etcd_client.remove_member.return_value = [Member(name="node-2", id=2)]
        data = FakeResetData(cfg=init_cfg, client=fake_client)

        with patch.object(removeetcdmember.etcdutil.EtcdClient, "from_cluster", return_value=etcd_client):
            removeetcdmember.run_remove_etcd_member_phase(data)

        etcd_client.get_member_id.assert_called_once_with("https://10.0.0.10:2380")
        etcd_client.remove_member.assert_called_once_with(1)
        etcd_client.close.assert_called_once()
        assert data.dirs == [init_cfg.cluster.etcd.local.data_dir]

    def test_last_member_is_kept(self, init_cfg, fake_client):
        etcd_client = MagicMock()
        etcd_client.endpoints = ["https://10.0.0.10:2379"]
        etcd_client.list_members.return_value = [Member(name="node-1", id=1)]

        with patch.object(removeetcdmember.etcdutil.EtcdClient, "from_cluster", return_value=etcd_client):
            removeetcdmember.remove_stacked_etcd_member(fake_client, init_cfg, "/etc/kubernetes/pki")

        etcd_client.remove_member.assert_not_called()

    def test_etcd_failure_is_a_warning(self, init_cfg, fake_client, caplog):
        data = FakeResetData(cfg=init_cfg, client=fake_client)

        with patch.object(removeetcdmember.etcdutil.EtcdClient, "from_cluster", side_effect=EtcdError("no endpoints")):
            with caplog.at_level(logging.WARNING):
                removeetcdmember.run_remove_etcd_member_phase(data)

        assert "Failed to remove etcd member" in caplog.text


class TestCleanupNode:
    """测试 cleanup-node 阶段。"""

    def test_clean_dir_keeps_directory(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "file").write_text("x")
        (tmp_path / "file").write_text("x")

        cleanupnode.clean_dir(tmp_path)

        assert tmp_path.exists()
        assert list(tmp_path.iterdir()) == []

    def test_clean_missing_dir(self, tmp_path):
        cleanupnode.clean_dir(tmp_path / "missing")

    def test_unmount_only_kubelet_mounts(self, tmp_path):
        mounts = tmp_path / "mounts"
        mounts.write_text(
            "tmpfs /var/lib/kubelet/pods/a/volumes tmpfs rw 0 0\n"
            "tmpfs /var/lib/kubeletx tmpfs rw 0 0\n"
            "proc /proc proc rw 0 0\n"
        )
        calls = []

        def run(args, **kwargs):
            calls.append(args)
            return subprocess.CompletedProcess(args, 0, "", "")

        cleanupnode.unmount_kubelet_directory("/var/lib/kubelet", mounts, run)

        assert calls == [["umount", "/var/lib/kubelet/pods/a/volumes"]]

    def test_unmount_failure(self, tmp_path):
        mounts = tmp_path / "mounts"
        mounts.write_text("tmpfs /var/lib/kubelet/pods/a tmpfs rw 0 0\n")

        def run(args, **kwargs):
            return subprocess.CompletedProcess(args, 32, "", "target is busy")

        with pytest.raises(OSError, match="target is busy"):
            cleanupnode.unmount_kubelet_directory("/var/lib/kubelet", mounts, run)

    def test_remove_containers(self):
        runtime = MagicMock()
        runtime.list_kube_containers.return_value = ["a", "b"]

        with patch.object(cleanupnode, "new_container_runtime", return_value=runtime):
            cleanupnode.remove_containers(constants.CONTAINERD_SOCKET)

        runtime.is_running.assert_called_once()
        runtime.remove_containers.assert_called_once_with(["a", "b"])

    def test_run_cleanup_node(self, kube_dirs, caplog):
        kube_dir = kube_dirs["kubernetes"]
        pki_dir = kube_dir / "pki"
        (kube_dir / "manifests").mkdir()
        (kube_dir / "manifests" / "etcd.yaml").write_text("x")
        pki_dir.mkdir()
        (pki_dir / "ca.crt").write_text("x")
        (kube_dir / constants.ADMIN_KUBECONFIG).write_text("x")
        (kube_dir / "other.conf").write_text("x")
        data = FakeResetData()
        data.certs = str(pki_dir)

        with patch.object(cleanupnode.initsystem, "get_init_system", side_effect=InitSystemError("no systemd")), \
                patch.object(cleanupnode, "unmount_kubelet_directory") as unmount, \
                patch.object(cleanupnode, "remove_containers", side_effect=ContainerRuntimeError("not running")):
            with caplog.at_level(logging.WARNING):
                cleanupnode.run_cleanup_node(data)

        unmount.assert_called_once_with(kube_dirs["kubelet"])
        assert data.dirs == [str(kube_dirs["kubelet"]), *cleanupnode.STATEFUL_DIRS]
        assert list((kube_dir / "manifests").iterdir()) == []
        assert list(pki_dir.iterdir()) == []
        assert not (kube_dir / constants.ADMIN_KUBECONFIG).exists()
        assert (kube_dir / "other.conf").exists()
        assert "could not be stopped" in caplog.text
        assert "Failed to remove containers" in caplog.text


class TestUpdateClusterStatus:
    """测试已废弃的 update-cluster-status 阶段。"""

    def test_no_op_message_on_control_plane(self, kube_dirs, init_cfg, capsys):
        staticpod.write_static_pod_to_disk(constants.KUBE_APISERVER, constants.static_pod_dir(), {"kind": "Pod"})

        updateclusterstatus.run_update_cluster_status(FakeResetData(cfg=init_cfg))

        assert "已废弃" in capsys.readouterr().out

    def test_silent_on_worker(self, kube_dirs, init_cfg, capsys):
        updateclusterstatus.run_update_cluster_status(FakeResetData(cfg=init_cfg))

        assert capsys.readouterr().out == ""
