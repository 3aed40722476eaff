"""测试 join 各阶段。"""

import ipaddress
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from cryptography import x509

from kubeboot import constants
from kubeboot.phases.join import checketcd, controlplanejoin, controlplaneprepare
from kubeboot.phases.join import kubelet as kubeletphase
from kubeboot.phases.join import preflight as preflightphase
from kubeboot.phases.join.data import get_join_data, is_control_plane
from kubeboot.utils import apiclient, copycerts, kubeconfig, pki, staticpod
from kubeboot.utils.config import (
    APIEndpoint,
    ExternalEtcd,
    JoinConfiguration,
    JoinControlPlane,
    NodeRegistrationOptions,
)
from kubeboot.utils.errors import ValidationError
from kubeboot.utils.etcd import Member


class FakeJoinData:
    """join 阶段的内存运行数据。"""

    def __init__(self, cfg, init_cfg, kube_dir, client):
        self._cfg = cfg
        self._init_cfg = init_cfg
        self._kube_dir = str(kube_dir)
        self._client = client

    def cfg(self):
        return self._cfg

    def tls_bootstrap_cfg(self):
        return kubeconfig.build_kubeconfig(
            "https://10.0.0.10:6443", "kubernetes", "tls-bootstrap-token-user", b"CA DATA", token="abcdef.0123456789abcdef",
        )

    def init_cfg(self):
        return self._init_cfg

    def bootstrap_client(self):
        return self._client

    def kubelet_client(self):
        return self._client

    def client(self):
        return self._client

    def ignore_preflight_errors(self):
        return {"all"}

    def output_writer(self):
        return print

    def certificate_dir(self):
        return self._init_cfg.cluster.certificates_dir

    def kubeconfig_dir(self):
        return self._kube_dir

    def manifest_dir(self):
        return f"{self._kube_dir}/manifests"

    def kubelet_dir(self):
        return f"{self._kube_dir}/kubelet"


@pytest.fixture
def join_cfg(kube_dirs):
    return JoinConfiguration(
        ca_cert_path=str(Path(kube_dirs["kubernetes"]) / "pki" / "ca.crt"),
        node_registration=NodeRegistrationOptions(name="node-2", cri_socket=constants.CONTAINERD_SOCKET, taints=[]),
    )


@pytest.fixture
def data(join_cfg, init_cfg, kube_dirs, fake_client):
    return FakeJoinData(join_cfg, init_cfg, kube_dirs["kubernetes"], fake_client)


def make_control_plane(data):
    data.cfg().control_plane = JoinControlPlane(local_api_endpoint=APIEndpoint(advertise_address="10.0.0.11"))


def test_get_join_data_rejects_other_types():
    with pytest.raises(TypeError, match="kubelet-start phase invoked with an invalid data struct"):
        get_join_data(object(), "kubelet-start")


def test_is_control_plane(data):
    assert is_control_plane(data) is False

    make_control_plane(data)

    assert is_control_plane(data) is True


class TestCheckEtcd:
    """测试 check-etcd 阶段。"""

    def test_worker_skips(self, data):
        with patch.object(checketcd.etcdutil.EtcdClient, "from_cluster") as from_cluster:
            checketcd.run_check_etcd_phase(data)

        from_cluster.assert_not_called()

    def test_external_etcd_skips(self, data):
        make_control_plane(data)
        data.init_cfg().cluster.etcd.local = None
        data.init_cfg().cluster.etcd.external = ExternalEtcd(endpoints=["https://etcd:2379"])

        with patch.object(checketcd.etcdutil.EtcdClient, "from_cluster") as from_cluster:
            checketcd.run_check_etcd_phase(data)

        from_cluster.assert_not_called()

    def test_checks_health(self, data):
        make_control_plane(data)
        etcd_client = MagicMock()

        with patch.object(checketcd.etcdutil.EtcdClient, "from_cluster", return_value=etcd_client):
            checketcd.run_check_etcd_phase(data)

        etcd_client.check_cluster_health.assert_called_once()
        etcd_client.close.assert_called_once()


class TestControlPlaneJoin:
    """测试 control-plane-join 阶段。"""

    def test_sub_phases_have_conditions(self):
        phase = controlplanejoin.new_control_plane_join_phase()

        assert [p.name for p in phase.phases] == ["all", "etcd", "update-status", "mark-control-plane"]
        assert all(p.run_if is is_control_plane for p in phase.phases[1:])

    def test_etcd_member_added(self, data):
        make_control_plane(data)
        etcd_client = MagicMock()
        etcd_client.add_member.return_value = [
            Member(name="node-1", id=1, peer_urls=["https://10.0.0.10:2380"]),
            Member(name="node-2", id=2, peer_urls=["https://10.0.0.11:2380"]),
        ]

        with patch.object(controlplanejoin.etcdutil.EtcdClient, "from_cluster", return_value=etcd_client):
            controlplanejoin.run_etcd_phase(data)

        etcd_client.add_member.assert_called_once_with("node-2", "https://10.0.0.11:2380")
        etcd_client.wait_for_cluster_available.assert_called_once()
        pod = staticpod.read_static_pod_from_disk(staticpod.manifest_path(constants.ETCD, data.manifest_dir()))
        initial_cluster = staticpod.get_command_arg(pod, "initial-cluster")
        assert initial_cluster == "node-1=https://10.0.0.10:2380,node-2=https://10.0.0.11:2380"
        assert staticpod.get_command_arg(pod, "initial-cluster-state") == "existing"

    def test_mark_control_plane(self, data, fake_client):
        make_control_plane(data)
        path = apiclient.node_path("node-2")
        fake_client.objects[path] = {"metadata": {"name": "node-2"}}

        controlplanejoin.run_mark_control_plane_phase(data)

        assert constants.LABEL_NODE_ROLE_CONTROL_PLANE in fake_client.objects[path]["metadata"]["labels"]


class TestControlPlanePrepare:
    """测试 control-plane-prepare 阶段。"""

    @pytest.fixture(autouse=True)
    def _cluster(self, data, fake_client, tmp_path):
        make_control_plane(data)
        init_cfg = data.init_cfg()
        init_cfg.node_registration.name = "node-2"
        init_cfg.local_api_endpoint.advertise_address = "10.0.0.11"
        init_cfg.cluster.control_plane_endpoint = "lb.example.com:6443"

        # 第一个控制平面节点上的共享证书
        self.source_dir = tmp_path / "first-node-pki"
        for base_name, common_name in (
            (constants.CA_CERT_AND_KEY_BASE_NAME, "kubernetes"),
            (constants.FRONT_PROXY_CA_CERT_AND_KEY_BASE_NAME, "front-proxy-ca"),
            (constants.ETCD_CA_CERT_AND_KEY_BASE_NAME, "etcd-ca"),
        ):
            cert, key = pki.new_self_signed_ca(common_name)
            pki.write_cert_and_key(self.source_dir, base_name, cert, key)
        pki.write_key_pair(self.source_dir, constants.SERVICE_ACCOUNT_KEY_BASE_NAME, pki.new_private_key())

        self.key = copycerts.create_certificate_key()
        copycerts.upload_certs(fake_client, self.source_dir, self.key)
        data.cfg().control_plane.certificate_key = self.key
        self.data = data
        self.cert_dir = Path(data.certificate_dir())

    def test_sub_phases_have_conditions(self):
        phase = controlplaneprepare.new_control_plane_prepare_phase()

        assert [p.name for p in phase.phases] == ["all", "download-certs", "certs", "kubeconfig", "control-plane"]
        assert phase.phases[0].run_all_siblings
        assert all(p.run_if is is_control_plane for p in phase.phases[1:])

    def test_download_certs(self):
        controlplaneprepare.run_download_certs_phase(self.data)

        for file_name in copycerts.cert_files(external_etcd=False):
            assert (self.cert_dir / file_name).read_bytes() == (self.source_dir / file_name).read_bytes()
        assert (self.cert_dir / "etcd" / "ca.key").stat().st_mode & 0o777 == 0o600

    def test_download_without_key_skips(self, fake_client, capsys):
        self.data.cfg().control_plane.certificate_key = ""
        fake_client.requests.clear()

        controlplaneprepare.run_download_certs_phase(self.data)

        assert not (self.cert_dir / "ca.crt").exists()
        assert fake_client.requests == []
        assert "跳过共享证书的下载" in capsys.readouterr().out

    def test_download_missing_secret(self, fake_client):
        fake_client.objects.pop(f"{apiclient.secrets_path(constants.KUBE_SYSTEM_NAMESPACE)}/{constants.CERTS_SECRET}")

        with pytest.raises(RuntimeError, match="not found"):
            controlplaneprepare.run_download_certs_phase(self.data)

    def test_download_wrong_key(self):
        self.data.cfg().control_plane.certificate_key = copycerts.create_certificate_key()

        with pytest.raises(copycerts.CertificateKeyError):
            controlplaneprepare.run_download_certs_phase(self.data)

        assert not (self.cert_dir / "ca.crt").exists()

    def test_certs_signed_by_shared_ca(self):
        controlplaneprepare.run_download_certs_phase(self.data)

        controlplaneprepare.run_certs_phase(self.data)

        ca_cert = pki.try_load_cert_from_disk(self.cert_dir, constants.CA_CERT_AND_KEY_BASE_NAME)
        cert = pki.try_load_cert_from_disk(self.cert_dir, constants.APISERVER_CERT_AND_KEY_BASE_NAME)
        cert.verify_directly_issued_by(ca_cert)
        sans = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert ipaddress.ip_address("10.0.0.11") in sans.get_values_for_type(x509.IPAddress)
        assert {"node-2", "lb.example.com"} <= set(sans.get_values_for_type(x509.DNSName))
        assert pki.path_for_cert(self.cert_dir, constants.ETCD_PEER_CERT_AND_KEY_BASE_NAME).exists()

    def test_certs_external_etcd(self):
        cluster = self.data.init_cfg().cluster
        cluster.etcd.local = None
        cluster.etcd.external = ExternalEtcd(endpoints=["https://etcd:2379"])
        pki.write_cert_and_key(
            self.cert_dir, constants.CA_CERT_AND_KEY_BASE_NAME, *pki.new_self_signed_ca("kubernetes"),
        )
        pki.write_cert_and_key(
            self.cert_dir, constants.FRONT_PROXY_CA_CERT_AND_KEY_BASE_NAME, *pki.new_self_signed_ca("front-proxy-ca"),
        )

        controlplaneprepare.run_certs_phase(self.data)

        assert pki.path_for_cert(self.cert_dir, constants.APISERVER_CERT_AND_KEY_BASE_NAME).exists()
        assert not pki.path_for_cert(self.cert_dir, constants.ETCD_SERVER_CERT_AND_KEY_BASE_NAME).exists()

    def test_certs_without_ca(self):
        with pytest.raises(pki.PKIError):
            controlplaneprepare.run_certs_phase(self.data)

    def test_kubeconfig_files(self):
        controlplaneprepare.run_download_certs_phase(self.data)

        controlplaneprepare.run_kubeconfig_phase(self.data)

        for file_name in controlplaneprepare.CONTROL_PLANE_KUBECONFIG_FILES:
            config = kubeconfig.load_kubeconfig(Path(self.data.kubeconfig_dir()) / file_name)
            assert kubeconfig.current_cluster(config)["server"] == "https://lb.example.com:6443"
        assert not (Path(self.data.kubeconfig_dir()) / constants.KUBELET_KUBECONFIG).exists()

    def test_control_plane_manifests(self):
        controlplaneprepare.run_control_plane_phase(self.data)

        pod = staticpod.read_static_pod_from_disk(
            staticpod.manifest_path(constants.KUBE_APISERVER, self.data.manifest_dir()),
        )
        assert staticpod.get_command_arg(pod, "advertise-address") == "10.0.0.11"
        for component in constants.CONTROL_PLANE_COMPONENTS:
            assert staticpod.manifest_path(component, self.data.manifest_dir()).exists()


class TestJoinPreflight:
    """测试 join 预检阶段。"""

    def test_worker_runs_node_checks_only(self, data):
        with patch.object(preflightphase.preflight, "run_join_node_checks") as node_checks, \
                patch.object(preflightphase.preflight, "run_init_node_checks") as init_checks:
            preflightphase.run_preflight(data)

        node_checks.assert_called_once_with(data.cfg(), {"all"})
        init_checks.assert_not_called()

    def test_control_plane_requires_endpoint(self, data):
        make_control_plane(data)

        with patch.object(preflightphase.preflight, "run_join_node_checks"):
            with pytest.raises(ValidationError, match="controlPlaneEndpoint"):
                preflightphase.run_preflight(data)

    def test_control_plane_checks(self, data):
        make_control_plane(data)
        data.init_cfg().cluster.control_plane_endpoint = "lb.example.com:6443"

        with patch.object(preflightphase.preflight, "run_join_node_checks"), \
                patch.object(preflightphase.preflight, "run_init_node_checks") as init_checks, \
                patch.object(preflightphase.preflight, "run_shared_certs_checks") as certs_checks, \
                patch.object(preflightphase.preflight, "run_pull_images_check") as pull:
            preflightphase.run_preflight(data)

        init_checks.assert_called_once_with(data.init_cfg(), {"all"}, is_secondary_control_plane=True)
        certs_checks.assert_called_once()
        pull.assert_called_once()

    def test_certificate_key_skips_shared_certs(self, data):
        make_control_plane(data)
        data.cfg().control_plane.certificate_key = copycerts.create_certificate_key()
        data.init_cfg().cluster.control_plane_endpoint = "lb.example.com:6443"

        with patch.object(preflightphase.preflight, "run_join_node_checks"), \
                patch.object(preflightphase.preflight, "run_init_node_checks"), \
                patch.object(preflightphase.preflight, "run_shared_certs_checks") as certs_checks, \
                patch.object(preflightphase.preflight, "run_pull_images_check"):
            preflightphase.run_preflight(data)

        certs_checks.assert_not_called()



class TestKubeletStart:
    """测试 kubelet-start 阶段。"""

    @pytest.fixture(autouse=True)
    def _kubelet(self):
        with patch.object(kubeletphase.kubeletutil, "try_stop_kubelet") as stop, \
                patch.object(kubeletphase.kubeletutil, "try_start_kubelet") as start, \
                patch.object(kubeletphase, "wait_for_tls_bootstrap") as wait:
            self.stop, self.start, self.wait = stop, start, wait
            yield

    def test_start_and_annotate(self, data, fake_client):
        path = apiclient.node_path("node-2")

        fake_client.objects[path] = {"metadata": {"name": "node-2"}}
        kubeletphase.run_kubelet_start_join_phase(data)

        self.stop.assert_called_once()
        self.start.assert_called_once()
        assert Path(data.cfg().ca_cert_path).read_bytes() == b"CA DATA"
        assert not (Path(data.kubeconfig_dir()) / constants.KUBELET_BOOTSTRAP_KUBECONFIG).exists()
        annotations = fake_client.objects[path]["metadata"]["annotations"]
        assert annotations[constants.ANNOTATION_CRI_SOCKET] == constants.CONTAINERD_SOCKET

    def test_existing_ready_node(self, data, fake_client):
        fake_client.objects[apiclient.node_path("node-2")] = {
            "metadata": {"name": "node-2"},
            "status": {"conditions": [{"type": "Ready", "status": "True"}]},
        }

        with pytest.raises(RuntimeError, match="already exists in the cluster"):
            kubeletphase.run_kubelet_start_join_phase(data)

        self.start.assert_not_called()
        assert not (Path(data.kubeconfig_dir()) / constants.KUBELET_BOOTSTRAP_KUBECONFIG).exists()

    def test_tls_bootstrap_timeout(self, data, capsys):
        self.wait.side_effect = TimeoutError("timed out waiting for the condition")

        with pytest.raises(TimeoutError):
            kubeletphase.run_kubelet_start_join_phase(data)

        assert "journalctl -xeu kubelet" in capsys.readouterr().out


def test_wait_for_tls_bootstrap(tmp_path):
    path = tmp_path / "kubelet.conf"
    kubeconfig.write_kubeconfig(path, kubeconfig.build_kubeconfig("https://x:6443", "kubernetes", "node", b"CA"))

    kubeletphase.wait_for_tls_bootstrap(path, timeout=0, interval=0)


def test_wait_for_tls_bootstrap_timeout(tmp_path):
    with pytest.raises(TimeoutError):
        kubeletphase.wait_for_tls_bootstrap(tmp_path / "kubelet.conf", timeout=0, interval=0)
