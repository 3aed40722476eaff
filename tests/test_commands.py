"""测试 kubeboot 命令行。"""

import io
import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from kubeboot import __version__, constants
from kubeboot.cli import new_kubeboot_command
from kubeboot.commands import join as joincmd
from kubeboot.commands import reset as resetcmd
from kubeboot.commands.init import InitRunData, print_join_command
from kubeboot.utils import apiclient, kubeconfig, pki, staticpod
from kubeboot.utils.config import ClusterConfiguration, cluster_configuration_to_yaml
from kubeboot.utils.errors import ValidationError
from kubeboot.workflow.errors import ContextInitializationError, PhaseExecutionError


class TestRootCommand:
    """测试根命令与 version 子命令。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.cli = CliRunner()
        self.command = new_kubeboot_command()

    def test_help_lists_commands(self):
        result = self.cli.invoke(self.command, ["--help"])

        assert result.exit_code == 0
        for name in ("init", "join", "reset", "version"):
            assert name in result.output

    def test_version_short(self):
        result = self.cli.invoke(self.command, ["version", "-o", "short"])

        assert result.exit_code == 0
        assert result.output.strip() == f"v{__version__}"

    def test_version_json(self):
        result = self.cli.invoke(self.command, ["version", "-o", "json"])

        info = json.loads(result.output)["clientVersion"]
        assert info["gitVersion"] == f"v{__version__}"
        assert info["kubernetesVersion"] == constants.KUBERNETES_VERSION

    def test_version_invalid_output(self):
        result = self.cli.invoke(self.command, ["version", "-o", "xml"])

        assert result.exit_code == 1
        assert isinstance(result.exception, ValueError)
        assert "invalid output format: xml" in str(result.exception)


class TestInitCommand:
    """测试 init 命令。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.cli = CliRunner()

    def test_help_lists_phases(self):
        result = self.cli.invoke(new_kubeboot_command(), ["init", "--help"])

        assert result.exit_code == 0
        assert 'The "init" command executes the following phases:' in result.output
        assert "certs" in result.output
        assert "/ca" in result.output
        assert "--skip-phases" in result.output

    def test_config_mixed_with_flags(self, tmp_path):
        config = tmp_path / "kubeboot.yaml"
        config.write_text("kind: InitConfiguration\n")

        result = self.cli.invoke(
            new_kubeboot_command(),
            ["init", "--config", str(config), "--pod-network-cidr", "10.244.0.0/16"],
        )

        assert result.exit_code == 1
        assert isinstance(result.exception, ContextInitializationError)
        assert isinstance(result.exception.cause, ValidationError)
        assert "pod-network-cidr" in str(result.exception)


class TestPrintJoinCommand:
    """测试 init 完成后的 join 提示。"""

    @pytest.fixture(autouse=True)
    def _admin(self, init_cfg, tmp_path):
        self.cfg = init_cfg
        self.ca_cert, _ = pki.new_self_signed_ca("kubernetes")
        self.path = tmp_path / constants.ADMIN_KUBECONFIG
        config = kubeconfig.build_kubeconfig(
            "https://10.0.0.10:6443", "kubernetes", "admin", pki.encode_cert_pem(self.ca_cert),
        )
        kubeconfig.write_kubeconfig(self.path, config)
        self.lines: list[str] = []

    def make_data(self, **kwargs):
        return InitRunData(
            self.cfg, set(), str(self.path.parent), str(self.path), out=self.lines.append, **kwargs,
        )

    def test_worker_only(self):
        print_join_command(self.make_data(), str(self.path), "abcdef.0123456789abcdef")

        text = self.lines[0]
        assert "kubeboot join 10.0.0.10:6443 --token abcdef.0123456789abcdef" in text
        assert pki.public_key_pin(self.ca_cert) in text
        assert "--control-plane" not in text

    def test_control_plane_with_uploaded_certs(self):
        self.cfg.cluster.control_plane_endpoint = "10.0.0.10:6443"
        self.cfg.certificate_key = "00ff"

        print_join_command(self.make_data(upload_certs=True), str(self.path), "abcdef.0123456789abcdef")

        text = self.lines[0]
        assert "--control-plane --certificate-key 00ff" in text
        assert "upload-certs --upload-certs" in text

    def test_skip_token_print(self):
        print_join_command(self.make_data(skip_token_print=True), str(self.path), "abcdef.0123456789abcdef")

        assert "abcdef.0123456789abcdef" not in self.lines[0]


class TestJoinCommand:
    """测试 join 命令。"""

    def test_help_lists_phases(self):
        result = CliRunner().invoke(new_kubeboot_command(), ["join", "--help"])

        assert result.exit_code == 0
        assert 'The "join" command executes the following phases:' in result.output
        assert "kubelet-start" in result.output
        assert "control-plane-prepare" in result.output
        assert "/download-certs" in result.output

    @pytest.fixture
    def options(self):
        options = joincmd.JoinOptions()
        options.token = "abcdef.0123456789abcdef"
        options.token_discovery_skip_ca_hash = True
        options.node_registration.name = "node-2"
        options.node_registration.cri_socket = constants.CONTAINERD_SOCKET
        return options

    def test_first_endpoint_only(self, options, capsys):
        data = joincmd.new_join_data(["10.0.0.10:6443", "10.0.0.11:6443"], options)

        discovery = data.cfg().discovery
        assert discovery.bootstrap_token.api_server_endpoint == "10.0.0.10:6443"
        assert discovery.bootstrap_token.token == "abcdef.0123456789abcdef"
        assert discovery.tls_bootstrap_token == "abcdef.0123456789abcdef"
        assert data.cfg().control_plane is None
        assert "只使用第一个" in capsys.readouterr().err

    def test_requires_ca_pinning(self, options):
        options.token_discovery_skip_ca_hash = False

        with pytest.raises(ValidationError, match="caCertHashes"):
            joincmd.new_join_data(["10.0.0.10:6443"], options)

    def test_fetch_init_configuration(self, options, fake_client):
        cluster = ClusterConfiguration(control_plane_endpoint="lb.example.com:6443")
        path = f"{apiclient.configmaps_path(constants.KUBE_SYSTEM_NAMESPACE)}/{constants.CLUSTER_CONFIG_CONFIGMAP}"
        fake_client.objects[path] = {
            "metadata": {"name": constants.CLUSTER_CONFIG_CONFIGMAP},
            "data": {constants.CLUSTER_CONFIG_CONFIGMAP_KEY: cluster_configuration_to_yaml(cluster)},
        }
        cfg = joincmd.new_join_data(["10.0.0.10:6443"], options).cfg()

        init_cfg = joincmd.fetch_init_configuration(fake_client, cfg)

        assert init_cfg.cluster.control_plane_endpoint == "lb.example.com:6443"
        assert init_cfg.node_registration.name == "node-2"

    def test_fetch_without_configmap(self, options, fake_client):
        cfg = joincmd.new_join_data(["10.0.0.10:6443"], options).cfg()

        with pytest.raises(RuntimeError, match="unable to fetch"):
            joincmd.fetch_init_configuration(fake_client, cfg)


class TestResetCommand:
    """测试 reset 命令。"""

    @pytest.fixture(autouse=True)
    def _options(self, kube_dirs, tmp_path):
        self.options = resetcmd.ResetOptions()
        self.options.kubeconfig_path = str(tmp_path / "missing.conf")
        self.options.cri_socket = constants.CONTAINERD_SOCKET
        self.options.cert_dir = str(tmp_path / "pki")
        self.cli = CliRunner()

    def test_aborted_without_force(self):
        cmd = resetcmd.new_cmd_reset(self.options, input_reader=io.StringIO("n\n"))

        result = self.cli.invoke(cmd, [])

        assert result.exit_code == 1
        assert isinstance(result.exception, PhaseExecutionError)
        assert result.exception.name == "preflight"
        assert "aborted reset operation" in str(result.exception)

    def test_preflight_phase(self):
        cmd = resetcmd.new_cmd_reset(self.options, input_reader=io.StringIO(""))

        result = self.cli.invoke(cmd, ["phase", "preflight", "--force", "--ignore-preflight-errors", "all"])

        assert result.exit_code == 0, result.output
        assert "[preflight] 运行预检" in result.output

    def test_reset_data_without_kubeconfig(self):
        data = resetcmd.new_reset_data(self.options, io.StringIO(""))

        assert data.client() is None
        assert data.cfg() is None
        assert data.cri_socket_path() == constants.CONTAINERD_SOCKET
        assert data.ignore_preflight_errors() == set()

    def test_fetch_configuration_from_cluster(self, fake_client):
        cluster = ClusterConfiguration(kubernetes_version="v1.22.0")
        path = f"{apiclient.configmaps_path(constants.KUBE_SYSTEM_NAMESPACE)}/{constants.CLUSTER_CONFIG_CONFIGMAP}"
        fake_client.objects[path] = {
            "metadata": {"name": constants.CLUSTER_CONFIG_CONFIGMAP},
            "data": {constants.CLUSTER_CONFIG_CONFIGMAP_KEY: cluster_configuration_to_yaml(cluster)},
        }
        fake_client.objects[apiclient.node_path("node-1")] = {
            "metadata": {"name": "node-1", "annotations": {constants.ANNOTATION_CRI_SOCKET: constants.CRIO_SOCKET}},
        }
        pod = {
            "kind": "Pod",
            "spec": {"containers": [{
                "name": constants.KUBE_APISERVER,
                "command": ["kube-apiserver", "--advertise-address=10.0.0.10", "--secure-port=6444"],
            }]},
        }
        staticpod.write_static_pod_to_disk(constants.KUBE_APISERVER, constants.static_pod_dir(), pod)

        with patch.object(resetcmd.configutil, "default_node_name", return_value="node-1"):
            cfg = resetcmd.fetch_init_configuration_from_cluster(fake_client)

        assert cfg.cluster.kubernetes_version == "v1.22.0"
        assert cfg.node_registration.cri_socket == constants.CRIO_SOCKET
        assert cfg.local_api_endpoint.advertise_address == "10.0.0.10"
        assert cfg.local_api_endpoint.bind_port == 6444

    def test_fetch_without_configmap(self, fake_client):
        with pytest.raises(RuntimeError, match="unable to fetch"):
            resetcmd.fetch_init_configuration_from_cluster(fake_client)
