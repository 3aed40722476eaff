"""测试证书与 kubeconfig 模块。"""

import base64

import pytest
import yaml
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubeboot import constants
from kubeboot.utils import kubeconfig, pki


@pytest.fixture(scope="module")
def ca():
    """模块内共享的 CA。"""
    return pki.new_self_signed_ca("kubernetes")


class TestCertificates:
    """测试证书签发和读写。"""

    def test_self_signed_ca(self, ca):
        cert, _ = ca

        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
        assert constraints.ca is True
        assert cert.subject == cert.issuer
        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "kubernetes"

    def test_signed_cert_with_sans(self, ca):
        ca_cert, ca_key = ca
        key = pki.new_private_key()
        cfg = pki.CertConfig(
            common_name="kube-apiserver",
            alt_names=pki.AltNames(dns_names=["kubernetes", "node-1"], ips=["10.0.0.10"]),
            usages=[pki.USAGE_SERVER],
        )

        cert = pki.new_signed_cert(cfg, key, ca_cert, ca_key)

        sans = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert sans.get_values_for_type(x509.DNSName) == ["kubernetes", "node-1"]
        assert [str(ip) for ip in sans.get_values_for_type(x509.IPAddress)] == ["10.0.0.10"]
        usages = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        assert list(usages) == [ExtendedKeyUsageOID.SERVER_AUTH]
        assert cert.issuer == ca_cert.subject

    def test_client_cert_organization(self, ca):
        ca_cert, ca_key = ca
        cfg = pki.CertConfig(
            common_name="kubernetes-admin",
            organization=["system:masters"],
            usages=[pki.USAGE_CLIENT],
        )

        cert = pki.new_signed_cert(cfg, pki.new_private_key(), ca_cert, ca_key)

        orgs = cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
        assert [o.value for o in orgs] == ["system:masters"]

    def test_write_and_load(self, tmp_path, ca):
        cert, key = ca

        pki.write_cert_and_key(tmp_path, "ca", cert, key)

        assert pki.cert_or_key_exist(tmp_path, "ca")
        loaded_cert, loaded_key = pki.try_load_cert_and_key_from_disk(tmp_path, "ca")
        assert loaded_cert == cert
        assert pki.encode_private_key_pem(loaded_key) == pki.encode_private_key_pem(key)
        assert (pki.path_for_key(tmp_path, "ca").stat().st_mode & 0o777) == 0o600

    def test_write_key_pair(self, tmp_path):
        key = pki.new_private_key()

        pki.write_key_pair(tmp_path, "sa", key)

        assert pki.path_for_public_key(tmp_path, "sa").read_bytes() == pki.encode_public_key_pem(key.public_key())
        assert not pki.path_for_cert(tmp_path, "sa").exists()

    def test_load_missing_cert(self, tmp_path):
        with pytest.raises(pki.PKIError, match="couldn't load"):
            pki.try_load_cert_from_disk(tmp_path, "ca")

    def test_load_invalid_key(self, tmp_path):
        pki.path_for_key(tmp_path, "ca").write_bytes(b"garbage")

        with pytest.raises(pki.PKIError):
            pki.try_load_key_from_disk(tmp_path, "ca")

    def test_external_ca(self, tmp_path, ca):
        cert, key = ca
        assert not pki.using_external_ca(tmp_path)

        pki.write_cert_and_key(tmp_path, "ca", cert, key)
        assert not pki.using_external_ca(tmp_path)

        pki.path_for_key(tmp_path, "ca").unlink()
        assert pki.using_external_ca(tmp_path)


class TestPublicKeyPins:
    """测试公钥指纹。"""

    def test_pin_format(self, ca):
        pin = pki.public_key_pin(ca[0])

        assert pin.startswith("sha256:")
        assert len(pin) == len("sha256:") + 64

    def test_verify_accepts_bare_and_upper_case(self, ca):
        pin = pki.public_key_pin(ca[0])

        pki.verify_public_key_pins(ca[0], [pin])
        pki.verify_public_key_pins(ca[0], [pin[len("sha256:"):].upper()])

    def test_verify_rejects_unknown(self, ca):
        with pytest.raises(pki.PKIError, match="pinned"):
            pki.verify_public_key_pins(ca[0], ["sha256:" + "0" * 64])


class TestKubeconfig:
    """测试 kubeconfig 构建和读写。"""

    def test_build_with_client_cert(self):
        config = kubeconfig.build_kubeconfig(
            "https://10.0.0.10:6443", "kubernetes", "admin", b"CA", client_cert_pem=b"CERT", client_key_pem=b"KEY",
        )

        assert config["current-context"] == "admin@kubernetes"
        assert kubeconfig.current_cluster(config)["server"] == "https://10.0.0.10:6443"
        assert kubeconfig.cluster_ca_data(config) == b"CA"
        assert kubeconfig.user_credentials(config) == (b"CERT", b"KEY", "")

    def test_build_with_token(self):
        config = kubeconfig.build_kubeconfig("https://lb:6443", "kubernetes", "tls-bootstrap", b"CA", token="abc")

        assert kubeconfig.user_credentials(config) == (None, None, "abc")

    def test_write_and_load(self, tmp_path):
        config = kubeconfig.build_kubeconfig("https://lb:6443", "kubernetes", "admin", b"CA")
        path = tmp_path / "sub" / "admin.conf"

        kubeconfig.write_kubeconfig(path, config)

        assert (path.stat().st_mode & 0o777) == 0o600
        assert kubeconfig.load_kubeconfig(path) == config

    def test_load_without_clusters(self, tmp_path):
        path = tmp_path / "bad.conf"
        path.write_text(yaml.safe_dump({"kind": "Config"}), encoding="utf-8")

        with pytest.raises(kubeconfig.KubeconfigError, match="no clusters"):
            kubeconfig.load_kubeconfig(path)

    def test_cluster_without_ca(self):
        config = {"clusters": [{"name": "c", "cluster": {"server": "https://x"}}]}

        with pytest.raises(kubeconfig.KubeconfigError, match="certificate authority"):
            kubeconfig.cluster_ca_data(config)

    def test_current_user_missing(self):
        assert kubeconfig.current_user({"clusters": []}) == {}

    @pytest.mark.parametrize("address,port,endpoint,expected", [
        ("10.0.0.10", 6443, "", "https://10.0.0.10:6443"),
        ("fd00::1", 6443, "", "https://[fd00::1]:6443"),
        ("10.0.0.10", 6443, "lb.example.com", "https://lb.example.com:6443"),
        ("10.0.0.10", 6443, "lb.example.com:8443", "https://lb.example.com:8443"),
    ])
    def test_control_plane_endpoint(self, address, port, endpoint, expected):
        assert kubeconfig.control_plane_endpoint(address, port, endpoint) == expected


class TestCreateKubeconfigFile:
    """测试控制平面 kubeconfig 文件生成。"""

    def test_create_admin_conf(self, tmp_path, ca):
        cert, key = ca
        pki_dir = tmp_path / "pki"
        pki.write_cert_and_key(pki_dir, constants.CA_CERT_AND_KEY_BASE_NAME, cert, key)

        kubeconfig.create_kubeconfig_file(
            constants.ADMIN_KUBECONFIG, tmp_path, pki_dir, "https://10.0.0.10:6443", "kubernetes", "node-1",
        )

        config = kubeconfig.load_kubeconfig(tmp_path / constants.ADMIN_KUBECONFIG)
        client_cert_pem, _, _ = kubeconfig.user_credentials(config)
        client_cert = x509.load_pem_x509_certificate(client_cert_pem)
        cn = client_cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        assert cn == constants.ADMIN_USER
        assert kubeconfig.cluster_ca_data(config) == pki.encode_cert_pem(cert)

    def test_existing_file_with_wrong_ca(self, tmp_path, ca):
        cert, key = ca
        pki_dir = tmp_path / "pki"
        pki.write_cert_and_key(pki_dir, constants.CA_CERT_AND_KEY_BASE_NAME, cert, key)
        other = kubeconfig.build_kubeconfig("https://10.0.0.10:6443", "kubernetes", "admin", b"OTHER CA")
        kubeconfig.write_kubeconfig(tmp_path / constants.ADMIN_KUBECONFIG, other)

        with pytest.raises(kubeconfig.KubeconfigError, match="wrong CA"):
            kubeconfig.create_kubeconfig_file(
                constants.ADMIN_KUBECONFIG, tmp_path, pki_dir, "https://10.0.0.10:6443", "kubernetes", "node-1",
            )

    def test_existing_file_reused(self, tmp_path, ca):
        cert, key = ca
        pki_dir = tmp_path / "pki"
        pki.write_cert_and_key(pki_dir, constants.CA_CERT_AND_KEY_BASE_NAME, cert, key)
        existing = kubeconfig.build_kubeconfig(
            "https://old:6443", "kubernetes", "admin", pki.encode_cert_pem(cert), token="keep",
        )
        kubeconfig.write_kubeconfig(tmp_path / constants.ADMIN_KUBECONFIG, existing)

        kubeconfig.create_kubeconfig_file(
            constants.ADMIN_KUBECONFIG, tmp_path, pki_dir, "https://10.0.0.10:6443", "kubernetes", "node-1",
        )

        config = kubeconfig.load_kubeconfig(tmp_path / constants.ADMIN_KUBECONFIG)
        assert kubeconfig.user_credentials(config)[2] == "keep"

    def test_unknown_file_name(self, tmp_path):
        with pytest.raises(kubeconfig.KubeconfigError, match="couldn't find"):
            kubeconfig.create_kubeconfig_file("other.conf", tmp_path, tmp_path, "https://x:6443", "kubernetes", "n")

    def test_kubelet_identity(self):
        specs = kubeconfig.kubeconfig_specs("node-1")

        assert specs[constants.KUBELET_KUBECONFIG].client_name == "system:node:node-1"
        assert specs[constants.KUBELET_KUBECONFIG].organizations == [constants.NODES_GROUP]
