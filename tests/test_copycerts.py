"""测试控制平面证书共享。"""

import base64

import pytest

from kubeboot import constants
from kubeboot.utils import apiclient, copycerts


class TestEncryption:
    """测试证书密钥加解密。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.key = copycerts.create_certificate_key()

    def test_key_format(self):
        assert len(self.key) == copycerts.CERTIFICATE_KEY_SIZE * 2
        bytes.fromhex(self.key)

    def test_decrypt_with_same_key(self):
        encrypted = copycerts.encrypt(b"secret data", self.key)

        assert encrypted != b"secret data"
        assert copycerts.decrypt(encrypted, self.key) == b"secret data"

    def test_decrypt_with_wrong_key(self):
        encrypted = copycerts.encrypt(b"secret data", self.key)

        with pytest.raises(copycerts.CertificateKeyError, match="error decrypting"):
            copycerts.decrypt(encrypted, copycerts.create_certificate_key())

    def test_short_data(self):
        with pytest.raises(copycerts.CertificateKeyError, match="too short"):
            copycerts.decrypt(b"abc", self.key)

    def test_invalid_key(self):
        with pytest.raises(copycerts.CertificateKeyError, match="decoding"):
            copycerts.encrypt(b"data", "not-hex")
        with pytest.raises(copycerts.CertificateKeyError, match="32 bytes"):
            copycerts.encrypt(b"data", "abcd")


class TestCertsSecret:
    """测试证书 Secret 的构建与解码。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.key = copycerts.create_certificate_key()

    def write_files(self, cert_dir, names):
        for name in names:
            path = cert_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(f"content of {name}".encode())

    def test_build_and_decode(self, tmp_path):
        self.write_files(tmp_path, ["ca.crt", "ca.key", "etcd/ca.crt"])

        secret = copycerts.build_certs_secret(tmp_path, self.key)

        assert secret["metadata"]["name"] == constants.CERTS_SECRET
        assert sorted(secret["data"]) == ["ca.crt", "ca.key", "etcd-ca.crt"]
        decoded = copycerts.decode_certs_secret(secret, self.key)
        assert decoded["etcd-ca.crt"] == b"content of etcd/ca.crt"

    def test_values_are_encrypted(self, tmp_path):
        self.write_files(tmp_path, ["sa.key"])

        secret = copycerts.build_certs_secret(tmp_path, self.key)

        assert base64.b64decode(secret["data"]["sa.key"]) != b"content of sa.key"

    def test_external_etcd_files(self, tmp_path):
        self.write_files(tmp_path, ["external-etcd.crt", "etcd/ca.crt"])

        secret = copycerts.build_certs_secret(tmp_path, self.key, external_etcd=True)

        assert list(secret["data"]) == ["external-etcd.crt"]

    def test_upload_updates_existing(self, tmp_path, fake_client):
        self.write_files(tmp_path, ["ca.crt"])
        path = f"{apiclient.secrets_path(constants.KUBE_SYSTEM_NAMESPACE)}/{constants.CERTS_SECRET}"

        copycerts.upload_certs(fake_client, tmp_path, self.key)
        copycerts.upload_certs(fake_client, tmp_path, self.key)

        assert path in fake_client.objects
        assert ("PUT", path) in fake_client.requests

    def test_upload_grants_bootstrap_tokens_read(self, tmp_path, fake_client):
        self.write_files(tmp_path, ["ca.crt"])

        copycerts.upload_certs(fake_client, tmp_path, self.key)

        namespace = constants.KUBE_SYSTEM_NAMESPACE
        role = fake_client.objects[f"{apiclient.roles_path(namespace)}/{copycerts.CERTS_SECRET_ROLE}"]
        assert role["rules"][0]["resourceNames"] == [constants.CERTS_SECRET]
        assert role["rules"][0]["verbs"] == ["get"]
        binding = fake_client.objects[f"{apiclient.role_bindings_path(namespace)}/{copycerts.CERTS_SECRET_ROLE}"]
        assert binding["subjects"][0]["name"] == constants.NODE_BOOTSTRAP_TOKEN_AUTH_GROUP

    def test_download_writes_files(self, tmp_path, fake_client):
        source, dest = tmp_path / "source", tmp_path / "dest"
        self.write_files(source, ["ca.crt", "ca.key", "etcd/ca.key"])
        copycerts.upload_certs(fake_client, source, self.key)

        written = copycerts.download_certs(fake_client, dest, self.key)

        assert sorted(p.relative_to(dest).as_posix() for p in written) == ["ca.crt", "ca.key", "etcd/ca.key"]
        assert (dest / "etcd" / "ca.key").read_bytes() == b"content of etcd/ca.key"
        assert (dest / "ca.key").stat().st_mode & 0o777 == 0o600
        assert (dest / "ca.crt").stat().st_mode & 0o777 == 0o644

    def test_download_without_secret(self, tmp_path, fake_client):
        with pytest.raises(RuntimeError, match="not found"):
            copycerts.download_certs(fake_client, tmp_path, self.key)


    def test_secret_key_for(self):
        assert copycerts.secret_key_for("etcd/ca.key") == "etcd-ca.key"
