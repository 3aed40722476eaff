"""join 命令渲染模块。"""

from pathlib import Path

from cryptography import x509

from kubeboot.utils import kubeconfig as kubeconfigutil
from kubeboot.utils.pki import public_key_pin

WITHHELD = "<value withheld>"


class JoinCommandError(Exception):
    """无法生成 join 命令。"""


def get_join_worker_command(kubeconfig_file: str | Path, token: str, skip_token_print: bool) -> str:
    """生成工作节点的 join 命令。"""
    return _get_join_command(kubeconfig_file, token, "", False, skip_token_print, False)


def get_join_control_plane_command(
    kubeconfig_file: str | Path,
    token: str,
    key: str,
    skip_token_print: bool,
    skip_certificate_key_print: bool,
) -> str:
    """生成控制平面节点的 join 命令。"""
    return _get_join_command(kubeconfig_file, token, key, True, skip_token_print, skip_certificate_key_print)


def _get_join_command(
    kubeconfig_file: str | Path,
    token: str,
    key: str,
    control_plane: bool,
    skip_token_print: bool,
    skip_certificate_key_print: bool,
) -> str:
    try:
        config = kubeconfigutil.load_kubeconfig(kubeconfig_file)
        cluster = kubeconfigutil.current_cluster(config)
        ca_data = kubeconfigutil.cluster_ca_data(config)
    except (kubeconfigutil.KubeconfigError, OSError) as e:
        raise JoinCommandError(f"failed to load kubeconfig: {e}") from e

    try:
        ca_certs = x509.load_pem_x509_certificates(ca_data)
    except ValueError as e:
        raise JoinCommandError(f"failed to parse CA certificate from kubeconfig: {e}") from e

    pins = [public_key_pin(cert) for cert in ca_certs]
    host_port = cluster["server"].replace("https://", "")

    if skip_token_print:
        token = WITHHELD
    if skip_certificate_key_print:
        key = WITHHELD

    command = f"kubeboot join {host_port} --token {token} \\\n\t"
    command += "".join(f"--discovery-token-ca-cert-hash {pin} " for pin in pins)
    if control_plane:
        command += "\\\n\t--control-plane "
        if key:
            command += f"--certificate-key {key}"
    return command
