"""init 证书阶段。

生成集群 CA、各组件证书以及服务账号密钥对。证书和私钥都已存在时沿用现有文件。
"""

import ipaddress
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import click
from cryptography import x509
from cryptography.exceptions import InvalidSignature

from kubeboot import constants, options
from kubeboot.phases.init.data import InitData, get_init_data
from kubeboot.utils import pki
from kubeboot.utils.config import InitConfiguration
from kubeboot.workflow import Phase

logger = logging.getLogger(__name__)

ETCD_CA_NAME = "etcd-ca"


@dataclass(frozen=True)
class CertSpec:
    """一个证书的签发描述。"""

    name: str
    long_name: str
    base_name: str
    ca_name: str = ""  # 为空表示自身是 CA
    config: Callable[[InitConfiguration], pki.CertConfig] | None = None

    def get_config(self, cfg: InitConfiguration) -> pki.CertConfig:
        if self.config is None:
            return pki.CertConfig(common_name=self.name)
        return self.config(cfg)


def _split_sans(sans: list[str]) -> pki.AltNames:
    alt_names = pki.AltNames()
    for san in sans:
        try:
            ipaddress.ip_address(san)
            alt_names.ips.append(san)
        except ValueError:
            alt_names.dns_names.append(san)
    return alt_names


def _merge(*alt_names: pki.AltNames) -> pki.AltNames:
    merged = pki.AltNames()
    for names in alt_names:
        for d in names.dns_names:
            if d and d not in merged.dns_names:
                merged.dns_names.append(d)
        for ip in names.ips:
            if ip and ip not in merged.ips:
                merged.ips.append(ip)
    return merged


def apiserver_alt_names(cfg: InitConfiguration) -> pki.AltNames:
    """API Server 证书的 SAN。"""
    cluster = cfg.cluster
    service_network = ipaddress.ip_network(cluster.networking.service_subnet.split(",")[0].strip(), strict=False)
    names = pki.AltNames(
        dns_names=[
            cfg.node_registration.name,
            "kubernetes",
            "kubernetes.default",
            "kubernetes.default.svc",
            f"kubernetes.default.svc.{cluster.networking.dns_domain}",
        ],
        ips=[str(service_network.network_address + 1), cfg.local_api_endpoint.advertise_address],
    )
    extra = []
    if cluster.control_plane_endpoint:
        host = cluster.control_plane_endpoint.rsplit(":", 1)[0] if not cluster.control_plane_endpoint.startswith("[") \
            else cluster.control_plane_endpoint[1:].split("]")[0]
        extra.append(host)
    return _merge(names, _split_sans(extra), _split_sans(cluster.api_server.cert_sans))


def etcd_alt_names(cfg: InitConfiguration, extra_sans: list[str]) -> pki.AltNames:
    """etcd server/peer 证书的 SAN。"""
    names = pki.AltNames(
        dns_names=[cfg.node_registration.name, "localhost"],
        ips=[cfg.local_api_endpoint.advertise_address, "127.0.0.1", "::1"],
    )
    return _merge(names, _split_sans(extra_sans))


def _local_etcd_sans(cfg: InitConfiguration, attr: str) -> list[str]:
    local = cfg.cluster.etcd.local
    return list(getattr(local, attr)) if local is not None else []


def default_cert_list() -> list[CertSpec]:
    """证书列表，每个 CA 之后紧跟由它签发的证书。"""
    return [
        CertSpec(
            name="ca", long_name="self-signed Kubernetes CA",
            base_name=constants.CA_CERT_AND_KEY_BASE_NAME,
            config=lambda cfg: pki.CertConfig(common_name="kubernetes"),
        ),
        CertSpec(
            name="apiserver", long_name="certificate for serving the Kubernetes API",
            base_name=constants.APISERVER_CERT_AND_KEY_BASE_NAME, ca_name="ca",
            config=lambda cfg: pki.CertConfig(
                common_name=constants.APISERVER_CERT_COMMON_NAME,
                alt_names=apiserver_alt_names(cfg),
                usages=[pki.USAGE_SERVER],
            ),
        ),
        CertSpec(
            name="apiserver-kubelet-client", long_name="certificate for the API server to connect to kubelet",
            base_name=constants.APISERVER_KUBELET_CLIENT_CERT_AND_KEY_BASE_NAME, ca_name="ca",
            config=lambda cfg: pki.CertConfig(
                common_name=constants.APISERVER_KUBELET_CLIENT_CERT_COMMON_NAME,
                organization=[constants.SYSTEM_PRIVILEGED_GROUP],
                usages=[pki.USAGE_CLIENT],
            ),
        ),
        CertSpec(
            name="front-proxy-ca", long_name="self-signed CA to provision identities for front proxy",
            base_name=constants.FRONT_PROXY_CA_CERT_AND_KEY_BASE_NAME,
            config=lambda cfg: pki.CertConfig(common_name="front-proxy-ca"),
        ),
        CertSpec(
            name="front-proxy-client", long_name="certificate for the front proxy client",
            base_name=constants.FRONT_PROXY_CLIENT_CERT_AND_KEY_BASE_NAME, ca_name="front-proxy-ca",
            config=lambda cfg: pki.CertConfig(
                common_name=constants.FRONT_PROXY_CLIENT_CERT_COMMON_NAME,
                usages=[pki.USAGE_CLIENT],
            ),
        ),
        CertSpec(
            name=ETCD_CA_NAME, long_name="self-signed CA to provision identities for etcd",
            base_name=constants.ETCD_CA_CERT_AND_KEY_BASE_NAME,
            config=lambda cfg: pki.CertConfig(common_name="etcd-ca"),
        ),
        CertSpec(
            name="etcd-server", long_name="certificate for serving etcd",
            base_name=constants.ETCD_SERVER_CERT_AND_KEY_BASE_NAME, ca_name=ETCD_CA_NAME,
            config=lambda cfg: pki.CertConfig(
                common_name=cfg.node_registration.name,
                alt_names=etcd_alt_names(cfg, _local_etcd_sans(cfg, "server_cert_sans")),
                usages=[pki.USAGE_SERVER, pki.USAGE_CLIENT],
            ),
        ),
        CertSpec(
            name="etcd-peer", long_name="certificate for etcd nodes to communicate with each other",
            base_name=constants.ETCD_PEER_CERT_AND_KEY_BASE_NAME, ca_name=ETCD_CA_NAME,
            config=lambda cfg: pki.CertConfig(
                common_name=cfg.node_registration.name,
                alt_names=etcd_alt_names(cfg, _local_etcd_sans(cfg, "peer_cert_sans")),
                usages=[pki.USAGE_SERVER, pki.USAGE_CLIENT],
            ),
        ),
        CertSpec(
            name="etcd-healthcheck-client", long_name="certificate for liveness probes to healthcheck etcd",
            base_name=constants.ETCD_HEALTHCHECK_CLIENT_CERT_AND_KEY_BASE_NAME, ca_name=ETCD_CA_NAME,
            config=lambda cfg: pki.CertConfig(
                common_name=constants.ETCD_HEALTHCHECK_CLIENT_CERT_COMMON_NAME,
                usages=[pki.USAGE_CLIENT],
            ),
        ),
        CertSpec(
            name="apiserver-etcd-client", long_name="certificate the apiserver uses to access etcd",
            base_name=constants.APISERVER_ETCD_CLIENT_CERT_AND_KEY_BASE_NAME, ca_name=ETCD_CA_NAME,
            config=lambda cfg: pki.CertConfig(
                common_name=constants.APISERVER_ETCD_CLIENT_CERT_COMMON_NAME,
                organization=[constants.SYSTEM_PRIVILEGED_GROUP],
                usages=[pki.USAGE_CLIENT],
            ),
        ),
    ]


def get_cert_phase_flags(name: str) -> list[str]:
    flags = [options.CERTIFICATES_DIR, options.CFG_PATH, options.KUBERNETES_VERSION]
    if name in ("all", "apiserver"):
        flags.extend([
            options.APISERVER_ADVERTISE_ADDRESS,
            options.CONTROL_PLANE_ENDPOINT,
            options.APISERVER_CERT_SANS,
            options.NETWORKING_DNS_DOMAIN,
            options.NETWORKING_SERVICE_SUBNET,
        ])
    return flags


def new_certs_phase() -> Phase:
    return Phase(
        name="certs",
        short="生成证书",
        long="此命令不应单独运行，请查看子命令列表",
        phases=new_cert_sub_phases(),
        run=run_certs,
    )


def new_cert_sub_phases() -> list[Phase]:
    sub_phases = [
        Phase(
            name="all",
            short="生成全部证书",
            inherit_flags=get_cert_phase_flags("all"),
            run_all_siblings=True,
        )
    ]

    last_ca: CertSpec | None = None
    for spec in default_cert_list():
        if not spec.ca_name:
            sub_phases.append(_new_cert_sub_phase(spec, run_ca_phase(spec)))
            last_ca = spec
        else:
            sub_phases.append(_new_cert_sub_phase(spec, run_cert_phase(spec, last_ca)))

    sub_phases.append(Phase(
        name="sa",
        short="生成用于签署服务账号令牌的私钥及其公钥",
        long=f"生成用于签署服务账号令牌的私钥及其公钥，并保存到 {constants.SERVICE_ACCOUNT_KEY_BASE_NAME}.key "
             f"和 {constants.SERVICE_ACCOUNT_KEY_BASE_NAME}.pub 文件。两个文件都已存在时跳过生成。",
        run=run_certs_sa,
        inherit_flags=[options.CERTIFICATES_DIR],
    ))
    return sub_phases


def _new_cert_sub_phase(spec: CertSpec, run: Callable[[object], None]) -> Phase:
    return Phase(
        name=spec.name,
        short=f"生成 {spec.long_name}",
        long=f"生成 {spec.long_name}，并保存到 {spec.base_name}.crt 和 {spec.base_name}.key 文件。"
             "两个文件都已存在时跳过生成，使用现有文件。",
        run=run,
        inherit_flags=get_cert_phase_flags(spec.name),
    )


def run_certs(c: object) -> None:
    data = get_init_data(c, "certs")
    click.echo(f"[certs] 使用证书目录 {data.certificate_write_dir()!r}")

    # dry-run 时把外部 CA 复制到临时目录，供后续阶段使用
    if data.external_ca() and data.dry_run():
        src = pki.path_for_cert(data.certificate_dir(), constants.CA_CERT_AND_KEY_BASE_NAME)
        dst = pki.path_for_cert(data.certificate_write_dir(), constants.CA_CERT_AND_KEY_BASE_NAME)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)


def run_certs_sa(c: object) -> None:
    data = get_init_data(c, "certs")

    if data.external_ca():
        click.echo("[certs] 使用已存在的 sa 密钥")
        return

    write_dir = data.certificate_write_dir()
    base = constants.SERVICE_ACCOUNT_KEY_BASE_NAME
    if pki.path_for_key(write_dir, base).exists() and pki.path_for_public_key(write_dir, base).exists():
        click.echo("[certs] 使用已存在的 sa 密钥")
        return

    click.echo('[certs] 生成 "sa" 密钥和公钥')
    pki.write_key_pair(write_dir, base, pki.new_private_key())


def _skip_for_external_etcd(data: InitData, ca_name: str) -> bool:
    return data.cfg().cluster.etcd.external is not None and ca_name == ETCD_CA_NAME


def run_ca_phase(ca: CertSpec) -> Callable[[object], None]:
    def run(c: object) -> None:
        data = get_init_data(c, "certs")

        if _skip_for_external_etcd(data, ca.name):
            click.echo(f"[certs] 外部 etcd 模式: 跳过 {ca.base_name} CA 的生成")
            return

        write_dir = data.certificate_write_dir()
        try:
            pki.try_load_cert_from_disk(write_dir, ca.base_name)
        except pki.PKIError:
            logger.debug(f"No usable {ca.base_name} CA found in {write_dir}")
        else:
            try:
                pki.try_load_key_from_disk(write_dir, ca.base_name)
                click.echo(f"[certs] 使用已存在的 {ca.base_name} CA")
            except pki.PKIError:
                click.echo(f"[certs] 使用已存在的无私钥 {ca.base_name} CA")
            return

        click.echo(f'[certs] 生成 "{ca.base_name}" 证书和私钥')
        cert, key = pki.new_self_signed_ca(ca.get_config(data.cfg()).common_name)
        pki.write_cert_and_key(write_dir, ca.base_name, cert, key)

    return run


def _verify_signed_by(cert: x509.Certificate, ca_cert: x509.Certificate, base_name: str, ca_base_name: str) -> None:
    try:
        cert.verify_directly_issued_by(ca_cert)
    except (ValueError, TypeError, InvalidSignature) as e:
        raise pki.PKIError(f"[certs] certificate {base_name} not signed by CA certificate {ca_base_name}: {e}") from e


def ensure_signed_cert(
    cfg: InitConfiguration, write_dir: str, spec: CertSpec, ca: CertSpec, external_ca: bool = False,
) -> None:
    """确保 write_dir 中有由 ca 签发的 spec 证书。

    证书已存在时只校验签发者，否则用磁盘上的 CA 签发新证书。

    Raises:
        PKIError: 现有证书不是由该 CA 签发，或外部 CA 模式下缺少证书
    """
    # 证书已存在时，只校验它确实由对应 CA 签发
    if pki.path_for_cert(write_dir, spec.base_name).exists():
        cert = pki.try_load_cert_from_disk(write_dir, spec.base_name)
        ca_cert = pki.try_load_cert_from_disk(write_dir, ca.base_name)
        _verify_signed_by(cert, ca_cert, spec.base_name, ca.base_name)
        click.echo(f"[certs] 使用已存在的 {spec.base_name} 证书和私钥")
        return

    if external_ca:
        raise pki.PKIError(
            f"external CA mode: the certificate {spec.base_name} must be provided, "
            f"it can't be signed without the CA key"
        )

    ca_cert, ca_key = pki.try_load_cert_and_key_from_disk(write_dir, ca.base_name)
    cert_config = spec.get_config(cfg)

    click.echo(f'[certs] 生成 "{spec.base_name}" 证书和私钥')
    if cert_config.alt_names.dns_names or cert_config.alt_names.ips:
        sans = [*cert_config.alt_names.dns_names, *cert_config.alt_names.ips]
        click.echo(f"[certs] {spec.name} 证书的 DNS 名称与 IP 为 [{' '.join(sans)}]")

    key = pki.new_private_key()
    cert = pki.new_signed_cert(cert_config, key, ca_cert, ca_key)
    pki.write_cert_and_key(write_dir, spec.base_name, cert, key)


def run_cert_phase(spec: CertSpec, ca: CertSpec | None) -> Callable[[object], None]:
    def run(c: object) -> None:
        data = get_init_data(c, "certs")

        if _skip_for_external_etcd(data, spec.ca_name):
            click.echo(f"[certs] 外部 etcd 模式: 跳过 {spec.base_name} 证书的生成")
            return
        if ca is None:
            raise pki.PKIError(f"no CA defined for certificate {spec.name}")

        ensure_signed_cert(data.cfg(), data.certificate_write_dir(), spec, ca, data.external_ca())

    return run


def ca_cert_path(cert_dir: str | Path) -> Path:
    return pki.path_for_cert(cert_dir, constants.CA_CERT_AND_KEY_BASE_NAME)
