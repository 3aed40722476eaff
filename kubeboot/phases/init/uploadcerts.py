"""init upload-certs 阶段。"""

import click

from kubeboot import constants, options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import copycerts
from kubeboot.workflow import Phase


def new_upload_certs_phase() -> Phase:
    return Phase(
        name="upload-certs",
        short=f"把证书上传到 {constants.CERTS_SECRET}",
        long=f"把控制平面证书加密后上传到 {constants.CERTS_SECRET} Secret",
        run=run_upload_certs,
        inherit_flags=[
            options.CFG_PATH,
            options.KUBECONFIG_PATH,
            options.UPLOAD_CERTS,
            options.CERTIFICATE_KEY,
            options.SKIP_CERTIFICATE_KEY_PRINT,
        ],
    )


def run_upload_certs(c: object) -> None:
    data = get_init_data(c, "upload-certs")

    if not data.upload_certs():
        click.echo(f"[upload-certs] 跳过此阶段. 请看 --{options.UPLOAD_CERTS}")
        return

    if not data.certificate_key():
        data.set_certificate_key(copycerts.create_certificate_key())

    cfg = data.cfg()
    click.echo(
        f'[upload-certs] 将证书保存到 "{constants.KUBE_SYSTEM_NAMESPACE}" '
        f'命名空间的 Secret "{constants.CERTS_SECRET}" 中'
    )
    copycerts.upload_certs(
        data.client(),
        data.certificate_write_dir(),
        data.certificate_key(),
        external_etcd=cfg.cluster.etcd.external is not None,
    )

    if not data.skip_certificate_key_print():
        click.echo(f"[upload-certs] 使用证书密钥:\n{data.certificate_key()}")
