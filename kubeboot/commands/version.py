"""version 命令。"""

import json
import logging
import platform
import sys

import click
import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kubeboot import __version__, constants

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("", "short", "yaml", "json")


class VersionInfo(BaseModel):
    """kubeboot 的版本信息。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    git_version: str = f"v{__version__}"
    kubernetes_version: str = constants.KUBERNETES_VERSION
    python_version: str = Field(default_factory=platform.python_version)
    platform: str = Field(default_factory=lambda: f"{sys.platform}/{platform.machine().lower()}")


class Version(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_version: VersionInfo = Field(default_factory=VersionInfo, alias="clientVersion")


def run_version(output: str) -> None:
    """按指定格式打印版本信息。

    Args:
        output: 输出格式，可选 ''、short、yaml、json

    Raises:
        ValueError: 输出格式无效
    """
    logger.debug("[version] Retrieving version info")
    v = Version()

    if output == "":
        click.echo(f"kubeboot 版本: {v.client_version!r}")
    elif output == "short":
        click.echo(v.client_version.git_version)
    elif output == "yaml":
        click.echo(yaml.safe_dump(v.model_dump(by_alias=True), sort_keys=False))
    elif output == "json":
        click.echo(json.dumps(v.model_dump(by_alias=True), indent=2))
    else:
        raise ValueError(f"invalid output format: {output}")


@click.command("version")
@click.option("-o", "--output", default="", help="输出格式，可选 'yaml'、'json' 和 'short'")
def version(output: str) -> None:
    """打印 kubeboot 的版本信息。"""
    run_version(output)
