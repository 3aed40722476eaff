#!/usr/bin/env python3
"""kubeboot 主程序入口。

集群引导命令行工具 - 以可组合阶段的方式引导、加入和重置 Kubernetes 节点。
"""

import logging
import sys

import click

from kubeboot.cli import get_verbosity, new_kubeboot_command
from kubeboot.utils.errors import INTERRUPTED_EXIT_CODE, check_err


def setup_logging() -> None:
    """配置日志系统。"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
        ],
    )

    # 降低 httpx 的日志级别，避免干扰命令输出
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    """主入口函数。"""
    setup_logging()
    cli = new_kubeboot_command()

    try:
        rv = cli.main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except (click.Abort, KeyboardInterrupt):
        click.echo("\n\n操作已取消", err=True)
        sys.exit(INTERRUPTED_EXIT_CODE)
    except Exception as e:
        check_err(e, get_verbosity())
    else:
        if isinstance(rv, int):
            sys.exit(rv)


if __name__ == "__main__":
    main()
