"""reset 预检阶段。"""

import click

from kubeboot import options
from kubeboot.phases.reset.data import get_reset_data
from kubeboot.utils import preflight
from kubeboot.workflow import Phase


class ResetAbortedError(Exception):
    """用户取消了 reset。"""


def new_preflight_phase() -> Phase:
    return Phase(
        name="preflight",
        aliases=["pre-flight"],
        short="运行 reset 的预检",
        long="为 kubeboot reset 运行预检",
        run=run_preflight,
        inherit_flags=[options.IGNORE_PREFLIGHT_ERRORS, options.FORCE_RESET],
    )


def run_preflight(c: object) -> None:
    data = get_reset_data(c, "preflight")

    if not data.force_reset():
        click.echo("[reset] 警告: kubeboot init 或 kubeboot join 对此主机所做的更改将被还原")
        click.echo("[reset] 确定要继续吗? [y/N]: ", nl=False)

        answer = data.input_reader().readline()
        if answer.strip().lower() != "y":
            raise ResetAbortedError("aborted reset operation")

    click.echo("[preflight] 运行预检")
    preflight.run_root_check_only(data.ignore_preflight_errors())
