"""工作流阶段模块。

定义可组合工作流中的单个阶段描述，以及阶段子命令使用的位置参数校验函数。
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Sequence

import click

# 工作流中所有阶段共享的运行数据，引擎本身不限制其类型
RunData = Any

ArgsValidator = Callable[[Sequence[str]], None]


@dataclass(frozen=True)
class Phase:
    """工作流阶段。

    通过实例化此类型即可声明一个新阶段。阶段只是声明，不保存任何执行状态。

    注意：
    - name 在同一父阶段（或同一工作流顶层）的阶段中必须唯一
    - 标记为 run_all_siblings 的阶段只用于生成 CLI 子命令，不能声明 run 或 run_if
    - inherit_flags 为 None 时，阶段子命令不继承任何标志；全局标志由 click 自动继承
    """

    name: str
    aliases: tuple[str, ...] = ()
    short: str = ""
    long: str = ""
    example: str = ""
    hidden: bool = False
    phases: tuple["Phase", ...] = ()
    run_all_siblings: bool = False
    run: Callable[[RunData], None] | None = None
    run_if: Callable[[RunData], bool] | None = None
    inherit_flags: tuple[str, ...] | None = None
    local_flags: tuple[click.Parameter, ...] = field(default=(), compare=False)
    args_validator: ArgsValidator | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # 允许以列表形式声明，统一转为元组
        object.__setattr__(self, "aliases", tuple(self.aliases))
        object.__setattr__(self, "phases", tuple(self.phases))
        object.__setattr__(self, "local_flags", tuple(self.local_flags))
        if self.inherit_flags is not None:
            object.__setattr__(self, "inherit_flags", tuple(self.inherit_flags))

    def with_phases(self, *phases: "Phase") -> "Phase":
        """返回追加了子阶段的新阶段。

        Args:
            phases: 按顺序追加的子阶段

        Returns:
            新的阶段对象
        """
        return replace(self, phases=self.phases + tuple(phases))


def no_args(args: Sequence[str]) -> None:
    """不接受任何位置参数。"""
    if args:
        raise click.UsageError(f"unknown command {args[0]!r}")


def maximum_n_args(n: int) -> ArgsValidator:
    """最多接受 n 个位置参数。

    Args:
        n: 参数数量上限

    Returns:
        校验函数
    """

    def validator(args: Sequence[str]) -> None:
        if len(args) > n:
            raise click.UsageError(f"accepts at most {n} arg(s), received {len(args)}")

    return validator
