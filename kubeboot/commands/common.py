"""命令公共模块。

提供工作流命令组，以及把命令行选项绑定到选项对象属性的辅助函数。
"""

from typing import Any

import click
from click.core import ParameterSource

# ctx.meta 中保存工作流位置参数的键
WORKFLOW_ARGS_KEY = "kubeboot.workflow_args"


def flag_name(param: click.Parameter) -> str:
    """返回参数的长选项名称（不含前缀 --）。"""
    for opt in param.opts:
        if opt.startswith("--"):
            return opt[2:]
    return param.name or ""


def bind_option(
    target: Any,
    attr: str,
    *param_decls: str,
    changed: set[str] | None = None,
    **attrs: Any,
) -> click.Option:
    """创建绑定到对象属性的选项。

    只有用户显式设置时才写入属性，因此属性本身就是默认值。
    multiple 选项的取值同时支持重复指定和逗号分隔。

    Args:
        target: 要写入的对象
        attr: 属性名称
        param_decls: 选项声明，如 "--cert-dir"
        changed: 记录被显式设置的标志名称
        attrs: 传给 click.Option 的其他参数

    Returns:
        选项对象，可以同时添加到多个命令
    """
    multiple = attrs.get("multiple", False)

    def callback(ctx: click.Context, param: click.Parameter, value: Any) -> Any:
        source = ctx.get_parameter_source(param.name)
        if source is None or source == ParameterSource.DEFAULT:
            return value

        if multiple:
            value = [item.strip() for v in value for item in str(v).split(",") if item.strip()]
        setattr(target, attr, value)
        if changed is not None:
            changed.add(flag_name(param))
        return value

    return click.Option(list(param_decls), expose_value=False, callback=callback, **attrs)


def workflow_args(ctx: click.Context) -> list[str]:
    """获取 WorkflowGroup 收集的位置参数。"""
    return list(ctx.meta.get(WORKFLOW_ARGS_KEY, []))


class WorkflowGroup(click.Group):
    """工作流命令组。

    未指定子命令时执行工作流；最多 max_args 个不对应子命令的前导位置参数
    会交给工作流本身（如 join 的 API Server 地址）。
    """

    def __init__(self, *args: Any, max_args: int = 0, **kwargs: Any) -> None:
        kwargs.setdefault("invoke_without_command", True)
        super().__init__(*args, **kwargs)
        self.max_args = max_args

    def _value_options(self) -> set[str]:
        opts: set[str] = set()
        for param in self.params:
            if isinstance(param, click.Option) and not param.is_flag and not param.count:
                opts.update(param.opts)
        return opts

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if self.max_args:
            args, positional = self._extract_positional(list(args))
            if positional:
                ctx.meta[WORKFLOW_ARGS_KEY] = positional
        return super().parse_args(ctx, args)

    def _extract_positional(self, args: list[str]) -> tuple[list[str], list[str]]:
        value_options = self._value_options()
        positional: list[str] = []
        remaining: list[str] = []

        i = 0
        while i < len(args):
            token = args[i]
            if token == "--":
                remaining.extend(args[i:])
                break
            if token.startswith("-"):
                remaining.append(token)
                if token in value_options and i + 1 < len(args):
                    remaining.append(args[i + 1])
                    i += 1
            elif token in self.commands or len(positional) >= self.max_args:
                # 子命令之后的参数都属于子命令
                remaining.extend(args[i:])
                break
            else:
                positional.append(token)
            i += 1

        return remaining, positional
