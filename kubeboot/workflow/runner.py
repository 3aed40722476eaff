"""可组合工作流运行器模块。

Runner 管理一个由阶段组成的工作流：
1. 将阶段树按先序遍历展开为有序的执行列表（子阶段紧跟在父阶段之后）
2. 根据过滤/跳过选项计算每个阶段是否运行
3. 延迟创建运行数据，并在所有阶段之间共享
4. 顺序执行阶段，遇到第一个错误立即终止整个工作流
5. 将阶段树投影为 click 子命令和帮助文本
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

import click

from kubeboot.workflow.errors import (
    ContextInitializationError,
    InvalidPhaseConfigurationError,
    PhaseConditionError,
    PhaseExecutionError,
    UnknownPhaseError,
)
from kubeboot.workflow.phase import ArgsValidator, Phase, RunData

logger = logging.getLogger(__name__)

# 连接嵌套阶段名称时使用的分隔符
PHASE_SEPARATOR = "/"

# 帮助文本中每一级嵌套的缩进宽度
HELP_OFFSET = 2

DataInitializer = Callable[[click.Context | None, list[str]], RunData]


class PhaseStatus(str, Enum):
    """阶段执行状态。"""

    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunnerOptions:
    """Runner 执行选项。"""

    filter_phases: list[str] = field(default_factory=list)  # 为空表示全部运行
    skip_phases: list[str] = field(default_factory=list)  # 为空表示不跳过


@dataclass(frozen=True)
class PhaseRunner:
    """阶段包装器。

    为阶段附加其在工作流中的位置信息。
    """

    phase: Phase
    parent: str | None  # 父阶段的 generated_name
    level: int
    self_path: tuple[str, ...]
    generated_name: str  # 阶段在工作流中的绝对路径，用于过滤、跳过和错误信息
    use: str  # 帮助文本中显示的相对路径


def clean_name(name: str) -> str:
    """将阶段名称转为小写，并去掉参数描述（第一个空格之后的内容）。"""
    ret = name.lower()
    pos = ret.find(" ")
    if pos != -1:
        ret = ret[:pos]
    return ret


def flatten_phases(phases: Iterable[Phase]) -> list[PhaseRunner]:
    """按执行顺序展开阶段树。

    顶层的 run_all_siblings 阶段只用于生成子命令，不进入执行列表；
    嵌套的 run_all_siblings 阶段保留，以便执行时校验其配置。

    Args:
        phases: 顶层阶段序列

    Returns:
        先序遍历得到的阶段包装器列表
    """
    runners: list[PhaseRunner] = []
    for phase in phases:
        if phase.run_all_siblings:
            # 连同子阶段一起丢弃，不再向下展开
            continue
        _add_phase_runner(runners, None, phase)
    return runners


def _add_phase_runner(runners: list[PhaseRunner], parent: PhaseRunner | None, phase: Phase) -> None:
    use = clean_name(phase.name)
    generated_name = use
    self_path: tuple[str, ...] = (generated_name,)

    if parent is not None:
        generated_name = PHASE_SEPARATOR.join((parent.generated_name, generated_name))
        use = f"{PHASE_SEPARATOR}{use}"
        self_path = parent.self_path + self_path

    current = PhaseRunner(
        phase=phase,
        parent=parent.generated_name if parent is not None else None,
        level=len(self_path) - 1,
        self_path=self_path,
        generated_name=generated_name,
        use=use,
    )
    runners.append(current)

    # 子阶段紧跟在父阶段之后
    for child in phase.phases:
        _add_phase_runner(runners, current, child)


def compute_phase_run_flags(
    runners: Sequence[PhaseRunner],
    filter_phases: Sequence[str] = (),
    skip_phases: Sequence[str] = (),
) -> dict[str, bool]:
    """计算每个阶段是否应该运行。

    过滤列表中的阶段连同其全部后代被选中；跳过列表在过滤之后应用，
    因此跳过总是优先。

    Args:
        runners: 展开后的阶段列表
        filter_phases: 要运行的阶段（为空表示全部）
        skip_phases: 要排除的阶段

    Returns:
        generated_name 到是否运行的映射

    Raises:
        UnknownPhaseError: 过滤或跳过列表中包含未知阶段
    """
    run_flags: dict[str, bool] = {}
    hierarchy: dict[str, list[str]] = {}
    parents = {r.generated_name: r.parent for r in runners}

    for r in runners:
        run_flags[r.generated_name] = True
        hierarchy[r.generated_name] = []

        # 将当前阶段登记到所有祖先的后代列表中
        parent = r.parent
        while parent is not None:
            hierarchy[parent].append(r.generated_name)
            parent = parents[parent]

    if filter_phases:
        for name in run_flags:
            run_flags[name] = False
        for f in filter_phases:
            if f not in run_flags:
                raise UnknownPhaseError(f)
            run_flags[f] = True
            for c in hierarchy[f]:
                run_flags[c] = True

    for f in skip_phases:
        if f not in run_flags:
            raise UnknownPhaseError(f)
        run_flags[f] = False
        for c in hierarchy[f]:
            run_flags[c] = False

    return run_flags


class PhaseGroup(click.Group):
    """阶段命令组。

    支持阶段别名；未指定子命令时打印帮助。
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("invoke_without_command", True)
        kwargs.setdefault("callback", _print_help_without_subcommand)
        super().__init__(*args, **kwargs)
        self._aliases: dict[str, str] = {}

    def add_phase_command(self, cmd: click.Command, aliases: Iterable[str] = ()) -> None:
        """添加子命令及其别名。"""
        self.add_command(cmd)
        for alias in aliases:
            self._aliases[alias] = cmd.name

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, self._aliases.get(cmd_name, cmd_name))


def _print_help_without_subcommand() -> None:
    ctx = click.get_current_context()
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _inherit_flags(source: Iterable[click.Parameter], names: Sequence[str] | None) -> list[click.Parameter]:
    # 未声明要继承的标志时不添加任何标志
    if names is None:
        return []
    return [
        param for param in source
        if isinstance(param, click.Option) and any(opt.lstrip("-") in names for opt in param.opts)
    ]


class Runner:
    """可组合工作流运行器。

    用法：
        runner = Runner()
        runner.append_phase(Phase(name="preflight", run=run_preflight))
        runner.set_data_initializer(lambda ctx, args: MyData())
        runner.bind_to_command(cmd)
        runner.run(args)
    """

    def __init__(self) -> None:
        """初始化运行器。"""
        self.options = RunnerOptions()
        self.phases: list[Phase] = []

        # 最近一次 run 中每个阶段的状态
        self.phase_status: dict[str, PhaseStatus] = {}

        self._data_initializer: DataInitializer | None = None
        self._run_data: RunData = None
        self._run_data_ready = False

        # 触发本次运行的命令上下文（阶段子命令会覆盖它）
        self._run_cmd: click.Context | None = None
        self._args_validator: ArgsValidator | None = None
        self._additional_flags: list[click.Parameter] = []
        self._phase_runners: list[PhaseRunner] = []

    def append_phase(self, phase: Phase) -> None:
        """追加一个顶层阶段。"""
        self.phases.append(phase)

    def set_data_initializer(self, builder: DataInitializer) -> None:
        """设置创建共享运行数据的工厂函数。

        Args:
            builder: 接收触发命令的上下文和位置参数，返回运行数据
        """
        self._data_initializer = builder

    def init_data(self, args: Sequence[str] = ()) -> RunData:
        """获取共享运行数据，首次调用时创建。

        已创建的数据会被缓存，之后的调用忽略参数直接返回；
        工厂函数失败时不缓存，后续调用会重试。

        Args:
            args: 命令行位置参数

        Returns:
            运行数据，未设置工厂函数时返回 None

        Raises:
            ContextInitializationError: 工厂函数失败
        """
        if not self._run_data_ready and self._data_initializer is not None:
            cmd = self._run_cmd or click.get_current_context(silent=True)
            try:
                data = self._data_initializer(cmd, list(args))
            except Exception as e:
                raise ContextInitializationError(e) from e
            self._run_data = data
            self._run_data_ready = True
            logger.debug(f"[workflow] Initialized run data {type(data).__name__}")

        return self._run_data

    def run(self, args: Sequence[str] = ()) -> None:
        """执行工作流。

        Args:
            args: 命令行位置参数

        Raises:
            UnknownPhaseError: 过滤或跳过列表包含未知阶段
            ContextInitializationError: 运行数据创建失败
            InvalidPhaseConfigurationError: run_all_siblings 阶段声明了动作
            PhaseConditionError: 运行条件求值失败
            PhaseExecutionError: 阶段动作失败
        """
        self._prepare_for_execution()

        run_flags = compute_phase_run_flags(
            self._phase_runners,
            self.options.filter_phases,
            self.options.skip_phases,
        )

        data = self.init_data(args)

        self.phase_status = {p.generated_name: PhaseStatus.PENDING for p in self._phase_runners}
        for p in self._phase_runners:
            self._run_phase(p, run_flags, data)

    def _run_phase(self, p: PhaseRunner, run_flags: dict[str, bool], data: RunData) -> None:
        name = p.generated_name

        if not run_flags.get(name, False):
            self.phase_status[name] = PhaseStatus.SKIPPED
            return

        # 只用于生成子命令的阶段不能声明动作
        if p.phase.run_all_siblings and (p.phase.run_if is not None or p.phase.run is not None):
            self.phase_status[name] = PhaseStatus.FAILED
            raise InvalidPhaseConfigurationError(name)

        if p.phase.run_if is not None:
            try:
                should_run = p.phase.run_if(data)
            except Exception as e:
                self.phase_status[name] = PhaseStatus.FAILED
                raise PhaseConditionError(name, e) from e

            if not should_run:
                logger.debug(f"[workflow] Run condition not satisfied, skipping phase {name}")
                self.phase_status[name] = PhaseStatus.SKIPPED
                return

        if p.phase.run is not None:
            self.phase_status[name] = PhaseStatus.RUNNING
            logger.debug(f"[workflow] Running phase {name}")
            try:
                p.phase.run(data)
            except Exception as e:
                self.phase_status[name] = PhaseStatus.FAILED
                logger.debug(f"[workflow] Phase {name} failed: {e}")
                raise PhaseExecutionError(name, e) from e

        self.phase_status[name] = PhaseStatus.COMPLETED

    def help(self, cmd_use: str) -> str:
        """返回工作流包含的阶段列表。

        每个可见阶段一行，按嵌套层级缩进，名称按最长名称对齐后跟简短描述。

        Args:
            cmd_use: 工作流命令名称

        Returns:
            帮助文本
        """
        self._prepare_for_execution()

        hidden: set[str] = set()
        visible = []
        for p in self._phase_runners:
            # 隐藏阶段的后代同样不显示
            if p.phase.hidden or (p.parent is not None and p.parent in hidden):
                hidden.add(p.generated_name)
                continue
            if not p.phase.run_all_siblings:
                visible.append(p)
        max_length = max((len(p.use) for p in visible), default=0)

        # 阶段列表放在 markdown 代码块中
        lines = [f'The "{cmd_use}" command executes the following phases:', "```"]
        for p in visible:
            padding = max_length - len(p.use) + HELP_OFFSET
            lines.append(" " * (HELP_OFFSET * p.level) + p.use + " " * padding + p.phase.short)
        lines.append("```")
        return "\n".join(lines)

    def set_additional_flags(self, *params: click.Parameter) -> None:
        """设置可被阶段子命令继承、但父命令中不存在的共享标志。

        必须在 bind_to_command 之前调用。
        """
        self._additional_flags = list(params)

    def bind_to_command(self, cmd: click.Group, args_validator: ArgsValidator | None = None) -> None:
        """将运行器绑定到 click 命令组。

        添加 phase 子命令树、--skip-phases 标志，并在命令帮助中列出阶段。
        必须在所有阶段添加完成之后调用。

        Args:
            cmd: 工作流命令
            args_validator: 叶子阶段默认使用的位置参数校验函数
        """
        self._args_validator = args_validator

        if not self.phases:
            return

        self._prepare_for_execution()

        phase_command = PhaseGroup(
            "phase",
            help=f"Use this command to invoke single phase of the {cmd.name} workflow",
        )
        cmd.add_command(phase_command)

        subcommands: dict[str, PhaseGroup] = {}
        for p in self._phase_runners:
            if p.phase.hidden:
                continue
            # 隐藏阶段的后代同样不生成子命令
            if p.parent is not None and p.parent not in subcommands:
                continue

            selector = p.generated_name
            if p.phase.run_all_siblings:
                selector = p.parent

            phase_cmd = self._new_phase_command(cmd, p, selector)

            parent_cmd = phase_command if p.parent is None else subcommands[p.parent]
            parent_cmd.add_phase_command(phase_cmd, p.phase.aliases)

            if isinstance(phase_cmd, PhaseGroup):
                subcommands[p.generated_name] = phase_cmd

        # \b 使 click 保留阶段列表的原始排版
        description = cmd.help or cmd.short_help or ""
        cmd.help = f"{description}\n\n\b\n{self.help(cmd.name)}\n"

        cmd.params.append(click.Option(
            ["--skip-phases"],
            multiple=True,
            expose_value=False,
            callback=self._set_skip_phases,
            help="List of phases to be skipped",
        ))

    def _new_phase_command(self, cmd: click.Group, p: PhaseRunner, selector: str) -> click.Command:
        phase = p.phase

        params: list[click.Parameter] = []
        params.extend(_inherit_flags(cmd.params, phase.inherit_flags))
        params.extend(_inherit_flags(self._additional_flags, phase.inherit_flags))
        params.extend(phase.local_flags)

        help_text = phase.long or phase.short

        # 有子阶段的命令不接受参数，只打印帮助
        if phase.phases:
            return PhaseGroup(
                clean_name(phase.name),
                params=params,
                help=help_text,
                short_help=phase.short,
                epilog=phase.example or None,
            )

        validator = phase.args_validator or self._args_validator

        def callback(args: tuple[str, ...], **_: Any) -> None:
            if validator is not None:
                validator(args)
            self._run_cmd = click.get_current_context()
            self.options.filter_phases = [selector]
            self.run(list(args))

        params.append(click.Argument(["args"], nargs=-1))
        return click.Command(
            clean_name(phase.name),
            params=params,
            callback=callback,
            help=help_text,
            short_help=phase.short,
            epilog=phase.example or None,
        )

    def _set_skip_phases(self, ctx: click.Context, param: click.Parameter, value: tuple[str, ...]) -> None:
        names = [name.strip() for item in value for name in item.split(",") if name.strip()]
        if names:
            self.options.skip_phases = names

    def _prepare_for_execution(self) -> None:
        self._phase_runners = flatten_phases(self.phases)
