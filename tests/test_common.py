"""测试命令公共模块。"""

import click
from click.testing import CliRunner

from kubeboot.commands.common import WorkflowGroup, bind_option, flag_name, workflow_args


class Target:
    """选项写入的目标对象。"""

    def __init__(self):
        self.name = "default"
        self.items: list[str] = []
        self.enabled = False
        self.port = 6443


def build(target: Target, changed: set[str]) -> click.Command:
    seen = {}

    @click.command(params=[
        bind_option(target, "name", "--name", changed=changed, default="flag-default"),
        bind_option(target, "items", "--item", changed=changed, multiple=True),
        bind_option(target, "enabled", "--enabled", changed=changed, is_flag=True),
        bind_option(target, "port", "--port", changed=changed, type=int, default=6443),
    ])
    def cmd():
        seen["ok"] = True

    return cmd


class TestBindOption:
    """测试选项绑定。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.target = Target()
        self.changed: set[str] = set()
        self.cli = CliRunner()

    def test_defaults_do_not_overwrite(self):
        """未显式指定时保持对象原值。"""
        result = self.cli.invoke(build(self.target, self.changed), [])

        assert result.exit_code == 0, result.output
        assert self.target.name == "default"
        assert self.changed == set()

    def test_explicit_values_written(self):
        result = self.cli.invoke(
            build(self.target, self.changed),
            ["--name", "node-1", "--enabled", "--port", "7443"],
        )

        assert result.exit_code == 0, result.output
        assert self.target.name == "node-1"
        assert self.target.enabled is True
        assert self.target.port == 7443
        assert self.changed == {"name", "enabled", "port"}

    def test_multiple_split_on_commas(self):
        result = self.cli.invoke(
            build(self.target, self.changed),
            ["--item", "a,b", "--item", " c "],
        )

        assert result.exit_code == 0, result.output
        assert self.target.items == ["a", "b", "c"]

    def test_flag_name(self):
        option = click.Option(["-f", "--force"])

        assert flag_name(option) == "force"


class TestWorkflowGroup:
    """测试工作流命令组。"""

    def setup_method(self):
        """每个测试方法前的设置。"""
        self.seen: list[list[str]] = []

        def callback():
            ctx = click.get_current_context()
            if ctx.invoked_subcommand is None:
                self.seen.append(workflow_args(ctx))

        self.group = WorkflowGroup(
            "join",
            params=[click.Option(["--token"], expose_value=False), click.Option(["--force"], is_flag=True, expose_value=False)],
            callback=callback,
            max_args=1,
        )

        @self.group.command("phase")
        def phase():
            self.seen.append(["phase"])

        self.cli = CliRunner()

    def test_positional_argument(self):
        result = self.cli.invoke(self.group, ["--token", "abc", "10.0.0.1:6443", "--force"])

        assert result.exit_code == 0, result.output
        assert self.seen == [["10.0.0.1:6443"]]

    def test_option_value_not_taken_as_positional(self):
        result = self.cli.invoke(self.group, ["--token", "abc"])

        assert result.exit_code == 0, result.output
        assert self.seen == [[]]

    def test_subcommand_still_resolved(self):
        result = self.cli.invoke(self.group, ["phase"])

        assert result.exit_code == 0, result.output
        assert self.seen == [["phase"]]

    def test_too_many_positional(self):
        result = self.cli.invoke(self.group, ["a", "b"])

        assert result.exit_code != 0
